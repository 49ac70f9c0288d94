from __future__ import annotations

from typing import Any, Optional

from intentiq.core.constants import NOT_YET_DEFINED


def set_gam_reporting(gam_object_reference: Any, gam_parameter_name: str, user_group: Optional[str]) -> bool:
    """
    Queue a targeting command reporting the cohort to the ad manager.

    ``gam_object_reference`` needs a ``cmd`` list and a ``pubads()`` returning
    an object with ``setTargeting(name, value)``. Anything else is ignored.
    """
    cmd = getattr(gam_object_reference, "cmd", None)
    if cmd is None and isinstance(gam_object_reference, dict):
        cmd = gam_object_reference.get("cmd")
    if not isinstance(cmd, list):
        return False

    def _report() -> None:
        pubads = getattr(gam_object_reference, "pubads", None)
        if pubads is None and isinstance(gam_object_reference, dict):
            pubads = gam_object_reference.get("pubads")
        pubads().setTargeting(gam_parameter_name, user_group or NOT_YET_DEFINED)

    cmd.append(_report)
    return True
