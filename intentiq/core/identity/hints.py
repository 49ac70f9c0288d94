from __future__ import annotations

import json
from typing import Any, Dict, Optional

from intentiq.core.constants import ENCODER_CH


def handle_client_hints(client_hints: Optional[Dict[str, Any]]) -> str:
    """
    Compact the high-entropy client hints into the numeric-keyed JSON the
    server expects. Returns "" when there is nothing to send.
    """
    params: Dict[int, str] = {}
    for key, value in (client_hints or {}).items():
        if key not in ENCODER_CH or value == "" or value is None:
            continue
        code = ENCODER_CH[key]
        if key in ("brands", "fullVersionList"):
            parts = [f'"{item.get("brand")}";v="{item.get("version")}"' for item in (value or []) if isinstance(item, dict)]
            params[code] = ", ".join(parts)
        elif isinstance(value, bool):
            params[code] = f"?{1 if value else 0}"
        else:
            params[code] = f'"{value}"'
    if not params:
        return ""
    return json.dumps({str(k): params[k] for k in sorted(params)}, separators=(",", ":"), ensure_ascii=False)
