from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from intentiq.core.logger import get_logger

UspProvider = Callable[[], Optional[str]]
GppProvider = Callable[[], Any]


@dataclass
class ConsentSources:
    """
    Consent-string retrieval lives with the host; it hands us two callables.
    ``gpp`` may return a dict ``{"gppString": ..., "gpi": ...}`` (the shape
    host CMP helpers produce), a ``(string, applies)`` tuple or ``None``.
    """

    us_privacy: Optional[UspProvider] = None
    gpp: Optional[GppProvider] = None


@dataclass(frozen=True)
class ConsentSnapshot:
    us_privacy: Optional[str] = None
    gpp: Optional[str] = None
    gpi: Optional[int] = None

    @classmethod
    def take(cls, sources: Optional[ConsentSources], *, logger: Optional[logging.Logger] = None) -> "ConsentSnapshot":
        log = get_logger(logger)
        if sources is None:
            return cls()
        usp: Optional[str] = None
        gpp: Optional[str] = None
        gpi: Optional[int] = None
        if sources.us_privacy is not None:
            try:
                usp = sources.us_privacy() or None
            except Exception as e:  # noqa: BLE001
                log.warning(f"US privacy provider failed: {e}")
        if sources.gpp is not None:
            try:
                gpp, gpi = _split_gpp(sources.gpp())
            except Exception as e:  # noqa: BLE001
                log.warning(f"GPP provider failed: {e}")
        return cls(us_privacy=usp, gpp=gpp, gpi=gpi)

    def drifted_from(self, uspapi_value: Optional[str], gpp_string_value: Optional[str]) -> bool:
        return uspapi_value != self.us_privacy or gpp_string_value != self.gpp


def _split_gpp(value: Any) -> "tuple[Optional[str], Optional[int]]":
    if value is None:
        return None, None
    if isinstance(value, dict):
        s = value.get("gppString")
        applies = value.get("gpi")
    elif isinstance(value, (tuple, list)) and len(value) == 2:
        s, applies = value
    else:
        s, applies = value, None
    gpi = None if applies is None else int(bool(applies))
    return (str(s) if s else None), gpi
