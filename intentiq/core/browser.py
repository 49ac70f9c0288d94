from __future__ import annotations

import re
from typing import List, Optional, Tuple

# Order matters: Edge and Opera also advertise Chrome, Chrome advertises Safari.
_BROWSERS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("edge", re.compile(r"Edg(e|A|iOS)?/", re.I)),
    ("opera", re.compile(r"OPR/|Opera", re.I)),
    ("samsung", re.compile(r"SamsungBrowser/", re.I)),
    ("chrome", re.compile(r"Chrome/|CriOS/", re.I)),
    ("firefox", re.compile(r"Firefox/|FxiOS/", re.I)),
    ("safari", re.compile(r"Version/[\d.]+.*Safari/", re.I)),
    ("ie", re.compile(r"MSIE |Trident/", re.I)),
]


def detect_browser(user_agent: Optional[str]) -> str:
    """Lower-case browser family from a user-agent string; ``unknown`` if nothing matches."""
    ua = user_agent or ""
    for name, pattern in _BROWSERS:
        if pattern.search(ua):
            return name
    return "unknown"


def referrer_params(page_url: Optional[str], domain_name: Optional[str]) -> List[Tuple[str, str]]:
    """
    ``vrref`` tells the server which page the id was requested from. When the
    full page URL is unknown the configured domain stands in and ``fui=1``
    flags the missing URL.
    """
    if page_url:
        if domain_name and domain_name.lower() not in page_url.lower():
            return [("vrref", domain_name)]
        return [("vrref", page_url)]
    return [("fui", "1"), ("vrref", domain_name or "")]
