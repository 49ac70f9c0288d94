from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from intentiq.core.consent import ConsentSources

# called with the names of the high-entropy hints to request
ClientHintsProvider = Callable[[List[str]], Optional[Dict[str, Any]]]


@dataclass
class BrowserEnvironment:
    """
    What the host knows about the browser the engine runs for. All of it is
    optional; an empty environment behaves like a browser with no consent
    signals and no client-hints API.
    """

    user_agent: str = ""
    page_url: Optional[str] = None
    consent: ConsentSources = field(default_factory=ConsentSources)
    # may block (it stands in for an async browser API); always run off-thread
    client_hints_provider: Optional[ClientHintsProvider] = None
