from __future__ import annotations

"""
Identity resolution & sync.

`IntentIqIdResolver.resolve` is the only entry point hosts need. The state
machine, arbiter and protocol client are exported for tests and for hosts
that want to drive the steps themselves.
"""

from intentiq.core.identity.arbiter import CallbackArbiter
from intentiq.core.identity.models import FirstPartyRecord, IdResponse, PartnerRecord
from intentiq.core.identity.protocol import PendingSync, SyncProtocolClient
from intentiq.core.identity.resolver import EIDS, IntentIqIdResolver, decode
from intentiq.core.identity.state import IdentityStateMachine, ResolutionContext

__all__ = [
    "CallbackArbiter",
    "EIDS",
    "FirstPartyRecord",
    "IdResponse",
    "IdentityStateMachine",
    "IntentIqIdResolver",
    "PartnerRecord",
    "PendingSync",
    "ResolutionContext",
    "SyncProtocolClient",
    "decode",
]
