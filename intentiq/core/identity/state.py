from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from intentiq.core.consent import ConsentSnapshot
from intentiq.core.config.models import PartnerConfig
from intentiq.core.constants import (
    DEFAULT_CTTL_MS,
    FIRST_PARTY_KEY,
    INVALID_ID,
    NOT_YET_DEFINED,
    OPT_OUT,
    TC_HARD_OPT_OUT,
    WITH_IIQ,
    WITHOUT_IIQ,
    partner_key,
)
from intentiq.core.crypto import decrypt_data, encrypt_data
from intentiq.core.errors import DecodeError, IntentIqError
from intentiq.core.identity.arbiter import CallbackArbiter
from intentiq.core.identity.gam import set_gam_reporting
from intentiq.core.identity.models import FirstPartyRecord, PartnerRecord, eids_of, empty_identity
from intentiq.core.storage.store import DualBackendStore

M = TypeVar("M", bound=BaseModel)


@dataclass
class ResolutionContext:
    """
    Everything one ``resolve`` call owns: both records in memory, the identity
    in hand, and the arbiter guarding delivery. Nothing here is shared between
    calls.
    """

    trace_id: str
    log: logging.LoggerAdapter
    config: PartnerConfig
    allowed: List[str]
    store: DualBackendStore
    first_party: Optional[FirstPartyRecord] = None
    partner_record: PartnerRecord = field(default_factory=PartnerRecord)
    runtime_identity: Any = field(default_factory=empty_identity)
    consent: ConsentSnapshot = field(default_factory=ConsentSnapshot)
    client_hints: Optional[str] = None
    should_call_server: bool = False
    request_started_ms: int = 0
    arbiter: Optional[CallbackArbiter] = None

    @property
    def partner(self) -> int:
        return int(self.config.partner or 0)

    @property
    def partner_key(self) -> str:
        return partner_key(self.partner)

    @property
    def group(self) -> Optional[str]:
        return self.first_party.group if self.first_party is not None else None

    def delivery_snapshot(self) -> "tuple[Any, Optional[str]]":
        return self.runtime_identity, self.group

    # ---- persistence ----
    def store_first_party(self) -> None:
        if self.first_party is not None:
            self.store.write(FIRST_PARTY_KEY, self.first_party.to_json(), self.allowed)

    def store_partner(self) -> None:
        self.store.write(self.partner_key, self.partner_record.to_json(), self.allowed)

    def store_both(self) -> None:
        self.partner_record.eidl = len(eids_of(self.runtime_identity)) or -1
        self.store_first_party()
        self.store_partner()

    def invalidate(self) -> None:
        """Reset both records together, then persist both."""
        fp = self.first_party
        if fp is None:
            return
        fp.uspapi_value = self.consent.us_privacy
        fp.gpp_string_value = self.consent.gpp
        fp.is_opted_out = False
        fp.cttl = 0
        self.partner_record.data = {}
        self.partner_record.eidl = -1
        self.should_call_server = True
        self.store_first_party()
        self.store_partner()

    def report_group(self) -> None:
        if self.config.gam_object_reference is not None:
            set_gam_reporting(self.config.gam_object_reference, self.config.gam_parameter_name, self.group)


class IdentityStateMachine:
    """
    Load / decide / apply over a ResolutionContext.

    ``load_*`` and ``decide`` run synchronously inside ``resolve``;
    ``apply_response`` and ``apply_failure`` run when the server round trip
    finishes, possibly after the arbiter's timer already delivered.
    """

    def __init__(self, *, now_ms: Callable[[], int], new_pcid: Callable[[], str] = lambda: str(uuid.uuid4())):
        self.now_ms = now_ms
        self.new_pcid = new_pcid

    # ---- loading ----
    def read_first_party(self, store: DualBackendStore, allowed: List[str], log: logging.LoggerAdapter) -> Optional[FirstPartyRecord]:
        return _parse_record(store.read(FIRST_PARTY_KEY, allowed), FirstPartyRecord, log)

    def ensure_first_party(self, ctx: ResolutionContext) -> FirstPartyRecord:
        fp = ctx.first_party
        now = self.now_ms()
        if fp is None or not fp.pcid:
            fp = FirstPartyRecord(pcid=self.new_pcid(), pcid_date=now, group=NOT_YET_DEFINED, cttl=0, date=now)
            ctx.first_party = fp
            ctx.log.info("Created first-party record")
            ctx.store_first_party()
        elif not fp.pcid_date:
            fp.pcid_date = now
            ctx.store_first_party()
        return fp

    def load_partner(self, ctx: ResolutionContext) -> None:
        saved = _parse_record(ctx.store.read(ctx.partner_key, ctx.allowed), PartnerRecord, ctx.log)
        if saved is not None:
            ctx.partner_record = saved
            if saved.wsrvcll:
                # previous request never finished; treat it as abandoned
                saved.wsrvcll = False
                ctx.store_partner()
        ctx.runtime_identity = self._decode_cached(ctx)

    def _decode_cached(self, ctx: ResolutionContext) -> Any:
        data = ctx.partner_record.data
        if not isinstance(data, str) or not data:
            return empty_identity()
        if data == INVALID_ID:
            return empty_identity()
        try:
            obj = json.loads(decrypt_data(data))
        except (DecodeError, json.JSONDecodeError) as e:
            ctx.log.error(f"Cached partner data unreadable: {e}")
            return empty_identity()
        return obj if isinstance(obj, dict) else empty_identity()

    # ---- decision ----
    def cache_invalid(self, ctx: ResolutionContext) -> bool:
        fp = ctx.first_party
        if fp is None or not fp.cttl or fp.date is None:
            return True
        if self.now_ms() - fp.date > fp.cttl:
            return True
        return ctx.consent.drifted_from(fp.uspapi_value, fp.gpp_string_value)

    def decide(self, ctx: ResolutionContext) -> bool:
        """Returns True when a server round trip is required."""
        fp = ctx.first_party
        arbiter = ctx.arbiter
        if self.cache_invalid(ctx):
            ctx.log.info("Cache invalid (ttl or consent); server call required")
            ctx.invalidate()
        elif fp is not None and fp.is_opted_out:
            arbiter.fire(reason="opted_out")

        if ctx.group == WITHOUT_IIQ or eids_of(ctx.runtime_identity):
            arbiter.fire(reason="cached")

        if not ctx.should_call_server:
            if ctx.group == WITHOUT_IIQ or arbiter.force_empty:
                ctx.runtime_identity = empty_identity()
            arbiter.fire(reason="cached")
        return ctx.should_call_server

    # ---- response application ----
    def apply_response(self, ctx: ResolutionContext, body: Optional[str]) -> Any:
        resp = _parse_body(body)
        if resp is None:
            ctx.log.warning("Response is not a JSON object; keeping in-hand identity")
            ctx.arbiter.fire(reason="empty_response")
            return ctx.runtime_identity

        fp = ctx.first_party
        pr = ctx.partner_record
        now = self.now_ms()
        pr.date = now
        fp.date = now

        fp.cttl = _as_int(resp.get("cttl"), DEFAULT_CTTL_MS) if "cttl" in resp else DEFAULT_CTTL_MS
        pr.cttl = fp.cttl

        if "tc" in resp:
            pr.termination_cause = _as_int(resp.get("tc"), None)
            if pr.termination_cause == TC_HARD_OPT_OUT:
                fp.group = WITHOUT_IIQ
                ctx.report_group()
                return self._clear_and_deliver(ctx, reason="terminated")
            fp.group = WITH_IIQ
            ctx.report_group()

        if "isOptedOut" in resp:
            fp.is_opted_out = resp.get("isOptedOut") is True
            if fp.is_opted_out:
                fp.group = OPT_OUT
                return self._clear_and_deliver(ctx, reason="opted_out")

        if "pid" in resp and resp.get("pid") is not None:
            fp.pid = str(resp["pid"])

        if resp.get("ls") is False:
            return self._clear_and_deliver(ctx, reason="ls_false")

        if "data" in resp or resp.get("ls") is True:
            pr.data = _normalize_data(resp.get("data"))

        if "ct" in resp:
            pr.ct = resp["ct"]
        if "sid" in resp:
            pr.site_id = resp["sid"]
        if ctx.request_started_ms > 0:
            pr.rrtt = now - ctx.request_started_ms

        if isinstance(pr.data, dict) and isinstance(pr.data.get("eids"), list):
            ctx.runtime_identity = pr.data
            pr.data = encrypt_data(json.dumps(ctx.runtime_identity, separators=(",", ":")))

        ctx.store_both()
        ctx.arbiter.fire(reason="resolved")
        return ctx.runtime_identity

    def apply_failure(self, ctx: ResolutionContext, err: IntentIqError) -> Any:
        ctx.log.error(f"ID fetch encountered an error: {err}")
        ctx.arbiter.fire(reason="transport_error")
        return ctx.runtime_identity

    def _clear_and_deliver(self, ctx: ResolutionContext, *, reason: str) -> Any:
        ctx.runtime_identity = empty_identity()
        ctx.partner_record.data = empty_identity()
        ctx.store_both()
        ctx.arbiter.fire(reason=reason)
        return ctx.runtime_identity


def _parse_record(raw: Optional[str], model: Type[M], log: logging.LoggerAdapter) -> Optional[M]:
    if not raw:
        return None
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        log.error(f"Stored {model.__name__} is not JSON: {e}")
        return None
    if not isinstance(obj, dict):
        log.error(f"Stored {model.__name__} is not an object")
        return None
    try:
        return model.model_validate(obj)
    except ValidationError as e:
        bad = {str(err["loc"][0]) for err in e.errors() if err.get("loc")}
    # bad fields fall back to their defaults; the rest of the record is kept
    drop = set(bad)
    for name, f in model.model_fields.items():
        if name in bad or (f.alias and f.alias in bad):
            drop.update({name, f.alias or name})
    log.warning(f"Stored {model.__name__} fields reset to defaults: {sorted(bad)}")
    try:
        return model.model_validate({k: v for k, v in obj.items() if k not in drop})
    except ValidationError as e:
        log.error(f"Stored {model.__name__} failed validation: {e.error_count()} error(s)")
        return None


def _parse_body(body: Optional[str]) -> Optional[dict]:
    if not body:
        return None
    try:
        obj = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return None
    return obj if isinstance(obj, dict) else None


def _normalize_data(data: Any) -> Any:
    if data == "":
        return INVALID_ID
    if isinstance(data, str):
        # a bare string is a single id from intentiq.com
        return {"eids": [data]}
    if isinstance(data, dict):
        return data
    return {}


def _as_int(value: Any, default: Optional[int]) -> Optional[int]:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
