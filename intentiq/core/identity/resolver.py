from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

import requests
from pydantic import ValidationError

from intentiq.core.browser import detect_browser
from intentiq.core.config.models import PartnerConfig, ResolverSettings
from intentiq.core.consent import ConsentSnapshot
from intentiq.core.constants import CLIENT_HINTS_KEY, HIGH_ENTROPY_HINTS, INVALID_ID, MODULE_NAME, WITHOUT_IIQ
from intentiq.core.environment import BrowserEnvironment
from intentiq.core.errors import BlacklistedBrowserError, ConfigError
from intentiq.core.identity.arbiter import CallbackArbiter
from intentiq.core.identity.gam import set_gam_reporting
from intentiq.core.identity.hints import handle_client_hints
from intentiq.core.identity.models import IdResponse, eids_of
from intentiq.core.identity.protocol import PendingSync, SyncProtocolClient
from intentiq.core.identity.state import IdentityStateMachine, ResolutionContext
from intentiq.core.logger import get_logger, trace_logger
from intentiq.core.storage import CookieBackend, DualBackendStore, DurableBackend, define_storage_types


def decode(value: Any) -> Optional[Dict[str, Any]]:
    """Stored id value -> bid-request shape; nothing for empty or INVALID_ID."""
    if value and value != INVALID_ID:
        return {MODULE_NAME: value}
    return None


def _first_uid(data: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    uids = data.get("uids") or []
    return uids[0] if uids else None


EIDS: Dict[str, Dict[str, Any]] = {
    MODULE_NAME: {
        "source": "intentiq.com",
        "atype": 1,
        "get_source": lambda data: data.get("source"),
        "get_value": lambda data: (_first_uid(data) or {}).get("id"),
        "get_uid_ext": lambda data: (_first_uid(data) or {}).get("ext"),
    }
}


class IntentIqIdResolver:
    """
    Entry point. ``resolve`` runs the load/decide part synchronously and
    returns either the cached id or a deferred handle for the network path.
    Partner callbacks always arrive through the per-call arbiter.
    """

    name = MODULE_NAME

    def __init__(
        self,
        *,
        settings: Optional[ResolverSettings] = None,
        environment: Optional[BrowserEnvironment] = None,
        store: Optional[DualBackendStore] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        new_pcid: Optional[Callable[[], str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings or ResolverSettings()
        self.environment = environment or BrowserEnvironment()
        self.logger = get_logger(logger)
        self._clock = clock
        self.store = store or DualBackendStore(
            durable=DurableBackend(
                self.settings.storage_dir,
                self.settings.origin,
                max_bytes=self.settings.max_bytes,
                enabled=self.settings.durable_enabled,
            ),
            cookie=CookieBackend(
                domain=self.settings.cookie_domain,
                path=self.settings.cookie_path,
                enabled=self.settings.cookies_enabled,
                clock=clock,
            ),
            logger=self.logger,
        )
        state_kwargs: Dict[str, Any] = {"now_ms": self.now_ms}
        if new_pcid is not None:
            state_kwargs["new_pcid"] = new_pcid
        self.state = IdentityStateMachine(**state_kwargs)
        self.sync = SyncProtocolClient(settings=self.settings, state=self.state, session=session, page_url=self.environment.page_url)
        self._probes: list[threading.Thread] = []

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ---- main entry ----
    def resolve(self, config: Union[PartnerConfig, Mapping[str, Any], None]) -> Optional[IdResponse]:
        trace_id = uuid.uuid4().hex
        log = trace_logger(trace_id, self.logger)
        cfg, cfg_err = self._coerce_config(config, log)
        allowed = define_storage_types(cfg.enabled_storage_types)

        ctx = ResolutionContext(trace_id=trace_id, log=log, config=cfg, allowed=allowed, store=self.store)
        ctx.first_party = self.state.read_first_party(self.store, allowed, log)
        if cfg.gam_object_reference is not None:
            set_gam_reporting(cfg.gam_object_reference, cfg.gam_parameter_name, ctx.group)

        ctx.arbiter = CallbackArbiter(
            cfg.callback,
            snapshot=ctx.delivery_snapshot,
            timeout_ms=cfg.timeout_in_millis,
            force_empty=ctx.group == WITHOUT_IIQ,
            logger=log,
        )
        ctx.arbiter.arm()

        if cfg.partner is None:
            err = cfg_err or ConfigError("intentIqId requires a valid partner to be defined.")
            log.error(f"{err.code}: {err.user_message}")
            ctx.arbiter.fire_empty(reason="config_error")
            return None

        browser = detect_browser(self.environment.user_agent)
        black_list = cfg.black_list_text()
        if black_list and browser in black_list:
            err = BlacklistedBrowserError(browser=browser)
            log.error(f"{err.code}: {err.user_message} ({browser})")
            ctx.arbiter.fire_blacklisted()
            return None

        ctx.consent = ConsentSnapshot.take(self.environment.consent, logger=self.logger)
        ctx.client_hints = self.store.read(CLIENT_HINTS_KEY, allowed)
        self._probe_client_hints(allowed, log)

        self.state.ensure_first_party(ctx)
        self.state.load_partner(ctx)
        if not self.state.decide(ctx):
            return IdResponse(id=eids_of(ctx.runtime_identity))

        eids = eids_of(ctx.runtime_identity)
        return IdResponse(id=eids or None, callback=PendingSync(self.sync, ctx))

    # ---- helpers ----
    def _coerce_config(self, config: Union[PartnerConfig, Mapping[str, Any], None], log: logging.LoggerAdapter) -> Tuple[PartnerConfig, Optional[ConfigError]]:
        """
        Invalid fields fall back to their defaults so the callback can still
        be honoured; an invalid partner surfaces as a ConfigError.
        """
        if isinstance(config, PartnerConfig):
            return config, None
        raw = dict(config or {})
        try:
            return PartnerConfig.model_validate(raw), None
        except ValidationError as e:
            bad = {str(err["loc"][0]) for err in e.errors() if err.get("loc")}
        drop = set()
        bad_fields = []
        for name in PartnerConfig.model_fields:
            keys = PartnerConfig.field_keys(name)
            if bad.intersection(keys):
                drop.update(keys)
                bad_fields.append(name)
        log.warning(f"Invalid partner config fields reset to defaults: {sorted(bad_fields)}")
        cleaned = {k: v for k, v in raw.items() if k not in drop}
        try:
            cfg = PartnerConfig.model_validate(cleaned)
        except ValidationError:
            cb = raw.get("callback")
            cfg = PartnerConfig(callback=cb if callable(cb) else None)
        err = ConfigError("intentIqId requires a valid partner to be defined.", fields=sorted(bad_fields)) if "partner" in bad_fields else None
        return cfg, err

    def _probe_client_hints(self, allowed: list, log: logging.LoggerAdapter) -> None:
        """Result lands in storage for the next resolve; the current one never waits for it."""
        provider = self.environment.client_hints_provider
        if provider is None:
            return

        def _probe() -> None:
            try:
                encoded = handle_client_hints(provider(list(HIGH_ENTROPY_HINTS)))
            except Exception as e:  # noqa: BLE001
                log.warning(f"Client hints probe failed: {e}")
                return
            self.store.write(CLIENT_HINTS_KEY, encoded, allowed)

        t = threading.Thread(target=_probe, name="iiq-client-hints", daemon=True)
        self._probes.append(t)
        t.start()

    def wait_for_probes(self, timeout: Optional[float] = None) -> None:
        for t in list(self._probes):
            t.join(timeout)
        self._probes = [t for t in self._probes if t.is_alive()]
