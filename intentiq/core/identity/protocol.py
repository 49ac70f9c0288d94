from __future__ import annotations

import threading
from typing import Any, Callable, List, Optional, Tuple
from urllib.parse import quote, urlencode

import requests

from intentiq.core.browser import referrer_params
from intentiq.core.config.models import ResolverSettings
from intentiq.core.errors import TransportError
from intentiq.core.identity.state import IdentityStateMachine, ResolutionContext

# fixed protocol tags: at=39 (id request), mi=10, pt=17 (js client), dpn=1
PROTOCOL_PARAMS: List[Tuple[str, str]] = [("at", "39"), ("mi", "10")]
CLIENT_PARAMS: List[Tuple[str, str]] = [("pt", "17"), ("dpn", "1")]
PCID_TYPE = "2"

DoneCallback = Callable[[Any], Any]


def _encode(params: List[Tuple[str, Any]]) -> str:
    # same reserved set as JS encodeURIComponent
    return urlencode([(k, str(v)) for k, v in params], quote_via=quote, safe="!~*'()")


class SyncProtocolClient:
    """Builds the id request, issues it, and hands the reply to the state machine."""

    def __init__(
        self,
        *,
        settings: ResolverSettings,
        state: IdentityStateMachine,
        session: Optional[requests.Session] = None,
        page_url: Optional[str] = None,
    ):
        self.settings = settings
        self.state = state
        self.session = session if session is not None else requests.Session()
        self.page_url = page_url

    def build_params(self, ctx: ResolutionContext) -> List[Tuple[str, Any]]:
        cfg = ctx.config
        fp = ctx.first_party
        pr = ctx.partner_record
        consent = ctx.consent

        params: List[Tuple[str, Any]] = list(PROTOCOL_PARAMS)
        params.append(("dpi", ctx.partner))
        params.extend(CLIENT_PARAMS)
        if cfg.pcid:
            params.append(("pcid", cfg.pcid))
        if cfg.pai:
            params.append(("pai", cfg.pai))
        if fp is not None and fp.pcid:
            params.append(("iiqidtype", PCID_TYPE))
            params.append(("iiqpcid", fp.pcid))
        if fp is not None and fp.pid:
            params.append(("pid", fp.pid))
        if pr.cttl:
            params.append(("cttl", pr.cttl))
        if pr.rrtt:
            params.append(("rrtt", pr.rrtt))
        if fp is not None and fp.pcid_date:
            params.append(("iiqpciddate", fp.pcid_date))
        if consent.us_privacy:
            params.append(("pa", consent.us_privacy))
        if consent.gpp:
            params.append(("gpp", consent.gpp))
        if consent.gpi is not None:
            params.append(("gpi", consent.gpi))
        if ctx.client_hints:
            params.append(("uh", ctx.client_hints))
        if self.settings.client_version:
            params.append(("jsver", self.settings.client_version))
        if ctx.group:
            params.append(("testGroup", ctx.group))
        params.extend(referrer_params(self.page_url, cfg.domain_name))
        for k, v in (cfg.extra_params or {}).items():
            params.append((str(k), v))
        return params

    def build_url(self, ctx: ResolutionContext) -> str:
        return f"{self.settings.endpoint}?{_encode(self.build_params(ctx))}"

    def run(self, ctx: ResolutionContext) -> Any:
        """
        One GET round trip. The reply is always applied (state stays correct
        even if the timer already delivered); failures degrade to the
        identity in hand.
        """
        url = self.build_url(ctx)
        ctx.request_started_ms = self.state.now_ms()
        ctx.partner_record.wsrvcll = True
        ctx.store_partner()
        ctx.log.info(f"Requesting id for partner {ctx.partner}")
        try:
            r = self.session.get(url, timeout=self.settings.request_timeout_seconds)
            r.raise_for_status()
            body = r.text
        except requests.RequestException as e:
            status = getattr(getattr(e, "response", None), "status_code", None)
            return self.state.apply_failure(ctx, TransportError(partner=ctx.partner, status=status, error=str(e)))
        return self.state.apply_response(ctx, body)


class PendingSync:
    """
    Deferred network path returned from ``resolve``. Calling it starts the
    request (on a daemon thread unless ``block=True``); only the first call
    issues a request.
    """

    def __init__(self, client: SyncProtocolClient, ctx: ResolutionContext):
        self.client = client
        self.ctx = ctx
        self._lock = threading.Lock()
        self._started = False
        self._thread: Optional[threading.Thread] = None
        self.result: Any = None

    def __call__(self, on_done: Optional[DoneCallback] = None, *, block: bool = False) -> Any:
        with self._lock:
            if self._started:
                self.ctx.log.warning("Id request already issued for this resolution; ignoring")
                return None
            self._started = True
        if block:
            return self._run(on_done)
        t = threading.Thread(target=self._run, args=(on_done,), name=f"iiq-sync:{self.ctx.partner}", daemon=True)
        self._thread = t
        t.start()
        return t

    def _run(self, on_done: Optional[DoneCallback]) -> Any:
        try:
            self.result = self.client.run(self.ctx)
        except Exception as e:  # noqa: BLE001
            self.ctx.log.error(f"Id sync failed unexpectedly: {e}")
            self.ctx.arbiter.fire(reason="error")
            self.result = self.ctx.runtime_identity
        if on_done is not None:
            try:
                on_done(self.result)
            except Exception as e:  # noqa: BLE001
                self.ctx.log.error(f"Host done-callback raised: {e}")
        return self.result

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
