from __future__ import annotations

import json
from typing import Any, Callable, Optional

import pytest

from intentiq.core.config.models import ResolverSettings
from intentiq.core.constants import FIRST_PARTY_KEY, partner_key
from intentiq.core.environment import BrowserEnvironment
from intentiq.core.identity import IntentIqIdResolver
from intentiq.core.storage import CookieBackend, DualBackendStore, DurableBackend

from .helpers.fakes import FakeClock, StubSession

PARTNER = 10


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    return DualBackendStore(
        durable=DurableBackend(str(tmp_path / "storage"), "https://publisher.example"),
        cookie=CookieBackend(domain="publisher.example", clock=clock.time),
    )


@pytest.fixture
def make_resolver(tmp_path, store, clock) -> Callable[..., IntentIqIdResolver]:
    def _make(session: Optional[StubSession] = None, environment: Optional[BrowserEnvironment] = None, **settings: Any) -> IntentIqIdResolver:
        cfg = ResolverSettings(storage_dir=str(tmp_path / "storage"), log_dir=str(tmp_path / "logs"), **settings)
        return IntentIqIdResolver(
            settings=cfg,
            environment=environment,
            store=store,
            session=session if session is not None else StubSession(),
            clock=clock.time,
        )

    return _make


@pytest.fixture
def read_records(store):
    def _read(partner: int = PARTNER):
        fp = store.read(FIRST_PARTY_KEY, ["durable"])
        pr = store.read(partner_key(partner), ["durable"])
        return (json.loads(fp) if fp else None), (json.loads(pr) if pr else None)

    return _read
