from __future__ import annotations

import json
import os
import re
import time
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

from intentiq.core.consent import ConsentSources
from intentiq.core.constants import (
    CLIENT_HINTS_KEY,
    FIRST_PARTY_KEY,
    HIGH_ENTROPY_HINTS,
    INVALID_ID,
    NOT_YET_DEFINED,
    OPT_OUT,
    VERSION,
    WITH_IIQ,
    WITHOUT_IIQ,
    partner_key,
)
from intentiq.core.crypto import decrypt_data, encrypt_data
from intentiq.core.environment import BrowserEnvironment
from intentiq.core.identity import EIDS, FirstPartyRecord, PartnerRecord, decode

from .conftest import PARTNER
from .helpers.fakes import CallbackRecorder, FakeGam, StubResponse, StubSession

UUID4 = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}")
CHROME_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"


def _seed(store, clock, *, group=WITH_IIQ, cttl=3_600_000, eids=("e1",), usp=None, gpp=None, opted_out=False, pcid_date=True, wsrvcll=False):
    fp = FirstPartyRecord(
        pcid="11111111-2222-4333-8444-555555555555",
        pcid_date=clock.now_ms() if pcid_date else None,
        group=group,
        cttl=cttl,
        date=clock.now_ms(),
        uspapi_value=usp,
        gpp_string_value=gpp,
        is_opted_out=opted_out,
    )
    store.write(FIRST_PARTY_KEY, fp.to_json(), ["durable"])
    data = encrypt_data(json.dumps({"eids": list(eids)})) if eids else {}
    pr = PartnerRecord(data=data, eidl=len(eids) if eids else -1, wsrvcll=wsrvcll)
    store.write(partner_key(PARTNER), pr.to_json(), ["durable"])


def _cfg(rec=None, **kw):
    cfg = {"partner": PARTNER, "timeoutInMillis": 5000}
    if rec is not None:
        cfg["callback"] = rec
    cfg.update(kw)
    return cfg


# ---------------------------------------------------------------------------
# first visit / cache decisions
# ---------------------------------------------------------------------------


def test_fresh_browser_creates_record_and_issues_one_request(make_resolver, read_records):
    session = StubSession(StubResponse(200, {"data": {"eids": ["e1"]}, "ls": True}))
    rec = CallbackRecorder()
    resp = make_resolver(session).resolve(_cfg(rec))

    fp, pr = read_records()
    assert UUID4.fullmatch(fp["pcid"])
    assert fp["cttl"] == 0
    assert fp["group"] == NOT_YET_DEFINED
    assert pr["data"] == {} and pr["eidl"] == -1
    assert resp.id is None and resp.callback is not None
    assert session.calls == []

    resp.callback(block=True)
    assert len(session.calls) == 1
    assert rec.calls == [({"eids": ["e1"]}, NOT_YET_DEFINED)]

    fp2, pr2 = read_records()
    assert fp2["pcid"] == fp["pcid"]
    assert fp2["cttl"] == 86_400_000
    assert pr2["eidl"] == 1
    assert json.loads(decrypt_data(pr2["data"])) == {"eids": ["e1"]}


def test_pcid_is_never_regenerated(make_resolver, read_records):
    resolver = make_resolver()
    resolver.resolve(_cfg())
    first = read_records()[0]["pcid"]
    resolver.resolve(_cfg())
    assert read_records()[0]["pcid"] == first


def test_valid_cache_delivers_without_network(make_resolver, store, clock):
    _seed(store, clock)
    session = StubSession()
    rec = CallbackRecorder()
    resp = make_resolver(session).resolve(_cfg(rec))
    assert session.calls == []
    assert resp.callback is None
    assert resp.id == ["e1"]
    assert rec.calls == [({"eids": ["e1"]}, WITH_IIQ)]


def test_without_iiq_cohort_always_delivers_empty(make_resolver, store, clock):
    _seed(store, clock, group=WITHOUT_IIQ)
    rec = CallbackRecorder()
    session = StubSession()
    resp = make_resolver(session).resolve(_cfg(rec))
    assert session.calls == []
    assert resp.id == []
    assert rec.calls == [({"eids": []}, WITHOUT_IIQ)]


@pytest.mark.parametrize("mutate", ["expired", "zero_ttl", "usp_drift", "gpp_drift"])
def test_invalid_cache_resets_partner_record_and_calls_once(make_resolver, store, clock, read_records, mutate):
    usp, gpp = "1YNN", "DBA"
    _seed(store, clock, usp=usp, gpp=gpp, cttl=0 if mutate == "zero_ttl" else 3_600_000)
    if mutate == "expired":
        clock.advance(3601)
    env = BrowserEnvironment(
        consent=ConsentSources(
            us_privacy=lambda: "1YYN" if mutate == "usp_drift" else usp,
            gpp=lambda: {"gppString": "OTHER" if mutate == "gpp_drift" else gpp, "gpi": 1},
        )
    )
    session = StubSession(StubResponse(200, {"data": {"eids": ["fresh"]}}))
    resp = make_resolver(session, environment=env).resolve(_cfg(CallbackRecorder()))

    fp, pr = read_records()
    assert fp["cttl"] == 0
    assert fp.get("isOptedOut") is False
    assert fp["uspapi_value"] == ("1YYN" if mutate == "usp_drift" else usp)
    assert pr["data"] == {} and pr["eidl"] == -1
    assert session.calls == []

    resp.callback(block=True)
    assert len(session.calls) == 1


def test_matching_consent_keeps_cache(make_resolver, store, clock):
    _seed(store, clock, usp="1YNN", gpp="DBA")
    env = BrowserEnvironment(consent=ConsentSources(us_privacy=lambda: "1YNN", gpp=lambda: ("DBA", True)))
    session = StubSession()
    resp = make_resolver(session, environment=env).resolve(_cfg())
    assert resp.callback is None
    assert session.calls == []


def test_abandoned_request_flag_cleared_on_load(make_resolver, store, clock, read_records):
    _seed(store, clock, wsrvcll=True)
    make_resolver().resolve(_cfg())
    assert read_records()[1]["wsrvcll"] is False


def test_missing_pcid_date_is_backfilled(make_resolver, store, clock, read_records):
    _seed(store, clock, pcid_date=False)
    make_resolver().resolve(_cfg())
    assert read_records()[0]["pcidDate"] == clock.now_ms()


def test_unreadable_cached_data_is_treated_as_empty(make_resolver, store, clock):
    _seed(store, clock)
    store.write(partner_key(PARTNER), json.dumps({"data": "garbage-ciphertext", "eidl": 1}), ["durable"])
    rec = CallbackRecorder()
    resp = make_resolver().resolve(_cfg(rec))
    assert resp.id == []
    assert rec.calls == [({"eids": []}, WITH_IIQ)]


def test_corrupt_first_party_record_means_first_visit(make_resolver, store, read_records):
    store.write(FIRST_PARTY_KEY, "{not json", ["durable"])
    resp = make_resolver().resolve(_cfg())
    assert UUID4.fullmatch(read_records()[0]["pcid"])
    assert resp.callback is not None


@pytest.mark.parametrize(
    "stored, expect",
    [
        ({"pcid": "keep-me", "pid": 12345, "cttl": 0}, {"pid": "12345"}),
        ({"pcid": "keep-me", "group": None, "cttl": 0}, {"group": NOT_YET_DEFINED}),
        ({"pcid": "keep-me", "pcidDate": "soon", "cttl": "x", "group": WITH_IIQ}, {"cttl": 0, "group": WITH_IIQ}),
    ],
)
def test_foreign_field_types_keep_existing_pcid(make_resolver, store, clock, read_records, stored, expect):
    store.write(FIRST_PARTY_KEY, json.dumps(stored), ["durable"])
    session = StubSession()
    resp = make_resolver(session).resolve(_cfg())

    fp, _ = read_records()
    assert fp["pcid"] == "keep-me"
    for k, v in expect.items():
        assert fp[k] == v, k
    if "pcidDate" in stored:
        assert fp["pcidDate"] == clock.now_ms()

    resp.callback(block=True)
    qs = parse_qs(urlsplit(session.calls[0][0]).query)
    assert qs["iiqpcid"] == ["keep-me"]


def test_bad_partner_bookkeeping_fields_keep_cached_identity(make_resolver, store, clock):
    _seed(store, clock)
    data = encrypt_data(json.dumps({"eids": ["e1"]}))
    store.write(partner_key(PARTNER), json.dumps({"data": data, "eidl": "many", "rrtt": "slow"}), ["durable"])
    session = StubSession()
    resp = make_resolver(session).resolve(_cfg())
    assert resp.id == ["e1"]
    assert session.calls == []


# ---------------------------------------------------------------------------
# configuration short-circuits
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("partner", ["abc", None, True, 1.5, "10"])
def test_invalid_partner_delivers_empty_without_network(make_resolver, read_records, partner):
    rec = CallbackRecorder()
    session = StubSession()
    cfg = {"callback": rec, "timeoutInMillis": 20}
    if partner is not None:
        cfg["partner"] = partner
    assert make_resolver(session).resolve(cfg) is None
    time.sleep(0.08)
    assert rec.calls == [({"eids": []}, NOT_YET_DEFINED)]
    assert session.calls == []
    assert read_records() == (None, None)


def test_invalid_partner_reports_stored_cohort(make_resolver, store, clock):
    _seed(store, clock, group=WITH_IIQ)
    rec = CallbackRecorder()
    assert make_resolver().resolve({"partner": "abc", "callback": rec}) is None
    assert rec.calls == [({"eids": []}, WITH_IIQ)]


def test_invalid_partner_is_logged(make_resolver, caplog):
    with caplog.at_level("ERROR", logger="intentiq"):
        make_resolver().resolve({"partner": "abc"})
    assert any("config_error" in r.getMessage() for r in caplog.records)


def test_blacklisted_browser_short_circuits(make_resolver):
    rec = CallbackRecorder()
    session = StubSession()
    env = BrowserEnvironment(user_agent=CHROME_UA)
    out = make_resolver(session, environment=env).resolve(_cfg(rec, browserBlackList="Chrome,Safari", timeoutInMillis=20))
    assert out is None
    time.sleep(0.08)
    assert rec.calls == [("", "L")]
    assert session.calls == []


def test_invalid_optional_field_falls_back_to_default(make_resolver):
    resp = make_resolver().resolve({"partner": PARTNER, "timeoutInMillis": -5})
    assert resp.callback.ctx.arbiter.timeout_ms == 500


# ---------------------------------------------------------------------------
# callback race
# ---------------------------------------------------------------------------


def test_timeout_first_then_late_response_persists_state(make_resolver, clock, read_records):
    session = StubSession(StubResponse(200, {"data": {"eids": ["late"]}}), clock=clock, latency=0.25)
    rec = CallbackRecorder()
    resp = make_resolver(session).resolve(_cfg(rec, timeoutInMillis=20))
    assert rec.wait(2.0)
    assert resp.callback.ctx.arbiter.delivered_by == "timeout"
    assert rec.calls == [({"eids": []}, NOT_YET_DEFINED)]

    result = resp.callback(block=True)
    assert result == {"eids": ["late"]}
    assert len(rec.calls) == 1
    _, pr = read_records()
    assert pr["eidl"] == 1
    assert pr["rrtt"] == 250
    assert json.loads(decrypt_data(pr["data"])) == {"eids": ["late"]}


def test_response_first_disarms_timer(make_resolver):
    session = StubSession(StubResponse(200, {"data": {"eids": ["now"]}}))
    rec = CallbackRecorder()
    resp = make_resolver(session).resolve(_cfg(rec, timeoutInMillis=60))
    resp.callback(block=True)
    time.sleep(0.15)
    assert rec.calls == [({"eids": ["now"]}, NOT_YET_DEFINED)]
    assert resp.callback.ctx.arbiter.delivered_by == "resolved"


def test_deferred_handle_runs_on_thread_and_only_once(make_resolver):
    session = StubSession(StubResponse(200, {"data": "abc"}))
    done = []
    resp = make_resolver(session).resolve(_cfg())
    t = resp.callback(done.append)
    t.join(2.0)
    assert done == [{"eids": ["abc"]}]
    assert resp.callback(block=True) is None
    assert len(session.calls) == 1


# ---------------------------------------------------------------------------
# response application
# ---------------------------------------------------------------------------


def test_hard_opt_out_termination_forces_without_iiq(make_resolver, read_records):
    gam = FakeGam()
    session = StubSession(StubResponse(200, {"tc": 41, "data": {"eids": ["e1"]}, "ls": True}))
    rec = CallbackRecorder()
    resolver = make_resolver(session)
    resolver.resolve(_cfg(rec, gamObjectReference=gam)).callback(block=True)

    assert rec.calls == [({"eids": []}, WITHOUT_IIQ)]
    fp, pr = read_records()
    assert fp["group"] == WITHOUT_IIQ
    assert pr["terminationCause"] == 41
    assert pr["data"] == {"eids": []}
    gam.run_queue()
    assert gam.targeting["intent_iq_group"] == WITHOUT_IIQ

    rec2 = CallbackRecorder()
    resp2 = resolver.resolve(_cfg(rec2))
    assert resp2.callback is None and resp2.id == []
    assert rec2.calls == [({"eids": []}, WITHOUT_IIQ)]
    assert len(session.calls) == 1


def test_other_termination_cause_sets_with_iiq(make_resolver, read_records):
    session = StubSession(StubResponse(200, {"tc": 2, "data": {"eids": ["e1"]}}))
    rec = CallbackRecorder()
    make_resolver(session).resolve(_cfg(rec)).callback(block=True)
    assert rec.calls == [({"eids": ["e1"]}, WITH_IIQ)]
    assert read_records()[0]["group"] == WITH_IIQ


def test_opt_out_response(make_resolver, read_records):
    session = StubSession(StubResponse(200, {"isOptedOut": True, "data": {"eids": ["e1"]}}))
    rec = CallbackRecorder()
    resolver = make_resolver(session)
    resolver.resolve(_cfg(rec)).callback(block=True)
    assert rec.calls == [({"eids": []}, OPT_OUT)]
    fp, _ = read_records()
    assert fp["group"] == OPT_OUT
    assert fp["isOptedOut"] is True

    rec2 = CallbackRecorder()
    resp2 = resolver.resolve(_cfg(rec2))
    assert resp2.callback is None
    assert rec2.calls == [({"eids": []}, OPT_OUT)]


def test_empty_data_is_stored_as_invalid_marker(make_resolver, read_records):
    session = StubSession(StubResponse(200, {"data": "", "ls": True}))
    resolver = make_resolver(session)
    resolver.resolve(_cfg()).callback(block=True)
    _, pr = read_records()
    assert pr["data"] == INVALID_ID
    assert decode(pr["data"]) is None

    rec = CallbackRecorder()
    resp = resolver.resolve(_cfg(rec))
    assert resp.id == []
    assert rec.calls == [({"eids": []}, NOT_YET_DEFINED)]


def test_bare_string_data_is_wrapped(make_resolver, read_records):
    session = StubSession(StubResponse(200, {"data": "abc123"}))
    rec = CallbackRecorder()
    make_resolver(session).resolve(_cfg(rec)).callback(block=True)
    assert rec.calls == [({"eids": ["abc123"]}, NOT_YET_DEFINED)]
    _, pr = read_records()
    assert json.loads(decrypt_data(pr["data"])) == {"eids": ["abc123"]}


def test_ls_false_clears_identity_keeps_cohort(make_resolver, store, clock, read_records):
    _seed(store, clock, cttl=0)
    session = StubSession(StubResponse(200, {"ls": False, "data": {"eids": ["x"]}}))
    rec = CallbackRecorder()
    resp = make_resolver(session).resolve(_cfg(rec))
    resp.callback(block=True)
    # cached eids were delivered before the round trip
    assert rec.calls == [({"eids": ["e1"]}, WITH_IIQ)]
    fp, pr = read_records()
    assert fp["group"] == WITH_IIQ
    assert pr["data"] == {"eids": []}
    assert resp.callback.result == {"eids": []}


def test_server_fields_are_recorded_and_sent_back(make_resolver, clock, read_records):
    session = StubSession(
        StubResponse(200, {"pid": "srv-1", "cttl": 0, "ct": 3, "sid": 77, "unknown": "ignored", "data": "abc"}),
        StubResponse(200, {}),
        clock=clock,
        latency=0.125,
    )
    resolver = make_resolver(session)
    resolver.resolve(_cfg()).callback(block=True)
    fp, pr = read_records()
    assert fp["pid"] == "srv-1"
    assert fp["cttl"] == 0
    assert pr["ct"] == 3 and pr["siteId"] == 77 and pr["rrtt"] == 125
    assert "unknown" not in pr

    resolver.resolve(_cfg()).callback(block=True)
    qs = parse_qs(urlsplit(session.calls[1][0]).query)
    assert qs["pid"] == ["srv-1"]
    assert qs["rrtt"] == ["125"]


@pytest.mark.parametrize(
    "reply",
    [requests.ConnectionError("down"), StubResponse(500, text="oops"), StubResponse(200, text="<html>not json</html>"), StubResponse(200, text="[1,2]")],
)
def test_failed_or_unusable_reply_delivers_identity_in_hand(make_resolver, read_records, reply):
    session = StubSession(reply)
    rec = CallbackRecorder()
    done = []
    resp = make_resolver(session).resolve(_cfg(rec))
    resp.callback(done.append, block=True)
    assert rec.calls == [({"eids": []}, NOT_YET_DEFINED)]
    assert done == [{"eids": []}]
    fp, pr = read_records()
    assert fp["cttl"] == 0
    assert pr["data"] == {}


# ---------------------------------------------------------------------------
# request building
# ---------------------------------------------------------------------------


def test_request_carries_identity_consent_and_extension_params(make_resolver, read_records, clock):
    env = BrowserEnvironment(
        page_url="https://news.example/p?a=1",
        consent=ConsentSources(us_privacy=lambda: "1YNN", gpp=lambda: {"gppString": "DBA~1", "gpi": 1}),
    )
    session = StubSession()
    resolver = make_resolver(session, environment=env, request_timeout_seconds=3.0)
    resolver.resolve(_cfg(pcid="hint", extraParams={"custom": "a b"})).callback(block=True)

    url, kwargs = session.calls[0]
    assert url.startswith("https://api.intentiq.com/profiles_engine/ProfilesEngineServlet?")
    assert kwargs["timeout"] == 3.0
    assert "custom=a%20b" in url
    qs = parse_qs(urlsplit(url).query)
    fp, _ = read_records()
    expected = {
        "at": ["39"],
        "mi": ["10"],
        "dpi": [str(PARTNER)],
        "pt": ["17"],
        "dpn": ["1"],
        "pcid": ["hint"],
        "iiqidtype": ["2"],
        "iiqpcid": [fp["pcid"]],
        "iiqpciddate": [str(clock.now_ms())],
        "pa": ["1YNN"],
        "gpp": ["DBA~1"],
        "gpi": ["1"],
        "jsver": [VERSION],
        "testGroup": [NOT_YET_DEFINED],
        "vrref": ["https://news.example/p?a=1"],
        "custom": ["a b"],
    }
    for k, v in expected.items():
        assert qs[k] == v, k
    assert "uh" not in qs


def test_client_hints_are_used_by_the_next_resolution(make_resolver, store):
    asked = []

    def provider(hints):
        asked.append(hints)
        return {"mobile": True, "platform": "Android"}

    session = StubSession()
    resolver = make_resolver(session, environment=BrowserEnvironment(client_hints_provider=provider))
    resolver.resolve(_cfg())
    resolver.wait_for_probes(2.0)
    assert asked == [HIGH_ENTROPY_HINTS]
    assert json.loads(store.read(CLIENT_HINTS_KEY, ["durable"])) == {"1": "?1", "2": '"Android"'}

    resolver.resolve(_cfg()).callback(block=True)
    qs = parse_qs(urlsplit(session.calls[0][0]).query)
    assert json.loads(qs["uh"][0]) == {"1": "?1", "2": '"Android"'}


def test_failing_client_hints_probe_is_harmless(make_resolver, store):
    def boom(_hints):
        raise RuntimeError("no userAgentData")

    resolver = make_resolver(environment=BrowserEnvironment(client_hints_provider=boom))
    assert resolver.resolve(_cfg()).callback is not None
    resolver.wait_for_probes(2.0)
    assert store.read(CLIENT_HINTS_KEY, ["durable"]) is None


# ---------------------------------------------------------------------------
# storage selection, reporting, decode
# ---------------------------------------------------------------------------


def test_cookie_copy_recovers_state_when_durable_is_lost(make_resolver, store, read_records):
    resolver = make_resolver()
    cfg = _cfg(enabledStorageTypes=["html5", "cookie"])
    resolver.resolve(cfg)
    pcid = read_records()[0]["pcid"]
    os.remove(store.backends["durable"].path)

    resolver.resolve(cfg)
    assert read_records()[0]["pcid"] == pcid
    assert json.loads(store.read(FIRST_PARTY_KEY, ["cookie"]))["pcid"] == pcid


def test_gam_reporting_at_load_and_after_response(make_resolver):
    gam = FakeGam()
    session = StubSession(StubResponse(200, {"tc": 1}))
    make_resolver(session).resolve(_cfg(gamObjectReference=gam, gamParameterName="iiq_grp")).callback(block=True)
    assert len(gam.cmd) == 2
    gam.run_queue()
    assert gam.targeting == {"iiq_grp": WITH_IIQ}


def test_decode_and_eids_config():
    assert decode("abc") == {"intentIqId": "abc"}
    assert decode("") is None
    assert decode(INVALID_ID) is None
    cfg = EIDS["intentIqId"]
    assert cfg["source"] == "intentiq.com" and cfg["atype"] == 1
    data = {"source": "intentiq.com", "uids": [{"id": "u1", "ext": {"stype": "ppuid"}}]}
    assert cfg["get_value"](data) == "u1"
    assert cfg["get_uid_ext"](data) == {"stype": "ppuid"}
    assert cfg["get_value"]({}) is None
