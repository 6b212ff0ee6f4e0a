from __future__ import annotations

import asyncio
from typing import Dict

import httpx
import pytest

from config.constants import MetricNames
from exceptions.probe import (
    ConnectionClosedError,
    DialFailedError,
    MaxTimeoutsReachedError,
    RemoteRejectedError,
)
from messenger.connection import EventConnection
from monitoring.checks import (
    ApiPingProbe,
    KeepaliveEcho,
    MessageRoundTrip,
    PlainHttpProbe,
    PresenceWatch,
    RealtimeCallRoundTrip,
    build_checks,
)


def _values(check) -> Dict[str, int]:
    return {sample.name: sample.value for sample in check.snapshot()}


# ============================================================================
# ENABLED
# ============================================================================

@pytest.mark.parametrize(
    "cls, overrides, expected",
    [
        (ApiPingProbe, {"api_ping_interval": 0}, False),
        (ApiPingProbe, {"api_ping_interval": "5s"}, True),
        (PlainHttpProbe, {"userver_ping_interval": 5}, False),
        (PlainHttpProbe, {"userver_ping_interval": 5, "userver_ping_path": "/ok"}, True),
        (KeepaliveEcho, {"ws_ping_interval": 5, "test_team": ""}, False),
        (KeepaliveEcho, {"ws_ping_interval": 5, "alice_token": ""}, False),
        (KeepaliveEcho, {"ws_ping_interval": 0}, False),
        (KeepaliveEcho, {"ws_ping_interval": 5, "bob_token": ""}, True),
        (MessageRoundTrip, {"check_message_interval": 5, "bob_token": ""}, False),
        (MessageRoundTrip, {"check_message_interval": 5}, True),
        (RealtimeCallRoundTrip, {"check_call_interval": 0}, False),
        (RealtimeCallRoundTrip, {"check_call_interval": "1m"}, True),
        (PresenceWatch, {"alice_token": ""}, False),
        (PresenceWatch, {}, True),
    ],
)
def test_enabled_is_a_function_of_config(make_server, fake_service, cls, overrides, expected) -> None:
    check = cls(make_server(**overrides), fake_service)
    assert check.enabled() is expected


def test_build_checks_covers_every_variant(make_server, fake_service) -> None:
    checks = build_checks(make_server(), fake_service)
    assert set(checks) == {
        "api_ping", "userver_ping", "ws_ping",
        "check_onliners", "check_message", "check_calls",
    }


# ============================================================================
# KEEPALIVE ECHO
# ============================================================================

@pytest.mark.asyncio
async def test_keepalive_fast_server_stays_under_interval(make_server, fake_service, fake_server, probe_settings) -> None:
    fake_server.reply_delay = 0.05
    check = KeepaliveEcho(make_server(ws_ping_interval=1), fake_service, probe_settings)

    for _ in range(5):
        await check.run()
        assert 0 <= _values(check)[MetricNames.WS_PING] < 1000
        assert check._timeouts == 0

    assert fake_service.streams_opened == 1
    await check.close()


@pytest.mark.asyncio
async def test_keepalive_timeouts_spend_the_budget(make_server, fake_service, fake_server, probe_settings) -> None:
    fake_server.confirm_pings = False
    check = KeepaliveEcho(
        make_server(ws_ping_interval=0.1, max_timeouts=2), fake_service, probe_settings
    )

    await check.run()
    await check.run()
    assert _values(check)[MetricNames.WS_PING] == 100

    with pytest.raises(MaxTimeoutsReachedError) as exc_info:
        await check.run()
    assert exc_info.value.details["timeouts"] == 3
    await check.close()


@pytest.mark.asyncio
async def test_keepalive_success_resets_the_budget(make_server, fake_service, fake_server, probe_settings) -> None:
    check = KeepaliveEcho(
        make_server(ws_ping_interval=0.1, max_timeouts=1), fake_service, probe_settings
    )

    fake_server.confirm_pings = False
    await check.run()
    fake_server.confirm_pings = True
    await check.run()
    fake_server.confirm_pings = False
    await check.run()

    assert _values(check)[MetricNames.WS_PING] == 100
    await check.close()


@pytest.mark.asyncio
async def test_failure_sentinel_override(make_server, fake_service, fake_server, probe_settings) -> None:
    fake_server.confirm_pings = False
    check = KeepaliveEcho(
        make_server(ws_ping_interval=0.1, failure_sentinel_ms=99999), fake_service, probe_settings
    )

    await check.run()

    assert _values(check)[MetricNames.WS_PING] == 99999
    await check.close()


# ============================================================================
# MESSAGE ROUND TRIP
# ============================================================================

@pytest.mark.asyncio
async def test_message_round_trip_measures_both_legs(make_server, fake_service, fake_server, probe_settings) -> None:
    fake_server.reply_delay = 0.02
    check = MessageRoundTrip(
        make_server(check_message_interval=1), fake_service, probe_settings,
        phrase=lambda: "a paper boat",
    )

    await check.run()
    await asyncio.sleep(0.05)

    values = _values(check)
    echo, delivery = values[MetricNames.ECHO_MESSAGE], values[MetricNames.CHECK_MESSAGE]
    assert 0 <= echo <= delivery < 1000

    alice_ws = fake_server.live_socket("alice-token")
    sent = alice_ws.sent
    assert sent[0]["event"] == "client.message.updated"
    assert sent[0]["params"]["to"] == "bob@team-1"
    assert sent[0]["params"]["content"]["text"] == "a paper boat"
    assert sent[-1]["event"] == "client.message.delete"
    assert sent[-1]["params"] == {"message_id": sent[0]["params"]["message_id"]}
    await check.close()


@pytest.mark.asyncio
async def test_message_without_delivery_collapses_to_sentinel(make_server, fake_service, fake_server, probe_settings) -> None:
    fake_server.deliver_messages = False
    check = MessageRoundTrip(make_server(check_message_interval=0.3), fake_service, probe_settings)

    await check.run()
    await asyncio.sleep(0.05)

    values = _values(check)
    assert values[MetricNames.ECHO_MESSAGE] < 300
    assert values[MetricNames.CHECK_MESSAGE] == 300
    assert "client.message.delete" in fake_server.live_socket("alice-token").sent_names()
    await check.close()


@pytest.mark.asyncio
async def test_message_spent_budget_on_delivery_keeps_echo(make_server, fake_service, fake_server, probe_settings) -> None:
    fake_server.deliver_messages = False
    check = MessageRoundTrip(make_server(check_message_interval=0.3, max_timeouts=0), fake_service, probe_settings)

    with pytest.raises(MaxTimeoutsReachedError):
        await check.run()
    await asyncio.sleep(0.05)

    values = _values(check)
    assert values[MetricNames.ECHO_MESSAGE] < 300
    assert values[MetricNames.CHECK_MESSAGE] == 300
    assert "client.message.delete" in fake_server.live_socket("alice-token").sent_names()
    await check.close()


@pytest.mark.asyncio
async def test_message_failed_delete_keeps_the_outcome(monkeypatch, make_server, fake_service, probe_settings) -> None:
    async def refuse(self, message_id: str) -> str:
        raise ConnectionClosedError("event stream closed")

    monkeypatch.setattr(EventConnection, "delete_message", refuse)
    check = MessageRoundTrip(make_server(check_message_interval=1), fake_service, probe_settings)

    await check.run()

    values = _values(check)
    assert 0 <= values[MetricNames.ECHO_MESSAGE] <= values[MetricNames.CHECK_MESSAGE] < 1000
    await check.close()


@pytest.mark.asyncio
async def test_message_ignores_other_message_ids(make_server, fake_service, fake_server, probe_settings) -> None:
    fake_server.deliver_messages = False
    check = MessageRoundTrip(make_server(check_message_interval=0.3), fake_service, probe_settings)
    await check.bob.maybe_establish()

    fake_server.live_socket("bob-token").push(
        "server.message.updated",
        {"messages": [{"message_id": "someone-else"}], "delayed": False},
    )
    await check.run()

    assert _values(check)[MetricNames.CHECK_MESSAGE] == 300
    await check.close()


@pytest.mark.asyncio
async def test_message_dial_failure_propagates(make_server, fake_service, probe_settings) -> None:
    fake_service.fail_dial = True
    check = MessageRoundTrip(make_server(check_message_interval=0.5), fake_service, probe_settings)

    with pytest.raises(DialFailedError):
        await check.run()


# ============================================================================
# PRESENCE
# ============================================================================

@pytest.mark.asyncio
async def test_presence_records_counts_and_resets_on_silence(make_server, fake_service, fake_server, probe_settings) -> None:
    check = PresenceWatch(make_server(max_server_online_interval=0.1), fake_service, probe_settings)
    assert check.pace == 0
    await check.alice.maybe_establish(need_address=False)

    fake_server.live_socket("alice-token").push(
        "server.online", {"contacts": [{"jid": "a"}, {"jid": "b"}, {"jid": "c"}], "calls": [{}]}
    )
    await check.run()
    assert _values(check) == {MetricNames.ONLINERS: 3, MetricNames.CALLS: 1}

    await check.run()
    assert _values(check) == {MetricNames.ONLINERS: 0, MetricNames.CALLS: 0}
    await check.close()


def test_presence_defaults_to_a_long_silence_window(make_server, fake_service, probe_settings) -> None:
    check = PresenceWatch(make_server(), fake_service, probe_settings)
    assert check.interval == probe_settings.presence_silence


# ============================================================================
# REALTIME CALL
# ============================================================================

@pytest.mark.asyncio
async def test_call_round_trip_releases_peer(make_server, fake_service, fake_server, probe_settings) -> None:
    check = RealtimeCallRoundTrip(make_server(check_call_interval=1), fake_service, probe_settings)

    await check.run()

    values = _values(check)
    assert 0 <= values[MetricNames.CALLS_DURATION] < 1000
    assert values[MetricNames.CALLS_FAILS] == 0

    (peer,) = fake_service.peers
    assert peer.closed
    assert peer.relay == "turn:relay.test:3478"
    assert peer.answers == ["v=0 fake-answer"]

    names = [frame["event"] for frame in fake_server.frames]
    assert names == ["client.call.offer", "client.call.leave"]
    assert fake_server.frames[0]["params"]["jid"] == "bob@team-1"
    assert fake_service.streams_opened == 1
    await check.close()


@pytest.mark.asyncio
async def test_call_timeout_still_releases_peer(make_server, fake_service, fake_server, probe_settings) -> None:
    fake_server.answer_calls = False
    check = RealtimeCallRoundTrip(make_server(check_call_interval=0.1), fake_service, probe_settings)

    await check.run()

    values = _values(check)
    assert values[MetricNames.CALLS_DURATION] == 100
    assert values[MetricNames.CALLS_FAILS] == 1
    assert fake_service.peers[0].closed
    await check.close()


@pytest.mark.asyncio
async def test_call_dial_failure_counts_a_failure(make_server, fake_service, probe_settings) -> None:
    fake_service.fail_dial = True
    check = RealtimeCallRoundTrip(make_server(check_call_interval=1), fake_service, probe_settings)

    with pytest.raises(DialFailedError):
        await check.run()

    assert _values(check)[MetricNames.CALLS_FAILS] == 1
    assert _values(check)[MetricNames.CALLS_DURATION] == 1000


# ============================================================================
# HTTP PROBES
# ============================================================================

@pytest.mark.asyncio
async def test_api_ping_failure_reports_sentinel(make_server, fake_service, probe_settings) -> None:
    check = ApiPingProbe(make_server(api_ping_interval=2), fake_service, probe_settings)

    await check.run()
    assert _values(check)[MetricNames.API_PING] < 2000

    fake_service.ping_error = RemoteRejectedError("down", status_code=502)
    with pytest.raises(RemoteRejectedError):
        await check.run()
    assert _values(check)[MetricNames.API_PING] == 2000


def _http_probe(make_server, probe_settings, handler) -> PlainHttpProbe:
    server = make_server(userver_ping_interval=2, userver_ping_path="/userver/ping")
    return PlainHttpProbe(server, None, probe_settings, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_plain_http_500_collapses_to_sentinel(make_server, probe_settings) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(500, text="boom")

    check = _http_probe(make_server, probe_settings, handler)

    with pytest.raises(RemoteRejectedError) as exc_info:
        await check.run()

    assert exc_info.value.status_code == 500
    assert _values(check)[MetricNames.USERVER_PING] == 2000
    assert seen == ["https://probe.test/userver/ping"]


@pytest.mark.asyncio
async def test_plain_http_requires_a_body(make_server, probe_settings) -> None:
    check = _http_probe(make_server, probe_settings, lambda request: httpx.Response(200))

    with pytest.raises(RemoteRejectedError):
        await check.run()


@pytest.mark.asyncio
async def test_plain_http_success(make_server, probe_settings) -> None:
    check = _http_probe(make_server, probe_settings, lambda request: httpx.Response(200, text="pong"))

    await check.run()

    assert 0 <= _values(check)[MetricNames.USERVER_PING] < 2000


@pytest.mark.asyncio
async def test_plain_http_transport_error_is_dial_failure(make_server, probe_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    check = _http_probe(make_server, probe_settings, handler)

    with pytest.raises(DialFailedError):
        await check.run()
    assert _values(check)[MetricNames.USERVER_PING] == 2000


# ============================================================================
# SESSIONS
# ============================================================================

@pytest.mark.asyncio
async def test_reset_sessions_drops_connections(make_server, fake_service, probe_settings) -> None:
    check = MessageRoundTrip(make_server(check_message_interval=1), fake_service, probe_settings)
    await check.run()

    await check.reset_sessions(ConnectionClosedError("boom"))

    assert check.alice.connection is None
    assert check.bob.connection is None
    assert check.bob.address == "bob@team-1"
