from __future__ import annotations

import asyncio
from typing import List

import aiohttp
import pytest

from exceptions.probe import ConnectionClosedError, ProbeTimeoutError, ProtocolDecodeError
from messenger.connection import EventConnection

from conftest import FakeWebSocket


async def _settle() -> None:
    await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_wait_for_skips_unrelated_events() -> None:
    ws = FakeWebSocket()
    conn = EventConnection(ws, label="test").start()

    ws.push("server.online", {"contacts": []})
    ws.push("server.confirm", {"confirm_id": "other"})
    ws.push("server.confirm", {"confirm_id": "mine"})

    event = await conn.wait_for(
        "server.confirm", 1.0, match=lambda e: e.confirmed_id == "mine"
    )

    assert event.confirmed_id == "mine"
    await conn.close()


@pytest.mark.asyncio
async def test_wait_for_times_out_without_overshooting() -> None:
    ws = FakeWebSocket()
    conn = EventConnection(ws, label="test").start()
    ws.push("server.online", {})

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(ProbeTimeoutError) as exc_info:
        await conn.wait_for("server.confirm", 0.2)
    elapsed = loop.time() - started

    assert 0.15 <= elapsed < 0.5
    assert exc_info.value.details["event"] == "server.confirm"
    await conn.close()


@pytest.mark.asyncio
async def test_events_with_confirm_id_are_acknowledged() -> None:
    ws = FakeWebSocket()
    conn = EventConnection(ws, label="test").start()

    ws.push("server.online", {}, confirm_id="srv-1")
    await conn.wait_for("server.online", 1.0)
    await _settle()

    confirms = [f for f in ws.sent if f["event"] == "client.confirm"]
    assert confirms and confirms[0]["params"] == {"confirm_id": "srv-1"}
    await conn.close()


@pytest.mark.asyncio
async def test_send_writes_binary_frames_in_order() -> None:
    ws = FakeWebSocket()
    conn = EventConnection(ws, label="test").start()

    uid = await conn.ping()
    message_id = await conn.send_plain_message("bob@team-1", "hello")
    await conn.delete_message(message_id)
    await _settle()

    assert ws.sent_names() == ["client.ping", "client.message.updated", "client.message.delete"]
    assert ws.sent[0]["confirm_id"] == uid
    assert ws.sent[1]["params"]["content"] == {"type": "plain", "text": "hello"}
    assert ws.sent[2]["params"] == {"message_id": message_id}
    await conn.close()


@pytest.mark.asyncio
async def test_server_hangup_faults_once_and_wakes_waiters() -> None:
    ws = FakeWebSocket()
    faults: List[BaseException] = []
    conn = EventConnection(ws, label="test", on_fault=faults.append).start()

    waiter = asyncio.create_task(conn.wait_for("server.confirm", 5.0))
    await _settle()
    ws.drop()

    with pytest.raises(ConnectionClosedError):
        await waiter
    await _settle()

    assert conn.closed
    assert len(faults) == 1
    assert isinstance(faults[0], ConnectionClosedError)
    assert ws.closed

    await conn.close()
    assert len(faults) == 1


@pytest.mark.asyncio
async def test_decode_failure_is_a_fault() -> None:
    ws = FakeWebSocket()
    faults: List[BaseException] = []

    async def on_fault(error: BaseException) -> None:
        faults.append(error)

    conn = EventConnection(ws, label="test", on_fault=on_fault).start()
    ws.push_raw(b"{broken", aiohttp.WSMsgType.TEXT)
    await _settle()

    assert len(faults) == 1
    assert isinstance(faults[0], ProtocolDecodeError)
    assert isinstance(conn.fault, ProtocolDecodeError)
    with pytest.raises(ConnectionClosedError):
        await conn.wait_for("server.confirm", 1.0)


@pytest.mark.asyncio
async def test_close_is_idempotent_and_silent() -> None:
    ws = FakeWebSocket()
    faults: List[BaseException] = []
    conn = EventConnection(ws, label="test", on_fault=faults.append).start()

    waiter = asyncio.create_task(conn.wait_for("server.confirm", 5.0))
    await _settle()

    await conn.close()
    await conn.close()

    with pytest.raises(ConnectionClosedError):
        await waiter
    with pytest.raises(ConnectionClosedError):
        await conn.ping()
    assert faults == []
    assert ws.close_calls == 1


@pytest.mark.asyncio
async def test_close_wakes_every_pending_waiter() -> None:
    ws = FakeWebSocket()
    conn = EventConnection(ws, label="test").start()

    waiters = [
        asyncio.create_task(conn.wait_for("server.confirm", 5.0)),
        asyncio.create_task(conn.wait_for("server.online", 5.0)),
    ]
    await _settle()
    await conn.close()

    results = await asyncio.gather(*waiters, return_exceptions=True)
    assert all(isinstance(r, ConnectionClosedError) for r in results)


@pytest.mark.asyncio
async def test_full_inbox_drops_oldest_events() -> None:
    ws = FakeWebSocket()
    conn = EventConnection(ws, label="test", inbox_size=2).start()

    for i in range(4):
        ws.push("server.confirm", {"confirm_id": str(i)})
    await _settle()

    first = await conn.wait_for("server.confirm", 1.0)
    second = await conn.wait_for("server.confirm", 1.0)

    assert [first.confirmed_id, second.confirmed_id] == ["2", "3"]
    assert conn.dropped_events == 2
    await conn.close()
