"""
============================================================================
TDCHECK - EVENT STREAM CONNECTION
============================================================================
One authenticated websocket to the messaging service, driven by two
background tasks:

    inbox loop   read → decode → auto-confirm → push to inbox queue
    outbox loop  pop from outbox queue → encode → write

Callers correlate requests and replies with ``wait_for``: it drains the
inbox, skipping every event that does not match, until a match arrives or
the deadline passes.

Fault handling
--------------
The first read, write or decode error marks the connection dead. Pending
and future ``wait_for`` calls fail with ``ConnectionClosedError``, the
transport is closed, and the ``on_fault`` callback runs exactly once.
A dead connection is never reused; the owner opens a new one.

An explicit ``close()`` also wakes waiters but does not call ``on_fault``.

License: MIT
============================================================================
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from config.constants import ClientCommands, Defaults
from exceptions.base import ProbeException
from exceptions.probe import ConnectionClosedError, ProbeTimeoutError
from messenger.events import Command, Event, decode_event, new_confirm_id
from utils.logger import get_logger


logger = get_logger("EventConnection")

FaultCallback = Callable[[BaseException], Union[None, Awaitable[None]]]
EventMatcher = Callable[[Event], bool]

# Put on a queue to wake whoever is blocked on it after close.
_CLOSED = object()


class EventConnection:
    """
    Websocket event stream with request/reply correlation.

    Parameters
    ----------
    ws
        An open ``aiohttp.ClientWebSocketResponse`` (or anything with the
        same ``receive`` / ``send_bytes`` / ``close`` / ``exception``
        coroutines).
    label
        Prefix for log lines, e.g. ``"[demo.example] alice"``.
    on_fault
        Called once with the error when the connection dies on its own.
        May be a coroutine function.
    http_session
        aiohttp session that owns ``ws``; closed together with it.
    """

    def __init__(
        self,
        ws: Any,
        *,
        label: str = "ws",
        on_fault: Optional[FaultCallback] = None,
        verbose: bool = False,
        http_session: Optional[aiohttp.ClientSession] = None,
        inbox_size: int = Defaults.INBOX_SIZE,
        outbox_size: int = Defaults.OUTBOX_SIZE,
    ):
        self.label = label
        self.verbose = verbose

        self._ws = ws
        self._http_session = http_session
        self._on_fault = on_fault

        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=inbox_size)
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)

        self._tasks: List[asyncio.Task] = []
        self._fault_task: Optional[asyncio.Task] = None
        self._fault: Optional[BaseException] = None
        self._closed = False
        self._dropped = 0

    # ------------------------------------------------------------------
    # LIFECYCLE
    # ------------------------------------------------------------------

    def start(self) -> "EventConnection":
        """Spawn the inbox and outbox loops."""
        if self._tasks:
            return self
        self._tasks = [
            asyncio.create_task(self._inbox_loop(), name=f"{self.label} inbox"),
            asyncio.create_task(self._outbox_loop(), name=f"{self.label} outbox"),
        ]
        logger.debug(f"{self.label}: event stream started")
        return self

    async def close(self) -> None:
        """
        Stop both loops and close the transport.

        Idempotent. Pending ``wait_for`` calls fail with
        ``ConnectionClosedError``.
        """
        if self._mark_closed():
            await self._shutdown()
            logger.debug(f"{self.label}: event stream closed")
            return

        # Already dead; let an in-flight fault teardown finish first.
        task = self._fault_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def fault(self) -> Optional[BaseException]:
        """The error that killed the connection, if it died on its own."""
        return self._fault

    @property
    def dropped_events(self) -> int:
        """Events discarded because the inbox was full."""
        return self._dropped

    def _mark_closed(self) -> bool:
        if self._closed:
            return False
        self._closed = True
        self._push(self._inbox, _CLOSED)
        self._push(self._outbox, _CLOSED)
        return True

    async def _shutdown(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        try:
            await asyncio.wait_for(self._ws.close(), Defaults.WS_CLOSE_TIMEOUT)
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            logger.warning(f"{self.label}: websocket close fail: {e}")

        if self._http_session is not None and not self._http_session.closed:
            await self._http_session.close()

    # ------------------------------------------------------------------
    # FAULTS
    # ------------------------------------------------------------------

    def _report_fault(self, error: BaseException) -> None:
        """Record the first fault and tear the connection down."""
        if self._closed:
            return

        if not isinstance(error, ProbeException):
            error = ConnectionClosedError(
                f"{type(error).__name__}: {error}", target=self.label, cause=error
            )

        self._fault = error
        self._mark_closed()
        logger.warning(f"{self.label}: event stream fault: {error}")
        self._fault_task = asyncio.create_task(
            self._handle_fault(error), name=f"{self.label} fault"
        )

    async def _handle_fault(self, error: BaseException) -> None:
        await self._shutdown()

        if self._on_fault is None:
            return
        try:
            result = self._on_fault(error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"{self.label}: fault callback failed: {e}")

    def _closed_error(self) -> ConnectionClosedError:
        if self._fault is not None:
            return ConnectionClosedError(
                f"connection closed: {self._fault}", target=self.label, cause=self._fault
            )
        return ConnectionClosedError("connection closed", target=self.label)

    # ------------------------------------------------------------------
    # QUEUES
    # ------------------------------------------------------------------

    def _push(self, queue: asyncio.Queue, item: Any) -> None:
        """put_nowait that evicts the oldest item when the queue is full."""
        while True:
            try:
                queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                if queue is self._inbox:
                    self._dropped += 1
                    if self._dropped % 100 == 1:
                        logger.warning(
                            f"{self.label}: inbox full, dropped {self._dropped} events so far"
                        )

    # ------------------------------------------------------------------
    # LOOPS
    # ------------------------------------------------------------------

    async def _inbox_loop(self) -> None:
        try:
            while not self._closed:
                msg = await self._ws.receive()

                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    event = decode_event(msg.data)
                    if self.verbose:
                        logger.info(f"{self.label}: got: {event.raw.decode('utf-8', 'replace')}")

                    if event.confirm_id:
                        await self.send(
                            ClientCommands.CONFIRM.value,
                            {"confirm_id": event.confirm_id},
                        )

                    self._push(self._inbox, event)

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise ConnectionClosedError(
                        f"conn read fail: {self._ws.exception()}", target=self.label
                    )

                elif msg.type in (
                    aiohttp.WSMsgType.CLOSE,
                    aiohttp.WSMsgType.CLOSING,
                    aiohttp.WSMsgType.CLOSED,
                ):
                    raise ConnectionClosedError(
                        "conn read fail: closed by server", target=self.label
                    )

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._report_fault(e)

    async def _outbox_loop(self) -> None:
        try:
            while not self._closed:
                command = await self._outbox.get()
                if command is _CLOSED:
                    break

                data = command.encode()
                if self.verbose:
                    logger.info(f"{self.label}: send: {data.decode('utf-8', 'replace')}")

                await self._ws.send_bytes(data)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._report_fault(e)

    # ------------------------------------------------------------------
    # SEND / WAIT
    # ------------------------------------------------------------------

    async def send(self, name: str, params: Optional[Dict[str, Any]] = None) -> str:
        """
        Queue a command for the outbox loop.

        Returns the command's ``confirm_id``. Blocks only while the outbox
        is full.
        """
        if self._closed:
            raise self._closed_error()

        command = Command(name=name, params=params or {})
        await self._outbox.put(command)
        return command.confirm_id

    async def wait_for(
        self,
        name: str,
        timeout: float,
        match: Optional[EventMatcher] = None,
    ) -> Event:
        """
        Wait for the next event called ``name`` that satisfies ``match``.

        Non-matching events are consumed and discarded.

        Raises:
            ProbeTimeoutError: nothing matched within ``timeout`` seconds
            ConnectionClosedError: the connection closed or faulted
        """
        if self._closed:
            raise self._closed_error()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProbeTimeoutError(event_name=name, timeout=timeout)

            try:
                item = await asyncio.wait_for(self._inbox.get(), remaining)
            except asyncio.TimeoutError:
                raise ProbeTimeoutError(event_name=name, timeout=timeout)

            if item is _CLOSED:
                self._inbox.put_nowait(_CLOSED)
                raise self._closed_error()

            if item.name != name:
                continue
            if match is not None and not match(item):
                if self.verbose:
                    logger.info(f"{self.label}: skip {item.name}")
                continue
            return item

    # ------------------------------------------------------------------
    # COMMANDS
    # ------------------------------------------------------------------

    async def ping(self) -> str:
        return await self.send(ClientCommands.PING.value)

    async def send_plain_message(self, to: str, text: str) -> str:
        """Send a plain text message; returns the new message id."""
        message_id = new_confirm_id()
        await self.send(ClientCommands.MESSAGE_UPDATED.value, {
            "message_id": message_id,
            "to": to,
            "content": {"type": "plain", "text": text},
        })
        return message_id

    async def delete_message(self, message_id: str) -> str:
        return await self.send(ClientCommands.MESSAGE_DELETE.value, {
            "message_id": message_id,
        })

    async def send_call_offer(self, to: str, sdp: str) -> str:
        return await self.send(ClientCommands.CALL_OFFER.value, {
            "jid": to,
            "muted": True,
            "trickle": False,
            "sdp": sdp,
        })

    async def send_call_leave(self, to: str) -> str:
        return await self.send(ClientCommands.CALL_LEAVE.value, {
            "jid": to,
            "reason": "",
        })
