"""
============================================================================
TDCHECK - CHECKS
============================================================================
The probes run against one target. Every check has the same surface:

    enabled()       pure function of the target config, no I/O
    run()           one measurement; raises on failure
    snapshot()      latest values for the exporter, taken under the lock
    sessions()      identities the check owns, reset after a failure

Check                      metric(s)
----------------------     --------------------------------------------
ApiPingProbe               tdcheck_api_ping_ms
PlainHttpProbe             tdcheck_userver_ping_ms
KeepaliveEcho              tdcheck_ws_ping_ms
PresenceWatch              tdcheck_onliners, tdcheck_calls
MessageRoundTrip           tdcheck_echo_message_ms, tdcheck_check_message_ms
RealtimeCallRoundTrip      tdcheck_calls_ms, tdcheck_calls_fails (counter)

Failed or timed-out measurements report the failure sentinel: the check
interval in milliseconds unless the target overrides it.

Stream checks absorb up to ``max_timeouts`` consecutive timeouts, counted
across every wait of a run, before raising ``MaxTimeoutsReachedError``.
A fully successful run resets the count.

License: MIT
============================================================================
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from config.constants import MetricNames, ServerEvents
from config.settings import ProbeSettings, ServerConfig
from exceptions.base import ProbeException
from exceptions.probe import (
    DialFailedError,
    MaxTimeoutsReachedError,
    ProbeTimeoutError,
    RemoteRejectedError,
)
from messenger.calls import call_peer
from messenger.events import Event
from messenger.service import RemoteService
from monitoring.identity import ProbeIdentity
from utils.helpers import StringHelper, TimeHelper, force_scheme
from utils.logger import get_logger


logger = get_logger("Checks")


# ============================================================================
# METRIC SAMPLE
# ============================================================================

@dataclass(frozen=True)
class MetricSample:
    """One exported value of a check."""
    name: str
    value: int
    kind: str = "gauge"


# ============================================================================
# BASE CHECK
# ============================================================================

class Check:
    """
    Base class of all checks.

    Subclasses implement ``enabled``, ``run`` and ``_samples``. Fields read
    by ``snapshot`` must only be written through ``_update``.
    """

    name: str = "check"

    def __init__(
        self,
        server: ServerConfig,
        service: RemoteService,
        interval: float,
        settings: Optional[ProbeSettings] = None,
    ):
        settings = settings or ProbeSettings()

        self.server = server
        self.service = service
        self.host = server.host
        self.interval = interval
        self.max_timeouts = (
            server.max_timeouts if server.max_timeouts is not None else settings.max_timeouts
        )

        self._lock = threading.Lock()
        self._timeouts = 0

    def __repr__(self) -> str:
        return f"<{type(self).__name__} [{self.host}] interval={self.interval}s>"

    # ------------------------------------------------------------------
    # CONTRACT
    # ------------------------------------------------------------------

    def enabled(self) -> bool:
        return self.interval > 0

    async def run(self) -> None:
        raise NotImplementedError

    @property
    def pace(self) -> float:
        """Seconds between the starts of two runs."""
        return self.interval

    def sessions(self) -> List[ProbeIdentity]:
        return []

    async def reset_sessions(self, error: Optional[BaseException] = None) -> None:
        """Drop the connections of every owned identity after a failure."""
        for identity in self.sessions():
            if identity.connection is not None or identity.session is not None:
                self._log(f"reset {identity.name} session")
            await identity.invalidate(error)

    async def close(self) -> None:
        for identity in self.sessions():
            await identity.close()

    # ------------------------------------------------------------------
    # SHARED STATE
    # ------------------------------------------------------------------

    def _update(self, **values: Any) -> None:
        with self._lock:
            for key, value in values.items():
                setattr(self, key, value)

    def snapshot(self) -> List[MetricSample]:
        """Consistent copy of the latest values."""
        with self._lock:
            return self._samples()

    def _samples(self) -> List[MetricSample]:
        return []

    @property
    def sentinel_ms(self) -> int:
        """Value reported instead of a duration when a run fails."""
        if self.server.failure_sentinel_ms is not None:
            return self.server.failure_sentinel_ms
        return TimeHelper.round_ms(self.interval)

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    def _log(self, message: str, level: str = "info") -> None:
        getattr(logger, level)(f"[{self.host}] {self.name}: {message}")

    def _remaining(self, start: float) -> float:
        return self.interval - (time.perf_counter() - start)

    def _absorb_timeout(self, error: ProbeTimeoutError, who: str) -> None:
        """Count a timeout against the budget; raise once it is spent."""
        self._timeouts += 1
        self._log(f"{who} got timeout ({self._timeouts}/{self.max_timeouts})", "warning")
        if self._timeouts > self.max_timeouts:
            timeouts, self._timeouts = self._timeouts, 0
            raise MaxTimeoutsReachedError(
                f"{self.name}: {timeouts} timeouts in a row",
                timeouts=timeouts,
                cause=error,
            )

    def _identity(self, name: str, token: str) -> ProbeIdentity:
        return ProbeIdentity(name, token, self.server.test_team, self.service)


class UserCheck(Check):
    """A check that talks to the event stream as alice (and maybe bob)."""

    needs_bob: bool = False

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.alice = self._identity("alice", self.server.alice_token)
        self.bob = self._identity("bob", self.server.bob_token)

    def enabled(self) -> bool:
        if self.interval <= 0 or not self.server.test_team or not self.server.alice_token:
            return False
        return bool(self.server.bob_token) or not self.needs_bob

    def sessions(self) -> List[ProbeIdentity]:
        if self.needs_bob:
            return [self.alice, self.bob]
        return [self.alice]


# ============================================================================
# HTTP CHECKS
# ============================================================================

class ApiPingProbe(Check):
    """Round trip of the REST API ping endpoint."""

    name = "api_ping"

    def __init__(self, server: ServerConfig, service: RemoteService, settings: Optional[ProbeSettings] = None):
        super().__init__(server, service, server.api_ping_interval, settings)
        self.duration_ms = 0

    async def run(self) -> None:
        start = time.perf_counter()
        try:
            await asyncio.wait_for(self.service.http_ping(), self.interval)
        except asyncio.TimeoutError:
            self._update(duration_ms=self.sentinel_ms)
            raise ProbeTimeoutError(f"{self.name}: no reply in {self.interval}s", timeout=self.interval)
        except Exception:
            self._update(duration_ms=self.sentinel_ms)
            raise

        self._update(duration_ms=TimeHelper.round_ms(time.perf_counter() - start))
        self._log(f"{self.duration_ms}ms", "debug")

    def _samples(self) -> List[MetricSample]:
        return [MetricSample(MetricNames.API_PING, self.duration_ms)]


class PlainHttpProbe(Check):
    """
    GET of a configured path; alive means status 200 and a non-empty body.

    ``transport`` lets tests replace the network with ``httpx.MockTransport``.
    """

    name = "userver_ping"

    def __init__(
        self,
        server: ServerConfig,
        service: RemoteService,
        settings: Optional[ProbeSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(server, service, server.userver_ping_interval, settings)
        settings = settings or ProbeSettings()
        self.verify_tls = settings.verify_tls
        self.user_agent = settings.user_agent
        self._transport = transport
        self.duration_ms = 0

    def enabled(self) -> bool:
        return self.interval > 0 and bool(self.server.userver_ping_path)

    @property
    def url(self) -> str:
        path = self.server.userver_ping_path
        if path.startswith("http://") or path.startswith("https://"):
            return path
        base = force_scheme(self.host, self.server.insecure)
        return base + "/" + path.lstrip("/")

    async def run(self) -> None:
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.interval),
                follow_redirects=True,
                verify=self.verify_tls,
                headers={"User-Agent": self.user_agent},
                transport=self._transport,
            ) as client:
                response = await client.get(self.url)

            if response.status_code != 200:
                raise RemoteRejectedError(
                    f"{self.url}: status {response.status_code}",
                    status_code=response.status_code,
                )
            if not response.content:
                raise RemoteRejectedError(
                    f"{self.url}: empty body", status_code=response.status_code
                )

        except httpx.TimeoutException as e:
            self._update(duration_ms=self.sentinel_ms)
            raise ProbeTimeoutError(f"{self.url}: timeout", timeout=self.interval, cause=e)
        except httpx.HTTPError as e:
            self._update(duration_ms=self.sentinel_ms)
            raise DialFailedError(f"{self.url}: {type(e).__name__}: {e}", target=self.url, cause=e)
        except Exception:
            self._update(duration_ms=self.sentinel_ms)
            raise

        self._update(duration_ms=TimeHelper.round_ms(time.perf_counter() - start))
        self._log(
            f"{self.duration_ms}ms, {StringHelper.format_bytes(len(response.content))}", "debug"
        )

    def _samples(self) -> List[MetricSample]:
        return [MetricSample(MetricNames.USERVER_PING, self.duration_ms)]


# ============================================================================
# EVENT STREAM CHECKS
# ============================================================================

class KeepaliveEcho(UserCheck):
    """Ping over alice's event stream and wait for the server's confirm."""

    name = "ws_ping"

    def __init__(self, server: ServerConfig, service: RemoteService, settings: Optional[ProbeSettings] = None):
        super().__init__(server, service, server.ws_ping_interval, settings)
        self.duration_ms = 0

    async def run(self) -> None:
        await self.alice.maybe_establish(need_address=False)
        connection = self.alice.require_connection()

        start = time.perf_counter()
        try:
            uid = await connection.ping()
            self._log(f"send {uid}", "debug")
            await connection.wait_for(
                ServerEvents.CONFIRM.value,
                self.interval,
                match=lambda event: event.confirmed_id == uid,
            )
        except ProbeTimeoutError as e:
            self._update(duration_ms=self.sentinel_ms)
            self._absorb_timeout(e, "alice")
            return
        except Exception:
            self._update(duration_ms=self.sentinel_ms)
            raise

        self._timeouts = 0
        self._update(duration_ms=TimeHelper.round_ms(time.perf_counter() - start))
        self._log(f"got in {self.duration_ms}ms", "debug")

    def _samples(self) -> List[MetricSample]:
        return [MetricSample(MetricNames.WS_PING, self.duration_ms)]


class PresenceWatch(UserCheck):
    """
    Record who is online from ``server.online`` pushes.

    Purely receive driven: runs back to back, each run waiting up to the
    silence window. Silence resets both counts to zero.
    """

    name = "check_onliners"

    def __init__(self, server: ServerConfig, service: RemoteService, settings: Optional[ProbeSettings] = None):
        settings = settings or ProbeSettings()
        silence = server.max_server_online_interval or settings.presence_silence
        super().__init__(server, service, silence, settings)
        self.onliners = 0
        self.calls = 0

    @property
    def pace(self) -> float:
        return 0.0

    async def run(self) -> None:
        await self.alice.maybe_establish(need_address=False)
        connection = self.alice.require_connection()

        start = time.perf_counter()
        try:
            event = await connection.wait_for(ServerEvents.ONLINE.value, self.interval)
        except ProbeTimeoutError:
            self._log(
                f"n/a ({TimeHelper.seconds_to_human(time.perf_counter() - start)}), reset"
            )
            self._update(onliners=0, calls=0)
            return

        self._update(onliners=event.online_contacts, calls=event.active_calls)
        self._log(f"online: {self.onliners} calls: {self.calls}", "debug")

    def _samples(self) -> List[MetricSample]:
        return [
            MetricSample(MetricNames.ONLINERS, self.onliners),
            MetricSample(MetricNames.CALLS, self.calls),
        ]


class MessageRoundTrip(UserCheck):
    """
    alice sends bob a message and measures two legs:

    * echo      alice's own stream replays it (``delayed`` is true)
    * delivery  bob's stream receives it (``delayed`` is false)

    The message is deleted afterwards on every path.
    """

    name = "check_message"
    needs_bob = True

    def __init__(
        self,
        server: ServerConfig,
        service: RemoteService,
        settings: Optional[ProbeSettings] = None,
        phrase: Callable[[], str] = StringHelper.random_phrase,
    ):
        super().__init__(server, service, server.check_message_interval, settings)
        self._phrase = phrase
        self.echo_ms = 0
        self.check_ms = 0

    async def run(self) -> None:
        await self.bob.maybe_establish()
        await self.alice.maybe_establish(need_address=False)
        alice = self.alice.require_connection()
        bob = self.bob.require_connection()

        start = time.perf_counter()
        text = self._phrase()
        message_id = await alice.send_plain_message(self.bob.address, text)
        self._log(f"alice send {message_id}: {text}")

        def is_echo(event: Event) -> bool:
            return event.delayed and event.has_message(message_id)

        def is_delivery(event: Event) -> bool:
            return not event.delayed and event.has_message(message_id)

        echoed = False
        try:
            try:
                await alice.wait_for(
                    ServerEvents.MESSAGE_UPDATED.value, self._remaining(start), match=is_echo
                )
            except ProbeTimeoutError as e:
                self._update(echo_ms=self.sentinel_ms, check_ms=self.sentinel_ms)
                self._absorb_timeout(e, "alice")
                return

            self._update(echo_ms=TimeHelper.round_ms(time.perf_counter() - start))
            echoed = True
            self._log(f"echo {self.echo_ms}ms OK")

            try:
                await bob.wait_for(
                    ServerEvents.MESSAGE_UPDATED.value, self._remaining(start), match=is_delivery
                )
            except ProbeTimeoutError as e:
                self._update(check_ms=self.sentinel_ms)
                self._absorb_timeout(e, "bob")
                return

            self._update(check_ms=TimeHelper.round_ms(time.perf_counter() - start))
            self._log(f"delivery {self.check_ms}ms OK")
            self._timeouts = 0

        except Exception:
            if echoed:
                self._update(check_ms=self.sentinel_ms)
            else:
                self._update(echo_ms=self.sentinel_ms, check_ms=self.sentinel_ms)
            raise

        finally:
            await self._drop(message_id)

    async def _drop(self, message_id: str) -> None:
        """Best-effort delete of the probe message."""
        connection = self.alice.connection
        if connection is None or connection.closed:
            self._log(f"alice cannot drop {message_id}: no event stream", "debug")
            return
        self._log(f"alice drop {message_id}", "debug")
        try:
            await asyncio.wait_for(connection.delete_message(message_id), self.interval)
        except (ProbeException, asyncio.TimeoutError) as e:
            self._log(f"alice drop {message_id} fail: {e!r}", "debug")

    def _samples(self) -> List[MetricSample]:
        return [
            MetricSample(MetricNames.ECHO_MESSAGE, self.echo_ms),
            MetricSample(MetricNames.CHECK_MESSAGE, self.check_ms),
        ]


class RealtimeCallRoundTrip(UserCheck):
    """
    alice calls bob: offer → answer → leave → leave confirmed.

    bob only lends his address and the relay endpoint; his event stream is
    never opened. The local peer is released on every exit path.
    """

    name = "check_calls"
    needs_bob = True

    def __init__(self, server: ServerConfig, service: RemoteService, settings: Optional[ProbeSettings] = None):
        super().__init__(server, service, server.check_call_interval, settings)
        self.duration_ms = 0
        self.fails = 0

    async def run(self) -> None:
        try:
            completed = await self._call()
        except Exception:
            self._update(duration_ms=self.sentinel_ms, fails=self.fails + 1)
            raise

        if not completed:
            self._update(fails=self.fails + 1)

    async def _call(self) -> bool:
        """One call attempt; False when it timed out within budget."""
        await self.bob.maybe_establish(need_connection=False)
        relay = await self.bob.relay_endpoint()
        await self.alice.maybe_establish(need_address=False)
        connection = self.alice.require_connection()
        jid = self.bob.address

        def for_bob(event: Event) -> bool:
            return event.params.get("jid", jid) == jid

        start = time.perf_counter()
        label = f"[{self.host}] {self.name}"
        async with call_peer(self.service, relay, label) as peer:
            try:
                await connection.send_call_offer(jid, peer.offer_sdp)
                answer = await connection.wait_for(
                    ServerEvents.CALL_ANSWER.value,
                    self._remaining(start),
                    match=lambda event: for_bob(event) and bool(event.answer_sdp),
                )
                self._log(f"peer answer ({time.perf_counter() - start:.3f}s)", "debug")

                await peer.apply_answer(answer.answer_sdp)
                self._log(f"set remote description ({time.perf_counter() - start:.3f}s)", "debug")

                await connection.send_call_leave(jid)
                await connection.wait_for(
                    ServerEvents.CALL_LEAVE.value, self._remaining(start), match=for_bob
                )
            except ProbeTimeoutError as e:
                self._update(duration_ms=self.sentinel_ms)
                self._absorb_timeout(e, "alice")
                return False

        self._timeouts = 0
        self._update(duration_ms=TimeHelper.round_ms(time.perf_counter() - start))
        self._log(f"{self.duration_ms}ms OK")
        return True

    def _samples(self) -> List[MetricSample]:
        return [
            MetricSample(MetricNames.CALLS_DURATION, self.duration_ms),
            MetricSample(MetricNames.CALLS_FAILS, self.fails, kind="counter"),
        ]


# ============================================================================
# FACTORY
# ============================================================================

CHECK_TYPES = (
    ApiPingProbe,
    PlainHttpProbe,
    KeepaliveEcho,
    PresenceWatch,
    MessageRoundTrip,
    RealtimeCallRoundTrip,
)


def build_checks(
    server: ServerConfig,
    service: RemoteService,
    settings: Optional[ProbeSettings] = None,
) -> Dict[str, Check]:
    """Every check of ``server``, enabled or not, keyed by name."""
    return {cls.name: cls(server, service, settings=settings) for cls in CHECK_TYPES}
