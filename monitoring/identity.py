"""
============================================================================
TDCHECK - PROBE IDENTITY
============================================================================
A synthetic user ("alice" or "bob") of one target: its token, the API
session built from it, its routing address (jid) inside the test team and
at most one open event stream.

State machine
-------------

    UNAUTHENTICATED ──authenticate──▶ RESOLVING ──resolve + dial──▶ CONNECTED
          ▲                               ▲                            │
          │ auth/rejection fault          │ any other connection fault │
          └───────────────────────────────┴────────────────────────────┘

The address and the connection are established and invalidated
independently: a dead websocket does not throw away a good address, and a
known address is not re-resolved just because the stream was re-dialed.
Only errors that make the session itself suspect (refused token, explicit
rejection by the API) drop everything.

License: MIT
============================================================================
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

from exceptions.probe import ConnectionClosedError, invalidates_session
from messenger.connection import EventConnection
from messenger.service import ApiSession, RemoteService
from utils.logger import get_logger


logger = get_logger("ProbeIdentity")


class IdentityState(str, Enum):
    """Lifecycle of a ProbeIdentity."""
    UNAUTHENTICATED = "unauthenticated"
    RESOLVING = "resolving"
    CONNECTED = "connected"


class ProbeIdentity:
    """
    One synthetic user and its lazily (re)built session.

    ``maybe_establish`` is the only way in; it is safe to call before every
    check run and does no I/O when everything is already in place.
    """

    def __init__(
        self,
        name: str,
        token: str,
        team: str,
        service: RemoteService,
    ):
        self.name = name
        self.token = token
        self.team = team
        self.service = service

        self.address: Optional[str] = None
        self.session: Optional[ApiSession] = None
        self.connection: Optional[EventConnection] = None

        self._lock = asyncio.Lock()
        self._generation = 0
        self._relay: Optional[str] = None

    def __repr__(self) -> str:
        return f"<ProbeIdentity {self.label} {self.state.value}>"

    @property
    def label(self) -> str:
        return f"[{self.service.host}] {self.name}"

    @property
    def state(self) -> IdentityState:
        if self.session is None:
            return IdentityState.UNAUTHENTICATED
        if self.connection is not None and not self.connection.closed and self.address:
            return IdentityState.CONNECTED
        return IdentityState.RESOLVING

    @property
    def connected(self) -> bool:
        return self.connection is not None and not self.connection.closed

    # ------------------------------------------------------------------
    # ESTABLISH
    # ------------------------------------------------------------------

    async def maybe_establish(
        self,
        need_address: bool = True,
        need_connection: bool = True,
    ) -> "ProbeIdentity":
        """
        Make sure the session, the address and the connection exist.

        Each step is skipped when already satisfied. Concurrent callers
        share one attempt. The first error is raised as is; the caller
        retries on its next tick.
        """
        async with self._lock:
            if self.session is None:
                logger.info(f"{self.label}: (re)create session")
                self.session = await self.service.authenticate(self.token)

            if need_address and not self.address:
                self.address = await self.session.resolve_identity(self.team)
                logger.debug(f"{self.label}: address {self.address}")

            if need_connection and not self.connected:
                logger.info(f"{self.label}: (re)create event stream")
                self._generation += 1
                generation = self._generation
                self.connection = await self.session.open_event_stream(
                    self.team,
                    on_fault=lambda error: self._on_fault(generation, error),
                    label=self.label,
                )

        return self

    def require_connection(self) -> EventConnection:
        """The open connection, or ``ConnectionClosedError``."""
        if not self.connected:
            raise ConnectionClosedError(f"{self.label}: no event stream", target=self.label)
        return self.connection

    async def relay_endpoint(self) -> str:
        """ICE relay url, fetched once per session."""
        if self._relay is None:
            await self.maybe_establish(need_address=False, need_connection=False)
            self._relay = await self.session.fetch_relay_endpoint()
        return self._relay

    # ------------------------------------------------------------------
    # INVALIDATION
    # ------------------------------------------------------------------

    def _on_fault(self, generation: int, error: BaseException) -> None:
        """Fault callback of the connection opened as ``generation``."""
        if generation != self._generation:
            return
        logger.warning(f"{self.label}: event stream lost: {error}")
        self.connection = None
        if invalidates_session(error):
            self._drop_session()

    def _drop_session(self) -> None:
        self.session = None
        self.address = None
        self._relay = None

    async def invalidate(self, error: Optional[BaseException] = None) -> None:
        """
        Tear down after a failed check.

        The connection always goes; the session and address go too when
        ``error`` says the session itself is bad.
        """
        await self.release_connection()
        if error is not None and invalidates_session(error):
            logger.info(f"{self.label}: reset session")
            await self._close_session()

    async def reset(self, hard: bool = False) -> None:
        """Drop the connection, and with ``hard`` everything else too."""
        await self.release_connection()
        if hard:
            await self._close_session()

    async def release_connection(self) -> None:
        """Close the event stream but keep session and address."""
        connection, self.connection = self.connection, None
        self._generation += 1
        if connection is not None:
            await connection.close()

    async def _close_session(self) -> None:
        session = self.session
        self._drop_session()
        if session is not None:
            await session.close()

    async def close(self) -> None:
        await self.reset(hard=True)
