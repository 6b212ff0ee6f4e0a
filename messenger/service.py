"""
============================================================================
TDCHECK - MESSAGING SERVICE CLIENT
============================================================================
The slice of the messaging service API the probes rely on:

    GET  /api/v4/ping            liveness of the REST API
    GET  /api/v4/teams/{team}    identity lookup: result.me.jid
    GET  /features.json          relay (ICE) servers for calls
    WS   /messaging/{team}       the event stream

REST goes through httpx, the event stream through an aiohttp websocket.
HTTP and transport failures are translated into the probe exception
taxonomy here so that checks never see library exceptions.

``RemoteService`` and ``ApiSession`` describe what checks need; tests
substitute fakes for them.

License: MIT
============================================================================
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

import aiohttp
import httpx

from config.constants import ApiPaths, Defaults
from exceptions.probe import (
    AuthFailedError,
    DialFailedError,
    ProtocolDecodeError,
    RemoteRejectedError,
)
from messenger.calls import CallPeer, RtcCallPeer
from messenger.connection import EventConnection, FaultCallback
from utils.helpers import force_scheme, ws_url
from utils.logger import get_logger


logger = get_logger("MessengerService")


# ============================================================================
# COLLABORATOR PROTOCOLS
# ============================================================================

class ApiSession(Protocol):
    """An authenticated session of one identity."""

    async def resolve_identity(self, team: str) -> str:
        ...

    async def open_event_stream(
        self, team: str, on_fault: Optional[FaultCallback] = None, label: str = "ws"
    ) -> EventConnection:
        ...

    async def fetch_relay_endpoint(self) -> str:
        ...

    async def close(self) -> None:
        ...


class RemoteService(Protocol):
    """Everything the checks consume from one monitored target."""

    host: str

    async def http_ping(self) -> None:
        ...

    async def authenticate(self, token: str) -> ApiSession:
        ...

    async def open_call_peer(self, relay: str) -> CallPeer:
        ...

    async def aclose(self) -> None:
        ...


# ============================================================================
# HTTP IMPLEMENTATION
# ============================================================================

class MessengerApiSession:
    """``ApiSession`` backed by the service's REST API and websocket."""

    def __init__(self, service: "MessengerService", token: str):
        self._service = service
        self._token = token

    @property
    def headers(self) -> Dict[str, str]:
        return {"token": self._token}

    async def resolve_identity(self, team: str) -> str:
        """Routing address (jid) of this identity inside ``team``."""
        data = await self._service.get_json(
            ApiPaths.TEAM.format(team=team), headers=self.headers
        )
        try:
            jid = data["result"]["me"]["jid"]
        except (KeyError, TypeError) as e:
            raise ProtocolDecodeError(f"team {team}: no me.jid in response", cause=e)
        if not jid:
            raise ProtocolDecodeError(f"team {team}: empty jid")
        return jid

    async def fetch_relay_endpoint(self) -> str:
        """First ICE server url from the feature flags."""
        data = await self._service.get_json(
            ApiPaths.FEATURES, headers=self.headers, envelope=False
        )
        try:
            return data["ICEServers"][0]["urls"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProtocolDecodeError("features: no ICE servers", cause=e)

    async def open_event_stream(
        self,
        team: str,
        on_fault: Optional[FaultCallback] = None,
        label: str = "ws",
    ) -> EventConnection:
        """
        Dial the team's event stream and start its loops.

        Raises:
            AuthFailedError: the handshake was refused with 401/403
            DialFailedError: any other connect or handshake failure
        """
        service = self._service
        url = ws_url(service.base_url) + ApiPaths.MESSAGING.format(team=team)
        http_session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, connect=service.http_timeout),
            headers={"User-Agent": service.user_agent},
        )

        try:
            ws = await http_session.ws_connect(
                url,
                headers=self.headers,
                ssl=None if service.verify_tls else False,
                autoping=True,
            )
        except aiohttp.WSServerHandshakeError as e:
            await http_session.close()
            if e.status in (401, 403):
                raise AuthFailedError(f"ws handshake refused: {e.status}", target=url, cause=e)
            raise DialFailedError(f"ws handshake fail: {e.status}", target=url, cause=e)
        except (aiohttp.ClientError, OSError, TimeoutError) as e:
            await http_session.close()
            raise DialFailedError(f"ws dial fail: {e}", target=url, cause=e)

        connection = EventConnection(
            ws,
            label=label,
            on_fault=on_fault,
            verbose=service.verbose,
            http_session=http_session,
        )
        return connection.start()

    async def close(self) -> None:
        """Sessions are stateless tokens; nothing to release."""


class MessengerService:
    """
    ``RemoteService`` for one target host.

    Parameters
    ----------
    host
        Host name or base URL of the target.
    transport
        Optional httpx transport, used by tests to script REST replies.
    """

    def __init__(
        self,
        host: str,
        *,
        insecure: bool = False,
        verbose: bool = False,
        http_timeout: float = Defaults.HTTP_TIMEOUT,
        verify_tls: bool = False,
        user_agent: str = Defaults.USER_AGENT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.host = host
        self.base_url = force_scheme(host, insecure)
        self.verbose = verbose
        self.http_timeout = http_timeout
        self.verify_tls = verify_tls
        self.user_agent = user_agent

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(http_timeout, connect=min(http_timeout, 10)),
            verify=verify_tls,
            headers={"User-Agent": user_agent},
            transport=transport,
        )

    async def get_json(
        self,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        envelope: bool = True,
    ) -> Dict[str, Any]:
        """
        GET ``path`` and decode the JSON body.

        With ``envelope`` the body is the API's ``{"ok": ..., "error": ...}``
        wrapper and ``ok: false`` is treated as a rejection.
        """
        try:
            response = await self._client.get(path, headers=headers)
        except httpx.HTTPError as e:
            raise DialFailedError(
                f"GET {path} fail: {type(e).__name__}: {e}", target=self.host, cause=e
            )

        if self.verbose:
            logger.info(f"[{self.host}] GET {path} → {response.status_code}: {response.text[:500]}")

        if response.status_code in (401, 403):
            raise AuthFailedError(
                f"GET {path}: {response.status_code}", target=self.host
            )
        if response.status_code != 200:
            raise RemoteRejectedError(
                f"GET {path}: status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolDecodeError(
                f"GET {path}: invalid json", payload=response.content, cause=e
            )
        if not isinstance(data, dict):
            raise ProtocolDecodeError(f"GET {path}: not a JSON object", payload=response.content)

        if envelope and data.get("ok") is False:
            raise RemoteRejectedError(
                f"GET {path}: {data.get('error') or 'rejected'}",
                status_code=response.status_code,
            )
        return data

    async def http_ping(self) -> None:
        """GET /api/v4/ping; raises on anything but a 200 ``ok`` reply."""
        await self.get_json(ApiPaths.PING)

    async def authenticate(self, token: str) -> MessengerApiSession:
        """
        Check that the API answers and bind ``token`` to a session.

        The token itself is verified by the first call that uses it.
        """
        if not token:
            raise AuthFailedError("empty token", target=self.host)
        await self.http_ping()
        return MessengerApiSession(self, token)

    async def open_call_peer(self, relay: str) -> CallPeer:
        return await RtcCallPeer.create(relay)

    async def aclose(self) -> None:
        await self._client.aclose()
