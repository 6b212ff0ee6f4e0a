"""
Realtime Call Peer for tdcheck

The local side of a probe call: an audio-only WebRTC peer connection whose
offer is sent over the event stream and whose answer comes back from the
server. aiortc is imported on first use.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Protocol

from utils.logger import get_logger


logger = get_logger("CallPeer")


class CallPeer(Protocol):
    """Local end of one call attempt."""

    offer_sdp: str

    async def apply_answer(self, sdp: str) -> None:
        ...

    async def close(self) -> None:
        ...


class RtcCallPeer:
    """``CallPeer`` backed by an aiortc ``RTCPeerConnection``."""

    def __init__(self, pc: Any, offer_sdp: str):
        self._pc = pc
        self.offer_sdp = offer_sdp

    @classmethod
    async def create(cls, relay: str) -> "RtcCallPeer":
        """Build a peer using ``relay`` as ICE server and produce its offer."""
        from aiortc import (
            RTCConfiguration,
            RTCIceServer,
            RTCPeerConnection,
        )

        pc = RTCPeerConnection(
            configuration=RTCConfiguration(iceServers=[RTCIceServer(urls=relay)])
        )
        try:
            pc.addTransceiver("audio", direction="sendrecv")
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except BaseException:
            await pc.close()
            raise

        return cls(pc, pc.localDescription.sdp)

    async def apply_answer(self, sdp: str) -> None:
        from aiortc import RTCSessionDescription

        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))

    async def close(self) -> None:
        await self._pc.close()


@asynccontextmanager
async def call_peer(service: Any, relay: str, label: str = "call") -> AsyncIterator[CallPeer]:
    """
    Open a call peer through ``service`` and always close it on exit.

    Close failures are logged and do not mask the outcome of the call.
    """
    start = time.perf_counter()
    peer = await service.open_call_peer(relay)
    logger.debug(f"{label}: peer connection created ({time.perf_counter() - start:.3f}s)")
    try:
        yield peer
    finally:
        try:
            await peer.close()
        except Exception as e:
            logger.warning(f"{label}: connection close fail: {e}")
        else:
            logger.debug(f"{label}: connection closed ({time.perf_counter() - start:.3f}s)")
