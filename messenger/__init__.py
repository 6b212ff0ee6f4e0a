"""
Messenger Package for tdcheck

Client side of the monitored messaging service:
- Event stream frames and their JSON encoding
- EventConnection: websocket with request/reply correlation
- MessengerService: REST calls and event stream dialing
- Call peers for the realtime call probe
"""

from messenger.events import Command, Event, decode_event, new_confirm_id
from messenger.connection import EventConnection
from messenger.calls import CallPeer, RtcCallPeer, call_peer
from messenger.service import (
    ApiSession,
    MessengerApiSession,
    MessengerService,
    RemoteService,
)

__all__ = [
    "Command",
    "Event",
    "decode_event",
    "new_confirm_id",
    "EventConnection",
    "CallPeer",
    "RtcCallPeer",
    "call_peer",
    "ApiSession",
    "MessengerApiSession",
    "MessengerService",
    "RemoteService",
]
