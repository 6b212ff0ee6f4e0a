"""
Event Stream Frames for tdcheck

Every frame on the messaging websocket is a JSON object::

    {"event": "<name>", "params": {...}, "confirm_id": "<uuid>"}

Commands are what the probe sends, events are what the server pushes.
Both share the same shape; ``confirm_id`` is optional on either side.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from exceptions.probe import ProtocolDecodeError


def new_confirm_id() -> str:
    """Fresh client-side correlation id."""
    return str(uuid.uuid4())


@dataclass
class Command:
    """A frame sent by the probe."""

    name: str
    params: Dict[str, Any] = field(default_factory=dict)
    confirm_id: str = field(default_factory=new_confirm_id)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"event": self.name, "params": self.params}
        if self.confirm_id:
            data["confirm_id"] = self.confirm_id
        return data

    def encode(self) -> bytes:
        try:
            return json.dumps(self.to_dict(), ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise ProtocolDecodeError(
                f"Cannot encode {self.name}: {e}", cause=e
            )


@dataclass
class Event:
    """
    A frame pushed by the server.

    ``raw`` keeps the original bytes for verbose logging.
    """

    name: str
    params: Dict[str, Any] = field(default_factory=dict)
    confirm_id: Optional[str] = None
    raw: bytes = b""

    # ------------------------------------------------------------------
    # Typed accessors for the events the checks care about
    # ------------------------------------------------------------------

    @property
    def delayed(self) -> bool:
        """
        ``server.message.updated`` flag.

        True on the sender's own echo of a message, False on the copy
        delivered to the recipient.
        """
        return bool(self.params.get("delayed", False))

    @property
    def messages(self) -> List[Dict[str, Any]]:
        messages = self.params.get("messages") or []
        return [m for m in messages if isinstance(m, dict)]

    def has_message(self, message_id: str) -> bool:
        return any(m.get("message_id") == message_id for m in self.messages)

    @property
    def confirmed_id(self) -> Optional[str]:
        """``confirm_id`` carried inside the params of ``server.confirm``."""
        return self.params.get("confirm_id")

    @property
    def online_contacts(self) -> int:
        return len(self.params.get("contacts") or [])

    @property
    def active_calls(self) -> int:
        return len(self.params.get("calls") or [])

    @property
    def answer_sdp(self) -> Optional[str]:
        """SDP of a ``server.call.answer`` event."""
        jsep = self.params.get("jsep")
        if not isinstance(jsep, dict):
            return None
        return jsep.get("sdp")


def decode_event(data: Union[bytes, str]) -> Event:
    """
    Parse one websocket frame.

    Raises:
        ProtocolDecodeError: not JSON, not an object, or no event name
    """
    raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)

    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolDecodeError(f"json fail: {e}", payload=raw, cause=e)

    if not isinstance(payload, dict):
        raise ProtocolDecodeError("frame is not a JSON object", payload=raw)

    name = payload.get("event")
    if not isinstance(name, str) or not name:
        raise ProtocolDecodeError("frame has no event name", payload=raw)

    params = payload.get("params") or {}
    if not isinstance(params, dict):
        raise ProtocolDecodeError(f"{name}: params is not an object", payload=raw)

    confirm_id = payload.get("confirm_id") or None

    return Event(name=name, params=params, confirm_id=confirm_id, raw=raw)
