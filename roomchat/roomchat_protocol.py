"""
roomchat_protocol.py
────────────────────────────────────────────────────────────────────────────────
Wire codec for the room chat server.

Protocol
────────
  Text frames, one JSON object per frame:  {"type": ..., "payload": ...}

    join    client → server   {"roomId": str | null, "username": str}
    chat    both directions   {"message": str, "sender": str, "roomId": str}
    users   server → client   [{"roomId": str, "username": str}, ...]

  Anything else is a DecodeError.  Callers log and drop those frames; the
  codec never lets a bad frame through half-parsed.
"""

from __future__ import annotations

import dataclasses
import json
import re
from typing import Optional, Tuple, Union

from roomchat_errors import DecodeError, UnknownFrameType

# ── Frame types ───────────────────────────────────────────────────────────────
JOIN  = "join"
CHAT  = "chat"
USERS = "users"

_CTRL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def sanitise(raw: str, maxlen: int) -> str:
    """Drop control characters, trim, cap the length."""
    return _CTRL_RE.sub("", raw).strip()[:maxlen]


# ═══════════════════════════════════════════════════════════════════════════════
# Data classes
# ═══════════════════════════════════════════════════════════════════════════════

@dataclasses.dataclass(frozen=True)
class ChatEvent:
    message: str
    sender : str
    room_id: str

    def to_dict(self) -> dict:
        """Local storage shape."""
        return {"msg": self.message, "sender": self.sender, "roomId": self.room_id}

    @classmethod
    def from_dict(cls, d: dict) -> "ChatEvent":
        return cls(message=d["msg"], sender=d["sender"], room_id=d["roomId"])


@dataclasses.dataclass(frozen=True)
class PresenceEntry:
    room_id : str
    username: str


PresenceSnapshot = Tuple[PresenceEntry, ...]
Decoded          = Union[ChatEvent, PresenceSnapshot]


# ═══════════════════════════════════════════════════════════════════════════════
# Encoding
# ═══════════════════════════════════════════════════════════════════════════════

def _frame(frame_type: str, payload) -> str:
    return json.dumps({"type": frame_type, "payload": payload}, ensure_ascii=False)


def encode_join(room_id: Optional[str], username: str) -> str:
    return _frame(JOIN, {"roomId": room_id, "username": username})


def encode_chat(event: ChatEvent) -> str:
    return _frame(CHAT, {
        "message": event.message,
        "sender" : event.sender,
        "roomId" : event.room_id,
    })


# ═══════════════════════════════════════════════════════════════════════════════
# Decoding
# ═══════════════════════════════════════════════════════════════════════════════

def _require_str(obj: dict, key: str, where: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise DecodeError(f"{where}: field {key!r} missing or not a string")
    return value


def _decode_chat(payload) -> ChatEvent:
    if not isinstance(payload, dict):
        raise DecodeError("chat: payload is not an object")
    return ChatEvent(
        message=_require_str(payload, "message", "chat"),
        sender =_require_str(payload, "sender",  "chat"),
        room_id=_require_str(payload, "roomId",  "chat"),
    )


def _decode_users(payload) -> PresenceSnapshot:
    if not isinstance(payload, list):
        raise DecodeError("users: payload is not a list")
    entries = []
    for i, item in enumerate(payload):
        if not isinstance(item, dict):
            raise DecodeError(f"users[{i}]: entry is not an object")
        entries.append(PresenceEntry(
            room_id =_require_str(item, "roomId",   f"users[{i}]"),
            username=_require_str(item, "username", f"users[{i}]"),
        ))
    return tuple(entries)


_DECODERS = {
    CHAT : _decode_chat,
    USERS: _decode_users,
}


def decode(frame: Union[str, bytes]) -> Decoded:
    """
    Decode one inbound frame.

    Returns a ChatEvent for ``chat`` frames and a PresenceSnapshot for
    ``users`` frames.  Raises DecodeError (UnknownFrameType for a
    well-formed frame of a type this client does not consume).
    """
    if isinstance(frame, (bytes, bytearray)):
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"frame is not valid UTF-8: {exc}") from exc
    try:
        obj = json.loads(frame)
    except ValueError as exc:
        raise DecodeError(f"frame is not valid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise DecodeError("frame is not a JSON object")

    frame_type = obj.get("type")
    decoder    = _DECODERS.get(frame_type) if isinstance(frame_type, str) else None
    if decoder is None:
        raise UnknownFrameType(frame_type)
    if "payload" not in obj:
        raise DecodeError(f"{frame_type}: payload missing")
    return decoder(obj["payload"])
