"""
roomchat_errors.py
──────────────────
Exception taxonomy for the chat session core.

  ChatError
  ├── TransportError      socket / network failure  (reported, never fatal)
  ├── DecodeError         malformed inbound frame   (logged, discarded)
  │   └── UnknownFrameType
  ├── UserInputError      rejected user intent      (shown as a warning)
  │   ├── NotConnected
  │   ├── NotReady
  │   ├── NoActiveRoom
  │   └── EmptyMessage
  ├── RoomMismatch        append for a room that is not active
  └── StorageError        local log could not be persisted
"""


class ChatError(Exception):
    """Base class for every error raised by roomchat."""


class TransportError(ChatError):
    """The socket failed.  Delivered through the transport event stream."""


class DecodeError(ChatError):
    """An inbound frame could not be decoded into a known event."""


class UnknownFrameType(DecodeError):
    def __init__(self, frame_type):
        super().__init__(f"unknown frame type {frame_type!r}")
        self.frame_type = frame_type


class UserInputError(ChatError):
    """A user intent that cannot be carried out right now."""

    default_message = "Request rejected."

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)


class NotConnected(UserInputError):
    default_message = "Connection not established. Please wait or reconnect."


class NotReady(UserInputError):
    default_message = "Not connected to the chat server yet. Please wait or reconnect."


class NoActiveRoom(UserInputError):
    default_message = "You must join or create a room before sending a message."


class EmptyMessage(UserInputError):
    default_message = "Cannot send an empty message."


class RoomMismatch(ChatError):
    def __init__(self, room_id, active_room):
        super().__init__(
            f"append for room {room_id!r} while {active_room!r} is active"
        )
        self.room_id     = room_id
        self.active_room = active_room


class StorageError(ChatError):
    """The durable local storage rejected a read or write."""
