"""
roomchat_session.py
────────────────────────────────────────────────────────────────────────────────
Session state machine: owns the single current connection, the identity and
the active room, and routes decoded frames to the message store and the
presence tracker.

States
──────
    DISCONNECTED ─start()──────────▶ CONNECTING
    CONNECTING   ─open event───────▶ JOINING ─join sent──▶ READY
    any          ─close event / teardown──▶ CLOSED
    any          ─set_room() / set_username() / reconnect()──▶ CONNECTING

  Changing the room or the username always closes the current connection
  before the replacement is opened, so the server never sees two joins from
  this client at once.  A replaced connection does not report CLOSED; the
  state goes straight to CONNECTING.  There is no automatic reconnect: after a drop the
  session stays CLOSED until the user asks for a new room, a new name, or an
  explicit reconnect.

Event flow
──────────
  Transport connections push TransportEvents through feed(); run() hands
  them to handle_event() one at a time.  Events stamped with an old
  connection id are ignored.

Outward interface
─────────────────
  .messages  .active_users  .ready  .state  .username  .room_id
  .send_message(text)  .set_room(room_id)  .set_username(name)
  on_event({"type": "state" | "message" | "messages" | "users" | "notice",
            "content": {...}})
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable, Optional, Tuple

from roomchat_errors import (
    DecodeError, EmptyMessage, NoActiveRoom, NotConnected, NotReady,
    StorageError, UnknownFrameType,
)
from roomchat_presence import PresenceTracker
from roomchat_protocol import (
    ChatEvent, PresenceSnapshot, decode, encode_chat, encode_join, sanitise,
)
from roomchat_store import RoomMessageStore
from roomchat_transport import CLOSE, ERROR, MESSAGE, OPEN, TransportEvent, WebSocketConnection

_log = logging.getLogger("roomchat.session")

_MAX_USERNAME_LEN = 32
_MAX_MSG_LEN      = 8192


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING   = "connecting"
    JOINING      = "joining"
    READY        = "ready"
    CLOSED       = "closed"


def _clean_room(room_id: Optional[str]) -> Optional[str]:
    if room_id is None:
        return None
    return room_id.strip() or None


class ChatSession:
    """
    Parameters
    ----------
    url                : Resolved server endpoint.
    store              : RoomMessageStore for the per-room logs.
    presence           : PresenceTracker (a fresh one when omitted).
    username           : Initial identity; blank falls back to default_username.
    room_id            : Initial room, None for "no room joined".
    connection_factory : Callable[[url, conn_id, emit], connection]; the
                         connection must offer open(), send(frame), close().
    on_event           : Callable[[dict], None] — state pushed to the UI.
    default_username   : Placeholder identity.
    max_message_len    : Outgoing messages are truncated to this length.
    """

    def __init__(
        self,
        url               : str,
        store             : RoomMessageStore,
        presence          : Optional[PresenceTracker] = None,
        username          : str = "",
        room_id           : Optional[str] = None,
        connection_factory: Callable = WebSocketConnection,
        on_event          : Callable[[dict], None] = lambda ev: None,
        default_username  : str = "Guest",
        max_message_len   : int = _MAX_MSG_LEN,
    ):
        self._url          = url
        self._store        = store
        self._presence     = presence if presence is not None else PresenceTracker()
        self._factory      = connection_factory
        self._on_event     = on_event
        self._default_user = default_username
        self._max_len      = max_message_len

        self._username = self._clean_username(username)
        self._room_id  = _clean_room(room_id)
        self._state    = ConnectionState.DISCONNECTED
        self._conn     = None
        self._conn_seq = 0
        self._events   : asyncio.Queue = asyncio.Queue()

    # ── Outward state ──────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def username(self) -> str:
        return self._username

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    @property
    def messages(self) -> Tuple[ChatEvent, ...]:
        return self._store.messages

    @property
    def active_users(self) -> PresenceSnapshot:
        return self._presence.snapshot

    @property
    def presence(self) -> PresenceTracker:
        return self._presence

    @property
    def store(self) -> RoomMessageStore:
        return self._store

    # ── User intents ───────────────────────────────────────────────────────────

    def start(self):
        """Initial mount: load the room's log and connect."""
        self._activate_room()
        self._connect()

    def set_username(self, name: str):
        name = self._clean_username(name)
        if name == self._username:
            return
        _log.info("[Session]: username %r → %r", self._username, name)
        self._username = name
        self._connect()

    def set_room(self, room_id: Optional[str]):
        room_id = _clean_room(room_id)
        if room_id == self._room_id:
            return
        _log.info("[Session]: room %r → %r", self._room_id, room_id)
        self._room_id = room_id
        self._activate_room()
        self._connect()

    def reconnect(self):
        self._connect()

    def shutdown(self):
        self._close_current()

    def send_message(self, text: str) -> ChatEvent:
        """
        Send a chat message as the current user to the current room.

        The local log is not touched here; the message is appended when the
        server broadcasts it back.
        """
        if not self.ready or self._conn is None:
            raise NotReady()
        if self._room_id is None:
            raise NoActiveRoom()
        body = sanitise(text, self._max_len)
        if not body:
            raise EmptyMessage()
        event = ChatEvent(message=body, sender=self._username, room_id=self._room_id)
        self._conn.send(encode_chat(event))
        return event

    # ── Event stream ───────────────────────────────────────────────────────────

    def feed(self, event: TransportEvent):
        self._events.put_nowait(event)

    async def run(self):
        """Consume transport events until cancelled."""
        while True:
            event = await self._events.get()
            self.handle_event(event)

    def handle_event(self, event: TransportEvent):
        if self._conn is None or event.conn_id != self._conn_seq:
            _log.debug("[Session]: dropped %s from stale connection %d",
                       event.kind, event.conn_id)
            return

        if event.kind == OPEN:
            self._on_open()
        elif event.kind == MESSAGE:
            self._on_frame(event.data)
        elif event.kind == ERROR:
            _log.warning("[Session]: transport error — %s", event.data)
            self._notify("notice", {"level": "error", "text": f"Connection error: {event.data}"})
        elif event.kind == CLOSE:
            _log.info("[Session]: connection %d closed by peer", event.conn_id)
            self._close_current()
        else:
            _log.debug("[Session]: ignoring transport event kind %r", event.kind)

    # ── Internals ──────────────────────────────────────────────────────────────

    def _clean_username(self, name: str) -> str:
        return sanitise(name or "", _MAX_USERNAME_LEN) or self._default_user

    def _set_state(self, state: ConnectionState):
        if state is self._state:
            return
        self._state = state
        self._notify("state", {"state": state.value, "ready": self.ready})

    def _activate_room(self):
        messages = self._store.activate(self._room_id)
        self._notify("messages", {
            "room_id" : self._room_id,
            "messages": [m.to_dict() for m in messages],
        })

    def _close_current(self, replacing: bool = False):
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
        if replacing:
            # state moves straight on to CONNECTING
            return
        if self._state is not ConnectionState.DISCONNECTED or conn is not None:
            self._set_state(ConnectionState.CLOSED)

    def _connect(self):
        self._close_current(replacing=True)
        self._conn_seq += 1
        self._conn = self._factory(self._url, self._conn_seq, self.feed)
        self._set_state(ConnectionState.CONNECTING)
        _log.info("[Session]: connecting (%d) to %s as %r",
                  self._conn_seq, self._url, self._username)
        self._conn.open()

    def _on_open(self):
        self._set_state(ConnectionState.JOINING)
        try:
            # Room and name are read now, not when the connect started.
            self._conn.send(encode_join(self._room_id, self._username))
        except NotConnected as exc:
            _log.warning("[Session]: join could not be sent — %s", exc)
            self._close_current()
            return
        _log.info("[Session]: joined room %r as %r", self._room_id, self._username)
        self._set_state(ConnectionState.READY)

    def _on_frame(self, frame):
        try:
            decoded = decode(frame)
        except UnknownFrameType as exc:
            _log.debug("[Session]: %s", exc)
            return
        except DecodeError as exc:
            _log.warning("[Session]: discarded malformed frame — %s", exc)
            return

        if isinstance(decoded, ChatEvent):
            self._on_chat(decoded)
        else:
            self._presence.replace(decoded)
            self._notify("users", {
                "users": [{"roomId": e.room_id, "username": e.username} for e in decoded],
            })

    def _on_chat(self, event: ChatEvent):
        if self._room_id is None or event.room_id != self._room_id:
            _log.debug("[Session]: chat for room %r ignored (active %r)",
                       event.room_id, self._room_id)
            return
        try:
            self._store.append(self._room_id, event)
        except StorageError as exc:
            _log.error("[Session]: message not stored — %s", exc)
            self._notify("notice", {"level": "error", "text": f"Could not save message: {exc}"})
            return
        self._notify("message", event.to_dict())

    def _notify(self, kind: str, content: dict):
        try:
            self._on_event({"type": kind, "content": content})
        except Exception:
            _log.exception("[Session]: on_event callback failed for %r", kind)
