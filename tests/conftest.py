"""
Shared fixtures for the roomchat test suite.

The session is driven with a fake connection factory: every connection it
creates is recorded, frames it sends are captured, and tests push synthetic
TransportEvents straight into ChatSession.handle_event().
"""

import json

import pytest

from roomchat_errors import NotConnected
from roomchat_presence import PresenceTracker
from roomchat_session import ChatSession
from roomchat_store import LocalStorage, RoomMessageStore
from roomchat_transport import CLOSE, ERROR, MESSAGE, OPEN, TransportEvent


class FakeConnection:
    """Stand-in for WebSocketConnection that never touches the network."""

    def __init__(self, url, conn_id, emit):
        self.url     = url
        self.conn_id = conn_id
        self.emit    = emit
        self.sent    = []
        self.opened  = False
        self.closed  = False
        self.is_open = False

    def open(self):
        self.opened = True

    def send(self, frame):
        if not self.is_open or self.closed:
            raise NotConnected()
        self.sent.append(frame)

    def close(self):
        self.closed  = True
        self.is_open = False

    # ── helpers for tests ─────────────────────────────────────────────────────

    def sent_json(self):
        return [json.loads(f) for f in self.sent]


class FakeFactory:
    def __init__(self):
        self.connections = []

    def __call__(self, url, conn_id, emit):
        conn = FakeConnection(url, conn_id, emit)
        self.connections.append(conn)
        return conn

    @property
    def current(self):
        return self.connections[-1]

    def live(self):
        """Connections opened and not yet closed."""
        return [c for c in self.connections if c.opened and not c.closed]


def server_open(session, conn):
    conn.is_open = True
    session.handle_event(TransportEvent(OPEN, conn.conn_id))


def server_frame(session, conn, obj):
    raw = obj if isinstance(obj, (str, bytes)) else json.dumps(obj)
    session.handle_event(TransportEvent(MESSAGE, conn.conn_id, raw))


def server_error(session, conn, exc):
    session.handle_event(TransportEvent(ERROR, conn.conn_id, exc))


def server_close(session, conn):
    conn.is_open = False
    session.handle_event(TransportEvent(CLOSE, conn.conn_id))


def chat_frame(message, sender, room_id):
    return {"type": "chat", "payload": {"message": message, "sender": sender, "roomId": room_id}}


@pytest.fixture
def storage():
    st = LocalStorage(":memory:")
    yield st
    st.close()


@pytest.fixture
def store(storage):
    return RoomMessageStore(storage)


@pytest.fixture
def factory():
    return FakeFactory()


@pytest.fixture
def events():
    return []


@pytest.fixture
def make_session(store, factory, events):
    def _make(username="alice", room_id="r1", **kw):
        return ChatSession(
            url="ws://test.invalid",
            store=store,
            presence=PresenceTracker(),
            username=username,
            room_id=room_id,
            connection_factory=factory,
            on_event=events.append,
            **kw,
        )
    return _make


@pytest.fixture
def ready_session(make_session, factory):
    """Session in room r1 as alice, connected and joined."""
    session = make_session()
    session.start()
    server_open(session, factory.current)
    return session
