"""
Tests for roomchat_session — the connection / join / dispatch state machine.

Covers:
  - Join sequence on open (exactly one join, current room and name)
  - Chat routing by active room, persistence of routed messages
  - Presence replacement
  - send_message guards (NotReady, NoActiveRoom, EmptyMessage)
  - Connection replacement on room / username change
  - Close / error handling and stale-connection events
"""

import asyncio
import contextlib
import json

import pytest

from conftest import (
    chat_frame, server_close, server_error, server_frame, server_open,
)
from roomchat_errors import EmptyMessage, NoActiveRoom, NotReady, TransportError
from roomchat_protocol import ChatEvent, PresenceEntry
from roomchat_session import ChatSession, ConnectionState
from roomchat_store import room_key
from roomchat_transport import MESSAGE, OPEN, TransportEvent


# =====================================================================
# Join sequence
# =====================================================================


class TestJoinSequence:
    def test_start_opens_one_connection(self, make_session, factory):
        session = make_session()
        session.start()

        assert len(factory.connections) == 1
        assert factory.current.opened
        assert factory.current.url == "ws://test.invalid"
        assert session.state is ConnectionState.CONNECTING
        assert not session.ready

    def test_open_sends_exactly_one_join_then_ready(self, make_session, factory):
        session = make_session(username="alice", room_id="r1")
        session.start()
        server_open(session, factory.current)

        assert factory.current.sent_json() == [
            {"type": "join", "payload": {"roomId": "r1", "username": "alice"}}
        ]
        assert session.state is ConnectionState.READY
        assert session.ready

    def test_join_carries_identity_current_at_open_time(self, make_session, factory):
        """A rename while connecting reconnects; the live socket joins with the new name."""
        session = make_session(username="alice")
        session.start()
        session.set_username("bob")
        server_open(session, factory.current)

        join = factory.current.sent_json()[0]
        assert join["payload"]["username"] == "bob"

    def test_join_without_room_sends_null_room(self, make_session, factory):
        session = make_session(room_id=None)
        session.start()
        server_open(session, factory.current)

        assert factory.current.sent_json()[0]["payload"]["roomId"] is None
        assert session.ready

    def test_state_events_pushed(self, ready_session, events):
        states = [e["content"]["state"] for e in events if e["type"] == "state"]
        assert states == ["connecting", "joining", "ready"]


# =====================================================================
# Inbound chat
# =====================================================================


class TestInboundChat:
    def test_chat_for_active_room_is_logged_and_persisted(self, ready_session, factory, storage):
        server_frame(ready_session, factory.current, chat_frame("hi", "bob", "r1"))

        assert ready_session.messages == (ChatEvent("hi", "bob", "r1"),)
        assert json.loads(storage.get(room_key("r1"))) == [
            {"msg": "hi", "sender": "bob", "roomId": "r1"}
        ]

    def test_chat_for_other_room_changes_nothing(self, make_session, factory, storage):
        session = make_session(room_id="r2")
        session.start()
        server_open(session, factory.current)

        server_frame(session, factory.current, chat_frame("hi", "bob", "r1"))

        assert session.messages == ()
        assert storage.get(room_key("r1")) is None
        assert storage.get(room_key("r2")) is None

    def test_arrival_order_preserved(self, ready_session, factory, storage):
        for i in range(5):
            server_frame(ready_session, factory.current, chat_frame(f"m{i}", "bob", "r1"))
            stored = [d["msg"] for d in json.loads(storage.get(room_key("r1")))]
            assert stored == [m.message for m in ready_session.messages]

        assert [m.message for m in ready_session.messages] == ["m0", "m1", "m2", "m3", "m4"]

    def test_message_event_pushed(self, ready_session, factory, events):
        server_frame(ready_session, factory.current, chat_frame("hi", "bob", "r1"))
        assert events[-1] == {
            "type": "message",
            "content": {"msg": "hi", "sender": "bob", "roomId": "r1"},
        }

    def test_malformed_frames_are_dropped(self, ready_session, factory, storage):
        conn = factory.current
        server_frame(ready_session, conn, "not json")
        server_frame(ready_session, conn, {"type": "chat", "payload": {"message": "x"}})
        server_frame(ready_session, conn, {"type": "mystery", "payload": {}})
        server_frame(ready_session, conn, b"\xff\xfe")

        assert ready_session.messages == ()
        assert ready_session.ready
        assert storage.get(room_key("r1")) is None

    def test_own_message_appears_only_after_echo(self, ready_session, factory):
        ready_session.send_message("hello")
        assert ready_session.messages == ()

        server_frame(ready_session, factory.current, chat_frame("hello", "alice", "r1"))
        assert ready_session.messages == (ChatEvent("hello", "alice", "r1"),)


# =====================================================================
# Presence
# =====================================================================


class TestPresence:
    def test_snapshot_replaced_not_merged(self, ready_session, factory):
        conn = factory.current
        server_frame(ready_session, conn, {"type": "users", "payload": [{"roomId": "r1", "username": "alice"}]})
        server_frame(ready_session, conn, {"type": "users", "payload": [{"roomId": "r1", "username": "bob"}]})

        assert ready_session.active_users == (PresenceEntry("r1", "bob"),)

    def test_users_event_pushed(self, ready_session, factory, events):
        payload = [{"roomId": "r1", "username": "alice"}, {"roomId": "r2", "username": "carol"}]
        server_frame(ready_session, factory.current, {"type": "users", "payload": payload})

        assert events[-1] == {"type": "users", "content": {"users": payload}}


# =====================================================================
# send_message guards
# =====================================================================


class TestSendMessage:
    @pytest.mark.parametrize("text", ["", "   ", "\t\n", "\x00\x01"])
    def test_empty_message_rejected(self, ready_session, factory, text):
        with pytest.raises(EmptyMessage):
            ready_session.send_message(text)
        assert len(factory.current.sent) == 1   # the join only

    def test_not_ready_before_open(self, make_session, factory):
        session = make_session()
        session.start()
        with pytest.raises(NotReady):
            session.send_message("hi")
        assert factory.current.sent == []

    def test_not_ready_before_start(self, make_session, factory):
        session = make_session()
        with pytest.raises(NotReady):
            session.send_message("hi")
        assert factory.connections == []

    def test_no_active_room(self, make_session, factory):
        session = make_session(room_id=None)
        session.start()
        server_open(session, factory.current)

        with pytest.raises(NoActiveRoom):
            session.send_message("hi")
        assert len(factory.current.sent) == 1

    def test_sends_trimmed_chat_with_current_identity(self, ready_session, factory):
        event = ready_session.send_message("  hello there  ")

        assert event == ChatEvent("hello there", "alice", "r1")
        assert factory.current.sent_json()[-1] == {
            "type": "chat",
            "payload": {"message": "hello there", "sender": "alice", "roomId": "r1"},
        }

    def test_message_truncated_to_max_len(self, make_session, factory):
        session = make_session(max_message_len=5)
        session.start()
        server_open(session, factory.current)

        assert session.send_message("abcdefgh").message == "abcde"

    def test_not_ready_after_close(self, ready_session, factory):
        server_close(ready_session, factory.current)
        with pytest.raises(NotReady):
            ready_session.send_message("hi")


# =====================================================================
# Identity / room changes
# =====================================================================


class TestConnectionReplacement:
    def test_room_change_replaces_connection(self, ready_session, factory):
        old = factory.current
        ready_session.set_room("r2")

        assert len(factory.connections) == 2
        assert old.closed
        assert factory.live() == [factory.current]
        assert ready_session.state is ConnectionState.CONNECTING

        server_open(ready_session, factory.current)
        assert factory.current.sent_json()[0]["payload"] == {"roomId": "r2", "username": "alice"}

    def test_username_change_replaces_connection(self, ready_session, factory):
        old = factory.current
        ready_session.set_username("bob")

        assert old.closed
        assert len(factory.live()) == 1
        assert ready_session.username == "bob"

    def test_never_two_open(self, ready_session, factory):
        for name in ("b", "c", "d"):
            ready_session.set_username(name)
            server_open(ready_session, factory.current)
            assert len(factory.live()) == 1
        assert sum(c.closed for c in factory.connections) == 3

    def test_same_values_are_noops(self, ready_session, factory):
        ready_session.set_room("r1")
        ready_session.set_room("  r1 ")
        ready_session.set_username("alice")

        assert len(factory.connections) == 1
        assert ready_session.ready

    def test_blank_username_falls_back_to_placeholder(self, make_session):
        session = make_session(username="   ", default_username="Guest")
        assert session.username == "Guest"

    def test_blank_room_means_no_room(self, ready_session):
        ready_session.set_room("  ")
        assert ready_session.room_id is None

    def test_room_switch_round_trip_restores_log(self, ready_session, factory):
        server_frame(ready_session, factory.current, chat_frame("a1", "bob", "r1"))
        server_frame(ready_session, factory.current, chat_frame("a2", "bob", "r1"))
        before = ready_session.messages

        ready_session.set_room("r2")
        server_open(ready_session, factory.current)
        server_frame(ready_session, factory.current, chat_frame("b1", "bob", "r2"))
        assert [m.message for m in ready_session.messages] == ["b1"]

        ready_session.set_room("r1")
        assert ready_session.messages == before

    def test_room_change_pushes_loaded_history(self, ready_session, factory, events):
        server_frame(ready_session, factory.current, chat_frame("a1", "bob", "r1"))
        ready_session.set_room("r2")
        ready_session.set_room("r1")

        loaded = [e for e in events if e["type"] == "messages"]
        assert loaded[-1]["content"] == {
            "room_id": "r1",
            "messages": [{"msg": "a1", "sender": "bob", "roomId": "r1"}],
        }

    def test_room_change_does_not_report_closed(self, ready_session, events):
        del events[:]
        ready_session.set_room("r2")
        ready_session.set_username("bob")

        states = [e["content"]["state"] for e in events if e["type"] == "state"]
        assert states == ["connecting"]

    def test_room_change_completes_when_storage_unreadable(self, ready_session, factory, storage):
        storage.close()
        ready_session.set_room("r2")

        assert ready_session.room_id == "r2"
        assert ready_session.store.active_room == "r2"
        assert ready_session.messages == ()
        assert len(factory.live()) == 1

        server_open(ready_session, factory.current)
        assert factory.current.sent_json()[0]["payload"]["roomId"] == "r2"
        assert ready_session.ready

    def test_reconnect_keeps_identity(self, ready_session, factory):
        server_close(ready_session, factory.current)
        ready_session.reconnect()
        server_open(ready_session, factory.current)

        assert len(factory.connections) == 2
        assert factory.current.sent_json()[0]["payload"] == {"roomId": "r1", "username": "alice"}


# =====================================================================
# Close / error / stale events
# =====================================================================


class TestLifecycleEvents:
    def test_close_event_moves_to_closed_without_reconnect(self, ready_session, factory):
        server_close(ready_session, factory.current)

        assert ready_session.state is ConnectionState.CLOSED
        assert factory.current.closed
        assert len(factory.connections) == 1

    def test_error_is_reported_and_not_fatal(self, ready_session, factory, events):
        server_error(ready_session, factory.current, TransportError("boom"))

        assert ready_session.ready
        assert events[-1]["type"] == "notice"
        assert "boom" in events[-1]["content"]["text"]

    def test_events_from_superseded_connection_ignored(self, ready_session, factory, storage):
        old = factory.current
        ready_session.set_room("r2")
        server_open(ready_session, factory.current)

        server_frame(ready_session, old, chat_frame("late", "bob", "r2"))
        server_close(ready_session, old)

        assert ready_session.messages == ()
        assert ready_session.ready

    def test_shutdown_closes_connection(self, ready_session, factory):
        ready_session.shutdown()
        assert factory.current.closed
        assert ready_session.state is ConnectionState.CLOSED

    def test_failed_join_send_closes(self, make_session, factory):
        session = make_session()
        session.start()
        # open event arrives but the socket is already unusable
        conn = factory.current
        conn.closed = True
        session.handle_event(TransportEvent(OPEN, conn.conn_id))

        assert session.state is ConnectionState.CLOSED
        assert not session.ready

    def test_failing_on_event_callback_does_not_break_session(self, store, factory):

        def _explode(ev):
            raise RuntimeError("ui bug")

        session = ChatSession("ws://x", store, room_id="r1",
                              connection_factory=factory, on_event=_explode)
        session.start()
        server_open(session, factory.current)
        server_frame(session, factory.current, chat_frame("hi", "bob", "r1"))

        assert session.ready
        assert len(session.messages) == 1


# =====================================================================
# Event pump
# =====================================================================


class TestRunLoop:
    async def test_run_consumes_fed_events_in_order(self, make_session, factory):


        session = make_session()
        session.start()
        conn = factory.current
        conn.is_open = True

        pump = asyncio.create_task(session.run())
        session.feed(TransportEvent(OPEN, conn.conn_id))
        for i in range(3):
            session.feed(TransportEvent(MESSAGE, conn.conn_id,
                                        json.dumps(chat_frame(f"m{i}", "bob", "r1"))))
        for _ in range(10):
            await asyncio.sleep(0)
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump

        assert session.ready
        assert [m.message for m in session.messages] == ["m0", "m1", "m2"]
