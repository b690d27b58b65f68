"""
roomchat_store.py
────────────────────────────────────────────────────────────────────────────────
Durable per-room message logs.

  LocalStorage       SQLite key/value table, one row per key.
  RoomMessageStore   The active room's ordered log of ChatEvents, mirrored to
                     LocalStorage under  chat_<roomId>.

Persistence policy
──────────────────
  Whole-value overwrite, not append-only: every append rewrites the room's
  complete JSON array.  The row is committed before the in-memory log moves,
  so the stored log and the in-memory log are equal after every append.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional, Tuple, Union

from roomchat_errors import RoomMismatch, StorageError
from roomchat_protocol import ChatEvent

_log = logging.getLogger("roomchat.store")

_KEY_PREFIX     = "chat_"
_CORRUPT_PREFIX = "corrupt_"


def room_key(room_id: str) -> str:
    return f"{_KEY_PREFIX}{room_id}"


# ═══════════════════════════════════════════════════════════════════════════════
# SQLite key/value storage
# ═══════════════════════════════════════════════════════════════════════════════

class LocalStorage:
    _SCHEMA = """
    CREATE TABLE IF NOT EXISTS storage (
        key TEXT PRIMARY KEY, value TEXT NOT NULL
    );
    """

    def __init__(self, db_path: Union[str, Path]):
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(self._SCHEMA)
        self._conn.commit()

    def get(self, key: str) -> Optional[str]:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT value FROM storage WHERE key=?", (key,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"could not read {key!r}: {exc}") from exc
        return row[0] if row else None

    def set(self, key: str, value: str):
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO storage VALUES (?,?)", (key, value)
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"could not write {key!r}: {exc}") from exc

    def delete(self, key: str):
        try:
            with self._lock:
                self._conn.execute("DELETE FROM storage WHERE key=?", (key,))
                self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"could not delete {key!r}: {exc}") from exc

    def keys(self, prefix: str = "") -> List[str]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT key FROM storage WHERE substr(key, 1, ?)=? ORDER BY key",
                    (len(prefix), prefix)
                ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"could not list keys: {exc}") from exc
        return [r[0] for r in rows]

    def close(self):
        with self._lock:
            self._conn.close()


# ═══════════════════════════════════════════════════════════════════════════════
# Room message store
# ═══════════════════════════════════════════════════════════════════════════════

class RoomMessageStore:
    """
    Holds the ordered log of the single active room.

    Switching rooms reloads from storage and replaces the in-memory log
    wholesale; logs of different rooms are never merged.
    """

    def __init__(self, storage: LocalStorage):
        self._storage     = storage
        self._active_room : Optional[str] = None
        self._messages    : List[ChatEvent] = []

    @property
    def active_room(self) -> Optional[str]:
        return self._active_room

    @property
    def messages(self) -> Tuple[ChatEvent, ...]:
        return tuple(self._messages)

    def load(self, room_id: Optional[str]) -> List[ChatEvent]:
        """
        Read a room's persisted log.  A missing, unreadable or corrupt log
        reads as empty; a corrupt value is first moved aside to
        corrupt_chat_<roomId> so the next append cannot destroy it.
        """
        if room_id is None:
            return []
        key = room_key(room_id)
        try:
            raw = self._storage.get(key)
        except StorageError as exc:
            _log.error("[Store]: log for %r could not be read — %s", room_id, exc)
            return []
        if raw is None:
            return []
        try:
            return [ChatEvent.from_dict(d) for d in json.loads(raw)]
        except (ValueError, TypeError, KeyError) as exc:
            _log.warning("[Store]: stored log for %r is unreadable — %s", room_id, exc)
            self._quarantine(key, raw)
            return []

    def _quarantine(self, key: str, raw: str):
        aside = f"{_CORRUPT_PREFIX}{key}"
        try:
            self._storage.set(aside, raw)
            self._storage.delete(key)
        except StorageError as exc:
            _log.error("[Store]: could not move %r aside — %s", key, exc)
            return
        _log.warning("[Store]: unreadable value of %r kept as %r", key, aside)

    def activate(self, room_id: Optional[str]) -> Tuple[ChatEvent, ...]:
        self._messages    = self.load(room_id)
        self._active_room = room_id
        _log.debug("[Store]: room %r active, %d message(s)", room_id, len(self._messages))
        return self.messages

    def append(self, room_id: str, event: ChatEvent):
        if room_id is None or room_id != self._active_room:
            raise RoomMismatch(room_id, self._active_room)
        updated = self._messages + [event]
        self._storage.set(
            room_key(room_id),
            json.dumps([e.to_dict() for e in updated], ensure_ascii=False),
        )
        self._messages = updated

    def rooms(self) -> List[str]:
        """Room ids that have a persisted log."""
        return [k[len(_KEY_PREFIX):] for k in self._storage.keys(_KEY_PREFIX)]

    def clear(self, room_id: str):
        self._storage.delete(room_key(room_id))
        if room_id == self._active_room:
            self._messages = []
