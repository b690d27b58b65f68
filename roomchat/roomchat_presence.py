"""
roomchat_presence.py
────────────────────
Latest presence snapshot reported by the server.  Last write wins; no
merging, no history.
"""

from __future__ import annotations

from typing import Iterable, List

from roomchat_protocol import PresenceEntry, PresenceSnapshot


class PresenceTracker:

    def __init__(self):
        self._snapshot: PresenceSnapshot = ()

    @property
    def snapshot(self) -> PresenceSnapshot:
        return self._snapshot

    def replace(self, snapshot: Iterable[PresenceEntry]):
        self._snapshot = tuple(snapshot)

    def users_in(self, room_id) -> List[str]:
        return [e.username for e in self._snapshot if e.room_id == room_id]
