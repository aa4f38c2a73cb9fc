"""Persistence for sync session reports."""

from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime

from offsync.records import SyncSession, new_record_id, utc_now
from offsync.store.entry_store import EntryStore, Table


class SyncSessionLog:
    """Opens, closes and lists :class:`SyncSession` reports."""

    def __init__(self, store: EntryStore, clock: Callable[[], datetime] = utc_now):
        self._store = store
        self._clock = clock

    def open(self) -> SyncSession:
        """Create and persist a new open session."""
        now = self._clock()
        session = SyncSession(id=new_record_id(now), started_at=now)
        self._store.put(Table.SYNC_SESSIONS, session.id, session)
        return session

    def close(
        self,
        session: SyncSession,
        item_ids: list[str],
        summary_counts: dict[str, int],
        cancelled: bool = False,
    ) -> SyncSession:
        """Stamp the end time and results onto a session and persist it."""
        closed = replace(
            session,
            ended_at=self._clock(),
            item_ids=tuple(item_ids),
            summary_counts=dict(summary_counts),
            cancelled=cancelled,
        )
        self._store.put(Table.SYNC_SESSIONS, closed.id, closed)
        return closed

    def get(self, session_id: str) -> SyncSession | None:
        session: SyncSession | None = self._store.get(Table.SYNC_SESSIONS, session_id)
        return session

    def recent(self, limit: int = 10) -> list[SyncSession]:
        """Most recent sessions, newest first."""
        sessions = list(self._store.scan(Table.SYNC_SESSIONS, order_by="started_at"))
        return list(itertools.islice(reversed(sessions), limit))

    def count(self) -> int:
        return self._store.count(Table.SYNC_SESSIONS)
