"""In-memory stand-ins for the store, capacity oracle, emitter and clock."""

from __future__ import annotations

from collections import Counter
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from copy import deepcopy
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

from coordinator.services.errors import ConcurrencyConflict
from coordinator.services.notifications import QueueEvent, QueueEventType
from shared.models.queue import (
    ACTIVE_STATUSES,
    QUEUED_STATUSES,
    TERMINAL_STATUSES,
    QueueEntry,
    QueueStatus,
    ResourceCapacity,
    UsageSession,
)


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class StaticCapacityOracle:
    def __init__(self, *capacities: ResourceCapacity):
        self.capacities = {c.station_id: c for c in capacities}
        self.calls = 0

    async def get_capacity(self, station_id: int) -> ResourceCapacity | None:
        self.calls += 1
        return self.capacities.get(station_id)


class RecordingEmitter:
    def __init__(self, fail: bool = False):
        self.events: list[QueueEvent] = []
        self.fail = fail

    async def emit(self, event: QueueEvent) -> None:
        if self.fail:
            raise RuntimeError("emitter down")
        self.events.append(event)

    def types(self) -> list[QueueEventType]:
        return [e.type for e in self.events]

    def for_user(self, user_id: str) -> list[QueueEventType]:
        return [e.type for e in self.events if e.user_id == user_id]

    def clear(self) -> None:
        self.events.clear()


class MemoryQueueStore:
    """Dict-backed QueueStore with the same conditional-update rules as the SQL."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock or FakeClock()
        self.entries: dict[int, QueueEntry] = {}
        self.sessions: dict[int, UsageSession] = {}
        self._next_entry = 1
        self._next_session = 1
        self.insert_conflicts = 0
        # operation name -> number of upcoming calls that raise ConnectionError
        self.fail_on: dict[str, int] = {}

    # helpers

    def _maybe_fail(self, operation: str) -> None:
        if self.fail_on.get(operation):
            self.fail_on[operation] -= 1
            raise ConnectionError(f"{operation}: store unavailable")

    def _copy(self, entry: QueueEntry | None) -> QueueEntry | None:
        return replace(entry) if entry is not None else None

    def _touch(self, entry: QueueEntry) -> QueueEntry:
        entry.updated_at = self.clock()
        return replace(entry)

    def _active_for(self, station_id: int, user_id: str) -> QueueEntry | None:
        for entry in self.entries.values():
            if entry.station_id == station_id and entry.user_id == user_id and entry.status in ACTIVE_STATUSES:
                return entry
        return None

    def queued(self, station_id: int) -> list[QueueEntry]:
        return sorted(
            (e for e in self.entries.values() if e.station_id == station_id and e.status in QUEUED_STATUSES),
            key=lambda e: e.position or 0,
        )

    # QueueStore

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        entries = deepcopy(self.entries)
        sessions = deepcopy(self.sessions)
        counters = (self._next_entry, self._next_session)
        try:
            yield
        except BaseException:
            self.entries.clear()
            self.entries.update(entries)
            self.sessions.clear()
            self.sessions.update(sessions)
            self._next_entry, self._next_session = counters
            raise

    async def get_entry(self, entry_id: int) -> QueueEntry | None:
        self._maybe_fail("get_entry")
        return self._copy(self.entries.get(entry_id))

    async def find_active(self, station_id: int, user_id: str) -> QueueEntry | None:
        return self._copy(self._active_for(station_id, user_id))

    async def find_latest(self, station_id: int, user_id: str) -> QueueEntry | None:
        mine = [e for e in self.entries.values() if e.station_id == station_id and e.user_id == user_id]
        return self._copy(max(mine, key=lambda e: e.id)) if mine else None

    async def get_queued_entries(self, station_id: int) -> list[QueueEntry]:
        return [replace(e) for e in self.queued(station_id)]

    async def list_active_by_user(self, user_id: str) -> list[QueueEntry]:
        mine = [e for e in self.entries.values() if e.user_id == user_id and e.status in ACTIVE_STATUSES]
        return [replace(e) for e in sorted(mine, key=lambda e: (e.joined_at, e.id), reverse=True)]

    async def list_reserved(self) -> list[QueueEntry]:
        return [replace(e) for e in self.entries.values() if e.status == QueueStatus.RESERVED]

    async def insert_entry(
        self, station_id: int, user_id: str, position: int, estimated_wait_minutes: int, joined_at: datetime
    ) -> QueueEntry:
        if self.insert_conflicts:
            self.insert_conflicts -= 1
            raise ConcurrencyConflict(f"active entry already exists for {user_id}@{station_id}")
        if self._active_for(station_id, user_id) is not None:
            raise ConcurrencyConflict(f"active entry already exists for {user_id}@{station_id}")
        entry = QueueEntry(
            id=self._next_entry,
            user_id=user_id,
            station_id=station_id,
            status=QueueStatus.WAITING,
            position=position,
            estimated_wait_minutes=estimated_wait_minutes,
            joined_at=joined_at,
            created_at=self.clock(),
            updated_at=self.clock(),
        )
        self._next_entry += 1
        self.entries[entry.id] = entry
        return replace(entry)

    async def reactivate_entry(
        self, entry_id: int, position: int, estimated_wait_minutes: int, joined_at: datetime
    ) -> QueueEntry | None:
        entry = self.entries.get(entry_id)
        if entry is None or entry.status not in TERMINAL_STATUSES:
            return None
        if self._active_for(entry.station_id, entry.user_id) is not None:
            raise ConcurrencyConflict(f"entry {entry_id} collides with another active entry")
        entry.status = QueueStatus.WAITING
        entry.position = position
        entry.estimated_wait_minutes = estimated_wait_minutes
        entry.reservation_expiry = None
        entry.warning_sent = False
        entry.joined_at = joined_at
        return self._touch(entry)

    async def mark_reserved(self, entry_id: int, expiry: datetime) -> QueueEntry | None:
        entry = self.entries.get(entry_id)
        if entry is None or entry.status != QueueStatus.WAITING:
            return None
        entry.status = QueueStatus.RESERVED
        entry.reservation_expiry = expiry
        entry.warning_sent = False
        return self._touch(entry)

    async def leave_line(self, entry_id: int, status: QueueStatus, expected: QueueStatus) -> QueueEntry | None:
        self._maybe_fail("leave_line")
        entry = self.entries.get(entry_id)
        if entry is None or entry.status != expected:
            return None
        entry.status = status
        entry.position = None
        entry.reservation_expiry = None
        return self._touch(entry)

    async def mark_warning_sent(self, entry_id: int) -> bool:
        entry = self.entries.get(entry_id)
        if entry is None or entry.status != QueueStatus.RESERVED or entry.warning_sent:
            return False
        entry.warning_sent = True
        return True

    async def update_positions(self, updates: list[tuple[int, int, int]]) -> None:
        self._maybe_fail("update_positions")
        for entry_id, position, wait in updates:
            entry = self.entries[entry_id]
            entry.position = position
            entry.estimated_wait_minutes = wait

    async def average_completed_wait(self, station_id: int, since: datetime) -> float | None:
        waits = [
            e.estimated_wait_minutes
            for e in self.entries.values()
            if e.station_id == station_id
            and e.status == QueueStatus.COMPLETED
            and e.created_at >= since
            and e.estimated_wait_minutes is not None
        ]
        return sum(waits) / len(waits) if waits else None

    async def peak_hours(self, station_id: int, since: datetime, limit: int = 3) -> list[int]:
        counts = Counter(
            e.joined_at.hour for e in self.entries.values() if e.station_id == station_id and e.joined_at >= since
        )
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        return [hour for hour, _ in ranked[:limit]]

    async def open_session(
        self, entry: QueueEntry, started_at: datetime, metrics: dict[str, Any] | None = None
    ) -> UsageSession:
        self._maybe_fail("open_session")
        if any(s.queue_entry_id == entry.id and s.is_open for s in self.sessions.values()):
            raise ConcurrencyConflict(f"entry {entry.id} already has an open session")
        session = UsageSession(
            id=self._next_session,
            queue_entry_id=entry.id,
            station_id=entry.station_id,
            user_id=entry.user_id,
            started_at=started_at,
            start_metrics=dict(metrics or {}),
        )
        self._next_session += 1
        self.sessions[session.id] = session
        return replace(session)

    async def find_open_session(self, queue_entry_id: int) -> UsageSession | None:
        for session in self.sessions.values():
            if session.queue_entry_id == queue_entry_id and session.is_open:
                return replace(session)
        return None

    async def close_session(
        self, session_id: int, ended_at: datetime, metrics: dict[str, Any] | None = None
    ) -> UsageSession | None:
        self._maybe_fail("close_session")
        session = self.sessions.get(session_id)
        if session is None or not session.is_open:
            return None
        session.ended_at = ended_at
        session.end_metrics = dict(metrics or {})
        return replace(session)

    async def list_open_sessions(self, station_id: int) -> list[UsageSession]:
        return [replace(s) for s in self.sessions.values() if s.station_id == station_id and s.is_open]

    async def list_sessions_by_user(self, user_id: str, limit: int = 10) -> list[UsageSession]:
        mine = [s for s in self.sessions.values() if s.user_id == user_id]
        return [replace(s) for s in sorted(mine, key=lambda s: (s.started_at, s.id), reverse=True)[:limit]]

    async def list_sessions_by_station(self, station_id: int, limit: int = 50) -> list[UsageSession]:
        here = [s for s in self.sessions.values() if s.station_id == station_id]
        return [replace(s) for s in sorted(here, key=lambda s: (s.started_at, s.id), reverse=True)[:limit]]
