"""Storage seams consumed by the coordinator, and their PostgreSQL binding."""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Protocol

import asyncpg

from coordinator.services.errors import ConcurrencyConflict
from shared.models.queue import QueueEntry, QueueStatus, ResourceCapacity, UsageSession
from shared.repositories.queue import QueueRepository, UsageSessionRepository
from shared.repositories.station import StationRepository

logger = logging.getLogger(__name__)


class CapacityOracle(Protocol):
    async def get_capacity(self, station_id: int) -> ResourceCapacity | None: ...


class QueueStore(Protocol):
    """Single source of truth for queue entries and usage sessions."""

    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Make every call inside the block commit or roll back together."""
        ...

    async def get_entry(self, entry_id: int) -> QueueEntry | None: ...

    async def find_active(self, station_id: int, user_id: str) -> QueueEntry | None: ...

    async def find_latest(self, station_id: int, user_id: str) -> QueueEntry | None: ...

    async def get_queued_entries(self, station_id: int) -> list[QueueEntry]: ...

    async def list_active_by_user(self, user_id: str) -> list[QueueEntry]: ...

    async def list_reserved(self) -> list[QueueEntry]: ...

    async def insert_entry(
        self, station_id: int, user_id: str, position: int, estimated_wait_minutes: int, joined_at: datetime
    ) -> QueueEntry: ...

    async def reactivate_entry(
        self, entry_id: int, position: int, estimated_wait_minutes: int, joined_at: datetime
    ) -> QueueEntry | None: ...

    async def mark_reserved(self, entry_id: int, expiry: datetime) -> QueueEntry | None: ...

    async def leave_line(
        self, entry_id: int, status: QueueStatus, expected: QueueStatus
    ) -> QueueEntry | None: ...

    async def mark_warning_sent(self, entry_id: int) -> bool: ...

    async def update_positions(self, updates: list[tuple[int, int, int]]) -> None: ...

    async def average_completed_wait(self, station_id: int, since: datetime) -> float | None: ...

    async def peak_hours(self, station_id: int, since: datetime, limit: int = 3) -> list[int]: ...

    async def open_session(
        self, entry: QueueEntry, started_at: datetime, metrics: dict[str, Any] | None = None
    ) -> UsageSession: ...

    async def find_open_session(self, queue_entry_id: int) -> UsageSession | None: ...

    async def close_session(
        self, session_id: int, ended_at: datetime, metrics: dict[str, Any] | None = None
    ) -> UsageSession | None: ...

    async def list_open_sessions(self, station_id: int) -> list[UsageSession]: ...

    async def list_sessions_by_user(self, user_id: str, limit: int = 10) -> list[UsageSession]: ...

    async def list_sessions_by_station(self, station_id: int, limit: int = 50) -> list[UsageSession]: ...


class PostgresQueueStore(QueueRepository):
    """QueueStore over the asyncpg repositories.

    Unique-index violations mean another process raced past this process's
    per-station lock; they surface as ConcurrencyConflict. ``transaction()``
    (from the repository base) also covers the session repository, which
    shares the pool.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        super().__init__(pool)
        self.sessions = UsageSessionRepository(pool)

    async def ensure_schema(self) -> None:
        await super().ensure_schema()
        logger.info("Queue schema ready")

    async def insert_entry(
        self, station_id: int, user_id: str, position: int, estimated_wait_minutes: int, joined_at: datetime
    ) -> QueueEntry:
        try:
            return await super().insert_entry(
                station_id, user_id, position, estimated_wait_minutes, joined_at
            )
        except asyncpg.UniqueViolationError as e:
            raise ConcurrencyConflict(f"active entry already exists for {user_id}@{station_id}") from e

    async def reactivate_entry(
        self, entry_id: int, position: int, estimated_wait_minutes: int, joined_at: datetime
    ) -> QueueEntry | None:
        try:
            return await super().reactivate_entry(entry_id, position, estimated_wait_minutes, joined_at)
        except asyncpg.UniqueViolationError as e:
            raise ConcurrencyConflict(f"entry {entry_id} collides with another active entry") from e

    async def open_session(
        self, entry: QueueEntry, started_at: datetime, metrics: dict[str, Any] | None = None
    ) -> UsageSession:
        try:
            return await self.sessions.open_session(entry, started_at, metrics)
        except asyncpg.UniqueViolationError as e:
            raise ConcurrencyConflict(f"entry {entry.id} already has an open session") from e

    async def find_open_session(self, queue_entry_id: int) -> UsageSession | None:
        return await self.sessions.find_open(queue_entry_id)

    async def close_session(
        self, session_id: int, ended_at: datetime, metrics: dict[str, Any] | None = None
    ) -> UsageSession | None:
        return await self.sessions.close_session(session_id, ended_at, metrics)

    async def list_open_sessions(self, station_id: int) -> list[UsageSession]:
        return await self.sessions.list_open_by_station(station_id)

    async def list_sessions_by_user(self, user_id: str, limit: int = 10) -> list[UsageSession]:
        return await self.sessions.list_by_user(user_id, limit)

    async def list_sessions_by_station(self, station_id: int, limit: int = 50) -> list[UsageSession]:
        return await self.sessions.list_by_station(station_id, limit)


def build_postgres_backends(
    pool: asyncpg.Pool, *, default_max_queue_length: int = 10, default_average_session_minutes: int = 30
) -> tuple[PostgresQueueStore, StationRepository]:
    """Store and capacity oracle sharing one pool."""
    oracle = StationRepository(
        pool,
        default_max_queue_length=default_max_queue_length,
        default_average_session_minutes=default_average_session_minutes,
    )
    return PostgresQueueStore(pool), oracle
