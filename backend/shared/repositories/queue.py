"""Repository for queue_entries and usage_sessions tables."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any

import asyncpg

from shared.models.queue import QueueEntry, QueueStatus, UsageSession

_ENTRY_COLUMNS = (
    "id, user_id, station_id, status, position, estimated_wait_minutes, "
    "reservation_expiry, warning_sent, joined_at, created_at, updated_at"
)

_SESSION_COLUMNS = (
    "id, queue_entry_id, station_id, user_id, started_at, ended_at, start_metrics, end_metrics"
)

_QUEUED = "('waiting', 'reserved')"
_ACTIVE = "('waiting', 'reserved', 'charging')"

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS queue_entries (
    id                     BIGSERIAL PRIMARY KEY,
    user_id                TEXT NOT NULL,
    station_id             INTEGER NOT NULL,
    status                 VARCHAR(20) NOT NULL DEFAULT 'waiting',
    position               INTEGER,
    estimated_wait_minutes INTEGER,
    reservation_expiry     TIMESTAMPTZ,
    warning_sent           BOOLEAN NOT NULL DEFAULT FALSE,
    joined_at              TIMESTAMPTZ DEFAULT NOW(),
    created_at             TIMESTAMPTZ DEFAULT NOW(),
    updated_at             TIMESTAMPTZ DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS queue_entries_station_status_idx
    ON queue_entries (station_id, status);
CREATE INDEX IF NOT EXISTS queue_entries_expiry_idx
    ON queue_entries (reservation_expiry) WHERE status = 'reserved';
CREATE UNIQUE INDEX IF NOT EXISTS queue_entries_user_station_active
    ON queue_entries (user_id, station_id) WHERE status IN {_ACTIVE};

CREATE TABLE IF NOT EXISTS usage_sessions (
    id             BIGSERIAL PRIMARY KEY,
    queue_entry_id BIGINT NOT NULL REFERENCES queue_entries(id),
    station_id     INTEGER NOT NULL,
    user_id        TEXT NOT NULL,
    started_at     TIMESTAMPTZ NOT NULL,
    ended_at       TIMESTAMPTZ,
    start_metrics  JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    end_metrics    JSONB NOT NULL DEFAULT '{{}}'::jsonb
);
CREATE INDEX IF NOT EXISTS usage_sessions_station_idx ON usage_sessions (station_id);
CREATE UNIQUE INDEX IF NOT EXISTS usage_sessions_open_entry
    ON usage_sessions (queue_entry_id) WHERE ended_at IS NULL;
"""


def _session_from_row(row: asyncpg.Record) -> UsageSession:
    data = dict(row)
    for key in ("start_metrics", "end_metrics"):
        value = data.get(key)
        data[key] = json.loads(value) if isinstance(value, str) else (value or {})
    return UsageSession(**data)


# (pool, owning task, connection) of the transaction open in the current task
_bound: ContextVar[tuple[asyncpg.Pool, asyncio.Task | None, asyncpg.Connection] | None] = ContextVar(
    "queue_transaction", default=None
)


class _PoolRepository:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    def _bound_connection(self) -> asyncpg.Connection | None:
        bound = _bound.get()
        # Tasks spawned inside a transaction inherit the context; they must not share its connection
        if bound is None or bound[0] is not self.pool or bound[1] is not asyncio.current_task():
            return None
        return bound[2]

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        conn = self._bound_connection()
        if conn is not None:
            yield conn
            return
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Run every repository call made in the block on one connection, in one transaction.

        Repositories sharing the pool join the same transaction. Nested blocks
        join the outer one.
        """
        if self._bound_connection() is not None:
            yield
            return
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                token = _bound.set((self.pool, asyncio.current_task(), conn))
                try:
                    yield
                finally:
                    _bound.reset(token)


class QueueRepository(_PoolRepository):
    """Pure SQL operations for queue_entries."""

    async def ensure_schema(self) -> None:
        """Create queue tables and indexes if they do not exist."""
        async with self._connection() as conn:
            await conn.execute(SCHEMA_SQL)

    async def get_entry(self, entry_id: int) -> QueueEntry | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ENTRY_COLUMNS} FROM queue_entries WHERE id = $1",
                entry_id,
            )
            return QueueEntry(**dict(row)) if row else None

    async def find_active(self, station_id: int, user_id: str) -> QueueEntry | None:
        """Find the non-terminal entry for a user at a station."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ENTRY_COLUMNS} FROM queue_entries "
                f"WHERE station_id = $1 AND user_id = $2 AND status IN {_ACTIVE}",
                station_id,
                user_id,
            )
            return QueueEntry(**dict(row)) if row else None

    async def find_latest(self, station_id: int, user_id: str) -> QueueEntry | None:
        """Most recent entry for the pair regardless of status."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ENTRY_COLUMNS} FROM queue_entries "
                "WHERE station_id = $1 AND user_id = $2 "
                "ORDER BY created_at DESC, id DESC LIMIT 1",
                station_id,
                user_id,
            )
            return QueueEntry(**dict(row)) if row else None

    async def get_queued_entries(self, station_id: int) -> list[QueueEntry]:
        """Entries holding a position (waiting/reserved), ordered by position."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_ENTRY_COLUMNS} FROM queue_entries "
                f"WHERE station_id = $1 AND status IN {_QUEUED} "
                "ORDER BY position ASC, joined_at ASC",
                station_id,
            )
            return [QueueEntry(**dict(row)) for row in rows]

    async def list_active_by_user(self, user_id: str) -> list[QueueEntry]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_ENTRY_COLUMNS} FROM queue_entries "
                f"WHERE user_id = $1 AND status IN {_ACTIVE} "
                "ORDER BY created_at DESC",
                user_id,
            )
            return [QueueEntry(**dict(row)) for row in rows]

    async def list_reserved(self) -> list[QueueEntry]:
        """All reserved entries across stations, soonest expiry first."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_ENTRY_COLUMNS} FROM queue_entries "
                "WHERE status = 'reserved' ORDER BY reservation_expiry ASC"
            )
            return [QueueEntry(**dict(row)) for row in rows]

    async def insert_entry(
        self,
        station_id: int,
        user_id: str,
        position: int,
        estimated_wait_minutes: int,
        joined_at: datetime,
    ) -> QueueEntry:
        """Insert a waiting entry. Raises UniqueViolationError if the pair is already active."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO queue_entries
                    (station_id, user_id, status, position, estimated_wait_minutes, joined_at)
                VALUES ($1, $2, 'waiting', $3, $4, $5)
                RETURNING {_ENTRY_COLUMNS}
                """,
                station_id,
                user_id,
                position,
                estimated_wait_minutes,
                joined_at,
            )
            return QueueEntry(**dict(row))

    async def reactivate_entry(
        self,
        entry_id: int,
        position: int,
        estimated_wait_minutes: int,
        joined_at: datetime,
    ) -> QueueEntry | None:
        """Reset a terminal entry back to waiting. Returns None if it is still active."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE queue_entries SET
                    status = 'waiting',
                    position = $2,
                    estimated_wait_minutes = $3,
                    reservation_expiry = NULL,
                    warning_sent = FALSE,
                    joined_at = $4,
                    updated_at = NOW()
                WHERE id = $1 AND status IN ('completed', 'cancelled')
                RETURNING {_ENTRY_COLUMNS}
                """,
                entry_id,
                position,
                estimated_wait_minutes,
                joined_at,
            )
            return QueueEntry(**dict(row)) if row else None

    async def mark_reserved(self, entry_id: int, expiry: datetime) -> QueueEntry | None:
        """Move a waiting entry to reserved. Returns None if it was not waiting."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE queue_entries SET
                    status = 'reserved',
                    reservation_expiry = $2,
                    warning_sent = FALSE,
                    updated_at = NOW()
                WHERE id = $1 AND status = 'waiting'
                RETURNING {_ENTRY_COLUMNS}
                """,
                entry_id,
                expiry,
            )
            return QueueEntry(**dict(row)) if row else None

    async def leave_line(
        self, entry_id: int, status: QueueStatus, expected: QueueStatus
    ) -> QueueEntry | None:
        """Move an entry out of the line into *status*.

        Clears position and reservation expiry. The update only applies while
        the entry is still in *expected*; returns None otherwise.
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE queue_entries SET
                    status = $2,
                    position = NULL,
                    reservation_expiry = NULL,
                    updated_at = NOW()
                WHERE id = $1 AND status = $3
                RETURNING {_ENTRY_COLUMNS}
                """,
                entry_id,
                status.value,
                expected.value,
            )
            return QueueEntry(**dict(row)) if row else None

    async def mark_warning_sent(self, entry_id: int) -> bool:
        """Flag the pre-expiry warning as sent. True only for the first caller."""
        async with self._connection() as conn:
            result = await conn.execute(
                "UPDATE queue_entries SET warning_sent = TRUE, updated_at = NOW() "
                "WHERE id = $1 AND status = 'reserved' AND warning_sent = FALSE",
                entry_id,
            )
            return result == "UPDATE 1"

    async def update_positions(self, updates: list[tuple[int, int, int]]) -> None:
        """Apply (entry_id, position, estimated_wait_minutes) triples in one transaction."""
        if not updates:
            return
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.executemany(
                    "UPDATE queue_entries SET position = $2, estimated_wait_minutes = $3, "
                    "updated_at = NOW() WHERE id = $1",
                    updates,
                )

    async def average_completed_wait(self, station_id: int, since: datetime) -> float | None:
        async with self._connection() as conn:
            value = await conn.fetchval(
                "SELECT AVG(estimated_wait_minutes) FROM queue_entries "
                "WHERE station_id = $1 AND status = 'completed' AND created_at >= $2",
                station_id,
                since,
            )
            return float(value) if value is not None else None

    async def peak_hours(self, station_id: int, since: datetime, limit: int = 3) -> list[int]:
        """Hours of day with the most joins since *since*, busiest first."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT EXTRACT(HOUR FROM joined_at)::int AS hour, COUNT(*) AS count "
                "FROM queue_entries WHERE station_id = $1 AND joined_at >= $2 "
                "GROUP BY 1 ORDER BY count DESC, hour ASC LIMIT $3",
                station_id,
                since,
                limit,
            )
            return [row["hour"] for row in rows]


class UsageSessionRepository(_PoolRepository):
    """Pure SQL operations for usage_sessions."""

    async def open_session(
        self, entry: QueueEntry, started_at: datetime, metrics: dict[str, Any] | None = None
    ) -> UsageSession:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO usage_sessions
                    (queue_entry_id, station_id, user_id, started_at, start_metrics)
                VALUES ($1, $2, $3, $4, $5::jsonb)
                RETURNING {_SESSION_COLUMNS}
                """,
                entry.id,
                entry.station_id,
                entry.user_id,
                started_at,
                json.dumps(metrics or {}),
            )
            return _session_from_row(row)

    async def find_open(self, queue_entry_id: int) -> UsageSession | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SESSION_COLUMNS} FROM usage_sessions "
                "WHERE queue_entry_id = $1 AND ended_at IS NULL",
                queue_entry_id,
            )
            return _session_from_row(row) if row else None

    async def close_session(
        self, session_id: int, ended_at: datetime, metrics: dict[str, Any] | None = None
    ) -> UsageSession | None:
        """Close an open session. Returns None if it was already closed."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE usage_sessions SET ended_at = $2, end_metrics = $3::jsonb
                WHERE id = $1 AND ended_at IS NULL
                RETURNING {_SESSION_COLUMNS}
                """,
                session_id,
                ended_at,
                json.dumps(metrics or {}),
            )
            return _session_from_row(row) if row else None

    async def list_open_by_station(self, station_id: int) -> list[UsageSession]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_SESSION_COLUMNS} FROM usage_sessions "
                "WHERE station_id = $1 AND ended_at IS NULL ORDER BY started_at ASC, id ASC",
                station_id,
            )
            return [_session_from_row(row) for row in rows]

    async def list_by_user(self, user_id: str, limit: int = 10) -> list[UsageSession]:
        """A user's sessions across stations, newest first."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_SESSION_COLUMNS} FROM usage_sessions "
                "WHERE user_id = $1 ORDER BY started_at DESC, id DESC LIMIT $2",
                user_id,
                limit,
            )
            return [_session_from_row(row) for row in rows]

    async def list_by_station(self, station_id: int, limit: int = 50) -> list[UsageSession]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_SESSION_COLUMNS} FROM usage_sessions "
                "WHERE station_id = $1 ORDER BY started_at DESC, id DESC LIMIT $2",
                station_id,
                limit,
            )
            return [_session_from_row(row) for row in rows]
