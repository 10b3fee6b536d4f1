"""Data models for queue_entries, usage_sessions and station capacity."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class QueueStatus(str, Enum):
    """Lifecycle states of a queue entry."""

    WAITING = "waiting"
    RESERVED = "reserved"
    CHARGING = "charging"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_queued(self) -> bool:
        """Queued entries hold a position in the line."""
        return self in QUEUED_STATUSES


ACTIVE_STATUSES = frozenset({QueueStatus.WAITING, QueueStatus.RESERVED, QueueStatus.CHARGING})
QUEUED_STATUSES = frozenset({QueueStatus.WAITING, QueueStatus.RESERVED})
TERMINAL_STATUSES = frozenset({QueueStatus.COMPLETED, QueueStatus.CANCELLED})


@dataclass
class QueueEntry:
    """Queue entry record."""

    id: int
    user_id: str
    station_id: int
    status: QueueStatus
    position: int | None = None
    estimated_wait_minutes: int | None = None
    reservation_expiry: datetime | None = None
    warning_sent: bool = False
    joined_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        # asyncpg hands back plain strings for the status column
        if not isinstance(self.status, QueueStatus):
            self.status = QueueStatus(self.status)


@dataclass
class UsageSession:
    """Charging session opened when an entry starts charging."""

    id: int
    queue_entry_id: int
    station_id: int
    user_id: str
    started_at: datetime
    ended_at: datetime | None = None
    start_metrics: dict[str, Any] = field(default_factory=dict)
    end_metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


@dataclass
class ResourceCapacity:
    """Read-only view of a station's queueing attributes."""

    station_id: int
    is_active: bool = True
    is_open: bool = True
    max_queue_length: int = 10
    average_session_minutes: int = 30
    owner_id: str | None = None

    @property
    def accepting(self) -> bool:
        return self.is_active and self.is_open
