"""Shared data models for the charging queue services."""

from .queue import (
    ACTIVE_STATUSES,
    QUEUED_STATUSES,
    TERMINAL_STATUSES,
    QueueEntry,
    QueueStatus,
    ResourceCapacity,
    UsageSession,
)

__all__ = [
    "ACTIVE_STATUSES",
    "QUEUED_STATUSES",
    "TERMINAL_STATUSES",
    "QueueEntry",
    "QueueStatus",
    "ResourceCapacity",
    "UsageSession",
]
