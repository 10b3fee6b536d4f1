"""Queue services - positions, reservations, sessions and notifications

The coordinator is the only entry point callers need; the other services are
its collaborators and are exported for wiring and tests.
"""

from .commands import Command, UnknownCommand, dispatch, parse_button_id
from .coordinator import (
    JoinResult,
    LeaveReason,
    QueueCoordinator,
    QueuePolicy,
    QueueStats,
    SessionStarted,
    SessionStopped,
)
from .errors import Outcome, QueueError, QueueErrorKind
from .notifications import FanoutEmitter, LoggingEmitter, PgNotifyEmitter, QueueEvent, QueueEventType
from .store import CapacityOracle, PostgresQueueStore, QueueStore, build_postgres_backends

__all__ = [
    "CapacityOracle",
    "Command",
    "FanoutEmitter",
    "JoinResult",
    "LeaveReason",
    "LoggingEmitter",
    "Outcome",
    "PgNotifyEmitter",
    "PostgresQueueStore",
    "QueueCoordinator",
    "QueueError",
    "QueueErrorKind",
    "QueueEvent",
    "QueueEventType",
    "QueuePolicy",
    "QueueStats",
    "QueueStore",
    "SessionStarted",
    "SessionStopped",
    "UnknownCommand",
    "build_postgres_backends",
    "dispatch",
    "parse_button_id",
]
