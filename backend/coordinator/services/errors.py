"""Error kinds and typed results for queue operations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class QueueErrorKind(str, Enum):
    """Caller-facing failure kinds; each maps to a distinct corrective action."""

    RESOURCE_UNAVAILABLE = "resource_unavailable"
    QUEUE_FULL = "queue_full"
    NO_ACTIVE_RESERVATION = "no_active_reservation"
    NOT_FOUND = "not_found"
    CONCURRENCY_CONFLICT = "concurrency_conflict"


class QueueError(Exception):
    """Base class for precondition failures raised inside the coordinator."""

    kind: QueueErrorKind

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind.value)


class ResourceUnavailable(QueueError):
    kind = QueueErrorKind.RESOURCE_UNAVAILABLE


class QueueFull(QueueError):
    kind = QueueErrorKind.QUEUE_FULL


class NoActiveReservation(QueueError):
    kind = QueueErrorKind.NO_ACTIVE_RESERVATION


class NotFound(QueueError):
    kind = QueueErrorKind.NOT_FOUND


class ConcurrencyConflict(QueueError):
    kind = QueueErrorKind.CONCURRENCY_CONFLICT


class InvalidTransition(Exception):
    """Raised when a status change is not allowed by the state machine."""


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a public coordinator operation: a value or an error kind."""

    value: T | None = None
    error: QueueErrorKind | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> Outcome[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, exc: QueueError) -> Outcome[T]:
        return cls(error=exc.kind, message=str(exc))
