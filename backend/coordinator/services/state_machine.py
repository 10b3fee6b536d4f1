"""Allowed queue entry status transitions."""

from __future__ import annotations

from coordinator.services.errors import InvalidTransition
from shared.models.queue import QueueStatus

# waiting/reserved -> completed only happens through an explicit leave(completed)
TRANSITIONS: dict[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.WAITING: frozenset(
        {QueueStatus.RESERVED, QueueStatus.CHARGING, QueueStatus.CANCELLED, QueueStatus.COMPLETED}
    ),
    QueueStatus.RESERVED: frozenset({QueueStatus.CHARGING, QueueStatus.CANCELLED, QueueStatus.COMPLETED}),
    QueueStatus.CHARGING: frozenset({QueueStatus.COMPLETED}),
    QueueStatus.COMPLETED: frozenset(),
    QueueStatus.CANCELLED: frozenset(),
}


def can_transition(current: QueueStatus, target: QueueStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: QueueStatus, target: QueueStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(f"{current.value} -> {target.value} is not allowed")


def leave_status(current: QueueStatus, completed: bool) -> QueueStatus:
    """Terminal status for an entry leaving the line."""
    if current == QueueStatus.CHARGING or completed:
        return QueueStatus.COMPLETED
    return QueueStatus.CANCELLED
