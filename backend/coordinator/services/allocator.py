"""Position allocation and wait estimates for a station's line."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from shared.models.queue import QueueEntry

DEFAULT_MINIMUM_WAIT = 5


def estimate_wait(position: int, average_minutes: int, minimum_wait: int = DEFAULT_MINIMUM_WAIT) -> int:
    """Minutes until *position* reaches the charger.

    The head only needs the walk-up buffer; everyone else waits one average
    session per party ahead of them on top of it.
    """
    if position <= 1:
        return minimum_wait
    return (position - 1) * average_minutes + minimum_wait


def next_position(entries: Iterable[QueueEntry]) -> int:
    positions = [e.position for e in entries if e.position is not None]
    return max(positions) + 1 if positions else 1


def repack(
    entries: Sequence[QueueEntry],
    average_minutes: int,
    minimum_wait: int = DEFAULT_MINIMUM_WAIT,
) -> list[tuple[QueueEntry, int, int]]:
    """Assign dense positions 1..N in the current order.

    Returns ``(entry, new_position, new_wait)`` for entries whose position or
    wait estimate changed; unchanged entries are left out.
    """
    ordered = sorted(entries, key=lambda e: (e.position or 0, e.id))
    changes: list[tuple[QueueEntry, int, int]] = []
    for position, entry in enumerate(ordered, start=1):
        wait = estimate_wait(position, average_minutes, minimum_wait)
        if entry.position != position or entry.estimated_wait_minutes != wait:
            changes.append((entry, position, wait))
    return changes
