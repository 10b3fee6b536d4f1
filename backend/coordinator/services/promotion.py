"""Line compaction and head-of-line promotion.

Callers must hold the station's lock; nothing here locks on its own.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from coordinator.services.allocator import repack
from coordinator.services.notifications import QueueEvent, QueueEventType
from coordinator.services.store import QueueStore
from coordinator.services.timers import ReservationTimer
from shared.models.queue import QueueEntry, QueueStatus

logger = logging.getLogger(__name__)


class PromotionEngine:
    def __init__(
        self,
        store: QueueStore,
        timers: ReservationTimer,
        *,
        reservation_ttl_minutes: float,
        minimum_wait_minutes: int,
        clock: Callable[[], datetime],
    ) -> None:
        self.store = store
        self.timers = timers
        self.reservation_ttl_minutes = reservation_ttl_minutes
        self.minimum_wait_minutes = minimum_wait_minutes
        self._clock = clock

    async def reserve(self, entry: QueueEntry, ttl_minutes: float) -> QueueEntry | None:
        """Grant a reservation to a waiting entry and arm its timers."""
        expiry = self._clock() + timedelta(minutes=ttl_minutes)
        reserved = await self.store.mark_reserved(entry.id, expiry)
        if reserved is None:
            return None
        self.timers.arm(reserved.id, reserved.station_id, expiry)
        logger.info(
            f"Reserved station {entry.station_id} for {entry.user_id} "
            f"until {expiry.isoformat()} ({ttl_minutes:g} min)"
        )
        return reserved

    async def compact(self, station_id: int, average_minutes: int) -> tuple[list[QueueEntry], list[QueueEvent]]:
        """Re-pack positions to 1..N and recompute waits.

        Returns the line in its new order and a progress event for every
        entry that moved forward.
        """
        queued = await self.store.get_queued_entries(station_id)
        changes = repack(queued, average_minutes, self.minimum_wait_minutes)
        if changes:
            await self.store.update_positions([(e.id, pos, wait) for e, pos, wait in changes])

        events: list[QueueEvent] = []
        for entry, position, wait in changes:
            moved_up = entry.position is not None and position < entry.position
            entry.position = position
            entry.estimated_wait_minutes = wait
            if moved_up:
                events.append(
                    QueueEvent(
                        QueueEventType.QUEUE_PROGRESS,
                        entry.user_id,
                        station_id,
                        {"position": position, "estimated_wait_minutes": wait},
                    )
                )
        queued.sort(key=lambda e: e.position or 0)
        return queued, events

    async def promote(self, station_id: int, line: list[QueueEntry]) -> list[QueueEvent]:
        """Reserve the head of a compacted line if it is still waiting."""
        head = next((e for e in line if e.position == 1), None)
        if head is None or head.status != QueueStatus.WAITING:
            return []

        reserved = await self.reserve(head, self.reservation_ttl_minutes)
        if reserved is None:
            logger.warning(f"Head entry {head.id} at station {station_id} changed before promotion")
            return []
        logger.info(f"Promoted {head.user_id} to the head of station {station_id}")
        return [
            QueueEvent(
                QueueEventType.PROMOTED,
                reserved.user_id,
                station_id,
                {
                    "position": 1,
                    "reservation_expiry": reserved.reservation_expiry,
                    "ttl_minutes": self.reservation_ttl_minutes,
                },
            )
        ]

    async def advance(self, station_id: int, average_minutes: int, *, head_vacated: bool) -> list[QueueEvent]:
        """Compact after a departure and promote when the head left."""
        line, events = await self.compact(station_id, average_minutes)
        if head_vacated:
            events.extend(await self.promote(station_id, line))
        return events
