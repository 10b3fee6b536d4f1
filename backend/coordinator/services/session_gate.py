"""Session gate: moves entries into and out of charging."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from coordinator.services.errors import ConcurrencyConflict, NoActiveReservation, NotFound
from coordinator.services.state_machine import ensure_transition
from coordinator.services.store import QueueStore
from coordinator.services.timers import ReservationTimer
from shared.models.queue import QueueEntry, QueueStatus, UsageSession

logger = logging.getLogger(__name__)

STARTABLE = (QueueStatus.WAITING, QueueStatus.RESERVED)


class SessionGate:
    def __init__(
        self,
        store: QueueStore,
        timers: ReservationTimer,
        *,
        clock: Callable[[], datetime],
    ) -> None:
        self.store = store
        self.timers = timers
        self._clock = clock

    async def start(self, entry: QueueEntry | None, metrics: dict[str, Any] | None = None) -> UsageSession:
        """Start charging for a waiting or reserved entry.

        Raises NoActiveReservation when the entry is missing or not startable.
        """
        if entry is None or entry.status not in STARTABLE:
            raise NoActiveReservation("join the queue before starting a session")
        ensure_transition(entry.status, QueueStatus.CHARGING)

        self.timers.cancel(entry.id)
        charging = await self.store.leave_line(entry.id, QueueStatus.CHARGING, expected=entry.status)
        if charging is None:
            raise ConcurrencyConflict(f"entry {entry.id} changed while starting a session")

        session = await self.store.open_session(charging, self._clock(), metrics)
        logger.info(
            f"Session {session.id} started for {entry.user_id} at station {entry.station_id} "
            f"(from {entry.status.value}, position {entry.position})"
        )
        return session

    async def close(self, entry: QueueEntry, metrics: dict[str, Any] | None = None) -> UsageSession:
        """Close the entry's open session and complete the entry."""
        ensure_transition(entry.status, QueueStatus.COMPLETED)
        session = await self.store.find_open_session(entry.id)
        if session is None:
            raise NotFound(f"no open session for entry {entry.id}")

        closed = await self.store.close_session(session.id, self._clock(), metrics)
        if closed is None:
            raise NotFound(f"session {session.id} already closed")

        completed = await self.store.leave_line(entry.id, QueueStatus.COMPLETED, expected=QueueStatus.CHARGING)
        if completed is None:
            raise ConcurrencyConflict(f"entry {entry.id} changed while stopping its session")

        logger.info(f"Session {closed.id} completed for {entry.user_id} at station {entry.station_id}")
        return closed

    async def stop(self, entry: QueueEntry | None, metrics: dict[str, Any] | None = None) -> UsageSession:
        if entry is None or entry.status != QueueStatus.CHARGING:
            raise NotFound("no charging session to stop")
        return await self.close(entry, metrics)

    async def close_station(self, station_id: int) -> list[tuple[QueueEntry, UsageSession]]:
        """Close every open session at a station and complete the charging entries."""
        closed: list[tuple[QueueEntry, UsageSession]] = []
        for session in await self.store.list_open_sessions(station_id):
            entry = await self.store.get_entry(session.queue_entry_id)
            if entry is not None and entry.status == QueueStatus.CHARGING:
                closed.append((entry, await self.close(entry)))
                continue
            # Orphaned session whose entry already left charging
            ended = await self.store.close_session(session.id, self._clock())
            if ended is not None:
                logger.warning(f"Closed orphaned session {session.id} at station {station_id}")
        return closed
