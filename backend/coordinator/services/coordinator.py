"""Queue coordinator: the public face of queueing, reservations and sessions.

Every mutation for a station runs under that station's lock. Events raised
while the lock is held are delivered only after it is released, so a slow
emitter never blocks the line.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from coordinator.services.allocator import DEFAULT_MINIMUM_WAIT, estimate_wait, next_position
from coordinator.services.errors import (
    ConcurrencyConflict,
    NotFound,
    Outcome,
    QueueError,
    QueueFull,
    ResourceUnavailable,
)
from coordinator.services.notifications import (
    LoggingEmitter,
    NotificationEmitter,
    QueueEvent,
    QueueEventType,
    deliver,
)
from coordinator.services.promotion import PromotionEngine
from coordinator.services.session_gate import SessionGate
from coordinator.services.state_machine import leave_status
from coordinator.services.store import CapacityOracle, QueueStore
from coordinator.services.timers import ReservationTimer, RetryPolicy, utcnow
from shared.models.queue import QueueEntry, QueueStatus, ResourceCapacity, UsageSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[list[QueueEvent]], Awaitable[T]]


class LeaveReason(str, Enum):
    USER_CANCELLED = "user_cancelled"
    EXPIRED = "expired"
    COMPLETED = "completed"

    @classmethod
    def coerce(cls, value: LeaveReason | str) -> LeaveReason:
        """Map free-form reasons (chat extras) onto a known reason."""
        try:
            return cls(value)
        except ValueError:
            logger.warning(f"Unknown leave reason {value!r}, treating it as {cls.USER_CANCELLED.value}")
            return cls.USER_CANCELLED


@dataclass
class QueuePolicy:
    """Tunable constants of the queue."""

    reservation_ttl_minutes: float = 15
    warning_lead_minutes: float = 5
    minimum_wait_minutes: int = DEFAULT_MINIMUM_WAIT
    default_average_session_minutes: int = 30
    stats_wait_window_days: int = 7
    stats_peak_window_days: int = 30
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_settings(cls, settings: Any) -> QueuePolicy:
        return cls(
            reservation_ttl_minutes=settings.reservation_ttl_minutes,
            warning_lead_minutes=settings.warning_lead_minutes,
            minimum_wait_minutes=settings.minimum_wait_minutes,
            default_average_session_minutes=settings.default_average_session_minutes,
            retry=RetryPolicy(
                max_attempts=settings.timer_max_retries,
                base_delay=settings.timer_retry_base_seconds,
                max_delay=settings.timer_retry_max_seconds,
            ),
        )


@dataclass
class JoinResult:
    entry_id: int
    position: int | None
    estimated_wait_minutes: int | None
    already_queued: bool = False


@dataclass
class SessionStarted:
    session_id: int
    entry_id: int
    started_at: datetime


@dataclass
class SessionStopped:
    session_id: int
    started_at: datetime
    ended_at: datetime
    start_metrics: dict[str, Any] = field(default_factory=dict)
    end_metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_minutes(self) -> float:
        return (self.ended_at - self.started_at).total_seconds() / 60


@dataclass
class QueueStats:
    station_id: int
    total_in_queue: int
    average_wait_minutes: int
    peak_hours: list[str]
    user_position: int | None = None
    user_estimated_wait: int | None = None


def format_peak_hour(hour: int) -> str:
    return f"{hour:02d}:00-{(hour + 1) % 24:02d}:00"


class QueueCoordinator:
    """Serializes queue operations per station and wires the queue services together."""

    def __init__(
        self,
        store: QueueStore,
        oracle: CapacityOracle,
        emitter: NotificationEmitter | None = None,
        *,
        policy: QueuePolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.oracle = oracle
        self.emitter = emitter or LoggingEmitter()
        self.policy = policy or QueuePolicy()
        self._clock = clock
        self._locks: dict[int, asyncio.Lock] = {}
        self._sweeper: asyncio.Task | None = None

        self.timers = ReservationTimer(
            self._on_warning,
            self._on_expiry,
            warning_lead=timedelta(minutes=self.policy.warning_lead_minutes),
            retry=self.policy.retry,
            clock=clock,
        )
        self.promotion = PromotionEngine(
            store,
            self.timers,
            reservation_ttl_minutes=self.policy.reservation_ttl_minutes,
            minimum_wait_minutes=self.policy.minimum_wait_minutes,
            clock=clock,
        )
        self.sessions = SessionGate(store, self.timers, clock=clock)

    # ============================================
    # Locking / dispatch
    # ============================================

    def _lock(self, station_id: int) -> asyncio.Lock:
        lock = self._locks.get(station_id)
        if lock is None:
            lock = self._locks[station_id] = asyncio.Lock()
        return lock

    async def _run(self, name: str, station_id: int, operation: Operation[T]) -> Outcome[T]:
        """Run *operation* in one store transaction under the station lock, retrying one conflict."""
        for attempt in (1, 2):
            events: list[QueueEvent] = []
            try:
                async with self._lock(station_id):
                    value = await self._apply(station_id, operation, events)
            except ConcurrencyConflict as e:
                if attempt == 1:
                    logger.warning(f"{name} at station {station_id} hit a conflict, retrying: {e}")
                    continue
                logger.error(f"{name} at station {station_id} failed after retry: {e}")
                return Outcome.failure(e)
            except QueueError as e:
                logger.info(f"{name} at station {station_id} rejected: {e.kind.value} ({e})")
                return Outcome.failure(e)

            await deliver(self.emitter, events)
            return Outcome.success(value)
        raise AssertionError("unreachable")

    async def _apply(self, station_id: int, operation: Operation[T], events: list[QueueEvent]) -> T:
        """Commit *operation* atomically; on rollback, line the station's timers up with the store again."""
        try:
            async with self.store.transaction():
                return await operation(events)
        except ConcurrencyConflict:
            await self._restore_station_timers(station_id)
            raise
        except QueueError:
            # Rejected before any write
            raise
        except Exception:
            await self._restore_station_timers(station_id)
            raise

    async def _restore_station_timers(self, station_id: int) -> None:
        try:
            reserved = {e.id: e for e in await self.store.list_reserved() if e.station_id == station_id}
        except Exception as e:
            logger.warning(f"Timer restore for station {station_id} deferred to the sweep: {type(e).__name__}: {e}")
            return
        for entry_id in self.timers.armed_for_station(station_id):
            if entry_id not in reserved:
                self.timers.cancel(entry_id)
        for entry in reserved.values():
            if entry.reservation_expiry is not None and not self.timers.is_armed(entry.id):
                self.timers.arm(entry.id, station_id, entry.reservation_expiry, warn=not entry.warning_sent)

    async def _average_minutes(self, station_id: int) -> int:
        capacity = await self.oracle.get_capacity(station_id)
        if capacity is None:
            return self.policy.default_average_session_minutes
        return capacity.average_session_minutes

    async def _accepting_capacity(self, station_id: int) -> ResourceCapacity:
        capacity = await self.oracle.get_capacity(station_id)
        if capacity is None:
            raise ResourceUnavailable(f"station {station_id} does not exist")
        if not capacity.accepting:
            raise ResourceUnavailable(f"station {station_id} is not accepting users")
        return capacity

    # ============================================
    # Public operations
    # ============================================

    async def join(self, user_id: str, station_id: int) -> Outcome[JoinResult]:
        async def op(events: list[QueueEvent]) -> JoinResult:
            capacity = await self._accepting_capacity(station_id)

            existing = await self.store.find_active(station_id, user_id)
            if existing is not None:
                return JoinResult(
                    existing.id, existing.position, existing.estimated_wait_minutes, already_queued=True
                )

            queued = await self.store.get_queued_entries(station_id)
            if len(queued) >= capacity.max_queue_length:
                raise QueueFull(f"station {station_id} queue is full ({capacity.max_queue_length})")

            position = next_position(queued)
            wait = estimate_wait(position, capacity.average_session_minutes, self.policy.minimum_wait_minutes)
            now = self._clock()

            latest = await self.store.find_latest(station_id, user_id)
            if latest is not None and not latest.status.is_active:
                entry = await self.store.reactivate_entry(latest.id, position, wait, now)
                if entry is None:
                    raise ConcurrencyConflict(f"entry {latest.id} was reactivated concurrently")
            else:
                entry = await self.store.insert_entry(station_id, user_id, position, wait, now)

            logger.info(f"{user_id} joined station {station_id} at position {position} (wait {wait} min)")
            events.append(
                QueueEvent(
                    QueueEventType.JOINED,
                    user_id,
                    station_id,
                    {
                        "position": position,
                        "estimated_wait_minutes": wait,
                        "owner_id": capacity.owner_id,
                    },
                )
            )
            return JoinResult(entry.id, position, wait)

        return await self._run("join", station_id, op)

    async def leave(
        self, user_id: str, station_id: int, reason: LeaveReason | str = LeaveReason.USER_CANCELLED
    ) -> Outcome[bool]:
        reason = LeaveReason.coerce(reason)

        async def op(events: list[QueueEvent]) -> bool:
            entry = await self.store.find_active(station_id, user_id)
            if entry is None:
                raise NotFound(f"{user_id} has no active entry at station {station_id}")

            self.timers.cancel(entry.id)
            if entry.status == QueueStatus.CHARGING:
                session = await self.sessions.close(entry)
                events.append(self._session_completed_event(entry, session))
            else:
                final = leave_status(entry.status, reason == LeaveReason.COMPLETED)
                left = await self.store.leave_line(entry.id, final, expected=entry.status)
                if left is None:
                    raise ConcurrencyConflict(f"entry {entry.id} changed while leaving")

            average = await self._average_minutes(station_id)
            events.extend(await self.promotion.advance(station_id, average, head_vacated=entry.position == 1))
            events.append(
                QueueEvent(
                    QueueEventType.LEFT,
                    user_id,
                    station_id,
                    {"reason": reason.value, "previous_status": entry.status.value},
                )
            )
            logger.info(f"{user_id} left station {station_id} ({reason.value})")
            return True

        return await self._run("leave", station_id, op)

    async def reserve(self, user_id: str, station_id: int, ttl_minutes: float | None = None) -> Outcome[bool]:
        ttl = ttl_minutes if ttl_minutes is not None else self.policy.reservation_ttl_minutes

        async def op(events: list[QueueEvent]) -> bool:
            entry = await self.store.find_active(station_id, user_id)
            if entry is None:
                raise NotFound(f"{user_id} has no active entry at station {station_id}")
            if entry.position != 1 or entry.status != QueueStatus.WAITING:
                logger.info(
                    f"Reserve refused for {user_id} at station {station_id}: "
                    f"status={entry.status.value}, position={entry.position}"
                )
                return False

            reserved = await self.promotion.reserve(entry, ttl)
            if reserved is None:
                raise ConcurrencyConflict(f"entry {entry.id} changed while reserving")
            events.append(
                QueueEvent(
                    QueueEventType.RESERVED,
                    user_id,
                    station_id,
                    {"reservation_expiry": reserved.reservation_expiry, "ttl_minutes": ttl},
                )
            )
            return True

        return await self._run("reserve", station_id, op)

    async def start_session(
        self, user_id: str, station_id: int, metrics: dict[str, Any] | None = None
    ) -> Outcome[SessionStarted]:
        async def op(events: list[QueueEvent]) -> SessionStarted:
            entry = await self.store.find_active(station_id, user_id)
            session = await self.sessions.start(entry, metrics)

            average = await self._average_minutes(station_id)
            events.extend(await self.promotion.advance(station_id, average, head_vacated=entry.position == 1))
            events.append(
                QueueEvent(
                    QueueEventType.SESSION_STARTED,
                    user_id,
                    station_id,
                    {"session_id": session.id, "started_at": session.started_at},
                )
            )
            return SessionStarted(session.id, entry.id, session.started_at)

        return await self._run("start_session", station_id, op)

    async def stop_session(
        self, user_id: str, station_id: int, metrics: dict[str, Any] | None = None
    ) -> Outcome[SessionStopped]:
        async def op(events: list[QueueEvent]) -> SessionStopped:
            entry = await self.store.find_active(station_id, user_id)
            session = await self.sessions.stop(entry, metrics)

            # The charger is free again; a waiting head gets its reservation now
            average = await self._average_minutes(station_id)
            events.extend(await self.promotion.advance(station_id, average, head_vacated=True))
            events.append(self._session_completed_event(entry, session))
            return SessionStopped(
                session.id,
                session.started_at,
                session.ended_at,
                session.start_metrics,
                session.end_metrics,
            )

        return await self._run("stop_session", station_id, op)

    async def get_status(self, user_id: str, station_id: int) -> QueueEntry | None:
        return await self.store.find_active(station_id, user_id)

    async def get_user_entries(self, user_id: str) -> list[QueueEntry]:
        return await self.store.list_active_by_user(user_id)

    async def get_queue_stats(self, station_id: int, user_id: str | None = None) -> QueueStats:
        now = self._clock()
        queued = await self.store.get_queued_entries(station_id)
        average = await self.store.average_completed_wait(
            station_id, now - timedelta(days=self.policy.stats_wait_window_days)
        )
        if average is None:
            average = await self._average_minutes(station_id)
        hours = await self.store.peak_hours(station_id, now - timedelta(days=self.policy.stats_peak_window_days))

        stats = QueueStats(
            station_id=station_id,
            total_in_queue=len(queued),
            average_wait_minutes=round(average),
            peak_hours=[format_peak_hour(h) for h in hours],
        )
        if user_id is not None:
            mine = next((e for e in queued if e.user_id == user_id), None)
            if mine is not None:
                stats.user_position = mine.position
                stats.user_estimated_wait = mine.estimated_wait_minutes
        return stats

    async def get_session_history(self, user_id: str, limit: int = 10) -> list[UsageSession]:
        """A user's charging sessions across stations, newest first."""
        return await self.store.list_sessions_by_user(user_id, limit)

    async def get_station_sessions(self, station_id: int, limit: int = 50) -> list[UsageSession]:
        return await self.store.list_sessions_by_station(station_id, limit)

    async def force_stop_station(self, station_id: int, reason: str = "emergency_stop") -> Outcome[int]:
        """Close every open session at a station, complete the entries and promote.

        Returns the number of sessions stopped.
        """

        async def op(events: list[QueueEvent]) -> int:
            closed = await self.sessions.close_station(station_id)
            if closed:
                average = await self._average_minutes(station_id)
                events.extend(await self.promotion.advance(station_id, average, head_vacated=True))
            for entry, session in closed:
                event = self._session_completed_event(entry, session)
                event.payload.update({"forced": True, "reason": reason})
                events.append(event)
            logger.warning(f"Force stop at station {station_id} ({reason}): {len(closed)} sessions closed")
            return len(closed)

        return await self._run("force_stop_station", station_id, op)

    def _session_completed_event(self, entry: QueueEntry, session: UsageSession) -> QueueEvent:
        return QueueEvent(
            QueueEventType.SESSION_COMPLETED,
            entry.user_id,
            entry.station_id,
            {
                "session_id": session.id,
                "started_at": session.started_at,
                "ended_at": session.ended_at,
                "start_metrics": session.start_metrics,
                "end_metrics": session.end_metrics,
            },
        )

    # ============================================
    # Timer callbacks
    # ============================================

    async def expire_reservation(self, entry_id: int) -> bool:
        """Cancel a reservation whose deadline has passed.

        Returns False without touching anything when the entry already left
        ``reserved`` or its stored expiry is still in the future.
        """
        entry = await self.store.get_entry(entry_id)
        if entry is None:
            return False
        station_id = entry.station_id
        events: list[QueueEvent] = []

        async with self._lock(station_id):
            entry = await self.store.get_entry(entry_id)
            if entry is None or entry.status != QueueStatus.RESERVED:
                return False
            if entry.reservation_expiry is not None and entry.reservation_expiry > self._clock():
                return False

            async def op(events: list[QueueEvent]) -> bool:
                self.timers.cancel(entry_id)
                expired = await self.store.leave_line(entry_id, QueueStatus.CANCELLED, expected=QueueStatus.RESERVED)
                if expired is None:
                    return False
                average = await self._average_minutes(station_id)
                events.extend(await self.promotion.advance(station_id, average, head_vacated=entry.position == 1))
                return True

            if not await self._apply(station_id, op, events):
                return False
            events.append(
                QueueEvent(
                    QueueEventType.EXPIRED,
                    entry.user_id,
                    station_id,
                    {"reason": LeaveReason.EXPIRED.value},
                )
            )
            logger.info(f"Reservation of {entry.user_id} at station {station_id} expired")

        await deliver(self.emitter, events)
        return True

    async def send_reservation_warning(self, entry_id: int) -> bool:
        entry = await self.store.get_entry(entry_id)
        if entry is None or entry.status != QueueStatus.RESERVED or entry.warning_sent:
            return False
        if not await self.store.mark_warning_sent(entry_id):
            return False

        minutes_left = 0
        if entry.reservation_expiry is not None:
            remaining = (entry.reservation_expiry - self._clock()).total_seconds()
            minutes_left = max(0, math.ceil(remaining / 60))
        await deliver(
            self.emitter,
            [
                QueueEvent(
                    QueueEventType.RESERVATION_WARNING,
                    entry.user_id,
                    entry.station_id,
                    {"minutes_left": minutes_left, "reservation_expiry": entry.reservation_expiry},
                )
            ],
        )
        return True

    async def _on_expiry(self, entry_id: int, station_id: int) -> None:
        await self.expire_reservation(entry_id)

    async def _on_warning(self, entry_id: int, station_id: int) -> None:
        await self.send_reservation_warning(entry_id)

    # ============================================
    # Durable timer registry
    # ============================================

    async def resync_timers(self) -> tuple[int, int]:
        """Re-arm live reservations and expire overdue ones.

        Returns ``(rearmed, expired)``.
        """
        rearmed = expired = 0
        now = self._clock()
        for entry in await self.store.list_reserved():
            if entry.reservation_expiry is None or entry.reservation_expiry <= now:
                if await self.expire_reservation(entry.id):
                    expired += 1
            elif not self.timers.is_armed(entry.id):
                self.timers.arm(
                    entry.id, entry.station_id, entry.reservation_expiry, warn=not entry.warning_sent
                )
                rearmed += 1
        if rearmed or expired:
            logger.info(f"Timer resync: rearmed={rearmed}, expired={expired}")
        return rearmed, expired

    async def run_sweeper(self, interval: float) -> None:
        """Periodically resync timers until cancelled."""
        fail_count = 0
        while True:
            await asyncio.sleep(interval)
            try:
                await self.resync_timers()
                if fail_count:
                    logger.info(f"Timer sweep recovered after {fail_count} failures")
                fail_count = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                fail_count += 1
                logger.warning(f"Timer sweep failed ({fail_count}): {type(e).__name__}: {e}")

    async def start(self, sweep_interval: float = 60.0) -> None:
        """Restore timers from the store and start the periodic sweep."""
        await self.resync_timers()
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self.run_sweeper(sweep_interval), name="reservation-sweeper")
        logger.info(f"Queue coordinator started ({self.timers.armed_count} reservation timers armed)")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self.timers.cancel_all()
        logger.info("Queue coordinator stopped")
