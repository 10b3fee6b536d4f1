"""Cancellable reservation timers.

Each reserved entry has at most one live (warning, expiry) pair. The deadline
itself is durable (``reservation_expiry`` on the entry); these in-process
tasks only make the firing prompt. Anything lost on restart is re-armed or
expired by the coordinator's sweep.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)

TimerCallback = Callable[[int, int], Awaitable[None]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TimerHandle:
    """Handle returned by :meth:`ReservationTimer.arm`."""

    entry_id: int
    station_id: int
    expiry: datetime
    tasks: list[asyncio.Task] = field(default_factory=list)

    def cancel(self) -> None:
        current = asyncio.current_task()
        for task in self.tasks:
            # A firing callback may disarm its own entry; never cancel the running task
            if task is not current and not task.done():
                task.cancel()

    @property
    def active(self) -> bool:
        return any(not task.done() for task in self.tasks)


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


class ReservationTimer:
    """Arms warning/expiry callbacks per queue entry."""

    def __init__(
        self,
        on_warning: TimerCallback,
        on_expiry: TimerCallback,
        *,
        warning_lead: timedelta = timedelta(minutes=5),
        retry: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._on_warning = on_warning
        self._on_expiry = on_expiry
        self.warning_lead = warning_lead
        self.retry = retry or RetryPolicy()
        self._clock = clock
        self._handles: dict[int, TimerHandle] = {}

    def arm(self, entry_id: int, station_id: int, expiry: datetime, *, warn: bool = True) -> TimerHandle:
        """Arm the timer pair for an entry, replacing any previous pair."""
        self.cancel(entry_id)

        handle = TimerHandle(entry_id=entry_id, station_id=station_id, expiry=expiry)
        warning_at = expiry - self.warning_lead
        if warn and warning_at > self._clock():
            handle.tasks.append(
                asyncio.create_task(
                    self._fire("warning", handle, warning_at, self._on_warning),
                    name=f"reservation-warning-{entry_id}",
                )
            )
        handle.tasks.append(
            asyncio.create_task(
                self._fire("expiry", handle, expiry, self._on_expiry),
                name=f"reservation-expiry-{entry_id}",
            )
        )
        self._handles[entry_id] = handle
        logger.debug(f"Armed reservation timers for entry {entry_id} (expiry={expiry.isoformat()})")
        return handle

    def cancel(self, entry_id: int) -> bool:
        """Disarm an entry's timers. Returns True if a live pair was cancelled."""
        handle = self._handles.pop(entry_id, None)
        if handle is None:
            return False
        was_active = handle.active
        handle.cancel()
        return was_active

    def cancel_all(self) -> None:
        for entry_id in list(self._handles):
            self.cancel(entry_id)

    def get(self, entry_id: int) -> TimerHandle | None:
        handle = self._handles.get(entry_id)
        return handle if handle is not None and handle.active else None

    def is_armed(self, entry_id: int) -> bool:
        return self.get(entry_id) is not None

    def armed_for_station(self, station_id: int) -> list[int]:
        return [h.entry_id for h in self._handles.values() if h.station_id == station_id and h.active]

    @property
    def armed_count(self) -> int:
        return sum(1 for handle in self._handles.values() if handle.active)

    async def _fire(
        self, kind: str, handle: TimerHandle, at: datetime, callback: TimerCallback
    ) -> None:
        # The loop clock may wake early against the wall clock the deadline is kept in
        delay = (at - self._clock()).total_seconds()
        while delay > 0:
            await asyncio.sleep(delay)
            delay = (at - self._clock()).total_seconds()

        try:
            for attempt in range(1, self.retry.max_attempts + 1):
                try:
                    await callback(handle.entry_id, handle.station_id)
                    return
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if attempt >= self.retry.max_attempts:
                        logger.error(
                            f"Reservation {kind} for entry {handle.entry_id} failed after "
                            f"{attempt} attempts: {type(e).__name__}: {e}; leaving it to the sweep"
                        )
                        return
                    backoff = self.retry.delay_for(attempt)
                    logger.warning(
                        f"Reservation {kind} for entry {handle.entry_id} failed "
                        f"({attempt}/{self.retry.max_attempts}): {type(e).__name__}: {e}, "
                        f"retrying in {backoff:.1f}s"
                    )
                    await asyncio.sleep(backoff)
        finally:
            if kind == "expiry" and self._handles.get(handle.entry_id) is handle:
                del self._handles[handle.entry_id]
