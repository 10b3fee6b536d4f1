import asyncio
from datetime import timedelta

import pytest

from coordinator.services.timers import ReservationTimer, RetryPolicy, utcnow


class CallRecorder:
    def __init__(self, failures: int = 0):
        self.calls: list[tuple[int, int]] = []
        self.failures = failures

    async def __call__(self, entry_id: int, station_id: int) -> None:
        self.calls.append((entry_id, station_id))
        if self.failures:
            self.failures -= 1
            raise ConnectionError("store unavailable")


def _timer(warning, expiry, **kwargs):
    return ReservationTimer(warning, expiry, warning_lead=timedelta(milliseconds=100), **kwargs)


@pytest.mark.asyncio
async def test_warning_then_expiry_fire_in_order():
    warning, expiry = CallRecorder(), CallRecorder()
    timer = _timer(warning, expiry)

    timer.arm(7, 1, utcnow() + timedelta(milliseconds=300))
    await asyncio.sleep(0.25)
    assert warning.calls == [(7, 1)]
    assert expiry.calls == []

    await asyncio.sleep(0.15)
    assert expiry.calls == [(7, 1)]
    assert not timer.is_armed(7)


@pytest.mark.asyncio
async def test_warning_skipped_when_its_time_has_passed():
    warning, expiry = CallRecorder(), CallRecorder()
    timer = _timer(warning, expiry)

    handle = timer.arm(7, 1, utcnow() + timedelta(milliseconds=20))

    assert len(handle.tasks) == 1
    await asyncio.sleep(0.06)
    assert warning.calls == []
    assert expiry.calls == [(7, 1)]


@pytest.mark.asyncio
async def test_rearming_replaces_the_previous_pair():
    warning, expiry = CallRecorder(), CallRecorder()
    timer = _timer(warning, expiry)

    first = timer.arm(7, 1, utcnow() + timedelta(milliseconds=30))
    timer.arm(7, 1, utcnow() + timedelta(milliseconds=300))
    await asyncio.sleep(0.06)

    assert all(task.cancelled() for task in first.tasks)
    assert expiry.calls == []
    assert timer.armed_count == 1
    timer.cancel_all()


@pytest.mark.asyncio
async def test_cancel_prevents_firing():
    warning, expiry = CallRecorder(), CallRecorder()
    timer = _timer(warning, expiry)
    timer.arm(7, 1, utcnow() + timedelta(milliseconds=30))

    assert timer.cancel(7) is True
    assert timer.cancel(7) is False
    await asyncio.sleep(0.06)
    assert expiry.calls == []


@pytest.mark.asyncio
async def test_failed_expiry_is_retried_with_backoff():
    warning, expiry = CallRecorder(), CallRecorder(failures=2)
    timer = _timer(warning, expiry, retry=RetryPolicy(max_attempts=5, base_delay=0.01, max_delay=0.02))

    timer.arm(7, 1, utcnow())
    await asyncio.sleep(0.1)

    assert expiry.calls == [(7, 1)] * 3


@pytest.mark.asyncio
async def test_expiry_gives_up_after_max_attempts():
    warning, expiry = CallRecorder(), CallRecorder(failures=10)
    timer = _timer(warning, expiry, retry=RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.01))

    timer.arm(7, 1, utcnow())
    await asyncio.sleep(0.1)

    assert len(expiry.calls) == 3
    assert not timer.is_armed(7)


@pytest.mark.asyncio
async def test_callback_may_cancel_its_own_timer():
    fired = []

    async def on_expiry(entry_id, station_id):
        timer.cancel(entry_id)
        await asyncio.sleep(0)
        fired.append(entry_id)

    async def on_warning(entry_id, station_id):
        pass

    timer = _timer(on_warning, on_expiry)
    timer.arm(7, 1, utcnow())
    await asyncio.sleep(0.03)

    assert fired == [7]


def test_retry_delay_doubles_up_to_the_cap():
    policy = RetryPolicy(base_delay=1.0, max_delay=60.0)
    assert [policy.delay_for(n) for n in range(1, 9)] == [1, 2, 4, 8, 16, 32, 60, 60]


class LaggingClock:
    """Wall clock that can fall behind the event loop's clock."""

    def __init__(self):
        self.lag = timedelta(0)

    def __call__(self):
        return utcnow() - self.lag


@pytest.mark.asyncio
async def test_expiry_never_fires_before_the_wall_clock_deadline():
    clock = LaggingClock()
    fired_at = []

    async def on_expiry(entry_id, station_id):
        fired_at.append(clock())

    timer = _timer(CallRecorder(), on_expiry, clock=clock)
    expiry = clock() + timedelta(milliseconds=30)
    timer.arm(7, 1, expiry, warn=False)
    await asyncio.sleep(0.01)
    clock.lag = timedelta(milliseconds=40)

    await asyncio.sleep(0.15)

    assert len(fired_at) == 1
    assert fired_at[0] >= expiry
