import json
from datetime import datetime, timezone

import pytest

from coordinator.services.notifications import (
    FanoutEmitter,
    PgNotifyEmitter,
    QueueEvent,
    QueueEventType,
    deliver,
)
from tests.fakes import RecordingEmitter


class DummyConnection:
    def __init__(self):
        self.executed = []

    async def execute(self, query, *args):
        self.executed.append((query, args))


class DummyAcquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return False


class DummyPool:
    def __init__(self):
        self.conn = DummyConnection()

    def acquire(self):
        return DummyAcquire(self.conn)


def _event(**payload):
    return QueueEvent(
        QueueEventType.PROMOTED,
        "u1",
        3,
        payload,
        occurred_at=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
    )


def test_event_json_serializes_datetimes_and_enums():
    expiry = datetime(2026, 3, 2, 9, 15, tzinfo=timezone.utc)
    data = json.loads(_event(reservation_expiry=expiry, kind=QueueEventType.EXPIRED).to_json())

    assert data["type"] == "promoted"
    assert data["payload"] == {"reservation_expiry": "2026-03-02T09:15:00+00:00", "kind": "expired"}
    assert data["occurred_at"] == "2026-03-02T09:00:00+00:00"


@pytest.mark.asyncio
async def test_pg_notify_emitter_publishes_json():
    pool = DummyPool()
    await PgNotifyEmitter(pool, channel="queue_events").emit(_event(position=1))

    query, (channel, payload) = pool.conn.executed[0]
    assert "pg_notify" in query
    assert channel == "queue_events"
    assert json.loads(payload)["user_id"] == "u1"


@pytest.mark.asyncio
async def test_fanout_continues_past_a_failing_emitter():
    broken, working = RecordingEmitter(fail=True), RecordingEmitter()

    await FanoutEmitter(broken, working).emit(_event())

    assert working.types() == [QueueEventType.PROMOTED]


@pytest.mark.asyncio
async def test_deliver_swallows_emitter_failures():
    await deliver(RecordingEmitter(fail=True), [_event(), _event()])
