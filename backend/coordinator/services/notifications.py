"""Notification intents emitted by the coordinator.

The coordinator never formats or delivers messages; it hands structured
events to an emitter. Delivery is the chat front-end's job (for example by
LISTENing on the PostgreSQL channel written by PgNotifyEmitter).
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import asyncpg

logger = logging.getLogger(__name__)


class QueueEventType(str, Enum):
    JOINED = "joined"
    LEFT = "left"
    RESERVED = "reserved"
    PROMOTED = "promoted"
    QUEUE_PROGRESS = "queue_progress"
    RESERVATION_WARNING = "reservation_warning"
    EXPIRED = "expired"
    SESSION_STARTED = "session_started"
    SESSION_COMPLETED = "session_completed"


@dataclass
class QueueEvent:
    type: QueueEventType
    user_id: str
    station_id: int
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        data = asdict(self)
        data["type"] = self.type.value
        return json.dumps(data, default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Unserializable payload value: {type(value).__name__}")


class NotificationEmitter(Protocol):
    async def emit(self, event: QueueEvent) -> None: ...


class LoggingEmitter:
    """Writes events to the log; the default when no delivery channel is wired."""

    async def emit(self, event: QueueEvent) -> None:
        logger.info(
            f"[event] {event.type.value} user={event.user_id} "
            f"station={event.station_id} payload={event.payload}"
        )


class PgNotifyEmitter:
    """Publishes events as JSON on a PostgreSQL NOTIFY channel."""

    def __init__(self, pool: asyncpg.Pool, channel: str = "queue_events") -> None:
        self.pool = pool
        self.channel = channel

    async def emit(self, event: QueueEvent) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("SELECT pg_notify($1, $2)", self.channel, event.to_json())


class FanoutEmitter:
    """Sends every event to several emitters; one failing does not stop the rest."""

    def __init__(self, *emitters: NotificationEmitter) -> None:
        self.emitters = emitters

    async def emit(self, event: QueueEvent) -> None:
        for emitter in self.emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.warning(
                    f"{type(emitter).__name__} failed for {event.type.value}: {type(e).__name__}: {e}"
                )


async def deliver(emitter: NotificationEmitter, events: list[QueueEvent]) -> None:
    """Emit events in order, logging failures instead of raising."""
    for event in events:
        try:
            await emitter.emit(event)
        except Exception as e:
            logger.warning(
                f"Notification {event.type.value} for {event.user_id}@{event.station_id} "
                f"not delivered: {type(e).__name__}: {e}"
            )
