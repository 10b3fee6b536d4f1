"""Repository for charging_stations queueing attributes (read only)."""

from __future__ import annotations

import asyncpg

from shared.cache import AsyncTTLCache
from shared.models.queue import ResourceCapacity

# Station flags change rarely; occupancy is never cached here.
_capacity_cache = AsyncTTLCache(maxsize=256, ttl=30)

_CAPACITY_COLUMNS = (
    "id AS station_id, "
    "COALESCE(is_active, TRUE) AS is_active, "
    "COALESCE(is_open, TRUE) AS is_open, "
    "COALESCE(max_queue_length, $2) AS max_queue_length, "
    "COALESCE(average_session_minutes, $3) AS average_session_minutes, "
    "owner_whatsapp_id AS owner_id"
)


class StationRepository:
    """Capacity lookups against the station catalogue."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        default_max_queue_length: int = 10,
        default_average_session_minutes: int = 30,
    ) -> None:
        self.pool = pool
        self.default_max_queue_length = default_max_queue_length
        self.default_average_session_minutes = default_average_session_minutes

    async def get_capacity(self, station_id: int) -> ResourceCapacity | None:
        """Return queueing attributes for a station, or None if it does not exist."""
        return await _capacity_cache.load(station_id, lambda: self._fetch_capacity(station_id))

    async def _fetch_capacity(self, station_id: int) -> ResourceCapacity | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_CAPACITY_COLUMNS} FROM charging_stations WHERE id = $1",
                station_id,
                self.default_max_queue_length,
                self.default_average_session_minutes,
            )
            if not row:
                return None
            return ResourceCapacity(**dict(row))

    def invalidate_cache(self, station_id: int) -> None:
        """Drop the cached capacity for a station (e.g. after an owner toggles it)."""
        _capacity_cache.invalidate(station_id)
