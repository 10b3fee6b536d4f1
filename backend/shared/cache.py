"""Capacity cache: short-lived station flags with a last-known copy for outages."""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Hashable
from typing import Any

from cachetools import TTLCache  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

_MISSING = object()


class AsyncTTLCache:
    """Fresh values live for *ttl* seconds.

    The last successfully loaded value of up to *maxsize* keys is kept past
    expiry and served only when a reload fails.
    """

    def __init__(self, maxsize: int = 128, ttl: float = 60.0):
        self.maxsize = maxsize
        self._fresh: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._last_known: OrderedDict[Hashable, Any] = OrderedDict()
        self._loading: dict[Hashable, asyncio.Lock] = {}

    def get(self, key: Hashable) -> Any:
        return self._fresh.get(key, _MISSING)

    def get_stale(self, key: Hashable) -> Any:
        return self._last_known.get(key, _MISSING)

    def set(self, key: Hashable, value: Any) -> None:
        self._fresh[key] = value
        self._last_known[key] = value
        self._last_known.move_to_end(key)
        if len(self._last_known) > self.maxsize:
            evicted, _ = self._last_known.popitem(last=False)
            self._loading.pop(evicted, None)

    def invalidate(self, key: Hashable) -> None:
        """Force the next read to reload; the last-known copy stays."""
        self._fresh.pop(key, None)

    async def load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[Any]],
        *,
        attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> Any:
        """Return the fresh value for *key*, loading it once for concurrent callers.

        A failing loader is retried with a growing delay. When every attempt
        fails the last-known value is returned, or the error is raised if
        there is none.
        """
        value = self.get(key)
        if value is not _MISSING:
            return value

        lock = self._loading.setdefault(key, asyncio.Lock())
        async with lock:
            value = self.get(key)
            if value is not _MISSING:
                return value

            for attempt in range(1, attempts + 1):
                try:
                    value = await loader()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if attempt < attempts:
                        logger.warning(
                            "Load %d/%d for %r failed: %s, retrying",
                            attempt,
                            attempts,
                            key,
                            type(exc).__name__,
                        )
                        await asyncio.sleep(retry_delay * attempt)
                        continue
                    stale = self.get_stale(key)
                    if stale is _MISSING:
                        raise
                    logger.warning("Serving last-known value for %r (%s)", key, type(exc).__name__)
                    return stale
                self.set(key, value)
                return value
        raise AssertionError("unreachable")
