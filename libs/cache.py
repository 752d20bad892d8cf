# libs/cache.py
"""In-process TTL cache for dashboard reads.

* Expiry is checked lazily on ``get``/``has`` and by a periodic sweep
  (:meth:`TTLCache.start_sweeper`).
* Never consulted for duplicate detection: entries may be missing, stale or
  wiped at any moment, ingestion must not care.
* No locking: single dict operations are atomic under asyncio, lost updates
  are acceptable for cached aggregates.
"""
from __future__ import annotations

import asyncio
import contextlib
import datetime as _dt
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 300.0


@dataclass
class CacheEntry(Generic[T]):
    value: T
    stored_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class TTLCache:
    """Key/value store with per-entry time-to-live (seconds)."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._default_ttl = default_ttl
        self._clock = clock
        self._sweeper: Optional[asyncio.Task[None]] = None

    # ---------------------------------------------------------------- basic ops
    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._entries[key] = CacheEntry(
            value=value,
            stored_at=self._clock(),
            ttl=self._default_ttl if ttl is None else ttl,
        )

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            self._entries.pop(key, None)
            return None
        return entry.value

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.expired(self._clock()):
            self._entries.pop(key, None)
            return False
        return True

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self, prefix: str = "") -> list[str]:
        """Snapshot of stored keys (expired ones included until swept)."""
        return [k for k in list(self._entries) if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------ sweeping
    def cleanup(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in list(self._entries.items()) if e.expired(now)]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = self.cleanup()
            if removed:
                log.debug("Cache sweep removed %d expired entries", removed)

    def start_sweeper(self, interval: float) -> None:
        """Schedule :meth:`cleanup` every *interval* seconds on the running loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval), name="cache-sweeper")

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------
class CacheKeys:
    METRICS_PREFIX = "metrics:"
    RANGE_PREFIX = "metrics:range:"
    STALE_PREFIX = "stale:"

    @staticmethod
    def period(period: str, start: _dt.date) -> str:
        return f"metrics:{period}:{start.isoformat()}"

    @staticmethod
    def date_range(start: _dt.date, end: _dt.date) -> str:
        return f"metrics:range:{start.isoformat()}:{end.isoformat()}"

    @staticmethod
    def stale(key: str) -> str:
        return f"stale:{key}"

    @staticmethod
    def range_bounds(key: str) -> tuple[_dt.date, _dt.date]:
        start, end = key[len(CacheKeys.RANGE_PREFIX):].split(":")
        return _dt.date.fromisoformat(start), _dt.date.fromisoformat(end)
