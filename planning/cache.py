"""
Per-month read cache with freshness tracking.

Entries stay usable after their TTL (``fresh=False``); they only disappear
through explicit invalidation, age-based cleanup, or when their stored shape
turns out to be unreadable.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError

from planning.errors import CacheAnomaly
from planning.models import CacheEntry, MonthData
from planning.months import MonthKey
from planning.storage import CacheStore, InMemoryStore

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

DEFAULT_TTL = timedelta(minutes=5)
DEFAULT_MAX_AGE = timedelta(hours=1)


@dataclass(frozen=True)
class CacheLookup:
    data: MonthData
    fresh: bool
    fetched_at: datetime


class MonthCache:
    def __init__(
        self,
        store: CacheStore | None = None,
        *,
        ttl: timedelta = DEFAULT_TTL,
        max_age: timedelta = DEFAULT_MAX_AGE,
        now_fn: NowFn | None = None,
    ) -> None:
        self._store: CacheStore = store if store is not None else InMemoryStore()
        self._ttl = ttl
        self._max_age = max_age
        self._now_fn = now_fn or (lambda: datetime.now(UTC))

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def get(self, key: MonthKey) -> CacheLookup | None:
        try:
            entry = self._read(key)
        except CacheAnomaly as exc:
            logger.warning("cache anomaly for %s, treating as miss: %s", key, exc)
            self._store.delete(str(key))
            return None

        if entry is None:
            logger.debug("cache miss: %s", key)
            return None

        now = self._now_fn()
        fresh = now < entry.stale_after
        logger.debug(
            "cache hit: %s (age=%ss, fresh=%s)",
            key,
            int((now - entry.fetched_at).total_seconds()),
            fresh,
        )
        return CacheLookup(data=entry.data, fresh=fresh, fetched_at=entry.fetched_at)

    def set(self, key: MonthKey, data: MonthData) -> CacheEntry:
        now = self._now_fn()
        entry = CacheEntry(
            month_key=str(key),
            data=data,
            fetched_at=now,
            stale_after=now + self._ttl,
        )
        self._store.put(str(key), entry.model_dump(mode="json", by_alias=True))
        logger.debug("cache set: %s", key)
        return entry

    def touch(self, key: MonthKey) -> bool:
        """
        Restart the freshness window of an entry without replacing its data.
        """
        lookup = self.get(key)
        if lookup is None:
            return False
        self.set(key, lookup.data)
        return True

    def invalidate(self, key: MonthKey) -> None:
        self._store.delete(str(key))
        logger.debug("cache invalidated: %s", key)

    def invalidate_range(self, year: int, month: int) -> list[MonthKey]:
        """
        Drop the month and both of its neighbours.

        A cached month holds the merged window around it, so an edit in one
        month is visible in three entries.
        """
        keys = list(MonthKey(year, month).adjacent())
        for key in keys:
            self.invalidate(key)
        return keys

    def invalidate_all(self) -> None:
        self._store.clear()
        logger.debug("cache cleared")

    def clean_old_entries(self) -> int:
        cutoff = self._now_fn() - self._max_age
        removed = 0
        for raw_key in self._store.keys():
            try:
                entry = self._read(MonthKey.parse(raw_key))
            except (CacheAnomaly, ValueError):
                entry = None
            if entry is None or entry.fetched_at <= cutoff:
                self._store.delete(raw_key)
                removed += 1
        if removed:
            logger.debug("cleaned %d old cache entries", removed)
        return removed

    def keys(self) -> list[MonthKey]:
        keys = []
        for raw_key in self._store.keys():
            try:
                keys.append(MonthKey.parse(raw_key))
            except ValueError:
                logger.debug("ignoring foreign cache key %r", raw_key)
        return sorted(keys)

    def _read(self, key: MonthKey) -> CacheEntry | None:
        try:
            raw = self._store.get(str(key))
        except ValueError as exc:
            raise CacheAnomaly(f"unreadable entry: {exc}") from exc
        if raw is None:
            return None
        try:
            entry = CacheEntry.model_validate(raw)
        except ValidationError as exc:
            raise CacheAnomaly(str(exc)) from exc
        if entry.month_key != str(key):
            raise CacheAnomaly(
                f"entry stored under {key} claims to be {entry.month_key}"
            )
        return entry
