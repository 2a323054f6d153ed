"""
Quota management service
Cached usage stats, admission checks and usage warnings
"""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable, Awaitable, List

from filegate.config import Settings, settings as default_settings
from filegate.exceptions import StorageError
from filegate.models import StorageStats, StorageUsage, QuotaWarning

logger = logging.getLogger(__name__)

StatsLoader = Callable[[str], Awaitable[StorageStats]]
QuotaWarningListener = Callable[[QuotaWarning], Any]


class StatsCache:
    """
    In-memory stats cache with TTL

    Unlike a plain TTL cache, expired entries are kept so read-only callers
    can still be shown the last known value.
    """

    def __init__(self, ttl_seconds: int, clock: Callable[[], datetime] = datetime.utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get_entry(self, key: str) -> Optional[Dict[str, Any]]:
        """Entry with `value`, `cached_at` and `fresh`, or None"""
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            return {
                "value": entry["value"],
                "cached_at": entry["cached_at"],
                "fresh": self.clock() < entry["cached_at"] + self.ttl,
            }

    async def get_fresh(self, key: str) -> Optional[StorageStats]:
        entry = await self.get_entry(key)
        if entry and entry["fresh"]:
            return entry["value"]
        return None

    async def set(self, key: str, value: StorageStats) -> None:
        async with self._lock:
            self._cache[key] = {"value": value, "cached_at": self.clock()}

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._cache.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()

    async def keys(self) -> List[str]:
        async with self._lock:
            return list(self._cache.keys())


class QuotaManager:
    """
    Usage accounting on top of a stats loader

    Admission is best-effort: concurrent uploads checked against the same
    snapshot can jointly exceed the quota until the next refresh.
    """

    def __init__(
        self,
        stats_loader: StatsLoader,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        """
        Initialize quota manager

        Args:
            stats_loader: Coroutine fetching live stats for an account id
            settings: Settings override (TTL, warning threshold)
            clock: UTC clock (injectable for tests)
        """
        self.settings = settings or default_settings
        self.stats_loader = stats_loader
        self.cache = StatsCache(self.settings.STATS_CACHE_TTL_SECONDS, clock)
        self.threshold_percent = self.settings.QUOTA_WARNING_THRESHOLD_PERCENT
        self._listeners: List[QuotaWarningListener] = []
        self._warned: set = set()

    def add_warning_listener(self, listener: QuotaWarningListener) -> None:
        self._listeners.append(listener)

    async def remember(self, account_id: str, stats: StorageStats) -> None:
        """Store stats and raise a warning if the threshold was crossed"""
        await self.cache.set(account_id, stats)
        await self._check_threshold(account_id, stats)

    async def forget(self, account_id: str) -> None:
        await self.cache.delete(account_id)
        self._warned.discard(account_id)

    async def get_stats(self, account_id: str, force_refresh: bool = False) -> StorageStats:
        """Cached stats unless stale or forced"""
        if not force_refresh:
            cached = await self.cache.get_fresh(account_id)
            if cached is not None:
                return cached

        stats = await self.stats_loader(account_id)
        await self.remember(account_id, stats)
        return stats

    async def get_usage(self, account_id: str) -> StorageUsage:
        """
        Stats for display

        A stale entry is refreshed; if the refresh fails the stale value is
        returned flagged `possibly_stale`.
        """
        entry = await self.cache.get_entry(account_id)
        if entry and entry["fresh"]:
            return StorageUsage(account_id=account_id, stats=entry["value"], cached_at=entry["cached_at"])

        try:
            stats = await self.get_stats(account_id, force_refresh=True)
        except StorageError as e:
            if entry is None:
                raise
            logger.warning(f"Serving stale usage for account {account_id}: {e.message}")
            return StorageUsage(
                account_id=account_id,
                stats=entry["value"],
                cached_at=entry["cached_at"],
                possibly_stale=True
            )

        refreshed = await self.cache.get_entry(account_id)
        cached_at = refreshed["cached_at"] if refreshed else datetime.utcnow()
        return StorageUsage(account_id=account_id, stats=stats, cached_at=cached_at)

    async def check_quota(self, account_id: str, size_bytes: int) -> bool:
        """
        Admission check for an upload of `size_bytes`

        Stale entries count as absent. Unknown totals and stats failures
        both admit the upload.
        """
        try:
            stats = await self.get_stats(account_id)
        except StorageError as e:
            logger.warning(f"Quota check for account {account_id} skipped, stats unavailable: {e.message}")
            return True

        if stats.total_bytes == 0:
            return True
        return stats.used_bytes + size_bytes <= stats.total_bytes

    async def _check_threshold(self, account_id: str, stats: StorageStats) -> None:
        if stats.total_bytes <= 0 or stats.used_percent < self.threshold_percent:
            self._warned.discard(account_id)
            return
        if account_id in self._warned:
            return

        self._warned.add(account_id)
        warning = QuotaWarning(
            account_id=account_id,
            used_bytes=stats.used_bytes,
            total_bytes=stats.total_bytes,
            used_percent=round(stats.used_percent, 2),
            threshold_percent=self.threshold_percent
        )
        logger.warning(
            f"Storage account {account_id} is at {warning.used_percent}% of quota "
            f"(threshold {self.threshold_percent}%)"
        )
        for listener in self._listeners:
            try:
                result = listener(warning)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Quota warning listener failed: {e}")
