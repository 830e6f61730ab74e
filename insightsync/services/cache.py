"""
Analytics Cache

Short-lived in-memory cache for computed analytics results. Entries expire
lazily: on a read after expiry or during ``cleanup``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from insightsync.models.analytics import Platform, utc_now


@dataclass
class CacheEntry:
    """Cached payload and its expiry time."""
    key: str
    payload: Any
    expiry: datetime


@dataclass
class CacheStats:
    """Counts reported by a cleanup pass."""
    valid: int
    expired: int

    @property
    def total(self) -> int:
        return self.valid + self.expired


class AnalyticsCache:
    """TTL cache keyed by account, platform and query parameters."""

    def __init__(
        self,
        ttl: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self.logger = structlog.get_logger(__name__)

    @staticmethod
    def make_key(account_id: str, platform: Optional[Platform] = None, **params: Any) -> str:
        """Build ``account:platform:k=v&...`` with parameters in sorted order."""
        platform_part = platform.value if platform is not None else "*"
        param_part = "&".join(f"{name}={params[name]}" for name in sorted(params))
        return f"{account_id}:{platform_part}:{param_part}"

    def get(self, key: str) -> Optional[Any]:
        """Return the cached payload, or None on a miss or expired entry."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expiry:
            del self._entries[key]
            return None
        return entry.payload

    def set(self, key: str, value: Any, ttl: Optional[timedelta] = None) -> None:
        if value is None:
            raise ValueError("None cannot be cached")
        self._entries[key] = CacheEntry(
            key=key,
            payload=value,
            expiry=self._clock() + (ttl or self.ttl),
        )

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: Optional[timedelta] = None,
    ) -> Any:
        """Serve from cache, calling ``fetcher`` and storing its result on a miss."""
        cached = self.get(key)
        if cached is not None:
            self.logger.debug("Cache hit", key=key)
            return cached

        value = await fetcher()
        if value is not None:
            self.set(key, value, ttl)
        return value

    def clear(self, account_id: Optional[str] = None) -> int:
        """
        Drop entries for one account, or everything when no account is given.

        Returns:
            Number of entries removed
        """
        if account_id is None:
            removed = len(self._entries)
            self._entries.clear()
        else:
            prefix = f"{account_id}:"
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            removed = len(keys)

        self.logger.info("Cache cleared", account_id=account_id, removed=removed)
        return removed

    def cleanup(self) -> CacheStats:
        """Evict expired entries and report valid/expired counts."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expiry]
        for key in expired:
            del self._entries[key]
        return CacheStats(valid=len(self._entries), expired=len(expired))

    def __len__(self) -> int:
        return len(self._entries)
