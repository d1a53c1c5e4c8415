"""Content-addressed result cache with TTL."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


def fingerprint_payload(
    payload: Any,
    *,
    operation: Optional[str] = None,
    prefix_bytes: Optional[int] = None,
) -> str:
    """Return a stable SHA-256 fingerprint for a payload.

    Args:
        payload: bytes, str, or any value with a stable ``str()``
        operation: Optional operation name mixed into the hash
        prefix_bytes: Hash only this many leading bytes of the payload

    Returns:
        Hex digest
    """
    if isinstance(payload, (bytes, bytearray, memoryview)):
        data = bytes(payload)
    else:
        data = str(payload).encode("utf-8")

    if prefix_bytes is not None:
        if prefix_bytes <= 0:
            raise ValueError("prefix_bytes must be positive")
        data = data[:prefix_bytes]

    digest = hashlib.sha256()
    if operation:
        digest.update(operation.encode("utf-8"))
        digest.update(b"\x00")
    digest.update(data)
    return digest.hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    """A cached result keyed by content fingerprint."""

    fingerprint: str
    result: Any
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class CacheStore(Protocol):
    """Backing storage for ``ContentCache``."""

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        ...

    def put(self, entry: CacheEntry) -> None:
        ...

    def delete_expired(self, now: float) -> int:
        ...


class InMemoryCacheStore:
    """Process-local cache store guarded by a lock."""

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(fingerprint)

    def put(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.fingerprint] = entry

    def delete_expired(self, now: float) -> int:
        with self._lock:
            expired = [fp for fp, entry in self._entries.items() if entry.is_expired(now)]
            for fp in expired:
                del self._entries[fp]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ContentCache:
    """Maps content fingerprints to previously computed results.

    Caching is an optimisation only: a failing store never fails the caller.
    Lookups treat expired entries as misses. Store I/O runs in a worker thread
    so blocking backends (Supabase) do not stall the event loop.

    Example:
        cache = ContentCache(default_ttl_seconds=3600)
        fp = fingerprint_payload(image_bytes, operation="analyze")

        result = await cache.lookup(fp)
        if result is None:
            result = await compute(image_bytes)
            await cache.store(fp, result)
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        *,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        self._store: CacheStore = store if store is not None else InMemoryCacheStore()
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._store_failures = 0
        self._swept = 0

    async def lookup(self, fingerprint: str) -> Optional[Any]:
        """Return the cached result, or None on miss, expiry or store error."""
        try:
            entry = await asyncio.to_thread(self._store.get, fingerprint)
        except Exception as exc:
            logger.warning("Cache lookup failed for %s: %s", fingerprint[:12], exc)
            self._count("_misses")
            return None

        if entry is None or entry.is_expired(self._clock()):
            self._count("_misses")
            return None

        self._count("_hits")
        return entry.result

    async def store(
        self,
        fingerprint: str,
        result: Any,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        """Store a result. Returns False (and logs) when the store fails."""
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        now = self._clock()
        entry = CacheEntry(
            fingerprint=fingerprint,
            result=result,
            created_at=now,
            expires_at=now + ttl,
        )
        try:
            await asyncio.to_thread(self._store.put, entry)
        except Exception as exc:
            self._count("_store_failures")
            logger.warning("Failed to cache result for %s: %s", fingerprint[:12], exc)
            return False
        return True

    async def sweep_expired(self) -> int:
        """Delete expired entries from the store."""
        try:
            removed = await asyncio.to_thread(self._store.delete_expired, self._clock())
        except Exception as exc:
            logger.warning("Cache sweep failed: %s", exc)
            return 0
        with self._lock:
            self._swept += removed
        if removed:
            logger.debug("Swept %d expired cache entries", removed)
        return removed

    async def run_sweeper(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        """Sweep periodically until ``stop_event`` is set."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        while not stop_event.is_set():
            await self.sweep_expired()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "hits": self._hits,
                "misses": self._misses,
                "store_failures": self._store_failures,
                "swept": self._swept,
            }

    def _count(self, attr: str) -> None:
        with self._lock:
            setattr(self, attr, getattr(self, attr) + 1)
