from __future__ import annotations
"""Result cache for provider operations.

ResultCache – in-memory TTL cache keyed by **operation + arguments**.  Keys
are namespaced per provider (``builtin_…`` / ``cloud_…``) and the arguments
are serialized canonically (sorted keys) so equal option dicts always map to
the same entry.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from core.logging import logger

__all__ = [
    "CacheEntry",
    "ResultCache",
    "DEFAULT_TTL_SEC",
    "canonical_json",
]

DEFAULT_TTL_SEC = 300.0  # 5 min


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=repr)


@dataclass
class CacheEntry:
    result: Any
    timestamp: float
    hits: int = 0


@dataclass
class _Stats:
    total_entries: int = 0
    total_hits: int = 0
    total_size: int = 0
    entries: list = field(default_factory=list)


class ResultCache:
    """Asyncio-safe TTL cache for operation results.

    An entry older than ``ttl_sec`` is never served: it is dropped on read,
    or in bulk by :meth:`cleanup`.  Growth is bounded only by :meth:`clear`.
    """

    def __init__(
        self,
        namespace: str,
        ttl_sec: float = DEFAULT_TTL_SEC,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.namespace = namespace
        self._ttl = ttl_sec
        self._clock = clock
        self._store: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def make_key(self, method: str, *args: Any) -> str:
        return f"{self.namespace}_{method}_{canonical_json(list(args))}"

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp >= self._ttl

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._expired(entry, self._clock()):
                # expired
                del self._store[key]
                return None
            entry.hits += 1
            return entry.result

    async def set(self, key: str, value: Any) -> None:
        if value is None:
            return
        async with self._lock:
            self._store[key] = CacheEntry(result=value, timestamp=self._clock())

    def entry(self, key: str) -> Optional[CacheEntry]:
        return self._store.get(key)

    # Maintenance ---------------------------------------------------------
    def cleanup(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        stale = [key for key, entry in self._store.items() if self._expired(entry, now)]
        for key in stale:
            del self._store[key]
        if stale:
            logger.info(f"Cleaned up {len(stale)} expired {self.namespace} cache entries")
        return len(stale)

    def clear(self) -> int:
        size = len(self._store)
        self._store.clear()
        logger.info(f"Cleared {size} {self.namespace} cache entries")
        return size

    def __len__(self) -> int:
        return len(self._store)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        stats = _Stats(total_entries=len(self._store))
        for key, entry in self._store.items():
            size = len(canonical_json(entry.result))
            stats.total_hits += entry.hits
            stats.total_size += size
            stats.entries.append({
                "key": key[:50] + "...",
                "hits": entry.hits,
                "age": now - entry.timestamp,
                "size": size,
            })
        stats.entries.sort(key=lambda e: e["hits"], reverse=True)
        return {
            "total_entries": stats.total_entries,
            "total_hits": stats.total_hits,
            "total_size": stats.total_size,
            "entries": stats.entries[:10],  # top 10
        }
