"""
Caching

Best-effort caches used by the search core:

- CacheBackend: pluggable key/value contract with per-entry TTL
- InMemoryTTLCache: process-local backend
- ResultCache: short-TTL cache of fully assembled result sets

Design choices
--------------
- Cache failures never fail a search: ResultCache logs and swallows every
  backend error on both read and write.
- Result sets are stored as JSON bytes, so a hit decodes to exactly what the
  most recent write stored, whatever the backend.
- Keys are a digest of the normalized query and the options serialized with
  sorted keys, so option ordering never produces a different key.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from threading import RLock
from typing import Any, Callable, List, Optional, Tuple

from pydantic import BaseModel, TypeAdapter

from .models import SearchResult

logger = logging.getLogger("docsearch.cache")

_results_adapter = TypeAdapter(List[SearchResult])


# ---------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------

class CacheBackend(ABC):
    """
    Minimal async key/value contract. Implementations may raise; callers
    treat every failure as a miss.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float) -> None:
        ...


class InMemoryTTLCache(CacheBackend):
    """
    Process-local cache with per-entry expiry and a bounded size.

    Entries are evicted lazily on read and, when full, oldest-first on write.
    """

    def __init__(
        self,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Parameters
        ----------
        max_entries : int
            Maximum number of live entries kept.

        clock : Callable[[], float]
            Monotonic time source; injectable for tests.
        """
        self._entries: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._lock = RLock()

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (self._clock() + ttl, value)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------
# Result Cache
# ---------------------------------------------------------------------

def normalize_query(query: str) -> str:
    return " ".join(query.split())


class ResultCache:
    """
    Short-TTL cache of assembled search results.
    """

    def __init__(self, backend: CacheBackend, ttl: float = 300.0) -> None:
        self._backend = backend
        self._ttl = ttl

    @staticmethod
    def make_key(operation: str, query: str, options: BaseModel) -> str:
        """
        Build an order-independent key for ``(operation, query, options)``.
        """
        canonical = json.dumps(
            {
                "query": normalize_query(query),
                "options": options.model_dump(mode="json"),
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"search:{operation}:{digest}"

    async def get(self, key: str) -> Optional[List[SearchResult]]:
        try:
            raw = await self._backend.get(key)
            if raw is None:
                return None
            results = _results_adapter.validate_json(raw)
        except Exception as exc:
            logger.debug("Result cache read failed for %s: %s", key, exc)
            return None

        logger.debug("Result cache hit: %s", key)
        return results

    async def set(self, key: str, results: List[SearchResult]) -> None:
        try:
            await self._backend.set(key, _results_adapter.dump_json(results), self._ttl)
        except Exception as exc:
            logger.debug("Result cache write failed for %s: %s", key, exc)
