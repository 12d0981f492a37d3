from __future__ import annotations
import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

T = TypeVar("T")

_MISSING = object()


@dataclass
class CacheEntry:
    value: Any
    inserted_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.inserted_at > self.ttl


class TTLCache:
    """
    In-process key -> value store:
    - entries expire lazily, checked on get/has against insertion time + ttl
    - when max_entries is reached the least recently used entry is evicted
    - get_or_set shares one in-flight computation between concurrent misses on a key
    """
    def __init__(
            self,
            *,
            default_ttl: float = 300.0,
            max_entries: int = 1000,
            clock: Callable[[], float] = time.time,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _lookup(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        if entry.expired(self._clock()):
            del self._entries[key]
            return _MISSING
        return entry.value

    def get(self, key: str) -> Optional[Any]:
        value = self._lookup(key)
        if value is _MISSING:
            self._misses += 1
            return None
        self._hits += 1
        self._entries.move_to_end(key)
        return value

    def has(self, key: str) -> bool:
        return self._lookup(key) is not _MISSING

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1
        self._entries[key] = CacheEntry(
            value=value,
            inserted_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_set(
            self,
            key: str,
            producer: Callable[[], Awaitable[T]],
            ttl: Optional[float] = None,
    ) -> T:
        value = self._lookup(key)
        if value is not _MISSING:
            self._hits += 1
            self._entries.move_to_end(key)
            return value

        pending = self._inflight.get(key)
        if pending is not None:
            self._hits += 1
            return await asyncio.shield(pending)

        self._misses += 1
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        try:
            value = await producer()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            # waiters re-raise it; mark retrieved so an unawaited future stays quiet
            fut.exception()
            raise
        else:
            self.set(key, value, ttl)
            fut.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)

    def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "hit_rate": round(self._hits / total, 4) if total else 0.0,
        }
