"""
Datasource cache entries and the LRU store that owns them.
"""
import asyncio
import json
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from ..core.errors import DataError
from ..core.paths import UNSET


class DatasourceStatus(str, Enum):
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class DatasourceState:
    """
    Read-only view of a cache entry handed to bindings and renderers.

    `value` keeps the last successful payload while loading again (stale=True)
    or after a failure.
    """
    status: DatasourceStatus
    value: Any = UNSET
    error: Optional[DataError] = None
    stale: bool = False
    key: str = ""

    @property
    def is_loading(self) -> bool:
        return self.status == DatasourceStatus.LOADING

    @property
    def is_success(self) -> bool:
        return self.status == DatasourceStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status == DatasourceStatus.ERROR


def cache_key(datasource_id: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Datasource id plus the canonical JSON form of its params."""
    if not params:
        return datasource_id
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return f"{datasource_id}?{canonical}"


@dataclass
class CacheEntry:
    key: str
    datasource_id: str
    params: Dict[str, Any] = field(default_factory=dict)
    fingerprint: str = ""
    status: DatasourceStatus = DatasourceStatus.LOADING
    value: Any = UNSET
    error: Optional[DataError] = None
    has_value: bool = False
    fetched_at: Optional[float] = None
    pending: Optional[asyncio.Future] = None
    subscribed: bool = False

    def snapshot(self) -> DatasourceState:
        return DatasourceState(
            status=self.status,
            value=self.value,
            error=self.error,
            stale=self.has_value and self.status != DatasourceStatus.SUCCESS,
            key=self.key,
        )

    def is_expired(self, now: float, ttl: Optional[float]) -> bool:
        if ttl is None or self.fetched_at is None:
            return False
        return now - self.fetched_at >= ttl

    def mark_loading(self):
        self.status = DatasourceStatus.LOADING
        self.error = None

    def mark_success(self, value: Any, now: float):
        self.status = DatasourceStatus.SUCCESS
        self.value = value
        self.has_value = True
        self.error = None
        self.fetched_at = now

    def mark_error(self, error: DataError, now: float):
        self.status = DatasourceStatus.ERROR
        self.error = error
        self.fetched_at = now


class DatasourceCache:
    """
    Entry store bounded by entry count. The least recently used idle entry is
    evicted first; entries with a pending fetch or live subscription stay.
    """
    def __init__(self, max_entries: int = 100, clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self.clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        self._entries.move_to_end(key)
        return entry

    def peek(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def add(self, entry: CacheEntry) -> CacheEntry:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        self._evict()
        return entry

    def remove(self, key: str) -> Optional[CacheEntry]:
        return self._entries.pop(key, None)

    def entries_for(self, datasource_id: str) -> List[CacheEntry]:
        return [e for e in self._entries.values() if e.datasource_id == datasource_id]

    def entries(self) -> List[CacheEntry]:
        return list(self._entries.values())

    def clear(self):
        self._entries.clear()

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }

    def _evict(self):
        if len(self._entries) <= self.max_entries:
            return
        # the newest entry is never the victim
        for key in list(self._entries)[:-1]:
            if len(self._entries) <= self.max_entries:
                break
            entry = self._entries[key]
            if entry.pending is not None or entry.subscribed:
                continue
            del self._entries[key]
            self.evictions += 1
            logger.debug(f"Evicted datasource cache entry '{key}'")
