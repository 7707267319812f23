"""Local result/advisory cache with LRU eviction and pinned favorites.

Invariants (checked after every mutation):
    - count of non-pinned entries <= capacity
    - pinned entries are exempt from the count and never auto-evicted
    - eviction among non-pinned entries is strict least-recently-accessed

A read counts as use: get() moves the entry to the most-recent end. Reads
only touch memory; the new order reaches disk with the next mutation or
flush().
"""
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from fieldlink.core.constants import CACHE_CAPACITY
from fieldlink.core.errors import CacheEntryNotFound
from fieldlink.core.events import ReceiptBus
from fieldlink.core.persist import load_json, save_json
from fieldlink.core.receipt import StopRule


@dataclass
class CacheEntry:
    """Detection result plus (optionally) the advisory received for it."""
    key: str
    detection_result: dict
    advisory_response: dict | None = None
    received_at: float | None = None
    last_accessed_at: float | None = None
    pinned: bool = False
    user_id: str | None = None
    language: str | None = None
    details: dict = field(default_factory=dict)

    def to_row(self) -> dict:
        """Persisted row: key, entry, pinned, timestamps."""
        return {
            "key": self.key,
            "entry": {
                "detection_result": self.detection_result,
                "advisory_response": self.advisory_response,
                "user_id": self.user_id,
                "language": self.language,
                "details": self.details,
            },
            "pinned": self.pinned,
            "received_at": self.received_at,
            "last_accessed_at": self.last_accessed_at,
        }

    @classmethod
    def from_row(cls, row: dict) -> "CacheEntry":
        entry = row.get("entry", {})
        return cls(
            key=row["key"],
            detection_result=entry.get("detection_result", {}),
            advisory_response=entry.get("advisory_response"),
            received_at=row.get("received_at"),
            last_accessed_at=row.get("last_accessed_at"),
            pinned=row.get("pinned", False),
            user_id=entry.get("user_id"),
            language=entry.get("language"),
            details=entry.get("details", {}),
        )


class CacheStore:
    """Key-value store of detections and advisories.

    Attributes:
        path: JSON table path, or None for an in-memory cache
        capacity: Maximum number of non-pinned entries
    """

    def __init__(
        self,
        path: str | Path | None = None,
        capacity: int = CACHE_CAPACITY,
        bus: ReceiptBus | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self.path = Path(path) if path is not None else None
        self.capacity = capacity
        self.bus = bus or ReceiptBus()
        self.clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._dirty = False
        self._load()

    # -- persistence --------------------------------------------------------

    def _load(self) -> None:
        rows = load_json(self.path, [])
        for row in rows:
            entry = CacheEntry.from_row(row)
            self._entries[entry.key] = entry
        evicted = self._enforce_capacity()
        if evicted:
            self._save()
            self._publish_evictions(evicted, "capacity")

    def _save(self) -> None:
        save_json(self.path, [e.to_row() for e in self._entries.values()])
        self._dirty = False

    def flush(self) -> bool:
        """Persist access order changed by reads. Returns True if anything was written."""
        with self._lock:
            if not self._dirty:
                return False
            self._save()
            return True

    # -- queries ------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def keys(self) -> list[str]:
        """Keys from least to most recently accessed."""
        with self._lock:
            return list(self._entries.keys())

    def entries(self) -> list[CacheEntry]:
        with self._lock:
            return list(self._entries.values())

    def count_non_pinned(self) -> int:
        with self._lock:
            return sum(1 for e in self._entries.values() if not e.pinned)

    def count_pinned(self) -> int:
        with self._lock:
            return sum(1 for e in self._entries.values() if e.pinned)

    def peek(self, key: str) -> CacheEntry | None:
        """Look up without counting as use."""
        with self._lock:
            return self._entries.get(key)

    # -- operations ---------------------------------------------------------

    def put(self, entry: CacheEntry) -> list[str]:
        """Insert or update by key; evict LRU non-pinned entries over capacity.

        An existing pinned flag survives the update.

        Returns:
            Keys evicted to restore the capacity invariant
        """
        with self._lock:
            now = self.clock()
            existing = self._entries.get(entry.key)
            if existing is not None:
                entry.pinned = entry.pinned or existing.pinned
                if entry.received_at is None:
                    entry.received_at = existing.received_at
            if entry.received_at is None:
                entry.received_at = now
            entry.last_accessed_at = now
            self._entries[entry.key] = entry
            self._entries.move_to_end(entry.key)

            evicted = self._enforce_capacity()
            self._check_invariant()
            self._save()

        self._publish_evictions(evicted, "capacity")
        return evicted

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry (marking it used) or None when absent."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            entry.last_accessed_at = self.clock()
            self._entries.move_to_end(key)
            self._dirty = True
            return entry

    def pin(self, key: str) -> CacheEntry:
        """Mark an entry as a favorite, exempt from eviction.

        Raises:
            CacheEntryNotFound: If the key is absent or was already evicted
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                raise CacheEntryNotFound(key)
            entry.pinned = True
            self._check_invariant()
            self._save()
        self.bus.publish("cache_pinned", {"key": key})
        return entry

    def unpin(self, key: str) -> list[str]:
        """Clear the favorite flag. May evict to get back under capacity."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                raise CacheEntryNotFound(key)
            entry.pinned = False
            evicted = self._enforce_capacity()
            self._check_invariant()
            self._save()
        self.bus.publish("cache_unpinned", {"key": key})
        self._publish_evictions(evicted, "capacity")
        return evicted

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            if removed:
                self._save()
        return removed

    def evict_older_than(self, max_age_seconds: float) -> list[str]:
        """Manual sweep of non-pinned entries received more than max_age ago.

        Runs regardless of capacity, for storage-pressure scenarios.
        """
        with self._lock:
            cutoff = self.clock() - max_age_seconds
            stale = [
                key for key, e in self._entries.items()
                if not e.pinned and e.received_at is not None and e.received_at < cutoff
            ]
            for key in stale:
                del self._entries[key]
            self._check_invariant()
            if stale:
                self._save()

        self._publish_evictions(stale, "max_age")
        return stale

    # -- internals ----------------------------------------------------------

    def _enforce_capacity(self) -> list[str]:
        evicted = []
        non_pinned = [k for k, e in self._entries.items() if not e.pinned]
        overflow = len(non_pinned) - self.capacity
        # OrderedDict front = least recently accessed
        for key in non_pinned[:max(overflow, 0)]:
            del self._entries[key]
            evicted.append(key)
        return evicted

    def _check_invariant(self) -> None:
        non_pinned = sum(1 for e in self._entries.values() if not e.pinned)
        if non_pinned > self.capacity:
            raise StopRule(f"cache holds {non_pinned} non-pinned entries, capacity {self.capacity}")

    def _publish_evictions(self, keys: list[str], reason: str) -> None:
        for key in keys:
            self.bus.publish("cache_evicted", {"key": key, "reason": reason})
