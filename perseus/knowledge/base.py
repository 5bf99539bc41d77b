"""Versioned in-memory knowledge base shared by all agents.

Entries are addressed by ``(category, key)``. Overwriting a key pushes the
previous entry onto that key's version history, so ``get(..., version=0)``
returns the first value ever stored.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Optional, Union

from perseus.types import now_ms

logger = logging.getLogger(__name__)

Version = Union[int, str]
StoreListener = Callable[["KnowledgeEntry", str, str], None]


@dataclass
class KnowledgeEntry:
    data: Any
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {"data": self.data, "metadata": dict(self.metadata), "timestamp": self.timestamp}


class KnowledgeBase:
    """Thread-safe category/key store with per-key version history."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, KnowledgeEntry]] = {}
        self._history: dict[str, dict[str, list[KnowledgeEntry]]] = {}
        self._listeners: list[StoreListener] = []
        self._removed: set[tuple[str, str]] = set()
        self._lock = Lock()

    def on_store(self, listener: StoreListener) -> None:
        """Register a ``knowledge:stored`` listener."""
        self._listeners.append(listener)

    def store(
        self,
        category: str,
        key: str,
        data: Any,
        metadata: Optional[dict[str, Any]] = None,
    ) -> KnowledgeEntry:
        if not category or not key:
            raise ValueError("category and key are required")

        timestamp = now_ms()
        meta = dict(metadata or {})
        meta["last_updated"] = timestamp
        entry = KnowledgeEntry(data=data, metadata=meta, timestamp=timestamp)

        with self._lock:
            bucket = self._entries.setdefault(category, {})
            previous = bucket.get(key)
            if previous is not None:
                self._history.setdefault(category, {}).setdefault(key, []).append(previous)
            bucket[key] = entry
            self._removed.discard((category, key))

        logger.debug("Stored knowledge %s/%s", category, key)
        for listener in list(self._listeners):
            try:
                listener(entry, category, key)
            except Exception as exc:
                logger.warning("knowledge:stored listener failed for %s/%s: %s", category, key, exc)
        return entry

    def get_entry(self, category: str, key: str, version: Version = "latest") -> Optional[KnowledgeEntry]:
        with self._lock:
            if version == "latest":
                return self._entries.get(category, {}).get(key)
            if isinstance(version, int) and not isinstance(version, bool):
                history = self._history.get(category, {}).get(key, [])
                if 0 <= version < len(history):
                    return history[version]
            return None

    def get(self, category: str, key: str, version: Version = "latest") -> Any:
        entry = self.get_entry(category, key, version)
        return entry.data if entry is not None else None

    def query_by_category(self, category: str) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._entries.get(category, {}).items())
        return [{"key": key, **entry.to_dict()} for key, entry in items]

    def categories(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def version_history(self, category: str, key: str) -> list[KnowledgeEntry]:
        with self._lock:
            return list(self._history.get(category, {}).get(key, []))

    def delete(self, category: str, key: str) -> bool:
        with self._lock:
            bucket = self._entries.get(category)
            if not bucket or key not in bucket:
                return False
            del bucket[key]
            self._history.get(category, {}).pop(key, None)
            self._removed.add((category, key))
            if not bucket:
                del self._entries[category]
            return True

    def prune(self, category: str, keep: int) -> int:
        """Drop all but the ``keep`` most recently stored keys of ``category``."""
        with self._lock:
            bucket = self._entries.get(category)
            if not bucket or len(bucket) <= keep:
                return 0
            ordered = sorted(bucket, key=lambda k: bucket[k].timestamp)
            stale = ordered[: len(bucket) - max(keep, 0)]
            for key in stale:
                del bucket[key]
                self._history.get(category, {}).pop(key, None)
                self._removed.add((category, key))
            if not bucket:
                del self._entries[category]
        logger.debug("Pruned %d entries from %s", len(stale), category)
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._history.clear()
            self._removed.clear()

    def snapshot(self) -> dict[str, dict[str, KnowledgeEntry]]:
        """Deep copy of the latest entries, used for persistence."""
        with self._lock:
            return copy.deepcopy(self._entries)

    def take_removed(self) -> list[tuple[str, str]]:
        """Return and forget the keys deleted since the last call."""
        with self._lock:
            removed = sorted(self._removed)
            self._removed.clear()
        return removed

    def load_entry(self, category: str, key: str, entry: KnowledgeEntry) -> None:
        """Install an entry as-is (no history push, no listeners)."""
        with self._lock:
            self._entries.setdefault(category, {})[key] = entry
