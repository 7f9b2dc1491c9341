"""Run-scoped deduplication state and counters."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Iterable

STAT_KEYS = ("slugs", "users", "profiles", "posts", "media", "skipped", "not_found", "forbidden", "errors")


class DedupSet:
    """A set whose check-and-insert is atomic across worker threads."""

    def __init__(self, items: Iterable[str] = ()) -> None:
        self._items: set[str] = set(items)
        self._lock = threading.Lock()

    def add(self, item: str) -> bool:
        """Insert *item*; True if it was not already present."""
        with self._lock:
            if item in self._items:
                return False
            self._items.add(item)
            return True

    def __contains__(self, item: object) -> bool:
        with self._lock:
            return item in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def snapshot(self) -> set[str]:
        with self._lock:
            return set(self._items)

    def sorted(self) -> list[str]:
        return sorted(self.snapshot())


class Stats:
    def __init__(self) -> None:
        self._counts = dict.fromkeys(STAT_KEYS, 0)
        self._lock = threading.Lock()

    def incr(self, key: str, n: int = 1) -> None:
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + n

    def __getitem__(self, key: str) -> int:
        with self._lock:
            return self._counts.get(key, 0)

    def as_dict(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)


@dataclass
class HarvestState:
    """Everything one run shares between its workers.  Never reused across runs."""

    slugs: DedupSet = field(default_factory=DedupSet)
    users: DedupSet = field(default_factory=DedupSet)
    media: DedupSet = field(default_factory=DedupSet)
    stats: Stats = field(default_factory=Stats)
