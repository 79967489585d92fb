"""A string-keyed dictionary that is safe to share between threads."""

from __future__ import annotations

import threading
from typing import Generic, TypeVar

V = TypeVar("V")


class SafeMap(Generic[V]):
    """Thread-safe mapping from string keys to values."""

    def __init__(self) -> None:
        self._items: dict[str, V] = {}
        self._lock = threading.Lock()

    def add(self, key: str, value: V) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        with self._lock:
            self._items[key] = value

    def remove(self, key: str) -> bool:
        """Delete ``key``; return whether it was present."""
        with self._lock:
            if key not in self._items:
                return False
            del self._items[key]
            return True

    def contains(self, key: str) -> bool:
        """Return whether ``key`` is present."""
        with self._lock:
            return key in self._items

    def get(self, key: str) -> V | None:
        """Return the value stored under ``key``, or None if absent."""
        with self._lock:
            return self._items.get(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)