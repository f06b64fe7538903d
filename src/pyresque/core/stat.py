"""Persisted statistics counters (``stat:{name}`` keys)."""

from __future__ import annotations

from pyresque.storage.base import Store


class Stat:
    """
    Integer counters kept in the shared store.

    Usage:
        stat = Stat(store)
        stat.incr("processed")
        stat.get("processed")  # -> 1
    """

    def __init__(self, store: Store):
        self._store = store

    @staticmethod
    def key(name: str) -> str:
        return f"stat:{name}"

    def get(self, name: str) -> int:
        """Return the counter value, 0 when it was never set."""
        value = self._store.get_string(self.key(name))
        if value is None:
            return 0
        return int(value)

    def incr(self, name: str, by: int = 1) -> int:
        return self._store.increment(self.key(name), by)

    def decr(self, name: str, by: int = 1) -> int:
        return self._store.increment(self.key(name), -by)

    def clear(self, name: str) -> None:
        self._store.delete_key(self.key(name))
