"""In-memory storage implementation for pyresque.

Design Pattern: Adapter Pattern
InMemoryStore adapts in-memory dictionaries to the Store interface.

Instance is immediately usable after __init__. It is thread-safe, and the
blocking pop waits on a Condition that every push notifies. A forked child
gets its own copy of the data, so writes made by a child are not visible
to the parent.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Sequence

from pyresque.storage.base import Store, StorageError


class InMemoryStore(Store):
    """In-memory store for testing and single-process use.

    Can be substituted for RedisStore without changing client code.

    Usage:
        store = InMemoryStore()
        store.push_to_queue("queue:emails", payload)
    """

    def __init__(self):
        """Initialize empty storage."""
        self._sets: dict[str, set[str]] = {}
        self._lists: dict[str, deque[str]] = {}
        self._strings: dict[str, str] = {}

        # Condition doubles as the lock for all three maps
        self._changed = threading.Condition()

    def __repr__(self) -> str:
        """Return string representation of storage instance."""
        return "InMemoryStore"

    def add_to_set(self, name: str, member: str) -> None:
        with self._changed:
            self._sets.setdefault(name, set()).add(member)

    def remove_from_set(self, name: str, member: str) -> None:
        with self._changed:
            members = self._sets.get(name)
            if members is None:
                return
            members.discard(member)
            if not members:
                del self._sets[name]

    def is_set_member(self, name: str, member: str) -> bool:
        with self._changed:
            return member in self._sets.get(name, ())

    def list_set_members(self, name: str) -> list[str]:
        with self._changed:
            return list(self._sets.get(name, ()))

    def push_to_queue(self, name: str, value: str) -> None:
        with self._changed:
            self._lists.setdefault(name, deque()).append(value)
            self._changed.notify_all()

    def pop_from_queue(self, name: str) -> str | None:
        with self._changed:
            return self._pop_locked(name)

    def blocking_pop_from_queue(
        self, names: Sequence[str], timeout: float | None
    ) -> tuple[str, str] | None:
        if not names:
            raise StorageError("blocking pop needs at least one list name")

        deadline = None if not timeout else time.monotonic() + timeout
        with self._changed:
            while True:
                for name in names:
                    value = self._pop_locked(name)
                    if value is not None:
                        return name, value

                if deadline is None:
                    self._changed.wait()
                    continue

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._changed.wait(remaining)

    def _pop_locked(self, name: str) -> str | None:
        items = self._lists.get(name)
        if not items:
            return None
        value = items.popleft()
        if not items:
            del self._lists[name]
        return value

    def set_string(self, key: str, value: str) -> None:
        with self._changed:
            self._strings[key] = value

    def get_string(self, key: str) -> str | None:
        with self._changed:
            return self._strings.get(key)

    def delete_key(self, key: str) -> None:
        with self._changed:
            self._strings.pop(key, None)
            self._lists.pop(key, None)
            self._sets.pop(key, None)

    def increment(self, key: str, by: int = 1) -> int:
        with self._changed:
            try:
                value = int(self._strings.get(key, "0")) + by
            except ValueError:
                raise StorageError(f"value at {key!r} is not an integer") from None
            self._strings[key] = str(value)
            return value

    def list_length(self, name: str) -> int:
        """Number of items in a list (inspection helper for tests)."""
        with self._changed:
            return len(self._lists.get(name, ()))

    def list_items(self, name: str) -> list[str]:
        """Snapshot of a list, head first (inspection helper for tests)."""
        with self._changed:
            return list(self._lists.get(name, ()))

    def reset(self) -> None:
        """Drop all data."""
        with self._changed:
            self._sets.clear()
            self._lists.clear()
            self._strings.clear()
