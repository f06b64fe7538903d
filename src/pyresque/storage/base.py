"""
Store - Abstract interface for the shared key-value store.

Design Pattern: Adapter Pattern
Store defines the target interface that all storage adapters implement.
Different backends (Redis, Memory) adapt to this common interface.

Design Principle: Dependency Inversion
The worker, its reservation protocol and the Job collaborator depend on
this abstraction, not on redis-py. Tests run against InMemoryStore.

The interface is deliberately primitive: sets, lists used as queues,
strings and counters. Every method is a single atomic operation against
the store, so callers never hold a multi-step transaction open.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence


class StorageError(Exception):
    """
    Storage operation failed.

    Adapters wrap backend-specific errors (connection refused, protocol
    errors) in this type so callers handle one exception family.
    """

    pass


class Store(ABC):
    """
    Abstract key-value store used by workers.

    Pattern Benefits:
    - Open-Closed Principle: Add new backends without modifying the worker
    - Testability: InMemoryStore behaves like Redis for the operations used
    """

    # ========================================================================
    # Set Operations - Worker registry, known queues
    # ========================================================================

    @abstractmethod
    def add_to_set(self, name: str, member: str) -> None:
        """Add ``member`` to the set ``name``."""

    @abstractmethod
    def remove_from_set(self, name: str, member: str) -> None:
        """Remove ``member`` from the set ``name``; missing members are ignored."""

    @abstractmethod
    def is_set_member(self, name: str, member: str) -> bool:
        """Check set membership."""

    @abstractmethod
    def list_set_members(self, name: str) -> list[str]:
        """Return all members of the set ``name`` (empty list if missing)."""

    # ========================================================================
    # List Operations - Job queues
    # ========================================================================

    @abstractmethod
    def push_to_queue(self, name: str, value: str) -> None:
        """Append ``value`` to the tail of the list ``name``."""

    @abstractmethod
    def pop_from_queue(self, name: str) -> str | None:
        """
        Atomically remove and return the head of the list ``name``.

        Returns:
            The popped value, None if the list is empty
        """

    @abstractmethod
    def blocking_pop_from_queue(
        self, names: Sequence[str], timeout: float | None
    ) -> tuple[str, str] | None:
        """
        Pop from the first non-empty list in ``names``, waiting if all are empty.

        Args:
            names: List names, checked in order
            timeout: Maximum seconds to wait; None or 0 waits forever

        Returns:
            (list name, value) tuple, None on timeout
        """

    # ========================================================================
    # String Operations - Worker state, job status, counters
    # ========================================================================

    @abstractmethod
    def set_string(self, key: str, value: str) -> None:
        """Set ``key`` to ``value``."""

    @abstractmethod
    def get_string(self, key: str) -> str | None:
        """Return the value of ``key``, None if missing."""

    @abstractmethod
    def delete_key(self, key: str) -> None:
        """Delete ``key`` whatever its type; missing keys are ignored."""

    @abstractmethod
    def increment(self, key: str, by: int = 1) -> int:
        """Atomically add ``by`` to the integer at ``key`` and return the new value."""

    # ========================================================================
    # Queue discovery
    # ========================================================================

    def list_queue_names(self) -> list[str]:
        """Return every queue name known to the store (unordered)."""
        return self.list_set_members("queues")

    def close(self) -> None:
        """Release backend resources. No-op by default."""
