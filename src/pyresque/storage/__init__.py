"""Storage backends for the shared job store.

Provides multiple storage implementations behind a common interface:
    - Store: Abstract interface
    - RedisStore: Redis-backed distributed storage
    - InMemoryStore: In-memory storage for testing

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to the Store interface.
    Clients depend on abstraction, not concrete implementations,
    enabling easy swapping between storage backends.
"""

from pyresque.storage.base import Store, StorageError

# Lazy imports so importing pyresque does not require a redis client
# until RedisStore is actually used.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryStore":
        from pyresque.storage.memory import InMemoryStore

        return InMemoryStore
    elif name == "RedisStore":
        from pyresque.storage.redis import RedisStore

        return RedisStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Store",
    "StorageError",
    "RedisStore",
    "InMemoryStore",
]
