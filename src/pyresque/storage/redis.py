"""Redis-based store implementation.

Provides the production backend. Workers on separate machines share one
Redis instance; all keys are prefixed with a namespace (``resque:`` by
default) so the layout matches other resque implementations.

Data Structures:
- resque:queues (SET): Names of every known queue
- resque:queue:{name} (LIST): Pending job payloads, FIFO (RPUSH / LPOP)
- resque:workers (SET): Registered worker ids
- resque:worker:{id} (STRING): JSON snapshot of the job being worked on
- resque:worker:{id}:started (STRING): Registration timestamp
- resque:job:{id}:status (STRING): Job status record
- resque:stat:{name} (STRING): Counters
- resque:failed (LIST): Failure records

Key Features:
- Blocking dequeue: Uses BLPOP across every queue in priority order
- Single-command operations: no MULTI/EXEC needed, each call is atomic
- Connection pooling: redis-py connection pool. The pool notices a pid
  change and resets itself, so a forked job process opens its own
  connections instead of sharing the parent's sockets.

Design: Adapter Pattern
Implements Store for Redis, adapting redis-py to the Store interface.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TypeVar

try:
    import redis
except ImportError:
    raise ImportError("redis-py is required for RedisStore. Install with: pip install redis")

from pyresque.storage.base import Store, StorageError

T = TypeVar("T")


class RedisStore(Store):
    """Redis store using connection pooling.

    Design: Adapter Pattern
    Adapts Redis key-value store to the Store protocol.

    Usage:
        store = RedisStore("redis://localhost:6379")
        store.connect()

        store.push_to_queue("queue:emails", payload)
        store.pop_from_queue("queue:emails")
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        namespace: str = "resque:",
        max_connections: int = 16,
    ):
        """Initialize Redis store.

        Default redis_url works for local development.

        Args:
            redis_url: Redis connection URL
            namespace: Prefix added to every key
            max_connections: Maximum pool size
        """
        self._redis_url = redis_url
        self._namespace = namespace
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None

    def __repr__(self) -> str:
        return f"RedisStore({self._redis_url!r}, namespace={self._namespace!r})"

    def connect(self) -> None:
        """Establish Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
        )

    def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis:
            self._redis.close()
            self._redis = None

    def _key(self, name: str) -> str:
        return f"{self._namespace}{name}"

    def _call(self, operation: Callable[[redis.Redis], T]) -> T:
        """Run one redis command, translating redis errors to StorageError."""
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")
        try:
            return operation(self._redis)
        except redis.RedisError as e:
            raise StorageError(f"Redis operation failed: {e}") from e

    def add_to_set(self, name: str, member: str) -> None:
        self._call(lambda r: r.sadd(self._key(name), member))

    def remove_from_set(self, name: str, member: str) -> None:
        self._call(lambda r: r.srem(self._key(name), member))

    def is_set_member(self, name: str, member: str) -> bool:
        return bool(self._call(lambda r: r.sismember(self._key(name), member)))

    def list_set_members(self, name: str) -> list[str]:
        return list(self._call(lambda r: r.smembers(self._key(name))))

    def push_to_queue(self, name: str, value: str) -> None:
        self._call(lambda r: r.rpush(self._key(name), value))

    def pop_from_queue(self, name: str) -> str | None:
        return self._call(lambda r: r.lpop(self._key(name)))

    def blocking_pop_from_queue(
        self, names: Sequence[str], timeout: float | None
    ) -> tuple[str, str] | None:
        if not names:
            raise StorageError("blocking pop needs at least one list name")

        keys = [self._key(name) for name in names]
        result = self._call(lambda r: r.blpop(keys, timeout=timeout or 0))

        if result is None:
            return None

        key, value = result
        return key[len(self._namespace) :], value

    def set_string(self, key: str, value: str) -> None:
        self._call(lambda r: r.set(self._key(key), value))

    def get_string(self, key: str) -> str | None:
        return self._call(lambda r: r.get(self._key(key)))

    def delete_key(self, key: str) -> None:
        self._call(lambda r: r.delete(self._key(key)))

    def increment(self, key: str, by: int = 1) -> int:
        return int(self._call(lambda r: r.incrby(self._key(key), by)))
