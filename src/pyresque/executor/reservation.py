"""
Queue reservation: pick the next job off a worker's queues.

Two strategies:
- polling: check each queue in priority order with a non-blocking pop
- blocking: a single blocking pop across every queue, bounded by a timeout

An empty result is a normal ``None``, never an error.

The ``*`` wildcard expands, in place, to every queue known to the store
that is not already named explicitly, sorted alphabetically. Expansion is
redone on each reservation so new queues are picked up without restarts.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from pyresque.core.job import Job, JobRegistry
from pyresque.storage.base import Store

logger = logging.getLogger(__name__)

WILDCARD = "*"


def expand_queues(configured: Sequence[str], known: Sequence[str]) -> list[str]:
    """Resolve a configured queue list against the queues known to the store.

    Example:
        >>> expand_queues(["emails", "*"], ["signups", "emails", "reports"])
        ['emails', 'reports', 'signups']
    """
    explicit = [q for q in configured if q != WILDCARD]
    rest = sorted(set(known) - set(explicit))

    resolved: list[str] = []
    for queue in configured:
        if queue == WILDCARD:
            resolved.extend(q for q in rest if q not in resolved)
        elif queue not in resolved:
            resolved.append(queue)
    return resolved


class QueueReservation:
    """Reserves jobs from an ordered queue list.

    Usage:
        reservation = QueueReservation(store, ["high", "low"])
        job = reservation.reserve()                        # polling
        job = reservation.reserve(blocking=True, timeout=5)
    """

    def __init__(
        self,
        store: Store,
        queues: Sequence[str],
        registry: JobRegistry | None = None,
    ):
        self._store = store
        self._queues = list(queues)
        self._registry = registry

    @property
    def configured_queues(self) -> list[str]:
        return list(self._queues)

    def queues(self, fetch: bool = True) -> list[str]:
        """Return the queues to search, expanding the wildcard if present.

        Args:
            fetch: When False, return the configured list untouched
        """
        if WILDCARD not in self._queues or not fetch:
            return list(self._queues)
        return expand_queues(self._queues, self._store.list_queue_names())

    def reserve(self, blocking: bool = False, timeout: float | None = None) -> Job | None:
        """Reserve one job.

        Args:
            blocking: Use a single blocking pop instead of polling
            timeout: Blocking pop timeout in seconds

        Returns:
            The reserved job, or None if nothing was available
        """
        queues = self.queues()
        if not queues:
            return None

        if blocking:
            job = Job.reserve_blocking(self._store, queues, timeout, self._registry)
            if job is not None:
                logger.info(f"Found job on {job.queue}")
            return job

        for queue in queues:
            logger.debug(f"Checking {queue} for jobs")
            job = Job.reserve(self._store, queue, self._registry)
            if job is not None:
                logger.info(f"Found job on {job.queue}")
                return job

        return None
