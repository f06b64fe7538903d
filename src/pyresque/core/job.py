"""
Job - a reserved unit of work and its status bookkeeping.

A job is a JSON payload popped off ``queue:{name}``. The payload names a
job class which is looked up in a JobRegistry when the job is performed.

Payload format (compatible with other resque clients):
    {"class": "SendEmail", "args": [...], "id": "...", "queue_time": 1700000000.0}

Design: the Job owns its own status record and failure reporting, so the
worker only has to decide *when* a job failed, never *how* that is stored.
"""

from __future__ import annotations

import json
import logging
import time
import traceback
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from uuid_extensions import uuid7

from pyresque.core.stat import Stat
from pyresque.core.status import JobStatus
from pyresque.storage.base import Store

logger = logging.getLogger(__name__)

QUEUE_KEY_PREFIX = "queue:"
FAILED_LIST = "failed"


def queue_key(queue: str) -> str:
    """Build the store list name for a queue."""
    return f"{QUEUE_KEY_PREFIX}{queue}"


class JobRegistry:
    """Registry mapping job class names to their handlers.

    A handler is either a class (instantiated per job, then its
    ``perform`` method is called with the job args) or a plain callable
    called with the job args.

    Example:
        ```python
        registry = JobRegistry()

        # Register a class under its own name
        registry.register(SendEmail)

        # Or a function under an explicit name
        registry.register("Cleanup", lambda days: purge(days))
        ```
    """

    def __init__(self):
        """Create a new empty job registry."""
        self._handlers: dict[str, Callable[..., Any]] = {}

    def register(self, job_class: type | str, handler: Callable[..., Any] | None = None) -> None:
        """Register a job handler.

        Args:
            job_class: Class to register under its ``__name__``, or an explicit name
            handler: Callable to register under ``job_class`` when it is a name

        Raises:
            TypeError: If no callable handler can be derived
        """
        if isinstance(job_class, str):
            name = job_class
            if handler is None:
                raise TypeError(f"a handler is required when registering {name!r} by name")
        else:
            name = job_class.__name__
            handler = handler or job_class

        if not callable(handler):
            raise TypeError(f"handler for {name!r} is not callable")

        logger.debug(f"Registered job class: {name}")
        self._handlers[name] = handler

    def get_handler(self, name: str) -> Callable[..., Any] | None:
        """Get the handler for a job class name, None if unknown."""
        return self._handlers.get(name)

    def __len__(self) -> int:
        """Returns the number of registered job classes."""
        return len(self._handlers)

    def is_empty(self) -> bool:
        """Returns True if no job classes are registered."""
        return len(self._handlers) == 0


default_registry = JobRegistry()


class Job:
    """A job reserved from a queue.

    Usage:
        job_id = Job.create(store, "emails", "SendEmail", ["bob@example.com"])

        job = Job.reserve(store, "emails")
        job.perform()
        job.update_status(JobStatus.COMPLETE)
    """

    def __init__(
        self,
        queue: str,
        payload: dict[str, Any],
        store: Store,
        registry: JobRegistry | None = None,
    ):
        """Wrap a decoded payload.

        Args:
            queue: Queue the job was reserved from
            payload: Decoded job payload
            store: Store used for status and failure bookkeeping
            registry: Registry resolving the job class (default_registry if None)
        """
        self.queue = queue
        self.payload = payload
        self.worker: Any = None
        self._store = store
        self._registry = registry or default_registry

    # ========================================================================
    # Queue operations
    # ========================================================================

    @classmethod
    def create(
        cls,
        store: Store,
        queue: str,
        class_name: str,
        args: Sequence[Any] | dict[str, Any] | None = None,
        track_status: bool = True,
        job_id: str | None = None,
    ) -> str:
        """Enqueue a new job.

        Args:
            store: Target store
            queue: Queue name
            class_name: Registered job class name
            args: Positional (list) or keyword (dict) arguments for the job
            track_status: Create a WAITING status record for the job
            job_id: Explicit id, a uuid7 hex string when omitted

        Returns:
            The job id
        """
        job_id = job_id or uuid7().hex
        payload = {
            "class": class_name,
            "args": list(args) if isinstance(args, (list, tuple)) else (args or []),
            "id": job_id,
            "queue_time": time.time(),
        }

        store.add_to_set("queues", queue)
        if track_status:
            _write_status(store, job_id, JobStatus.WAITING)
        store.push_to_queue(queue_key(queue), json.dumps(payload))
        return job_id

    @classmethod
    def reserve(cls, store: Store, queue: str, registry: JobRegistry | None = None) -> Job | None:
        """Pop one job from ``queue``; None when the queue is empty.

        Raises:
            ValueError: If the popped payload is not a JSON object
        """
        raw = store.pop_from_queue(queue_key(queue))
        if raw is None:
            return None
        return cls(queue, _decode_payload(raw), store, registry)

    @classmethod
    def reserve_blocking(
        cls,
        store: Store,
        queues: Sequence[str],
        timeout: float | None = None,
        registry: JobRegistry | None = None,
    ) -> Job | None:
        """Pop one job from any of ``queues``, waiting up to ``timeout`` seconds."""
        result = store.blocking_pop_from_queue([queue_key(q) for q in queues], timeout)
        if result is None:
            return None

        key, raw = result
        queue = key[len(QUEUE_KEY_PREFIX) :] if key.startswith(QUEUE_KEY_PREFIX) else key
        return cls(queue, _decode_payload(raw), store, registry)

    # ========================================================================
    # Execution
    # ========================================================================

    @property
    def job_id(self) -> str | None:
        return self.payload.get("id")

    @property
    def class_name(self) -> str:
        return self.payload.get("class", "")

    @property
    def args(self) -> list[Any] | dict[str, Any]:
        return self.payload.get("args") or []

    def perform(self) -> Any:
        """Run the job's handler.

        Raises:
            JobNotFoundError: If the job class is not registered
            Exception: Whatever the job's own logic raises
        """
        handler = self._registry.get_handler(self.class_name)
        if handler is None:
            raise JobNotFoundError(f"job class {self.class_name!r} is not registered")

        args = self.args
        if isinstance(handler, type):
            instance = handler()
            instance.job = self
            target = instance.perform
        else:
            target = handler

        if isinstance(args, dict):
            return target(**args)
        return target(*args)

    # ========================================================================
    # Status bookkeeping
    # ========================================================================

    def is_tracking(self) -> bool:
        """True when a status record exists for this job."""
        if self.job_id is None:
            return False
        return self._store.get_string(_status_key(self.job_id)) is not None

    def update_status(self, status: JobStatus) -> None:
        """Update the status record; untracked jobs are left alone."""
        if not self.is_tracking():
            return
        _write_status(self._store, self.job_id, status)

    def get_status(self) -> JobStatus | None:
        if self.job_id is None:
            return None
        raw = self._store.get_string(_status_key(self.job_id))
        if raw is None:
            return None
        return JobStatus(json.loads(raw)["status"])

    def fail(self, error: BaseException) -> None:
        """Record a terminal failure for this job.

        Sets the FAILED status, appends a failure record to the ``failed``
        list and bumps the global and per-worker failure counters.
        """
        self.update_status(JobStatus.FAILED)

        worker = str(self.worker) if self.worker is not None else None
        record = {
            "failed_at": datetime.now(UTC).strftime("%a %b %d %H:%M:%S %Z %Y"),
            "payload": self.payload,
            "exception": type(error).__name__,
            "error": str(error),
            "backtrace": traceback.format_exception(error),
            "worker": worker,
            "queue": self.queue,
        }
        self._store.push_to_queue(FAILED_LIST, json.dumps(record))

        stat = Stat(self._store)
        stat.incr("failed")
        if worker is not None:
            stat.incr(f"failed:{worker}")

    def __str__(self) -> str:
        return f"(Job{{{self.queue}}} | {self.job_id} | {self.class_name} | {json.dumps(self.args)})"

    def __repr__(self) -> str:
        return f"Job(queue={self.queue!r}, id={self.job_id!r}, class={self.class_name!r})"


def _decode_payload(raw: str) -> dict[str, Any]:
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError(f"job payload is not a JSON object: {raw!r}")
    return payload


def _status_key(job_id: str) -> str:
    return f"job:{job_id}:status"


def _write_status(store: Store, job_id: str, status: JobStatus) -> None:
    now = int(time.time())
    key = _status_key(job_id)
    started = now
    existing = store.get_string(key)
    if existing is not None:
        started = json.loads(existing).get("started", now)
    store.set_string(key, json.dumps({"status": status.value, "updated": now, "started": started}))


class JobNotFoundError(Exception):
    """
    Job class could not be resolved from the payload.

    Raised from Job.perform(), so it is reported like any other job failure.
    """

    pass


class DirtyExitError(Exception):
    """
    Job ended without recording a normal completion.

    Raised (as a value passed to Job.fail) when the child process exits
    with a nonzero status, or when a worker unregisters while a job is
    still in flight.
    """

    def __init__(self, message: str = "Job exited without recording a completion"):
        super().__init__(message)
