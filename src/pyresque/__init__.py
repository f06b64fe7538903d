"""
pyresque: Resque-compatible job worker for Python

A worker process that reserves jobs from Redis queues, runs each one in a
forked child process and records the outcome where other resque tooling
can read it.

Design Pattern: Façade Pattern
This module provides a simplified interface to the worker, hiding the
details of storage, reservation, process dispatch and signal handling.

Example:
    ```python
    from pyresque import Job, RedisStore, Worker, default_registry

    class SendEmail:
        def perform(self, address):
            deliver(address)

    default_registry.register(SendEmail)

    store = RedisStore("redis://localhost:6379")
    store.connect()

    Job.create(store, "emails", "SendEmail", ["bob@example.com"])

    # Runs until SIGQUIT (graceful) or SIGTERM/SIGINT (immediate)
    Worker(store, ["emails", "*"]).work(interval=5)
    ```
"""

# Core types
from pyresque.core import (
    DirtyExitError,
    Job,
    JobNotFoundError,
    JobRegistry,
    JobStatus,
    Stat,
    WorkerId,
    default_registry,
)

# Storage (Adapter pattern)
from pyresque.storage import InMemoryStore, RedisStore, StorageError, Store

# Execution
from pyresque.executor import (
    AsyncioTimerAdapter,
    ControlChannel,
    ControlCommand,
    DeadWorkerReaper,
    DispatchOutcome,
    ProcessDispatcher,
    QueueReservation,
    Timer,
    TimerError,
    Worker,
    WorkerConfigError,
    WorkerError,
    WorkerEvent,
)

# Version
__version__ = "0.1.0"

__all__ = [
    # Core types
    "Job",
    "JobRegistry",
    "JobStatus",
    "JobNotFoundError",
    "DirtyExitError",
    "Stat",
    "WorkerId",
    "default_registry",

    # Storage (Adapter pattern)
    "Store",
    "StorageError",
    "RedisStore",
    "InMemoryStore",

    # Worker
    "Worker",
    "WorkerEvent",
    "WorkerError",
    "WorkerConfigError",
    "QueueReservation",
    "ProcessDispatcher",
    "DispatchOutcome",
    "DeadWorkerReaper",

    # Control plane
    "ControlChannel",
    "ControlCommand",

    # Timers
    "Timer",
    "TimerError",
    "AsyncioTimerAdapter",

    # Metadata
    "__version__",
]
