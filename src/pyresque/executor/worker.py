"""Queue worker: reserve, fork, wait, record, repeat.

A Worker listens to an ordered list of queues in the shared store. Each
loop iteration it applies pending control commands, advances its timers,
reserves at most one job, runs it in a forked child process and records
the outcome. Jobs are processed strictly one at a time: job N+1 is never
reserved before job N is marked done.

Lifecycle:
    Starting -> (Waiting <-> Reserving <-> Dispatching) -> Stopping -> Terminated

``paused`` is an overlay on Waiting: the loop keeps iterating and
sleeping but reserves nothing.

Features:
- Priority-ordered polling or blocking reservation, ``*`` wildcard
- Process isolation per job with dirty-exit detection
- Signal-driven control (pause, resume, graceful and immediate shutdown)
- Registration in the store, pruning of dead workers on the same host
- Optional heartbeat through the worker's Timer
"""

from __future__ import annotations

import atexit
import logging
import os
import socket
import time
from collections.abc import Callable, Sequence
from enum import Enum
from pathlib import Path
from typing import Any

from pyresque.core.job import DirtyExitError, Job, JobRegistry
from pyresque.core.stat import Stat
from pyresque.core.status import JobStatus
from pyresque.core.worker_id import WorkerId
from pyresque.executor import registration
from pyresque.executor.control import (
    ControlChannel,
    ControlCommand,
    install_signal_handlers,
    restore_signal_handlers,
)
from pyresque.executor.dispatcher import ProcessDispatcher
from pyresque.executor.reaper import DeadWorkerReaper
from pyresque.executor.reservation import QueueReservation
from pyresque.executor.statistics import (
    append_statistics_line,
    format_statistics_line,
    memory_usage_mb,
)
from pyresque.executor.timer import Timer
from pyresque.storage.base import Store, StorageError

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5

_OPTIONS = {"blocking", "interval", "poll_interval", "group_count", "group_index", "statistics_file"}


class WorkerEvent(Enum):
    """Lifecycle points listeners can hook into."""

    WORKER_START = "worker_start"
    WORKER_STOP = "worker_stop"
    BEFORE_FORK = "before_fork"


class Worker:
    """Worker that reserves and executes jobs from the shared store.

    Design Patterns:
    - Template Method: work() defines the fixed loop skeleton
    - Command: control signals become ControlCommand values on a channel
    - Builder: with_blocking(), with_statistics_file() for configuration

    Usage:
        store = RedisStore("redis://localhost:6379")
        store.connect()

        worker = Worker(store, ["high", "low"]) \\
            .with_blocking() \\
            .with_statistics_file("/var/run/pyresque.stats")

        # Blocks until the worker is shut down (SIGQUIT, SIGTERM, ...)
        worker.work(interval=5)
    """

    def __init__(
        self,
        store: Store,
        queues: str | Sequence[str],
        *,
        hostname: str | None = None,
        pid: int | None = None,
        registry: JobRegistry | None = None,
        dispatcher: ProcessDispatcher | None = None,
        timer: Timer | None = None,
        reaper: DeadWorkerReaper | None = None,
        install_signals: bool = True,
    ):
        """Initialize a worker for ``queues``.

        All dependencies passed explicitly, no globals.

        Args:
            store: Shared store holding queues and registrations
            queues: Queue name or ordered queue names; ``*`` means every queue
            hostname: Host part of the worker id (socket.gethostname() if None)
            pid: Pid part of the worker id (os.getpid() if None)
            registry: Job class registry (the default registry if None)
            dispatcher: Process dispatcher (a forking ProcessDispatcher if None)
            timer: Timer advanced once per loop iteration (a new Timer if None)
            reaper: Dead-worker reaper (one for this host if None)
            install_signals: Route OS control signals to the worker during work()

        Raises:
            WorkerConfigError: If no queue is given
        """
        if isinstance(queues, str):
            queues = [queues]
        queues = [q for q in queues if q]
        if not queues:
            raise WorkerConfigError("a worker needs at least one queue")

        self._store = store
        self._hostname = hostname or socket.gethostname()
        self._worker_id = WorkerId(
            hostname=self._hostname,
            pid=pid if pid is not None else os.getpid(),
            queues=tuple(queues),
        )
        self._id = str(self._worker_id)

        self._reservation = QueueReservation(store, queues, registry)
        self._dispatcher = dispatcher or ProcessDispatcher()
        self._dispatcher.on_wait = self.process_control
        self._dispatcher.on_child_missing = self.shutdown
        self._timer = timer or Timer()
        self._reaper = reaper or DeadWorkerReaper(store, self._hostname, self._worker_id.pid)
        self._stat = Stat(store)

        self._control = ControlChannel()
        self._install_signals = install_signals
        self._previous_handlers: dict[Any, Any] = {}
        self._listeners: dict[WorkerEvent, list[Callable[..., Any]]] = {}

        self._blocking = False
        self._interval: float = DEFAULT_INTERVAL
        self._statistics_file: Path | None = None
        self._heartbeat_interval: float | None = None
        self._heartbeat_timer_id: str | None = None
        self.group_count = 1
        self.group_index = 0

        self._paused = False
        self._shutdown = False
        self._current_job: Job | None = None
        self._loop_count = 0
        self._job_count = 0

        # The atexit finalizer only acts in the process that built the worker,
        # never in a forked child that inherited it.
        self._owner_pid = os.getpid()
        self._registered = False

    def __str__(self) -> str:
        return self._id

    def __repr__(self) -> str:
        return f"Worker({self._id!r})"

    # ========================================================================
    # Configuration
    # ========================================================================

    def with_blocking(self, blocking: bool = True) -> "Worker":
        """Reserve with one blocking pop per iteration instead of polling.

        The poll interval becomes the blocking pop timeout.

        Returns:
            self for method chaining
        """
        self._blocking = bool(blocking)
        return self

    def with_statistics_file(self, path: str | Path | None) -> "Worker":
        """Append write_statistics() lines to ``path`` instead of the log.

        Returns:
            self for method chaining
        """
        self._statistics_file = Path(path) if path else None
        return self

    def with_heartbeat(self, interval: float) -> "Worker":
        """Refresh ``worker:{id}:heartbeat`` every ``interval`` seconds while working.

        The heartbeat runs on the worker's Timer, so its resolution is one
        loop iteration.

        Returns:
            self for method chaining
        """
        if not isinstance(interval, (int, float)) or interval <= 0:
            raise WorkerConfigError(f"heartbeat interval must be positive, got {interval!r}")
        self._heartbeat_interval = interval
        return self

    def with_group(self, count: int, index: int) -> "Worker":
        """Record this worker's slot in a group of sibling workers.

        Returns:
            self for method chaining
        """
        if count < 1 or not 0 <= index < count:
            raise WorkerConfigError(f"invalid worker group slot {index} of {count}")
        self.group_count = count
        self.group_index = index
        return self

    def set_option(self, **options: Any) -> "Worker":
        """Set several options at once.

        Accepted keys: ``blocking``, ``interval`` (alias ``poll_interval``),
        ``group_count``, ``group_index``, ``statistics_file``.

        Returns:
            self for method chaining

        Raises:
            WorkerConfigError: On an unknown key or an invalid value
        """
        unknown = set(options) - _OPTIONS
        if unknown:
            raise WorkerConfigError(f"unknown worker options: {', '.join(sorted(unknown))}")

        interval = options.get("interval", options.get("poll_interval"))
        if interval is not None:
            self._interval = _validate_interval(interval)
        if "blocking" in options:
            self.with_blocking(options["blocking"])
        if "group_count" in options or "group_index" in options:
            self.with_group(
                options.get("group_count", self.group_count),
                options.get("group_index", self.group_index),
            )
        if "statistics_file" in options:
            self.with_statistics_file(options["statistics_file"])
        return self

    @classmethod
    def from_env(cls, store: Store, queues: str | Sequence[str], **kwargs: Any) -> "Worker":
        """Build a worker configured from environment variables.

        Reads ``RESQUE_BLOCKING`` (1/true/yes), ``RESQUE_INTERVAL`` and
        ``RESQUE_STATISTICS_FILE``; unset variables keep the defaults.

        Example:
            # $ RESQUE_BLOCKING=1 RESQUE_INTERVAL=10 python run_worker.py
            worker = Worker.from_env(store, "emails")
        """
        worker = cls(store, queues, **kwargs)

        blocking = os.getenv("RESQUE_BLOCKING")
        if blocking is not None:
            worker.with_blocking(blocking.strip().lower() in ("1", "true", "yes", "on"))

        interval = os.getenv("RESQUE_INTERVAL")
        if interval:
            try:
                seconds = float(interval)
            except ValueError:
                raise WorkerConfigError(f"RESQUE_INTERVAL is not a number: {interval!r}") from None
            worker.set_option(interval=seconds)

        statistics_file = os.getenv("RESQUE_STATISTICS_FILE")
        if statistics_file:
            worker.with_statistics_file(statistics_file)

        return worker

    def add_listener(self, event: WorkerEvent, callback: Callable[..., Any]) -> None:
        """Call ``callback`` at a lifecycle point.

        WORKER_START and WORKER_STOP receive the worker, BEFORE_FORK the job.
        Listener errors are logged and ignored.
        """
        self._listeners.setdefault(event, []).append(callback)

    def _emit(self, event: WorkerEvent, *args: Any) -> None:
        for callback in self._listeners.get(event, ()):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Worker {self._id}: {event.value} listener failed")

    # ========================================================================
    # Introspection
    # ========================================================================

    @property
    def worker_id(self) -> WorkerId:
        return self._worker_id

    @property
    def id(self) -> str:
        """Serialized worker id as stored in the ``workers`` set."""
        return self._id

    @property
    def store(self) -> Store:
        return self._store

    @property
    def timer(self) -> Timer:
        return self._timer

    @property
    def control(self) -> ControlChannel:
        return self._control

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

    @property
    def blocking(self) -> bool:
        return self._blocking

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def statistics_file(self) -> Path | None:
        return self._statistics_file

    @property
    def current_job(self) -> Job | None:
        return self._current_job

    @property
    def child_pid(self) -> int | None:
        return self._dispatcher.child_pid

    @property
    def loop_count(self) -> int:
        return self._loop_count

    @property
    def job_count(self) -> int:
        return self._job_count

    def queues(self, fetch: bool = True) -> list[str]:
        """Queues this worker searches, wildcard expanded unless ``fetch`` is False."""
        return self._reservation.queues(fetch)

    def job(self) -> dict[str, Any]:
        """Snapshot of the job being worked on, as stored; {} when idle."""
        return registration.working_on(self._store, self._id)

    def get_stat(self, name: str) -> int:
        """Per-worker counter, e.g. ``get_stat("processed")``."""
        return self._stat.get(f"{name}:{self._id}")

    # ========================================================================
    # Main loop
    # ========================================================================

    def work(self, interval: float | None = None) -> None:
        """Run the worker until it is shut down.

        Args:
            interval: Seconds to sleep when no job was found (the blocking pop
                timeout in blocking mode). 0 means "stop as soon as the
                queues are empty". Defaults to the configured interval.

        Raises:
            WorkerConfigError: If interval is negative or not a number
            StorageError: If the worker cannot register itself
        """
        interval = self._interval if interval is None else _validate_interval(interval)
        self._interval = interval

        try:
            self._startup()
            while True:
                self.process_control()
                self._timer.tick()

                if self._shutdown:
                    break

                self._loop_count += 1

                job = None
                if not self._paused:
                    job = self.reserve(self._blocking and interval > 0, interval)

                if job is None:
                    # For an interval of 0, stop now - bounded runs and tests
                    if interval == 0:
                        break

                    if not self._blocking or self._paused:
                        logger.debug(f"Worker {self._id}: Sleeping for {interval}")
                        self.sleep(interval)
                    continue

                self._process(job)
        finally:
            self._teardown()

    def reserve(self, blocking: bool = False, timeout: float | None = None) -> Job | None:
        """Reserve one job, None when nothing is available or the store failed."""
        if blocking:
            logger.debug(f"Worker {self._id}: Starting blocking with timeout of {timeout}")
        try:
            return self._reservation.reserve(blocking, timeout)
        except StorageError as e:
            logger.error(f"Worker {self._id}: reservation failed: {e}")
        except ValueError as e:
            logger.error(f"Worker {self._id}: dropped undecodable job payload: {e}")
        return None

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``, applying control commands as they arrive.

        Returns early on shutdown or resume; other commands (a statistics
        dump) do not cut the sleep short.
        """
        deadline = time.monotonic() + seconds
        while not self._shutdown:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            command = self._control.wait(remaining)
            if command is None:
                return
            self._apply(command)
            if command is ControlCommand.RESUME:
                return

    def _process(self, job: Job) -> None:
        logger.info(f"Worker {self._id}: Starting work on {job}")
        self._emit(WorkerEvent.BEFORE_FORK, job)
        self._job_count += 1
        try:
            self.working_on(job)
        except StorageError as e:
            logger.error(f"Worker {self._id}: recording work on {job} failed: {e}")

        try:
            outcome = self._dispatcher.dispatch(job)
            logger.debug(f"Worker {self._id}: {job} ended with {outcome.value}")
        except Exception:
            logger.exception(f"Worker {self._id}: dispatching {job} failed")
        finally:
            try:
                self.done_working()
            except StorageError as e:
                logger.error(f"Worker {self._id}: clearing work record for {job} failed: {e}")

    def _startup(self) -> None:
        if self._install_signals:
            self._previous_handlers = install_signal_handlers(self._control)

        try:
            self.prune_dead_workers()
        except Exception:
            logger.exception(f"Worker {self._id}: pruning dead workers failed")

        logger.info(f"Worker {self._id}: started")
        self._emit(WorkerEvent.WORKER_START, self)
        self.register_worker()
        atexit.register(self._finalize)

        if self._heartbeat_interval is not None:
            self._heartbeat()
            self._heartbeat_timer_id = self._timer.add(
                self._heartbeat_interval, self._heartbeat, persistent=True
            )

    def _teardown(self) -> None:
        logger.info(f"Worker {self._id}: stopping")

        if self._heartbeat_timer_id is not None:
            self._timer.delete(self._heartbeat_timer_id)
            self._heartbeat_timer_id = None

        restore_signal_handlers(self._previous_handlers)
        self._previous_handlers = {}

        self._emit(WorkerEvent.WORKER_STOP, self)
        try:
            self.unregister_worker()
        except StorageError as e:
            logger.error(f"Worker {self._id}: unregistering failed: {e}")
        atexit.unregister(self._finalize)
        logger.info(f"Worker {self._id}: stopped")

    def _finalize(self) -> None:
        """atexit hook: unregister if the process dies without a clean stop."""
        if os.getpid() != self._owner_pid or not self._registered:
            return
        try:
            self.unregister_worker()
        except Exception:
            logger.exception(f"Worker {self._id}: unregistering at exit failed")

    def _heartbeat(self) -> None:
        self._store.set_string(registration.heartbeat_key(self._id), registration.timestamp())

    # ========================================================================
    # Control
    # ========================================================================

    def send(self, command: ControlCommand) -> None:
        """Queue a control command; applied at the next checkpoint."""
        self._control.send(command)

    def process_control(self) -> None:
        """Apply every queued control command."""
        for command in self._control.drain():
            self._apply(command)

    def _apply(self, command: ControlCommand) -> None:
        handlers = {
            ControlCommand.SHUTDOWN: self.shutdown,
            ControlCommand.SHUTDOWN_NOW: self.shutdown_now,
            ControlCommand.PAUSE: self.pause_processing,
            ControlCommand.RESUME: self.unpause_processing,
            ControlCommand.WRITE_STATISTICS: self.write_statistics,
            ControlCommand.KILL_CHILD: self.kill_child,
        }
        try:
            handlers[command]()
        except Exception:
            logger.exception(f"Worker {self._id}: applying {command.value} failed")

    def shutdown(self) -> None:
        """Stop after the current job finishes."""
        self._shutdown = True
        logger.info(f"Worker {self._id}: Shutting down")

    def shutdown_now(self) -> None:
        """Stop immediately, killing the running job."""
        self.shutdown()
        self.kill_child()

    def kill_child(self) -> bool:
        """Kill the running job's process; see ProcessDispatcher.kill_child()."""
        return self._dispatcher.kill_child()

    def pause_processing(self) -> None:
        logger.info(f"Worker {self._id}: pausing job processing")
        self._paused = True

    def unpause_processing(self) -> None:
        logger.info(f"Worker {self._id}: resuming job processing")
        self._paused = False

    def write_statistics(self) -> None:
        """Write one fixed-width status line to the statistics file (or the log)."""
        line = format_statistics_line(
            pid=os.getpid(),
            memory_mb=memory_usage_mb(),
            worker_type=type(self).__name__,
            queues=self._worker_id.queues,
            timer_buckets=self._timer.count(),
            loop_count=self._loop_count,
            job_count=self._job_count,
            busy=self._current_job is not None,
        )
        if self._statistics_file is None:
            logger.info(line.rstrip("\n"))
            return
        append_statistics_line(self._statistics_file, line)

    # ========================================================================
    # Store bookkeeping
    # ========================================================================

    def prune_dead_workers(self) -> list[WorkerId]:
        return self._reaper.prune()

    def register_worker(self) -> None:
        registration.register(self._store, self._id)
        self._registered = True

    def unregister_worker(self) -> None:
        """Remove this worker from the store.

        A job still in flight is failed with DirtyExitError first.
        """
        job, self._current_job = self._current_job, None
        if job is not None:
            logger.warning(f"Worker {self._id}: {job} was still running at unregistration")
            job.fail(DirtyExitError())

        registration.unregister(self._store, self._id)
        self._registered = False

    def working_on(self, job: Job) -> None:
        """Record in the store that ``job`` is being worked on."""
        job.worker = self
        self._current_job = job
        job.update_status(JobStatus.RUNNING)
        registration.record_working_on(self._store, self._id, job)

    def done_working(self) -> None:
        """Clear the working record and count the job as processed."""
        self._current_job = None
        self._stat.incr("processed")
        self._stat.incr(f"processed:{self._id}")
        self._store.delete_key(registration.worker_key(self._id))

    # ========================================================================
    # Registry lookups
    # ========================================================================

    @classmethod
    def all(cls, store: Store) -> list["Worker"]:
        """Every registered worker, as Worker instances."""
        workers = []
        for worker_id in store.list_set_members(registration.WORKERS_SET):
            worker = cls.find(store, worker_id)
            if worker is not None:
                workers.append(worker)
        return workers

    @staticmethod
    def exists(store: Store, worker_id: str) -> bool:
        return store.is_set_member(registration.WORKERS_SET, worker_id)

    @classmethod
    def find(cls, store: Store, worker_id: str) -> "Worker | None":
        """Instantiate the registered worker ``worker_id``; None if unknown or malformed."""
        if not cls.exists(store, worker_id):
            return None
        try:
            parsed = WorkerId.parse(worker_id)
        except ValueError:
            return None
        return cls(
            store,
            list(parsed.queues),
            hostname=parsed.hostname,
            pid=parsed.pid,
            install_signals=False,
        )


def _validate_interval(interval: Any) -> float:
    if isinstance(interval, bool) or not isinstance(interval, (int, float)):
        raise WorkerConfigError(f"interval must be a number, got {interval!r}")
    if interval < 0:
        raise WorkerConfigError(f"interval must not be negative, got {interval!r}")
    return interval


class WorkerError(Exception):
    """Worker operation failed."""

    pass


class WorkerConfigError(WorkerError, ValueError):
    """Invalid worker configuration (bad interval, unknown option)."""

    pass
