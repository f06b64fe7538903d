"""
Executor module - Runtime engine for queue workers.

This module contains the execution components:
- worker: The Worker lifecycle loop (reserve, dispatch, record)
- reservation: Priority-ordered queue reservation with ``*`` expansion
- dispatcher: One forked child process per job, dirty-exit detection
- control: OS signals mapped onto worker control commands
- reaper: Pruning of dead worker registrations on the local host
- timer: Coarse software timers with an optional event-loop adapter
- statistics: The fixed-width status line written on SIGUSR2
"""

from pyresque.executor.control import (
    SIGNAL_COMMANDS,
    ControlChannel,
    ControlCommand,
    install_signal_handlers,
    reset_signal_handlers,
    restore_signal_handlers,
)
from pyresque.executor.dispatcher import DispatchOutcome, ProcessDispatcher, perform
from pyresque.executor.reaper import DeadWorkerReaper, local_worker_pids
from pyresque.executor.reservation import WILDCARD, QueueReservation, expand_queues
from pyresque.executor.statistics import format_statistics_line, memory_usage_mb
from pyresque.executor.timer import (
    AsyncioTimerAdapter,
    InvalidCallbackError,
    InvalidIntervalError,
    Timer,
    TimerError,
    TimerEventLoop,
    TimerMode,
    TimerTask,
)
from pyresque.executor.worker import (
    DEFAULT_INTERVAL,
    Worker,
    WorkerConfigError,
    WorkerError,
    WorkerEvent,
)

__all__ = [
    # Worker
    "Worker",
    "WorkerEvent",
    "WorkerError",
    "WorkerConfigError",
    "DEFAULT_INTERVAL",
    # Reservation
    "QueueReservation",
    "expand_queues",
    "WILDCARD",
    # Dispatch
    "ProcessDispatcher",
    "DispatchOutcome",
    "perform",
    # Control plane
    "ControlChannel",
    "ControlCommand",
    "SIGNAL_COMMANDS",
    "install_signal_handlers",
    "restore_signal_handlers",
    "reset_signal_handlers",
    # Reaper
    "DeadWorkerReaper",
    "local_worker_pids",
    # Statistics
    "format_statistics_line",
    "memory_usage_mb",
    # Timers
    "Timer",
    "TimerTask",
    "TimerMode",
    "TimerEventLoop",
    "AsyncioTimerAdapter",
    "TimerError",
    "InvalidIntervalError",
    "InvalidCallbackError",
]
