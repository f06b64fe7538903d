"""
Control plane: turning OS signals into worker commands.

Signal handlers never touch worker state directly. They push a
ControlCommand onto a ControlChannel, and the worker applies queued
commands at its checkpoints (loop top, the inter-iteration sleep, and
between polls while waiting for a child). Anything else (a test, an
admin thread) can drive the worker through the same channel.

Signal mapping:
    SIGTERM, SIGINT -> SHUTDOWN_NOW   (stop and kill the running job)
    SIGQUIT         -> SHUTDOWN       (finish the running job, then stop)
    SIGUSR1         -> PAUSE          (stop reserving new jobs)
    SIGCONT         -> RESUME
    SIGUSR2         -> WRITE_STATISTICS
"""

from __future__ import annotations

import logging
import queue
import signal
import threading
from collections.abc import Mapping
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ControlCommand(Enum):
    """Commands a worker accepts on its control channel."""

    SHUTDOWN = "shutdown"
    SHUTDOWN_NOW = "shutdown_now"
    PAUSE = "pause"
    RESUME = "resume"
    WRITE_STATISTICS = "write_statistics"
    KILL_CHILD = "kill_child"


SIGNAL_COMMANDS: dict[str, ControlCommand] = {
    "SIGTERM": ControlCommand.SHUTDOWN_NOW,
    "SIGINT": ControlCommand.SHUTDOWN_NOW,
    "SIGQUIT": ControlCommand.SHUTDOWN,
    "SIGUSR1": ControlCommand.PAUSE,
    "SIGCONT": ControlCommand.RESUME,
    "SIGUSR2": ControlCommand.WRITE_STATISTICS,
}


class ControlChannel:
    """Concurrency-safe queue of control commands.

    Backed by queue.SimpleQueue, whose put() is reentrant and therefore
    safe to call from a signal handler interrupting the same thread.
    """

    def __init__(self):
        self._queue: queue.SimpleQueue[ControlCommand] = queue.SimpleQueue()

    def send(self, command: ControlCommand) -> None:
        self._queue.put(command)

    def drain(self) -> list[ControlCommand]:
        """Return every queued command, oldest first, without blocking."""
        commands = []
        while True:
            try:
                commands.append(self._queue.get_nowait())
            except queue.Empty:
                return commands

    def wait(self, timeout: float) -> ControlCommand | None:
        """Block up to ``timeout`` seconds for the next command.

        Used as an interruptible sleep: returns early as soon as a
        command arrives.
        """
        if timeout <= 0:
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def empty(self) -> bool:
        return self._queue.empty()


def install_signal_handlers(channel: ControlChannel) -> dict[signal.Signals, Any]:
    """Route control signals to ``channel``.

    Signals missing on the platform are skipped. Handlers can only be
    installed from the main thread; elsewhere nothing is installed.

    Args:
        channel: Channel receiving the mapped commands

    Returns:
        Mapping of signal to the handler it replaced, for restore_signal_handlers()
    """
    if threading.current_thread() is not threading.main_thread():
        logger.warning("Not in the main thread, signal handlers not registered")
        return {}

    previous: dict[signal.Signals, Any] = {}
    for name, command in SIGNAL_COMMANDS.items():
        signum = getattr(signal, name, None)
        if signum is None:
            continue

        def handler(sig, frame, command=command) -> None:
            channel.send(command)

        previous[signum] = signal.signal(signum, handler)

    logger.debug("Registered signals")
    return previous


def restore_signal_handlers(previous: Mapping[signal.Signals, Any]) -> None:
    """Reinstall handlers returned by install_signal_handlers()."""
    if threading.current_thread() is not threading.main_thread():
        return
    for signum, handler in previous.items():
        signal.signal(signum, handler if handler is not None else signal.SIG_DFL)


def reset_signal_handlers() -> None:
    """Put every control signal back to its default disposition.

    Called in a freshly forked job process: it must die on SIGTERM/SIGINT
    instead of queueing commands nobody will read.
    """
    for name in SIGNAL_COMMANDS:
        signum = getattr(signal, name, None)
        if signum is not None:
            signal.signal(signum, signal.SIG_DFL)
