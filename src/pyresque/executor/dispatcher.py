"""
Process dispatcher: one forked child per job.

The parent forks, the child performs the job and exits, and the parent
waits for that specific child and maps its exit status:

- exit status 0: the child already recorded the outcome (complete or failed)
- anything else, death by signal included: the job is failed with DirtyExitError

If fork is unavailable or fails, the job is performed in the current
process instead, so a transient fork failure never loses a job.

The parent's wait is a polling loop rather than a single blocking
waitpid(): between polls it calls ``on_wait`` so the owner can apply
control commands (a forced kill) while a long job runs.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import time
from collections.abc import Callable
from enum import Enum

import psutil

from pyresque.core.job import DirtyExitError, Job
from pyresque.core.status import JobStatus
from pyresque.executor.control import reset_signal_handlers

logger = logging.getLogger(__name__)

DEFAULT_CHILD_POLL_INTERVAL = 0.1


class DispatchOutcome(Enum):
    """How a dispatched job ended, as seen by the parent."""

    COMPLETED = "completed"
    """Child exited cleanly (or the job ran in process); outcome recorded by the job."""

    DIRTY_EXIT = "dirty_exit"
    """Child exited nonzero or vanished; the parent failed the job."""


def perform(job: Job) -> bool:
    """Perform a job and record its terminal status.

    Failures raised by the job's own logic are reported through
    ``job.fail`` and never propagate.

    Returns:
        True if the job completed, False if it failed
    """
    try:
        job.perform()
    except Exception as e:
        logger.critical(f"{job} has failed: {e!r}", exc_info=True)
        job.fail(e)
        return False

    job.update_status(JobStatus.COMPLETE)
    logger.info(f"{job} has finished")
    return True


class ProcessDispatcher:
    """Runs each job in an isolated child process, at most one at a time.

    OS primitives are injectable so the parent/child protocol can be
    exercised without real processes.

    Usage:
        dispatcher = ProcessDispatcher()
        dispatcher.on_wait = worker.process_control
        dispatcher.on_child_missing = worker.shutdown
        outcome = dispatcher.dispatch(job)
    """

    def __init__(
        self,
        fork: Callable[[], int] | None = getattr(os, "fork", None),
        waitpid: Callable[[int, int], tuple[int, int]] = os.waitpid,
        kill: Callable[[int, int], None] = os.kill,
        pid_exists: Callable[[int], bool] = psutil.pid_exists,
        exit_process: Callable[[int], None] = os._exit,
        child_poll_interval: float = DEFAULT_CHILD_POLL_INTERVAL,
    ):
        """Create a dispatcher.

        Args:
            fork: Fork primitive; None performs every job in process
            waitpid: waitpid primitive (called with WNOHANG)
            kill: Signal-sending primitive
            pid_exists: Liveness check used before a forced kill
            exit_process: Terminates the child without unwinding
            child_poll_interval: Seconds between wait polls
        """
        self._fork = fork
        self._waitpid = waitpid
        self._kill = kill
        self._pid_exists = pid_exists
        self._exit_process = exit_process
        self._child_poll_interval = child_poll_interval

        self.child_pid: int | None = None
        self.on_wait: Callable[[], None] | None = None
        self.on_child_missing: Callable[[], None] | None = None

    @property
    def busy(self) -> bool:
        """True while a child process is being waited on."""
        return self.child_pid is not None

    def dispatch(self, job: Job) -> DispatchOutcome:
        """Perform ``job`` in a child process and wait for it.

        Returns:
            The outcome as seen by the parent
        """
        pid = self._spawn(job)

        if pid is None:
            perform(job)
            return DispatchOutcome.COMPLETED

        if pid == 0:
            self._run_child(job)

        self.child_pid = pid
        logger.info(f"Forked {pid} at {time.strftime('%Y-%m-%d %H:%M:%S')}")

        try:
            exit_code = self._wait(pid)
        finally:
            self.child_pid = None

        if exit_code == 0:
            return DispatchOutcome.COMPLETED

        if exit_code is None:
            message = "Job process vanished without an exit status"
        else:
            message = f"Job exited with exit code {exit_code}"
        logger.warning(f"{job}: {message}")
        job.fail(DirtyExitError(message))
        return DispatchOutcome.DIRTY_EXIT

    def _spawn(self, job: Job) -> int | None:
        if self._fork is None:
            return None
        try:
            return self._fork()
        except OSError as e:
            logger.warning(f"Fork failed ({e}), performing {job} in process")
            return None

    def _run_child(self, job: Job) -> None:
        """Child side: perform the job, then leave the process. Never returns."""
        status = 0
        try:
            reset_signal_handlers()
            logger.info(
                f"Processing {job.queue} since {time.strftime('%Y-%m-%d %H:%M:%S')}"
            )
            perform(job)
        except BaseException:
            logger.exception(f"{job}: job process crashed while recording its outcome")
            status = 1
        finally:
            sys.stdout.flush()
            sys.stderr.flush()
            self._exit_process(status)

    def _wait(self, pid: int) -> int | None:
        """Poll until ``pid`` exits, running ``on_wait`` between polls."""
        while True:
            try:
                waited, status = self._waitpid(pid, os.WNOHANG)
            except ChildProcessError:
                logger.warning(f"Child {pid} was already reaped")
                return None

            if waited == pid:
                return os.waitstatus_to_exitcode(status)

            if self.on_wait is not None:
                self.on_wait()
            time.sleep(self._child_poll_interval)

    def kill_child(self) -> bool:
        """Kill the running child immediately.

        If the child process no longer exists, nothing is killed and
        ``on_child_missing`` is invoked instead: the job probably ended,
        but its success cannot be confirmed, so the owner stops taking work.

        Returns:
            True if a kill signal was sent
        """
        pid = self.child_pid
        if not pid:
            logger.debug("No child to kill.")
            return False

        logger.info(f"Killing child at {pid}")
        if self._pid_exists(pid):
            logger.debug(f"Child {pid} found, killing.")
            try:
                self._kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            else:
                self.child_pid = None
                return True

        logger.info(f"Child {pid} not found, restarting.")
        if self.on_child_missing is not None:
            self.on_child_missing()
        return False
