"""
Pytest configuration and fixtures for pyresque tests.

Provides reusable fixtures for stores, job registries, workers wired to
in-process or scripted dispatchers, and a controllable clock.
"""

import os
import signal

import pytest
from hypothesis import strategies as st

from pyresque.core import JobRegistry
from pyresque.executor.dispatcher import ProcessDispatcher
from pyresque.executor.reaper import DeadWorkerReaper
from pyresque.executor.worker import Worker
from pyresque.storage import StorageError
from pyresque.storage.memory import InMemoryStore

TEST_HOST = "testhost"

# Side effects of test jobs performed in process
PERFORMED: list = []


@pytest.fixture(autouse=True)
def _clear_performed():
    PERFORMED.clear()
    yield
    PERFORMED.clear()


@pytest.fixture
def store():
    """In-memory store with automatic cleanup."""
    store = InMemoryStore()
    yield store
    store.reset()


class FlakyStore(InMemoryStore):
    """InMemoryStore whose writes to the keys in ``fail_once`` fail one time each."""

    def __init__(self):
        super().__init__()
        self.fail_once: set[str] = set()

    def _maybe_fail(self, key: str) -> None:
        if key in self.fail_once:
            self.fail_once.discard(key)
            raise StorageError("connection reset")

    def set_string(self, key: str, value: str) -> None:
        self._maybe_fail(key)
        super().set_string(key, value)

    def increment(self, key: str, by: int = 1) -> int:
        self._maybe_fail(key)
        return super().increment(key, by)


@pytest.fixture
def flaky_store():
    store = FlakyStore()
    yield store
    store.reset()


# Sample jobs for reuse across tests


class Record:
    """Appends its arguments to PERFORMED."""

    def perform(self, *args):
        PERFORMED.append(list(args))


class Explode:
    """Always fails."""

    def perform(self, message="boom"):
        raise RuntimeError(message)


class StopWorker:
    """Asks the worker performing it to stop after this job."""

    def perform(self):
        PERFORMED.append("stop")
        self.job.worker.shutdown()


class Inspect:
    """Captures what the store says about the worker while the job runs."""

    def perform(self):
        worker = self.job.worker
        PERFORMED.append(
            {
                "registered": Worker.exists(worker.store, worker.id),
                "snapshot": worker.job(),
                "status": self.job.get_status(),
            }
        )


class Crash:
    """Leaves the process without unwinding."""

    def perform(self, code=3):
        os._exit(code)


def add(a, b):
    PERFORMED.append(a + b)


@pytest.fixture
def registry() -> JobRegistry:
    """Registry holding the sample jobs."""
    registry = JobRegistry()
    for job_class in (Record, Explode, StopWorker, Inspect, Crash):
        registry.register(job_class)
    registry.register("Add", add)
    return registry


class FakeClock:
    """Settable time source in epoch seconds."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class ChildExited(BaseException):
    """Raised by a scripted exit_process instead of leaving the process."""

    def __init__(self, status: int):
        super().__init__(status)
        self.status = status


class ScriptedProcess:
    """Scripted fork/waitpid/kill primitives for ProcessDispatcher.

    ``fork`` returns ``pid`` (or 0 to take the child branch). ``waitpid``
    reports the child as running ``running_polls`` times, then returns
    ``exit_status`` (a raw wait status). A kill makes the next poll report
    death by that signal.
    """

    def __init__(self, pid: int = 4242, exit_status: int = 0, running_polls: int = 0):
        self.pid = pid
        self.exit_status = exit_status
        self.running_polls = running_polls
        self.alive = True
        self.killed_with: int | None = None
        self.polls = 0

    def fork(self) -> int:
        return self.pid

    def waitpid(self, pid: int, options: int) -> tuple[int, int]:
        assert options == os.WNOHANG
        self.polls += 1
        if self.killed_with is not None:
            self.alive = False
            return pid, self.killed_with
        if self.polls <= self.running_polls:
            return 0, 0
        self.alive = False
        return pid, self.exit_status

    def kill(self, pid: int, signum: int) -> None:
        assert pid == self.pid
        self.killed_with = int(signum)

    def pid_exists(self, pid: int) -> bool:
        return pid == self.pid and self.alive

    def exit_process(self, status: int) -> None:
        raise ChildExited(status)

    def dispatcher(self) -> ProcessDispatcher:
        return ProcessDispatcher(
            fork=self.fork,
            waitpid=self.waitpid,
            kill=self.kill,
            pid_exists=self.pid_exists,
            exit_process=self.exit_process,
            child_poll_interval=0,
        )


def exited(code: int) -> int:
    """Raw wait status of a child that exited with ``code``."""
    return code << 8


def killed_by(signum: int = signal.SIGKILL) -> int:
    """Raw wait status of a child killed by ``signum``."""
    return int(signum)


@pytest.fixture
def make_worker(store, registry):
    """Factory for workers that perform jobs in process and never see real signals."""

    def factory(
        queues=("jobs",), dispatcher=None, live_pids=frozenset(), store=store, **kwargs
    ) -> Worker:
        pid = os.getpid()
        kwargs.setdefault("install_signals", False)
        return Worker(
            store,
            list(queues),
            hostname=TEST_HOST,
            pid=pid,
            registry=registry,
            dispatcher=dispatcher or ProcessDispatcher(fork=None),
            reaper=DeadWorkerReaper(store, TEST_HOST, pid, live_pids=lambda: set(live_pids)),
            **kwargs,
        )

    return factory


# Hypothesis strategies for property-based testing

queue_names = st.text(
    min_size=1, max_size=12, alphabet=st.characters(whitelist_categories=("Ll", "Nd"))
)
