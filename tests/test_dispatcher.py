"""Tests for the fork-per-job process dispatcher."""

import json
import signal

import pytest

from conftest import PERFORMED, ChildExited, ScriptedProcess, exited, killed_by
from pyresque.core import Job, JobStatus
from pyresque.executor import dispatcher as dispatcher_module
from pyresque.executor.dispatcher import DispatchOutcome, ProcessDispatcher, perform


def _reserve(store, registry, class_name, args=None):
    Job.create(store, "q", class_name, args)
    job = Job.reserve(store, "q", registry)
    job.update_status(JobStatus.RUNNING)
    return job


def _failures(store):
    return [json.loads(raw) for raw in store.list_items("failed")]


def test_perform_completes_job(store, registry):
    job = _reserve(store, registry, "Record", [1])

    assert perform(job) is True
    assert job.get_status() == JobStatus.COMPLETE
    assert PERFORMED == [[1]]


def test_perform_reports_failure_without_raising(store, registry):
    job = _reserve(store, registry, "Explode", ["nope"])

    assert perform(job) is False
    assert job.get_status() == JobStatus.FAILED
    [failure] = _failures(store)
    assert failure["exception"] == "RuntimeError"
    assert failure["error"] == "nope"


def test_no_fork_performs_in_process(store, registry):
    job = _reserve(store, registry, "Record", ["inline"])

    outcome = ProcessDispatcher(fork=None).dispatch(job)

    assert outcome is DispatchOutcome.COMPLETED
    assert PERFORMED == [["inline"]]
    assert job.get_status() == JobStatus.COMPLETE


def test_fork_failure_falls_back_to_in_process(store, registry):
    def failing_fork():
        raise OSError("Resource temporarily unavailable")

    job = _reserve(store, registry, "Record", ["fallback"])

    outcome = ProcessDispatcher(fork=failing_fork).dispatch(job)

    assert outcome is DispatchOutcome.COMPLETED
    assert PERFORMED == [["fallback"]]


def test_clean_child_exit_records_nothing(store, registry):
    """Test the parent leaves the outcome to the child on exit status 0."""
    process = ScriptedProcess(exit_status=exited(0), running_polls=2)
    dispatcher = process.dispatcher()
    job = _reserve(store, registry, "Record")

    assert dispatcher.dispatch(job) is DispatchOutcome.COMPLETED
    assert process.polls == 3
    assert dispatcher.child_pid is None
    assert _failures(store) == []
    assert PERFORMED == []


def test_nonzero_exit_is_dirty(store, registry):
    dispatcher = ScriptedProcess(exit_status=exited(3)).dispatcher()
    job = _reserve(store, registry, "Record")

    assert dispatcher.dispatch(job) is DispatchOutcome.DIRTY_EXIT
    assert job.get_status() == JobStatus.FAILED
    [failure] = _failures(store)
    assert failure["exception"] == "DirtyExitError"
    assert failure["error"] == "Job exited with exit code 3"


def test_death_by_signal_is_dirty(store, registry):
    dispatcher = ScriptedProcess(exit_status=killed_by(signal.SIGSEGV)).dispatcher()
    job = _reserve(store, registry, "Record")

    assert dispatcher.dispatch(job) is DispatchOutcome.DIRTY_EXIT
    [failure] = _failures(store)
    assert failure["error"] == f"Job exited with exit code {-int(signal.SIGSEGV)}"


def test_vanished_child_is_dirty(store, registry):
    def waitpid(pid, options):
        raise ChildProcessError("No child processes")

    dispatcher = ProcessDispatcher(fork=lambda: 4242, waitpid=waitpid)
    job = _reserve(store, registry, "Record")

    assert dispatcher.dispatch(job) is DispatchOutcome.DIRTY_EXIT
    [failure] = _failures(store)
    assert failure["exception"] == "DirtyExitError"


def test_on_wait_runs_between_polls(store, registry):
    process = ScriptedProcess(exit_status=exited(0), running_polls=3)
    dispatcher = process.dispatcher()
    busy_seen = []
    dispatcher.on_wait = lambda: busy_seen.append((dispatcher.busy, dispatcher.child_pid))

    dispatcher.dispatch(_reserve(store, registry, "Record"))

    assert busy_seen == [(True, 4242)] * 3
    assert not dispatcher.busy


def test_kill_child_during_wait(store, registry):
    """Test a forced kill while waiting ends the job as a dirty exit."""
    process = ScriptedProcess(exit_status=exited(0), running_polls=100)
    dispatcher = process.dispatcher()
    kills = []
    dispatcher.on_wait = lambda: kills.append(dispatcher.kill_child())
    job = _reserve(store, registry, "Record")

    outcome = dispatcher.dispatch(job)

    assert outcome is DispatchOutcome.DIRTY_EXIT
    assert kills == [True]
    assert process.killed_with == signal.SIGKILL
    [failure] = _failures(store)
    assert failure["error"] == f"Job exited with exit code {-int(signal.SIGKILL)}"


def test_kill_child_without_child():
    dispatcher = ProcessDispatcher()
    missing = []
    dispatcher.on_child_missing = lambda: missing.append(True)

    assert dispatcher.kill_child() is False
    assert missing == []


def test_kill_child_that_no_longer_exists():
    """Test a kill aimed at a vanished child stops the owner instead."""
    process = ScriptedProcess()
    process.alive = False
    dispatcher = process.dispatcher()
    dispatcher.child_pid = process.pid
    missing = []
    dispatcher.on_child_missing = lambda: missing.append(True)

    assert dispatcher.kill_child() is False
    assert process.killed_with is None
    assert missing == [True]


def test_kill_child_race_with_exit():
    def kill(pid, signum):
        raise ProcessLookupError(pid)

    dispatcher = ProcessDispatcher(kill=kill, pid_exists=lambda pid: True)
    dispatcher.child_pid = 4242
    missing = []
    dispatcher.on_child_missing = lambda: missing.append(True)

    assert dispatcher.kill_child() is False
    assert missing == [True]


# ==============================================================================
# Child side
# ==============================================================================


@pytest.fixture
def child_signals(monkeypatch):
    """Record signal resets instead of clobbering the test runner's handlers."""
    resets = []
    monkeypatch.setattr(dispatcher_module, "reset_signal_handlers", lambda: resets.append(True))
    return resets


def test_child_performs_and_exits_zero(store, registry, child_signals):
    dispatcher = ScriptedProcess(pid=0).dispatcher()
    job = _reserve(store, registry, "Record", ["child"])

    with pytest.raises(ChildExited) as exc_info:
        dispatcher.dispatch(job)

    assert exc_info.value.status == 0
    assert child_signals == [True]
    assert PERFORMED == [["child"]]
    assert job.get_status() == JobStatus.COMPLETE


def test_child_job_failure_still_exits_zero(store, registry, child_signals):
    """Test a failing job is recorded by the child, which then exits cleanly."""
    dispatcher = ScriptedProcess(pid=0).dispatcher()
    job = _reserve(store, registry, "Explode")

    with pytest.raises(ChildExited) as exc_info:
        dispatcher.dispatch(job)

    assert exc_info.value.status == 0
    assert job.get_status() == JobStatus.FAILED
    assert len(_failures(store)) == 1


def test_child_crash_while_recording_exits_nonzero(store, registry, child_signals):
    registry.register("Interrupt", _interrupt)
    dispatcher = ScriptedProcess(pid=0).dispatcher()
    job = _reserve(store, registry, "Interrupt")

    with pytest.raises(ChildExited) as exc_info:
        dispatcher.dispatch(job)

    assert exc_info.value.status == 1


def _interrupt():
    raise KeyboardInterrupt


# ==============================================================================
# Real processes
# ==============================================================================


@pytest.mark.concurrency
def test_real_fork_dirty_exit(store, registry):
    """Test a job that leaves its process with status 3 is failed by the parent."""
    job = _reserve(store, registry, "Crash", [3])

    outcome = ProcessDispatcher(child_poll_interval=0.01).dispatch(job)

    assert outcome is DispatchOutcome.DIRTY_EXIT
    [failure] = _failures(store)
    assert failure["error"] == "Job exited with exit code 3"
    assert job.get_status() == JobStatus.FAILED


@pytest.mark.concurrency
def test_real_fork_clean_exit(store, registry):
    """Test a clean child leaves the parent's store untouched."""
    job = _reserve(store, registry, "Record", ["in child"])

    outcome = ProcessDispatcher(child_poll_interval=0.01).dispatch(job)

    assert outcome is DispatchOutcome.COMPLETED
    assert _failures(store) == []
    # The child's side effects stay in the child
    assert PERFORMED == []
