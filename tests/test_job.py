"""Tests for jobs: enqueueing, reservation, performing and failure records."""

import json

import pytest

from conftest import PERFORMED
from pyresque.core import (
    DirtyExitError,
    Job,
    JobNotFoundError,
    JobRegistry,
    JobStatus,
    Stat,
    queue_key,
)


def test_create_pushes_json_payload(store):
    """Test Job.create writes a resque-style payload and registers the queue."""
    job_id = Job.create(store, "emails", "SendEmail", ["bob@example.com", 2])

    assert store.is_set_member("queues", "emails")
    [raw] = store.list_items(queue_key("emails"))
    payload = json.loads(raw)
    assert payload["class"] == "SendEmail"
    assert payload["args"] == ["bob@example.com", 2]
    assert payload["id"] == job_id
    assert "queue_time" in payload


def test_create_tracks_waiting_status(store):
    job_id = Job.create(store, "emails", "SendEmail")
    job = Job.reserve(store, "emails")

    assert job.job_id == job_id
    assert job.is_tracking()
    assert job.get_status() == JobStatus.WAITING


def test_create_without_tracking(store):
    """Test an untracked job ignores status updates."""
    Job.create(store, "emails", "SendEmail", track_status=False)
    job = Job.reserve(store, "emails")

    job.update_status(JobStatus.RUNNING)

    assert not job.is_tracking()
    assert job.get_status() is None


def test_status_keeps_started_timestamp(store):
    Job.create(store, "q", "Record", job_id="fixed")
    job = Job.reserve(store, "q")
    started = json.loads(store.get_string("job:fixed:status"))["started"]

    job.update_status(JobStatus.RUNNING)
    job.update_status(JobStatus.COMPLETE)

    record = json.loads(store.get_string("job:fixed:status"))
    assert record["started"] == started
    assert record["status"] == JobStatus.COMPLETE.value


def test_reserve_is_fifo(store):
    Job.create(store, "q", "Record", [1])
    Job.create(store, "q", "Record", [2])

    assert Job.reserve(store, "q").args == [1]
    assert Job.reserve(store, "q").args == [2]
    assert Job.reserve(store, "q") is None


def test_reserve_blocking_reports_source_queue(store):
    Job.create(store, "low", "Record", ["x"])

    job = Job.reserve_blocking(store, ["high", "low"], timeout=0.1)

    assert job.queue == "low"
    assert job.args == ["x"]


def test_reserve_blocking_times_out(store):
    assert Job.reserve_blocking(store, ["high", "low"], timeout=0.05) is None


@pytest.mark.parametrize("raw", ["null", "[1]", '"x"'])
def test_reserve_rejects_non_object_payload(store, raw):
    store.push_to_queue("queue:q", raw)

    with pytest.raises(ValueError, match="not a JSON object"):
        Job.reserve(store, "q")


def test_reserve_blocking_rejects_non_object_payload(store):
    store.push_to_queue("queue:q", "[1]")

    with pytest.raises(ValueError, match="not a JSON object"):
        Job.reserve_blocking(store, ["q"], timeout=0.05)


def test_perform_class_handler(store, registry):
    """Test a class handler gets the job attached and receives the args."""
    Job.create(store, "q", "Record", [1, "two"])
    job = Job.reserve(store, "q", registry)

    job.perform()

    assert PERFORMED == [[1, "two"]]


def test_perform_callable_handler(store, registry):
    Job.create(store, "q", "Add", [2, 3])
    Job.reserve(store, "q", registry).perform()

    assert PERFORMED == [5]


def test_perform_keyword_args(store, registry):
    Job.create(store, "q", "Add", {"a": 1, "b": 4})
    Job.reserve(store, "q", registry).perform()

    assert PERFORMED == [5]


def test_perform_unknown_class(store, registry):
    Job.create(store, "q", "Missing")
    job = Job.reserve(store, "q", registry)

    with pytest.raises(JobNotFoundError, match="Missing"):
        job.perform()


def test_fail_records_failure(store):
    """Test fail() sets FAILED, appends a failure record and bumps counters."""
    Job.create(store, "q", "Explode")
    job = Job.reserve(store, "q")
    job.worker = "host:1:q"

    try:
        raise RuntimeError("kaboom")
    except RuntimeError as e:
        job.fail(e)

    assert job.get_status() == JobStatus.FAILED
    [raw] = store.list_items("failed")
    record = json.loads(raw)
    assert record["exception"] == "RuntimeError"
    assert record["error"] == "kaboom"
    assert record["worker"] == "host:1:q"
    assert record["queue"] == "q"
    assert record["payload"]["class"] == "Explode"
    assert any("kaboom" in line for line in record["backtrace"])

    stat = Stat(store)
    assert stat.get("failed") == 1
    assert stat.get("failed:host:1:q") == 1


def test_fail_without_worker(store):
    Job.create(store, "q", "Record")
    job = Job.reserve(store, "q")

    job.fail(DirtyExitError())

    record = json.loads(store.list_items("failed")[0])
    assert record["worker"] is None
    assert record["exception"] == "DirtyExitError"
    assert Stat(store).get("failed") == 1


def test_job_str(store):
    Job.create(store, "q", "Record", [1], job_id="abc")
    job = Job.reserve(store, "q")

    assert str(job) == "(Job{q} | abc | Record | [1])"


def test_registry_register_by_name_requires_handler():
    registry = JobRegistry()

    with pytest.raises(TypeError):
        registry.register("Nothing")

    assert registry.is_empty()


def test_registry_register_class():
    class Cleanup:
        def perform(self):
            pass

    registry = JobRegistry()
    registry.register(Cleanup)

    assert len(registry) == 1
    assert registry.get_handler("Cleanup") is Cleanup
    assert registry.get_handler("Other") is None


def test_job_status_terminal():
    assert JobStatus.COMPLETE.is_terminal
    assert JobStatus.FAILED.is_terminal
    assert not JobStatus.WAITING.is_terminal
    assert not JobStatus.RUNNING.is_terminal
    assert str(JobStatus.RUNNING) == "RUNNING"
