"""
Worker registration records in the shared store.

Keys (relative to the store namespace):
- workers (SET): every registered worker id
- worker:{id} (STRING): JSON snapshot of the job the worker is running
- worker:{id}:started (STRING): registration timestamp
- worker:{id}:heartbeat (STRING): last heartbeat timestamp, if enabled
- stat:processed:{id}, stat:failed:{id}: per-worker counters
"""

from __future__ import annotations

import json
import time
from typing import Any

from pyresque.core.job import Job
from pyresque.core.stat import Stat
from pyresque.storage.base import Store

WORKERS_SET = "workers"
TIMESTAMP_FORMAT = "%a %b %d %H:%M:%S %Z %Y"


def worker_key(worker_id: str) -> str:
    return f"worker:{worker_id}"


def started_key(worker_id: str) -> str:
    return f"worker:{worker_id}:started"


def heartbeat_key(worker_id: str) -> str:
    return f"worker:{worker_id}:heartbeat"


def timestamp() -> str:
    return time.strftime(TIMESTAMP_FORMAT)


def register(store: Store, worker_id: str) -> None:
    store.add_to_set(WORKERS_SET, worker_id)
    store.set_string(started_key(worker_id), timestamp())


def unregister(store: Store, worker_id: str) -> None:
    """Remove every trace of a worker from the store."""
    store.remove_from_set(WORKERS_SET, worker_id)
    store.delete_key(worker_key(worker_id))
    store.delete_key(started_key(worker_id))
    store.delete_key(heartbeat_key(worker_id))

    stat = Stat(store)
    stat.clear(f"processed:{worker_id}")
    stat.clear(f"failed:{worker_id}")


def record_working_on(store: Store, worker_id: str, job: Job) -> None:
    data = {
        "queue": job.queue,
        "run_at": timestamp(),
        "payload": job.payload,
    }
    store.set_string(worker_key(worker_id), json.dumps(data))


def working_on(store: Store, worker_id: str) -> dict[str, Any]:
    """Snapshot of the job a worker is running, {} when idle."""
    raw = store.get_string(worker_key(worker_id))
    if not raw:
        return {}
    return json.loads(raw)
