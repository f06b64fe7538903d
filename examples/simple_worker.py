"""
Simple Worker

Enqueues a handful of jobs into Redis and runs one worker over them.

Scenario:
- 5 "SendWelcome" jobs on the "emails" queue, 2 "Resize" jobs on "images"
- One of the resize jobs fails on purpose
- One worker listening to "emails" first, then every other queue

Key Features:
- Each job runs in its own forked process
- Failures land in the ``failed`` list with a backtrace
- ``kill -USR2 <pid>`` appends a status line to /tmp/pyresque.stats
- ``kill -QUIT <pid>`` finishes the current job, then exits

Run:
    PYTHONPATH=src python examples/simple_worker.py
"""

import json
import logging
import time

from pyresque import Job, JobStatus, RedisStore, Stat, Worker, default_registry

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class SendWelcome:
    """Pretends to send a welcome email."""

    def perform(self, address):
        time.sleep(0.2)
        logger.info(f"Welcome email sent to {address}")


class Resize:
    def perform(self, path, width):
        if width <= 0:
            raise ValueError(f"cannot resize {path} to width {width}")
        time.sleep(0.5)
        logger.info(f"Resized {path} to {width}px")


def main():
    default_registry.register(SendWelcome)
    default_registry.register(Resize)

    store = RedisStore("redis://localhost:6379")
    store.connect()

    job_ids = [
        Job.create(store, "emails", "SendWelcome", [f"user{i}@example.com"]) for i in range(5)
    ]
    job_ids.append(Job.create(store, "images", "Resize", ["cat.png", 640]))
    job_ids.append(Job.create(store, "images", "Resize", ["dog.png", 0]))

    # interval=0: stop as soon as every queue is empty
    worker = Worker(store, ["emails", "*"]).with_statistics_file("/tmp/pyresque.stats")
    worker.work(interval=0)

    stat = Stat(store)
    print(f"Processed: {stat.get('processed')}")
    print(f"Failed: {stat.get('failed')}")

    for job_id in job_ids:
        raw = store.get_string(f"job:{job_id}:status")
        status = JobStatus(json.loads(raw)["status"]) if raw else None
        print(f"  {job_id}: {status}")

    store.close()


if __name__ == "__main__":
    main()
