"""
Status enums for job tracking.

The numeric values are the ones classic resque status trackers store,
so status records stay readable by other resque clients sharing the
same Redis instance.
"""

from enum import Enum


class JobStatus(Enum):
    """
    Status of a tracked job.

    Lifecycle:
    WAITING → RUNNING → COMPLETE/FAILED

    A job only ever receives one terminal status update.
    """

    WAITING = 1
    """Job is queued, waiting for a worker."""

    RUNNING = 2
    """Job has been reserved and a worker is performing it."""

    FAILED = 3
    """Job raised an error or its child process exited dirty."""

    COMPLETE = 4
    """Job performed without raising."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more work needed)."""
        return self in (JobStatus.COMPLETE, JobStatus.FAILED)

    def __str__(self) -> str:
        return self.name
