"""
Core types for the pyresque worker.

This module contains the fundamental types used throughout pyresque:
- Job: A reserved unit of work with status and failure bookkeeping
- JobRegistry: Maps payload class names to job handlers
- JobStatus: Tracked job state
- Stat: Persisted counters
- WorkerId: Structured worker identity
- DirtyExitError: Job ended without a recorded completion
"""

from pyresque.core.job import (
    DirtyExitError,
    Job,
    JobNotFoundError,
    JobRegistry,
    default_registry,
    queue_key,
)
from pyresque.core.stat import Stat
from pyresque.core.status import JobStatus
from pyresque.core.worker_id import WorkerId

__all__ = [
    "Job",
    "JobRegistry",
    "JobNotFoundError",
    "DirtyExitError",
    "default_registry",
    "queue_key",
    "JobStatus",
    "Stat",
    "WorkerId",
]
