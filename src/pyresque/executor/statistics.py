"""Fixed-width worker status line, written on SIGUSR2."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import psutil

PID_WIDTH = 10
MEMORY_WIDTH = 8
TYPE_WIDTH = 16
QUEUES_WIDTH = 32
TIMERS_WIDTH = 8
LOOPS_WIDTH = 13
JOBS_WIDTH = 13
STATE_WIDTH = 6


def memory_usage_mb() -> float:
    """Resident memory of the current process in megabytes."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


def format_statistics_line(
    pid: int,
    memory_mb: float,
    worker_type: str,
    queues: Sequence[str],
    timer_buckets: int,
    loop_count: int,
    job_count: int,
    busy: bool,
) -> str:
    """Render one status line.

    Fields are left-justified to fixed widths and never truncated, so an
    overlong value pushes the following columns right instead of losing data.
    """
    return (
        str(pid).ljust(PID_WIDTH)
        + f"{memory_mb:.2f}M".ljust(MEMORY_WIDTH)
        + worker_type.ljust(TYPE_WIDTH)
        + ",".join(queues).ljust(QUEUES_WIDTH)
        + str(timer_buckets).ljust(TIMERS_WIDTH)
        + str(loop_count).ljust(LOOPS_WIDTH)
        + str(job_count).ljust(JOBS_WIDTH)
        + ("[busy]" if busy else "[idle]").ljust(STATE_WIDTH)
        + "\n"
    )


def append_statistics_line(path: str | Path, line: str) -> None:
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(line)
