"""
Dead-worker reaper.

When a worker dies without unregistering (host crash, SIGKILL, OOM) its
entry stays in the ``workers`` set forever. At startup every worker scans
the registrations made from its own host and removes those whose process
is no longer alive.

Only same-host entries are considered: a pid is meaningless elsewhere.
A recorded pid keeps its entry only while that pid belongs to a worker
process, one whose command line mentions WORKER_MARKER or matches this
process's own command line. A recycled pid now owned by an unrelated
program does not keep a dead registration alive. Workers launched some
other way should pass their own ``live_pids`` source.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import psutil

from pyresque.core.job import DirtyExitError, Job
from pyresque.core.worker_id import WorkerId
from pyresque.executor import registration
from pyresque.storage.base import Store

logger = logging.getLogger(__name__)

WORKER_MARKER = "resque"


def local_worker_pids(marker: str | None = WORKER_MARKER) -> set[int]:
    """Return pids of worker processes running on this host.

    Args:
        marker: A process whose command line contains it counts as a live
            worker, as does one started with this process's exact command
            line. None counts every local process

    Returns:
        Set of live worker pids
    """
    own_cmdline = psutil.Process().cmdline()
    pids: set[int] = set()
    for proc in psutil.process_iter(["pid", "cmdline"]):
        cmdline = proc.info["cmdline"] or []
        if marker is None or cmdline == own_cmdline or marker in " ".join(cmdline):
            pids.add(proc.info["pid"])
    return pids


class DeadWorkerReaper:
    """Removes registrations of dead workers from the local host.

    Usage:
        reaper = DeadWorkerReaper(store, hostname="web-1", pid=os.getpid())
        pruned = reaper.prune()
    """

    def __init__(
        self,
        store: Store,
        hostname: str,
        pid: int,
        live_pids: Callable[[], set[int]] | None = None,
    ):
        """Create a reaper.

        Args:
            store: Shared store holding registrations
            hostname: Local host name; other hosts' entries are never touched
            pid: Pid of the worker running the reaper (never pruned)
            live_pids: Source of live local worker pids, local_worker_pids() by default
        """
        self._store = store
        self._hostname = hostname
        self._pid = pid
        self._live_pids = live_pids or local_worker_pids

    def prune(self) -> list[WorkerId]:
        """Unregister every dead worker of this host.

        A job the dead worker was running is failed with DirtyExitError.

        Returns:
            Identities of the pruned workers
        """
        live = self._live_pids()
        pruned: list[WorkerId] = []

        for raw in self._store.list_set_members(registration.WORKERS_SET):
            try:
                worker_id = WorkerId.parse(raw)
            except ValueError:
                logger.warning(f"Skipping malformed worker registration: {raw!r}")
                continue

            if worker_id.hostname != self._hostname:
                continue
            if worker_id.pid in live or worker_id.pid == self._pid:
                continue

            logger.info(f"Pruning dead worker: {raw}")
            self._fail_orphaned_job(raw)
            registration.unregister(self._store, raw)
            pruned.append(worker_id)

        return pruned

    def _fail_orphaned_job(self, raw_id: str) -> None:
        snapshot = registration.working_on(self._store, raw_id)
        if not snapshot:
            return

        job = Job(snapshot.get("queue", ""), snapshot.get("payload") or {}, self._store)
        job.worker = raw_id
        logger.warning(f"Failing {job} left behind by dead worker {raw_id}")
        job.fail(DirtyExitError("Worker died while the job was running"))
