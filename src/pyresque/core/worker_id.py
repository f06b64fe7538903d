"""
WorkerId - structured identity of a worker process.

The identity is a value object everywhere inside the package. It is only
flattened to the classic ``"hostname:pid:queue1,queue2"`` string at the
store boundary, which keeps registrations compatible with other resque
tooling reading the ``workers`` set.
"""

from __future__ import annotations

from dataclasses import dataclass

__all__ = ["WorkerId"]


@dataclass(frozen=True)
class WorkerId:
    """
    Identity of a worker: where it runs and what it listens to.

    Attributes:
        hostname: Host the worker process runs on
        pid: OS process id of the worker (parent) process
        queues: Ordered queue names, exactly as configured (may contain ``*``)
    """

    hostname: str
    """Host the worker process runs on"""

    pid: int
    """OS process id of the worker process"""

    queues: tuple[str, ...]
    """Ordered queue names as configured"""

    def __str__(self) -> str:
        return f"{self.hostname}:{self.pid}:{','.join(self.queues)}"

    @classmethod
    def parse(cls, value: str) -> WorkerId:
        """
        Rebuild a WorkerId from its serialized store form.

        Args:
            value: String of the form ``hostname:pid:queue1,queue2``

        Returns:
            The parsed WorkerId

        Raises:
            ValueError: If the string is not a valid worker identifier
        """
        parts = value.split(":", 2)
        if len(parts) != 3:
            raise ValueError(f"malformed worker id: {value!r}")

        hostname, pid, queues = parts
        try:
            pid_value = int(pid)
        except ValueError:
            raise ValueError(f"malformed worker pid in {value!r}") from None

        return cls(hostname=hostname, pid=pid_value, queues=tuple(queues.split(",")))
