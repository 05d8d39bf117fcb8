"""Identify a process by its pid and start time, so a reused pid is told apart."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

_logger = logging.getLogger(__name__)

_PROC_ROOT = "/proc"
_START_TIME_FIELD = 22


def get_btime(pid: int) -> int:
    """Return the start time of ``pid`` in jiffies since boot, or 0 if unknown."""
    path = os.path.join(_PROC_ROOT, str(pid), "stat")
    try:
        with open(path, encoding="utf-8", errors="replace") as stat_file:
            content = stat_file.read()
    except OSError:
        return 0
    fields = content.split(" ")
    if len(fields) < _START_TIME_FIELD:
        return 0
    return int(fields[_START_TIME_FIELD - 1])


@dataclass
class ProcessID:
    """A pid together with the time the process started."""

    pid: int = 0
    btime: int = 0

    def __str__(self) -> str:
        return f"[{self.pid}, {self.btime}]"

    def set_pid(self, pid: int | None = None) -> None:
        """Record ``pid`` (the current process by default) and its start time."""
        if pid is None:
            pid = os.getpid()
        self.btime = get_btime(pid)
        self.pid = pid if self.btime != 0 else 0

    def is_valid(self) -> bool:
        return self.pid != 0 and self.btime != 0

    def is_alive(self) -> bool:
        """Return whether the same process is still running."""
        if not self.is_valid():
            raise ValueError("process id is not set")
        try:
            os.kill(self.pid, 0)
        except ProcessLookupError:
            _logger.critical("DistHeap: process %s is gone", self.pid)
            return False
        except OSError as exc:
            _logger.critical(
                "DistHeap: process %s is experiencing problems? errno %s",
                self.pid,
                exc.strerror,
            )
        return get_btime(self.pid) == self.btime