from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass

from relay.models import Clock, ProcessEntry, to_iso, utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WaitResult:
    entry: ProcessEntry
    completed: bool
    timed_out: bool


class ProcessRegistry:
    """In-memory bookkeeping of agent processes, grouped by task id."""

    def __init__(self, *, poll_interval_seconds: float = 5.0, clock: Clock = utcnow) -> None:
        self.poll_interval_seconds = poll_interval_seconds
        self.clock = clock
        self._processes: dict[str, list[ProcessEntry]] = {}

    def register(self, task_id: str, pid: int | None = None, label: str = "agent") -> ProcessEntry:
        entry = ProcessEntry(pid=pid, label=label, registered_at=to_iso(self.clock()))
        self._processes.setdefault(task_id, []).append(entry)
        logger.debug("Registered %s process %s for task %s", label, pid, task_id)
        return entry

    def processes(self, task_id: str) -> list[ProcessEntry]:
        return list(self._processes.get(task_id, []))

    def task_ids(self) -> list[str]:
        return list(self._processes)

    @staticmethod
    def is_alive(pid: int | None) -> bool:
        if pid is None:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but belongs to another user.
            return True
        return True

    @staticmethod
    def kill(pid: int, sig: int = signal.SIGTERM) -> bool:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError:
            logger.warning("Not permitted to signal process %s", pid)
            return False
        return True

    def mark_completed(self, entry: ProcessEntry) -> None:
        if entry.status != "running":
            return
        entry.status = "completed"
        entry.completed_at = to_iso(self.clock())

    def mark_failed(self, entry: ProcessEntry, error: str) -> None:
        entry.status = "failed"
        entry.failed_at = to_iso(self.clock())
        entry.error = error

    async def wait_for(self, pid: int, timeout_seconds: float) -> bool:
        """Poll until ``pid`` exits. Returns False when the timeout elapsed first."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while self.is_alive(pid):
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))
        return True

    async def wait_for_all(self, task_id: str, timeout_seconds: float) -> list[WaitResult]:
        entries = self.processes(task_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while any(self.is_alive(entry.pid) for entry in entries):
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

        results: list[WaitResult] = []
        for entry in entries:
            finished = entry.pid is None or not self.is_alive(entry.pid)
            if finished:
                self.mark_completed(entry)
            results.append(WaitResult(entry=entry, completed=finished, timed_out=not finished))
        return results

    def sweep_dead(self) -> int:
        swept = 0
        for task_id, entries in self._processes.items():
            for entry in entries:
                if entry.status == "running" and not self.is_alive(entry.pid):
                    self.mark_completed(entry)
                    swept += 1
                    logger.debug("Process %s for task %s is gone", entry.pid, task_id)
        return swept

    def forget(self, task_id: str) -> int:
        return len(self._processes.pop(task_id, []))

    def kill_all(self, sig: int = signal.SIGTERM) -> int:
        killed = 0
        for entries in self._processes.values():
            for entry in entries:
                if entry.status != "running" or entry.pid is None:
                    continue
                if self.kill(entry.pid, sig):
                    self.mark_failed(entry, f"killed with signal {int(sig)}")
                    killed += 1
        if killed:
            logger.info("Sent signal %d to %d agent processes", int(sig), killed)
        return killed
