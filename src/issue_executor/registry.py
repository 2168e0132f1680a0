"""In-memory registry of running tasks and the domain locks they hold."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from issue_executor.models import RunningTaskView
from issue_executor.storage.common import utc_now

logger = logging.getLogger(__name__)


class AdmissionResult(str, Enum):
    ACCEPTED = "accepted"
    DOMAIN_CONFLICT = "domain_conflict"
    ALREADY_RUNNING = "already_running"


@dataclass(eq=False, slots=True)
class RunningTask:
    """Live handle of one issue's running process.

    Fields are mutated only under the owning registry's lock.
    """

    issue_id: str
    domain: str | None
    started_at: datetime
    execution_id: str | None = None
    process: subprocess.Popen[bytes] | None = None
    cancel_reason: str | None = None

    def to_view(self) -> RunningTaskView:
        return RunningTaskView(
            issue_id=self.issue_id,
            execution_id=self.execution_id,
            domain=self.domain,
            started_at=self.started_at,
        )


@dataclass(slots=True)
class Admission:
    """Outcome of an admission-control check."""

    result: AdmissionResult
    task: RunningTask | None = None
    holder_issue_id: str | None = None

    @property
    def accepted(self) -> bool:
        return self.result is AdmissionResult.ACCEPTED


class TaskRegistry:
    """Issue id -> RunningTask map; domain locks are derived from its entries."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, RunningTask] = {}

    def try_acquire(
        self,
        issue_id: str,
        domain: str | None,
        *,
        execution_id: str | None = None,
    ) -> Admission:
        """Atomically check conflicts and register a task for the issue."""

        with self._lock:
            if issue_id in self._tasks:
                return Admission(
                    result=AdmissionResult.ALREADY_RUNNING,
                    holder_issue_id=issue_id,
                )
            if domain:
                for holder in self._tasks.values():
                    if holder.domain == domain:
                        return Admission(
                            result=AdmissionResult.DOMAIN_CONFLICT,
                            holder_issue_id=holder.issue_id,
                        )
            task = RunningTask(
                issue_id=issue_id,
                domain=domain or None,
                started_at=utc_now(),
                execution_id=execution_id,
            )
            self._tasks[issue_id] = task
            return Admission(result=AdmissionResult.ACCEPTED, task=task)

    def bind_execution(self, task: RunningTask, execution_id: str) -> None:
        with self._lock:
            task.execution_id = execution_id

    def attach_process(self, task: RunningTask, process: subprocess.Popen[bytes]) -> bool:
        """Attach the spawned process; False if the task was removed meanwhile."""

        with self._lock:
            task.process = process
            return self._tasks.get(task.issue_id) is task

    def release(self, issue_id: str, *, expected: RunningTask | None = None) -> bool:
        """Remove the entry for an issue; no-op if absent.

        With ``expected``, only that exact task is removed. The caller that removes
        the entry owns the terminal write for its execution.
        """

        with self._lock:
            current = self._tasks.get(issue_id)
            if current is None:
                return False
            if expected is not None and current is not expected:
                return False
            del self._tasks[issue_id]
            return True

    def force_kill(self, issue_id: str, *, reason: str) -> RunningTask | None:
        """Remove the entry, record why, and signal its process without waiting."""

        with self._lock:
            task = self._tasks.pop(issue_id, None)
            if task is None:
                return None
            task.cancel_reason = reason
            process = task.process
        logger.warning(
            "Force killing task for issue %s (execution: %s): %s",
            issue_id,
            task.execution_id,
            reason,
        )
        if process is not None:
            signal_process(process)
        return task

    def is_cancelled(self, task: RunningTask) -> bool:
        with self._lock:
            return task.cancel_reason is not None

    def lookup(self, issue_id: str) -> RunningTaskView | None:
        with self._lock:
            task = self._tasks.get(issue_id)
            return task.to_view() if task is not None else None

    def is_running(self, issue_id: str) -> bool:
        with self._lock:
            return issue_id in self._tasks

    def list_running(self) -> list[RunningTaskView]:
        with self._lock:
            return [task.to_view() for task in self._tasks.values()]

    def running_domains(self) -> set[str]:
        with self._lock:
            return {task.domain for task in self._tasks.values() if task.domain}

    def running_execution_ids(self) -> set[str]:
        with self._lock:
            return {task.execution_id for task in self._tasks.values() if task.execution_id}


def signal_process(
    process: subprocess.Popen[bytes],
    *,
    sig: signal.Signals = signal.SIGTERM,
) -> None:
    """Deliver a signal to the process group of a shell-spawned command."""

    if process.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except (ProcessLookupError, PermissionError):
        return
    except OSError as error:
        logger.warning("Failed to signal process %s: %s", process.pid, error)
