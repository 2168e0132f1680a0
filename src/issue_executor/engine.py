"""Execution engine facade: admission, background attempts, cancellation and streaming."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import timedelta

from issue_executor.config import EngineSettings
from issue_executor.errors import (
    DomainConflictError,
    ExecutorError,
    IssueNotFoundError,
    TaskAlreadyRunningError,
)
from issue_executor.log_stream import LogEvent, LogStreamPublisher, StreamKind
from issue_executor.models import (
    ExecuteResult,
    ExecutionCreate,
    ExecutionStatus,
    ExecutionView,
    IssueStatus,
    RunningSnapshot,
    RunningTaskView,
    TaskStatusView,
)
from issue_executor.process_runner import ProcessRunner
from issue_executor.registry import AdmissionResult, RunningTask, TaskRegistry
from issue_executor.repository import ExecutionStore, call_store
from issue_executor.retry import RetryOrchestrator
from issue_executor.storage.common import utc_now

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"
FORCE_KILLED = "Task forcefully terminated"
SHUTTING_DOWN = "Engine shutting down"
INTERRUPTED_BY_RESTART = "Interrupted: executor restarted while running"


@dataclass(slots=True)
class _Worker:
    orchestrator: RetryOrchestrator
    thread: threading.Thread | None = None


class ExecutionEngine:
    """Runs issue commands in the background, one thread per accepted request."""

    def __init__(
        self,
        *,
        store: ExecutionStore,
        settings: EngineSettings | None = None,
        registry: TaskRegistry | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or EngineSettings()
        self.registry = registry or TaskRegistry()
        self.publisher = LogStreamPublisher(
            store=store,
            poll_interval_seconds=self.settings.stream_poll_interval_seconds,
        )
        self.runner = ProcessRunner(
            store=store,
            registry=self.registry,
            publisher=self.publisher,
            settings=self.settings,
        )
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._workers: dict[str, _Worker] = {}
        self._closed = False

    def __enter__(self) -> ExecutionEngine:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.shutdown()

    def execute(
        self,
        issue_id: str,
        command: str,
        *,
        provider: str = "system",
        max_retries: int | None = None,
    ) -> ExecuteResult:
        """Admit a command for an issue and start it in the background."""

        command = (command or "").strip()
        if not command:
            raise ValueError("Command is required")
        retries = self.settings.default_max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValueError("max_retries must be >= 0")

        issue = self.store.get_issue(issue_id, recent_limit=self.settings.recent_executions_limit)
        if issue is None:
            raise IssueNotFoundError(issue_id)
        for holder in self._live_elsewhere():
            if holder.issue_id == issue_id:
                raise TaskAlreadyRunningError(issue_id=issue_id)
            if issue.domain and holder.domain == issue.domain:
                raise DomainConflictError(
                    issue_id=issue_id,
                    domain=issue.domain,
                    holder_issue_id=holder.issue_id,
                )

        with self._lock:
            if self._closed:
                raise ExecutorError("Execution engine is shut down")
            if issue_id in self._workers:
                raise TaskAlreadyRunningError(issue_id=issue_id)
            admission = self.registry.try_acquire(issue_id, issue.domain)
            if admission.result is AdmissionResult.DOMAIN_CONFLICT:
                raise DomainConflictError(
                    issue_id=issue_id,
                    domain=issue.domain or "",
                    holder_issue_id=admission.holder_issue_id,
                )
            if admission.result is AdmissionResult.ALREADY_RUNNING or admission.task is None:
                raise TaskAlreadyRunningError(issue_id=issue_id)
            task = admission.task
            worker = _Worker(
                orchestrator=RetryOrchestrator(
                    issue_id=issue_id,
                    domain=task.domain,
                    command=command,
                    provider=provider,
                    max_retries=retries,
                    store=self.store,
                    registry=self.registry,
                    runner=self.runner,
                    settings=self.settings,
                ),
            )
            self._workers[issue_id] = worker

        try:
            self.store.set_issue_status(issue_id, IssueStatus.IN_PROGRESS)
            execution = self.store.create_execution(
                ExecutionCreate(issue_id=issue_id, command=command, provider=provider),
            )
        except Exception:
            self.registry.release(issue_id, expected=task)
            self._drop_worker(issue_id, worker)
            raise

        self.registry.bind_execution(task, execution.execution_id)
        worker.orchestrator.current_execution_id = execution.execution_id
        self.publisher.open(execution)
        worker.thread = threading.Thread(
            target=self._work,
            args=(worker, task, execution),
            daemon=True,
            name=f"issue-{issue_id[:8]}",
        )
        worker.thread.start()
        logger.info(
            "Task %s accepted (execution: %s, domain: %s, max retries: %d)",
            issue_id,
            execution.execution_id,
            task.domain or "none",
            retries,
        )
        return ExecuteResult(
            issue_id=issue_id,
            execution_id=execution.execution_id,
            status=ExecutionStatus.RUNNING,
            domain=task.domain,
            previous_executions=len(issue.recent_executions),
        )

    def status(self, issue_id: str) -> TaskStatusView:
        issue = self.store.get_issue(issue_id, recent_limit=1)
        if issue is None:
            raise IssueNotFoundError(issue_id)
        return TaskStatusView(
            issue_id=issue_id,
            issue_status=issue.status,
            is_running=self.registry.is_running(issue_id) or self.held_elsewhere(issue_id),
            latest_execution=self.store.latest_execution(issue_id),
        )

    def is_active(self, issue_id: str) -> bool:
        """True while the issue has a background worker, including retry backoff."""

        with self._lock:
            return issue_id in self._workers

    def cancel(self, issue_id: str) -> bool:
        """Stop the issue's task, fail its execution and put the issue back to PENDING."""

        if not self._terminate(issue_id, CANCELLED_BY_USER):
            return False
        call_store(
            "set issue status",
            issue_id,
            self.store.set_issue_status,
            issue_id,
            IssueStatus.PENDING,
        )
        logger.info("Task %s cancelled", issue_id)
        return True

    def force_kill(self, issue_id: str) -> bool:
        """Terminate the issue's task without touching the issue; never raises."""

        try:
            return self._terminate(issue_id, FORCE_KILLED)
        except Exception:  # noqa: BLE001
            logger.exception("Force kill of task %s failed", issue_id)
            return self.registry.release(issue_id)

    def list_running(self) -> RunningSnapshot:
        tasks = self.registry.list_running()
        return RunningSnapshot(tasks=tasks, domains={task.domain for task in tasks if task.domain})

    def stream_log(self, execution_id: str) -> Iterator[LogEvent]:
        """Events of one execution: init, deltas, then exactly one complete."""

        return self.publisher.subscribe(execution_id)

    def follow(self, issue_id: str) -> Iterator[LogEvent]:
        """Stream the issue's attempts one after another until its worker finishes."""

        seen: set[str] = set()
        while True:
            active = self.is_active(issue_id)
            latest = self.store.latest_execution(issue_id)
            if latest is not None and latest.execution_id not in seen:
                seen.add(latest.execution_id)
                yield from self.stream_log(latest.execution_id)
                continue
            if not active:
                return
            time.sleep(self.settings.stream_poll_interval_seconds)

    def held_elsewhere(self, issue_id: str) -> bool:
        """True when another executor process is running a task for the issue."""

        return any(holder.issue_id == issue_id for holder in self._live_elsewhere())

    def reconcile(self) -> list[str]:
        """Fail RUNNING executions that no process has kept alive recently.

        Executions owned by this engine are always kept; executions of other processes
        survive as long as their heartbeat is fresher than ``stale_execution_seconds``.
        """

        stale_before = utc_now() - timedelta(seconds=self.settings.stale_execution_seconds)
        failed = self.store.fail_orphaned_executions(
            reason=INTERRUPTED_BY_RESTART,
            keep_execution_ids=self._owned_execution_ids(),
            stale_before=stale_before,
        )
        if failed:
            logger.warning("Reconciled %d orphaned execution(s): %s", len(failed), failed)
        return failed

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no background worker remains; False on timeout."""

        with self._idle:
            return self._idle.wait_for(lambda: not self._workers, timeout=timeout)

    def shutdown(self, *, wait: bool = True, timeout: float | None = None) -> None:
        """Cancel every task, interrupt pending retries and refuse new requests."""

        with self._lock:
            self._closed = True
            issue_ids = list(self._workers)
        for issue_id in issue_ids:
            if self._terminate(issue_id, SHUTTING_DOWN):
                call_store(
                    "set issue status",
                    issue_id,
                    self.store.set_issue_status,
                    issue_id,
                    IssueStatus.PENDING,
                )
        if wait and issue_ids:
            self.wait_idle(timeout)

    def _owned_execution_ids(self) -> set[str]:
        owned = self.registry.running_execution_ids()
        with self._lock:
            for worker in self._workers.values():
                orchestrator = worker.orchestrator
                for execution_id in (
                    orchestrator.current_execution_id,
                    orchestrator.pending_execution_id,
                ):
                    if execution_id:
                        owned.add(execution_id)
        return owned

    def _live_elsewhere(self) -> list[RunningTaskView]:
        fresh_after = utc_now() - timedelta(seconds=self.settings.stale_execution_seconds)
        live = self.store.live_executions(fresh_after=fresh_after)
        if not live:
            return []
        owned = self._owned_execution_ids()
        return [holder for holder in live if holder.execution_id not in owned]

    def _terminate(self, issue_id: str, reason: str) -> bool:
        with self._lock:
            worker = self._workers.get(issue_id)
        if worker is not None:
            pending = worker.orchestrator.interrupt(reason)
            if pending is not None:
                logger.warning("Cancelling pending retry of task %s: %s", issue_id, reason)
                self._fail_execution(pending.execution_id, reason)
                return True

        task = self.registry.force_kill(issue_id, reason=reason)
        if task is None:
            return False
        if task.execution_id:
            self._fail_execution(task.execution_id, reason)
        return True

    def _fail_execution(self, execution_id: str, reason: str) -> None:
        live = self.publisher.get(execution_id)
        llm_response: str | None = None
        error = reason
        if live is not None:
            live.append_line(StreamKind.STDERR, reason)
            stdout = live.text(StreamKind.STDOUT)
            error = live.text(StreamKind.STDERR) or reason
            llm_response = stdout or error
        completed_at = utc_now()
        call_store(
            "record cancellation",
            execution_id,
            self.store.finish_execution,
            execution_id,
            status=ExecutionStatus.FAILED,
            llm_response=llm_response,
            error=error,
            completed_at=completed_at,
        )
        self.publisher.close(execution_id, status=ExecutionStatus.FAILED, completed_at=completed_at)

    def _work(self, worker: _Worker, task: RunningTask, execution: ExecutionView) -> None:
        orchestrator = worker.orchestrator
        try:
            orchestrator.run(task, execution)
        except Exception as error:  # noqa: BLE001
            logger.exception("Background execution of task %s crashed", orchestrator.issue_id)
            self._recover(orchestrator, f"Internal error: {error}")
        finally:
            self._drop_worker(orchestrator.issue_id, worker)

    def _recover(self, orchestrator: RetryOrchestrator, reason: str) -> None:
        pending = orchestrator.interrupt(reason)
        if pending is not None:
            self._fail_execution(pending.execution_id, reason)
        current = orchestrator.current_task
        if current is not None and self.registry.release(orchestrator.issue_id, expected=current):
            if orchestrator.current_execution_id:
                self._fail_execution(orchestrator.current_execution_id, reason)
        issue = call_store(
            "load issue",
            orchestrator.issue_id,
            self.store.get_issue,
            orchestrator.issue_id,
        )
        if issue is not None and issue.status is IssueStatus.IN_PROGRESS:
            call_store(
                "set issue status",
                orchestrator.issue_id,
                self.store.set_issue_status,
                orchestrator.issue_id,
                IssueStatus.PENDING,
            )

    def _drop_worker(self, issue_id: str, worker: _Worker) -> None:
        with self._idle:
            if self._workers.get(issue_id) is worker:
                del self._workers[issue_id]
            self._idle.notify_all()
