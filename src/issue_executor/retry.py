"""Retry decisions and the per-issue attempt loop."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from issue_executor.config import EngineSettings
from issue_executor.failure_classifier import FailureClassification, classify_failure
from issue_executor.models import (
    ExecutionCreate,
    ExecutionStatus,
    ExecutionView,
    FailureKind,
    IssueStatus,
    IssueView,
)
from issue_executor.process_runner import AttemptOutcome, AttemptRequest, ProcessRunner
from issue_executor.registry import AdmissionResult, RunningTask, TaskRegistry
from issue_executor.repository import ExecutionStore, call_store
from issue_executor.sanitization import sanitize_preview

logger = logging.getLogger(__name__)


class AttemptState(str, Enum):
    PENDING_ACCEPT = "pending_accept"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED_RETRYING = "failed_retrying"
    FAILED_TERMINAL = "failed_terminal"


@dataclass(slots=True)
class RetryDecision:
    state: AttemptState
    reason: str
    classification: FailureClassification | None = None

    @property
    def retry(self) -> bool:
        return self.state is AttemptState.FAILED_RETRYING


def decide_retry(outcome: AttemptOutcome, *, attempt_no: int, max_retries: int) -> RetryDecision:
    """Map a finished attempt to the next state of the retry loop."""

    if outcome.succeeded:
        return RetryDecision(state=AttemptState.SUCCESS, reason="succeeded")
    if outcome.failure_kind is FailureKind.CANCELLED:
        return RetryDecision(state=AttemptState.FAILED_TERMINAL, reason="cancelled")
    if attempt_no >= max_retries:
        return RetryDecision(
            state=AttemptState.FAILED_TERMINAL,
            reason=f"retry budget exhausted ({attempt_no}/{max_retries})",
        )
    if outcome.failure_kind is FailureKind.SPAWN:
        return RetryDecision(state=AttemptState.FAILED_RETRYING, reason="spawn failure")

    classification = classify_failure(stderr=outcome.stderr, stdout=outcome.stdout)
    if classification.retryable:
        return RetryDecision(
            state=AttemptState.FAILED_RETRYING,
            reason=f"classified as retryable ({classification.matched_rule})",
            classification=classification,
        )
    return RetryDecision(
        state=AttemptState.FAILED_TERMINAL,
        reason=f"classified as non-retryable (matched '{classification.matched_pattern}')",
        classification=classification,
    )


def build_failure_context(
    executions: Sequence[ExecutionView],
    *,
    max_attempts: int = 3,
    max_chars: int = 500,
) -> str:
    """Digest of recent failed attempts, newest first, with secrets redacted."""

    failed = [item for item in executions if item.status is ExecutionStatus.FAILED]
    if not failed:
        return ""

    blocks: list[str] = []
    for execution in failed[:max_attempts]:
        started = execution.started_at.isoformat()
        lines = [f"Attempt {execution.attempt_no + 1} ({started}) failed."]
        error = sanitize_preview(execution.error or "", max_chars=max_chars)
        output = sanitize_preview(execution.llm_response or "", max_chars=max_chars)
        if error:
            lines.append(f"Error: {error}")
        if output and output != error:
            lines.append(f"Output: {output}")
        blocks.append("\n".join(lines))
    return "Previous failed attempts:\n\n" + "\n\n".join(blocks)


class RetryOrchestrator:
    """Drives attempts for one issue until success, a terminal failure or an interrupt.

    One orchestrator exists per accepted ``execute`` call. Between attempts the registry
    entry is released and the pending execution is tracked here, so ``interrupt`` can
    cancel a retry that is waiting out its backoff.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        issue_id: str,
        domain: str | None,
        command: str,
        provider: str,
        max_retries: int,
        store: ExecutionStore,
        registry: TaskRegistry,
        runner: ProcessRunner,
        settings: EngineSettings,
    ) -> None:
        self.issue_id = issue_id
        self.domain = domain
        self.command = command
        self.provider = provider
        self.max_retries = max_retries
        self.store = store
        self.registry = registry
        self.runner = runner
        self.settings = settings
        self.state = AttemptState.PENDING_ACCEPT
        self.current_task: RunningTask | None = None
        self.current_execution_id: str | None = None
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._pending: ExecutionView | None = None
        self._interrupt_reason: str | None = None

    @property
    def pending_execution_id(self) -> str | None:
        with self._lock:
            return self._pending.execution_id if self._pending is not None else None

    @property
    def interrupted(self) -> bool:
        with self._lock:
            return self._interrupt_reason is not None

    def interrupt(self, reason: str) -> ExecutionView | None:
        """Stop further attempts.

        Returns the execution waiting out its backoff, if any; the caller then owns its
        terminal write.
        """

        with self._lock:
            if self._interrupt_reason is None:
                self._interrupt_reason = reason
            pending = self._pending
            self._pending = None
        self._wake.set()
        return pending

    def run(self, task: RunningTask, execution: ExecutionView) -> AttemptOutcome:
        """Run attempts until the loop reaches a terminal state; returns the last outcome."""

        failure_context = ""
        while True:
            self.current_task = task
            self.current_execution_id = execution.execution_id
            self.state = AttemptState.RUNNING
            attempt_no = execution.attempt_no
            outcome = self.runner.run(
                task,
                AttemptRequest(
                    issue_id=self.issue_id,
                    execution=execution,
                    command=self.command,
                    attempt_no=attempt_no,
                    failure_context=failure_context,
                ),
            )
            decision = decide_retry(outcome, attempt_no=attempt_no, max_retries=self.max_retries)
            logger.info(
                "Task %s attempt %d finished: %s (%s)",
                self.issue_id,
                attempt_no,
                decision.state.value,
                decision.reason,
            )
            if decision.classification is not None:
                logger.info(
                    "Task %s failure classified: %s",
                    self.issue_id,
                    decision.classification.to_event_details(),
                )
            if decision.state is AttemptState.SUCCESS:
                self.state = AttemptState.SUCCESS
                return outcome
            if outcome.failure_kind is FailureKind.CANCELLED:
                self.state = AttemptState.FAILED_TERMINAL
                return outcome

            issue = call_store(
                "load issue",
                self.issue_id,
                self.store.get_issue,
                self.issue_id,
                recent_limit=self.settings.recent_executions_limit,
            )
            if issue is None or issue.status is not IssueStatus.IN_PROGRESS:
                logger.info(
                    "Issue %s is %s - leaving failure to the workflow",
                    self.issue_id,
                    issue.status.value if issue is not None else "unavailable",
                )
                self.state = AttemptState.FAILED_TERMINAL
                return outcome
            if not decision.retry or self.interrupted:
                self._surface_failure()
                return outcome

            prepared = self._prepare_retry(issue, attempt_no)
            if prepared is None:
                self._surface_failure()
                return outcome
            execution, failure_context = prepared
            next_task = self._await_retry(execution)
            if next_task is None:
                return outcome
            task = next_task

    def _surface_failure(self) -> None:
        self.state = AttemptState.FAILED_TERMINAL
        issue = call_store("load issue", self.issue_id, self.store.get_issue, self.issue_id)
        if issue is None or issue.status is not IssueStatus.IN_PROGRESS:
            return
        logger.info("Task %s failed terminally - setting issue to PENDING", self.issue_id)
        call_store(
            "set issue status",
            self.issue_id,
            self.store.set_issue_status,
            self.issue_id,
            IssueStatus.PENDING,
        )

    def _prepare_retry(self, issue: IssueView, attempt_no: int) -> tuple[ExecutionView, str] | None:
        failure_context = build_failure_context(
            issue.recent_executions,
            max_attempts=self.settings.failure_context_attempts,
            max_chars=self.settings.failure_context_chars,
        )
        execution = call_store(
            "create retry execution",
            self.issue_id,
            self.store.create_execution,
            ExecutionCreate(
                issue_id=self.issue_id,
                command=self.command,
                provider=self.provider,
                attempt_no=attempt_no + 1,
            ),
        )
        if execution is None:
            return None
        with self._lock:
            reason = self._interrupt_reason
            if reason is None:
                self._pending = execution
                self.state = AttemptState.FAILED_RETRYING
        if reason is not None:
            self._abandon(execution, reason)
            return None
        self.current_task = None
        self.current_execution_id = execution.execution_id
        logger.info(
            "Retrying task %s (%d/%d) in %gs",
            self.issue_id,
            attempt_no + 1,
            self.max_retries,
            self.settings.retry_backoff_seconds,
        )
        return execution, failure_context

    def _await_retry(self, execution: ExecutionView) -> RunningTask | None:
        self._sleep_backoff(execution)
        issue = call_store("load issue", self.issue_id, self.store.get_issue, self.issue_id)

        abandon_reason: str | None = None
        with self._lock:
            if self._pending is None:
                # interrupt() claimed the pending execution.
                self.state = AttemptState.FAILED_TERMINAL
                return None
            self._pending = None
            if issue is None:
                abandon_reason = "Retry abandoned: issue is no longer available"
            elif issue.status is not IssueStatus.IN_PROGRESS:
                abandon_reason = f"Retry abandoned: issue moved to {issue.status.value}"
            else:
                admission = self.registry.try_acquire(
                    self.issue_id,
                    self.domain,
                    execution_id=execution.execution_id,
                )
                if admission.accepted and admission.task is not None:
                    return admission.task
                if admission.result is AdmissionResult.DOMAIN_CONFLICT:
                    abandon_reason = (
                        f"Retry abandoned: domain '{self.domain}' is held by issue "
                        f"{admission.holder_issue_id}"
                    )
                else:
                    abandon_reason = "Retry abandoned: issue already has a running task"

        logger.warning("Task %s: %s", self.issue_id, abandon_reason)
        self._abandon(execution, abandon_reason)
        self._surface_failure()
        return None

    def _sleep_backoff(self, execution: ExecutionView) -> None:
        """Wait out the backoff, keeping the pending execution's heartbeat fresh."""

        deadline = time.monotonic() + self.settings.retry_backoff_seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            if self._wake.wait(min(remaining, self.settings.heartbeat_interval_seconds)):
                return
            call_store(
                "refresh heartbeat",
                execution.execution_id,
                self.store.touch_execution,
                execution.execution_id,
            )

    def _abandon(self, execution: ExecutionView, reason: str) -> None:
        self.state = AttemptState.FAILED_TERMINAL
        call_store(
            "abandon execution",
            execution.execution_id,
            self.store.finish_execution,
            execution.execution_id,
            status=ExecutionStatus.FAILED,
            llm_response=None,
            error=reason,
        )
