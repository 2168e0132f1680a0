"""Errors surfaced synchronously by the execution engine."""

from __future__ import annotations


class ExecutorError(RuntimeError):
    """Base class for engine errors."""


class DomainConflictError(ExecutorError):
    """Admission rejected because another issue holds the same domain."""

    def __init__(self, *, issue_id: str, domain: str, holder_issue_id: str | None) -> None:
        super().__init__(
            f"Domain '{domain}' is already running (held by issue {holder_issue_id}); "
            f"issue {issue_id} was not started.",
        )
        self.issue_id = issue_id
        self.domain = domain
        self.holder_issue_id = holder_issue_id


class TaskAlreadyRunningError(ExecutorError):
    """Admission rejected because the issue already has a running task."""

    def __init__(self, *, issue_id: str) -> None:
        super().__init__(f"Issue {issue_id} already has a running task.")
        self.issue_id = issue_id


class IssueNotFoundError(ExecutorError):
    def __init__(self, issue_id: str) -> None:
        super().__init__(f"Issue not found: {issue_id}")
        self.issue_id = issue_id


class ExecutionNotFoundError(ExecutorError):
    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id
