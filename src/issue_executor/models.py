"""Domain models for issues, execution attempts and the live task registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class IssueStatus(str, Enum):
    """Board status of an issue, owned by the surrounding workflow."""

    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    PENDING = "PENDING"


class ExecutionStatus(str, Enum):
    """Lifecycle of one execution attempt."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class FailureKind(str, Enum):
    """Why a finished attempt did not succeed."""

    RUNTIME = "runtime"
    TIMEOUT = "timeout"
    SPAWN = "spawn"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class IssueCreate:
    """Input payload for creating an issue."""

    title: str
    domain: str | None = None
    status: IssueStatus = IssueStatus.TODO
    issue_id: str | None = None


@dataclass(slots=True)
class ExecutionView:
    """Readable execution record."""

    execution_id: str
    issue_id: str
    status: ExecutionStatus
    provider: str
    command: str
    llm_response: str | None
    error: str | None
    attempt_no: int
    started_at: datetime
    completed_at: datetime | None
    heartbeat_at: datetime | None = None


@dataclass(slots=True)
class IssueView:
    """Issue with its most recent executions, newest first."""

    issue_id: str
    title: str
    status: IssueStatus
    domain: str | None
    created_at: datetime
    updated_at: datetime
    recent_executions: list[ExecutionView] = field(default_factory=list)


@dataclass(slots=True)
class ExecutionCreate:
    """Input payload for a new execution attempt."""

    issue_id: str
    command: str
    provider: str = "system"
    attempt_no: int = 0


@dataclass(frozen=True, slots=True)
class RunningTaskView:
    """Immutable snapshot of a registry entry; never carries the process handle."""

    issue_id: str
    execution_id: str | None
    domain: str | None
    started_at: datetime


@dataclass(slots=True)
class RunningSnapshot:
    tasks: list[RunningTaskView]
    domains: set[str]


@dataclass(slots=True)
class ExecuteResult:
    """Accepted execution request."""

    issue_id: str
    execution_id: str
    status: ExecutionStatus
    domain: str | None
    previous_executions: int


@dataclass(slots=True)
class TaskStatusView:
    issue_id: str
    issue_status: IssueStatus
    is_running: bool
    latest_execution: ExecutionView | None
