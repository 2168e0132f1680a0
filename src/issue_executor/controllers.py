"""Controllers for issue-executor CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from issue_executor.config import Settings
from issue_executor.engine import ExecutionEngine
from issue_executor.errors import IssueNotFoundError
from issue_executor.log_stream import LogEvent, LogEventType
from issue_executor.models import (
    ExecutionStatus,
    ExecutionView,
    IssueCreate,
    IssueStatus,
    IssueView,
)
from issue_executor.repository import ExecutionRepository

Emit = Callable[[str, bool], None]

_PREVIEW_CHARS = 200


@dataclass(slots=True)
class IssueCreateCommand:
    """CLI input for issue creation."""

    db_path: Path | None
    title: str
    domain: str | None


@dataclass(slots=True)
class IssueListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class IssueRefCommand:
    """CLI input for commands addressing one issue."""

    db_path: Path | None
    issue_id: str


@dataclass(slots=True)
class TaskRunCommand:
    """CLI input for running a command against an issue."""

    db_path: Path | None
    issue_id: str
    command: str
    provider: str
    max_retries: int | None
    follow: bool
    timeout_seconds: float | None = None


@dataclass(slots=True)
class TaskReconcileCommand:
    db_path: Path | None


@dataclass(slots=True)
class ExecutionListCommand:
    db_path: Path | None
    issue_id: str | None
    limit: int


@dataclass(slots=True)
class ExecutionShowCommand:
    db_path: Path | None
    execution_id: str


@dataclass(slots=True)
class TaskRunResult:
    """Summary lines plus whether the final attempt succeeded."""

    lines: list[str]
    success: bool


class ExecutorCliController:
    """Coordinates issue, task and execution CLI operations."""

    def create_issue(self, command: IssueCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            issue = repository.create_issue(
                IssueCreate(title=command.title, domain=command.domain),
            )
        return [
            f"Issue created: issue_id={issue.issue_id} status={issue.status.value} "
            f"domain={issue.domain or '-'}",
        ]

    def list_issues(self, command: IssueListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_issue_status(command.status)
        with _repository(settings) as repository:
            issues = repository.list_issues(status=status_filter, limit=command.limit)

        lines = [f"Issues: {len(issues)}"]
        for issue in issues:
            lines.append(
                f"  {issue.issue_id} status={issue.status.value} "
                f"domain={issue.domain or '-'} title={issue.title}",
            )
        return lines

    def show_issue(self, command: IssueRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            issue = repository.get_issue(
                command.issue_id,
                recent_limit=settings.engine.recent_executions_limit,
            )
        if issue is None:
            return [f"Issue not found: {command.issue_id}"]
        return _issue_lines(issue)

    def delete_issue(self, command: IssueRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository, _engine(repository, settings) as engine:
            killed = engine.force_kill(command.issue_id)
            if not killed and engine.held_elsewhere(command.issue_id):
                return [
                    f"Issue {command.issue_id} has a task running in another executor "
                    "process; cancel it there first.",
                ]
            deleted = repository.delete_issue(command.issue_id)
        if not deleted:
            return [f"Issue not found: {command.issue_id}"]
        lines = [f"Issue deleted: {command.issue_id}"]
        if killed:
            lines.append("Running task was terminated.")
        return lines

    def run_task(self, command: TaskRunCommand, *, emit: Emit) -> TaskRunResult:
        """Execute a command for an issue and wait for its retry loop to finish."""

        settings = _settings(command.db_path)
        if command.timeout_seconds is not None:
            settings.engine.timeout_seconds = command.timeout_seconds
            settings.validate()

        with _repository(settings) as repository, _engine(repository, settings) as engine:
            if settings.engine.reconcile_on_startup:
                reconciled = engine.reconcile()
                if reconciled:
                    emit(f"Reconciled {len(reconciled)} interrupted execution(s).\n", True)

            started = engine.execute(
                command.issue_id,
                command.command,
                provider=command.provider,
                max_retries=command.max_retries,
            )
            emit(
                f"Task started: issue_id={started.issue_id} "
                f"execution_id={started.execution_id} domain={started.domain or '-'} "
                f"previous_executions={started.previous_executions}\n",
                False,
            )
            if command.follow:
                for event in engine.follow(command.issue_id):
                    _render_event(event, emit)
            engine.wait_idle()

            issue = repository.get_issue(command.issue_id, recent_limit=1)
            latest = repository.latest_execution(command.issue_id)

        if latest is None:
            return TaskRunResult(lines=["No execution recorded."], success=False)
        lines = [
            f"Final execution: {latest.execution_id} status={latest.status.value} "
            f"attempt={latest.attempt_no}",
        ]
        if issue is not None:
            lines.append(f"Issue status: {issue.status.value}")
        return TaskRunResult(lines=lines, success=latest.status is ExecutionStatus.SUCCESS)

    def task_status(self, command: IssueRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository, _engine(repository, settings) as engine:
            try:
                view = engine.status(command.issue_id)
            except IssueNotFoundError:
                return [f"Issue not found: {command.issue_id}"]

        lines = [
            f"Issue: {view.issue_id}",
            f"Issue status: {view.issue_status.value}",
            f"Running: {'yes' if view.is_running else 'no'}",
        ]
        if view.latest_execution is None:
            lines.append("Latest execution: -")
        else:
            lines.append(f"Latest execution: {_execution_summary(view.latest_execution)}")
        return lines

    def reconcile(self, command: TaskReconcileCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository, _engine(repository, settings) as engine:
            failed = engine.reconcile()
        lines = [f"Reconciled executions: {len(failed)}"]
        lines.extend(f"  {execution_id}" for execution_id in failed)
        return lines

    def list_executions(self, command: ExecutionListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            executions = repository.list_executions(issue_id=command.issue_id, limit=command.limit)

        lines = [f"Executions: {len(executions)}"]
        lines.extend(f"  {_execution_summary(execution)}" for execution in executions)
        return lines

    def show_execution(self, command: ExecutionShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            execution = repository.get_execution(command.execution_id)
        if execution is None:
            return [f"Execution not found: {command.execution_id}"]

        completed = execution.completed_at.isoformat() if execution.completed_at else "-"
        return [
            f"Execution: {execution.execution_id}",
            f"Issue: {execution.issue_id}",
            f"Status: {execution.status.value}",
            f"Provider: {execution.provider}",
            f"Attempt: {execution.attempt_no}",
            f"Command: {execution.command}",
            f"Started: {execution.started_at.isoformat()}",
            f"Completed: {completed}",
            "Output:",
            execution.llm_response or "-",
            "Error:",
            execution.error or "-",
        ]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[ExecutionRepository]:
    repository = ExecutionRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.engine.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _engine(repository: ExecutionRepository, settings: Settings) -> Iterator[ExecutionEngine]:
    engine = ExecutionEngine(store=repository, settings=settings.engine)
    try:
        yield engine
    finally:
        engine.shutdown()


def _render_event(event: LogEvent, emit: Emit) -> None:
    if event.type is LogEventType.INIT:
        execution = event.execution
        attempt = execution.attempt_no if execution is not None else "?"
        emit(f"--- execution {event.execution_id} (attempt {attempt}) ---\n", True)
    elif event.type is LogEventType.OUTPUT and event.data:
        emit(event.data, False)
    elif event.type is LogEventType.ERROR and event.data:
        emit(event.data, True)
    elif event.type is LogEventType.COMPLETE:
        status = event.status.value if event.status is not None else "-"
        emit(f"--- execution {event.execution_id} finished: {status} ---\n", True)


def _parse_issue_status(value: str | None) -> IssueStatus | None:
    if value is None:
        return None
    return IssueStatus(value.strip().upper())


def _issue_lines(issue: IssueView) -> list[str]:
    lines = [
        f"Issue: {issue.issue_id}",
        f"Title: {issue.title}",
        f"Status: {issue.status.value}",
        f"Domain: {issue.domain or '-'}",
        f"Created: {issue.created_at.isoformat()}",
        f"Recent executions: {len(issue.recent_executions)}",
    ]
    lines.extend(f"  {_execution_summary(execution)}" for execution in issue.recent_executions)
    return lines


def _execution_summary(execution: ExecutionView) -> str:
    error = (execution.error or "").strip().replace("\n", " ")
    if len(error) > _PREVIEW_CHARS:
        error = error[:_PREVIEW_CHARS] + "..."
    return (
        f"{execution.execution_id} issue={execution.issue_id} "
        f"status={execution.status.value} attempt={execution.attempt_no} "
        f"started_at={execution.started_at.isoformat()} error={error or '-'}"
    )
