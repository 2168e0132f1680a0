"""Execution record store backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, TypeVar
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from issue_executor.models import (
    ExecutionCreate,
    ExecutionStatus,
    ExecutionView,
    IssueCreate,
    IssueStatus,
    IssueView,
    RunningTaskView,
)
from issue_executor.storage.alembic_runner import upgrade_head
from issue_executor.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from issue_executor.storage.sqlmodel_models import Execution, Issue

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class ExecutionStore(Protocol):
    """Store operations the engine consumes from the surrounding system."""

    def get_issue(self, issue_id: str, *, recent_limit: int = 5) -> IssueView | None:
        """Return the issue with its most recent executions, newest first."""

    def set_issue_status(self, issue_id: str, status: IssueStatus) -> bool:
        """Overwrite issue status."""

    def create_execution(self, payload: ExecutionCreate) -> ExecutionView:
        """Create a RUNNING execution record."""

    def update_execution(
        self,
        execution_id: str,
        *,
        llm_response: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Replace accumulated text of a RUNNING execution."""

    def finish_execution(
        self,
        execution_id: str,
        *,
        status: ExecutionStatus,
        llm_response: str | None,
        error: str | None,
        completed_at: datetime | None = None,
    ) -> bool:
        """Write the single terminal status of an execution."""

    def get_execution(self, execution_id: str) -> ExecutionView | None:
        """Return one execution record."""

    def latest_execution(self, issue_id: str) -> ExecutionView | None:
        """Return the most recently started execution of an issue."""

    def touch_execution(self, execution_id: str, *, at: datetime | None = None) -> bool:
        """Refresh the heartbeat of a RUNNING execution."""

    def live_executions(self, *, fresh_after: datetime) -> list[RunningTaskView]:
        """RUNNING executions whose heartbeat is newer than ``fresh_after``."""

    def fail_orphaned_executions(
        self,
        *,
        reason: str,
        keep_execution_ids: Iterable[str] = (),
        stale_before: datetime | None = None,
    ) -> list[str]:
        """Mark RUNNING executions without a live owner as FAILED."""


class ExecutionRepository:
    """Issue and execution persistence facade."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> bool:
        """Run schema migrations; False when the schema was already current."""

        return upgrade_head(self.db_path, engine=self.engine)

    # -- issues ----------------------------------------------------------------

    def create_issue(self, payload: IssueCreate) -> IssueView:
        now = utc_now()
        issue_id = payload.issue_id or str(uuid4())
        with Session(self.engine) as session:
            row = Issue(
                issue_id=issue_id,
                title=payload.title,
                status=payload.status.value,
                domain=_normalize_domain(payload.domain),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_issue_view(row, executions=[])

    def get_issue(self, issue_id: str, *, recent_limit: int = 5) -> IssueView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Issue).where(Issue.issue_id == issue_id)).one_or_none()
            if row is None:
                return None
            executions = session.exec(
                select(Execution)
                .where(Execution.issue_id == issue_id)
                .order_by(col(Execution.started_at).desc(), col(Execution.attempt_no).desc())
                .limit(recent_limit),
            ).all()
            return _to_issue_view(row, executions=[_to_execution_view(item) for item in executions])

    def list_issues(self, *, status: IssueStatus | None = None, limit: int = 50) -> list[IssueView]:
        with Session(self.engine) as session:
            statement = select(Issue).order_by(col(Issue.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Issue.status == status.value)
            rows = session.exec(statement).all()
            return [_to_issue_view(row, executions=[]) for row in rows]

    def set_issue_status(self, issue_id: str, status: IssueStatus) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Issue)
                .where(col(Issue.issue_id) == issue_id)
                .values(status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def delete_issue(self, issue_id: str) -> bool:
        """Delete an issue; executions cascade."""

        with Session(self.engine) as session:
            result = session.exec(sa_delete(Issue).where(col(Issue.issue_id) == issue_id))
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- executions ------------------------------------------------------------

    def create_execution(self, payload: ExecutionCreate) -> ExecutionView:
        now = utc_now()
        with Session(self.engine) as session:
            row = Execution(
                execution_id=str(uuid4()),
                issue_id=payload.issue_id,
                status=ExecutionStatus.RUNNING.value,
                provider=payload.provider,
                command=payload.command,
                attempt_no=payload.attempt_no,
                started_at=now,
                heartbeat_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_execution_view(row)

    def update_execution(
        self,
        execution_id: str,
        *,
        llm_response: str | None = None,
        error: str | None = None,
    ) -> bool:
        values: dict[str, object] = {}
        if llm_response is not None:
            values["llm_response"] = llm_response
        if error is not None:
            values["error"] = error
        if not values:
            return False
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status) == ExecutionStatus.RUNNING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def finish_execution(
        self,
        execution_id: str,
        *,
        status: ExecutionStatus,
        llm_response: str | None,
        error: str | None,
        completed_at: datetime | None = None,
    ) -> bool:
        if not status.is_terminal:
            raise ValueError(f"Unsupported terminal status: {status}")

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status) == ExecutionStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    llm_response=llm_response,
                    error=error,
                    completed_at=to_db_datetime(completed_at or utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get_execution(self, execution_id: str) -> ExecutionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Execution).where(Execution.execution_id == execution_id),
            ).one_or_none()
            return _to_execution_view(row) if row is not None else None

    def latest_execution(self, issue_id: str) -> ExecutionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Execution)
                .where(Execution.issue_id == issue_id)
                .order_by(col(Execution.started_at).desc(), col(Execution.attempt_no).desc())
                .limit(1),
            ).one_or_none()
            return _to_execution_view(row) if row is not None else None

    def list_executions(
        self,
        *,
        issue_id: str | None = None,
        limit: int = 50,
    ) -> list[ExecutionView]:
        with Session(self.engine) as session:
            statement = (
                select(Execution)
                .order_by(col(Execution.started_at).desc(), col(Execution.attempt_no).desc())
                .limit(limit)
            )
            if issue_id is not None:
                statement = statement.where(Execution.issue_id == issue_id)
            rows = session.exec(statement).all()
            return [_to_execution_view(row) for row in rows]

    def touch_execution(self, execution_id: str, *, at: datetime | None = None) -> bool:
        """Refresh the heartbeat of a RUNNING execution; False once it is terminal."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status) == ExecutionStatus.RUNNING.value,
                )
                .values(heartbeat_at=to_db_datetime(at or utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def live_executions(self, *, fresh_after: datetime) -> list[RunningTaskView]:
        """RUNNING executions whose heartbeat is newer than ``fresh_after``, with domains."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Execution, Issue)
                .join(Issue, col(Issue.issue_id) == col(Execution.issue_id))
                .where(
                    Execution.status == ExecutionStatus.RUNNING.value,
                    _heartbeat_column() >= to_db_datetime(fresh_after),
                )
                .order_by(col(Execution.started_at)),
            ).all()
            return [
                RunningTaskView(
                    issue_id=execution.issue_id,
                    execution_id=execution.execution_id,
                    domain=issue.domain,
                    started_at=to_utc_aware_datetime(execution.started_at),
                )
                for execution, issue in rows
            ]

    def fail_orphaned_executions(
        self,
        *,
        reason: str,
        keep_execution_ids: Iterable[str] = (),
        stale_before: datetime | None = None,
    ) -> list[str]:
        """Fail RUNNING rows outside ``keep_execution_ids``.

        With ``stale_before`` only rows whose heartbeat is older than it are reclaimed, so
        executions still refreshed by another executor process are left alone.
        """

        keep = set(keep_execution_ids)
        now = to_db_datetime(utc_now())
        conditions = [col(Execution.status) == ExecutionStatus.RUNNING.value]
        if stale_before is not None:
            conditions.append(_heartbeat_column() < to_db_datetime(stale_before))
        failed: list[str] = []
        with Session(self.engine) as session:
            rows = session.exec(select(Execution).where(*conditions)).all()
            for row in rows:
                if row.execution_id in keep:
                    continue
                result = session.exec(
                    sa_update(Execution)
                    .where(col(Execution.execution_id) == row.execution_id, *conditions)
                    .values(
                        status=ExecutionStatus.FAILED.value,
                        error=_append_line(row.error, reason),
                        completed_at=now,
                        heartbeat_at=now,
                    ),
                )
                if result.rowcount != 1:
                    continue
                session.exec(
                    sa_update(Issue)
                    .where(
                        col(Issue.issue_id) == row.issue_id,
                        col(Issue.status) == IssueStatus.IN_PROGRESS.value,
                    )
                    .values(status=IssueStatus.PENDING.value, updated_at=now),
                )
                if stale_before is not None:
                    logger.warning(
                        "Recovered stale running execution (execution_id=%s heartbeat_at=%s).",
                        row.execution_id,
                        to_utc_aware_datetime(row.heartbeat_at or row.started_at).isoformat(),
                    )
                failed.append(row.execution_id)
            session.commit()
        return failed


def _heartbeat_column() -> Any:
    return func.coalesce(col(Execution.heartbeat_at), col(Execution.started_at))


def _append_line(existing: str | None, line: str) -> str:
    if not existing:
        return line
    return f"{existing.rstrip()}\n{line}"


def _normalize_domain(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _to_execution_view(row: Execution) -> ExecutionView:
    return ExecutionView(
        execution_id=row.execution_id,
        issue_id=row.issue_id,
        status=ExecutionStatus(row.status),
        provider=row.provider,
        command=row.command,
        llm_response=row.llm_response,
        error=row.error,
        attempt_no=row.attempt_no,
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        heartbeat_at=(
            to_utc_aware_datetime(row.heartbeat_at) if row.heartbeat_at is not None else None
        ),
    )


def _to_issue_view(row: Issue, *, executions: list[ExecutionView]) -> IssueView:
    return IssueView(
        issue_id=row.issue_id,
        title=row.title,
        status=IssueStatus(row.status),
        domain=row.domain,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        recent_executions=executions,
    )


def call_store(
    action: str,
    subject: str,
    fn: Callable[..., _T],
    *args: Any,
    **kwargs: Any,
) -> _T | None:
    """Run a store call from a background path; failures are logged, never raised."""

    try:
        return fn(*args, **kwargs)
    except Exception:  # noqa: BLE001
        logger.exception("Failed to %s for %s", action, subject)
        return None
