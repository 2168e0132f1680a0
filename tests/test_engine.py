from __future__ import annotations

import dataclasses
from collections.abc import Callable, Iterator
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from issue_executor.config import EngineSettings
from issue_executor.engine import ExecutionEngine
from issue_executor.errors import (
    DomainConflictError,
    ExecutorError,
    IssueNotFoundError,
    TaskAlreadyRunningError,
)
from issue_executor.log_stream import LogEventType
from issue_executor.models import (
    ExecutionCreate,
    ExecutionStatus,
    IssueCreate,
    IssueStatus,
    IssueView,
)
from issue_executor.repository import ExecutionRepository
from issue_executor.storage.common import utc_now

pytestmark = [
    allure.epic("Task Execution Engine"),
    allure.feature("Execution Engine"),
]

_SLEEPER = "import time; print('ready', flush=True); time.sleep(30)"


@pytest.fixture()
def sleeper(py: Callable[[str], str]) -> str:
    return py(_SLEEPER)


def _issue(repository: ExecutionRepository, title: str, domain: str | None = None) -> IssueView:
    return repository.create_issue(IssueCreate(title=title, domain=domain))


def _status(repository: ExecutionRepository, issue_id: str) -> IssueStatus:
    issue = repository.get_issue(issue_id)
    assert issue is not None
    return issue.status


def _wait_ready(
    repository: ExecutionRepository,
    issue_id: str,
    wait_until: Callable[..., bool],
) -> None:
    def _ready() -> bool:
        latest = repository.latest_execution(issue_id)
        return latest is not None and latest.llm_response == "ready\n"

    assert wait_until(_ready)


def test_successful_execution_leaves_issue_in_progress(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    py: Callable[[str], str],
) -> None:
    issue = _issue(repository, "Build", domain="auth")

    result = engine.execute(issue.issue_id, py("print('built')"), provider="ci")

    assert result.status is ExecutionStatus.RUNNING
    assert result.domain == "auth"
    assert result.previous_executions == 0
    assert engine.wait_idle(timeout=30)
    execution = repository.get_execution(result.execution_id)
    assert execution is not None
    assert execution.status is ExecutionStatus.SUCCESS
    assert execution.provider == "ci"
    assert execution.llm_response == "built\n"
    assert execution.attempt_no == 0
    assert _status(repository, issue.issue_id) is IssueStatus.IN_PROGRESS
    assert engine.list_running().tasks == []
    assert engine.list_running().domains == set()


def test_previous_executions_are_reported(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    py: Callable[[str], str],
) -> None:
    issue = _issue(repository, "Rerun")
    engine.execute(issue.issue_id, py("print(1)"))
    assert engine.wait_idle(timeout=30)

    second = engine.execute(issue.issue_id, py("print(2)"))

    assert second.previous_executions == 1
    assert engine.wait_idle(timeout=30)


def test_domain_conflict_rejects_without_side_effects(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    sleeper: str,
    py: Callable[[str], str],
) -> None:
    holder = _issue(repository, "Login page", domain="auth")
    blocked = _issue(repository, "Password reset", domain="auth")
    engine.execute(holder.issue_id, sleeper)

    with pytest.raises(DomainConflictError) as excinfo:
        engine.execute(blocked.issue_id, py("print('never')"))

    assert excinfo.value.holder_issue_id == holder.issue_id
    assert excinfo.value.domain == "auth"
    assert _status(repository, blocked.issue_id) is IssueStatus.TODO
    assert repository.list_executions(issue_id=blocked.issue_id) == []
    snapshot = engine.list_running()
    assert [task.issue_id for task in snapshot.tasks] == [holder.issue_id]
    assert snapshot.domains == {"auth"}


def test_issues_without_domain_run_concurrently(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    sleeper: str,
    wait_until: Callable[..., bool],
) -> None:
    first = _issue(repository, "One")
    second = _issue(repository, "Two")

    engine.execute(first.issue_id, sleeper)
    engine.execute(second.issue_id, sleeper)
    _wait_ready(repository, first.issue_id, wait_until)
    _wait_ready(repository, second.issue_id, wait_until)

    snapshot = engine.list_running()
    assert {task.issue_id for task in snapshot.tasks} == {first.issue_id, second.issue_id}
    assert snapshot.domains == set()
    assert all(task.execution_id for task in snapshot.tasks)


def test_second_request_for_running_issue_is_rejected(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    sleeper: str,
) -> None:
    issue = _issue(repository, "Busy")
    engine.execute(issue.issue_id, sleeper)

    with pytest.raises(TaskAlreadyRunningError):
        engine.execute(issue.issue_id, sleeper)

    assert len(repository.list_executions(issue_id=issue.issue_id)) == 1


def test_invalid_requests_are_rejected(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
) -> None:
    issue = _issue(repository, "Invalid")

    with pytest.raises(IssueNotFoundError):
        engine.execute("missing", "echo hi")
    with pytest.raises(ValueError, match="Command is required"):
        engine.execute(issue.issue_id, "   ")
    with pytest.raises(ValueError, match="max_retries"):
        engine.execute(issue.issue_id, "echo hi", max_retries=-1)

    assert _status(repository, issue.issue_id) is IssueStatus.TODO
    assert repository.list_executions(issue_id=issue.issue_id) == []


def test_cancel_stops_process_and_returns_issue_to_pending(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    sleeper: str,
    wait_until: Callable[..., bool],
) -> None:
    issue = _issue(repository, "Cancel me", domain="billing")
    result = engine.execute(issue.issue_id, sleeper)
    _wait_ready(repository, issue.issue_id, wait_until)

    assert engine.cancel(issue.issue_id) is True
    assert engine.registry.running_domains() == set()
    assert engine.wait_idle(timeout=15)

    execution = repository.get_execution(result.execution_id)
    assert execution is not None
    assert execution.status is ExecutionStatus.FAILED
    assert execution.llm_response == "ready\n"
    assert (execution.error or "").splitlines()[-1] == "Cancelled by user"
    assert _status(repository, issue.issue_id) is IssueStatus.PENDING
    assert len(repository.list_executions(issue_id=issue.issue_id)) == 1
    assert engine.cancel(issue.issue_id) is False


def test_force_kill_keeps_issue_status(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    sleeper: str,
    wait_until: Callable[..., bool],
) -> None:
    issue = _issue(repository, "Kill me")
    result = engine.execute(issue.issue_id, sleeper)
    _wait_ready(repository, issue.issue_id, wait_until)

    assert engine.force_kill(issue.issue_id) is True
    assert engine.force_kill(issue.issue_id) is False
    assert engine.wait_idle(timeout=15)

    execution = repository.get_execution(result.execution_id)
    assert execution is not None
    assert execution.status is ExecutionStatus.FAILED
    assert "Task forcefully terminated" in (execution.error or "")
    assert _status(repository, issue.issue_id) is IssueStatus.IN_PROGRESS
    assert engine.force_kill("never-started") is False


def test_timeout_fails_execution_without_retry(
    repository: ExecutionRepository,
    engine_settings: EngineSettings,
    sleeper: str,
) -> None:
    settings = dataclasses.replace(engine_settings, timeout_seconds=1.0)
    issue = _issue(repository, "Hangs", domain="infra")
    with ExecutionEngine(store=repository, settings=settings) as engine:
        result = engine.execute(issue.issue_id, sleeper, max_retries=3)
        assert engine.wait_idle(timeout=20)

    execution = repository.get_execution(result.execution_id)
    assert execution is not None
    assert execution.status is ExecutionStatus.FAILED
    assert "Process timed out after 1 seconds" in (execution.error or "")
    assert len(repository.list_executions(issue_id=issue.issue_id)) == 1
    assert _status(repository, issue.issue_id) is IssueStatus.PENDING


def test_status_reports_running_and_latest_execution(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    sleeper: str,
) -> None:
    issue = _issue(repository, "Observe")
    idle = engine.status(issue.issue_id)
    assert idle.is_running is False
    assert idle.latest_execution is None

    result = engine.execute(issue.issue_id, sleeper)
    running = engine.status(issue.issue_id)

    assert running.is_running is True
    assert running.issue_status is IssueStatus.IN_PROGRESS
    assert running.latest_execution is not None
    assert running.latest_execution.execution_id == result.execution_id
    with pytest.raises(IssueNotFoundError):
        engine.status("missing")


def test_stream_log_delivers_output_and_single_completion(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    py: Callable[[str], str],
) -> None:
    issue = _issue(repository, "Stream")
    code = "import sys, time\nfor i in range(3):\n    print(i, flush=True)\n    time.sleep(0.1)\n"
    result = engine.execute(issue.issue_id, py(code))

    events = list(engine.stream_log(result.execution_id))

    assert events[0].type is LogEventType.INIT
    output = "".join(event.data or "" for event in events if event.type is LogEventType.OUTPUT)
    assert output == "0\n1\n2\n"
    completes = [event for event in events if event.type is LogEventType.COMPLETE]
    assert len(completes) == 1
    assert completes[0].status is ExecutionStatus.SUCCESS
    assert events[-1] is completes[0]

    replay = list(engine.stream_log(result.execution_id))
    assert [event.type for event in replay] == [
        LogEventType.INIT,
        LogEventType.OUTPUT,
        LogEventType.COMPLETE,
    ]


def test_follow_streams_every_attempt(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    py: Callable[[str], str],
) -> None:
    issue = _issue(repository, "Follow")
    code = (
        "import os, sys\n"
        "if os.environ['RETRY_ATTEMPT'] == '0':\n"
        "    sys.stderr.write('AssertionError: first\\n')\n"
        "    sys.exit(1)\n"
        "print('second')\n"
    )
    engine.execute(issue.issue_id, py(code), max_retries=2)

    events = list(engine.follow(issue.issue_id))

    inits = [event for event in events if event.type is LogEventType.INIT]
    completes = [event for event in events if event.type is LogEventType.COMPLETE]
    assert len(inits) == 2
    assert [event.status for event in completes] == [
        ExecutionStatus.FAILED,
        ExecutionStatus.SUCCESS,
    ]
    assert any(event.data == "second\n" for event in events)


def test_reconcile_fails_only_orphaned_executions(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    sleeper: str,
    wait_until: Callable[..., bool],
) -> None:
    orphan_issue = _issue(repository, "Orphan")
    repository.set_issue_status(orphan_issue.issue_id, IssueStatus.IN_PROGRESS)
    orphan = repository.create_execution(
        ExecutionCreate(issue_id=orphan_issue.issue_id, command="make"),
    )
    repository.touch_execution(orphan.execution_id, at=utc_now() - timedelta(minutes=5))
    live_issue = _issue(repository, "Live")
    live = engine.execute(live_issue.issue_id, sleeper)
    _wait_ready(repository, live_issue.issue_id, wait_until)

    assert engine.reconcile() == [orphan.execution_id]

    stored = repository.get_execution(orphan.execution_id)
    assert stored is not None
    assert stored.status is ExecutionStatus.FAILED
    assert stored.error == "Interrupted: executor restarted while running"
    assert _status(repository, orphan_issue.issue_id) is IssueStatus.PENDING
    still_running = repository.get_execution(live.execution_id)
    assert still_running is not None
    assert still_running.status is ExecutionStatus.RUNNING
    assert engine.reconcile() == []


def test_running_execution_keeps_its_heartbeat_fresh(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    sleeper: str,
    wait_until: Callable[..., bool],
) -> None:
    issue = _issue(repository, "Heartbeat")
    result = engine.execute(issue.issue_id, sleeper)

    def _beating() -> bool:
        stored = repository.get_execution(result.execution_id)
        assert stored is not None and stored.heartbeat_at is not None
        return stored.heartbeat_at >= stored.started_at + timedelta(seconds=0.5)

    assert wait_until(_beating)


@pytest.fixture()
def other_engine(
    db_path: Path,
    repository: ExecutionRepository,
    engine_settings: EngineSettings,
) -> Iterator[ExecutionEngine]:
    """A second engine on the same database file, as a separate CLI process would open it."""

    store = ExecutionRepository(db_path)
    other = ExecutionEngine(store=store, settings=engine_settings)
    try:
        yield other
    finally:
        other.shutdown(timeout=15)
        store.close()


def test_reconcile_leaves_executions_of_another_live_engine_alone(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    other_engine: ExecutionEngine,
    py: Callable[[str], str],
    wait_until: Callable[..., bool],
) -> None:
    issue = _issue(repository, "Shared database", domain="api")
    result = engine.execute(
        issue.issue_id,
        py("import time; print('ready', flush=True); time.sleep(2); print('done')"),
    )
    _wait_ready(repository, issue.issue_id, wait_until)

    assert other_engine.reconcile() == []
    running = repository.get_execution(result.execution_id)
    assert running is not None
    assert running.status is ExecutionStatus.RUNNING
    assert _status(repository, issue.issue_id) is IssueStatus.IN_PROGRESS

    assert engine.wait_idle(timeout=30)
    finished = repository.get_execution(result.execution_id)
    assert finished is not None
    assert finished.status is ExecutionStatus.SUCCESS
    assert finished.llm_response == "ready\ndone\n"


def test_other_engine_sees_task_running_elsewhere(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    other_engine: ExecutionEngine,
    sleeper: str,
    wait_until: Callable[..., bool],
) -> None:
    busy = _issue(repository, "Busy", domain="billing")
    neighbour = _issue(repository, "Neighbour", domain="billing")
    engine.execute(busy.issue_id, sleeper)
    _wait_ready(repository, busy.issue_id, wait_until)

    assert other_engine.status(busy.issue_id).is_running is True
    assert other_engine.held_elsewhere(busy.issue_id) is True
    assert engine.held_elsewhere(busy.issue_id) is False
    with pytest.raises(TaskAlreadyRunningError):
        other_engine.execute(busy.issue_id, "echo again")
    with pytest.raises(DomainConflictError) as conflict:
        other_engine.execute(neighbour.issue_id, "echo neighbour")
    assert conflict.value.holder_issue_id == busy.issue_id

    assert engine.cancel(busy.issue_id) is True
    assert other_engine.status(busy.issue_id).is_running is False
    assert other_engine.held_elsewhere(busy.issue_id) is False


class _BrokenOutputStore(ExecutionRepository):
    def update_execution(self, execution_id: str, **kwargs: object) -> bool:  # type: ignore[override]
        raise RuntimeError("database is locked")


@pytest.fixture()
def broken_engine(
    db_path: Path,
    engine_settings: EngineSettings,
) -> Iterator[tuple[_BrokenOutputStore, ExecutionEngine]]:
    store = _BrokenOutputStore(db_path)
    store.init_schema()
    engine = ExecutionEngine(store=store, settings=engine_settings)
    try:
        yield store, engine
    finally:
        engine.shutdown(timeout=15)
        store.close()


def test_output_persistence_failures_do_not_abort_task(
    broken_engine: tuple[_BrokenOutputStore, ExecutionEngine],
    py: Callable[[str], str],
) -> None:
    store, engine = broken_engine
    issue = _issue(store, "Resilient", domain="db")

    result = engine.execute(issue.issue_id, py("print('still fine')"))
    assert engine.wait_idle(timeout=30)

    execution = store.get_execution(result.execution_id)
    assert execution is not None
    assert execution.status is ExecutionStatus.SUCCESS
    assert execution.llm_response == "still fine\n"
    assert engine.registry.running_domains() == set()


def test_shutdown_cancels_running_tasks_and_refuses_new_ones(
    repository: ExecutionRepository,
    engine_settings: EngineSettings,
    sleeper: str,
    wait_until: Callable[..., bool],
) -> None:
    issue = _issue(repository, "Interrupted")
    engine = ExecutionEngine(store=repository, settings=engine_settings)
    result = engine.execute(issue.issue_id, sleeper)
    _wait_ready(repository, issue.issue_id, wait_until)

    engine.shutdown(timeout=15)

    execution = repository.get_execution(result.execution_id)
    assert execution is not None
    assert execution.status is ExecutionStatus.FAILED
    assert "Engine shutting down" in (execution.error or "")
    assert _status(repository, issue.issue_id) is IssueStatus.PENDING
    with pytest.raises(ExecutorError, match="shut down"):
        engine.execute(issue.issue_id, sleeper)


def test_wait_idle_times_out_while_task_runs(
    repository: ExecutionRepository,
    engine: ExecutionEngine,
    sleeper: str,
) -> None:
    issue = _issue(repository, "Long")
    engine.execute(issue.issue_id, sleeper)

    assert engine.is_active(issue.issue_id)
    assert engine.wait_idle(timeout=0.1) is False
