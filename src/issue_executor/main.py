"""CLI entrypoint for issue-executor."""

import logging
import os
from pathlib import Path

import rich_click as click

from issue_executor import __version__
from issue_executor.controllers import (
    ExecutionListCommand,
    ExecutionShowCommand,
    ExecutorCliController,
    IssueCreateCommand,
    IssueListCommand,
    IssueRefCommand,
    TaskReconcileCommand,
    TaskRunCommand,
)
from issue_executor.errors import ExecutorError
from issue_executor.models import IssueStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ExecutorCliController()

_LOG_LEVELS = ["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]


@click.group()
@click.version_option(version=__version__, prog_name="issue-executor")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level. Defaults to ISSUE_EXECUTOR_LOG_LEVEL or INFO.",
)
def issue_executor(log_level: str | None) -> None:
    """Run shell commands for tracked issues with domain locking and retries."""

    level = (log_level or os.getenv("ISSUE_EXECUTOR_LOG_LEVEL", "INFO")).strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@issue_executor.group()
def issue() -> None:
    """Issue commands."""


@issue.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--title", required=True, help="Issue title.")
@click.option(
    "--domain",
    default=None,
    help="Domain tag. Issues sharing a domain never run at the same time.",
)
def issue_create(db_path: Path | None, title: str, domain: str | None) -> None:
    """Create an issue in TODO status."""

    _emit_lines(
        CONTROLLER.create_issue(
            IssueCreateCommand(db_path=db_path, title=title, domain=domain),
        ),
    )


@issue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in IssueStatus], case_sensitive=False),
    default=None,
    help="Only list issues in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum number of issues to list.",
)
def issue_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List issues, newest first."""

    _emit_lines(
        CONTROLLER.list_issues(IssueListCommand(db_path=db_path, status=status, limit=limit)),
    )


@issue.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("issue_id")
def issue_show(db_path: Path | None, issue_id: str) -> None:
    """Show one issue with its recent executions."""

    _emit_lines(CONTROLLER.show_issue(IssueRefCommand(db_path=db_path, issue_id=issue_id)))


@issue.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("issue_id")
def issue_delete(db_path: Path | None, issue_id: str) -> None:
    """Delete an issue, terminating its running task first."""

    _emit_lines(CONTROLLER.delete_issue(IssueRefCommand(db_path=db_path, issue_id=issue_id)))


@issue_executor.group()
def task() -> None:
    """Task execution commands."""


@task.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("issue_id")
@click.option("--command", "shell_command", required=True, help="Shell command to execute.")
@click.option("--provider", default="system", show_default=True, help="Provider label.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retry budget. Defaults to ISSUE_EXECUTOR_MAX_RETRIES or 3.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-attempt wall-clock timeout. Defaults to ISSUE_EXECUTOR_TIMEOUT_SECONDS or 600.",
)
@click.option(
    "--follow/--no-follow",
    default=True,
    show_default=True,
    help="Stream output of every attempt while waiting.",
)
def task_run(  # noqa: PLR0913
    db_path: Path | None,
    issue_id: str,
    shell_command: str,
    provider: str,
    max_retries: int | None,
    timeout_seconds: float | None,
    follow: bool,
) -> None:
    """Run a shell command for an issue and wait for it, including retries."""

    try:
        result = CONTROLLER.run_task(
            TaskRunCommand(
                db_path=db_path,
                issue_id=issue_id,
                command=shell_command,
                provider=provider,
                max_retries=max_retries,
                follow=follow,
                timeout_seconds=timeout_seconds,
            ),
            emit=_emit_text,
        )
    except (ExecutorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Task failed.")


@task.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("issue_id")
def task_status(db_path: Path | None, issue_id: str) -> None:
    """Show whether an issue is running and its latest execution."""

    _emit_lines(CONTROLLER.task_status(IssueRefCommand(db_path=db_path, issue_id=issue_id)))


@task.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def task_reconcile(db_path: Path | None) -> None:
    """Fail executions left RUNNING by an executor that is no longer alive."""

    _emit_lines(CONTROLLER.reconcile(TaskReconcileCommand(db_path=db_path)))


@issue_executor.group()
def executions() -> None:
    """Execution history commands."""


@executions.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--issue-id", default=None, help="Only list executions of this issue.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum number of executions to list.",
)
def executions_list(db_path: Path | None, issue_id: str | None, limit: int) -> None:
    """List executions, newest first."""

    _emit_lines(
        CONTROLLER.list_executions(
            ExecutionListCommand(db_path=db_path, issue_id=issue_id, limit=limit),
        ),
    )


@executions.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("execution_id")
def executions_show(db_path: Path | None, execution_id: str) -> None:
    """Show one execution with its captured output and error."""

    _emit_lines(
        CONTROLLER.show_execution(
            ExecutionShowCommand(db_path=db_path, execution_id=execution_id),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


def _emit_text(text: str, err: bool) -> None:
    click.echo(text, nl=False, err=err)


if __name__ == "__main__":  # pragma: no cover
    issue_executor()
