"""Subprocess runner for one execution attempt."""

from __future__ import annotations

import codecs
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO

from issue_executor.config import EngineSettings
from issue_executor.log_stream import LiveExecutionLog, LogStreamPublisher, StreamKind
from issue_executor.models import ExecutionStatus, ExecutionView, FailureKind
from issue_executor.registry import RunningTask, TaskRegistry, signal_process
from issue_executor.repository import ExecutionStore, call_store
from issue_executor.storage.common import utc_now

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 4096
_POLL_SECONDS = 0.1
_READER_JOIN_SECONDS = 5.0
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


@dataclass(slots=True)
class AttemptRequest:
    """Inputs required to execute one attempt."""

    issue_id: str
    execution: ExecutionView
    command: str
    attempt_no: int = 0
    failure_context: str = ""

    @property
    def execution_id(self) -> str:
        return self.execution.execution_id


@dataclass(slots=True)
class AttemptOutcome:
    """Execution outcome of one attempt."""

    execution_id: str
    status: ExecutionStatus
    exit_code: int | None
    failure_kind: FailureKind | None
    stdout: str
    stderr: str
    error: str | None

    @property
    def succeeded(self) -> bool:
        return self.status is ExecutionStatus.SUCCESS


class ProcessRunner:
    """Spawns a shell command, streams its output and records the terminal status."""

    def __init__(
        self,
        *,
        store: ExecutionStore,
        registry: TaskRegistry,
        publisher: LogStreamPublisher,
        settings: EngineSettings,
    ) -> None:
        self.store = store
        self.registry = registry
        self.publisher = publisher
        self.settings = settings

    def run(self, task: RunningTask, request: AttemptRequest) -> AttemptOutcome:
        """Run the attempt to completion; never raises for process-level failures."""

        live = self.publisher.open(request.execution)
        logger.info(
            "Executing task %s (domain: %s, attempt: %d): %s",
            request.issue_id,
            task.domain or "none",
            request.attempt_no,
            request.command,
        )
        if self.registry.is_cancelled(task):
            return self._finish(task, request, live, exit_code=None, failure_kind=None)

        try:
            process = subprocess.Popen(  # noqa: S602
                request.command,
                shell=True,
                cwd=str(self.settings.workdir) if self.settings.workdir is not None else None,
                env=self._build_env(request),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        except OSError as error:
            logger.error("Process error for %s: %s", request.issue_id, error)
            return self._finish(
                task,
                request,
                live,
                exit_code=None,
                failure_kind=FailureKind.SPAWN,
                reason=f"Process error: {error}",
            )

        _close_stdin(process)
        if not self.registry.attach_process(task, process):
            signal_process(process)
        logger.info("Process %s spawned for %s", process.pid, request.issue_id)

        readers = [
            self._start_reader(process.stdout, StreamKind.STDOUT, request, live),
            self._start_reader(process.stderr, StreamKind.STDERR, request, live),
        ]
        exit_code, timed_out = self._wait(task, process, request)
        for reader in readers:
            reader.join(timeout=_READER_JOIN_SECONDS)

        if timed_out:
            return self._finish(
                task,
                request,
                live,
                exit_code=exit_code,
                failure_kind=FailureKind.TIMEOUT,
                reason=f"Process timed out after {self.settings.timeout_seconds:g} seconds",
            )
        if exit_code == 0:
            return self._finish(task, request, live, exit_code=exit_code, failure_kind=None)
        reason = None if live.text(StreamKind.STDERR) else f"Process exited with code {exit_code}"
        return self._finish(
            task,
            request,
            live,
            exit_code=exit_code,
            failure_kind=FailureKind.RUNTIME,
            reason=reason,
        )

    def _build_env(self, request: AttemptRequest) -> dict[str, str]:
        env = os.environ.copy()
        env["ISSUE_ID"] = request.issue_id
        env["EXECUTION_ID"] = request.execution_id
        env["API_BASE_URL"] = self.settings.api_base_url
        env["RETRY_ATTEMPT"] = str(request.attempt_no)
        if request.failure_context:
            env["PREVIOUS_FAILURES"] = request.failure_context
        else:
            env.pop("PREVIOUS_FAILURES", None)
        return env

    def _wait(
        self,
        task: RunningTask,
        process: subprocess.Popen[bytes],
        request: AttemptRequest,
    ) -> tuple[int, bool]:
        started = time.monotonic()
        deadline = started + self.settings.timeout_seconds
        next_heartbeat = started + self.settings.heartbeat_interval_seconds
        grace = self.settings.terminate_grace_seconds
        timed_out = False
        kill_at: float | None = None
        killed = False

        while True:
            try:
                return process.wait(timeout=_POLL_SECONDS), timed_out
            except subprocess.TimeoutExpired:
                pass
            now = time.monotonic()

            if now >= next_heartbeat:
                call_store(
                    "refresh heartbeat",
                    request.execution_id,
                    self.store.touch_execution,
                    request.execution_id,
                )
                next_heartbeat = now + self.settings.heartbeat_interval_seconds

            if not timed_out and now >= deadline:
                timed_out = True
                logger.warning(
                    "Task %s timed out after %gs - terminating process",
                    task.issue_id,
                    self.settings.timeout_seconds,
                )
                signal_process(process)
                kill_at = now + grace
            elif kill_at is None and self.registry.is_cancelled(task):
                kill_at = now + grace

            if kill_at is not None and now >= kill_at and not killed:
                logger.warning("Task %s ignored SIGTERM - killing process", task.issue_id)
                signal_process(process, sig=_SIGKILL)
                killed = True

    def _start_reader(
        self,
        stream: IO[bytes] | None,
        kind: StreamKind,
        request: AttemptRequest,
        live: LiveExecutionLog,
    ) -> threading.Thread:
        reader = threading.Thread(
            target=self._pump,
            args=(stream, kind, request, live),
            daemon=True,
            name=f"{kind.value}-{request.execution_id[:8]}",
        )
        reader.start()
        return reader

    def _pump(
        self,
        stream: IO[bytes] | None,
        kind: StreamKind,
        request: AttemptRequest,
        live: LiveExecutionLog,
    ) -> None:
        """Forward one pipe to the live log; the stored copy trails it by at most one interval."""

        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        flush_interval = self.settings.output_flush_interval_seconds
        next_flush = 0.0
        dirty = False
        try:
            while True:
                chunk = stream.read1(_CHUNK_SIZE)  # type: ignore[attr-defined]
                if not chunk:
                    break
                if not self._publish(kind, decoder.decode(chunk), request, live):
                    continue
                dirty = True
                now = time.monotonic()
                if now >= next_flush:
                    self._flush(kind, request, live)
                    dirty = False
                    next_flush = now + flush_interval
            if self._publish(kind, decoder.decode(b"", final=True), request, live):
                dirty = True
        except (OSError, ValueError) as error:
            logger.warning(
                "Stopped reading %s of execution %s: %s",
                kind.value,
                request.execution_id,
                error,
            )
        finally:
            stream.close()
            if dirty:
                self._flush(kind, request, live)

    def _publish(
        self,
        kind: StreamKind,
        text: str,
        request: AttemptRequest,
        live: LiveExecutionLog,
    ) -> bool:
        if not text:
            return False
        logger.debug("%s (%s): %s", kind.value, request.issue_id, text)
        return live.append(kind, text)

    def _flush(self, kind: StreamKind, request: AttemptRequest, live: LiveExecutionLog) -> None:
        accumulated = live.text(kind)
        if kind is StreamKind.STDOUT:
            call_store(
                "update output",
                request.execution_id,
                self.store.update_execution,
                request.execution_id,
                llm_response=accumulated,
            )
        else:
            call_store(
                "update error",
                request.execution_id,
                self.store.update_execution,
                request.execution_id,
                error=accumulated,
            )

    def _finish(  # noqa: PLR0913
        self,
        task: RunningTask,
        request: AttemptRequest,
        live: LiveExecutionLog,
        *,
        exit_code: int | None,
        failure_kind: FailureKind | None,
        reason: str | None = None,
    ) -> AttemptOutcome:
        if not self.registry.release(task.issue_id, expected=task):
            # A canceller removed the entry first; its terminal write wins and the
            # writes below are no-ops unless it had no execution to write to.
            failure_kind = FailureKind.CANCELLED
            reason = task.cancel_reason or "Cancelled"
        if reason:
            live.append_line(StreamKind.STDERR, reason)

        stdout = live.text(StreamKind.STDOUT)
        stderr = live.text(StreamKind.STDERR)
        status = ExecutionStatus.SUCCESS if failure_kind is None else ExecutionStatus.FAILED
        completed_at = utc_now()
        call_store(
            "record terminal status",
            request.execution_id,
            self.store.finish_execution,
            request.execution_id,
            status=status,
            llm_response=stdout or stderr,
            error=stderr or None,
            completed_at=completed_at,
        )
        self.publisher.close(request.execution_id, status=status, completed_at=completed_at)

        logger.info(
            "Task %s finished with code %s (%s); output length: %d, error length: %d",
            request.issue_id,
            exit_code,
            status.value,
            len(stdout),
            len(stderr),
        )
        return AttemptOutcome(
            execution_id=request.execution_id,
            status=status,
            exit_code=exit_code,
            failure_kind=failure_kind,
            stdout=stdout,
            stderr=stderr,
            error=stderr or None,
        )


def _close_stdin(process: subprocess.Popen[bytes]) -> None:
    if process.stdin is None:
        return
    try:
        process.stdin.close()
    except OSError:
        return
