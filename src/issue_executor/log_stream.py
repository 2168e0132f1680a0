"""Incremental log delivery for running and finished executions.

Live executions push every appended chunk to subscriber queues. Executions without a
live buffer in this process are served by diffing the stored text on a poll interval.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from issue_executor.errors import ExecutionNotFoundError
from issue_executor.models import ExecutionStatus, ExecutionView
from issue_executor.repository import ExecutionStore

logger = logging.getLogger(__name__)


class LogEventType(str, Enum):
    INIT = "init"
    OUTPUT = "output"
    ERROR = "error"
    COMPLETE = "complete"


class StreamKind(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


_DELTA_EVENT_TYPES = {
    StreamKind.STDOUT: LogEventType.OUTPUT,
    StreamKind.STDERR: LogEventType.ERROR,
}


@dataclass(frozen=True, slots=True)
class LogEvent:
    """One event of an execution log stream."""

    type: LogEventType
    execution_id: str
    data: str | None = None
    status: ExecutionStatus | None = None
    execution: ExecutionView | None = None
    completed_at: datetime | None = None

    def to_payload(self) -> dict[str, object]:
        """Serialize to the JSON shape used by server-sent events."""

        if self.type is LogEventType.INIT:
            execution = self.execution
            return {
                "type": self.type.value,
                "execution": {
                    "id": self.execution_id,
                    "status": self.status.value if self.status else None,
                    "provider": execution.provider if execution else None,
                    "attemptNo": execution.attempt_no if execution else None,
                    "startedAt": execution.started_at.isoformat() if execution else None,
                    "completedAt": _isoformat(self.completed_at),
                },
            }
        if self.type is LogEventType.COMPLETE:
            return {
                "type": self.type.value,
                "status": self.status.value if self.status else None,
                "completedAt": _isoformat(self.completed_at),
            }
        return {"type": self.type.value, "data": self.data}


class LiveExecutionLog:
    """Accumulated stdout/stderr of one running execution plus its subscribers."""

    def __init__(self, execution: ExecutionView) -> None:
        self.execution = execution
        self._lock = threading.Lock()
        self._parts: dict[StreamKind, list[str]] = {kind: [] for kind in StreamKind}
        self._subscribers: list[queue.SimpleQueue[LogEvent]] = []
        self._status = ExecutionStatus.RUNNING
        self._completed_at: datetime | None = None

    @property
    def execution_id(self) -> str:
        return self.execution.execution_id

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._status.is_terminal

    def text(self, kind: StreamKind) -> str:
        with self._lock:
            return self._joined(kind)

    def append(self, kind: StreamKind, chunk: str) -> bool:
        """Append a chunk and fan it out; False once the log is closed."""

        with self._lock:
            return self._push(kind, chunk)

    def append_line(self, kind: StreamKind, line: str) -> bool:
        """Append ``line`` so that it starts and ends a line of its own."""

        with self._lock:
            parts = self._parts[kind]
            if parts and not parts[-1].endswith("\n"):
                line = "\n" + line
            if not line.endswith("\n"):
                line += "\n"
            return self._push(kind, line)

    def _joined(self, kind: StreamKind) -> str:
        parts = self._parts[kind]
        if len(parts) > 1:
            parts[:] = ["".join(parts)]
        return parts[0] if parts else ""

    def _push(self, kind: StreamKind, chunk: str) -> bool:
        if not chunk or self._status.is_terminal:
            return False
        parts = self._parts[kind]
        parts.append(chunk)
        event = LogEvent(
            type=_DELTA_EVENT_TYPES[kind],
            execution_id=self.execution_id,
            data=chunk,
        )
        for subscriber in self._subscribers:
            subscriber.put(event)
        return True

    def complete(self, status: ExecutionStatus, completed_at: datetime) -> bool:
        """Close the log with its terminal status; only the first call wins."""

        with self._lock:
            if self._status.is_terminal:
                return False
            self._status = status
            self._completed_at = completed_at
            event = LogEvent(
                type=LogEventType.COMPLETE,
                execution_id=self.execution_id,
                status=status,
                completed_at=completed_at,
            )
            for subscriber in self._subscribers:
                subscriber.put(event)
            self._subscribers.clear()
            return True

    def attach(self) -> tuple[list[LogEvent], queue.SimpleQueue[LogEvent] | None]:
        """Snapshot current state and register for new events atomically."""

        with self._lock:
            events = [
                LogEvent(
                    type=LogEventType.INIT,
                    execution_id=self.execution_id,
                    status=self._status,
                    execution=self.execution,
                    completed_at=self._completed_at,
                ),
            ]
            for kind in StreamKind:
                backlog = self._joined(kind)
                if backlog:
                    events.append(
                        LogEvent(
                            type=_DELTA_EVENT_TYPES[kind],
                            execution_id=self.execution_id,
                            data=backlog,
                        ),
                    )
            if self._status.is_terminal:
                events.append(
                    LogEvent(
                        type=LogEventType.COMPLETE,
                        execution_id=self.execution_id,
                        status=self._status,
                        completed_at=self._completed_at,
                    ),
                )
                return events, None
            subscriber: queue.SimpleQueue[LogEvent] = queue.SimpleQueue()
            self._subscribers.append(subscriber)
            return events, subscriber

    def detach(self, subscriber: queue.SimpleQueue[LogEvent]) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


class LogStreamPublisher:
    """Registry of live execution logs and the entry point for observers."""

    def __init__(self, *, store: ExecutionStore, poll_interval_seconds: float = 0.5) -> None:
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self._lock = threading.Lock()
        self._live: dict[str, LiveExecutionLog] = {}

    def open(self, execution: ExecutionView) -> LiveExecutionLog:
        with self._lock:
            live = self._live.get(execution.execution_id)
            if live is None:
                live = LiveExecutionLog(execution)
                self._live[execution.execution_id] = live
            return live

    def get(self, execution_id: str) -> LiveExecutionLog | None:
        with self._lock:
            return self._live.get(execution_id)

    def close(
        self,
        execution_id: str,
        *,
        status: ExecutionStatus,
        completed_at: datetime,
    ) -> bool:
        """Publish the terminal event and drop the live buffer."""

        with self._lock:
            live = self._live.pop(execution_id, None)
        if live is None:
            return False
        return live.complete(status, completed_at)

    def subscribe(self, execution_id: str) -> Iterator[LogEvent]:
        """Return a finite event stream: init, deltas, then exactly one complete."""

        live = self.get(execution_id)
        if live is not None:
            return self._stream_live(live)
        execution = self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return self._stream_stored(execution)

    def _stream_live(self, live: LiveExecutionLog) -> Iterator[LogEvent]:
        events, subscriber = live.attach()
        if subscriber is None:
            yield from events
            return
        try:
            yield from events
            while True:
                try:
                    event = subscriber.get(timeout=self.poll_interval_seconds)
                except queue.Empty:
                    continue
                yield event
                if event.type is LogEventType.COMPLETE:
                    return
        finally:
            live.detach(subscriber)

    def _stream_stored(self, execution: ExecutionView) -> Iterator[LogEvent]:
        execution_id = execution.execution_id
        yield LogEvent(
            type=LogEventType.INIT,
            execution_id=execution_id,
            status=execution.status,
            execution=execution,
            completed_at=execution.completed_at,
        )
        sent = {StreamKind.STDOUT: 0, StreamKind.STDERR: 0}
        current: ExecutionView | None = execution
        while current is not None:
            texts = {
                StreamKind.STDOUT: current.llm_response or "",
                StreamKind.STDERR: current.error or "",
            }
            for kind, text in texts.items():
                if len(text) > sent[kind]:
                    yield LogEvent(
                        type=_DELTA_EVENT_TYPES[kind],
                        execution_id=execution_id,
                        data=text[sent[kind] :],
                    )
                    sent[kind] = len(text)
            if current.status.is_terminal:
                yield LogEvent(
                    type=LogEventType.COMPLETE,
                    execution_id=execution_id,
                    status=current.status,
                    completed_at=current.completed_at,
                )
                return
            time.sleep(self.poll_interval_seconds)
            current = self.store.get_execution(execution_id)
        logger.warning("Execution %s disappeared while streaming", execution_id)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
