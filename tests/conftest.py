"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from issue_executor.config import EngineSettings
from issue_executor.engine import ExecutionEngine
from issue_executor.repository import ExecutionRepository


def python_command(code: str) -> str:
    """Shell command running ``code`` with the current interpreter."""

    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def _wait_until(predicate: Callable[[], bool], *, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture()
def py() -> Callable[[str], str]:
    return python_command


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "executor.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[ExecutionRepository]:
    repository = ExecutionRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def engine_settings() -> EngineSettings:
    return EngineSettings(
        timeout_seconds=30.0,
        retry_backoff_seconds=0.0,
        stream_poll_interval_seconds=0.05,
        terminate_grace_seconds=0.5,
        heartbeat_interval_seconds=0.2,
        stale_execution_seconds=5.0,
        output_flush_interval_seconds=0.05,
    )


@pytest.fixture()
def engine(
    repository: ExecutionRepository,
    engine_settings: EngineSettings,
) -> Iterator[ExecutionEngine]:
    engine = ExecutionEngine(store=repository, settings=engine_settings)
    try:
        yield engine
    finally:
        engine.shutdown(timeout=15)


@pytest.fixture()
def wait_until() -> Callable[..., bool]:
    """Poll a predicate until it holds or the timeout elapses."""

    return _wait_until
