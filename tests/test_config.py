from __future__ import annotations

from pathlib import Path

import allure
import pytest

from issue_executor.config import EngineSettings, Settings

pytestmark = [
    allure.epic("Task Execution Engine"),
    allure.feature("Configuration"),
]

_ENV_NAMES = (
    "ISSUE_EXECUTOR_DB_PATH",
    "ISSUE_EXECUTOR_LOG_LEVEL",
    "ISSUE_EXECUTOR_TIMEOUT_SECONDS",
    "ISSUE_EXECUTOR_RETRY_BACKOFF_SECONDS",
    "ISSUE_EXECUTOR_MAX_RETRIES",
    "ISSUE_EXECUTOR_STREAM_POLL_SECONDS",
    "ISSUE_EXECUTOR_API_BASE_URL",
    "ISSUE_EXECUTOR_WORKDIR",
    "ISSUE_EXECUTOR_RECONCILE_ON_STARTUP",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_engine_contract() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".issue_executor.db")
    assert settings.log_level == "INFO"
    assert settings.engine == EngineSettings()
    assert settings.engine.timeout_seconds == 600.0
    assert settings.engine.retry_backoff_seconds == 2.0
    assert settings.engine.default_max_retries == 3
    assert settings.engine.api_base_url == "http://localhost:3001"
    assert settings.engine.recent_executions_limit == 5
    settings.validate()


def test_environment_overrides_are_applied(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("ISSUE_EXECUTOR_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("ISSUE_EXECUTOR_LOG_LEVEL", "debug")
    monkeypatch.setenv("ISSUE_EXECUTOR_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("ISSUE_EXECUTOR_MAX_RETRIES", "0")
    monkeypatch.setenv("ISSUE_EXECUTOR_WORKDIR", str(tmp_path))
    monkeypatch.setenv("ISSUE_EXECUTOR_RECONCILE_ON_STARTUP", "off")
    monkeypatch.setenv("ISSUE_EXECUTOR_HEARTBEAT_SECONDS", "2")
    monkeypatch.setenv("ISSUE_EXECUTOR_STALE_EXECUTION_SECONDS", "12")
    monkeypatch.setenv("ISSUE_EXECUTOR_OUTPUT_FLUSH_SECONDS", "0.25")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.log_level == "DEBUG"
    assert settings.engine.timeout_seconds == 30.0
    assert settings.engine.default_max_retries == 0
    assert settings.engine.workdir == tmp_path
    assert settings.engine.reconcile_on_startup is False
    assert settings.engine.heartbeat_interval_seconds == 2.0
    assert settings.engine.stale_execution_seconds == 12.0
    assert settings.engine.output_flush_interval_seconds == 0.25
    settings.validate()


def test_explicit_db_path_wins_over_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("ISSUE_EXECUTOR_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ISSUE_EXECUTOR_RECONCILE_ON_STARTUP", "sometimes")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("engine", "message"),
    [
        (EngineSettings(timeout_seconds=0), "TIMEOUT_SECONDS"),
        (EngineSettings(retry_backoff_seconds=-1), "RETRY_BACKOFF_SECONDS"),
        (EngineSettings(default_max_retries=-1), "MAX_RETRIES"),
        (EngineSettings(stream_poll_interval_seconds=0), "STREAM_POLL_SECONDS"),
        (EngineSettings(api_base_url="localhost:3001"), "Invalid ISSUE_EXECUTOR_API_BASE_URL"),
        (EngineSettings(workdir=Path("/definitely/not/here")), "WORKDIR"),
        (EngineSettings(heartbeat_interval_seconds=0), "HEARTBEAT_SECONDS"),
        (
            EngineSettings(heartbeat_interval_seconds=10, stale_execution_seconds=10),
            "STALE_EXECUTION_SECONDS",
        ),
        (EngineSettings(output_flush_interval_seconds=-1), "OUTPUT_FLUSH_SECONDS"),
    ],
)
def test_validate_rejects_unusable_values(engine: EngineSettings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        Settings(engine=engine).validate()


def test_validate_rejects_unknown_log_level() -> None:
    with pytest.raises(ValueError, match="ISSUE_EXECUTOR_LOG_LEVEL"):
        Settings(log_level="CHATTY").validate()
