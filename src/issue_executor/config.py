"""Runtime configuration for the execution engine and its store."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class EngineSettings:
    """Process, retry and streaming settings."""

    timeout_seconds: float = 600.0
    retry_backoff_seconds: float = 2.0
    default_max_retries: int = 3
    stream_poll_interval_seconds: float = 0.5
    api_base_url: str = "http://localhost:3001"
    workdir: Path | None = None
    recent_executions_limit: int = 5
    failure_context_attempts: int = 3
    failure_context_chars: int = 500
    terminate_grace_seconds: float = 2.0
    reconcile_on_startup: bool = True
    heartbeat_interval_seconds: float = 5.0
    stale_execution_seconds: float = 30.0
    output_flush_interval_seconds: float = 1.0
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".issue_executor.db")
    log_level: str = "INFO"
    engine: EngineSettings = field(default_factory=EngineSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        workdir_raw = os.getenv("ISSUE_EXECUTOR_WORKDIR", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("ISSUE_EXECUTOR_DB_PATH", ".issue_executor.db")),
            log_level=os.getenv("ISSUE_EXECUTOR_LOG_LEVEL", "INFO").strip().upper(),
            engine=EngineSettings(
                timeout_seconds=float(os.getenv("ISSUE_EXECUTOR_TIMEOUT_SECONDS", "600")),
                retry_backoff_seconds=float(
                    os.getenv("ISSUE_EXECUTOR_RETRY_BACKOFF_SECONDS", "2.0"),
                ),
                default_max_retries=int(os.getenv("ISSUE_EXECUTOR_MAX_RETRIES", "3")),
                stream_poll_interval_seconds=float(
                    os.getenv("ISSUE_EXECUTOR_STREAM_POLL_SECONDS", "0.5"),
                ),
                api_base_url=os.getenv("ISSUE_EXECUTOR_API_BASE_URL", "http://localhost:3001"),
                workdir=Path(workdir_raw) if workdir_raw else None,
                recent_executions_limit=int(
                    os.getenv("ISSUE_EXECUTOR_RECENT_EXECUTIONS_LIMIT", "5"),
                ),
                failure_context_attempts=int(
                    os.getenv("ISSUE_EXECUTOR_FAILURE_CONTEXT_ATTEMPTS", "3"),
                ),
                failure_context_chars=int(
                    os.getenv("ISSUE_EXECUTOR_FAILURE_CONTEXT_CHARS", "500"),
                ),
                terminate_grace_seconds=float(
                    os.getenv("ISSUE_EXECUTOR_TERMINATE_GRACE_SECONDS", "2.0"),
                ),
                reconcile_on_startup=_env_bool(
                    "ISSUE_EXECUTOR_RECONCILE_ON_STARTUP",
                    default=True,
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("ISSUE_EXECUTOR_HEARTBEAT_SECONDS", "5.0"),
                ),
                stale_execution_seconds=float(
                    os.getenv("ISSUE_EXECUTOR_STALE_EXECUTION_SECONDS", "30"),
                ),
                output_flush_interval_seconds=float(
                    os.getenv("ISSUE_EXECUTOR_OUTPUT_FLUSH_SECONDS", "1.0"),
                ),
                sqlite_busy_timeout_ms=int(
                    os.getenv("ISSUE_EXECUTOR_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot honor."""

        engine = self.engine
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"ISSUE_EXECUTOR_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )
        if engine.timeout_seconds <= 0:
            raise ValueError("ISSUE_EXECUTOR_TIMEOUT_SECONDS must be > 0.")
        if engine.retry_backoff_seconds < 0:
            raise ValueError("ISSUE_EXECUTOR_RETRY_BACKOFF_SECONDS must be >= 0.")
        if engine.default_max_retries < 0:
            raise ValueError("ISSUE_EXECUTOR_MAX_RETRIES must be >= 0.")
        if engine.stream_poll_interval_seconds <= 0:
            raise ValueError("ISSUE_EXECUTOR_STREAM_POLL_SECONDS must be > 0.")
        if engine.recent_executions_limit <= 0:
            raise ValueError("ISSUE_EXECUTOR_RECENT_EXECUTIONS_LIMIT must be > 0.")
        if engine.failure_context_attempts < 0 or engine.failure_context_chars < 0:
            raise ValueError("Failure context limits must be >= 0.")
        if engine.terminate_grace_seconds < 0:
            raise ValueError("ISSUE_EXECUTOR_TERMINATE_GRACE_SECONDS must be >= 0.")
        if engine.heartbeat_interval_seconds <= 0:
            raise ValueError("ISSUE_EXECUTOR_HEARTBEAT_SECONDS must be > 0.")
        if engine.stale_execution_seconds <= engine.heartbeat_interval_seconds:
            raise ValueError(
                "ISSUE_EXECUTOR_STALE_EXECUTION_SECONDS must be greater than "
                "ISSUE_EXECUTOR_HEARTBEAT_SECONDS.",
            )
        if engine.output_flush_interval_seconds < 0:
            raise ValueError("ISSUE_EXECUTOR_OUTPUT_FLUSH_SECONDS must be >= 0.")
        if engine.workdir is not None and not engine.workdir.is_dir():
            raise ValueError(f"ISSUE_EXECUTOR_WORKDIR is not a directory: {engine.workdir}")
        _validate_base_url(engine.api_base_url)


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid ISSUE_EXECUTOR_API_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
