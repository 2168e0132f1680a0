"""SQLModel ORM tables for issues and their executions."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text
from sqlmodel import Field, SQLModel


class Issue(SQLModel, table=True):
    __tablename__ = "issues"  # type: ignore[bad-override]

    issue_id: str = Field(primary_key=True)
    title: str
    status: str = Field(index=True)
    domain: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Execution(SQLModel, table=True):
    __tablename__ = "executions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_executions_issue_started", "issue_id", "started_at"),
        Index("idx_executions_status", "status"),
    )

    execution_id: str = Field(primary_key=True)
    issue_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("issues.issue_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    status: str
    provider: str = Field(default="system")
    command: str = Field(sa_column=Column(Text, nullable=False))
    llm_response: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    attempt_no: int = Field(default=0)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
