"""SQLModel ORM tables for the finding store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Text, text
from sqlmodel import Field, SQLModel


class Microservice(SQLModel, table=True):
    __tablename__ = "microservices"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    path: str
    document_filename: str | None = None
    document_path: str | None = None
    legacy_path: str | None = None
    excluded: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    last_analysis: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_report: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UseCaseRow(SQLModel, table=True):
    __tablename__ = "usecases"  # type: ignore[bad-override]
    __table_args__ = {"sqlite_autoincrement": True}

    id: int | None = Field(default=None, primary_key=True)
    microservice_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("microservices.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    code: str = ""
    title: str = ""
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    actors: str = Field(default="", sa_column=Column(Text, nullable=False))
    preconditions: str = Field(default="", sa_column=Column(Text, nullable=False))
    main_flow: str = Field(default="", sa_column=Column(Text, nullable=False))
    alternative_flows: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalysisResultRow(SQLModel, table=True):
    __tablename__ = "analysis_results"  # type: ignore[bad-override]
    __table_args__ = {"sqlite_autoincrement": True}

    id: int | None = Field(default=None, primary_key=True)
    microservice_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("microservices.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    # SET NULL: replacing use cases must never take tracker-linked results with it.
    usecase_id: int | None = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("usecases.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    status: str
    confidence: str | None = None
    evidence: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    notes: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    issue_code: str | None = None
    issue_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    jira_issue_key: str | None = Field(default=None, index=True)
    jira_issue_summary: str | None = None
    analyzed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
