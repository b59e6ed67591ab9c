"""SQLAlchemy Core schema for the build record journal."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()

TS = DateTime(timezone=True)

builds = Table(
    "builds",
    metadata,
    Column("request_id", String(32), primary_key=True),
    Column("tenant_id", String(255), nullable=False),
    Column("source_key", String(64), nullable=False),
    Column("variant", String(64), nullable=False),
    Column("state", String(20), nullable=False),
    Column("retry_count", Integer, nullable=False, server_default="0"),
    Column("last_error", Text, nullable=True),
    Column("failure_cause", String(32), nullable=True),
    Column("output_key", String(64), nullable=True),
    Column("worker_id", String(255), nullable=True),
    Column("cancel_requested", Boolean, nullable=False, server_default="0"),
    Column("progress", Integer, nullable=False, server_default="0"),
    Column("message", Text, nullable=False, server_default=""),
    # [[state, iso timestamp], ...] in transition order
    Column("history", JSON, nullable=False),
    Column("submitted_at", TS, nullable=False),
    Column("started_at", TS, nullable=True),
    Column("finished_at", TS, nullable=True),
    Column("available_at", TS, nullable=True),
    Index("ix_builds_state_submitted", "state", "submitted_at"),
    Index("ix_builds_tenant_state", "tenant_id", "state"),
)

__all__ = ["builds", "metadata"]
