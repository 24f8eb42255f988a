"""SQLAlchemy models for the bot builder service."""
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    type_annotation_map = {datetime: DateTime(timezone=True)}


class BuildStatus(enum.Enum):
    running = "Running"
    succeeded = "Succeeded"
    failed = "Failed"
    cancelled = "Cancelled"


class Build(Base):
    __tablename__ = "build"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    bot_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    session_id: Mapped[str] = mapped_column(String, nullable=False)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    environment: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[BuildStatus] = mapped_column(Enum(BuildStatus), nullable=False)
    instruction: Mapped[str] = mapped_column(Text, nullable=False)
    project: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    version_id: Mapped[str | None] = mapped_column(String)
    node_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dependency_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    iterations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warnings: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    unresolved_scripts: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    residual_defects: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    failed_rows: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    timings_ms: Mapped[dict[str, int]] = mapped_column(JSON, nullable=False, default=dict)
    preview_url: Mapped[str | None] = mapped_column(String)
    preview_id: Mapped[str | None] = mapped_column(String)
    export_url: Mapped[str | None] = mapped_column(String)
    export_id: Mapped[str | None] = mapped_column(String)
    error: Mapped[str | None] = mapped_column(Text)
    graph_ref: Mapped[str | None] = mapped_column(String)
    resumed_from: Mapped[str | None] = mapped_column(ForeignKey("build.id"))
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    checkpoints: Mapped[list["BuildCheckpointRecord"]] = relationship(
        back_populates="build", cascade="all, delete-orphan"
    )


class BuildCheckpointRecord(Base):
    __tablename__ = "build_checkpoint"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    build_id: Mapped[str] = mapped_column(ForeignKey("build.id"), nullable=False)
    bot_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    session_id: Mapped[str] = mapped_column(String, nullable=False)
    refined: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(default=None)
    superseded_at: Mapped[datetime | None] = mapped_column(default=None)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    build: Mapped[Build] = relationship(back_populates="checkpoints")


class ErrorPattern(Base):
    __tablename__ = "error_pattern"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    signature: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    field_name: Mapped[str] = mapped_column(String, nullable=False, default="")
    sample_message: Mapped[str] = mapped_column(Text, nullable=False)
    occurrences: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_seen: Mapped[datetime] = mapped_column(default=utcnow)
    last_seen: Mapped[datetime] = mapped_column(default=utcnow)

    __table_args__ = (UniqueConstraint("signature", name="uq_error_pattern_signature"),)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    principal: Mapped[str] = mapped_column(String, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    old_val: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    new_val: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    correlation_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


__all__ = [
    "AuditLog",
    "Base",
    "Build",
    "BuildCheckpointRecord",
    "BuildStatus",
    "ErrorPattern",
    "utcnow",
]
