"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB for step configs.
  - No partial indexes. "At most one open enrollment per (scenario,
    subject)" is enforced by a nullable unique ``open_key`` column that is
    set while the enrollment is active/paused and NULL once terminal
    (every supported database allows many NULLs under a unique constraint).
  - String primary keys (uuid hex), no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Scenarios & steps
# ──────────────────────────────────────────────────────────────

class ScenarioRow(Base):
    __tablename__ = "step_scenarios"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(32), default="manual")
    trigger_tag_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    trigger_keyword: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    keyword_match: Mapped[str] = mapped_column(String(16), default="exact")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    total_enrolled: Mapped[int] = mapped_column(Integer, default=0)
    total_completed: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    steps: Mapped[list["StepRow"]] = relationship(
        back_populates="scenario", cascade="all, delete-orphan",
        order_by="StepRow.sort_order", lazy="selectin",
    )

    __table_args__ = (
        Index("ix_step_scenarios_trigger", "trigger_type", "enabled"),
    )


class StepRow(Base):
    __tablename__ = "step_scenario_steps"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    scenario_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("step_scenarios.id", ondelete="CASCADE"), nullable=False,
    )
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False)
    step_type: Mapped[str] = mapped_column(String(32), nullable=False)
    config: Mapped[Any] = mapped_column(JSON, default=dict)

    scenario: Mapped[ScenarioRow] = relationship(back_populates="steps")

    __table_args__ = (
        UniqueConstraint("scenario_id", "sort_order", name="uq_step_scenario_order"),
    )


# ──────────────────────────────────────────────────────────────
#  Enrollments & step logs
# ──────────────────────────────────────────────────────────────

class EnrollmentRow(Base):
    __tablename__ = "step_enrollments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    scenario_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("step_scenarios.id", ondelete="CASCADE"), nullable=False,
    )
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False)
    current_step_index: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default="active")
    exit_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    next_due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    open_key: Mapped[Optional[str]] = mapped_column(String(256), nullable=True, unique=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    claimed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claim_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    exited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_step_enrollments_due", "status", "next_due_at"),
        Index("ix_step_enrollments_scenario", "scenario_id", "status"),
        Index("ix_step_enrollments_subject", "subject_id"),
    )


class StepLogRow(Base):
    __tablename__ = "step_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    enrollment_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("step_enrollments.id", ondelete="CASCADE"), nullable=False,
    )
    scenario_id: Mapped[str] = mapped_column(String(64), nullable=False)
    step_sort_order: Mapped[int] = mapped_column(Integer, nullable=False)
    step_type: Mapped[str] = mapped_column(String(32), nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    detail: Mapped[str] = mapped_column(Text, default="")
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_step_logs_enrollment", "enrollment_id"),
        Index("ix_step_logs_scenario", "scenario_id", "step_sort_order"),
    )
