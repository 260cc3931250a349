"""
SqlEnrollmentStore — Portable SQL store for PostgreSQL, MySQL, SQLite.

Concurrency primitives are plain conditional UPDATEs checked via
``rowcount``, so they behave the same on every backend:

  claim:   UPDATE ... SET claimed_by=:worker
           WHERE id=:id AND (claimed_by IS NULL OR claim_expires_at <= :now)
  commit:  UPDATE ... SET ..., version=version+1
           WHERE id=:id AND version=:expected AND status IN (:expected)
           + INSERT step_logs, in the same transaction
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from database.models import EnrollmentRow, ScenarioRow, StepLogRow, StepRow
from database.session import get_session, init_db, make_session_factory
from database.store_base import BaseEnrollmentStore
from models.schemas import (
    Enrollment, EnrollmentStatus, ExitReason, OPEN_STATUSES, Scenario, Step,
    StepLog, StepOutcomeStatus, TriggerType,
)

logger = structlog.get_logger()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _open_key(scenario_id: str, subject_id: str) -> str:
    return f"{scenario_id}:{subject_id}"


class SqlEnrollmentStore(BaseEnrollmentStore):
    """
    Persistent enrollment store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = make_session_factory(engine)

    def _session(self):
        return get_session(self._session_factory)

    async def open(self) -> None:
        await init_db(self.engine)

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("database_closed", dialect=self.engine.dialect.name)

    # ── Scenarios ─────────────────────────────────────────────

    async def upsert_scenario(self, scenario: Scenario) -> Scenario:
        async with self._session() as db:
            row = await db.get(ScenarioRow, scenario.id)
            if row is None:
                row = ScenarioRow(id=scenario.id, created_at=scenario.created_at)
                db.add(row)
            else:
                row.steps.clear()
                await db.flush()

            row.name = scenario.name
            row.trigger_type = scenario.trigger_type.value
            row.trigger_tag_id = scenario.trigger_tag_id
            row.trigger_keyword = scenario.trigger_keyword
            row.keyword_match = scenario.keyword_match.value
            row.enabled = scenario.enabled
            row.total_enrolled = scenario.total_enrolled
            row.total_completed = scenario.total_completed
            row.steps.extend(
                StepRow(id=s.id, sort_order=s.sort_order, step_type=s.step_type, config=dict(s.config))
                for s in scenario.steps
            )
            await db.flush()
            return self._row_to_scenario(row)

    async def get_scenario(self, scenario_id: str) -> Optional[Scenario]:
        async with self._session() as db:
            row = await db.get(ScenarioRow, scenario_id)
            return self._row_to_scenario(row) if row else None

    async def list_scenarios(self) -> list[Scenario]:
        async with self._session() as db:
            result = await db.execute(select(ScenarioRow).order_by(ScenarioRow.created_at))
            return [self._row_to_scenario(r) for r in result.scalars().all()]

    async def list_enabled_scenarios(self, trigger_type: TriggerType) -> list[Scenario]:
        async with self._session() as db:
            stmt = (
                select(ScenarioRow)
                .where(ScenarioRow.trigger_type == trigger_type.value,
                       ScenarioRow.enabled.is_(True))
                .order_by(ScenarioRow.created_at)
            )
            result = await db.execute(stmt)
            return [self._row_to_scenario(r) for r in result.scalars().all()]

    async def set_scenario_enabled(self, scenario_id: str, enabled: bool) -> Optional[Scenario]:
        async with self._session() as db:
            row = await db.get(ScenarioRow, scenario_id)
            if row is None:
                return None
            row.enabled = enabled
            await db.flush()
            return self._row_to_scenario(row)

    # ── Enrollments ───────────────────────────────────────────

    async def create_enrollment(self, enrollment: Enrollment) -> Optional[Enrollment]:
        row = EnrollmentRow(
            id=enrollment.id,
            scenario_id=enrollment.scenario_id,
            subject_id=enrollment.subject_id,
            current_step_index=enrollment.current_step_index,
            status=enrollment.status.value,
            exit_reason=enrollment.exit_reason.value if enrollment.exit_reason else None,
            next_due_at=enrollment.next_due_at,
            open_key=(_open_key(enrollment.scenario_id, enrollment.subject_id)
                      if enrollment.is_open else None),
            version=enrollment.version,
            created_at=enrollment.created_at,
            updated_at=enrollment.updated_at,
        )
        try:
            async with self._session() as db:
                db.add(row)
                await db.flush()
                await db.execute(
                    update(ScenarioRow)
                    .where(ScenarioRow.id == enrollment.scenario_id)
                    .values(total_enrolled=ScenarioRow.total_enrolled + 1)
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError:
            logger.info("enrollment_duplicate_ignored",
                        scenario_id=enrollment.scenario_id,
                        subject_id=enrollment.subject_id)
            return None
        return enrollment.model_copy(deep=True)

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        async with self._session() as db:
            row = await db.get(EnrollmentRow, enrollment_id)
            return self._row_to_enrollment(row) if row else None

    async def find_open_enrollment(self, scenario_id: str, subject_id: str) -> Optional[Enrollment]:
        async with self._session() as db:
            stmt = select(EnrollmentRow).where(
                EnrollmentRow.open_key == _open_key(scenario_id, subject_id)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_enrollment(row) if row else None

    async def count_enrollments(self, scenario_id: str, subject_id: str) -> int:
        async with self._session() as db:
            stmt = (
                select(func.count())
                .select_from(EnrollmentRow)
                .where(EnrollmentRow.scenario_id == scenario_id,
                       EnrollmentRow.subject_id == subject_id)
            )
            return int((await db.execute(stmt)).scalar_one())

    async def list_enrollments(
        self,
        scenario_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        statuses: Optional[Iterable[EnrollmentStatus]] = None,
    ) -> list[Enrollment]:
        async with self._session() as db:
            stmt = select(EnrollmentRow)
            if scenario_id is not None:
                stmt = stmt.where(EnrollmentRow.scenario_id == scenario_id)
            if subject_id is not None:
                stmt = stmt.where(EnrollmentRow.subject_id == subject_id)
            if statuses is not None:
                stmt = stmt.where(EnrollmentRow.status.in_([s.value for s in statuses]))
            stmt = stmt.order_by(EnrollmentRow.created_at)
            result = await db.execute(stmt)
            return [self._row_to_enrollment(r) for r in result.scalars().all()]

    async def list_due_enrollments(self, now: datetime, limit: int = 50) -> list[Enrollment]:
        async with self._session() as db:
            stmt = (
                select(EnrollmentRow)
                .where(EnrollmentRow.status == EnrollmentStatus.ACTIVE.value,
                       EnrollmentRow.next_due_at.is_not(None),
                       EnrollmentRow.next_due_at <= now)
                .order_by(EnrollmentRow.next_due_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_enrollment(r) for r in result.scalars().all()]

    # ── Claims ────────────────────────────────────────────────

    async def claim_enrollment(
        self, enrollment_id: str, worker_id: str, now: datetime, ttl_seconds: int,
    ) -> bool:
        async with self._session() as db:
            stmt = (
                update(EnrollmentRow)
                .where(EnrollmentRow.id == enrollment_id,
                       or_(EnrollmentRow.claimed_by.is_(None),
                           EnrollmentRow.claim_expires_at.is_(None),
                           EnrollmentRow.claim_expires_at <= now))
                .values(claimed_by=worker_id,
                        claim_expires_at=now + timedelta(seconds=ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def renew_claim(
        self, enrollment_id: str, worker_id: str, now: datetime, ttl_seconds: int,
    ) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(EnrollmentRow)
                .where(EnrollmentRow.id == enrollment_id,
                       EnrollmentRow.claimed_by == worker_id)
                .values(claim_expires_at=now + timedelta(seconds=ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def release_claim(self, enrollment_id: str, worker_id: str) -> None:
        async with self._session() as db:
            await db.execute(
                update(EnrollmentRow)
                .where(EnrollmentRow.id == enrollment_id,
                       EnrollmentRow.claimed_by == worker_id)
                .values(claimed_by=None, claim_expires_at=None)
                .execution_options(synchronize_session=False)
            )

    # ── Atomic transition + log ───────────────────────────────

    async def commit_transition(
        self,
        enrollment_id: str,
        expected_version: int,
        expected_statuses: Iterable[EnrollmentStatus],
        changes: dict[str, Any],
        log: StepLog,
    ) -> Optional[Enrollment]:
        values = {k: (v.value if isinstance(v, Enum) else v) for k, v in changes.items()}
        new_status = changes.get("status")
        if new_status is not None and new_status not in OPEN_STATUSES:
            values["open_key"] = None
        values["version"] = EnrollmentRow.version + 1
        values["updated_at"] = log.executed_at

        async with self._session() as db:
            stmt = (
                update(EnrollmentRow)
                .where(EnrollmentRow.id == enrollment_id,
                       EnrollmentRow.version == expected_version,
                       EnrollmentRow.status.in_([s.value for s in expected_statuses]))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                logger.info("transition_rejected",
                            enrollment_id=enrollment_id,
                            expected_version=expected_version)
                return None

            db.add(StepLogRow(
                id=log.id,
                enrollment_id=log.enrollment_id,
                scenario_id=log.scenario_id,
                step_sort_order=log.step_sort_order,
                step_type=log.step_type,
                outcome=log.outcome.value,
                detail=log.detail,
                executed_at=log.executed_at,
            ))
            if new_status == EnrollmentStatus.COMPLETED:
                row = await db.get(EnrollmentRow, enrollment_id)
                await db.execute(
                    update(ScenarioRow)
                    .where(ScenarioRow.id == row.scenario_id)
                    .values(total_completed=ScenarioRow.total_completed + 1)
                    .execution_options(synchronize_session=False)
                )
            await db.flush()
            row = await db.get(EnrollmentRow, enrollment_id, populate_existing=True)
            return self._row_to_enrollment(row)

    # ── Step logs ─────────────────────────────────────────────

    async def list_step_logs(
        self,
        enrollment_id: Optional[str] = None,
        scenario_id: Optional[str] = None,
    ) -> list[StepLog]:
        async with self._session() as db:
            stmt = select(StepLogRow)
            if enrollment_id is not None:
                stmt = stmt.where(StepLogRow.enrollment_id == enrollment_id)
            if scenario_id is not None:
                stmt = stmt.where(StepLogRow.scenario_id == scenario_id)
            stmt = stmt.order_by(StepLogRow.executed_at, StepLogRow.step_sort_order)
            result = await db.execute(stmt)
            return [self._row_to_log(r) for r in result.scalars().all()]

    # ── Row conversion ────────────────────────────────────────

    @staticmethod
    def _row_to_scenario(row: ScenarioRow) -> Scenario:
        return Scenario(
            id=row.id,
            name=row.name,
            trigger_type=TriggerType(row.trigger_type),
            trigger_tag_id=row.trigger_tag_id,
            trigger_keyword=row.trigger_keyword,
            keyword_match=row.keyword_match,
            enabled=bool(row.enabled),
            total_enrolled=row.total_enrolled or 0,
            total_completed=row.total_completed or 0,
            created_at=_aware(row.created_at),
            steps=[
                Step(id=s.id, scenario_id=row.id, sort_order=s.sort_order,
                     step_type=s.step_type, config=s.config or {})
                for s in sorted(row.steps, key=lambda s: s.sort_order)
            ],
        )

    @staticmethod
    def _row_to_enrollment(row: EnrollmentRow) -> Enrollment:
        return Enrollment(
            id=row.id,
            scenario_id=row.scenario_id,
            subject_id=row.subject_id,
            current_step_index=row.current_step_index,
            status=EnrollmentStatus(row.status),
            exit_reason=ExitReason(row.exit_reason) if row.exit_reason else None,
            next_due_at=_aware(row.next_due_at),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            completed_at=_aware(row.completed_at),
            exited_at=_aware(row.exited_at),
            version=row.version,
            claimed_by=row.claimed_by,
            claim_expires_at=_aware(row.claim_expires_at),
        )

    @staticmethod
    def _row_to_log(row: StepLogRow) -> StepLog:
        return StepLog(
            id=row.id,
            enrollment_id=row.enrollment_id,
            scenario_id=row.scenario_id,
            step_sort_order=row.step_sort_order,
            step_type=row.step_type,
            outcome=StepOutcomeStatus(row.outcome),
            detail=row.detail or "",
            executed_at=_aware(row.executed_at),
        )
