"""
InMemoryEnrollmentStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlEnrollmentStore
  - Claims and guarded commits serialized by one asyncio.Lock
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

import structlog

from database.store_base import BaseEnrollmentStore
from models.schemas import (
    Enrollment, EnrollmentStatus, OPEN_STATUSES, Scenario, StepLog, TriggerType,
)

logger = structlog.get_logger()


class InMemoryEnrollmentStore(BaseEnrollmentStore):
    """
    Full-featured in-memory store with the same interface as SqlEnrollmentStore.
    Returns copies so callers can never mutate stored state in place.
    """

    def __init__(self):
        self._scenarios: dict[str, Scenario] = {}
        self._enrollments: dict[str, Enrollment] = {}
        self._logs: list[StepLog] = []

        # Indexes
        self._open_index: dict[str, str] = {}                            # "scenario:subject" → enrollment_id
        self._subject_index: dict[str, list[str]] = defaultdict(list)   # subject_id → [enrollment_id]
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    @staticmethod
    def _open_key(scenario_id: str, subject_id: str) -> str:
        return f"{scenario_id}:{subject_id}"

    # ── Scenarios ─────────────────────────────────────────────

    async def upsert_scenario(self, scenario: Scenario) -> Scenario:
        stored = scenario.model_copy(deep=True)
        for step in stored.steps:
            step.scenario_id = stored.id
        self._scenarios[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_scenario(self, scenario_id: str) -> Optional[Scenario]:
        scenario = self._scenarios.get(scenario_id)
        return scenario.model_copy(deep=True) if scenario else None

    async def list_scenarios(self) -> list[Scenario]:
        ordered = sorted(self._scenarios.values(), key=lambda s: s.created_at)
        return [s.model_copy(deep=True) for s in ordered]

    async def list_enabled_scenarios(self, trigger_type: TriggerType) -> list[Scenario]:
        return [
            s for s in await self.list_scenarios()
            if s.enabled and s.trigger_type == trigger_type
        ]

    async def set_scenario_enabled(self, scenario_id: str, enabled: bool) -> Optional[Scenario]:
        scenario = self._scenarios.get(scenario_id)
        if scenario is None:
            return None
        scenario.enabled = enabled
        return scenario.model_copy(deep=True)

    # ── Enrollments ───────────────────────────────────────────

    async def create_enrollment(self, enrollment: Enrollment) -> Optional[Enrollment]:
        async with self._lock:
            key = self._open_key(enrollment.scenario_id, enrollment.subject_id)
            if key in self._open_index:
                return None
            stored = enrollment.model_copy(deep=True)
            self._enrollments[stored.id] = stored
            if stored.is_open:
                self._open_index[key] = stored.id
            self._subject_index[stored.subject_id].append(stored.id)
            scenario = self._scenarios.get(stored.scenario_id)
            if scenario is not None:
                scenario.total_enrolled += 1
            return stored.model_copy(deep=True)

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def find_open_enrollment(self, scenario_id: str, subject_id: str) -> Optional[Enrollment]:
        eid = self._open_index.get(self._open_key(scenario_id, subject_id))
        if not eid:
            return None
        return await self.get_enrollment(eid)

    async def count_enrollments(self, scenario_id: str, subject_id: str) -> int:
        return sum(
            1 for eid in self._subject_index.get(subject_id, [])
            if self._enrollments[eid].scenario_id == scenario_id
        )

    async def list_enrollments(
        self,
        scenario_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        statuses: Optional[Iterable[EnrollmentStatus]] = None,
    ) -> list[Enrollment]:
        if subject_id is not None:
            candidates = [self._enrollments[eid] for eid in self._subject_index.get(subject_id, [])]
        else:
            candidates = list(self._enrollments.values())
        wanted = set(statuses) if statuses is not None else None
        results = [
            e for e in candidates
            if (scenario_id is None or e.scenario_id == scenario_id)
            and (wanted is None or e.status in wanted)
        ]
        results.sort(key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in results]

    async def list_due_enrollments(self, now: datetime, limit: int = 50) -> list[Enrollment]:
        due = [
            e for e in self._enrollments.values()
            if e.status == EnrollmentStatus.ACTIVE
            and e.next_due_at is not None
            and e.next_due_at <= now
        ]
        due.sort(key=lambda e: e.next_due_at)
        return [e.model_copy(deep=True) for e in due[:limit]]

    # ── Claims ────────────────────────────────────────────────

    async def claim_enrollment(
        self, enrollment_id: str, worker_id: str, now: datetime, ttl_seconds: int,
    ) -> bool:
        async with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if enrollment is None:
                return False
            held = (
                enrollment.claimed_by is not None
                and enrollment.claim_expires_at is not None
                and enrollment.claim_expires_at > now
            )
            if held:
                return False
            enrollment.claimed_by = worker_id
            enrollment.claim_expires_at = now + timedelta(seconds=ttl_seconds)
            return True

    async def renew_claim(
        self, enrollment_id: str, worker_id: str, now: datetime, ttl_seconds: int,
    ) -> bool:
        async with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if enrollment is None or enrollment.claimed_by != worker_id:
                return False
            enrollment.claim_expires_at = now + timedelta(seconds=ttl_seconds)
            return True

    async def release_claim(self, enrollment_id: str, worker_id: str) -> None:
        async with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if enrollment is not None and enrollment.claimed_by == worker_id:
                enrollment.claimed_by = None
                enrollment.claim_expires_at = None

    # ── Atomic transition + log ───────────────────────────────

    async def commit_transition(
        self,
        enrollment_id: str,
        expected_version: int,
        expected_statuses: Iterable[EnrollmentStatus],
        changes: dict[str, Any],
        log: StepLog,
    ) -> Optional[Enrollment]:
        async with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if enrollment is None:
                return None
            if enrollment.version != expected_version or enrollment.status not in set(expected_statuses):
                logger.info("transition_rejected",
                            enrollment_id=enrollment_id,
                            expected_version=expected_version,
                            actual_version=enrollment.version,
                            status=enrollment.status.value)
                return None

            was_open = enrollment.is_open
            updated = enrollment.model_copy(update={
                **changes,
                "version": enrollment.version + 1,
                "updated_at": log.executed_at,
            })
            self._enrollments[enrollment_id] = updated
            self._logs.append(log.model_copy(deep=True))

            key = self._open_key(updated.scenario_id, updated.subject_id)
            if was_open and not updated.is_open:
                self._open_index.pop(key, None)
            elif updated.is_open:
                self._open_index[key] = updated.id

            if (changes.get("status") == EnrollmentStatus.COMPLETED
                    and enrollment.status != EnrollmentStatus.COMPLETED):
                scenario = self._scenarios.get(updated.scenario_id)
                if scenario is not None:
                    scenario.total_completed += 1
            return updated.model_copy(deep=True)

    # ── Step logs ─────────────────────────────────────────────

    async def list_step_logs(
        self,
        enrollment_id: Optional[str] = None,
        scenario_id: Optional[str] = None,
    ) -> list[StepLog]:
        return [
            log.model_copy(deep=True) for log in self._logs
            if (enrollment_id is None or log.enrollment_id == enrollment_id)
            and (scenario_id is None or log.scenario_id == scenario_id)
        ]

    # ── Stats ─────────────────────────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "scenarios": len(self._scenarios),
            "enrollments": len(self._enrollments),
            "open_enrollments": len(self._open_index),
            "step_logs": len(self._logs),
        }
