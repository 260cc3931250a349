"""
Abstract Enrollment Store — Interface for all storage backends.

Implementations:
  - SqlEnrollmentStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryEnrollmentStore (dict-based, single-process, no persistence)

Two operations carry the engine's concurrency guarantees:

  claim_enrollment()   conditional claim; at most one worker holds a
                       given enrollment until release or lease expiry
  commit_transition()  enrollment update + one StepLog insert in a single
                       unit of work, applied only if the enrollment is
                       still at the expected version and status
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from models.schemas import (
    Enrollment, EnrollmentStatus, Scenario, StepLog, TriggerType,
)


class BaseEnrollmentStore(ABC):
    """Interface that all enrollment store backends must implement."""

    async def open(self) -> None:
        """Prepare the backend (create tables, connect). No-op by default."""

    async def close(self) -> None:
        """Release backend resources. No-op by default."""

    # ── Scenarios (read-only to the engine; writes come from config) ──

    @abstractmethod
    async def upsert_scenario(self, scenario: Scenario) -> Scenario:
        ...

    @abstractmethod
    async def get_scenario(self, scenario_id: str) -> Optional[Scenario]:
        ...

    @abstractmethod
    async def list_scenarios(self) -> list[Scenario]:
        ...

    @abstractmethod
    async def list_enabled_scenarios(self, trigger_type: TriggerType) -> list[Scenario]:
        ...

    @abstractmethod
    async def set_scenario_enabled(self, scenario_id: str, enabled: bool) -> Optional[Scenario]:
        ...

    # ── Enrollments ───────────────────────────────────────────

    @abstractmethod
    async def create_enrollment(self, enrollment: Enrollment) -> Optional[Enrollment]:
        """Insert a new enrollment and bump the scenario's ``total_enrolled``.

        Returns None (and writes nothing) when the subject already holds an
        open (active/paused) enrollment in the same scenario.
        """
        ...

    @abstractmethod
    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        ...

    @abstractmethod
    async def find_open_enrollment(self, scenario_id: str, subject_id: str) -> Optional[Enrollment]:
        ...

    @abstractmethod
    async def count_enrollments(self, scenario_id: str, subject_id: str) -> int:
        ...

    @abstractmethod
    async def list_enrollments(
        self,
        scenario_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        statuses: Optional[Iterable[EnrollmentStatus]] = None,
    ) -> list[Enrollment]:
        ...

    @abstractmethod
    async def list_due_enrollments(self, now: datetime, limit: int = 50) -> list[Enrollment]:
        """Active enrollments with ``next_due_at <= now``, oldest due first."""
        ...

    # ── Claims ────────────────────────────────────────────────

    @abstractmethod
    async def claim_enrollment(
        self, enrollment_id: str, worker_id: str, now: datetime, ttl_seconds: int,
    ) -> bool:
        ...

    @abstractmethod
    async def renew_claim(
        self, enrollment_id: str, worker_id: str, now: datetime, ttl_seconds: int,
    ) -> bool:
        """Extend a claim still held by ``worker_id``. False if it was lost."""
        ...

    @abstractmethod
    async def release_claim(self, enrollment_id: str, worker_id: str) -> None:
        ...

    # ── Atomic transition + log ───────────────────────────────

    @abstractmethod
    async def commit_transition(
        self,
        enrollment_id: str,
        expected_version: int,
        expected_statuses: Iterable[EnrollmentStatus],
        changes: dict[str, Any],
        log: StepLog,
    ) -> Optional[Enrollment]:
        """Apply ``changes`` and insert ``log`` atomically.

        Returns the updated enrollment, or None (nothing written) if the
        enrollment moved on since it was read. A transition to
        ``completed`` also bumps the scenario's ``total_completed``.
        """
        ...

    # ── Step logs ─────────────────────────────────────────────

    @abstractmethod
    async def list_step_logs(
        self,
        enrollment_id: Optional[str] = None,
        scenario_id: Optional[str] = None,
    ) -> list[StepLog]:
        ...

