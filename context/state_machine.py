"""
Enrollment State Machine — owns one subject's run through one scenario.

States:
    active ──(steps run in a tight loop)──► completed
      │  ▲
      │  └── wait step: stays active, next_due_at set, control returns
      ├──(condition not met)──► exited / condition_failed
      ├──(step failure)───────► exited / step_failed
      ├──(operator pause)─────► paused ──(operator resume)──► active
      └──(forced exit)────────► exited / manual | blocked | tag_removed | scenario_disabled

Every write to step index, status or next_due_at goes through
``store.commit_transition()`` together with exactly one StepLog row, and is
guarded by the version the writer read. A concurrent pause/exit therefore
turns an in-flight advance into a no-op instead of being overwritten.

``advance()`` holds a per-enrollment claim (a lease in the store) while
it runs, so two workers never advance the same enrollment at once. The
lease is renewed before every step after the first.

Usage:
    sm = EnrollmentStateMachine(store, executor, subjects)
    result = await sm.advance(enrollment_id)
    if result:
        print(result.enrollment.status, result.steps_run)
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

import structlog

from channels.base import SubjectDirectory
from core.errors import (
    EnrollmentNotFound, InvalidTransition, ScenarioNotFound, TransitionConflict,
)
from core.executor import StepExecutor, StepOutcome
from database.store_base import BaseEnrollmentStore
from models.schemas import (
    Enrollment, EnrollmentStatus, ExitReason, OPEN_STATUSES, Scenario,
    StepLog, StepOutcomeStatus,
)
from utils.timing import compute_due_at

logger = structlog.get_logger()

OPERATOR_STEP_TYPE = "operator"
SYSTEM_STEP_TYPE = "system"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Advance Result
# ──────────────────────────────────────────────────────────────

class AdvanceResult:
    """Outcome of one ``advance()`` call."""

    ADVANCED = "advanced"
    NOOP = "noop"
    BUSY = "busy"

    def __init__(
        self,
        enrollment_id: str,
        status: str,
        enrollment: Optional[Enrollment] = None,
        steps_run: int = 0,
        reason: str = "",
    ):
        self.enrollment_id = enrollment_id
        self.status = status
        self.enrollment = enrollment
        self.steps_run = steps_run
        self.reason = reason

    def __bool__(self):
        return self.status == self.ADVANCED

    def __repr__(self):
        if self.status == self.ADVANCED and self.enrollment is not None:
            return (f"<Advanced {self.enrollment_id} → {self.enrollment.status.value} "
                    f"[{self.steps_run} steps]>")
        return f"<{self.status.capitalize()} {self.enrollment_id}: {self.reason}>"


# ──────────────────────────────────────────────────────────────
#  Enrollment State Machine
# ──────────────────────────────────────────────────────────────

class EnrollmentStateMachine:

    def __init__(
        self,
        store: BaseEnrollmentStore,
        executor: StepExecutor,
        subjects: SubjectDirectory,
        exit_on_disable: bool = True,
        claim_ttl_seconds: int = 300,
        timezone_name: str = "Asia/Tokyo",
        clock: Callable[[], datetime] = _utcnow,
        worker_id: Optional[str] = None,
        conflict_retries: int = 3,
    ):
        self.store = store
        self.executor = executor
        self.subjects = subjects
        self.exit_on_disable = exit_on_disable
        self.claim_ttl_seconds = claim_ttl_seconds
        self.timezone_name = timezone_name
        self.clock = clock
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.conflict_retries = conflict_retries

    # ── Resumption ────────────────────────────────────────────

    async def advance(self, enrollment_id: str, now: Optional[datetime] = None) -> AdvanceResult:
        """Run the enrollment forward from its current step until it waits,
        completes or exits. A no-op unless it is active and due."""
        now = now or self.clock()
        claim_token = f"{self.worker_id}:{uuid.uuid4().hex[:8]}"

        claimed = await self.store.claim_enrollment(
            enrollment_id, claim_token, now, self.claim_ttl_seconds,
        )
        if not claimed:
            if await self.store.get_enrollment(enrollment_id) is None:
                raise EnrollmentNotFound(enrollment_id)
            logger.info("enrollment_claim_busy", enrollment_id=enrollment_id)
            return AdvanceResult(enrollment_id, AdvanceResult.BUSY, reason="claimed by another worker")

        try:
            return await self._advance_claimed(enrollment_id, claim_token, now)
        finally:
            await self.store.release_claim(enrollment_id, claim_token)

    async def _advance_claimed(self, enrollment_id: str, claim_token: str,
                               now: datetime) -> AdvanceResult:
        enrollment = await self.store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(enrollment_id)
        if enrollment.status != EnrollmentStatus.ACTIVE:
            return AdvanceResult(enrollment_id, AdvanceResult.NOOP, enrollment,
                                 reason=f"status is {enrollment.status.value}")
        if enrollment.next_due_at is not None and enrollment.next_due_at > now:
            return AdvanceResult(enrollment_id, AdvanceResult.NOOP, enrollment,
                                 reason=f"not due until {enrollment.next_due_at.isoformat()}")

        scenario = await self.store.get_scenario(enrollment.scenario_id)
        if scenario is None or not scenario.enabled:
            updated = await self.store.commit_transition(
                enrollment.id, enrollment.version, (EnrollmentStatus.ACTIVE,),
                self._disable_changes(now),
                self._system_log(enrollment, SYSTEM_STEP_TYPE,
                                 self._disable_detail(scenario), now),
            )
            if updated is None:
                return AdvanceResult(enrollment_id, AdvanceResult.NOOP, enrollment,
                                     reason="modified concurrently")
            logger.info("enrollment_scenario_disabled",
                        enrollment_id=enrollment_id, status=updated.status.value)
            return AdvanceResult(enrollment_id, AdvanceResult.ADVANCED, updated)

        steps = scenario.ordered_steps()
        steps_run = 0

        while True:
            index = enrollment.current_step_index
            if index >= len(steps):
                updated = await self.store.commit_transition(
                    enrollment.id, enrollment.version, (EnrollmentStatus.ACTIVE,),
                    {"status": EnrollmentStatus.COMPLETED, "completed_at": now, "next_due_at": None},
                    self._system_log(enrollment, SYSTEM_STEP_TYPE, "all steps completed", now),
                )
                if updated is None:
                    return AdvanceResult(enrollment_id, AdvanceResult.NOOP, enrollment, steps_run,
                                         reason="modified concurrently")
                enrollment = updated
                break

            if steps_run and not await self.store.renew_claim(
                    enrollment_id, claim_token, self.clock(), self.claim_ttl_seconds):
                logger.warning("enrollment_claim_lost",
                               enrollment_id=enrollment_id, step_index=index)
                return AdvanceResult(enrollment_id, AdvanceResult.NOOP, enrollment, steps_run,
                                     reason="claim lost")

            step = steps[index]
            context = await self.subjects.get_subject(enrollment.subject_id)
            hints = {
                "enrollment_id": enrollment.id,
                "scenario_id": scenario.id,
                "step_order": step.sort_order,
            }
            outcome = await self.executor.execute(step, context, hints)

            log = StepLog(
                enrollment_id=enrollment.id,
                scenario_id=scenario.id,
                step_sort_order=step.sort_order,
                step_type=step.step_type,
                outcome=outcome.status,
                detail=outcome.detail,
                executed_at=now,
            )
            updated = await self.store.commit_transition(
                enrollment.id, enrollment.version, (EnrollmentStatus.ACTIVE,),
                self._changes_for(outcome, index, len(steps), now), log,
            )
            if updated is None:
                logger.warning("enrollment_transition_aborted",
                               enrollment_id=enrollment_id, step_order=step.sort_order)
                return AdvanceResult(enrollment_id, AdvanceResult.NOOP, enrollment, steps_run,
                                     reason="modified concurrently")

            enrollment = updated
            steps_run += 1
            if enrollment.status != EnrollmentStatus.ACTIVE or outcome.waiting:
                break

        logger.info("enrollment_advanced",
                    enrollment_id=enrollment_id,
                    scenario_id=enrollment.scenario_id,
                    status=enrollment.status.value,
                    step_index=enrollment.current_step_index,
                    exit_reason=enrollment.exit_reason.value if enrollment.exit_reason else None,
                    steps_run=steps_run)
        return AdvanceResult(enrollment_id, AdvanceResult.ADVANCED, enrollment, steps_run)

    def _changes_for(self, outcome: StepOutcome, index: int, step_count: int,
                     now: datetime) -> dict[str, Any]:
        if not outcome.success:
            return {"status": EnrollmentStatus.EXITED, "exit_reason": ExitReason.STEP_FAILED,
                    "exited_at": now, "next_due_at": None}
        if outcome.skipped:
            return {"status": EnrollmentStatus.EXITED, "exit_reason": ExitReason.CONDITION_FAILED,
                    "exited_at": now, "next_due_at": None}
        if outcome.waiting:
            due = compute_due_at(now, outcome.wait_minutes or 0, outcome.send_time, self.timezone_name)
            return {"current_step_index": index + 1, "next_due_at": due}

        next_index = index + 1
        if next_index >= step_count:
            return {"current_step_index": next_index, "status": EnrollmentStatus.COMPLETED,
                    "completed_at": now, "next_due_at": None}
        # still runnable: remains due for the next sweep
        return {"current_step_index": next_index, "next_due_at": now}

    # ── Scenario disable policy ───────────────────────────────

    def _disable_changes(self, now: datetime) -> dict[str, Any]:
        if self.exit_on_disable:
            return {"status": EnrollmentStatus.EXITED, "exit_reason": ExitReason.SCENARIO_DISABLED,
                    "exited_at": now, "next_due_at": None}
        return {"status": EnrollmentStatus.PAUSED}

    def _disable_detail(self, scenario: Optional[Scenario]) -> str:
        what = "scenario missing" if scenario is None else "scenario disabled"
        return f"{what}: {'exited' if self.exit_on_disable else 'paused'}"

    async def apply_scenario_disabled(self, scenario_id: str) -> list[Enrollment]:
        """Apply the disable policy to every open enrollment of a scenario."""
        if self.exit_on_disable:
            targets = OPEN_STATUSES
        else:
            targets = (EnrollmentStatus.ACTIVE,)

        changed = []
        for enrollment in await self.store.list_enrollments(scenario_id=scenario_id, statuses=targets):
            now = self.clock()
            try:
                updated = await self._force(
                    enrollment.id, targets, "disable",
                    lambda e: self._disable_changes(now),
                    "scenario disabled", SYSTEM_STEP_TYPE,
                )
            except (InvalidTransition, TransitionConflict) as e:
                logger.warning("scenario_disable_skipped", enrollment_id=enrollment.id, error=str(e))
                continue
            changed.append(updated)

        logger.info("scenario_disable_applied",
                    scenario_id=scenario_id,
                    policy="exit" if self.exit_on_disable else "pause",
                    enrollments=len(changed))
        return changed

    async def disable_scenario(self, scenario_id: str) -> list[Enrollment]:
        scenario = await self.store.set_scenario_enabled(scenario_id, False)
        if scenario is None:
            raise ScenarioNotFound(scenario_id)
        return await self.apply_scenario_disabled(scenario_id)

    # ── Operator / external forced transitions ────────────────

    async def pause(self, enrollment_id: str) -> Enrollment:
        return await self._force(
            enrollment_id, (EnrollmentStatus.ACTIVE,), "pause",
            lambda e: {"status": EnrollmentStatus.PAUSED},
            "paused by operator",
        )

    async def resume(self, enrollment_id: str, run: bool = True) -> Enrollment:
        """paused → active. A wait that was in progress keeps its due time;
        otherwise the enrollment is due immediately."""
        now = self.clock()
        enrollment = await self._force(
            enrollment_id, (EnrollmentStatus.PAUSED,), "resume",
            lambda e: {"status": EnrollmentStatus.ACTIVE, "next_due_at": e.next_due_at or now},
            "resumed by operator",
        )
        if run and enrollment.next_due_at is not None and enrollment.next_due_at <= now:
            result = await self.advance(enrollment_id, now)
            if result.enrollment is not None:
                return result.enrollment
        return enrollment

    async def exit(self, enrollment_id: str, reason: ExitReason = ExitReason.MANUAL) -> Enrollment:
        now = self.clock()
        return await self._force(
            enrollment_id, OPEN_STATUSES, "exit",
            lambda e: {"status": EnrollmentStatus.EXITED, "exit_reason": reason,
                       "exited_at": now, "next_due_at": None},
            f"exited: {reason.value}",
        )

    async def jump_to_step(self, enrollment_id: str, step_index: int) -> Enrollment:
        """Move an open enrollment to ``step_index``. Jumping past the last
        step completes it."""
        if step_index < 0:
            raise ValueError(f"step index must be >= 0 (got {step_index})")
        enrollment = await self.store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(enrollment_id)
        scenario = await self.store.get_scenario(enrollment.scenario_id)
        if scenario is None:
            raise ScenarioNotFound(enrollment.scenario_id)
        step_count = len(scenario.steps)
        now = self.clock()

        def changes(e: Enrollment) -> dict[str, Any]:
            if step_index >= step_count:
                return {"current_step_index": step_index, "status": EnrollmentStatus.COMPLETED,
                        "completed_at": now, "next_due_at": None}
            due = now if e.status == EnrollmentStatus.ACTIVE else None
            return {"current_step_index": step_index, "next_due_at": due}

        return await self._force(
            enrollment_id, OPEN_STATUSES, "jump", changes,
            f"jumped to step {step_index}",
        )

    async def exit_for_subject(
        self,
        subject_id: str,
        reason: ExitReason,
        scenario_ids: Optional[Iterable[str]] = None,
    ) -> list[Enrollment]:
        """Exit every open enrollment of a subject (optionally limited to
        some scenarios). Used for blocks/unfollows and trigger-tag removal."""
        wanted = set(scenario_ids) if scenario_ids is not None else None
        exited = []
        for enrollment in await self.store.list_enrollments(subject_id=subject_id, statuses=OPEN_STATUSES):
            if wanted is not None and enrollment.scenario_id not in wanted:
                continue
            try:
                exited.append(await self.exit(enrollment.id, reason))
            except (InvalidTransition, TransitionConflict) as e:
                logger.warning("enrollment_exit_skipped", enrollment_id=enrollment.id, error=str(e))
        if exited:
            logger.info("subject_enrollments_exited",
                        subject_id=subject_id, reason=reason.value, count=len(exited))
        return exited

    async def _force(
        self,
        enrollment_id: str,
        allowed: Iterable[EnrollmentStatus],
        action: str,
        build_changes: Callable[[Enrollment], dict[str, Any]],
        detail: str,
        step_type: str = OPERATOR_STEP_TYPE,
    ) -> Enrollment:
        allowed = tuple(allowed)
        for _ in range(self.conflict_retries):
            enrollment = await self.store.get_enrollment(enrollment_id)
            if enrollment is None:
                raise EnrollmentNotFound(enrollment_id)
            if enrollment.status not in allowed:
                raise InvalidTransition(enrollment_id, enrollment.status.value, action)

            now = self.clock()
            updated = await self.store.commit_transition(
                enrollment.id, enrollment.version, allowed,
                build_changes(enrollment),
                self._system_log(enrollment, step_type, detail, now),
            )
            if updated is not None:
                logger.info("enrollment_transition",
                            enrollment_id=enrollment_id,
                            action=action,
                            from_status=enrollment.status.value,
                            to_status=updated.status.value)
                return updated
        raise TransitionConflict(enrollment_id, action)

    @staticmethod
    def _system_log(enrollment: Enrollment, step_type: str, detail: str, now: datetime) -> StepLog:
        return StepLog(
            enrollment_id=enrollment.id,
            scenario_id=enrollment.scenario_id,
            step_sort_order=enrollment.current_step_index,
            step_type=step_type,
            outcome=StepOutcomeStatus.SKIPPED,
            detail=detail,
            executed_at=now,
        )
