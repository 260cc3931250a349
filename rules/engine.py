"""
Trigger Dispatcher — turns domain events into enrollments.

Events:
  follow       enroll into every enabled ``follow`` scenario
  tag_add      enroll into every enabled ``tag_add`` scenario whose trigger tag matches
  keyword      enroll into every enabled ``keyword`` scenario whose keyword matches
               the (trimmed) text under its match mode: exact | contains | regex
  tag_remove   exit open enrollments of scenarios triggered by the removed tag
  block        exit every open enrollment of the subject (alias: unfollow)

A subject never holds two open (active/paused) enrollments in the same
scenario. Re-entry after completion/exit is governed by ``allow_reentry``.
Each new enrollment is advanced once, synchronously; anything that goes
wrong there is left for the scheduler.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from context.state_machine import EnrollmentStateMachine
from core.errors import ScenarioDisabled, ScenarioNotFound
from database.store_base import BaseEnrollmentStore
from models.schemas import (
    Enrollment, EventType, ExitReason, KeywordMatch, Scenario, TriggerType,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def keyword_matches(scenario: Scenario, text: str) -> bool:
    """Match trimmed inbound text against a scenario's keyword."""
    keyword = (scenario.trigger_keyword or "").strip()
    text = (text or "").strip()
    if not keyword or not text:
        return False

    if scenario.keyword_match == KeywordMatch.EXACT:
        return text == keyword
    if scenario.keyword_match == KeywordMatch.CONTAINS:
        return keyword in text
    if scenario.keyword_match == KeywordMatch.REGEX:
        try:
            return re.search(keyword, text) is not None
        except re.error as e:
            logger.warning("keyword_regex_invalid",
                           scenario_id=scenario.id, pattern=keyword, error=str(e))
            return False
    return False


# ──────────────────────────────────────────────────────────────
#  Trigger Dispatcher
# ──────────────────────────────────────────────────────────────

class TriggerDispatcher:
    """
    Matches events against enabled scenarios and creates enrollments.
    """

    def __init__(
        self,
        store: BaseEnrollmentStore,
        state_machine: EnrollmentStateMachine,
        allow_reentry: bool = True,
        run_immediately: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.state_machine = state_machine
        self.allow_reentry = allow_reentry
        self.run_immediately = run_immediately
        self.clock = clock

    # ── Event-Based Evaluation ────────────────────────────────

    async def on_event(
        self,
        event_type: str,
        subject_id: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> list[Enrollment]:
        """
        Dispatch one domain event for a subject.
        Returns the enrollments created (empty for exit-only events).
        """
        payload = payload or {}
        try:
            event = EventType(event_type)
        except ValueError:
            logger.warning("event_type_unknown", event_type=event_type, subject_id=subject_id)
            return []

        if event == EventType.FOLLOW:
            scenarios = await self.store.list_enabled_scenarios(TriggerType.FOLLOW)

        elif event == EventType.TAG_ADD:
            tag_id = _as_int(payload.get("tag_id"))
            scenarios = [
                s for s in await self.store.list_enabled_scenarios(TriggerType.TAG_ADD)
                if tag_id is not None and s.trigger_tag_id == tag_id
            ]

        elif event == EventType.KEYWORD:
            text = str(payload.get("text", ""))
            scenarios = [
                s for s in await self.store.list_enabled_scenarios(TriggerType.KEYWORD)
                if keyword_matches(s, text)
            ]

        elif event == EventType.TAG_REMOVE:
            await self._exit_for_removed_tag(subject_id, _as_int(payload.get("tag_id")))
            return []

        else:  # block / unfollow
            await self.state_machine.exit_for_subject(subject_id, ExitReason.BLOCKED)
            return []

        logger.info("event_matched", event_type=event.value, subject_id=subject_id,
                    scenarios=[s.id for s in scenarios])
        created = []
        for scenario in scenarios:
            enrollment = await self._enroll(scenario, subject_id, check_reentry=True)
            if enrollment:
                created.append(enrollment)
        return created

    async def _exit_for_removed_tag(self, subject_id: str, tag_id: Optional[int]) -> None:
        if tag_id is None:
            return
        scenario_ids = [
            s.id for s in await self.store.list_scenarios()
            if s.trigger_type == TriggerType.TAG_ADD and s.trigger_tag_id == tag_id
        ]
        if scenario_ids:
            await self.state_machine.exit_for_subject(
                subject_id, ExitReason.TAG_REMOVED, scenario_ids=scenario_ids,
            )

    # ── Manual Enrollment ─────────────────────────────────────

    async def enroll(self, scenario_id: str, subject_id: str) -> Optional[Enrollment]:
        """Enroll a subject directly, bypassing trigger matching.
        Returns None if the subject already has an open enrollment."""
        scenario = await self.store.get_scenario(scenario_id)
        if scenario is None:
            raise ScenarioNotFound(scenario_id)
        if not scenario.enabled:
            raise ScenarioDisabled(scenario_id)
        return await self._enroll(scenario, subject_id, check_reentry=False)

    async def _enroll(
        self, scenario: Scenario, subject_id: str, check_reentry: bool,
    ) -> Optional[Enrollment]:
        if not scenario.steps:
            logger.info("enrollment_skipped_no_steps", scenario_id=scenario.id, subject_id=subject_id)
            return None

        if await self.store.find_open_enrollment(scenario.id, subject_id):
            logger.info("enrollment_skipped_open", scenario_id=scenario.id, subject_id=subject_id)
            return None

        if check_reentry and not self.allow_reentry:
            if await self.store.count_enrollments(scenario.id, subject_id) > 0:
                logger.info("enrollment_skipped_reentry", scenario_id=scenario.id, subject_id=subject_id)
                return None

        now = self.clock()
        enrollment = await self.store.create_enrollment(Enrollment(
            scenario_id=scenario.id,
            subject_id=subject_id,
            next_due_at=now,
            created_at=now,
            updated_at=now,
        ))
        if enrollment is None:
            return None

        logger.info("enrollment_created",
                    enrollment_id=enrollment.id,
                    scenario_id=scenario.id,
                    subject_id=subject_id)

        if not self.run_immediately:
            return enrollment
        try:
            result = await self.state_machine.advance(enrollment.id, now)
        except Exception as e:
            logger.error("enrollment_initial_advance_failed",
                         enrollment_id=enrollment.id, error=str(e), exc_info=True)
            return enrollment
        return result.enrollment or enrollment


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
