"""
Stats Aggregator — read-only reporting over enrollments and step logs.

Per scenario:
  summary         totals by status, completion/exit rates (percent, 1 dp)
  funnel          per step: how many enrollments executed at least that far
  exit_reasons    histogram over exited enrollments
  monthly_trend   last 12 months of {enrolled, completed, exited}, bucketed
                  by the month each enrollment was created

Rates are derived from integer counts at the point of display, never
from other rounded rates.
"""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from context.state_machine import OPERATOR_STEP_TYPE, SYSTEM_STEP_TYPE
from core.errors import ScenarioNotFound
from database.store_base import BaseEnrollmentStore
from models.schemas import Enrollment, EnrollmentStatus, Scenario, Step, StepLog

logger = structlog.get_logger()

STEP_TYPE_LABELS = {
    "send_message": "Send message",
    "add_tag": "Add tag",
    "remove_tag": "Remove tag",
    "switch_richmenu": "Switch rich menu",
    "wait": "Wait",
    "condition": "Condition",
    "webhook": "Webhook",
}

TREND_MONTHS = 12


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def rate(count: int, total: int) -> float:
    """Percentage rounded to one decimal; 0 when there is nothing to divide."""
    if total <= 0:
        return 0.0
    return round(count * 100 / total, 1)


def step_label(step: Step) -> str:
    base = STEP_TYPE_LABELS.get(step.step_type, step.step_type)
    config = step.config or {}
    if step.step_type == "wait":
        if config.get("delay_type"):
            return f"{base} {config.get('delay_value', 0)} {config['delay_type']}"
        return f"{base} {config.get('duration_minutes', 0)} min"
    content = config.get("text") or config.get("url") or ""
    if content:
        return f"{base}: {str(content)[:30]}"
    return base


def month_keys(now: datetime, months: int = TREND_MONTHS) -> list[str]:
    """Oldest-first "YYYY-MM" keys for the ``months`` months ending at ``now``."""
    year, month = now.year, now.month
    keys = []
    for _ in range(months):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


class StatsAggregator:

    def __init__(self, store: BaseEnrollmentStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.clock = clock

    async def scenario_stats(self, scenario_id: str, now: Optional[datetime] = None) -> dict[str, Any]:
        scenario = await self.store.get_scenario(scenario_id)
        if scenario is None:
            raise ScenarioNotFound(scenario_id)

        enrollments = await self.store.list_enrollments(scenario_id=scenario_id)
        logs = await self.store.list_step_logs(scenario_id=scenario_id)
        now = now or self.clock()

        return {
            "scenario": {
                "id": scenario.id,
                "name": scenario.name,
                "trigger_type": scenario.trigger_type.value,
                "enabled": scenario.enabled,
            },
            "summary": self.summarize(enrollments),
            "funnel": self.funnel(scenario, enrollments, logs),
            "exit_reasons": self.exit_reasons(enrollments),
            "monthly_trend": self.monthly_trend(enrollments, now),
        }

    async def all_scenarios_summary(self) -> list[dict[str, Any]]:
        rows = []
        for scenario in await self.store.list_scenarios():
            enrollments = await self.store.list_enrollments(scenario_id=scenario.id)
            summary = self.summarize(enrollments)
            rows.append({
                "id": scenario.id,
                "name": scenario.name,
                "trigger_type": scenario.trigger_type.value,
                "enabled": scenario.enabled,
                "step_count": len(scenario.steps),
                "total_enrolled": summary["total_enrolled"],
                "active": summary["active"],
                "completed": summary["completed"],
                "exited": summary["exited"],
                "completion_rate": summary["completion_rate"],
            })
        return rows

    # ── Components ────────────────────────────────────────────

    @staticmethod
    def summarize(enrollments: list[Enrollment]) -> dict[str, Any]:
        counts = Counter(e.status for e in enrollments)
        total = len(enrollments)
        active = counts[EnrollmentStatus.ACTIVE]
        completed = counts[EnrollmentStatus.COMPLETED]
        exited = counts[EnrollmentStatus.EXITED]
        paused = counts[EnrollmentStatus.PAUSED]
        return {
            "total_enrolled": total,
            "active": active,
            "completed": completed,
            "exited": exited,
            "paused": paused,
            "completion_rate": rate(completed, total),
            "exit_rate": rate(exited, total),
            "active_rate": rate(active, total),
            "paused_rate": rate(paused, total),
        }

    @staticmethod
    def funnel(scenario: Scenario, enrollments: list[Enrollment],
               logs: list[StepLog]) -> list[dict[str, Any]]:
        reached_max: dict[str, int] = {}
        for log in logs:
            if log.step_type in (OPERATOR_STEP_TYPE, SYSTEM_STEP_TYPE):
                continue
            current = reached_max.get(log.enrollment_id, -1)
            reached_max[log.enrollment_id] = max(current, log.step_sort_order)

        def has_reached(e: Enrollment, position: int, step: Step) -> bool:
            if e.status == EnrollmentStatus.COMPLETED:
                return True
            if e.id in reached_max:
                return reached_max[e.id] >= step.sort_order
            # nothing executed yet: the step it is positioned on counts as reached
            return e.current_step_index >= position

        result = []
        for position, step in enumerate(scenario.ordered_steps()):
            reached = sum(1 for e in enrollments if has_reached(e, position, step))
            result.append({
                "sort_order": step.sort_order,
                "step_type": step.step_type,
                "label": step_label(step),
                "reached": reached,
            })
        return result

    @staticmethod
    def exit_reasons(enrollments: list[Enrollment]) -> dict[str, int]:
        counts = Counter(
            e.exit_reason.value if e.exit_reason else "unknown"
            for e in enrollments if e.status == EnrollmentStatus.EXITED
        )
        return dict(counts)

    @staticmethod
    def monthly_trend(enrollments: list[Enrollment], now: datetime) -> list[dict[str, Any]]:
        buckets = {key: {"month": key, "enrolled": 0, "completed": 0, "exited": 0}
                   for key in month_keys(now)}
        for e in enrollments:
            created = e.created_at.astimezone(timezone.utc) if e.created_at.tzinfo else e.created_at
            bucket = buckets.get(f"{created.year:04d}-{created.month:02d}")
            if bucket is None:
                continue
            bucket["enrolled"] += 1
            if e.status == EnrollmentStatus.COMPLETED:
                bucket["completed"] += 1
            elif e.status == EnrollmentStatus.EXITED:
                bucket["exited"] += 1
        return list(buckets.values())
