"""
Core data models for the StepFlow engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class TriggerType(str, Enum):
    FOLLOW = "follow"
    TAG_ADD = "tag_add"
    KEYWORD = "keyword"
    MANUAL = "manual"


class KeywordMatch(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    REGEX = "regex"


class StepType(str, Enum):
    SEND_MESSAGE = "send_message"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    SWITCH_RICHMENU = "switch_richmenu"
    WAIT = "wait"
    CONDITION = "condition"
    WEBHOOK = "webhook"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXITED = "exited"
    PAUSED = "paused"


OPEN_STATUSES = (EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED)


class ExitReason(str, Enum):
    BLOCKED = "blocked"
    TAG_REMOVED = "tag_removed"
    MANUAL = "manual"
    CONDITION_FAILED = "condition_failed"
    SCENARIO_DISABLED = "scenario_disabled"
    STEP_FAILED = "step_failed"


class StepOutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    WAITING = "waiting"


class EventType(str, Enum):
    FOLLOW = "follow"
    TAG_ADD = "tag_add"
    TAG_REMOVE = "tag_remove"
    KEYWORD = "keyword"
    BLOCK = "block"
    UNFOLLOW = "unfollow"


class TagMatch(str, Enum):
    ANY_INCLUDE = "any_include"
    ALL_INCLUDE = "all_include"
    ANY_EXCLUDE = "any_exclude"               # passes only if the subject has none of the tags
    ALL_EXCLUDE = "all_exclude"               # passes unless the subject has every tag


class DelayUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


DELAY_UNIT_MINUTES = {DelayUnit.MINUTES: 1, DelayUnit.HOURS: 60, DelayUnit.DAYS: 1440}


# ──────────────────────────────────────────────────────────────
#  Step configuration (one model per step_type)
# ──────────────────────────────────────────────────────────────

class SendMessageConfig(BaseModel):
    message_type: str = "text"                # "text" | "template"
    text: Optional[str] = None
    template_id: Optional[int] = None


class TagConfig(BaseModel):
    tag_id: Optional[int] = None


class RichMenuConfig(BaseModel):
    menu_id: Optional[int] = None


class WaitConfig(BaseModel):
    duration_minutes: int = 0
    delay_type: Optional[DelayUnit] = None    # with delay_value, replaces duration_minutes
    delay_value: int = 0
    send_time: Optional[str] = None           # "HH:MM" wall clock in the engine timezone

    def total_minutes(self) -> int:
        if self.delay_type is None:
            return self.duration_minutes
        return self.delay_value * DELAY_UNIT_MINUTES[self.delay_type]


class ConditionConfig(BaseModel):
    condition_type: Optional[str] = None      # "has_tag" | "tags" | "custom_field" | "all"
    tag_id: Optional[int] = None
    tag_ids: Optional[list[int]] = None
    tag_match: TagMatch = TagMatch.ANY_INCLUDE
    field_name: Optional[str] = None
    operator: Optional[str] = None            # eq | neq | contains | gt | lt
    value: Any = None
    rules: Optional[list[ConditionConfig]] = None   # "all": every rule must pass


class WebhookConfig(BaseModel):
    url: Optional[str] = None
    headers: dict[str, str] = {}


STEP_CONFIG_MODELS: dict[StepType, type[BaseModel]] = {
    StepType.SEND_MESSAGE: SendMessageConfig,
    StepType.ADD_TAG: TagConfig,
    StepType.REMOVE_TAG: TagConfig,
    StepType.SWITCH_RICHMENU: RichMenuConfig,
    StepType.WAIT: WaitConfig,
    StepType.CONDITION: ConditionConfig,
    StepType.WEBHOOK: WebhookConfig,
}


# ──────────────────────────────────────────────────────────────
#  Scenario / Step
# ──────────────────────────────────────────────────────────────

class Step(BaseModel):
    """One unit of work inside a scenario. ``step_type`` stays a plain
    string so that unknown types survive loading and fail at execution."""
    id: str = Field(default_factory=_new_id)
    scenario_id: str = ""
    sort_order: int
    step_type: str
    config: dict[str, Any] = {}

    def known_type(self) -> Optional[StepType]:
        try:
            return StepType(self.step_type)
        except ValueError:
            return None

    def typed_config(self) -> BaseModel:
        """Parse ``config`` into the model registered for this step type.

        Raises ``ValueError`` for unknown types and ``ValidationError`` for
        payloads that do not fit the model.
        """
        step_type = self.known_type()
        if step_type is None:
            raise ValueError(f"unknown step type: {self.step_type}")
        return STEP_CONFIG_MODELS[step_type].model_validate(self.config or {})


class Scenario(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_tag_id: Optional[int] = None
    trigger_keyword: Optional[str] = None
    keyword_match: KeywordMatch = KeywordMatch.EXACT
    enabled: bool = True
    steps: list[Step] = []
    total_enrolled: int = 0
    total_completed: int = 0
    created_at: datetime = Field(default_factory=_utcnow)

    def ordered_steps(self) -> list[Step]:
        return sorted(self.steps, key=lambda s: s.sort_order)


# ──────────────────────────────────────────────────────────────
#  Enrollment / StepLog
# ──────────────────────────────────────────────────────────────

class Enrollment(BaseModel):
    """One subject's run through one scenario."""
    id: str = Field(default_factory=_new_id)
    scenario_id: str
    subject_id: str
    current_step_index: int = 0
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    exit_reason: Optional[ExitReason] = None
    next_due_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None
    version: int = 0
    claimed_by: Optional[str] = None
    claim_expires_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


class StepLog(BaseModel):
    """Append-only record of one step execution (or operator action)."""
    id: str = Field(default_factory=_new_id)
    enrollment_id: str
    scenario_id: str = ""
    step_sort_order: int
    step_type: str
    outcome: StepOutcomeStatus
    detail: str = ""
    executed_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Collaborator payloads
# ──────────────────────────────────────────────────────────────

class SubjectContext(BaseModel):
    """Transient snapshot of the subject, rebuilt for every step."""
    subject_id: Optional[str] = None              # patient id
    channel_id: Optional[str] = None              # LINE user id
    display_name: Optional[str] = None
    custom_fields: dict[str, Any] = {}

    def snapshot(self) -> dict[str, Any]:
        return {
            "patient_id": self.subject_id,
            "line_user_id": self.channel_id,
            "name": self.display_name,
            "custom_fields": dict(self.custom_fields),
        }


class Tag(BaseModel):
    id: int
    name: str = ""


class MessageTemplate(BaseModel):
    id: int
    name: str = ""
    message_type: str = "text"                    # "text" | "flex"
    content: str = ""
    flex_content: Optional[dict[str, Any]] = None


class RichMenu(BaseModel):
    id: int
    name: str = ""
    line_rich_menu_id: str = ""


class OutboundMessage(BaseModel):
    type: str = "text"                            # "text" | "flex"
    text: str = ""
    alt_text: str = ""
    contents: Optional[dict[str, Any]] = None

    def to_line(self) -> dict[str, Any]:
        if self.type == "flex":
            return {"type": "flex", "altText": self.alt_text or self.text, "contents": self.contents}
        return {"type": "text", "text": self.text}
