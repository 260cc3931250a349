"""Shared test fixtures for StepFlow."""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from models.schemas import (
    MessageTemplate, RichMenu, Scenario, Step, SubjectContext, Tag, TriggerType,
)
from channels.memory import (
    InMemoryMenuSwitcher, InMemoryMessaging, InMemorySubjectDirectory,
    InMemoryTagStore, InMemoryTemplateStore, InMemoryWebhookClient,
)
from core.executor import StepExecutor
from context.state_machine import EnrollmentStateMachine
from database.store_memory import InMemoryEnrollmentStore
from rules.engine import TriggerDispatcher
from backend.scheduler import ResumptionScheduler
from core.stats import StatsAggregator


BASE_TIME = datetime(2026, 1, 15, 3, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock injected wherever the engine asks for 'now'."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def subject() -> SubjectContext:
    return SubjectContext(
        subject_id="patient-1",
        channel_id="U1234567890",
        display_name="Tanaka",
        custom_fields={"rank": "VIP会員", "visits": 5, "score": "abc"},
    )


@pytest.fixture
def messaging() -> InMemoryMessaging:
    return InMemoryMessaging()


@pytest.fixture
def tags() -> InMemoryTagStore:
    store = InMemoryTagStore([Tag(id=1, name="new-patient"), Tag(id=2, name="vip"), Tag(id=3, name="campaign")])
    store.assignments["patient-1"].add(2)
    return store


@pytest.fixture
def menus() -> InMemoryMenuSwitcher:
    return InMemoryMenuSwitcher([RichMenu(id=1, name="Member menu", line_rich_menu_id="richmenu-abc")])


@pytest.fixture
def templates() -> InMemoryTemplateStore:
    return InMemoryTemplateStore([
        MessageTemplate(id=10, name="welcome", content="Welcome {name} ({patient_id})"),
        MessageTemplate(id=11, name="coupon", message_type="flex", content="Coupon for {name}",
                        flex_content={"type": "bubble", "body": {"type": "box"}}),
    ])


@pytest.fixture
def subjects(subject) -> InMemorySubjectDirectory:
    return InMemorySubjectDirectory([
        subject,
        SubjectContext(subject_id="patient-2", channel_id="U2", display_name="Sato"),
        SubjectContext(subject_id="patient-3", channel_id="U3", display_name="Suzuki"),
    ])


class FlakySubjectDirectory(InMemorySubjectDirectory):
    """Raises on the n-th lookup, like a directory that drops a connection."""

    def __init__(self, subjects, fail_on_call: Optional[int] = None):
        super().__init__(subjects)
        self.calls = 0
        self.fail_on_call = fail_on_call

    async def get_subject(self, subject_id):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise RuntimeError("subject directory unavailable")
        return await super().get_subject(subject_id)


@pytest.fixture
def flaky_subjects(subject) -> FlakySubjectDirectory:
    return FlakySubjectDirectory([
        subject,
        SubjectContext(subject_id="patient-2", channel_id="U2", display_name="Sato"),
    ])


@pytest.fixture
def webhooks() -> InMemoryWebhookClient:
    return InMemoryWebhookClient()


@pytest.fixture
def executor(messaging, tags, menus, templates, webhooks, clock) -> StepExecutor:
    return StepExecutor(messaging, tags, menus, templates, webhooks, clock=clock)


@pytest.fixture
def store() -> InMemoryEnrollmentStore:
    return InMemoryEnrollmentStore()


@pytest.fixture
def state_machine(store, executor, subjects, clock) -> EnrollmentStateMachine:
    return EnrollmentStateMachine(store, executor, subjects, clock=clock)


@pytest.fixture
def dispatcher(store, state_machine, clock) -> TriggerDispatcher:
    return TriggerDispatcher(store, state_machine, clock=clock)


@pytest.fixture
def scheduler(store, state_machine, clock) -> ResumptionScheduler:
    return ResumptionScheduler(store, state_machine, interval_s=1, batch_size=50, clock=clock)


@pytest.fixture
def aggregator(store, clock) -> StatsAggregator:
    return StatsAggregator(store, clock)


def make_steps(*specs: tuple[str, dict[str, Any]]) -> list[Step]:
    return [Step(sort_order=i, step_type=t, config=c) for i, (t, c) in enumerate(specs)]


@pytest.fixture
def make_scenario():
    """Factory: make_scenario(("send_message", {...}), ("wait", {...}), trigger_type=...)."""
    def factory(*specs: tuple[str, dict[str, Any]], **kwargs) -> Scenario:
        kwargs.setdefault("name", "Onboarding")
        kwargs.setdefault("trigger_type", TriggerType.MANUAL)
        return Scenario(steps=make_steps(*specs), **kwargs)
    return factory


@pytest.fixture
def onboarding(make_scenario) -> Scenario:
    """message → wait 1 day → tag → message: the common shape of a follow scenario."""
    return make_scenario(
        ("send_message", {"message_type": "text", "text": "Hello {name}"}),
        ("wait", {"duration_minutes": 1440}),
        ("add_tag", {"tag_id": 1}),
        ("send_message", {"message_type": "template", "template_id": 10}),
        name="Follow onboarding",
        trigger_type=TriggerType.FOLLOW,
    )
