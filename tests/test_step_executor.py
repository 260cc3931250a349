"""Tests for the Step Executor — one step, one outcome, never raises."""
import pytest
from unittest.mock import AsyncMock

from channels.base import ChannelError
from channels.memory import InMemoryMessaging, InMemoryWebhookClient
from core.executor import StepExecutor, StepOutcome
from models.schemas import Step, StepOutcomeStatus, SubjectContext


def _step(step_type, **config):
    return Step(sort_order=0, step_type=step_type, config=config)


class TestStepOutcome:
    def test_status_mapping(self):
        assert StepOutcome.ok("x").status == StepOutcomeStatus.SUCCESS
        assert StepOutcome.skip("x").status == StepOutcomeStatus.SKIPPED
        assert StepOutcome.wait(5).status == StepOutcomeStatus.WAITING
        assert StepOutcome.fail("x").status == StepOutcomeStatus.FAILURE

    def test_wait_detail(self):
        assert StepOutcome.wait(60).detail == "waiting 60 minutes"
        assert StepOutcome.wait(1440, "10:00").detail == "waiting 1440 minutes (send at 10:00)"

    def test_bool(self):
        assert StepOutcome.ok("x")
        assert not StepOutcome.fail("x")


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_text_with_placeholders(self, executor, messaging, subject):
        outcome = await executor.execute(
            _step("send_message", message_type="text", text="Hi {name} ({send_date})"), subject,
        )
        assert outcome.success
        assert outcome.detail == "message sent"
        channel_id, message = messaging.sent[0]
        assert channel_id == "U1234567890"
        # clock is 2026-01-15T03:00Z, which is 12:00 in Asia/Tokyo
        assert message.text == "Hi Tanaka (2026/01/15)"

    @pytest.mark.asyncio
    async def test_template(self, executor, messaging, subject):
        outcome = await executor.execute(
            _step("send_message", message_type="template", template_id=10), subject,
        )
        assert outcome.success
        assert messaging.sent[0][1].text == "Welcome Tanaka (patient-1)"

    @pytest.mark.asyncio
    async def test_flex_template(self, executor, messaging, subject):
        await executor.execute(_step("send_message", message_type="template", template_id=11), subject)
        message = messaging.sent[0][1]
        assert message.type == "flex"
        assert message.alt_text == "Coupon for Tanaka"
        assert message.to_line()["contents"]["type"] == "bubble"

    @pytest.mark.asyncio
    async def test_template_not_found(self, executor, messaging, subject):
        outcome = await executor.execute(
            _step("send_message", message_type="template", template_id=999), subject,
        )
        assert not outcome.success
        assert outcome.error == "template id=999 not found"
        assert outcome.error_kind == "NotFoundError"
        assert messaging.sent == []

    @pytest.mark.asyncio
    async def test_template_id_missing(self, executor, subject):
        outcome = await executor.execute(_step("send_message", message_type="template"), subject)
        assert outcome.error == "template id missing"
        assert outcome.error_kind == "MissingParameter"

    @pytest.mark.asyncio
    async def test_text_missing(self, executor, subject):
        outcome = await executor.execute(_step("send_message", message_type="text"), subject)
        assert outcome.error == "message content not configured"

    @pytest.mark.asyncio
    async def test_channel_id_missing(self, executor, messaging):
        outcome = await executor.execute(
            _step("send_message", text="hi"), SubjectContext(subject_id="p-1"),
        )
        assert not outcome.success
        assert "channel id" in outcome.error
        assert messaging.sent == []

    @pytest.mark.asyncio
    async def test_sends_exactly_once(self, executor, subject):
        executor.messaging = AsyncMock()
        await executor.execute(_step("send_message", text="hi"), subject)
        executor.messaging.send.assert_awaited_once()
        channel_id, message = executor.messaging.send.await_args.args
        assert channel_id == "U1234567890"
        assert message.text == "hi"

    @pytest.mark.asyncio
    async def test_transport_failure(self, tags, menus, templates, webhooks, clock, subject):
        executor = StepExecutor(InMemoryMessaging(fail_with="push rejected"), tags, menus,
                                templates, webhooks, clock=clock)
        outcome = await executor.execute(_step("send_message", text="hi"), subject)
        assert outcome.error == "message send failed: push rejected"
        assert outcome.error_kind == "TransportError"


class TestTags:
    @pytest.mark.asyncio
    async def test_add_tag(self, executor, tags, subject):
        outcome = await executor.execute(_step("add_tag", tag_id=1), subject)
        assert outcome.success
        assert outcome.detail == "tag added: new-patient (tag id=1)"
        assert await tags.has_tag("patient-1", 1)

    @pytest.mark.asyncio
    async def test_add_unknown_tag(self, executor, tags, subject):
        outcome = await executor.execute(_step("add_tag", tag_id=5), subject)
        assert outcome.error == "tag id=5 not found"
        assert not await tags.has_tag("patient-1", 5)

    @pytest.mark.asyncio
    async def test_add_tag_id_missing(self, executor, subject):
        outcome = await executor.execute(_step("add_tag"), subject)
        assert outcome.error == "tag id missing"

    @pytest.mark.asyncio
    async def test_remove_tag(self, executor, tags, subject):
        outcome = await executor.execute(_step("remove_tag", tag_id=2), subject)
        assert outcome.detail == "tag removed (tag id=2)"
        assert not await tags.has_tag("patient-1", 2)

    @pytest.mark.asyncio
    async def test_remove_absent_tag_succeeds(self, executor, subject):
        outcome = await executor.execute(_step("remove_tag", tag_id=3), subject)
        assert outcome.success

    @pytest.mark.asyncio
    async def test_subject_id_missing(self, executor):
        outcome = await executor.execute(_step("add_tag", tag_id=1), SubjectContext(channel_id="U1"))
        assert outcome.error == "subject id missing"


class TestRichMenu:
    @pytest.mark.asyncio
    async def test_switch(self, executor, menus, subject):
        outcome = await executor.execute(_step("switch_richmenu", menu_id=1), subject)
        assert outcome.detail == "rich menu switched: Member menu (menu id=1)"
        assert menus.switched == [("U1234567890", 1)]

    @pytest.mark.asyncio
    async def test_unknown_menu(self, executor, menus, subject):
        outcome = await executor.execute(_step("switch_richmenu", menu_id=42), subject)
        assert outcome.error == "rich menu id=42 not found"
        assert menus.switched == []

    @pytest.mark.asyncio
    async def test_menu_id_missing(self, executor, subject):
        outcome = await executor.execute(_step("switch_richmenu"), subject)
        assert outcome.error == "menu id missing"


class TestWait:
    @pytest.mark.asyncio
    async def test_wait(self, executor, subject):
        outcome = await executor.execute(_step("wait", duration_minutes=1440), subject)
        assert outcome.waiting
        assert outcome.wait_minutes == 1440
        assert outcome.status == StepOutcomeStatus.WAITING

    @pytest.mark.asyncio
    async def test_zero_wait(self, executor, subject):
        outcome = await executor.execute(_step("wait", duration_minutes=0), subject)
        assert outcome.waiting
        assert outcome.wait_minutes == 0

    @pytest.mark.asyncio
    async def test_negative_wait(self, executor, subject):
        outcome = await executor.execute(_step("wait", duration_minutes=-5), subject)
        assert outcome.error == "wait duration must be >= 0 minutes (got -5)"
        assert outcome.error_kind == "ParameterError"

    @pytest.mark.asyncio
    async def test_bad_send_time(self, executor, subject):
        outcome = await executor.execute(_step("wait", duration_minutes=10, send_time="25:00"), subject)
        assert not outcome.success
        assert "send_time" in outcome.error

    @pytest.mark.asyncio
    async def test_delay_units(self, executor, subject):
        for unit, value, minutes in (('minutes', 30, 30), ('hours', 2, 120), ('days', 3, 4320)):
            outcome = await executor.execute(_step("wait", delay_type=unit, delay_value=value), subject)
            assert outcome.waiting
            assert outcome.wait_minutes == minutes
            assert outcome.detail == f"waiting {minutes} minutes"

    @pytest.mark.asyncio
    async def test_delay_unit_overrides_duration(self, executor, subject):
        outcome = await executor.execute(
            _step("wait", duration_minutes=5, delay_type="hours", delay_value=1), subject,
        )
        assert outcome.wait_minutes == 60

    @pytest.mark.asyncio
    async def test_unknown_delay_unit(self, executor, subject):
        outcome = await executor.execute(_step("wait", delay_type="weeks", delay_value=1), subject)
        assert not outcome.success
        assert outcome.error == "invalid wait config (fields: delay_type)"

    @pytest.mark.asyncio
    async def test_bad_config_type(self, executor, subject):
        outcome = await executor.execute(_step("wait", duration_minutes="soon"), subject)
        assert not outcome.success
        assert outcome.error == "invalid wait config (fields: duration_minutes)"


class TestCondition:
    @pytest.mark.asyncio
    async def test_met(self, executor, subject):
        outcome = await executor.execute(_step("condition", condition_type="has_tag", tag_id=2), subject)
        assert outcome.success
        assert not outcome.skipped
        assert outcome.detail == "condition met (has_tag)"

    @pytest.mark.asyncio
    async def test_not_met_is_skipped(self, executor, subject):
        outcome = await executor.execute(_step("condition", condition_type="has_tag", tag_id=3), subject)
        assert outcome.success
        assert outcome.skipped
        assert outcome.status == StepOutcomeStatus.SKIPPED
        assert outcome.detail == "condition not met (has_tag)"

    @pytest.mark.asyncio
    async def test_parameter_error_is_failure(self, executor, subject):
        outcome = await executor.execute(_step("condition", condition_type="custom_field"), subject)
        assert not outcome.success
        assert outcome.error == "condition field name missing"

    @pytest.mark.asyncio
    async def test_tag_rule_list(self, executor, subject):
        outcome = await executor.execute(_step(
            "condition", condition_type="all",
            rules=[{"condition_type": "tags", "tag_ids": [2, 3], "tag_match": "any_include"},
                   {"condition_type": "tags", "tag_ids": [1], "tag_match": "any_exclude"}],
        ), subject)
        assert outcome.success
        assert not outcome.skipped
        assert outcome.detail == "condition met (all)"

    @pytest.mark.asyncio
    async def test_unknown_condition_type(self, executor, subject):
        outcome = await executor.execute(_step("condition", condition_type="weather"), subject)
        assert outcome.error == "unknown condition type: weather"
        assert outcome.error_kind == "UnknownConditionType"


class TestWebhook:
    @pytest.mark.asyncio
    async def test_posts_snapshot_and_hints(self, executor, webhooks, subject):
        outcome = await executor.execute(
            _step("webhook", url="https://example.com/hook", headers={"X-Key": "k"}),
            subject, hints={"enrollment_id": "e-1", "step_order": 3},
        )
        assert outcome.success
        assert outcome.detail == "webhook sent: https://example.com/hook (200)"
        call = webhooks.posted[0]
        assert call["headers"] == {"X-Key": "k"}
        assert call["timeout"] == 10.0
        body = call["body"]
        assert body["event"] == "workflow_webhook"
        assert body["trigger_data"]["patient_id"] == "patient-1"
        assert body["trigger_data"]["line_user_id"] == "U1234567890"
        assert body["trigger_data"]["enrollment_id"] == "e-1"
        assert body["timestamp"].startswith("2026-01-15T03:00")

    @pytest.mark.asyncio
    async def test_url_missing(self, executor, webhooks, subject):
        outcome = await executor.execute(_step("webhook"), subject)
        assert outcome.error == "webhook URL not configured"
        assert webhooks.posted == []

    @pytest.mark.asyncio
    async def test_error_status(self, tags, menus, templates, messaging, clock, subject):
        hooks = InMemoryWebhookClient(status_code=500, reason="Internal Server Error")
        executor = StepExecutor(messaging, tags, menus, templates, hooks, clock=clock)
        outcome = await executor.execute(_step("webhook", url="https://example.com"), subject)
        assert outcome.error == "webhook response error: 500 Internal Server Error"
        assert outcome.error_kind == "ResponseError"
        assert len(hooks.posted) == 1

    @pytest.mark.asyncio
    async def test_redirect_status_accepted(self, tags, menus, templates, messaging, clock, subject):
        hooks = InMemoryWebhookClient(status_code=302, reason="Found")
        executor = StepExecutor(messaging, tags, menus, templates, hooks, clock=clock)
        outcome = await executor.execute(_step("webhook", url="https://example.com"), subject)
        assert outcome.success

    @pytest.mark.asyncio
    async def test_transport_error(self, tags, menus, templates, messaging, clock, subject):
        hooks = InMemoryWebhookClient(error="connection refused")
        executor = StepExecutor(messaging, tags, menus, templates, hooks, clock=clock)
        outcome = await executor.execute(_step("webhook", url="https://example.com"), subject)
        assert outcome.error == "webhook send failed: connection refused"
        assert outcome.error_kind == "TransportError"


class TestDispatch:
    @pytest.mark.asyncio
    async def test_unknown_step_type(self, executor, subject):
        outcome = await executor.execute(_step("send_fax", number="03"), subject)
        assert not outcome.success
        assert outcome.error == "unknown step type: send_fax"

    @pytest.mark.asyncio
    async def test_collaborator_crash_becomes_failure(self, executor, tags, subject):
        async def boom(subject_id, tag_id):
            raise RuntimeError("db down")
        tags.add_tag = boom
        outcome = await executor.execute(_step("add_tag", tag_id=1), subject)
        assert not outcome.success
        assert outcome.error_kind == "InternalError"
        assert "db down" in outcome.error

    @pytest.mark.asyncio
    async def test_channel_error_from_tags(self, executor, tags, subject):
        async def unavailable(subject_id, tag_id):
            raise ChannelError("tag service unavailable")
        tags.remove_tag = unavailable
        outcome = await executor.execute(_step("remove_tag", tag_id=1), subject)
        assert outcome.error_kind == "TransportError"
        assert "tag id=1" in outcome.error

    def test_every_step_type_has_a_handler(self, executor):
        from models.schemas import StepType
        assert set(executor._handlers) == set(StepType)
