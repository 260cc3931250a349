"""
Step Executor — runs exactly one step and reports what happened.

    outcome = await executor.execute(step, context, hints={"enrollment_id": ...})

Each ``StepType`` has one handler in ``_handlers``. The table is checked
against the enum at construction, so a step type added to the model
without a handler fails at startup rather than falling through at run
time. Step types that are not in the enum at all (stale or hand-edited
rows) produce a failed outcome "unknown step type: <type>".

Handlers raise ``StepError`` subclasses for business failures; ``execute``
converts every error, including collaborator exceptions, into a failed
``StepOutcome``. Nothing raises past this module.

Error details always name the offending id ("template id=999 not found",
"tag id=5 not found") so StepLog rows are auditable on their own.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

import structlog
from pydantic import BaseModel, ValidationError

from channels.base import (
    ChannelError, MenuSwitcher, MessagingChannel, TagStore,
    TemplateStore, WebhookClient,
)
from core.errors import (
    MissingParameter, NotFoundError, ParameterError, ResponseError,
    StepError, TransportError,
)
from models.schemas import (
    ConditionConfig, OutboundMessage, RichMenuConfig, SendMessageConfig,
    Step, StepOutcomeStatus, StepType, SubjectContext, TagConfig,
    WaitConfig, WebhookConfig,
)
from utils.conditions import evaluate
from utils.timing import parse_send_time
from utils.variables import format_send_date, substitute

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StepOutcome:
    """Result of one step execution."""
    success: bool
    detail: str = ""
    waiting: bool = False
    skipped: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None
    wait_minutes: Optional[int] = None
    send_time: Optional[str] = None

    @classmethod
    def ok(cls, detail: str) -> StepOutcome:
        return cls(success=True, detail=detail)

    @classmethod
    def skip(cls, detail: str) -> StepOutcome:
        return cls(success=True, skipped=True, detail=detail)

    @classmethod
    def wait(cls, minutes: int, send_time: Optional[str] = None) -> StepOutcome:
        detail = f"waiting {minutes} minutes"
        if send_time:
            detail += f" (send at {send_time})"
        return cls(success=True, waiting=True, detail=detail,
                   wait_minutes=minutes, send_time=send_time)

    @classmethod
    def fail(cls, error: str, kind: str = "StepError") -> StepOutcome:
        return cls(success=False, detail=error, error=error, error_kind=kind)

    @property
    def status(self) -> StepOutcomeStatus:
        if not self.success:
            return StepOutcomeStatus.FAILURE
        if self.waiting:
            return StepOutcomeStatus.WAITING
        if self.skipped:
            return StepOutcomeStatus.SKIPPED
        return StepOutcomeStatus.SUCCESS

    def __bool__(self) -> bool:
        return self.success

    def __repr__(self) -> str:
        return f"<StepOutcome {self.status.value}: {self.detail}>"


Handler = Callable[[Any, SubjectContext, dict[str, Any]], Awaitable[StepOutcome]]


class StepExecutor:
    """
    Executes single steps against injected collaborators.

    Usage:
        executor = StepExecutor(messaging, tags, menus, templates, webhooks)
        outcome = await executor.execute(step, context)
    """

    def __init__(
        self,
        messaging: MessagingChannel,
        tags: TagStore,
        menus: MenuSwitcher,
        templates: TemplateStore,
        webhooks: WebhookClient,
        webhook_timeout: float = 10.0,
        webhook_accept_status: tuple[int, int] = (200, 399),
        timezone_name: str = "Asia/Tokyo",
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.messaging = messaging
        self.tags = tags
        self.menus = menus
        self.templates = templates
        self.webhooks = webhooks
        self.webhook_timeout = webhook_timeout
        self.webhook_accept_status = webhook_accept_status
        self.timezone_name = timezone_name
        self.clock = clock

        self._handlers: dict[StepType, Handler] = {
            StepType.SEND_MESSAGE: self._send_message,
            StepType.ADD_TAG: self._add_tag,
            StepType.REMOVE_TAG: self._remove_tag,
            StepType.SWITCH_RICHMENU: self._switch_richmenu,
            StepType.WAIT: self._wait,
            StepType.CONDITION: self._condition,
            StepType.WEBHOOK: self._webhook,
        }
        missing = set(StepType) - set(self._handlers)
        if missing:
            raise RuntimeError(
                f"no handler for step types: {sorted(t.value for t in missing)}"
            )

    async def execute(
        self,
        step: Step,
        context: SubjectContext,
        hints: Optional[dict[str, Any]] = None,
    ) -> StepOutcome:
        step_type = step.known_type()
        if step_type is None:
            outcome = StepOutcome.fail(f"unknown step type: {step.step_type}", "UnknownStepType")
        else:
            outcome = await self._run(step_type, step, context, hints or {})

        logger.info("step_executed",
                    step_type=step.step_type,
                    sort_order=step.sort_order,
                    subject_id=context.subject_id,
                    status=outcome.status.value,
                    detail=outcome.detail)
        return outcome

    async def _run(
        self,
        step_type: StepType,
        step: Step,
        context: SubjectContext,
        hints: dict[str, Any],
    ) -> StepOutcome:
        try:
            config = step.typed_config()
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            return StepOutcome.fail(
                f"invalid {step_type.value} config (fields: {fields})", ParameterError.kind,
            )

        try:
            return await self._handlers[step_type](config, context, hints)
        except StepError as e:
            return StepOutcome.fail(str(e), e.kind)
        except Exception as e:
            logger.error("step_handler_crashed",
                         step_type=step_type.value, error=str(e), exc_info=True)
            return StepOutcome.fail(f"{step_type.value} failed: {type(e).__name__}: {e}", "InternalError")

    # ── Handlers ──────────────────────────────────────────────

    async def _send_message(self, config: SendMessageConfig, context: SubjectContext,
                            hints: dict[str, Any]) -> StepOutcome:
        if not context.channel_id:
            raise MissingParameter("channel id (LINE user id) missing on subject context")

        message = await self._resolve_message(config, context)
        try:
            await self.messaging.send(context.channel_id, message)
        except ChannelError as e:
            raise TransportError(f"message send failed: {e}") from e
        return StepOutcome.ok("message sent")

    async def _resolve_message(self, config: SendMessageConfig,
                               context: SubjectContext) -> OutboundMessage:
        local_now = self.clock().astimezone(ZoneInfo(self.timezone_name))
        extra = {"send_date": format_send_date(local_now)}

        if config.message_type == "template":
            if config.template_id is None:
                raise MissingParameter("template id missing")
            template = await self.templates.get_template(config.template_id)
            if template is None:
                raise NotFoundError(f"template id={config.template_id} not found")
            if template.message_type == "flex" and template.flex_content:
                alt = substitute(template.content or template.name, context, extra)
                return OutboundMessage(type="flex", alt_text=alt or template.name,
                                       contents=template.flex_content)
            return OutboundMessage(text=substitute(template.content, context, extra))

        if not config.text:
            raise MissingParameter("message content not configured")
        return OutboundMessage(text=substitute(config.text, context, extra))

    async def _add_tag(self, config: TagConfig, context: SubjectContext,
                       hints: dict[str, Any]) -> StepOutcome:
        if not context.subject_id:
            raise MissingParameter("subject id missing")
        if config.tag_id is None:
            raise MissingParameter("tag id missing")

        tag = await self.tags.get_tag(config.tag_id)
        if tag is None:
            raise NotFoundError(f"tag id={config.tag_id} not found")
        try:
            await self.tags.add_tag(context.subject_id, config.tag_id)
        except ChannelError as e:
            raise TransportError(f"tag add failed (tag id={config.tag_id}): {e}") from e
        return StepOutcome.ok(f"tag added: {tag.name or tag.id} (tag id={tag.id})")

    async def _remove_tag(self, config: TagConfig, context: SubjectContext,
                          hints: dict[str, Any]) -> StepOutcome:
        if not context.subject_id:
            raise MissingParameter("subject id missing")
        if config.tag_id is None:
            raise MissingParameter("tag id missing")
        try:
            await self.tags.remove_tag(context.subject_id, config.tag_id)
        except ChannelError as e:
            raise TransportError(f"tag remove failed (tag id={config.tag_id}): {e}") from e
        return StepOutcome.ok(f"tag removed (tag id={config.tag_id})")

    async def _switch_richmenu(self, config: RichMenuConfig, context: SubjectContext,
                               hints: dict[str, Any]) -> StepOutcome:
        if not context.channel_id:
            raise MissingParameter("channel id (LINE user id) missing on subject context")
        if config.menu_id is None:
            raise MissingParameter("menu id missing")

        menu = await self.menus.get_menu(config.menu_id)
        if menu is None:
            raise NotFoundError(f"rich menu id={config.menu_id} not found")
        try:
            await self.menus.switch_menu(context.channel_id, menu)
        except ChannelError as e:
            raise TransportError(f"rich menu switch failed (menu id={menu.id}): {e}") from e
        return StepOutcome.ok(f"rich menu switched: {menu.name or menu.id} (menu id={menu.id})")

    async def _wait(self, config: WaitConfig, context: SubjectContext,
                    hints: dict[str, Any]) -> StepOutcome:
        minutes = config.total_minutes()
        if minutes < 0:
            raise ParameterError(f"wait duration must be >= 0 minutes (got {minutes})")
        if config.send_time:
            parse_send_time(config.send_time)
        return StepOutcome.wait(minutes, config.send_time)

    async def _condition(self, config: ConditionConfig, context: SubjectContext,
                         hints: dict[str, Any]) -> StepOutcome:
        if not context.subject_id:
            raise MissingParameter("subject id missing")

        result = await evaluate(config, context, self.tags)
        if result.error is not None:
            raise result.error
        if result.passed:
            return StepOutcome.ok(f"condition met ({config.condition_type})")
        return StepOutcome.skip(f"condition not met ({config.condition_type})")

    async def _webhook(self, config: WebhookConfig, context: SubjectContext,
                       hints: dict[str, Any]) -> StepOutcome:
        if not config.url:
            raise MissingParameter("webhook URL not configured")

        body = {
            "event": "workflow_webhook",
            "trigger_data": {**context.snapshot(), **hints},
            "timestamp": self.clock().isoformat(),
        }
        try:
            response = await self.webhooks.post(
                config.url, body, headers=config.headers, timeout=self.webhook_timeout,
            )
        except ChannelError as e:
            raise TransportError(f"webhook send failed: {e}") from e

        if not response.reached:
            raise TransportError(f"webhook send failed: {response.error}")

        low, high = self.webhook_accept_status
        if not low <= response.status_code <= high:
            raise ResponseError(
                f"webhook response error: {response.status_code} {response.reason}".rstrip(),
                status_code=response.status_code,
            )
        return StepOutcome.ok(f"webhook sent: {config.url} ({response.status_code})")
