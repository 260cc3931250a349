"""
In-memory collaborators for development and tests.

Each class records what it was asked to do so tests can assert on the
side effects (``sent``, ``switched``, ``posted``) without patching.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Optional

import structlog

from channels.base import (
    ChannelError, MenuSwitcher, MessagingChannel, SubjectDirectory,
    TagStore, TemplateStore, WebhookClient, WebhookResponse,
)
from models.schemas import MessageTemplate, OutboundMessage, RichMenu, SubjectContext, Tag

logger = structlog.get_logger()


class InMemoryMessaging(MessagingChannel):

    def __init__(self, fail_with: Optional[str] = None):
        self.sent: list[tuple[str, OutboundMessage]] = []
        self.fail_with = fail_with

    async def send(self, channel_id: str, message: OutboundMessage) -> None:
        if self.fail_with:
            raise ChannelError(self.fail_with, channel="memory")
        self.sent.append((channel_id, message))
        logger.debug("memory_message_sent", to=channel_id, type=message.type)


class InMemoryTagStore(TagStore):

    def __init__(self, tags: Optional[list[Tag]] = None,
                 assignments: Optional[dict[str, set[int]]] = None):
        self.tags: dict[int, Tag] = {t.id: t for t in (tags or [])}
        self.assignments: dict[str, set[int]] = defaultdict(set)
        for subject_id, tag_ids in (assignments or {}).items():
            self.assignments[subject_id].update(tag_ids)

    def define(self, tag_id: int, name: str = "") -> Tag:
        tag = Tag(id=tag_id, name=name or f"tag-{tag_id}")
        self.tags[tag_id] = tag
        return tag

    async def get_tag(self, tag_id: int) -> Optional[Tag]:
        return self.tags.get(tag_id)

    async def has_tag(self, subject_id: str, tag_id: int) -> bool:
        return tag_id in self.assignments.get(subject_id, set())

    async def add_tag(self, subject_id: str, tag_id: int) -> None:
        self.assignments[subject_id].add(tag_id)

    async def remove_tag(self, subject_id: str, tag_id: int) -> None:
        self.assignments[subject_id].discard(tag_id)


class InMemoryMenuSwitcher(MenuSwitcher):

    def __init__(self, menus: Optional[list[RichMenu]] = None):
        self.menus: dict[int, RichMenu] = {m.id: m for m in (menus or [])}
        self.switched: list[tuple[str, int]] = []

    async def get_menu(self, menu_id: int) -> Optional[RichMenu]:
        return self.menus.get(menu_id)

    async def switch_menu(self, channel_id: str, menu: RichMenu) -> None:
        self.switched.append((channel_id, menu.id))


class InMemoryTemplateStore(TemplateStore):

    def __init__(self, templates: Optional[list[MessageTemplate]] = None):
        self.templates: dict[int, MessageTemplate] = {t.id: t for t in (templates or [])}

    async def get_template(self, template_id: int) -> Optional[MessageTemplate]:
        return self.templates.get(template_id)


class InMemorySubjectDirectory(SubjectDirectory):

    def __init__(self, subjects: Optional[list[SubjectContext]] = None):
        self.subjects: dict[str, SubjectContext] = {
            s.subject_id: s for s in (subjects or []) if s.subject_id
        }

    def put(self, subject: SubjectContext) -> None:
        self.subjects[subject.subject_id] = subject

    async def get_subject(self, subject_id: str) -> SubjectContext:
        subject = self.subjects.get(subject_id)
        if subject is None:
            return SubjectContext(subject_id=subject_id)
        return subject.model_copy(deep=True)


class InMemoryWebhookClient(WebhookClient):
    """Returns a canned status (or transport error) and records the call."""

    def __init__(self, status_code: int = 200, reason: str = "OK", error: str = ""):
        self.status_code = status_code
        self.reason = reason
        self.error = error
        self.posted: list[dict[str, Any]] = []

    async def post(
        self,
        url: str,
        json_body: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> WebhookResponse:
        self.posted.append({"url": url, "body": json_body, "headers": headers or {}, "timeout": timeout})
        if self.error:
            return WebhookResponse(error=self.error)
        return WebhookResponse(status_code=self.status_code, reason=self.reason)
