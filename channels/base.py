"""
Collaborator interfaces consumed by the engine.

The engine never embeds a transport, tag store or menu service. It is
handed implementations of these ABCs at construction time:

  MessagingChannel   send a message to a channel user
  TagStore           query / attach / detach subject tags
  MenuSwitcher       look up a rich menu and link it to a channel user
  TemplateStore      resolve a message template by id
  SubjectDirectory   assemble a fresh SubjectContext for a subject
  WebhookClient      one HTTP POST with a bounded timeout

Implementations:
  channels/line_adapter.py   LINE Messaging API (httpx)
  channels/webhook.py        HttpWebhookClient (httpx + tenacity)
  channels/memory.py         in-memory doubles for development and tests
"""
from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Optional

from models.schemas import MessageTemplate, OutboundMessage, RichMenu, SubjectContext, Tag


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all collaborator operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  INTERFACES
# ══════════════════════════════════════════════════════════════

class MessagingChannel(abc.ABC):

    @abc.abstractmethod
    async def send(self, channel_id: str, message: OutboundMessage) -> None:
        """Deliver (or enqueue) one message. Raises ChannelError on failure."""
        ...


class TagStore(abc.ABC):

    @abc.abstractmethod
    async def get_tag(self, tag_id: int) -> Optional[Tag]: ...

    @abc.abstractmethod
    async def has_tag(self, subject_id: str, tag_id: int) -> bool: ...

    @abc.abstractmethod
    async def add_tag(self, subject_id: str, tag_id: int) -> None: ...

    @abc.abstractmethod
    async def remove_tag(self, subject_id: str, tag_id: int) -> None: ...


class MenuSwitcher(abc.ABC):

    @abc.abstractmethod
    async def get_menu(self, menu_id: int) -> Optional[RichMenu]: ...

    @abc.abstractmethod
    async def switch_menu(self, channel_id: str, menu: RichMenu) -> None: ...


class TemplateStore(abc.ABC):

    @abc.abstractmethod
    async def get_template(self, template_id: int) -> Optional[MessageTemplate]: ...


class SubjectDirectory(abc.ABC):

    @abc.abstractmethod
    async def get_subject(self, subject_id: str) -> SubjectContext:
        """Return a fresh snapshot. Unknown subjects yield a context with
        only ``subject_id`` set."""
        ...


@dataclass
class WebhookResponse:
    """Result of one webhook POST.

    ``status_code`` is None when the remote was never reached, in which
    case ``error`` carries the transport failure text.
    """
    status_code: Optional[int] = None
    reason: str = ""
    error: str = ""

    @property
    def reached(self) -> bool:
        return self.status_code is not None


class WebhookClient(abc.ABC):

    @abc.abstractmethod
    async def post(
        self,
        url: str,
        json_body: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> WebhookResponse: ...
