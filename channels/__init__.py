"""Collaborator interfaces and adapters consumed by the step engine."""
from channels.base import (
    ChannelError,
    MessagingChannel,
    TagStore,
    MenuSwitcher,
    TemplateStore,
    SubjectDirectory,
    WebhookClient,
    WebhookResponse,
)
from channels.webhook import HttpWebhookClient
from channels.line_adapter import LineClient, LineMessagingChannel, LineMenuSwitcher
from channels.memory import (
    InMemoryMessaging,
    InMemoryTagStore,
    InMemoryMenuSwitcher,
    InMemoryTemplateStore,
    InMemorySubjectDirectory,
    InMemoryWebhookClient,
)

__all__ = [
    "ChannelError", "MessagingChannel", "TagStore", "MenuSwitcher",
    "TemplateStore", "SubjectDirectory", "WebhookClient", "WebhookResponse",
    "HttpWebhookClient",
    "LineClient", "LineMessagingChannel", "LineMenuSwitcher",
    "InMemoryMessaging", "InMemoryTagStore", "InMemoryMenuSwitcher",
    "InMemoryTemplateStore", "InMemorySubjectDirectory", "InMemoryWebhookClient",
]
