"""
LINE Messaging API adapter.

Implements MessagingChannel (push message) and MenuSwitcher (link a rich
menu to a user) against https://api.line.me. Rich menu definitions are
resolved through a caller-supplied catalog, since the menu ids the
engine stores are local ids mapped to LINE's ``richmenu-...`` ids.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

import httpx
import structlog

from channels.base import ChannelError, MenuSwitcher, MessagingChannel
from config.settings import LineConfig
from models.schemas import OutboundMessage, RichMenu

logger = structlog.get_logger()


class LineClient:
    """Thin httpx wrapper holding the channel access token."""

    def __init__(self, config: LineConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.api_base,
                headers={"Authorization": f"Bearer {self.config.channel_access_token}"},
                timeout=15.0,
                transport=self._transport,
            )
        return self.client

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise ChannelError(f"LINE API unreachable: {e}", channel="line", retryable=True) from e
        if response.status_code >= 400:
            raise ChannelError(
                f"LINE API error: {response.status_code} {response.text[:200]}",
                channel="line",
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        return response

    async def close(self):
        if self.client:
            await self.client.aclose()


class LineMessagingChannel(MessagingChannel):

    def __init__(self, client: LineClient):
        self.client = client

    async def send(self, channel_id: str, message: OutboundMessage) -> None:
        payload: dict[str, Any] = {"to": channel_id, "messages": [message.to_line()]}
        await self.client.request("POST", "/v2/bot/message/push", json=payload)
        logger.info("line_message_pushed", to=channel_id, type=message.type)


class LineMenuSwitcher(MenuSwitcher):

    def __init__(self, client: LineClient, menus: Mapping[int, RichMenu]):
        self.client = client
        self.menus = menus

    async def get_menu(self, menu_id: int) -> Optional[RichMenu]:
        return self.menus.get(menu_id)

    async def switch_menu(self, channel_id: str, menu: RichMenu) -> None:
        if not menu.line_rich_menu_id:
            raise ChannelError(f"rich menu id={menu.id} has no LINE rich menu id", channel="line")
        await self.client.request(
            "POST", f"/v2/bot/user/{channel_id}/richmenu/{menu.line_rich_menu_id}",
        )
        logger.info("line_richmenu_linked", to=channel_id, menu_id=menu.id)
