"""Tests for the HTTP collaborators: webhook client and LINE adapter (httpx mock transport)."""
import json

import httpx
import pytest
from channels.base import ChannelError
from channels.line_adapter import LineClient, LineMenuSwitcher, LineMessagingChannel
from channels.memory import InMemorySubjectDirectory
from channels.webhook import HttpWebhookClient
from config.settings import LineConfig
from models.schemas import OutboundMessage, RichMenu


class Recorder:
    """httpx.MockTransport handler that records requests and replays canned results."""

    def __init__(self, *results):
        self.results = list(results)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class TestHttpWebhookClient:
    @pytest.mark.asyncio
    async def test_posts_json(self):
        recorder = Recorder(httpx.Response(200))
        client = HttpWebhookClient(transport=httpx.MockTransport(recorder))
        response = await client.post("https://hooks.example.com/a", {"event": "x"}, headers={"X-Token": "t"})
        await client.close()

        assert response.reached
        assert response.status_code == 200
        assert response.reason == "OK"
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.headers["X-Token"] == "t"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"event": "x"}

    @pytest.mark.asyncio
    async def test_error_status_not_retried(self):
        recorder = Recorder(httpx.Response(503))
        client = HttpWebhookClient(max_attempts=3, backoff_max=0, transport=httpx.MockTransport(recorder))
        response = await client.post("https://hooks.example.com/a", {})
        assert response.status_code == 503
        assert response.reason == "Service Unavailable"
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_transport_error_single_attempt(self):
        recorder = Recorder(httpx.ConnectError("connection refused"))
        client = HttpWebhookClient(transport=httpx.MockTransport(recorder))
        response = await client.post("https://hooks.example.com/a", {})
        assert not response.reached
        assert "connection refused" in response.error
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_transport_error_retried_when_configured(self):
        recorder = Recorder(httpx.ConnectError("refused"), httpx.ConnectError("refused"), httpx.Response(204))
        client = HttpWebhookClient(max_attempts=3, backoff_max=0, transport=httpx.MockTransport(recorder))
        response = await client.post("https://hooks.example.com/a", {})
        assert response.status_code == 204
        assert len(recorder.requests) == 3


class TestLineAdapter:
    def _client(self, recorder):
        return LineClient(LineConfig(channel_access_token="secret"), transport=httpx.MockTransport(recorder))

    @pytest.mark.asyncio
    async def test_push_text(self):
        recorder = Recorder(httpx.Response(200, json={}))
        channel = LineMessagingChannel(self._client(recorder))
        await channel.send("U123", OutboundMessage(text="hello"))

        request = recorder.requests[0]
        assert request.url.path == "/v2/bot/message/push"
        assert request.headers["Authorization"] == "Bearer secret"
        assert json.loads(request.content) == {"to": "U123", "messages": [{"type": "text", "text": "hello"}]}

    @pytest.mark.asyncio
    async def test_push_flex(self):
        recorder = Recorder(httpx.Response(200, json={}))
        channel = LineMessagingChannel(self._client(recorder))
        await channel.send("U123", OutboundMessage(type="flex", alt_text="Coupon", contents={"type": "bubble"}))
        message = json.loads(recorder.requests[0].content)["messages"][0]
        assert message == {"type": "flex", "altText": "Coupon", "contents": {"type": "bubble"}}

    @pytest.mark.asyncio
    async def test_api_error_raises_channel_error(self):
        recorder = Recorder(httpx.Response(429, text="rate limited"))
        channel = LineMessagingChannel(self._client(recorder))
        with pytest.raises(ChannelError) as exc:
            await channel.send("U123", OutboundMessage(text="hello"))
        assert exc.value.retryable
        assert exc.value.channel == "line"

    @pytest.mark.asyncio
    async def test_unreachable(self):
        recorder = Recorder(httpx.ConnectTimeout("timed out"))
        channel = LineMessagingChannel(self._client(recorder))
        with pytest.raises(ChannelError, match="unreachable"):
            await channel.send("U123", OutboundMessage(text="hello"))

    @pytest.mark.asyncio
    async def test_switch_menu(self):
        recorder = Recorder(httpx.Response(200, json={}))
        menu = RichMenu(id=1, name="Member", line_rich_menu_id="richmenu-abc")
        switcher = LineMenuSwitcher(self._client(recorder), {1: menu})

        assert await switcher.get_menu(1) == menu
        assert await switcher.get_menu(2) is None
        await switcher.switch_menu("U123", menu)
        assert recorder.requests[0].url.path == "/v2/bot/user/U123/richmenu/richmenu-abc"

    @pytest.mark.asyncio
    async def test_switch_menu_without_line_id(self):
        switcher = LineMenuSwitcher(self._client(Recorder(httpx.Response(200))), {})
        with pytest.raises(ChannelError):
            await switcher.switch_menu("U123", RichMenu(id=7))


class TestInMemorySubjectDirectory:
    @pytest.mark.asyncio
    async def test_unknown_subject(self):
        ctx = await InMemorySubjectDirectory().get_subject("p-404")
        assert ctx.subject_id == "p-404"
        assert ctx.channel_id is None

    @pytest.mark.asyncio
    async def test_returns_copy(self, subjects):
        ctx = await subjects.get_subject("patient-1")
        ctx.custom_fields["rank"] = "changed"
        assert (await subjects.get_subject("patient-1")).custom_fields["rank"] == "VIP会員"
