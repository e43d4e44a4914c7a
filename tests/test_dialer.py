"""Tests for the webhook call placer."""

from __future__ import annotations

import json

import httpx
import pytest

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.errors import ConfigurationError, ProviderError
from outreach_orchestrator.core.models import PlaceAttemptInstruction
from outreach_orchestrator.dialer.webhook import WebhookCallPlacer

WEBHOOK = "https://dialer.example.com/place"


def instruction() -> PlaceAttemptInstruction:
    return PlaceAttemptInstruction(
        organization_id="org_1",
        contact_id="contact_1",
        session_id="session_1",
        attempt_id="attempt_1",
        from_channel="+15550001000",
        to_channel="+12125550100",
        conversation_context={"first_name": "Dana"},
    )


def placer_with(handler, **settings) -> WebhookCallPlacer:
    config = Settings(dialer_webhook_url=WEBHOOK, **settings)
    return WebhookCallPlacer(config, transport=httpx.MockTransport(handler))


class TestWebhookCallPlacer:
    @pytest.mark.asyncio
    async def test_posts_instruction_and_parses_receipt(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"session_ref": "agent-9", "call_sid": "CA9"})

        placer = placer_with(handler, dialer_api_key="secret")
        receipt = await placer.place(instruction())
        await placer.close()

        assert receipt.agent_session_ref == "agent-9"
        assert receipt.call_ref == "CA9"
        assert seen["url"] == WEBHOOK
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["to_channel"] == "+12125550100"
        assert seen["body"]["conversation_context"] == {"first_name": "Dana"}

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        placer = placer_with(lambda request: httpx.Response(503))
        with pytest.raises(ProviderError) as exc_info:
            await placer.place(instruction())
        assert exc_info.value.retryable
        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self):
        placer = placer_with(lambda request: httpx.Response(422, json={"error": "bad number"}))
        with pytest.raises(ProviderError) as exc_info:
            await placer.place(instruction())
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        placer = placer_with(handler)
        with pytest.raises(ProviderError) as exc_info:
            await placer.place(instruction())
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_missing_session_reference(self):
        placer = placer_with(lambda request: httpx.Response(200, json={"ok": True}))
        with pytest.raises(ProviderError) as exc_info:
            await placer.place(instruction())
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unconfigured_url(self):
        placer = WebhookCallPlacer(Settings(dialer_webhook_url=""))
        assert not await placer.health_check()
        with pytest.raises(ConfigurationError):
            await placer.place(instruction())
