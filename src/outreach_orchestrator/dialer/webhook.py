"""Webhook adapter: POST the place-attempt instruction to the collaborator."""

from __future__ import annotations

import logging

import httpx

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.errors import ConfigurationError, ProviderError
from outreach_orchestrator.core.models import PlaceAttemptInstruction, PlacementReceipt
from outreach_orchestrator.dialer.base import CallPlacer

logger = logging.getLogger(__name__)


class WebhookCallPlacer(CallPlacer):
    """Posts instructions as JSON; expects ``{"session_ref": ..., "call_ref": ...}`` back.

    5xx responses and connection errors are retryable, 4xx are not.
    """

    name = "webhook"

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.webhook_url = settings.dialer_webhook_url
        self.api_key = settings.dialer_api_key
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                headers=headers,
                timeout=self.settings.dialer_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def place(self, instruction: PlaceAttemptInstruction) -> PlacementReceipt:
        if not self.webhook_url:
            raise ConfigurationError("Dialer webhook URL not configured")

        try:
            resp = await self.client.post(self.webhook_url, json=instruction.model_dump(mode="json"))
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ProviderError(
                f"Dialer webhook error: {status}",
                retryable=status >= 500,
                status_code=status,
            ) from e
        except httpx.RequestError as e:
            raise ProviderError(f"Dialer connection error: {e}") from e

        session_ref = data.get("session_ref") or data.get("agent_session_ref") or data.get("id")
        if not session_ref:
            raise ProviderError("Dialer response missing session reference", retryable=False)

        logger.info(
            "Placed attempt %s for contact %s (session_ref=%s)",
            instruction.attempt_id, instruction.contact_id, session_ref,
        )
        return PlacementReceipt(
            agent_session_ref=str(session_ref),
            call_ref=data.get("call_ref") or data.get("call_sid"),
        )

    async def health_check(self) -> bool:
        return bool(self.webhook_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
