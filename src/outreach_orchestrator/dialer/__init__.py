"""Telephony / conversational agent collaborator adapters."""

from outreach_orchestrator.dialer.base import CallPlacer
from outreach_orchestrator.dialer.webhook import WebhookCallPlacer

__all__ = ["CallPlacer", "WebhookCallPlacer"]
