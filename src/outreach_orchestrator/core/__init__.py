"""Core modules: models, storage, config, errors."""

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.models import (
    Attempt,
    Contact,
    ContactProfile,
    DoNotContactRecord,
    Recipient,
    RoutingRule,
    Session,
)

__all__ = [
    "Settings",
    "Attempt",
    "Contact",
    "ContactProfile",
    "DoNotContactRecord",
    "Recipient",
    "RoutingRule",
    "Session",
]
