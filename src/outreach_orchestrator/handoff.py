"""Functions the conversational agent calls mid-conversation.

Routing failures come back as structured signals with a line the agent can
say aloud, never as errors the agent has to interpret.
"""

from __future__ import annotations

import logging
from typing import Any

from outreach_orchestrator.compliance import normalize_phone
from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.errors import (
    NoAvailableRecipient,
    NoMatchingRule,
    NotFoundError,
    TransitionError,
)
from outreach_orchestrator.core.models import (
    ContactLookup,
    ContactLookupResult,
    HandoffInstruction,
    HandoffRequest,
    Recipient,
    RoutingContext,
    RoutingResponse,
    Session,
)
from outreach_orchestrator.core.storage import Storage
from outreach_orchestrator.profiles import resolve_profile
from outreach_orchestrator.routing.engine import (
    SIGNAL_NO_AVAILABLE_RECIPIENT,
    SIGNAL_NO_MATCHING_RULE,
    SIGNAL_ROUTED,
    RoutingEngine,
)
from outreach_orchestrator.session_machine import SessionStateMachine

logger = logging.getLogger(__name__)

NO_RECIPIENT_LINE = (
    "All of our specialists are currently helping other customers. "
    "Would you like to schedule a callback or leave a message?"
)
NO_RULE_LINE = (
    "I want to make sure you reach the right person. "
    "Let me have someone from the team call you back shortly."
)
VOICEMAIL_LINE = (
    "Our team is away from their desks right now. "
    "I can take a message and make sure it gets to the right person."
)

# Qualification fact -> sentence for the recipient brief
_BRIEF_FIELDS: list[tuple[str, str]] = [
    ("vehicle_interest", "Interested in {}."),
    ("category", "Interested in {}."),
    ("timeline", "Timeline: {}."),
    ("payment_method", "Payment method: {}."),
    ("budget", "Budget: {}."),
]


def conference_name(session_id: str) -> str:
    return f"handoff-{session_id}"


def build_brief(recipient: Recipient, qualification: dict[str, Any]) -> str:
    """Short spoken brief for the recipient before the contact is connected."""
    parts = [f"Hi {recipient.first_name}, this is the assistant."]
    seen: set[str] = set()
    for key, template in _BRIEF_FIELDS:
        value = qualification.get(key)
        if value in (None, "") or template in seen:
            continue
        seen.add(template)
        parts.append(template.format(value))
    if "trade_in" in qualification and qualification["trade_in"] is not None:
        parts.append("Has a trade-in." if qualification["trade_in"] else "No trade-in.")
    parts.append("Ready for me to connect them?")
    return " ".join(parts)


def build_agent_script(recipient: Recipient) -> str:
    specialty = f", who works in {recipient.department}" if recipient.department else ""
    return (
        f"Great! I have {recipient.display_name} on the line{specialty}. "
        f"{recipient.first_name} can help you with next steps. Let me connect you now."
    )


class AgentTools:
    def __init__(self, db: Storage, settings: Settings | None = None):
        self.db = db
        self.settings = settings or Settings()
        self.engine = RoutingEngine(db, self.settings)
        self.sessions = SessionStateMachine(db, self.settings)

    async def query_routing(self, context: RoutingContext) -> RoutingResponse:
        try:
            target = await self.engine.route(context)
        except NoMatchingRule:
            return RoutingResponse(
                found=False,
                signal=SIGNAL_NO_MATCHING_RULE,
                message="No routing rule matches this conversation",
                fallback_message=NO_RULE_LINE,
            )
        except NoAvailableRecipient:
            return RoutingResponse(
                found=False,
                signal=SIGNAL_NO_AVAILABLE_RECIPIENT,
                message="No available representative found",
                fallback_message=NO_RECIPIENT_LINE,
            )

        if target.recipient is None:
            return RoutingResponse(
                found=True,
                signal=SIGNAL_ROUTED,
                target=target,
                message="Route to voicemail",
                fallback_message=VOICEMAIL_LINE,
            )

        recipient = target.recipient
        where = f" in {recipient.department}" if recipient.department else ""
        return RoutingResponse(
            found=True,
            signal=SIGNAL_ROUTED,
            target=target,
            message=f"Routing to {recipient.display_name}{where}",
        )

    async def execute_handoff(self, request: HandoffRequest) -> HandoffInstruction:
        """Start a warm handoff of ``request.session_id`` to the recipient.

        The session moves to ``transferring``; completion is confirmed later
        through the handoff callback.
        """
        session = await self.sessions.get(request.session_id)
        recipient = await self.db.get_recipient(request.recipient_id)
        if recipient is None or recipient.organization_id != session.organization_id:
            raise NotFoundError("recipient", request.recipient_id)
        if not recipient.is_available:
            raise TransitionError(
                f"Recipient {recipient.id} is not accepting handoffs",
                recipient_id=recipient.id,
            )

        qualification = dict(session.metadata.get("qualification", {}))
        qualification.update(request.qualification)
        if request.qualification:
            session = await self.sessions.record_qualification(session.id, request.qualification)

        updated = await self.sessions.mark_transferring(session.id, recipient.id)
        brief = request.brief_message or build_brief(recipient, qualification)
        logger.info(
            "Handoff of session %s to %s (%s) started",
            session.id, recipient.id, recipient.display_name,
        )
        return HandoffInstruction(
            session_id=session.id,
            conference_name=conference_name(session.id),
            recipient=recipient,
            brief_message=brief,
            agent_script=build_agent_script(recipient),
            session=updated,
        )

    async def log_qualification(self, session_id: str, facts: dict[str, Any]) -> Session:
        session = await self.sessions.record_qualification(session_id, facts)
        logger.info("Qualification logged for session %s: %s", session_id, sorted(facts))
        return session

    async def lookup_contact(self, lookup: ContactLookup) -> ContactLookupResult:
        """Contact context for the number on the line. An unknown number is not an error."""
        profile = await resolve_profile(self.db, lookup.organization_id, self.settings)
        phone = normalize_phone(lookup.phone)
        contact = (
            await self.db.find_contact_by_phone(lookup.organization_id, phone) if phone else None
        )
        if contact is None:
            logger.info("No contact on file for %s in %s", phone or lookup.phone, lookup.organization_id)
            return ContactLookupResult(
                found=False,
                timezone=profile.timezone,
                message="No existing contact record found",
            )

        latest = await self.db.get_latest_attempt(contact.id)
        return ContactLookupResult(
            found=True,
            contact=contact,
            attempt_number=latest.sequence_number if latest else None,
            timezone=profile.timezone,
            message=f"Found contact {contact.id}",
        )
