"""Do-not-contact enforcement.

The gate fails closed: if the registry cannot be read the contact is treated
as suppressed and the trigger is aborted without retry.
"""

from __future__ import annotations

import logging

import phonenumbers

from outreach_orchestrator.core.errors import ComplianceLookupFailed, ComplianceViolation
from outreach_orchestrator.core.models import Channel, DoNotContactRecord, SuppressionScope
from outreach_orchestrator.core.storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_REGION = "US"


def normalize_phone(phone: str | None, region: str = DEFAULT_REGION) -> str | None:
    """E.164 form of ``phone``; unparseable input is returned stripped."""
    if not phone or not phone.strip():
        return None
    try:
        parsed = phonenumbers.parse(phone, region)
    except phonenumbers.NumberParseException:
        logger.debug("Could not parse phone %r, storing as given", phone)
        return phone.strip()
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def normalize_email(email: str | None) -> str | None:
    if not email or not email.strip():
        return None
    return email.strip().lower()


class ComplianceGate:
    """Checks the do-not-contact registry before any attempt."""

    def __init__(self, db: Storage):
        self.db = db

    async def find_block(
        self,
        organization_id: str,
        phone: str | None,
        email: str | None,
        channel: Channel = Channel.CALL,
    ) -> DoNotContactRecord | None:
        """Matching suppression record, or None when the contact is permitted.

        Raises ComplianceLookupFailed if the registry read fails.
        """
        try:
            return await self.db.find_do_not_contact(
                organization_id,
                normalize_phone(phone),
                normalize_email(email),
                channel,
            )
        except Exception as e:
            logger.exception(
                "compliance_event lookup_failed org=%s channel=%s; blocking",
                organization_id, channel.value,
            )
            raise ComplianceLookupFailed(organization_id, channel.value) from e

    async def is_permitted(
        self,
        organization_id: str,
        phone: str | None,
        email: str | None,
        channel: Channel = Channel.CALL,
    ) -> bool:
        try:
            record = await self.find_block(organization_id, phone, email, channel)
        except ComplianceLookupFailed:
            return False
        return record is None

    async def ensure_permitted(
        self,
        organization_id: str,
        phone: str | None,
        email: str | None,
        channel: Channel = Channel.CALL,
    ) -> None:
        record = await self.find_block(organization_id, phone, email, channel)
        if record is not None:
            logger.warning(
                "compliance_event blocked org=%s channel=%s record=%s scope=%s",
                organization_id, channel.value, record.id, record.scope.value,
            )
            raise ComplianceViolation(organization_id, channel.value)

    async def add_record(
        self,
        organization_id: str,
        phone: str | None = None,
        email: str | None = None,
        scope: SuppressionScope = SuppressionScope.ALL,
        reason: str | None = None,
    ) -> DoNotContactRecord:
        """Insert a suppression record. Takes effect on the next gate evaluation."""
        record = DoNotContactRecord(
            organization_id=organization_id,
            phone=normalize_phone(phone),
            email=normalize_email(email),
            scope=scope,
            reason=reason,
        )
        stored = await self.db.insert_do_not_contact(record)
        logger.info(
            "compliance_event suppression_added org=%s scope=%s reason=%s",
            organization_id, scope.value, reason,
        )
        return stored
