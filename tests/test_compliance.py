"""Tests for do-not-contact enforcement."""

from __future__ import annotations

import pytest

from outreach_orchestrator.compliance import ComplianceGate, normalize_email, normalize_phone
from outreach_orchestrator.core.errors import ComplianceLookupFailed, ComplianceViolation
from outreach_orchestrator.core.models import Channel, SuppressionScope


class BrokenRegistry:
    async def find_do_not_contact(self, *args, **kwargs):
        raise RuntimeError("connection reset")


class TestNormalization:
    def test_us_national_format(self):
        assert normalize_phone("(212) 555-0100") == "+12125550100"

    def test_international_format(self):
        assert normalize_phone("+44 20 7946 0958") == "+442079460958"

    def test_unparseable_kept(self):
        assert normalize_phone("  ext. sales ") == "ext. sales"

    def test_blank_phone(self):
        assert normalize_phone("   ") is None
        assert normalize_phone(None) is None

    def test_email_lowercased(self):
        assert normalize_email("  Dana@Example.COM ") == "dana@example.com"


class TestComplianceGate:
    @pytest.mark.asyncio
    async def test_clean_contact_permitted(self, db):
        gate = ComplianceGate(db)
        assert await gate.is_permitted("org_1", "+12125550100", None, Channel.CALL)

    @pytest.mark.asyncio
    async def test_all_scope_blocks_call(self, db):
        gate = ComplianceGate(db)
        await gate.add_record("org_1", phone="+12125550100", scope=SuppressionScope.ALL)
        assert not await gate.is_permitted("org_1", "+12125550100", None, Channel.CALL)

    @pytest.mark.asyncio
    async def test_call_scope_blocks_call_only(self, db):
        gate = ComplianceGate(db)
        await gate.add_record("org_1", phone="+12125550100", scope=SuppressionScope.CALL)
        assert not await gate.is_permitted("org_1", "+12125550100", None, Channel.CALL)
        assert await gate.is_permitted("org_1", "+12125550100", None, Channel.SMS)

    @pytest.mark.asyncio
    async def test_sms_scope_does_not_block_call(self, db):
        gate = ComplianceGate(db)
        await gate.add_record("org_1", phone="+12125550100", scope=SuppressionScope.SMS)
        assert await gate.is_permitted("org_1", "+12125550100", None, Channel.CALL)

    @pytest.mark.asyncio
    async def test_formatting_differences_still_match(self, db):
        gate = ComplianceGate(db)
        await gate.add_record("org_1", phone="(212) 555-0100")
        assert not await gate.is_permitted("org_1", "+1 212-555-0100", None, Channel.CALL)

    @pytest.mark.asyncio
    async def test_email_match_blocks(self, db):
        gate = ComplianceGate(db)
        await gate.add_record("org_1", email="Dana@Example.com")
        assert not await gate.is_permitted("org_1", "+12125550199", "dana@example.com", Channel.CALL)

    @pytest.mark.asyncio
    async def test_other_organization_unaffected(self, db):
        gate = ComplianceGate(db)
        await gate.add_record("org_2", phone="+12125550100")
        assert await gate.is_permitted("org_1", "+12125550100", None, Channel.CALL)

    @pytest.mark.asyncio
    async def test_ensure_permitted_raises(self, db):
        gate = ComplianceGate(db)
        await gate.add_record("org_1", phone="+12125550100", reason="customer request")
        with pytest.raises(ComplianceViolation) as exc_info:
            await gate.ensure_permitted("org_1", "+12125550100", None, Channel.CALL)
        assert exc_info.value.reason == "do_not_contact"
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_lookup_failure_fails_closed(self):
        gate = ComplianceGate(BrokenRegistry())
        with pytest.raises(ComplianceLookupFailed) as exc_info:
            await gate.ensure_permitted("org_1", "+12125550100", None, Channel.CALL)
        assert isinstance(exc_info.value, ComplianceViolation)
        assert exc_info.value.reason == "lookup_failed"
        assert not await gate.is_permitted("org_1", "+12125550100", None, Channel.CALL)
