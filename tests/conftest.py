"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.database import Database
from outreach_orchestrator.core.models import (
    Contact,
    ContactProfile,
    PlaceAttemptInstruction,
    PlacementReceipt,
    Recipient,
    RoutingRule,
    TargetKind,
)
from outreach_orchestrator.dialer.base import CallPlacer
from outreach_orchestrator.pipeline.orchestrator import OrchestrationPipeline
from outreach_orchestrator.pipeline.steps import StepRunner

ORG = "org_1"


class FakeCallPlacer(CallPlacer):
    """Records instructions instead of dialing. Queued exceptions are raised first."""

    name = "fake"

    def __init__(self) -> None:
        self.placed: list[PlaceAttemptInstruction] = []
        self.failures: list[Exception] = []
        self.closed = False

    async def place(self, instruction: PlaceAttemptInstruction) -> PlacementReceipt:
        if self.failures:
            raise self.failures.pop(0)
        self.placed.append(instruction)
        n = len(self.placed)
        return PlacementReceipt(agent_session_ref=f"agent-{n}", call_ref=f"call-{n}")

    async def close(self) -> None:
        self.closed = True


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        use_sqlite=True,
        sqlite_path=str(tmp_path / "orchestrator.db"),
        default_caller_id="+15550001000",
        dialer_webhook_url="",
        step_backoff_seconds=0.0,
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def now() -> datetime:
    """Tuesday 2026-10-20 11:00 in New York (EDT)."""
    return datetime(2026, 10, 20, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def placer() -> FakeCallPlacer:
    return FakeCallPlacer()


@pytest.fixture
def pipeline(db, placer, settings) -> OrchestrationPipeline:
    steps = StepRunner(db, settings, sleep=_no_sleep)
    return OrchestrationPipeline(db, placer, settings, steps=steps)


@pytest.fixture
def make_profile():
    """Factory fixture for contact profiles."""

    def _make(organization_id: str = ORG, **kwargs) -> ContactProfile:
        return ContactProfile(organization_id=organization_id, **kwargs)

    return _make


@pytest.fixture
def make_contact():
    """Factory fixture for contacts."""

    def _make(contact_id: str = "contact_1", organization_id: str = ORG, **kwargs) -> Contact:
        return Contact(
            id=contact_id,
            organization_id=organization_id,
            phone=kwargs.pop("phone", "+12125550100"),
            first_name=kwargs.pop("first_name", "Dana"),
            last_name=kwargs.pop("last_name", "Reyes"),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_recipient():
    """Factory fixture for handoff recipients."""

    def _make(recipient_id: str = "rep_a", organization_id: str = ORG, **kwargs) -> Recipient:
        return Recipient(
            id=recipient_id,
            organization_id=organization_id,
            first_name=kwargs.pop("first_name", recipient_id.split("_")[-1].upper()),
            last_name=kwargs.pop("last_name", "Rep"),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_rule():
    """Factory fixture for routing rules."""

    def _make(
        rule_id: str = "rule_1",
        organization_id: str = ORG,
        target_kind: TargetKind = TargetKind.PERSON,
        target_id: str | None = "rep_a",
        **kwargs,
    ) -> RoutingRule:
        return RoutingRule(
            id=rule_id,
            organization_id=organization_id,
            name=kwargs.pop("name", rule_id),
            target_kind=target_kind,
            target_id=target_id,
            **kwargs,
        )

    return _make
