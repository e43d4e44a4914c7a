"""Tests for the HTTP API."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from outreach_orchestrator.web.app import create_app

ALWAYS_OPEN = {
    "timezone": "UTC",
    "window_start": "00:00",
    "window_end": "23:59",
    "allowed_days": [0, 1, 2, 3, 4, 5, 6],
}


@pytest.fixture
def client(settings, placer):
    app = create_app(settings, placer=placer)
    with TestClient(app) as test_client:
        yield test_client


def add_contact(client, **overrides):
    body = {
        "id": "contact_1",
        "organization_id": "org_1",
        "phone": "(212) 555-0100",
        "email": " Dana@Example.com ",
        "first_name": "Dana",
    }
    body.update(overrides)
    resp = client.post("/contacts", json=body)
    assert resp.status_code == 200
    return resp.json()


# ---------------------------------------------------------------------------
# Utilities and configuration
# ---------------------------------------------------------------------------


class TestHealth:
    def test_reports_placer(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "placer": "fake", "placer_configured": True}


class TestProfile:
    def test_default_profile(self, client):
        data = client.get("/organizations/org_1/profile").json()
        assert data["is_default"]
        assert data["timezone"] == "America/New_York"
        assert data["retry_delays"] == [30, 120, 1440]

    def test_put_then_get(self, client):
        resp = client.put("/organizations/org_1/profile", json={**ALWAYS_OPEN, "max_attempts": 5})
        assert resp.status_code == 200

        data = client.get("/organizations/org_1/profile").json()
        assert not data["is_default"]
        assert data["timezone"] == "UTC"
        assert data["max_attempts"] == 5

    def test_midnight_crossing_window_rejected(self, client):
        resp = client.put(
            "/organizations/org_1/profile", json={"window_start": "22:00", "window_end": "02:00"}
        )
        assert resp.status_code == 422

    def test_unknown_timezone_rejected(self, client):
        resp = client.put("/organizations/org_1/profile", json={"timezone": "Mars/Olympus"})
        assert resp.status_code == 422
        assert "Unknown timezone" in resp.json()["detail"]


class TestContacts:
    def test_phone_and_email_normalized(self, client):
        data = add_contact(client)
        assert data["phone"] == "+12125550100"
        assert data["email"] == "dana@example.com"


# ---------------------------------------------------------------------------
# Triggers and callbacks
# ---------------------------------------------------------------------------


class TestTriggerFlow:
    def test_trigger_places_then_callbacks_close(self, client, placer):
        client.put("/organizations/org_1/profile", json=ALWAYS_OPEN)
        add_contact(client)

        resp = client.post(
            "/triggers",
            json={"organization_id": "org_1", "contact_id": "contact_1", "trigger_id": "t1"},
        )
        assert resp.status_code == 200
        placed = resp.json()
        assert placed["outcome"] == "placed"
        assert len(placer.placed) == 1

        started = client.post(
            "/callbacks/session-started",
            json={"agent_session_ref": "agent-1", "call_ref": "call-1"},
        ).json()
        assert started["applied"]
        assert started["session"]["status"] == "in_progress"

        ended = client.post(
            "/callbacks/session-ended",
            json={"agent_session_ref": "agent-1", "outcome": "no_answer"},
        ).json()
        assert ended["applied"]
        assert ended["retry_plan"]["next_attempt_number"] == 2

        session = client.get(f"/sessions/{placed['session_id']}").json()
        assert session["status"] == "no_answer"

    def test_suppressed_contact_blocked(self, client, placer):
        client.put("/organizations/org_1/profile", json=ALWAYS_OPEN)
        add_contact(client)
        resp = client.post(
            "/do-not-contact",
            json={"organization_id": "org_1", "phone": "212-555-0100", "scope": "all"},
        )
        assert resp.status_code == 200
        assert resp.json()["phone"] == "+12125550100"

        result = client.post(
            "/triggers",
            json={"organization_id": "org_1", "contact_id": "contact_1", "trigger_id": "t1"},
        ).json()
        assert result["outcome"] == "blocked_compliance"
        assert placer.placed == []

    def test_unknown_session_is_404(self, client):
        resp = client.get("/sessions/missing")
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"


# ---------------------------------------------------------------------------
# Agent tools and routing
# ---------------------------------------------------------------------------


class TestAgentRouting:
    def test_no_rules_gives_fallback_line(self, client):
        data = client.post("/agent/routing", json={"organization_id": "org_1"}).json()
        assert not data["found"]
        assert data["signal"] == "no_matching_rule"
        assert data["fallback_message"]

    def test_rules_and_explain(self, client):
        client.post(
            "/recipients",
            json={
                "id": "rep_a",
                "organization_id": "org_1",
                "first_name": "Sam",
                "last_name": "Rep",
                "department": "sales",
            },
        )
        resp = client.post(
            "/routing-rules",
            json={
                "id": "rule_new",
                "organization_id": "org_1",
                "name": "New vehicles",
                "priority": 10,
                "conditions": {"department": "new"},
                "target_kind": "person",
                "target_id": "rep_a",
            },
        )
        assert resp.status_code == 200

        routed = client.post(
            "/agent/routing", json={"organization_id": "org_1", "department": "new"}
        ).json()
        assert routed["found"]
        assert routed["target"]["recipient"]["id"] == "rep_a"

        explained = client.post(
            "/routing/explain", json={"organization_id": "org_1", "department": "used"}
        ).json()
        assert explained["signal"] == "no_matching_rule"
        assert explained["evaluations"][0]["rule_id"] == "rule_new"
        assert not explained["evaluations"][0]["matched"]

    def test_contact_lookup(self, client):
        client.put("/organizations/org_1/profile", json=ALWAYS_OPEN)
        add_contact(client)

        found = client.post(
            "/agent/contact-lookup", json={"organization_id": "org_1", "phone": "212.555.0100"}
        ).json()
        assert found["found"]
        assert found["contact"]["first_name"] == "Dana"
        assert found["timezone"] == "UTC"

        missing = client.post(
            "/agent/contact-lookup", json={"organization_id": "org_1", "phone": "+13125550199"}
        ).json()
        assert not missing["found"]

    def test_qualification_on_unknown_session(self, client):
        resp = client.post(
            "/agent/qualification", json={"session_id": "missing", "facts": {"budget": 1}}
        )
        assert resp.status_code == 404
