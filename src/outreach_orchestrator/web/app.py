"""FastAPI application - JSON API for triggers, collaborator callbacks,
agent tools and operator configuration."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from outreach_orchestrator.compliance import ComplianceGate, normalize_email, normalize_phone
from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.db_factory import create_database
from outreach_orchestrator.core.errors import OrchestrationError
from outreach_orchestrator.core.models import (
    Contact,
    ContactLookup,
    ContactProfile,
    DoNotContactRecord,
    HandoffConfirmation,
    HandoffRequest,
    ProviderStatusEvent,
    Recipient,
    RoutingContext,
    RoutingRule,
    SessionEndedEvent,
    SessionStartedEvent,
    Trigger,
)
from outreach_orchestrator.core.storage import Storage
from outreach_orchestrator.dialer.base import CallPlacer
from outreach_orchestrator.dialer.webhook import WebhookCallPlacer
from outreach_orchestrator.handoff import AgentTools
from outreach_orchestrator.pipeline.orchestrator import OrchestrationPipeline
from outreach_orchestrator.profiles import resolve_profile
from outreach_orchestrator.routing.engine import RoutingEngine

logger = logging.getLogger(__name__)

# Error code -> HTTP status; anything else is a 400
STATUS_BY_CODE: dict[str, int] = {
    "NOT_FOUND": 404,
    "ILLEGAL_TRANSITION": 409,
    "CONFLICT": 409,
    "COMPLIANCE_VIOLATION": 422,
    "COMPLIANCE_LOOKUP_FAILED": 422,
    "WINDOW_VIOLATION": 422,
    "RATE_LIMIT_EXCEEDED": 429,
    "CONFIGURATION_ERROR": 503,
    "STORAGE_ERROR": 503,
}


class QualificationLog(BaseModel):
    session_id: str
    facts: dict[str, Any] = Field(default_factory=dict)


def create_app(
    settings: Settings | None = None,
    db: Storage | None = None,
    placer: CallPlacer | None = None,
) -> FastAPI:
    settings = settings or Settings()
    db = db or create_database(settings)
    placer = placer or WebhookCallPlacer(settings)

    pipeline = OrchestrationPipeline(db, placer, settings)
    tools = AgentTools(db, settings)
    engine = RoutingEngine(db, settings)
    compliance = ComplianceGate(db)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db.connect()
        yield
        await placer.close()
        await db.close()

    app = FastAPI(title="Outreach Orchestrator", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.pipeline = pipeline

    @app.exception_handler(OrchestrationError)
    async def orchestration_error(request: Request, exc: OrchestrationError):
        status = STATUS_BY_CODE.get(exc.code, 400)
        if status >= 500:
            logger.error("%s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    # =====================================================================
    # Triggers
    # =====================================================================

    @app.post("/triggers")
    async def api_trigger(trigger: Trigger):
        result = await pipeline.handle_trigger(trigger)
        return result.model_dump(mode="json")

    # =====================================================================
    # Collaborator callbacks
    # =====================================================================

    @app.post("/callbacks/session-started")
    async def api_session_started(event: SessionStartedEvent):
        result = await pipeline.handle_session_started(event)
        return result.model_dump(mode="json")

    @app.post("/callbacks/session-ended")
    async def api_session_ended(event: SessionEndedEvent):
        result = await pipeline.handle_session_ended(event)
        return result.model_dump(mode="json")

    @app.post("/callbacks/status")
    async def api_provider_status(event: ProviderStatusEvent):
        result = await pipeline.handle_provider_status(event)
        return result.model_dump(mode="json")

    @app.post("/callbacks/handoff")
    async def api_handoff_confirmed(confirmation: HandoffConfirmation):
        result = await pipeline.handle_handoff_confirmed(confirmation)
        return result.model_dump(mode="json")

    # =====================================================================
    # Agent tools
    # =====================================================================

    @app.post("/agent/contact-lookup")
    async def api_agent_contact_lookup(lookup: ContactLookup):
        result = await tools.lookup_contact(lookup)
        return result.model_dump(mode="json")

    @app.post("/agent/routing")
    async def api_agent_routing(context: RoutingContext):
        response = await tools.query_routing(context)
        return response.model_dump(mode="json")

    @app.post("/agent/handoff")
    async def api_agent_handoff(request: HandoffRequest):
        instruction = await tools.execute_handoff(request)
        return instruction.model_dump(mode="json")

    @app.post("/agent/qualification")
    async def api_agent_qualification(payload: QualificationLog):
        session = await tools.log_qualification(payload.session_id, payload.facts)
        return {"success": True, "session": session.model_dump(mode="json")}

    # =====================================================================
    # Operator configuration
    # =====================================================================

    @app.get("/organizations/{organization_id}/profile")
    async def api_get_profile(organization_id: str):
        profile = await resolve_profile(db, organization_id, settings)
        return {**profile.model_dump(mode="json"), "is_default": profile.is_default}

    @app.put("/organizations/{organization_id}/profile")
    async def api_put_profile(organization_id: str, body: dict[str, Any]):
        profile = ContactProfile.model_validate({**body, "organization_id": organization_id})
        stored = await db.upsert_profile(profile)
        logger.info("Contact profile updated for org=%s", organization_id)
        return stored.model_dump(mode="json")

    @app.post("/do-not-contact")
    async def api_do_not_contact(record: DoNotContactRecord):
        stored = await compliance.add_record(
            record.organization_id,
            phone=record.phone,
            email=record.email,
            scope=record.scope,
            reason=record.reason,
        )
        return stored.model_dump(mode="json")

    @app.post("/contacts")
    async def api_upsert_contact(contact: Contact):
        contact = contact.model_copy(
            update={
                "phone": normalize_phone(contact.phone),
                "email": normalize_email(contact.email),
            }
        )
        stored = await db.upsert_contact(contact)
        return stored.model_dump(mode="json")

    @app.post("/recipients")
    async def api_upsert_recipient(recipient: Recipient):
        stored = await db.upsert_recipient(recipient)
        return stored.model_dump(mode="json")

    @app.post("/routing-rules")
    async def api_upsert_rule(rule: RoutingRule):
        stored = await db.insert_rule(rule)
        return stored.model_dump(mode="json")

    @app.post("/routing/explain")
    async def api_routing_explain(context: RoutingContext):
        explanation = await engine.explain(context)
        return explanation.model_dump(mode="json")

    @app.get("/sessions/{session_id}")
    async def api_session(session_id: str):
        session = await pipeline.sessions.get(session_id)
        return session.model_dump(mode="json")

    # =====================================================================
    # Utilities
    # =====================================================================

    @app.get("/health")
    async def api_health():
        return {
            "status": "ok",
            "placer": placer.name,
            "placer_configured": await placer.health_check(),
        }

    return app


app = create_app()
