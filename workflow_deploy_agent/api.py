"""FastAPI service for the workflow deployment agent.

A thin HTTP surface over AgentRuntime. The identity backend in front of this
service authenticates callers and forwards their tenant id in the
X-Tenant-Id header; this service never authenticates tenants itself.

  Tenants / slots:
    POST   /tenants/slot          claim (or return) the caller's isolation slot
    GET    /tenants/slot          the caller's slot
    DELETE /tenants/slot          release the caller's slot
    GET    /tenants/workflows     engine workflows carrying the caller's tag
    GET    /slots/stats           pool utilisation

  Conversations:
    POST   /sessions                    open (or resume) a session for a topic
    POST   /sessions/{id}/messages      send one message → one phase transition
    GET    /sessions/{id}               session state and history
    POST   /sessions/{id}/cancel        abort an in-flight deployment

  System:
    GET    /healthz
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from workflow_deploy_agent.errors import (
    SessionClosedError,
    SessionNotFoundError,
    SlotExhaustionError,
    TenantIsolationError,
    ValidationError,
    WorkflowAgentError,
)
from workflow_deploy_agent.models import ConversationSession, TenantSlot, tenant_tag

logger = logging.getLogger("workflow_deploy_agent.api")

# ---------------------------------------------------------------------------
# API key authentication (optional, enabled when AGENT_API_KEY is set)
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def _verify_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> None:
    """Verify the Bearer token matches the configured AGENT_API_KEY.

    If no key is configured, all requests are allowed (open dev mode).
    If set, every request must carry 'Authorization: Bearer <key>'.
    """
    api_key = request.app.state.runtime.settings.agent_api_key
    if not api_key:
        return
    if not credentials or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def _tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-Id")) -> str:
    """Tenant id forwarded by the identity backend."""
    try:
        tenant_tag(x_tenant_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return x_tenant_id


# ---------------------------------------------------------------------------
# Lifespan: wire the runtime once at startup, close it on shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: initialize the agent runtime on startup, clean up on shutdown."""
    from dotenv import load_dotenv
    load_dotenv()

    from workflow_deploy_agent.agent.graph import create_runtime

    runtime = await create_runtime()
    app.state.runtime = runtime
    logger.info("Workflow agent API started (store: %s)", type(runtime.store).__name__)

    yield

    await runtime.close()
    logger.info("Shutting down workflow agent API")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def _session_rate_limit() -> str:
    """Per-client limit on session creation, from the runtime settings."""
    return f"{app.state.runtime.settings.rate_limit_sessions_per_min}/minute"


limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="Workflow Deployment Agent API",
    description=(
        "Turns a conversation into a deployed n8n workflow. Each message advances "
        "the session one phase: gathering → scoping → validating → designing → deploying."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class StartSessionRequest(BaseModel):
    """Request body for POST /sessions."""

    topic: str = Field(
        "default",
        min_length=1,
        max_length=120,
        description="Conversation topic. One open session exists per tenant + topic.",
    )


class MessageRequest(BaseModel):
    """Request body for POST /sessions/{session_id}/messages."""

    message: str = Field(
        ...,
        min_length=1,
        description="The requester's message. 'reset' starts over; 'cancel' abandons the session.",
        examples=["Every day at 9am fetch https://api.example.com/report and post it to #reports on Slack"],
    )


class SlotResponse(BaseModel):
    project_index: int
    slot_index: int
    tenant_id: str | None
    assigned_at: float | None
    folder_tag: str


class TurnResponse(BaseModel):
    """Response for POST /sessions/{session_id}/messages."""

    session_id: str
    phase: str = Field(..., description="Session phase after this message.")
    reply: str = Field(..., description="Assistant reply to show the requester.")
    terminal_result: dict[str, Any] | None = Field(
        None, description="Present once the session is completed or failed."
    )
    metrics: dict[str, Any] = Field(default_factory=dict, description="Timing and counters for this turn.")


class SessionResponse(BaseModel):
    """Response for POST /sessions and GET /sessions/{session_id}."""

    session_id: str
    tenant_id: str
    topic: str
    phase: str
    draft_requirements: dict[str, Any] = Field(default_factory=dict)
    workflow_name: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    history: list[dict[str, Any]] = Field(default_factory=list)


def _slot_response(slot: TenantSlot) -> SlotResponse:
    return SlotResponse(**slot.to_dict())


def _session_response(session: ConversationSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.id,
        tenant_id=session.tenant_id,
        topic=session.topic,
        phase=session.phase.value,
        draft_requirements=session.draft_requirements,
        workflow_name=session.draft_definition.name if session.draft_definition else None,
        result=session.result,
        error=session.error,
        history=[
            {"role": t.role, "content": t.content, "phase": t.phase, "agent_role": t.agent_role}
            for t in session.history
        ],
    )


# ---------------------------------------------------------------------------
# Dependencies + error mapping
# ---------------------------------------------------------------------------


def _runtime(request: Request):
    return request.app.state.runtime


def _http_error(e: WorkflowAgentError) -> HTTPException:
    """Map a domain error to its HTTP status."""
    if isinstance(e, SlotExhaustionError):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, SessionNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SessionClosedError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, TenantIsolationError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=e.errors)
    return HTTPException(status_code=500, detail=str(e))


async def _owned_session(request: Request, session_id: str, tenant_id: str) -> ConversationSession:
    try:
        session = await _runtime(request).orchestrator.get_session(session_id)
    except SessionNotFoundError as e:
        raise _http_error(e)
    if session.tenant_id != tenant_id:
        raise _http_error(TenantIsolationError(f"Session {session_id!r} belongs to another tenant"))
    return session


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@app.get("/healthz", tags=["system"], dependencies=[Depends(_verify_api_key)])
async def healthz(request: Request) -> dict:
    """Health check. Verifies the API and the engine connection are both up."""
    result = await _runtime(request).client.ping()
    engine_ok = "error" not in result
    return {
        "api": "ok",
        "engine": "ok" if engine_ok else "unreachable",
        "engine_detail": result,
    }


# ---------------------------------------------------------------------------
# Tenants + slots
# ---------------------------------------------------------------------------


@app.post("/tenants/slot", response_model=SlotResponse, tags=["tenants"], dependencies=[Depends(_verify_api_key)])
async def claim_slot(request: Request, tenant_id: str = Depends(_tenant_id)) -> SlotResponse:
    """Claim an isolation slot for the caller. Idempotent: returns the existing slot if any."""
    try:
        slot = await _runtime(request).allocator.claim_slot(tenant_id)
    except SlotExhaustionError as e:
        logger.error("Signup for tenant %s refused: %s", tenant_id, e)
        raise _http_error(e)
    return _slot_response(slot)


@app.get("/tenants/slot", response_model=SlotResponse, tags=["tenants"], dependencies=[Depends(_verify_api_key)])
async def get_slot(request: Request, tenant_id: str = Depends(_tenant_id)) -> SlotResponse:
    slot = await _runtime(request).allocator.slot_for(tenant_id)
    if slot is None:
        raise HTTPException(status_code=404, detail=f"Tenant '{tenant_id}' has no slot.")
    return _slot_response(slot)


@app.delete("/tenants/slot", response_model=SlotResponse, tags=["tenants"], dependencies=[Depends(_verify_api_key)])
async def release_slot(request: Request, tenant_id: str = Depends(_tenant_id)) -> SlotResponse:
    """Return a deactivated tenant's slot to the pool."""
    slot = await _runtime(request).allocator.release_slot(tenant_id)
    if slot is None:
        raise HTTPException(status_code=404, detail=f"Tenant '{tenant_id}' has no slot.")
    return _slot_response(slot)


@app.get("/tenants/workflows", tags=["tenants"], dependencies=[Depends(_verify_api_key)])
async def tenant_workflows(request: Request, tenant_id: str = Depends(_tenant_id)) -> list[dict]:
    """Workflows in the engine whose name carries the caller's tenant tag."""
    result = await _runtime(request).coordinator.list_tenant_workflows(tenant_id)
    if isinstance(result, dict):
        raise HTTPException(status_code=502, detail=result.get("error", "engine request failed"))
    return result


@app.get("/slots/stats", tags=["tenants"], dependencies=[Depends(_verify_api_key)])
async def slot_stats(request: Request) -> dict:
    return await _runtime(request).allocator.stats()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@app.post("/sessions", response_model=SessionResponse, tags=["sessions"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(_session_rate_limit)
async def create_session(
    request: Request,
    body: StartSessionRequest,
    tenant_id: str = Depends(_tenant_id),
) -> SessionResponse:
    """Open a session for the caller and topic, or return the one already open."""
    session = await _runtime(request).orchestrator.start_session(tenant_id, body.topic)
    return _session_response(session)


@app.post(
    "/sessions/{session_id}/messages",
    response_model=TurnResponse,
    tags=["sessions"],
    dependencies=[Depends(_verify_api_key)],
)
async def send_message(
    session_id: str,
    body: MessageRequest,
    request: Request,
    tenant_id: str = Depends(_tenant_id),
) -> TurnResponse:
    """Send one message. The session advances exactly one phase (or asks a question)."""
    await _owned_session(request, session_id, tenant_id)
    logger.info("Session %s message: %r", session_id, body.message[:80])
    try:
        result = await _runtime(request).orchestrator.handle_message(session_id, body.message)
    except WorkflowAgentError as e:
        raise _http_error(e)
    return TurnResponse(
        session_id=result.session_id,
        phase=result.phase.value,
        reply=result.reply,
        terminal_result=result.terminal_result,
        metrics=result.metrics,
    )


@app.get("/sessions/{session_id}", response_model=SessionResponse, tags=["sessions"], dependencies=[Depends(_verify_api_key)])
async def get_session(session_id: str, request: Request, tenant_id: str = Depends(_tenant_id)) -> SessionResponse:
    """Current state of a session without advancing it."""
    return _session_response(await _owned_session(request, session_id, tenant_id))


@app.post("/sessions/{session_id}/cancel", tags=["sessions"], dependencies=[Depends(_verify_api_key)])
async def cancel_session(session_id: str, request: Request, tenant_id: str = Depends(_tenant_id)) -> dict:
    """Abort the session's in-flight deployment, if one is running."""
    await _owned_session(request, session_id, tenant_id)
    return {"cancelled": _runtime(request).orchestrator.cancel_deployment(session_id)}


# ---------------------------------------------------------------------------
# Entry point (for uvicorn programmatic launch)
# ---------------------------------------------------------------------------


def serve(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """Launch the FastAPI server via uvicorn."""
    import sys
    import uvicorn
    # Windows: psycopg async requires SelectorEventLoop (not the default ProactorEventLoop)
    if sys.platform == "win32":
        import asyncio
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "workflow_deploy_agent.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    serve()
