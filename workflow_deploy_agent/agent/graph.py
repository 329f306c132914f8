"""ConversationOrchestrator — one LangGraph turn per inbound message.

Session phases:

    Gathering ─► Scoping ─► Validating ─► Designing ─► Deploying ─► Completed
                   ▲            │  unsupported capability:
                   └────────────┘  explain + suggest alternatives
    Scoping, Validating ─► itself  (ask for the next missing fact)
    Deploying ─► itself            (until the requester replies "deploy")
    any non-terminal phase ─► Failed      ("cancel", design or deploy failure)
    any non-terminal phase ─► Gathering   ("reset" / "start over")

Turn graph (compiled once, invoked per message):

    START ──route──► command | gathering | scoping | validating | designing | deploying ──► END

Each call to handle_message() runs exactly one phase node, so every call
produces exactly one transition (possibly a self-transition, e.g. Scoping
asking a clarifying question) and at most one deploy() per call. Calls for the
same session are serialized by a per-session asyncio.Lock; calls for different
sessions run concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
import weakref
from dataclasses import dataclass
from typing import Any

import httpx
from langgraph.graph import END, START, StateGraph

from workflow_deploy_agent.agent.coordinator import DeploymentCoordinator, Sleep
from workflow_deploy_agent.agent.designer import TEMPLATES, WorkflowDesigner, question_for
from workflow_deploy_agent.agent.facts import (
    Extraction,
    FactExtractor,
    KeywordFactExtractor,
    LLMFactExtractor,
    merge_facts,
)
from workflow_deploy_agent.agent.metrics import MetricsCollector
from workflow_deploy_agent.agent.roles import AgentRole, role_for_phase
from workflow_deploy_agent.agent.state import TurnState
from workflow_deploy_agent.client import EngineClient, Settings
from workflow_deploy_agent.config import OrchestratorSettings
from workflow_deploy_agent.errors import (
    CompletionError,
    DesignError,
    SessionClosedError,
    SessionNotFoundError,
    SlotExhaustionError,
    TenantIsolationError,
    ValidationError,
)
from workflow_deploy_agent.models import (
    AttemptStatus,
    ConversationSession,
    ErrorClass,
    Phase,
    Turn,
    TurnResult,
    tenant_tag,
)
from workflow_deploy_agent.persistence import Store, open_store
from workflow_deploy_agent.reasoning import ReasoningSettings, create_engine
from workflow_deploy_agent.slots import TenantSlotAllocator

logger = logging.getLogger("workflow_deploy_agent.agent.graph")

_RESET_RE = re.compile(r"^\s*(?:reset|start over|restart)\b", re.IGNORECASE)
_CANCEL_RE = re.compile(r"^\s*(?:cancel|abandon)\b", re.IGNORECASE)
_CONFIRM_RE = re.compile(r"^\s*(?:deploy|submit|confirm|yes|go ahead|ok(?:ay)?)\b", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Reply helpers
# ---------------------------------------------------------------------------


def _label(capability: str) -> str:
    template = TEMPLATES.get(capability)
    return template.label if template else capability.replace("_", " ")


def _describe(requirements: dict[str, Any]) -> str:
    """One-line summary of the draft requirements."""
    parts: list[str] = []
    if trigger := requirements.get("trigger"):
        parts.append(f"trigger: {_label(trigger)}")
        if cron := requirements.get("schedule_cron"):
            parts.append(f"schedule: {cron}")
    if actions := requirements.get("actions"):
        parts.append("then: " + " → ".join(_label(a) for a in actions))
    for key in ("url", "email_to", "slack_channel"):
        if requirements.get(key):
            parts.append(f"{key.replace('_', ' ')}: {requirements[key]}")
    return "; ".join(parts) if parts else "nothing yet"


def _without_capability(requirements: dict[str, Any], capability: str) -> dict[str, Any]:
    """Remove an unsupported capability so Scoping asks for a replacement."""
    updated = dict(requirements)
    if updated.get("trigger") == capability:
        del updated["trigger"]
    if capability in (updated.get("actions") or []):
        updated["actions"] = [a for a in updated["actions"] if a != capability]
        if not updated["actions"]:
            del updated["actions"]
    return updated


async def _extract(extractor: FactExtractor, state: TurnState) -> tuple[Extraction | None, str | None]:
    """Run fact extraction; on a recoverable failure return a re-prompt instead."""
    try:
        return await extractor.extract(state["message"], state["history"]), None
    except ValidationError as e:
        logger.info("Session %s: rejected facts: %s", state["session_id"], e)
        return None, f"I couldn't use part of that ({e}). Could you rephrase it?"
    except CompletionError as e:
        logger.warning("Session %s: fact extraction failed: %s", state["session_id"], e)
        return None, "I couldn't process that message just now. Please send it again."


def _stay(state: TurnState, reply: str) -> dict[str, Any]:
    return {
        "next_phase": state["phase"],
        "reply": reply,
        "agent_role": role_for_phase(Phase(state["phase"])).value,
    }


# ---------------------------------------------------------------------------
# Phase nodes
# ---------------------------------------------------------------------------


def _make_command_node():
    async def command(state: TurnState) -> dict:
        """Explicit requester commands: reset to Gathering, or abandon the session."""
        if _RESET_RE.match(state["message"]):
            return {
                "next_phase": Phase.GATHERING.value,
                "draft_requirements": {},
                "draft_definition": None,
                "reply": "Starting over. What would you like to automate?",
                "agent_role": AgentRole.ORCHESTRATOR.value,
            }
        return {
            "next_phase": Phase.FAILED.value,
            "error": "abandoned by requester",
            "terminal_result": {"status": "abandoned", "error_class": None, "diagnostic": None},
            "reply": "Okay, I've cancelled this request. Start a new session whenever you're ready.",
            "agent_role": AgentRole.ORCHESTRATOR.value,
        }

    return command


def _make_gathering_node(extractor: FactExtractor, designer: WorkflowDesigner):
    async def gathering(state: TurnState) -> dict:
        """Accumulate free-form facts from the first message(s)."""
        extraction, reprompt = await _extract(extractor, state)
        if extraction is None:
            return _stay(state, reprompt)
        requirements = merge_facts(state["draft_requirements"], extraction.facts)
        missing = designer.missing_facts(requirements)
        reply = f"So far I have: {_describe(requirements)}."
        reply += f" {question_for(missing[0])}" if missing else " Reply 'continue' to check it."
        return {
            "next_phase": Phase.SCOPING.value,
            "draft_requirements": requirements,
            "reply": reply,
            "agent_role": AgentRole.ORCHESTRATOR.value,
            "tokens_used": extraction.tokens_used,
        }

    return gathering


def _make_scoping_node(extractor: FactExtractor, designer: WorkflowDesigner):
    async def scoping(state: TurnState) -> dict:
        """Ask for the next missing fact, or move on once the draft is complete."""
        extraction, reprompt = await _extract(extractor, state)
        if extraction is None:
            return _stay(state, reprompt)
        requirements = merge_facts(state["draft_requirements"], extraction.facts)
        update: dict[str, Any] = {
            "draft_requirements": requirements,
            "agent_role": AgentRole.ORCHESTRATOR.value,
            "tokens_used": extraction.tokens_used,
        }
        missing = designer.missing_facts(requirements)
        if missing:
            update.update(next_phase=Phase.SCOPING.value, reply=question_for(missing[0]))
        else:
            update.update(
                next_phase=Phase.VALIDATING.value,
                reply=f"Got it: {_describe(requirements)}. Reply 'continue' and I'll check the engine supports it.",
            )
        return update

    return scoping


def _make_validating_node(extractor: FactExtractor, designer: WorkflowDesigner):
    async def validating(state: TurnState) -> dict:
        """Check the draft against the engine's capability set."""
        extraction, reprompt = await _extract(extractor, state)
        if extraction is None:
            return _stay(state, reprompt)
        requirements = merge_facts(state["draft_requirements"], extraction.facts)
        update: dict[str, Any] = {
            "agent_role": AgentRole.ORCHESTRATOR.value,
            "tokens_used": extraction.tokens_used,
        }
        try:
            designer.check_capabilities(requirements)
        except DesignError as e:
            requirements = _without_capability(requirements, e.capability or "")
            missing = designer.missing_facts(requirements)
            alternatives = ", ".join(_label(a) for a in e.alternatives)
            reply = str(e)
            if alternatives:
                reply += f" You could use {alternatives} instead."
            if missing:
                reply += f" {question_for(missing[0])}"
            logger.info("Session %s: unsupported capability %r", state["session_id"], e.capability)
            update.update(next_phase=Phase.SCOPING.value, draft_requirements=requirements, reply=reply)
            return update

        missing = designer.missing_facts(requirements)
        if missing:
            update.update(
                next_phase=Phase.VALIDATING.value,
                draft_requirements=requirements,
                reply=question_for(missing[0]),
            )
            return update
        update.update(
            next_phase=Phase.DESIGNING.value,
            draft_requirements=requirements,
            reply="Everything is supported. Reply 'continue' and I'll design the workflow.",
        )
        return update

    return validating


def _make_designing_node(designer: WorkflowDesigner):
    async def designing(state: TurnState) -> dict:
        """Shape the validated requirements into a tenant-tagged definition."""
        try:
            definition = designer.design(state["draft_requirements"], state["tenant_id"])
        except (DesignError, TenantIsolationError) as e:
            logger.warning("Session %s: design failed: %s", state["session_id"], e)
            return {
                "next_phase": Phase.FAILED.value,
                "error": str(e),
                "terminal_result": {
                    "status": "failed",
                    "error_class": None,
                    "diagnostic": str(e),
                    "capability": getattr(e, "capability", None),
                },
                "reply": f"I couldn't design this workflow: {e}",
                "agent_role": AgentRole.WORKFLOW_DESIGNER.value,
            }
        chain = " → ".join(n.name for n in definition.nodes)
        return {
            "next_phase": Phase.DEPLOYING.value,
            "draft_definition": definition,
            "reply": f"Designed {definition.name!r}: {chain}. Reply 'deploy' to submit it.",
            "agent_role": AgentRole.WORKFLOW_DESIGNER.value,
        }

    return designing


def _make_deploying_node(
    coordinator: DeploymentCoordinator,
    allocator: TenantSlotAllocator,
    cancel_events: dict[str, asyncio.Event],
    deadline: float,
):
    def _failed(error: str, error_class: ErrorClass | None, reply: str) -> dict:
        return {
            "next_phase": Phase.FAILED.value,
            "error": error,
            "terminal_result": {
                "status": "failed",
                "error_class": error_class.value if error_class else None,
                "diagnostic": error,
            },
            "reply": reply,
            "agent_role": AgentRole.DEPLOYMENT.value,
        }

    async def deploying(state: TurnState) -> dict:
        """Claim the tenant's slot and run the deployment under the session deadline."""
        session_id = state["session_id"]
        definition = state["draft_definition"]
        if definition is None:
            return _failed("no workflow definition to deploy", None, "There is no designed workflow to deploy.")
        if not _CONFIRM_RE.match(state["message"]):
            return _stay(state, f"Reply 'deploy' to submit {definition.name!r}, or 'cancel' to abandon it.")

        try:
            slot = await allocator.claim_slot(state["tenant_id"])
        except SlotExhaustionError as e:
            return _failed(str(e), None, str(e))

        cancel = cancel_events.setdefault(session_id, asyncio.Event())
        try:
            result = await asyncio.wait_for(coordinator.deploy(slot, definition, cancel), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning("Session %s: deployment exceeded the %.0fs deadline", session_id, deadline)
            return _failed(
                f"deployment did not finish within {deadline:.0f}s",
                ErrorClass.TIMEOUT,
                "The deployment took too long and was stopped. Please try again later.",
            )
        except TenantIsolationError as e:
            return _failed(str(e), None, f"Deployment refused: {e}")
        finally:
            cancel_events.pop(session_id, None)

        update: dict[str, Any] = {
            "draft_definition": result.definition,
            "terminal_result": result.summary(),
            "submissions": len(result.attempts),
            "heal_events": sum(1 for a in result.attempts if a.status == AttemptStatus.HEALED_RETRY),
            "agent_role": AgentRole.DEPLOYMENT.value,
        }
        if result.success:
            reply = f"Deployed {result.definition.name!r} (id {result.engine_id})."
            if result.endpoint:
                reply += f" Trigger it at {result.endpoint}."
            update.update(next_phase=Phase.COMPLETED.value, reply=reply)
            return update

        error_class = result.error_class.value if result.error_class else "unknown"
        if result.cancelled:
            reply = "The deployment was cancelled."
        elif result.status == AttemptStatus.EXHAUSTED:
            reply = (
                f"The engine kept rejecting the workflow ({error_class}) after "
                f"{len(result.attempts)} attempts: {result.diagnostic}"
            )
        else:
            reply = f"The engine rejected the workflow ({error_class}): {result.diagnostic}"
        update.update(next_phase=Phase.FAILED.value, error=result.diagnostic or error_class, reply=reply)
        return update

    return deploying


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def _route_turn(state: TurnState) -> str:
    """Commands take precedence; otherwise the current phase picks the node."""
    if _RESET_RE.match(state["message"]) or _CANCEL_RE.match(state["message"]):
        return "command"
    return state["phase"]


_PHASE_NODES = (
    Phase.GATHERING.value,
    Phase.SCOPING.value,
    Phase.VALIDATING.value,
    Phase.DESIGNING.value,
    Phase.DEPLOYING.value,
)


# ---------------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------------


def build_graph(
    designer: WorkflowDesigner,
    coordinator: DeploymentCoordinator,
    allocator: TenantSlotAllocator,
    extractor: FactExtractor,
    cancel_events: dict[str, asyncio.Event],
    deadline: float = 120.0,
):
    """Construct and compile the single-turn conversation graph."""
    builder = StateGraph(TurnState)

    builder.add_node("command",                _make_command_node())
    builder.add_node(Phase.GATHERING.value,    _make_gathering_node(extractor, designer))
    builder.add_node(Phase.SCOPING.value,      _make_scoping_node(extractor, designer))
    builder.add_node(Phase.VALIDATING.value,   _make_validating_node(extractor, designer))
    builder.add_node(Phase.DESIGNING.value,    _make_designing_node(designer))
    builder.add_node(Phase.DEPLOYING.value,    _make_deploying_node(coordinator, allocator, cancel_events, deadline))

    builder.add_conditional_edges(
        START,
        _route_turn,
        {name: name for name in ("command", *_PHASE_NODES)},
    )
    for name in ("command", *_PHASE_NODES):
        builder.add_edge(name, END)

    return builder.compile()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ConversationOrchestrator:
    """Owns conversation sessions and drives them through their phases.

    Args:
        store:       session persistence.
        designer:    WorkflowDesigner bound to the engine's capability set.
        coordinator: DeploymentCoordinator bound to the engine client.
        allocator:   TenantSlotAllocator for the tenant namespace pool.
        extractor:   fact extractor; defaults to KeywordFactExtractor.
        session_deadline: seconds one deploy may take before the session fails.
    """

    def __init__(
        self,
        store: Store,
        designer: WorkflowDesigner,
        coordinator: DeploymentCoordinator,
        allocator: TenantSlotAllocator,
        extractor: FactExtractor | None = None,
        *,
        session_deadline: float = 120.0,
    ) -> None:
        self._store = store
        # An entry lives only while a turn for that session holds or awaits it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._graph = build_graph(
            designer,
            coordinator,
            allocator,
            extractor or KeywordFactExtractor(),
            self._cancel_events,
            session_deadline,
        )

    async def start_session(self, tenant_id: str, topic: str = "default") -> ConversationSession:
        """Return the tenant's open session for topic, creating one if needed."""
        tenant_tag(tenant_id)
        for existing in await self._store.list_sessions(tenant_id):
            if existing.topic == topic and not existing.phase.is_terminal:
                return existing
        session = ConversationSession(id=str(uuid.uuid4()), tenant_id=tenant_id, topic=topic)
        await self._store.save_session(session)
        logger.info("Started session %s for tenant %s (topic %r)", session.id, tenant_id, topic)
        return session

    async def get_session(self, session_id: str) -> ConversationSession:
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id!r} not found")
        return session

    async def list_sessions(self, tenant_id: str) -> list[ConversationSession]:
        return await self._store.list_sessions(tenant_id)

    def cancel_deployment(self, session_id: str) -> bool:
        """Abort the session's in-flight deploy, if any. Returns True if one was signalled."""
        event = self._cancel_events.get(session_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for session %s", session_id)
        return True

    async def handle_message(self, session_id: str, raw_message: str) -> TurnResult:
        """Process one requester message: exactly one phase transition.

        Raises:
            SessionNotFoundError: unknown session_id.
            SessionClosedError:   the session is Completed or Failed.
            ValidationError:      the message is empty.
        """
        message = (raw_message or "").strip()
        if not message:
            raise ValidationError(["message must not be empty"])

        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        async with lock:
            session = await self.get_session(session_id)
            if session.phase.is_terminal:
                raise SessionClosedError(
                    f"Session {session_id!r} is {session.phase.value}; start a new session"
                )

            start_phase = session.phase
            async with MetricsCollector(start_phase.value) as m:
                out = await self._graph.ainvoke(self._initial_state(session, message))
                m.tokens_used = out.get("tokens_used", 0)
                m.submissions = out.get("submissions", 0)
                m.heal_events = out.get("heal_events", 0)

            next_phase = Phase(out["next_phase"])
            session.history.append(Turn(role="user", content=message, phase=start_phase.value))
            session.history.append(Turn(
                role="assistant",
                content=out["reply"],
                phase=next_phase.value,
                agent_role=out.get("agent_role"),
            ))
            session.phase = next_phase
            session.draft_requirements = out.get("draft_requirements", session.draft_requirements)
            session.draft_definition = out.get("draft_definition", session.draft_definition)
            if next_phase.is_terminal:
                session.result = out.get("terminal_result")
                session.error = out.get("error")
            session.updated_at = time.time()
            await self._store.save_session(session)

            if next_phase != start_phase:
                logger.info(
                    "Session %s: %s -> %s", session_id, start_phase.value, next_phase.value
                )

        return TurnResult(
            session_id=session_id,
            phase=next_phase,
            reply=out["reply"],
            terminal_result=session.result if next_phase.is_terminal else None,
            metrics=m.to_dict(),
        )

    @staticmethod
    def _initial_state(session: ConversationSession, message: str) -> TurnState:
        return {
            "session_id": session.id,
            "tenant_id": session.tenant_id,
            "topic": session.topic,
            "phase": session.phase.value,
            "message": message,
            "history": list(session.history),
            "draft_requirements": dict(session.draft_requirements),
            "draft_definition": session.draft_definition,
            "next_phase": session.phase.value,
            "reply": "",
            "agent_role": role_for_phase(session.phase).value,
            "terminal_result": None,
            "error": None,
            "tokens_used": 0,
            "submissions": 0,
            "heal_events": 0,
        }


# ---------------------------------------------------------------------------
# Convenience factory
# ---------------------------------------------------------------------------


@dataclass
class AgentRuntime:
    """Every long-lived component, wired together once per process."""

    settings: OrchestratorSettings
    store: Store
    client: EngineClient
    allocator: TenantSlotAllocator
    coordinator: DeploymentCoordinator
    orchestrator: ConversationOrchestrator

    async def close(self) -> None:
        await self.client.close()
        await self.store.close()


async def create_runtime(
    settings: OrchestratorSettings | None = None,
    client_settings: Settings | None = None,
    reasoning_settings: ReasoningSettings | None = None,
    *,
    store: Store | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Sleep = asyncio.sleep,
) -> AgentRuntime:
    """Build, set up and wire the store, slot pool, engine client and orchestrator.

    Settings not passed in are read from the environment here, once; nothing
    downstream reads the environment again.
    """
    settings = settings or OrchestratorSettings.from_env()
    client_settings = client_settings or Settings.from_env()
    reasoning_settings = reasoning_settings or ReasoningSettings.from_env()

    store = store or open_store(
        settings.store_url,
        pool_min=settings.postgres_pool_min,
        pool_max=settings.postgres_pool_max,
    )
    await store.setup()
    allocator = TenantSlotAllocator(store, settings.slot_projects, settings.slots_per_project)
    await allocator.initialize()

    client = EngineClient(client_settings, transport=transport)
    coordinator = DeploymentCoordinator(client, store, settings.retry_policy(), sleep=sleep)
    designer = WorkflowDesigner(settings.trigger_capabilities, settings.action_capabilities)

    engine = create_engine(reasoning_settings)
    if engine is None:
        extractor: FactExtractor = KeywordFactExtractor()
    else:
        extractor = LLMFactExtractor(
            engine,
            timeout=settings.completion_timeout,
            max_tokens=reasoning_settings.max_tokens,
            temperature=reasoning_settings.temperature,
        )
    logger.info(
        "Runtime ready | engine API: %s | extractor: %s | slots: %d",
        client_settings.api_endpoint,
        engine.model_id if engine else "keyword",
        settings.pool_size,
    )

    orchestrator = ConversationOrchestrator(
        store,
        designer,
        coordinator,
        allocator,
        extractor,
        session_deadline=settings.session_deadline,
    )
    return AgentRuntime(
        settings=settings,
        store=store,
        client=client,
        allocator=allocator,
        coordinator=coordinator,
        orchestrator=orchestrator,
    )
