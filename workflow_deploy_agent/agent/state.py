"""Turn state for the conversation graph.

One graph invocation handles exactly one inbound message. The orchestrator
seeds TurnState from the stored ConversationSession; the single phase node
that runs returns a partial dict with only the keys it wants to update, and
the orchestrator writes the outcome back onto the session.

Fields annotated with a reducer function accumulate; all other fields use
overwrite semantics (last-writer-wins).
"""

from __future__ import annotations

from typing import Annotated, Any, TypedDict

from workflow_deploy_agent.models import Turn, WorkflowDefinition


def _sum_int(existing: int, incoming: int) -> int:
    """Accumulate an integer counter across node updates (token totals)."""
    return (existing or 0) + (incoming or 0)


class TurnState(TypedDict):
    """State of one handle_message() call.

    Inputs (set by the orchestrator):
        session_id, tenant_id, topic
        phase:              phase value at turn start
        message:            the inbound requester message
        history:            prior turns (read-only for nodes)
        draft_requirements: accumulated requirement facts
        draft_definition:   designed definition, once Designing succeeded

    Outputs (set by the phase node):
        next_phase:      phase value after this turn
        reply:           assistant reply text
        agent_role:      AgentRole value that produced the reply
        terminal_result: DeploymentResult.summary() or failure summary on a terminal turn
        error:           human-readable cause when the session failed
        tokens_used:     completion tokens spent this turn
        submissions:     engine submissions made this turn
        heal_events:     heals applied this turn
    """

    session_id: str
    tenant_id: str
    topic: str
    phase: str
    message: str
    history: list[Turn]
    draft_requirements: dict[str, Any]
    draft_definition: WorkflowDefinition | None

    next_phase: str
    reply: str
    agent_role: str
    terminal_result: dict[str, Any] | None
    error: str | None
    tokens_used: Annotated[int, _sum_int]
    submissions: int
    heal_events: int
