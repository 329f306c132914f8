"""Conversation-driven workflow deployment agent.

Entry points:
    create_runtime(settings, client_settings, reasoning_settings) → AgentRuntime
    ConversationOrchestrator.handle_message(session_id, message) → TurnResult

Components:
    WorkflowDesigner       — requirements → tenant-tagged WorkflowDefinition
    heal / classify        — engine error classification + deterministic repair
    DeploymentCoordinator  — submit with retry, backoff and healing
    AgentRole              — closed enum of roles that speak in a session
"""

from workflow_deploy_agent.agent.coordinator import DeploymentCoordinator
from workflow_deploy_agent.agent.designer import WorkflowDesigner
from workflow_deploy_agent.agent.facts import KeywordFactExtractor, LLMFactExtractor
from workflow_deploy_agent.agent.graph import (
    AgentRuntime,
    ConversationOrchestrator,
    build_graph,
    create_runtime,
)
from workflow_deploy_agent.agent.healer import Diagnosis, classify, heal
from workflow_deploy_agent.agent.roles import AgentRole
from workflow_deploy_agent.agent.state import TurnState

__all__ = [
    # Orchestration
    "ConversationOrchestrator",
    "build_graph",
    "create_runtime",
    "AgentRuntime",
    "TurnState",
    # Components
    "WorkflowDesigner",
    "DeploymentCoordinator",
    "KeywordFactExtractor",
    "LLMFactExtractor",
    "AgentRole",
    # Healing
    "Diagnosis",
    "classify",
    "heal",
]
