"""Agent roles that speak in a conversation.

AgentRole is a closed enum: every dispatch on it is an exhaustive match that
ends in assert_never, so adding a role is a type-checked change rather than a
new free-form string. Only the orchestrator issues completions (fact
extraction); the designer and deployment roles build and submit definitions
without a model, so they carry no system prompt.
"""

from __future__ import annotations

import enum
from typing import assert_never

from workflow_deploy_agent.models import Phase


class AgentRole(str, enum.Enum):
    ORCHESTRATOR = "orchestrator"
    WORKFLOW_DESIGNER = "workflow_designer"
    DEPLOYMENT = "deployment"


_ORCHESTRATOR_PROMPT = """\
You extract workflow automation requirements from a requester's message.
Reply with ONE JSON object and nothing else. Include only keys the message
actually states:

  "name":          short workflow title
  "trigger":       one of "webhook", "schedule", "manual", or the literal
                   trigger the requester asked for if it is something else
                   (e.g. "sms", "email_received")
  "schedule_cron": 5-field cron expression when the trigger is a schedule
  "webhook_path":  URL path segment for a webhook trigger
  "actions":       ordered list drawn from "http_request", "send_email",
                   "slack_message", "transform", or the literal action asked for
  "url":           URL for an http_request action
  "email_to":      recipient address for a send_email action
  "email_subject": subject line for a send_email action
  "slack_channel": channel (with leading #) for a slack_message action

Use {} when the message carries no requirement facts."""


def system_prompt_for(role: AgentRole) -> str | None:
    """Completion system prompt for role, or None when the role never calls a model."""
    match role:
        case AgentRole.ORCHESTRATOR:
            return _ORCHESTRATOR_PROMPT
        case AgentRole.WORKFLOW_DESIGNER | AgentRole.DEPLOYMENT:
            # Design and deployment are deterministic.
            return None
        case _:
            assert_never(role)


def role_for_phase(phase: Phase) -> AgentRole:
    """Which role speaks for a session in the given phase."""
    match phase:
        case Phase.GATHERING | Phase.SCOPING | Phase.VALIDATING:
            return AgentRole.ORCHESTRATOR
        case Phase.DESIGNING:
            return AgentRole.WORKFLOW_DESIGNER
        case Phase.DEPLOYING | Phase.COMPLETED | Phase.FAILED:
            return AgentRole.DEPLOYMENT
        case _:
            assert_never(phase)
