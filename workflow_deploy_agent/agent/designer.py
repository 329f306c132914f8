"""WorkflowDesigner — requirements → n8n workflow definition.

Deterministic schema shaping with no network I/O. Each recognized capability
maps to a node template from a fixed table; the trigger node starts a linear
chain through the requested actions in order. Anything without a template
(or outside the engine's configured capability set) produces a DesignError
that names it: nothing is ever silently dropped.

    requirements = {"trigger": "schedule", "schedule_cron": "0 9 * * *",
                    "actions": ["http_request", "slack_message"],
                    "url": "https://api.example.com/report",
                    "slack_channel": "#reports"}

    Schedule Trigger ──► HTTP Request ──► Slack
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from workflow_deploy_agent.agent.facts import parse_facts
from workflow_deploy_agent.errors import DesignError, TenantIsolationError, ValidationError
from workflow_deploy_agent.models import (
    Connection,
    WorkflowDefinition,
    WorkflowNode,
    owns_workflow_name,
    tenant_tag,
)

logger = logging.getLogger("workflow_deploy_agent.agent.designer")

# Canvas layout
_X0, _DX, _Y = 240, 220, 300

ParamBuilder = Callable[[Mapping[str, Any], "DesignContext"], dict[str, Any]]


@dataclass(frozen=True)
class DesignContext:
    tenant_id: str
    title: str

    @property
    def default_webhook_path(self) -> str:
        return f"{_path_slug(self.tenant_id)}/{_path_slug(self.title)}"


def _path_slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "workflow"


@dataclass(frozen=True)
class NodeTemplate:
    """How one capability becomes a node.

    required: requirement facts that must be present before design.
    """

    capability: str
    kind: str  # "trigger" | "action"
    node_type: str
    type_version: float
    label: str
    required: tuple[str, ...]
    build: ParamBuilder


# ---------------------------------------------------------------------------
# Template table
# ---------------------------------------------------------------------------


def _webhook_params(req: Mapping[str, Any], ctx: DesignContext) -> dict[str, Any]:
    return {
        "path": req.get("webhook_path") or ctx.default_webhook_path,
        "httpMethod": "POST",
        "responseMode": "responseNode",
        "options": {},
    }


def _schedule_params(req: Mapping[str, Any], ctx: DesignContext) -> dict[str, Any]:
    return {
        "rule": {
            "interval": [{"field": "cronExpression", "expression": req["schedule_cron"]}],
        },
    }


def _http_params(req: Mapping[str, Any], ctx: DesignContext) -> dict[str, Any]:
    return {"method": "GET", "url": req["url"], "options": {}}


def _email_params(req: Mapping[str, Any], ctx: DesignContext) -> dict[str, Any]:
    return {
        "toEmail": req["email_to"],
        "subject": req.get("email_subject") or f"{ctx.title} notification",
        "emailFormat": "text",
        "text": "={{ JSON.stringify($json, null, 2) }}",
        "options": {},
    }


def _slack_params(req: Mapping[str, Any], ctx: DesignContext) -> dict[str, Any]:
    return {
        "select": "channel",
        "channelId": {"__rl": True, "value": req["slack_channel"], "mode": "name"},
        "text": "={{ JSON.stringify($json) }}",
        "otherOptions": {},
    }


def _set_params(req: Mapping[str, Any], ctx: DesignContext) -> dict[str, Any]:
    return {"mode": "manual", "includeOtherFields": True, "options": {}}


TEMPLATES: dict[str, NodeTemplate] = {
    t.capability: t
    for t in (
        NodeTemplate("webhook", "trigger", "n8n-nodes-base.webhook", 2, "Webhook", (), _webhook_params),
        NodeTemplate("schedule", "trigger", "n8n-nodes-base.scheduleTrigger", 1.2, "Schedule Trigger",
                     ("schedule_cron",), _schedule_params),
        NodeTemplate("manual", "trigger", "n8n-nodes-base.manualTrigger", 1, "Manual Trigger", (),
                     lambda req, ctx: {}),
        NodeTemplate("http_request", "action", "n8n-nodes-base.httpRequest", 4.2, "HTTP Request",
                     ("url",), _http_params),
        NodeTemplate("send_email", "action", "n8n-nodes-base.emailSend", 2.1, "Send Email",
                     ("email_to",), _email_params),
        NodeTemplate("slack_message", "action", "n8n-nodes-base.slack", 2.2, "Slack",
                     ("slack_channel",), _slack_params),
        NodeTemplate("transform", "action", "n8n-nodes-base.set", 3.4, "Edit Fields", (), _set_params),
    )
}

# Terminal node appended when a webhook trigger answers the caller.
_RESPOND_TEMPLATE = NodeTemplate(
    "respond_webhook", "action", "n8n-nodes-base.respondToWebhook", 1.1, "Respond to Webhook", (),
    lambda req, ctx: {"respondWith": "allIncomingItems", "options": {}},
)

# Suggested substitutes for capabilities the engine does not offer.
ALTERNATIVES: dict[str, tuple[str, ...]] = {
    "sms": ("webhook",),
    "email_received": ("schedule", "webhook"),
    "file_watch": ("schedule", "webhook"),
    "send_sms": ("slack_message", "send_email"),
}

_FACT_QUESTIONS: dict[str, str] = {
    "trigger": "What should start the workflow: an incoming webhook, a schedule, or a manual run?",
    "actions": "What should the workflow do once it starts (call an API, send an email, post to Slack, transform data)?",
    "schedule_cron": "How often should it run (e.g. every hour, daily at 9am, or a cron expression)?",
    "url": "Which URL should the HTTP request call?",
    "email_to": "Which email address should receive the message?",
    "slack_channel": "Which Slack channel should it post to (e.g. #alerts)?",
}


def question_for(fact: str) -> str:
    return _FACT_QUESTIONS.get(fact, f"Please provide a value for {fact!r}.")


# ---------------------------------------------------------------------------
# Designer
# ---------------------------------------------------------------------------


class WorkflowDesigner:
    """Shapes validated requirements into a WorkflowDefinition.

    supported_triggers / supported_actions: the engine's capability set.
    A capability must be both in that set and in the template table.
    """

    def __init__(
        self,
        supported_triggers: frozenset[str] | None = None,
        supported_actions: frozenset[str] | None = None,
    ) -> None:
        known_triggers = {c for c, t in TEMPLATES.items() if t.kind == "trigger"}
        known_actions = {c for c, t in TEMPLATES.items() if t.kind == "action"}
        self._triggers = frozenset(known_triggers if supported_triggers is None else known_triggers & supported_triggers)
        self._actions = frozenset(known_actions if supported_actions is None else known_actions & supported_actions)

    @property
    def supported_triggers(self) -> frozenset[str]:
        return self._triggers

    @property
    def supported_actions(self) -> frozenset[str]:
        return self._actions

    # ------------------------------------------------------------------
    # Completeness + capability checks
    # ------------------------------------------------------------------

    def missing_facts(self, requirements: Mapping[str, Any]) -> list[str]:
        """Facts still needed before a design can be attempted, in asking order.

        Unrecognized capabilities contribute no required facts; the capability
        check reports them instead.
        """
        missing: list[str] = []
        trigger = requirements.get("trigger")
        actions = requirements.get("actions") or []
        if not trigger:
            missing.append("trigger")
        if not actions:
            missing.append("actions")
        for capability in [trigger, *actions]:
            template = TEMPLATES.get(capability or "")
            if template is None:
                continue
            missing.extend(f for f in template.required if not requirements.get(f) and f not in missing)
        return missing

    def check_capabilities(self, requirements: Mapping[str, Any]) -> None:
        """Raise DesignError naming the first capability the engine cannot run."""
        trigger = requirements.get("trigger")
        if trigger and trigger not in self._triggers:
            raise DesignError(
                f"The workflow engine has no '{trigger}' trigger.",
                capability=trigger,
                alternatives=self._alternatives(trigger, self._triggers),
            )
        for action in requirements.get("actions") or []:
            if action not in self._actions:
                raise DesignError(
                    f"The workflow engine cannot perform '{action}'.",
                    capability=action,
                    alternatives=self._alternatives(action, self._actions),
                )

    @staticmethod
    def _alternatives(capability: str, supported: frozenset[str]) -> tuple[str, ...]:
        preferred = tuple(a for a in ALTERNATIVES.get(capability, ()) if a in supported)
        return preferred or tuple(sorted(supported))

    # ------------------------------------------------------------------
    # Design
    # ------------------------------------------------------------------

    def design(self, requirements: Mapping[str, Any], tenant_id: str) -> WorkflowDefinition:
        """Build the definition for tenant_id, or raise DesignError."""
        try:
            facts = parse_facts(dict(requirements))
        except ValidationError as e:
            raise DesignError(f"Requirements are malformed: {e}") from e

        missing = self.missing_facts(facts)
        if missing:
            raise DesignError(f"Requirements are incomplete; missing: {', '.join(missing)}")
        self.check_capabilities(facts)

        trigger = TEMPLATES[facts["trigger"]]
        actions = [TEMPLATES[a] for a in facts["actions"]]
        title = facts.get("name") or f"{trigger.label} to {', '.join(t.label for t in actions)}"
        ctx = DesignContext(tenant_id=tenant_id, title=title)

        chain = [trigger, *actions]
        if trigger.capability == "webhook":
            chain.append(_RESPOND_TEMPLATE)

        nodes: list[WorkflowNode] = []
        for i, template in enumerate(chain):
            nodes.append(WorkflowNode(
                name=template.label,
                type=template.node_type,
                type_version=template.type_version,
                position=[_X0 + i * _DX, _Y],
                parameters=template.build(facts, ctx),
            ))
        connections = [
            Connection(source=a.name, target=b.name) for a, b in zip(nodes, nodes[1:])
        ]

        definition = WorkflowDefinition(
            name=f"{tenant_tag(tenant_id)} {title}",
            tenant_id=tenant_id,
            nodes=nodes,
            connections=connections,
            settings={"executionOrder": "v1"},
            metadata={
                "trigger": trigger.capability,
                "actions": [t.capability for t in actions],
            },
        )
        if trigger.capability == "webhook":
            definition.metadata["webhook_path"] = nodes[0].parameters["path"]
        if not owns_workflow_name(definition.name, tenant_id):
            raise TenantIsolationError(f"designed name {definition.name!r} lacks the tenant tag")

        logger.info(
            "Designed %r for tenant %s: %d nodes, %d connections",
            definition.name, tenant_id, len(nodes), len(connections),
        )
        return definition
