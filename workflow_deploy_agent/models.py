"""Core data model: sessions, workflow definitions, deployment attempts, slots.

Everything here is a plain dataclass so that it can be deep-copied, compared
for equality (the healer relies on this) and serialized to JSON for the
persistence layer via to_dict() / from_dict().

Workflow definitions follow the n8n wire format:

    {
      "name": "[USR-<tenant>] <title>",
      "nodes": [{"name", "type", "typeVersion", "position", "parameters"}],
      "connections": {"<source name>": {"main": [[{"node", "type", "index"}]]}},
      "settings": {"executionOrder": "v1"}
    }

Node names are the stable node identifiers: n8n connections reference nodes
by name, never by id.
"""

from __future__ import annotations

import copy
import dataclasses
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Phase(str, Enum):
    GATHERING = "gathering"
    SCOPING = "scoping"
    VALIDATING = "validating"
    DESIGNING = "designing"
    DEPLOYING = "deploying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.FAILED)


# Forward ordering used for monotonicity checks. FAILED is reachable from any
# non-terminal phase and so sits outside the ordering.
PHASE_ORDER: dict[Phase, int] = {
    Phase.GATHERING: 0,
    Phase.SCOPING: 1,
    Phase.VALIDATING: 2,
    Phase.DESIGNING: 3,
    Phase.DEPLOYING: 4,
    Phase.COMPLETED: 5,
}


class ErrorClass(str, Enum):
    SCHEMA_VIOLATION = "schema_violation"
    READ_ONLY_FIELD_REJECTED = "read_only_field_rejected"
    INVALID_CONNECTION = "invalid_connection"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILURE = "auth_failure"
    UNKNOWN = "unknown"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    HEALED_RETRY = "healed-retry"
    EXHAUSTED = "exhausted"


class DefinitionStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"


# ---------------------------------------------------------------------------
# Tenant tagging
# ---------------------------------------------------------------------------


def tenant_tag(tenant_id: str) -> str:
    """Return the workflow-name prefix that identifies a tenant, e.g. "[USR-bob]"."""
    if not tenant_id or "]" in tenant_id or "[" in tenant_id:
        raise ValueError(f"Invalid tenant id: {tenant_id!r}")
    return f"[USR-{tenant_id}]"


def owns_workflow_name(name: str, tenant_id: str) -> bool:
    """True if a workflow name carries tenant_id's tag as its prefix."""
    return isinstance(name, str) and name.startswith(tenant_tag(tenant_id))


# ---------------------------------------------------------------------------
# Workflow definition
# ---------------------------------------------------------------------------


@dataclass
class WorkflowNode:
    """One typed step of a workflow.

    name:         stable node identifier, unique within the definition.
    type:         engine node type, e.g. "n8n-nodes-base.webhook".
    type_version: engine node type version.
    position:     [x, y] canvas position, None when not laid out yet.
    parameters:   node-type specific configuration.
    extra:        any other keys present on the node (read-only or unknown
                  fields picked up from imports or LLM output).
    """

    name: str
    type: str
    type_version: float = 1
    position: list[float] | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update({
            "name": self.name,
            "type": self.type,
            "typeVersion": self.type_version,
            "parameters": copy.deepcopy(self.parameters),
        })
        if self.position is not None:
            payload["position"] = list(self.position)
        return payload


@dataclass
class Connection:
    """Directed edge between two nodes, referenced by node name."""

    source: str
    target: str
    source_output: int = 0
    target_input: int = 0
    kind: str = "main"


_NODE_CORE_KEYS = {"name", "type", "typeVersion", "position", "parameters"}
_WORKFLOW_CORE_KEYS = {"name", "nodes", "connections", "settings"}


@dataclass
class WorkflowDefinition:
    """Structured workflow graph submitted to the engine.

    id:        local identifier (DeploymentAttempt.workflow_id refers to it).
    engine_id: identifier assigned by the engine once accepted.
    status:    PENDING while it may still be healed; ACCEPTED once the engine
               took it, after which it is immutable.
    """

    name: str
    tenant_id: str
    nodes: list[WorkflowNode] = field(default_factory=list)
    connections: list[Connection] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    status: DefinitionStatus = DefinitionStatus.PENDING
    engine_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def node_names(self) -> set[str]:
        return {n.name for n in self.nodes}

    def node(self, name: str) -> WorkflowNode | None:
        return next((n for n in self.nodes if n.name == name), None)

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the engine's POST /workflows body."""
        connections: dict[str, dict[str, list[list[dict[str, Any]]]]] = {}
        for c in self.connections:
            outputs = connections.setdefault(c.source, {}).setdefault(c.kind, [])
            while len(outputs) <= c.source_output:
                outputs.append([])
            outputs[c.source_output].append(
                {"node": c.target, "type": c.kind, "index": c.target_input}
            )
        payload = dict(self.extra)
        payload.update({
            "name": self.name,
            "nodes": [n.to_payload() for n in self.nodes],
            "connections": connections,
            "settings": copy.deepcopy(self.settings),
        })
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any], tenant_id: str) -> WorkflowDefinition:
        """Parse an engine-format workflow dict.

        Unknown keys are preserved in .extra so that the healer can see (and
        strip) them. Raises ValueError on structurally unusable input.
        """
        if not isinstance(payload, dict):
            raise ValueError("workflow payload must be an object")
        raw_nodes = payload.get("nodes")
        if raw_nodes is None:
            raw_nodes = []
        if not isinstance(raw_nodes, list):
            raise ValueError("'nodes' must be a list")

        nodes: list[WorkflowNode] = []
        for i, raw in enumerate(raw_nodes):
            if not isinstance(raw, dict) or not raw.get("name") or not raw.get("type"):
                raise ValueError(f"node #{i} must be an object with 'name' and 'type'")
            position = raw.get("position")
            nodes.append(WorkflowNode(
                name=str(raw["name"]),
                type=str(raw["type"]),
                type_version=raw.get("typeVersion", 1),
                position=list(position) if isinstance(position, (list, tuple)) else None,
                parameters=dict(raw.get("parameters") or {}),
                extra={k: v for k, v in raw.items() if k not in _NODE_CORE_KEYS},
            ))

        raw_connections = payload.get("connections")
        if raw_connections is None:
            raw_connections = {}
        if not isinstance(raw_connections, dict):
            raise ValueError("'connections' must be an object keyed by source node name")
        connections: list[Connection] = []
        for source, by_kind in raw_connections.items():
            if not isinstance(by_kind, dict):
                raise ValueError(f"connections for {source!r} must be an object")
            for kind, outputs in by_kind.items():
                for output_index, targets in enumerate(outputs or []):
                    for target in targets or []:
                        if not isinstance(target, dict) or "node" not in target:
                            raise ValueError(f"malformed connection from {source!r}")
                        connections.append(Connection(
                            source=str(source),
                            target=str(target["node"]),
                            source_output=output_index,
                            target_input=int(target.get("index", 0) or 0),
                            kind=str(target.get("type") or kind),
                        ))

        return cls(
            name=str(payload.get("name") or ""),
            tenant_id=tenant_id,
            nodes=nodes,
            connections=connections,
            settings=dict(payload.get("settings") or {}),
            extra={k: v for k, v in payload.items() if k not in _WORKFLOW_CORE_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowDefinition:
        data = dict(data)
        data["nodes"] = [WorkflowNode(**n) for n in data.get("nodes", [])]
        data["connections"] = [Connection(**c) for c in data.get("connections", [])]
        data["status"] = DefinitionStatus(data.get("status", DefinitionStatus.PENDING.value))
        return cls(**data)


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


@dataclass
class DeploymentAttempt:
    """One submission of a definition to the engine."""

    workflow_id: str
    attempt_number: int
    tenant_id: str = ""
    status: AttemptStatus = AttemptStatus.PENDING
    error_class: ErrorClass | None = None
    diagnostic: str | None = None
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["status"] = self.status.value
        data["error_class"] = self.error_class.value if self.error_class else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeploymentAttempt:
        data = dict(data)
        data["status"] = AttemptStatus(data["status"])
        if data.get("error_class"):
            data["error_class"] = ErrorClass(data["error_class"])
        return cls(**data)


@dataclass
class DeploymentResult:
    """Terminal outcome of DeploymentCoordinator.deploy().

    status is SUCCEEDED, FAILED (fatal or cancelled) or EXHAUSTED.
    """

    status: AttemptStatus
    definition: WorkflowDefinition
    attempts: list[DeploymentAttempt] = field(default_factory=list)
    engine_id: str | None = None
    endpoint: str | None = None
    editor_url: str | None = None
    error_class: ErrorClass | None = None
    diagnostic: str | None = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.status == AttemptStatus.SUCCEEDED

    def summary(self) -> dict[str, Any]:
        """JSON-serialisable summary returned to callers as the terminal result."""
        return {
            "status": self.status.value,
            "workflow_name": self.definition.name,
            "engine_id": self.engine_id,
            "endpoint": self.endpoint,
            "editor_url": self.editor_url,
            "error_class": self.error_class.value if self.error_class else None,
            "diagnostic": self.diagnostic,
            "attempts": len(self.attempts),
            "cancelled": self.cancelled,
        }


# ---------------------------------------------------------------------------
# Tenant slots
# ---------------------------------------------------------------------------


@dataclass
class TenantSlot:
    """An isolation namespace (project + folder pair) in the fixed pool.

    (project_index, slot_index) is the unique key; both are 0-based.
    tenant_id is None while the slot is available.
    """

    project_index: int
    slot_index: int
    tenant_id: str | None = None
    assigned_at: float | None = None

    @property
    def key(self) -> tuple[int, int]:
        return (self.project_index, self.slot_index)

    @property
    def is_available(self) -> bool:
        return self.tenant_id is None

    @property
    def folder_tag(self) -> str:
        """Provisioned folder tag, 1-based: FOLDER-P01-U1 for slot (0, 0)."""
        return f"FOLDER-P{self.project_index + 1:02d}-U{self.slot_index + 1}"

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["folder_tag"] = self.folder_tag
        return data


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


@dataclass
class Turn:
    """One entry in a session's history.

    role:       "user" | "assistant"
    agent_role: AgentRole value that produced an assistant turn, else None.
    """

    role: str
    content: str
    phase: str
    agent_role: str | None = None
    ts: float = field(default_factory=time.time)


@dataclass
class ConversationSession:
    id: str
    tenant_id: str
    topic: str = "default"
    phase: Phase = Phase.GATHERING
    history: list[Turn] = field(default_factory=list)
    draft_requirements: dict[str, Any] = field(default_factory=dict)
    draft_definition: WorkflowDefinition | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "topic": self.topic,
            "phase": self.phase.value,
            "history": [dataclasses.asdict(t) for t in self.history],
            "draft_requirements": copy.deepcopy(self.draft_requirements),
            "draft_definition": self.draft_definition.to_dict() if self.draft_definition else None,
            "result": copy.deepcopy(self.result),
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationSession:
        definition = data.get("draft_definition")
        return cls(
            id=data["id"],
            tenant_id=data["tenant_id"],
            topic=data.get("topic", "default"),
            phase=Phase(data.get("phase", Phase.GATHERING.value)),
            history=[Turn(**t) for t in data.get("history", [])],
            draft_requirements=dict(data.get("draft_requirements") or {}),
            draft_definition=WorkflowDefinition.from_dict(definition) if definition else None,
            result=data.get("result"),
            error=data.get("error"),
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
        )


@dataclass
class TurnResult:
    """Return value of ConversationOrchestrator.handle_message()."""

    session_id: str
    phase: Phase
    reply: str
    terminal_result: dict[str, Any] | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
