"""Error classification and deterministic healing of rejected definitions.

classify() turns an engine error dict (see client/engine_client.py) into a
Diagnosis carrying an ErrorClass. heal() applies the repair rule registered
for that class:

  READ_ONLY_FIELD_REJECTED → strip the named fields plus the engine's known
                             read-only fields, at workflow and node level
  SCHEMA_VIOLATION         → normalize to the minimal schema: drop unknown keys,
                             default missing optional keys, de-duplicate names
  INVALID_CONNECTION       → drop dangling edges; refuse (UnrepairableDefinitionError)
                             when that would disconnect a previously connected node

Every rule is pure and idempotent: heal(heal(d, c), c) == heal(d, c).
Classes without a rule come back as an unchanged copy.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from workflow_deploy_agent.errors import ImmutableDefinitionError, UnrepairableDefinitionError
from workflow_deploy_agent.models import (
    Connection,
    DefinitionStatus,
    ErrorClass,
    WorkflowDefinition,
)

logger = logging.getLogger("workflow_deploy_agent.agent.healer")

READ_ONLY_WORKFLOW_FIELDS = frozenset({
    "id", "active", "createdAt", "updatedAt", "versionId", "triggerCount",
    "tags", "shared", "isArchived",
})
READ_ONLY_NODE_FIELDS = frozenset({"id", "createdAt", "updatedAt"})

ALLOWED_SETTINGS = frozenset({
    "executionOrder", "saveExecutionProgress", "saveManualExecutions",
    "saveDataErrorExecution", "saveDataSuccessExecution", "executionTimeout",
    "errorWorkflow", "timezone", "callerPolicy",
})

# Fields that are part of the definition's structure and never stripped.
_CORE_FIELDS = frozenset({"name", "type", "typeVersion", "position", "parameters",
                          "nodes", "connections", "settings"})

_X0, _DX, _Y = 240, 220, 300


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Diagnosis:
    """Classified engine failure.

    fields:      offending field names quoted by the engine, if any.
    retry_after: seconds requested by a Retry-After header, if any.
    """

    error_class: ErrorClass
    message: str
    fields: tuple[str, ...] = ()
    retry_after: float | None = None


_READ_ONLY_RE = re.compile(r"read[-\s]?only", re.IGNORECASE)
_READ_ONLY_FIELD_RES = (
    re.compile(r"(?:request/body/)?(?:nodes/\d+/)?['\"]?([A-Za-z_]\w*)['\"]? is read[-\s]?only", re.IGNORECASE),
    re.compile(r"read[-\s]?only (?:field|property)[:\s]+['\"]?([A-Za-z_]\w*)", re.IGNORECASE),
)
_CONNECTION_RE = re.compile(r"connection", re.IGNORECASE)
_SCHEMA_RE = re.compile(
    r"must have required property|must NOT have additional properties|must be (?:an? )?"
    r"(?:object|array|string|number|integer|boolean)|must match|schema|invalid (?:node )?type|"
    r"missing (?:required )?(?:parameter|property|field)|request/body",
    re.IGNORECASE,
)


def _message_of(result: dict[str, Any]) -> str:
    detail = result.get("detail")
    if isinstance(detail, str) and detail.strip():
        try:
            body = json.loads(detail)
        except json.JSONDecodeError:
            return detail.strip()
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return detail.strip()
    return str(result.get("error") or "unknown error")


def _retry_after(value: Any) -> float | None:
    try:
        return max(0.0, float(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def classify(result: dict[str, Any]) -> Diagnosis:
    """Classify an engine error dict."""
    message = _message_of(result)
    status = result.get("status_code")

    if result.get("timeout") or status in (408, 504):
        return Diagnosis(ErrorClass.TIMEOUT, message)
    if status in (401, 403):
        return Diagnosis(ErrorClass.AUTH_FAILURE, message)
    if status in (429, 503):
        return Diagnosis(ErrorClass.RATE_LIMITED, message, retry_after=_retry_after(result.get("retry_after")))
    if status in (400, 422):
        if _READ_ONLY_RE.search(message):
            fields: list[str] = []
            for pattern in _READ_ONLY_FIELD_RES:
                fields.extend(f for f in pattern.findall(message) if f not in fields)
            return Diagnosis(ErrorClass.READ_ONLY_FIELD_REJECTED, message, fields=tuple(fields))
        if _CONNECTION_RE.search(message):
            return Diagnosis(ErrorClass.INVALID_CONNECTION, message)
        if _SCHEMA_RE.search(message):
            return Diagnosis(ErrorClass.SCHEMA_VIOLATION, message)
    return Diagnosis(ErrorClass.UNKNOWN, message)


# ---------------------------------------------------------------------------
# Healing rules
# ---------------------------------------------------------------------------


def _strip_read_only(d: WorkflowDefinition, fields: tuple[str, ...]) -> WorkflowDefinition:
    named = set(fields) - _CORE_FIELDS
    workflow_strip = READ_ONLY_WORKFLOW_FIELDS | named
    node_strip = READ_ONLY_NODE_FIELDS | named
    d.extra = {k: v for k, v in d.extra.items() if k not in workflow_strip}
    for node in d.nodes:
        node.extra = {k: v for k, v in node.extra.items() if k not in node_strip}
    return d


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _dedupe(connections: list[Connection]) -> list[Connection]:
    seen: list[Connection] = []
    for c in connections:
        if c not in seen:
            seen.append(c)
    return seen


def _normalize_schema(d: WorkflowDefinition, fields: tuple[str, ...]) -> WorkflowDefinition:
    d.extra = {}
    d.settings = {k: v for k, v in d.settings.items() if k in ALLOWED_SETTINGS} if isinstance(d.settings, dict) else {}
    d.settings.setdefault("executionOrder", "v1")

    used: set[str] = set()
    for i, node in enumerate(d.nodes):
        node.extra = {}
        if not _is_number(node.type_version) or node.type_version <= 0:
            node.type_version = 1
        if not (
            isinstance(node.position, list)
            and len(node.position) == 2
            and all(_is_number(p) for p in node.position)
        ):
            node.position = [_X0 + i * _DX, _Y]
        if not isinstance(node.parameters, dict):
            node.parameters = {}
        name, n = node.name, 1
        while name in used:
            name = f"{node.name} {n}"
            n += 1
        node.name = name
        used.add(name)

    for c in d.connections:
        if not isinstance(c.kind, str) or not c.kind:
            c.kind = "main"
        if not isinstance(c.source_output, int) or c.source_output < 0:
            c.source_output = 0
        if not isinstance(c.target_input, int) or c.target_input < 0:
            c.target_input = 0
    d.connections = _dedupe(d.connections)
    return d


def _drop_dangling_connections(d: WorkflowDefinition, fields: tuple[str, ...]) -> WorkflowDefinition:
    names = d.node_names
    valid = [c for c in d.connections if c.source in names and c.target in names]
    connected_before = {n for c in d.connections for n in (c.source, c.target) if n in names}
    connected_after = {n for c in valid for n in (c.source, c.target)}
    orphaned = sorted(connected_before - connected_after)
    if orphaned:
        raise UnrepairableDefinitionError(
            "Removing invalid connections would disconnect "
            f"{', '.join(repr(n) for n in orphaned)}; the workflow graph cannot be repaired automatically.",
            capability="connections",
        )
    d.connections = _dedupe(valid)
    return d


HEAL_RULES: dict[ErrorClass, Callable[[WorkflowDefinition, tuple[str, ...]], WorkflowDefinition]] = {
    ErrorClass.READ_ONLY_FIELD_REJECTED: _strip_read_only,
    ErrorClass.SCHEMA_VIOLATION: _normalize_schema,
    ErrorClass.INVALID_CONNECTION: _drop_dangling_connections,
}


def heal(
    definition: WorkflowDefinition,
    error_class: ErrorClass,
    fields: tuple[str, ...] = (),
) -> WorkflowDefinition:
    """Return a repaired copy of definition. The input is never mutated.

    Raises:
        ImmutableDefinitionError:    the definition was already accepted.
        UnrepairableDefinitionError: INVALID_CONNECTION repair would orphan a node.
    """
    if definition.status != DefinitionStatus.PENDING:
        raise ImmutableDefinitionError(f"{definition.name!r} was accepted by the engine and cannot be healed")
    healed = copy.deepcopy(definition)
    rule = HEAL_RULES.get(error_class)
    if rule is None:
        return healed
    healed = rule(healed, tuple(fields))
    if healed != definition:
        logger.info("Healed %r for %s", definition.name, error_class.value)
    return healed
