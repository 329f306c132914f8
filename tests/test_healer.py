"""Engine error classification and deterministic healing rules."""

from __future__ import annotations

import copy
import json

import pytest

from workflow_deploy_agent.agent.designer import WorkflowDesigner
from workflow_deploy_agent.agent.healer import classify, heal
from workflow_deploy_agent.errors import ImmutableDefinitionError, UnrepairableDefinitionError
from workflow_deploy_agent.models import (
    Connection,
    DefinitionStatus,
    ErrorClass,
    WorkflowDefinition,
)


def _http_error(status: int, message: str, retry_after: str | None = None) -> dict:
    return {
        "error": f"HTTP {status}",
        "status_code": status,
        "detail": json.dumps({"message": message}),
        "retry_after": retry_after,
    }


def _definition() -> WorkflowDefinition:
    return WorkflowDesigner().design(
        {"trigger": "manual", "actions": ["http_request", "transform"], "url": "https://x.io/a"},
        "acme",
    )


# ---------------------------------------------------------------------------
# classify()
# ---------------------------------------------------------------------------


class TestClassify:
    def test_read_only_field_names_are_extracted(self):
        d = classify(_http_error(400, "request/body/active is read-only"))
        assert d.error_class == ErrorClass.READ_ONLY_FIELD_REJECTED
        assert d.fields == ("active",)

    def test_invalid_connection(self):
        d = classify(_http_error(400, "Connection references unknown node 'Ghost'"))
        assert d.error_class == ErrorClass.INVALID_CONNECTION

    def test_schema_violation(self):
        d = classify(_http_error(400, "request/body must NOT have additional properties"))
        assert d.error_class == ErrorClass.SCHEMA_VIOLATION

    def test_timeout(self):
        assert classify({"error": "timeout", "timeout": True}).error_class == ErrorClass.TIMEOUT
        assert classify(_http_error(504, "gateway timeout")).error_class == ErrorClass.TIMEOUT

    def test_rate_limited_with_retry_after(self):
        d = classify(_http_error(429, "too many requests", retry_after="7"))
        assert d.error_class == ErrorClass.RATE_LIMITED
        assert d.retry_after == 7.0

    def test_auth_failure(self):
        assert classify(_http_error(401, "unauthorized")).error_class == ErrorClass.AUTH_FAILURE

    def test_unknown(self):
        assert classify({"error": "boom", "transport": True}).error_class == ErrorClass.UNKNOWN
        assert classify(_http_error(500, "internal")).error_class == ErrorClass.UNKNOWN

    def test_plain_text_detail(self):
        d = classify({"error": "HTTP 400", "status_code": 400, "detail": "tags is read-only"})
        assert d.message == "tags is read-only"
        assert d.fields == ("tags",)


# ---------------------------------------------------------------------------
# heal(): read-only fields
# ---------------------------------------------------------------------------


def test_strip_read_only_removes_named_and_known_fields():
    d = _definition()
    d.extra = {"active": False, "id": "old", "pinData": {}}
    d.nodes[0].extra = {"id": "node-uuid", "notes": "keep"}

    healed = heal(d, ErrorClass.READ_ONLY_FIELD_REJECTED, ("active", "pinData"))

    assert healed.extra == {}
    assert healed.nodes[0].extra == {"notes": "keep"}
    assert "active" not in healed.to_payload()


def test_strip_read_only_never_touches_core_fields():
    d = _definition()
    healed = heal(d, ErrorClass.READ_ONLY_FIELD_REJECTED, ("name", "nodes"))
    assert healed.to_payload() == d.to_payload()


def test_heal_does_not_mutate_input():
    d = _definition()
    d.extra = {"active": True}
    before = copy.deepcopy(d)
    heal(d, ErrorClass.READ_ONLY_FIELD_REJECTED, ("active",))
    assert d == before


# ---------------------------------------------------------------------------
# heal(): schema normalization
# ---------------------------------------------------------------------------


def test_normalize_schema_defaults_and_dedupes():
    d = _definition()
    d.extra = {"staticData": None}
    d.settings = {"executionOrder": "v1", "bogus": 1}
    d.nodes[1].position = None
    d.nodes[1].type_version = "latest"
    d.nodes[2].name = d.nodes[1].name
    d.connections.append(Connection(source="Manual Trigger", target="HTTP Request"))

    healed = heal(d, ErrorClass.SCHEMA_VIOLATION)

    assert healed.extra == {}
    assert healed.settings == {"executionOrder": "v1"}
    assert healed.nodes[1].position == [460, 300]
    assert healed.nodes[1].type_version == 1
    assert healed.nodes[2].name == "HTTP Request 1"
    assert len(healed.connections) == len(set((c.source, c.target) for c in healed.connections))


# ---------------------------------------------------------------------------
# heal(): connections
# ---------------------------------------------------------------------------


def test_drop_dangling_connection():
    d = _definition()
    d.connections.append(Connection(source="Edit Fields", target="Ghost"))

    healed = heal(d, ErrorClass.INVALID_CONNECTION)

    assert [(c.source, c.target) for c in healed.connections] == [
        ("Manual Trigger", "HTTP Request"),
        ("HTTP Request", "Edit Fields"),
    ]


def test_connection_repair_refuses_to_orphan_a_node():
    d = _definition()
    # "Edit Fields" is only reachable through an edge from a missing node.
    d.connections = [
        Connection(source="Manual Trigger", target="HTTP Request"),
        Connection(source="Ghost", target="Edit Fields"),
    ]
    with pytest.raises(UnrepairableDefinitionError, match="Edit Fields"):
        heal(d, ErrorClass.INVALID_CONNECTION)


# ---------------------------------------------------------------------------
# Idempotence + immutability
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("error_class", list(ErrorClass))
def test_heal_is_idempotent(error_class):
    d = _definition()
    d.extra = {"active": False, "tags": []}
    d.nodes[0].extra = {"id": "abc"}
    d.connections.append(Connection(source="Edit Fields", target="Ghost"))
    once = heal(d, error_class, ("active",))
    twice = heal(once, error_class, ("active",))
    assert once == twice


def test_unhealable_class_returns_equal_copy():
    d = _definition()
    healed = heal(d, ErrorClass.TIMEOUT)
    assert healed == d
    assert healed is not d


def test_accepted_definition_is_immutable():
    d = _definition()
    d.status = DefinitionStatus.ACCEPTED
    with pytest.raises(ImmutableDefinitionError):
        heal(d, ErrorClass.SCHEMA_VIOLATION)
