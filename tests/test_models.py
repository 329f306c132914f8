"""Data model: tenant tags, engine payload parsing, session persistence shape."""

from __future__ import annotations

import pytest

from workflow_deploy_agent.models import (
    ConversationSession,
    Phase,
    TenantSlot,
    Turn,
    WorkflowDefinition,
    owns_workflow_name,
    tenant_tag,
)


def test_tenant_tag_and_ownership():
    assert tenant_tag("acme") == "[USR-acme]"
    assert owns_workflow_name("[USR-acme] Report", "acme")
    assert not owns_workflow_name("[USR-acme2] Report", "acme")
    assert not owns_workflow_name("Report [USR-acme]", "acme")
    for bad in ("", "a]b", "[x"):
        with pytest.raises(ValueError):
            tenant_tag(bad)


def test_folder_tag_is_one_based():
    assert TenantSlot(0, 0).folder_tag == "FOLDER-P01-U1"
    assert TenantSlot(9, 4).folder_tag == "FOLDER-P10-U5"


def test_terminal_phases():
    assert {p for p in Phase if p.is_terminal} == {Phase.COMPLETED, Phase.FAILED}


def test_from_payload_keeps_unknown_keys_for_healing():
    payload = {
        "name": "[USR-acme] Imported",
        "active": True,
        "nodes": [
            {"name": "Start", "type": "n8n-nodes-base.manualTrigger", "typeVersion": 1,
             "position": [0, 0], "parameters": {}, "id": "uuid-1"},
            {"name": "Call", "type": "n8n-nodes-base.httpRequest", "parameters": {"url": "https://x.io"}},
        ],
        "connections": {"Start": {"main": [[{"node": "Call", "type": "main", "index": 0}]]}},
        "settings": {"executionOrder": "v1"},
    }

    d = WorkflowDefinition.from_payload(payload, "acme")

    assert d.extra == {"active": True}
    assert d.nodes[0].extra == {"id": "uuid-1"}
    assert d.nodes[1].position is None
    assert [(c.source, c.target) for c in d.connections] == [("Start", "Call")]
    assert d.to_payload()["connections"] == payload["connections"]


@pytest.mark.parametrize("payload", [
    [],
    {"nodes": "x"},
    {"nodes": [{"type": "t"}]},
    {"nodes": [], "connections": []},
    {"nodes": [], "connections": {"A": {"main": [["B"]]}}},
])
def test_from_payload_rejects_malformed(payload):
    with pytest.raises(ValueError):
        WorkflowDefinition.from_payload(payload, "acme")


def test_session_survives_serialization():
    session = ConversationSession(
        id="s1",
        tenant_id="acme",
        phase=Phase.DEPLOYING,
        history=[Turn(role="assistant", content="hi", phase="gathering", agent_role="orchestrator")],
        draft_requirements={"trigger": "manual"},
        draft_definition=WorkflowDefinition(name="[USR-acme] X", tenant_id="acme"),
    )
    restored = ConversationSession.from_dict(session.to_dict())
    assert restored == session
