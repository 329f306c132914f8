"""ConversationOrchestrator end to end, with a mocked n8n engine.

Every handle_message() call produces at most one phase transition; the only
backward moves are the unsupported-capability bounce (Validating → Scoping)
and an explicit reset. Validating and Deploying re-prompt in place until the
missing fact or the "deploy" confirmation arrives.
"""

from __future__ import annotations

import asyncio
import gc
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from workflow_deploy_agent.agent.designer import WorkflowDesigner
from workflow_deploy_agent.agent.facts import LLMFactExtractor
from workflow_deploy_agent.agent.graph import ConversationOrchestrator, create_runtime
from workflow_deploy_agent.client import Settings
from workflow_deploy_agent.config import OrchestratorSettings
from workflow_deploy_agent.errors import SessionClosedError, SessionNotFoundError, ValidationError
from workflow_deploy_agent.models import PHASE_ORDER, Phase
from workflow_deploy_agent.persistence import InMemoryStore
from workflow_deploy_agent.reasoning import ReasoningSettings

_REPORT_REQUEST = (
    "Every day at 9am fetch https://api.example.com/report and post it to #reports on Slack"
)
_SMS_REQUEST = "Whenever someone sends us an SMS, email me at ops@example.com"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _accepting_engine(submitted: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if submitted is not None:
            submitted.append(body)
        return httpx.Response(200, json={"id": f"wf-{len(submitted or []) or 1}", "name": body["name"]})

    return handler


async def _no_sleep(delay: float) -> None:
    return None


async def _runtime(handler=None, **overrides):
    settings = OrchestratorSettings(
        _env_file=None,
        slot_projects=overrides.pop("slot_projects", 1),
        slots_per_project=overrides.pop("slots_per_project", 2),
        **overrides,
    )
    return await create_runtime(
        settings,
        Settings(api_key="k", api_endpoint="http://n8n.test"),
        ReasoningSettings(_env_file=None, provider="none"),
        store=InMemoryStore(),
        transport=httpx.MockTransport(handler or _accepting_engine()),
        sleep=_no_sleep,
    )


async def _drive(orchestrator, session_id: str, *messages: str):
    results = []
    for message in messages:
        results.append(await orchestrator.handle_message(session_id, message))
    return results


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_request_to_deployed_workflow():
    submitted: list[dict] = []
    runtime = await _runtime(_accepting_engine(submitted))
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")

    results = await _drive(
        orchestrator, session.id, _REPORT_REQUEST, "continue", "continue", "continue", "deploy"
    )

    assert [r.phase for r in results] == [
        Phase.SCOPING,
        Phase.VALIDATING,
        Phase.DESIGNING,
        Phase.DEPLOYING,
        Phase.COMPLETED,
    ]
    final = results[-1]
    assert final.terminal_result["status"] == "succeeded"
    assert final.terminal_result["engine_id"] == "wf-1"
    assert final.terminal_result["workflow_name"].startswith("[USR-acme] ")
    assert all(r.terminal_result is None for r in results[:-1])
    assert len(submitted) == 1
    assert submitted[0]["name"].startswith("[USR-acme] ")

    stored = await orchestrator.get_session(session.id)
    assert stored.phase == Phase.COMPLETED
    assert stored.result == final.terminal_result
    assert len(stored.history) == 10
    assert (await runtime.allocator.slot_for("acme")) is not None
    await runtime.close()


@pytest.mark.asyncio
async def test_phases_only_move_forward():
    runtime = await _runtime()
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")

    previous = Phase.GATHERING
    for message in ("hello", _REPORT_REQUEST, "continue", "continue", "deploy"):
        result = await orchestrator.handle_message(session.id, message)
        assert PHASE_ORDER[result.phase] >= PHASE_ORDER[previous]
        previous = result.phase
    assert previous == Phase.COMPLETED
    await runtime.close()


@pytest.mark.asyncio
async def test_scoping_asks_for_missing_fact():
    runtime = await _runtime()
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")

    first, second = await _drive(orchestrator, session.id, "run it manually", "continue")

    assert first.phase == Phase.SCOPING
    assert "What should the workflow do" in first.reply
    # Self-transition while the fact is still missing.
    assert second.phase == Phase.SCOPING
    assert "What should the workflow do" in second.reply
    await runtime.close()


@pytest.mark.asyncio
async def test_validating_asks_for_fact_added_late_without_moving_back():
    runtime = await _runtime()
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")

    results = await _drive(
        orchestrator,
        session.id,
        "Run it manually and fetch https://api.example.com/ping",
        "continue",
        "also post the result to slack",
        "#alerts",
    )

    assert [r.phase for r in results] == [
        Phase.SCOPING,
        Phase.VALIDATING,
        Phase.VALIDATING,
        Phase.DESIGNING,
    ]
    assert "Slack channel" in results[2].reply
    stored = await orchestrator.get_session(session.id)
    assert stored.draft_requirements["slack_channel"] == "#alerts"
    await runtime.close()


# ---------------------------------------------------------------------------
# Unsupported capability
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unsupported_trigger_bounces_to_scoping_with_alternative():
    runtime = await _runtime()
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")

    results = await _drive(orchestrator, session.id, _SMS_REQUEST, "continue", "continue")

    assert [r.phase for r in results] == [Phase.SCOPING, Phase.VALIDATING, Phase.SCOPING]
    assert "sms" in results[-1].reply
    assert "Webhook" in results[-1].reply
    stored = await orchestrator.get_session(session.id)
    assert "trigger" not in stored.draft_requirements
    assert stored.draft_requirements["actions"] == ["send_email"]

    results = await _drive(orchestrator, session.id, "use a webhook instead", "continue", "continue")
    assert [r.phase for r in results] == [Phase.VALIDATING, Phase.DESIGNING, Phase.DEPLOYING]
    await runtime.close()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reset_returns_to_gathering_and_clears_draft():
    runtime = await _runtime()
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")

    await _drive(orchestrator, session.id, _REPORT_REQUEST, "continue")
    result = await orchestrator.handle_message(session.id, "start over")

    assert result.phase == Phase.GATHERING
    stored = await orchestrator.get_session(session.id)
    assert stored.draft_requirements == {}
    assert stored.draft_definition is None
    await runtime.close()


@pytest.mark.asyncio
async def test_cancel_abandons_and_closes_session():
    runtime = await _runtime()
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")

    await orchestrator.handle_message(session.id, _REPORT_REQUEST)
    result = await orchestrator.handle_message(session.id, "cancel")

    assert result.phase == Phase.FAILED
    assert result.terminal_result["status"] == "abandoned"
    with pytest.raises(SessionClosedError):
        await orchestrator.handle_message(session.id, "continue")
    await runtime.close()


@pytest.mark.asyncio
async def test_deploying_waits_for_explicit_confirmation():
    submitted: list[dict] = []
    runtime = await _runtime(_accepting_engine(submitted))
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")
    await _drive(orchestrator, session.id, _REPORT_REQUEST, "continue", "continue", "continue")

    waiting = await orchestrator.handle_message(session.id, "what happens next?")

    assert waiting.phase == Phase.DEPLOYING
    assert "Reply 'deploy'" in waiting.reply
    assert submitted == []
    assert (await runtime.allocator.slot_for("acme")) is None

    done = await orchestrator.handle_message(session.id, "deploy")
    assert done.phase == Phase.COMPLETED
    assert len(submitted) == 1
    await runtime.close()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_session_reuses_open_session_per_topic():
    runtime = await _runtime()
    orchestrator = runtime.orchestrator

    a = await orchestrator.start_session("acme", "reports")
    b = await orchestrator.start_session("acme", "reports")
    c = await orchestrator.start_session("acme", "alerts")

    assert a.id == b.id
    assert c.id != a.id
    assert {s.id for s in await orchestrator.list_sessions("acme")} == {a.id, c.id}
    await runtime.close()


@pytest.mark.asyncio
async def test_closed_session_is_replaced_on_start():
    runtime = await _runtime()
    orchestrator = runtime.orchestrator
    first = await orchestrator.start_session("acme")
    await orchestrator.handle_message(first.id, "cancel")

    second = await orchestrator.start_session("acme")

    assert second.id != first.id
    assert second.phase == Phase.GATHERING
    await runtime.close()


@pytest.mark.asyncio
async def test_empty_and_unknown_inputs():
    runtime = await _runtime()
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")

    with pytest.raises(ValidationError):
        await orchestrator.handle_message(session.id, "   ")
    with pytest.raises(SessionNotFoundError):
        await orchestrator.handle_message("missing", "hello")
    with pytest.raises(ValueError):
        await orchestrator.start_session("bad]tenant")
    await runtime.close()


@pytest.mark.asyncio
async def test_concurrent_messages_for_one_session_are_serialized():
    runtime = await _runtime()
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")
    await orchestrator.handle_message(session.id, _REPORT_REQUEST)

    results = await asyncio.gather(
        orchestrator.handle_message(session.id, "continue"),
        orchestrator.handle_message(session.id, "continue"),
    )

    assert sorted(r.phase.value for r in results) == ["designing", "validating"]
    stored = await orchestrator.get_session(session.id)
    assert stored.phase == Phase.DESIGNING
    assert len(stored.history) == 6
    await runtime.close()


@pytest.mark.asyncio
async def test_session_locks_are_released_after_each_turn():
    runtime = await _runtime()
    orchestrator = runtime.orchestrator

    for i in range(50):
        session = await orchestrator.start_session("acme", f"topic-{i}")
        await orchestrator.handle_message(session.id, _REPORT_REQUEST)
        await orchestrator.handle_message(session.id, "cancel")
    gc.collect()

    assert len(orchestrator._locks) == 0
    await runtime.close()


# ---------------------------------------------------------------------------
# Deployment outcomes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_engine_auth_failure_fails_session():
    runtime = await _runtime(lambda request: httpx.Response(401, json={"message": "unauthorized"}))
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")

    results = await _drive(
        orchestrator, session.id, _REPORT_REQUEST, "continue", "continue", "continue", "deploy"
    )

    final = results[-1]
    assert final.phase == Phase.FAILED
    assert final.terminal_result["error_class"] == "auth_failure"
    assert final.metrics["submissions"] == 1
    assert (await orchestrator.get_session(session.id)).error
    await runtime.close()


@pytest.mark.asyncio
async def test_slot_exhaustion_fails_deploy():
    runtime = await _runtime(slot_projects=1, slots_per_project=1)
    await runtime.allocator.claim_slot("someone-else")
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")

    results = await _drive(
        orchestrator, session.id, _REPORT_REQUEST, "continue", "continue", "continue", "deploy"
    )

    assert results[-1].phase == Phase.FAILED
    assert "No isolation slot available" in results[-1].reply
    await runtime.close()


@pytest.mark.asyncio
async def test_session_deadline_fails_with_timeout():
    async def hang(request):
        await asyncio.sleep(10)
        return httpx.Response(200, json={"id": "late"})

    runtime = await _runtime(hang, session_deadline=0.05)
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")

    results = await _drive(
        orchestrator, session.id, _REPORT_REQUEST, "continue", "continue", "continue", "deploy"
    )

    final = results[-1]
    assert final.phase == Phase.FAILED
    assert final.terminal_result["error_class"] == "timeout"
    await runtime.close()


@pytest.mark.asyncio
async def test_cancel_deployment_without_in_flight_deploy():
    runtime = await _runtime()
    session = await runtime.orchestrator.start_session("acme")
    assert runtime.orchestrator.cancel_deployment(session.id) is False
    await runtime.close()


# ---------------------------------------------------------------------------
# Completion failures, metrics and roles
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_completion_timeout_reprompts_without_advancing():
    async def hang(*args, **kwargs):
        await asyncio.sleep(10)

    engine = MagicMock()
    engine.model_id = "test/hang"
    engine.complete = hang
    runtime = await _runtime()
    orchestrator = ConversationOrchestrator(
        runtime.store,
        WorkflowDesigner(),
        runtime.coordinator,
        runtime.allocator,
        LLMFactExtractor(engine, timeout=0.01),
    )
    session = await orchestrator.start_session("acme")

    result = await orchestrator.handle_message(session.id, _REPORT_REQUEST)

    assert result.phase == Phase.GATHERING
    assert "send it again" in result.reply
    await runtime.close()


@pytest.mark.asyncio
async def test_llm_tokens_are_reported_in_metrics():
    from workflow_deploy_agent.reasoning import Completion

    engine = MagicMock()
    engine.model_id = "test/json"
    engine.complete = AsyncMock(return_value=Completion(text='{"trigger": "manual"}', tokens_used=17))
    runtime = await _runtime()
    orchestrator = ConversationOrchestrator(
        runtime.store, WorkflowDesigner(), runtime.coordinator, runtime.allocator,
        LLMFactExtractor(engine),
    )
    session = await orchestrator.start_session("acme")

    result = await orchestrator.handle_message(session.id, "run it by hand")

    assert result.metrics["tokens_used"] == 17
    assert result.metrics["phase"] == "gathering"
    assert result.metrics["duration_ms"] >= 0
    await runtime.close()


@pytest.mark.asyncio
async def test_assistant_turns_are_tagged_with_role():
    runtime = await _runtime()
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session("acme")

    await _drive(orchestrator, session.id, _REPORT_REQUEST, "continue", "continue", "continue", "deploy")

    stored = await orchestrator.get_session(session.id)
    roles = [t.agent_role for t in stored.history if t.role == "assistant"]
    assert roles == ["orchestrator", "orchestrator", "orchestrator", "workflow_designer", "deployment"]
    assert all(t.agent_role is None for t in stored.history if t.role == "user")
    await runtime.close()
