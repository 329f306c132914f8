"""PostgresStore against a mocked AsyncConnectionPool.

Verifies:
  1. setup() runs every DDL statement, including the tenant uniqueness index,
     and sizes its own pool from the configured bounds.
  2. claim_slot_if_free() issues the conditional UPDATE and maps rowcount to bool.
  3. A UniqueViolation from a racing claim is reported as a lost claim.
  4. release_slot() returns the slot with the releasing tenant restored.
  5. Session rows round-trip through the JSONB data column.
  6. _redact_dsn() replaces the password with ***.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from psycopg import errors as pg_errors

from workflow_deploy_agent.models import ConversationSession, Phase
from workflow_deploy_agent.persistence.postgres import PostgresStore, _redact_dsn


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _async_ctx(value):
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=value)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return ctx


def _make_mock_pool(rows: list | None = None, rowcount: int = 1):
    """Pool whose single connection/cursor records executed SQL."""
    rows = rows or []
    cur = MagicMock()
    cur.execute = AsyncMock()
    cur.executemany = AsyncMock()
    cur.fetchall = AsyncMock(return_value=rows)
    cur.fetchone = AsyncMock(return_value=rows[0] if rows else None)
    cur.rowcount = rowcount

    conn = MagicMock()
    conn.cursor = MagicMock(return_value=_async_ctx(cur))

    pool = MagicMock()
    pool.connection = MagicMock(return_value=_async_ctx(conn))
    pool.close = AsyncMock()
    return pool, cur


def _executed(cur) -> list[str]:
    return [call.args[0] for call in cur.execute.call_args_list]


# ---------------------------------------------------------------------------
# 1. setup
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_setup_creates_schema_with_injected_pool():
    pool, cur = _make_mock_pool()
    store = PostgresStore("postgresql://u:p@db/agent", pool=pool)

    await store.setup()

    sql = "\n".join(_executed(cur))
    assert "CREATE TABLE IF NOT EXISTS tenant_slots" in sql
    assert "CREATE UNIQUE INDEX IF NOT EXISTS idx_tenant_slots_tenant" in sql
    assert "CREATE TABLE IF NOT EXISTS deployment_attempts" in sql

    # Injected pools belong to the caller.
    await store.close()
    pool.close.assert_not_awaited()


@pytest.mark.asyncio
async def test_setup_builds_pool_with_configured_bounds():
    pool, _ = _make_mock_pool()
    pool.open = AsyncMock()
    with patch("workflow_deploy_agent.persistence.postgres.AsyncConnectionPool", return_value=pool) as factory:
        store = PostgresStore("postgresql://db/agent", min_size=1, max_size=3)
        await store.setup()

    assert factory.call_args.kwargs["min_size"] == 1
    assert factory.call_args.kwargs["max_size"] == 3
    await store.close()
    pool.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_require_setup():
    store = PostgresStore("postgresql://db/agent")
    with pytest.raises(RuntimeError):
        await store.list_slots()


# ---------------------------------------------------------------------------
# 2-3. claim
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_claim_issues_conditional_update():
    pool, cur = _make_mock_pool(rowcount=1)
    store = PostgresStore("postgresql://db/agent", pool=pool)

    assert await store.claim_slot_if_free(0, 1, "alice", 123.0) is True

    sql, params = cur.execute.call_args.args
    assert "tenant_id IS NULL" in sql
    assert "NOT EXISTS" in sql
    assert params == ("alice", 123.0, 0, 1, "alice")


@pytest.mark.asyncio
async def test_claim_lost_when_no_row_updated():
    pool, _ = _make_mock_pool(rowcount=0)
    store = PostgresStore("postgresql://db/agent", pool=pool)
    assert await store.claim_slot_if_free(0, 0, "alice", 1.0) is False


@pytest.mark.asyncio
async def test_claim_unique_violation_is_lost_claim():
    pool, cur = _make_mock_pool()
    cur.execute = AsyncMock(side_effect=pg_errors.UniqueViolation("duplicate key"))
    store = PostgresStore("postgresql://db/agent", pool=pool)
    assert await store.claim_slot_if_free(0, 0, "alice", 1.0) is False


# ---------------------------------------------------------------------------
# 4. release
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_release_restores_tenant_on_returned_slot():
    row = {"project_index": 1, "slot_index": 2, "tenant_id": None, "assigned_at": None}
    pool, cur = _make_mock_pool(rows=[row])
    store = PostgresStore("postgresql://db/agent", pool=pool)

    slot = await store.release_slot("alice")

    assert slot.key == (1, 2)
    assert slot.tenant_id == "alice"
    assert "RETURNING" in cur.execute.call_args.args[0]


@pytest.mark.asyncio
async def test_list_available_slots_maps_rows():
    rows = [
        {"project_index": 0, "slot_index": 0, "tenant_id": None, "assigned_at": None},
        {"project_index": 0, "slot_index": 1, "tenant_id": None, "assigned_at": None},
    ]
    pool, _ = _make_mock_pool(rows=rows)
    store = PostgresStore("postgresql://db/agent", pool=pool)

    slots = await store.list_available_slots()

    assert [s.folder_tag for s in slots] == ["FOLDER-P01-U1", "FOLDER-P01-U2"]


# ---------------------------------------------------------------------------
# 5. sessions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_session_round_trips_through_jsonb():
    session = ConversationSession(id="s1", tenant_id="alice", phase=Phase.SCOPING)
    pool, cur = _make_mock_pool(rows=[{"data": session.to_dict()}])
    store = PostgresStore("postgresql://db/agent", pool=pool)

    await store.save_session(session)
    sql, params = cur.execute.call_args.args
    assert "ON CONFLICT (id) DO UPDATE" in sql
    assert params[:3] == ("s1", "alice", "scoping")

    loaded = await store.get_session("s1")
    assert loaded.phase == Phase.SCOPING
    assert loaded.tenant_id == "alice"


@pytest.mark.asyncio
async def test_session_data_as_text_is_decoded():
    import json

    session = ConversationSession(id="s2", tenant_id="bob")
    pool, _ = _make_mock_pool(rows=[{"data": json.dumps(session.to_dict())}])
    store = PostgresStore("postgresql://db/agent", pool=pool)
    assert (await store.get_session("s2")).id == "s2"


# ---------------------------------------------------------------------------
# 6. _redact_dsn
# ---------------------------------------------------------------------------


def test_redact_dsn_hides_password():
    assert _redact_dsn("postgresql://agent:hunter2@db:5432/agent") == "postgresql://agent:***@db:5432/agent"


def test_redact_dsn_without_password_unchanged():
    assert _redact_dsn("postgresql://db/agent") == "postgresql://db/agent"
