"""TenantSlotAllocator against the in-memory and SQLite stores.

Concurrent signups race for the same free slots; each slot must end up with
at most one tenant and each tenant with at most one slot.
"""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from workflow_deploy_agent.errors import SlotExhaustionError
from workflow_deploy_agent.models import TenantSlot
from workflow_deploy_agent.persistence import InMemoryStore, SqliteStore
from workflow_deploy_agent.slots import TenantSlotAllocator


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    if request.param == "memory":
        s = InMemoryStore()
    else:
        s = SqliteStore(str(tmp_path / "slots.db"))
    await s.setup()
    yield s
    await s.close()


async def _allocator(store, projects: int, per_project: int) -> TenantSlotAllocator:
    allocator = TenantSlotAllocator(store, projects, per_project)
    await allocator.initialize()
    return allocator


# ---------------------------------------------------------------------------
# Concurrent claims
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_signups_on_small_pool(store):
    allocator = await _allocator(store, 1, 2)

    results = await asyncio.gather(
        *(allocator.claim_slot(t) for t in ("alice", "bob", "carol")),
        return_exceptions=True,
    )

    slots = [r for r in results if isinstance(r, TenantSlot)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(slots) == 2
    assert len(errors) == 1
    assert isinstance(errors[0], SlotExhaustionError)
    assert len({s.key for s in slots}) == 2
    assert len({s.tenant_id for s in slots}) == 2

    stats = await allocator.stats()
    assert stats["active_slots"] == 2
    assert stats["available_slots"] == 0
    assert stats["utilization_percentage"] == 100.0


@pytest.mark.asyncio
async def test_concurrent_claims_for_same_tenant_share_one_slot(store):
    allocator = await _allocator(store, 2, 2)

    slots = await asyncio.gather(*(allocator.claim_slot("alice") for _ in range(4)))

    assert len({s.key for s in slots}) == 1
    assert (await allocator.stats())["active_slots"] == 1


# ---------------------------------------------------------------------------
# Ordering, idempotence, exhaustion
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fills_first_project_before_next(store):
    allocator = await _allocator(store, 2, 2)

    keys = [(await allocator.claim_slot(t)).key for t in ("a", "b", "c")]

    assert keys == [(0, 0), (0, 1), (1, 0)]


@pytest.mark.asyncio
async def test_claim_is_idempotent(store):
    allocator = await _allocator(store, 1, 3)

    first = await allocator.claim_slot("alice")
    again = await allocator.claim_slot("alice")

    assert again.key == first.key
    assert again.folder_tag == "FOLDER-P01-U1"
    assert (await allocator.stats())["active_slots"] == 1


@pytest.mark.asyncio
async def test_exhaustion_reports_capacity(store):
    allocator = await _allocator(store, 1, 1)
    await allocator.claim_slot("alice")

    with pytest.raises(SlotExhaustionError) as exc:
        await allocator.claim_slot("bob")
    assert exc.value.capacity == 1
    assert await allocator.slot_for("bob") is None


@pytest.mark.asyncio
async def test_invalid_tenant_id_rejected(store):
    allocator = await _allocator(store, 1, 1)
    with pytest.raises(ValueError):
        await allocator.claim_slot("evil]")


# ---------------------------------------------------------------------------
# Release + restart
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_release_returns_slot_to_pool(store):
    allocator = await _allocator(store, 1, 1)
    await allocator.claim_slot("alice")

    released = await allocator.release_slot("alice")

    assert released.tenant_id == "alice"
    assert await allocator.slot_for("alice") is None
    assert (await allocator.claim_slot("bob")).key == (0, 0)
    assert await allocator.release_slot("nobody") is None


@pytest.mark.asyncio
async def test_initialize_is_safe_to_repeat(store):
    allocator = await _allocator(store, 2, 3)
    await allocator.claim_slot("alice")
    await allocator.initialize()

    stats = await allocator.stats()
    assert stats["total_slots"] == 6
    assert stats["active_slots"] == 1
    assert stats["projects_count"] == 2
    assert stats["slots_per_project"] == 3
    assert stats["utilization_percentage"] == 16.67


@pytest.mark.asyncio
async def test_sqlite_assignments_survive_reopen(tmp_path):
    path = str(tmp_path / "agent.db")
    first = await SqliteStore.open(path)
    allocator = await _allocator(first, 1, 2)
    slot = await allocator.claim_slot("alice")
    await first.close()

    second = await SqliteStore.open(path)
    try:
        allocator = await _allocator(second, 1, 2)
        assert (await allocator.slot_for("alice")).key == slot.key
    finally:
        await second.close()


def test_pool_dimensions_must_be_positive():
    with pytest.raises(ValueError):
        TenantSlotAllocator(InMemoryStore(), 0, 5)
