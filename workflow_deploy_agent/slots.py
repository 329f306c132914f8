"""TenantSlotAllocator — assigns each tenant one isolation slot from a fixed pool.

The pool is SLOT_PROJECTS engine projects × SLOTS_PER_PROJECT folders,
provisioned ahead of time. Candidates are tried in (project, slot) order so
projects fill up before the next one is touched.

Assignment only ever happens through Store.claim_slot_if_free(), a single
conditional update that succeeds only while the row is still unassigned.
A lost race moves on to the next candidate; a pool with no winner left raises
SlotExhaustionError. Claiming is idempotent per tenant.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from workflow_deploy_agent.errors import SlotExhaustionError
from workflow_deploy_agent.models import TenantSlot, tenant_tag
from workflow_deploy_agent.persistence.base import Store

logger = logging.getLogger("workflow_deploy_agent.slots")


class TenantSlotAllocator:
    def __init__(self, store: Store, projects: int = 10, slots_per_project: int = 5) -> None:
        if projects < 1 or slots_per_project < 1:
            raise ValueError("slot pool dimensions must be >= 1")
        self._store = store
        self._projects = projects
        self._slots_per_project = slots_per_project

    @property
    def capacity(self) -> int:
        return self._projects * self._slots_per_project

    async def initialize(self) -> None:
        """Ensure every pool row exists. Safe to call on every startup."""
        total = await self._store.populate_slots(self._projects, self._slots_per_project)
        logger.info(
            "Slot pool ready: %d slots (%d projects × %d)",
            total, self._projects, self._slots_per_project,
        )

    async def claim_slot(self, tenant_id: str) -> TenantSlot:
        """Return tenant_id's slot, claiming the first free one if it has none.

        Raises:
            ValueError:          tenant_id cannot be used as a workflow tag.
            SlotExhaustionError: no unassigned slot is left.
        """
        tenant_tag(tenant_id)
        existing = await self._store.find_slot_by_tenant(tenant_id)
        if existing is not None:
            return existing

        for candidate in await self._store.list_available_slots():
            assigned_at = time.time()
            if await self._store.claim_slot_if_free(
                candidate.project_index, candidate.slot_index, tenant_id, assigned_at
            ):
                slot = TenantSlot(
                    project_index=candidate.project_index,
                    slot_index=candidate.slot_index,
                    tenant_id=tenant_id,
                    assigned_at=assigned_at,
                )
                logger.info("Assigned slot %s to tenant %s", slot.folder_tag, tenant_id)
                return slot

            # Either another tenant took this slot, or a concurrent request for
            # the same tenant already won a different one.
            existing = await self._store.find_slot_by_tenant(tenant_id)
            if existing is not None:
                return existing
            logger.debug("Lost claim on %s for tenant %s; trying next", candidate.folder_tag, tenant_id)

        logger.warning("Slot pool exhausted (%d slots); tenant %s not assigned", self.capacity, tenant_id)
        raise SlotExhaustionError(self.capacity)

    async def slot_for(self, tenant_id: str) -> TenantSlot | None:
        return await self._store.find_slot_by_tenant(tenant_id)

    async def release_slot(self, tenant_id: str) -> TenantSlot | None:
        """Return a deactivated tenant's slot to the pool."""
        released = await self._store.release_slot(tenant_id)
        if released is not None:
            logger.info("Released slot %s from tenant %s", released.folder_tag, tenant_id)
        return released

    async def stats(self) -> dict[str, Any]:
        slots = await self._store.list_slots()
        total = len(slots)
        active = sum(1 for s in slots if not s.is_available)
        return {
            "total_slots": total,
            "available_slots": total - active,
            "active_slots": active,
            "projects_count": self._projects,
            "slots_per_project": self._slots_per_project,
            "utilization_percentage": round(active * 100.0 / total, 2) if total else 0.0,
        }
