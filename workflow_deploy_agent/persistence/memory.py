"""In-process store for development, the CLI and tests.

Records are kept as serialized dicts so callers never share mutable state
with the store, matching the copy semantics of the database backends.
"""

from __future__ import annotations

import threading

from workflow_deploy_agent.models import (
    ConversationSession,
    DeploymentAttempt,
    TenantSlot,
    WorkflowDefinition,
)
from workflow_deploy_agent.persistence.base import Store


class InMemoryStore(Store):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: dict[tuple[int, int], TenantSlot] = {}
        self._sessions: dict[str, dict] = {}
        self._definitions: dict[str, dict] = {}
        self._attempts: dict[str, dict] = {}

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    async def populate_slots(self, projects: int, slots_per_project: int) -> int:
        with self._lock:
            for p in range(projects):
                for s in range(slots_per_project):
                    self._slots.setdefault((p, s), TenantSlot(project_index=p, slot_index=s))
            return len(self._slots)

    def _copy(self, slot: TenantSlot) -> TenantSlot:
        return TenantSlot(slot.project_index, slot.slot_index, slot.tenant_id, slot.assigned_at)

    async def list_slots(self) -> list[TenantSlot]:
        with self._lock:
            return [self._copy(self._slots[k]) for k in sorted(self._slots)]

    async def list_available_slots(self) -> list[TenantSlot]:
        with self._lock:
            return [self._copy(self._slots[k]) for k in sorted(self._slots) if self._slots[k].is_available]

    async def claim_slot_if_free(
        self,
        project_index: int,
        slot_index: int,
        tenant_id: str,
        assigned_at: float,
    ) -> bool:
        with self._lock:
            slot = self._slots.get((project_index, slot_index))
            if slot is None or not slot.is_available:
                return False
            if any(s.tenant_id == tenant_id for s in self._slots.values()):
                return False
            slot.tenant_id = tenant_id
            slot.assigned_at = assigned_at
            return True

    async def find_slot_by_tenant(self, tenant_id: str) -> TenantSlot | None:
        with self._lock:
            slot = next((s for s in self._slots.values() if s.tenant_id == tenant_id), None)
            return self._copy(slot) if slot else None

    async def release_slot(self, tenant_id: str) -> TenantSlot | None:
        with self._lock:
            slot = next((s for s in self._slots.values() if s.tenant_id == tenant_id), None)
            if slot is None:
                return None
            released = self._copy(slot)
            slot.tenant_id = None
            slot.assigned_at = None
            return released

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def save_session(self, session: ConversationSession) -> None:
        with self._lock:
            self._sessions[session.id] = session.to_dict()

    async def get_session(self, session_id: str) -> ConversationSession | None:
        with self._lock:
            data = self._sessions.get(session_id)
        return ConversationSession.from_dict(data) if data else None

    async def list_sessions(self, tenant_id: str) -> list[ConversationSession]:
        with self._lock:
            rows = [d for d in self._sessions.values() if d["tenant_id"] == tenant_id]
        rows.sort(key=lambda d: d["updated_at"], reverse=True)
        return [ConversationSession.from_dict(d) for d in rows]

    # ------------------------------------------------------------------
    # Definitions + attempts
    # ------------------------------------------------------------------

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            self._definitions[definition.id] = definition.to_dict()

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        with self._lock:
            data = self._definitions.get(definition_id)
        return WorkflowDefinition.from_dict(data) if data else None

    async def save_attempt(self, attempt: DeploymentAttempt) -> None:
        with self._lock:
            self._attempts[attempt.id] = attempt.to_dict()

    async def list_attempts(self, workflow_id: str) -> list[DeploymentAttempt]:
        with self._lock:
            rows = [d for d in self._attempts.values() if d["workflow_id"] == workflow_id]
        rows.sort(key=lambda d: d["attempt_number"])
        return [DeploymentAttempt.from_dict(d) for d in rows]
