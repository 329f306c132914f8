"""Storage boundary for sessions, definitions, deployment attempts and slots.

Any backend must give read-after-write consistency and implement
claim_slot_if_free() as ONE atomic conditional update: the row is claimed
only if its tenant_id is still NULL and the tenant holds no other slot.
That method is the only code path allowed to assign a tenant to a slot.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from workflow_deploy_agent.models import (
    ConversationSession,
    DeploymentAttempt,
    TenantSlot,
    WorkflowDefinition,
)


class Store(ABC):
    """Async persistence interface.

    Lifecycle:
        store = open_store("sqlite:///agent.db")
        await store.setup()
        ...
        await store.close()
    """

    async def setup(self) -> None:
        """Create tables / open connections. Safe to call more than once."""

    async def close(self) -> None:
        """Release connections."""

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    @abstractmethod
    async def populate_slots(self, projects: int, slots_per_project: int) -> int:
        """Insert any missing pool rows with tenant_id NULL. Returns pool size."""

    @abstractmethod
    async def list_slots(self) -> list[TenantSlot]:
        """Every slot, ordered by (project_index, slot_index)."""

    @abstractmethod
    async def list_available_slots(self) -> list[TenantSlot]:
        """Unassigned slots, ordered by (project_index, slot_index)."""

    @abstractmethod
    async def claim_slot_if_free(
        self,
        project_index: int,
        slot_index: int,
        tenant_id: str,
        assigned_at: float,
    ) -> bool:
        """Atomically assign the slot to tenant_id.

        Returns False (and changes nothing) when the slot is already taken
        or the tenant already holds a slot.
        """

    @abstractmethod
    async def find_slot_by_tenant(self, tenant_id: str) -> TenantSlot | None: ...

    @abstractmethod
    async def release_slot(self, tenant_id: str) -> TenantSlot | None:
        """Return tenant_id's slot to the pool. Returns the released slot, if any."""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_session(self, session: ConversationSession) -> None: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> ConversationSession | None: ...

    @abstractmethod
    async def list_sessions(self, tenant_id: str) -> list[ConversationSession]:
        """Sessions for a tenant, most recently updated first."""

    # ------------------------------------------------------------------
    # Definitions + attempts
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_definition(self, definition: WorkflowDefinition) -> None: ...

    @abstractmethod
    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None: ...

    @abstractmethod
    async def save_attempt(self, attempt: DeploymentAttempt) -> None:
        """Insert or update an attempt (keyed by attempt.id)."""

    @abstractmethod
    async def list_attempts(self, workflow_id: str) -> list[DeploymentAttempt]:
        """Attempts for a definition, ordered by attempt_number."""
