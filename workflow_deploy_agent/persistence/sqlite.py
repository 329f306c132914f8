"""SQLite-backed store (aiosqlite) for single-node deployments.

Table schema:

    tenant_slots (
        project_index INTEGER NOT NULL,
        slot_index    INTEGER NOT NULL,
        tenant_id     TEXT,             -- NULL while available
        assigned_at   REAL,
        PRIMARY KEY (project_index, slot_index)
    )
    UNIQUE INDEX on tenant_slots (tenant_id)   -- one slot per tenant

    sessions            (id PK, tenant_id, phase, updated_at, data JSON)
    definitions         (id PK, tenant_id, name, status, engine_id, data JSON)
    deployment_attempts (id PK, workflow_id, tenant_id, attempt_number, status, data JSON)

The slot claim is a single conditional UPDATE; rowcount tells the caller
whether it won.
"""

from __future__ import annotations

import json
import logging

from workflow_deploy_agent.models import (
    ConversationSession,
    DeploymentAttempt,
    TenantSlot,
    WorkflowDefinition,
)
from workflow_deploy_agent.persistence.base import Store

logger = logging.getLogger("workflow_deploy_agent.persistence.sqlite")

_DDL = (
    """
    CREATE TABLE IF NOT EXISTS tenant_slots (
        project_index INTEGER NOT NULL,
        slot_index    INTEGER NOT NULL,
        tenant_id     TEXT,
        assigned_at   REAL,
        PRIMARY KEY (project_index, slot_index)
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_tenant_slots_tenant ON tenant_slots (tenant_id)",
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id         TEXT PRIMARY KEY,
        tenant_id  TEXT NOT NULL,
        phase      TEXT NOT NULL,
        updated_at REAL NOT NULL,
        data       TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_tenant ON sessions (tenant_id)",
    """
    CREATE TABLE IF NOT EXISTS definitions (
        id        TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        name      TEXT NOT NULL,
        status    TEXT NOT NULL,
        engine_id TEXT,
        data      TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deployment_attempts (
        id             TEXT PRIMARY KEY,
        workflow_id    TEXT NOT NULL,
        tenant_id      TEXT NOT NULL,
        attempt_number INTEGER NOT NULL,
        status         TEXT NOT NULL,
        data           TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_attempts_workflow ON deployment_attempts (workflow_id)",
)

_CLAIM = """
UPDATE tenant_slots
SET tenant_id = ?, assigned_at = ?
WHERE project_index = ? AND slot_index = ?
  AND tenant_id IS NULL
  AND NOT EXISTS (SELECT 1 FROM tenant_slots WHERE tenant_id = ?)
"""

_SLOT_COLUMNS = "project_index, slot_index, tenant_id, assigned_at"


def _slot(row) -> TenantSlot:
    return TenantSlot(project_index=row[0], slot_index=row[1], tenant_id=row[2], assigned_at=row[3])


class SqliteStore(Store):
    """Async SQLite store.

    Lifecycle:
        store = await SqliteStore.open("agent.db")
        ...
        await store.close()
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        if self._conn is not None:
            return
        import aiosqlite
        self._conn = await aiosqlite.connect(self._db_path)
        for statement in _DDL:
            await self._conn.execute(statement)
        await self._conn.commit()
        logger.info("SqliteStore ready: %s", self._db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @classmethod
    async def open(cls, db_path: str) -> SqliteStore:
        """Factory: create + setup in one call."""
        store = cls(db_path)
        await store.setup()
        return store

    def _require(self):
        if self._conn is None:
            raise RuntimeError("SqliteStore.setup() not called")
        return self._conn

    async def _fetchall(self, sql: str, params: tuple = ()) -> list:
        async with self._require().execute(sql, params) as cur:
            return list(await cur.fetchall())

    async def _fetchone(self, sql: str, params: tuple = ()):
        async with self._require().execute(sql, params) as cur:
            return await cur.fetchone()

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    async def populate_slots(self, projects: int, slots_per_project: int) -> int:
        conn = self._require()
        await conn.executemany(
            "INSERT OR IGNORE INTO tenant_slots (project_index, slot_index) VALUES (?, ?)",
            [(p, s) for p in range(projects) for s in range(slots_per_project)],
        )
        await conn.commit()
        row = await self._fetchone("SELECT COUNT(*) FROM tenant_slots")
        return int(row[0])

    async def list_slots(self) -> list[TenantSlot]:
        rows = await self._fetchall(
            f"SELECT {_SLOT_COLUMNS} FROM tenant_slots ORDER BY project_index, slot_index"
        )
        return [_slot(r) for r in rows]

    async def list_available_slots(self) -> list[TenantSlot]:
        rows = await self._fetchall(
            f"SELECT {_SLOT_COLUMNS} FROM tenant_slots WHERE tenant_id IS NULL "
            "ORDER BY project_index, slot_index"
        )
        return [_slot(r) for r in rows]

    async def claim_slot_if_free(
        self,
        project_index: int,
        slot_index: int,
        tenant_id: str,
        assigned_at: float,
    ) -> bool:
        import aiosqlite
        conn = self._require()
        try:
            cur = await conn.execute(
                _CLAIM, (tenant_id, assigned_at, project_index, slot_index, tenant_id)
            )
            await conn.commit()
        except aiosqlite.IntegrityError:
            await conn.rollback()
            logger.debug("Slot claim for %s hit the tenant uniqueness index", tenant_id)
            return False
        return cur.rowcount == 1

    async def find_slot_by_tenant(self, tenant_id: str) -> TenantSlot | None:
        row = await self._fetchone(
            f"SELECT {_SLOT_COLUMNS} FROM tenant_slots WHERE tenant_id = ?", (tenant_id,)
        )
        return _slot(row) if row else None

    async def release_slot(self, tenant_id: str) -> TenantSlot | None:
        slot = await self.find_slot_by_tenant(tenant_id)
        if slot is None:
            return None
        conn = self._require()
        await conn.execute(
            "UPDATE tenant_slots SET tenant_id = NULL, assigned_at = NULL "
            "WHERE project_index = ? AND slot_index = ? AND tenant_id = ?",
            (slot.project_index, slot.slot_index, tenant_id),
        )
        await conn.commit()
        return slot

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def save_session(self, session: ConversationSession) -> None:
        conn = self._require()
        await conn.execute(
            """
            INSERT INTO sessions (id, tenant_id, phase, updated_at, data)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                phase = excluded.phase,
                updated_at = excluded.updated_at,
                data = excluded.data
            """,
            (session.id, session.tenant_id, session.phase.value, session.updated_at,
             json.dumps(session.to_dict())),
        )
        await conn.commit()

    async def get_session(self, session_id: str) -> ConversationSession | None:
        row = await self._fetchone("SELECT data FROM sessions WHERE id = ?", (session_id,))
        return ConversationSession.from_dict(json.loads(row[0])) if row else None

    async def list_sessions(self, tenant_id: str) -> list[ConversationSession]:
        rows = await self._fetchall(
            "SELECT data FROM sessions WHERE tenant_id = ? ORDER BY updated_at DESC",
            (tenant_id,),
        )
        return [ConversationSession.from_dict(json.loads(r[0])) for r in rows]

    # ------------------------------------------------------------------
    # Definitions + attempts
    # ------------------------------------------------------------------

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        conn = self._require()
        await conn.execute(
            """
            INSERT INTO definitions (id, tenant_id, name, status, engine_id, data)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                status = excluded.status,
                engine_id = excluded.engine_id,
                data = excluded.data
            """,
            (definition.id, definition.tenant_id, definition.name, definition.status.value,
             definition.engine_id, json.dumps(definition.to_dict())),
        )
        await conn.commit()

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        row = await self._fetchone("SELECT data FROM definitions WHERE id = ?", (definition_id,))
        return WorkflowDefinition.from_dict(json.loads(row[0])) if row else None

    async def save_attempt(self, attempt: DeploymentAttempt) -> None:
        conn = self._require()
        await conn.execute(
            """
            INSERT INTO deployment_attempts (id, workflow_id, tenant_id, attempt_number, status, data)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                status = excluded.status,
                data = excluded.data
            """,
            (attempt.id, attempt.workflow_id, attempt.tenant_id, attempt.attempt_number,
             attempt.status.value, json.dumps(attempt.to_dict())),
        )
        await conn.commit()

    async def list_attempts(self, workflow_id: str) -> list[DeploymentAttempt]:
        rows = await self._fetchall(
            "SELECT data FROM deployment_attempts WHERE workflow_id = ? ORDER BY attempt_number",
            (workflow_id,),
        )
        return [DeploymentAttempt.from_dict(json.loads(r[0])) for r in rows]
