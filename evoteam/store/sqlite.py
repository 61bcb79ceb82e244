"""SQLite store — durable agents, tasks and records via aiosqlite.

Each entity is kept as a JSON document next to the few columns that
queries filter or sort on. A transaction owns one connection opened
with BEGIN IMMEDIATE and commits or rolls back as a whole.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

import aiosqlite

from evoteam.exceptions import StoreError
from evoteam.store.base import BaseStore, StoreTransaction
from evoteam.types import (
    Agent,
    AgentId,
    AgentStatus,
    GenerationRecord,
    GovernanceAction,
    GovernanceEvent,
    KnowledgeNugget,
    PerformanceLog,
    Task,
    TaskId,
    TaskStatus,
)

_logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS agents (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        role TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        project_id TEXT,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS performance_logs (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS governance_events (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        action TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS generations (
        id TEXT PRIMARY KEY,
        generation_number INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS knowledge_nuggets (
        id TEXT PRIMARY KEY,
        category TEXT NOT NULL,
        quality_score REAL NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_agents_status ON agents(status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_status_time ON tasks(status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_perf_agent_time ON performance_logs(agent_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_gov_agent ON governance_events(agent_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_nugget_category ON knowledge_nuggets(category)",
]


def _placeholders(values: list) -> str:
    return ", ".join("?" for _ in values)


class SQLiteTransaction(StoreTransaction):
    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def _fetch(self, sql: str, params: Iterable = ()) -> list[aiosqlite.Row]:
        async with self._db.execute(sql, tuple(params)) as cursor:
            return list(await cursor.fetchall())

    # ── Agents ──

    async def get_agent(self, agent_id: AgentId) -> Agent | None:
        rows = await self._fetch("SELECT data FROM agents WHERE id = ?", (agent_id,))
        return Agent.model_validate_json(rows[0]["data"]) if rows else None

    async def list_agents(
        self, statuses: Iterable[AgentStatus] | None = None
    ) -> list[Agent]:
        params: list = []
        where = "1=1"
        if statuses is not None:
            params = [s.value for s in statuses]
            if not params:
                return []
            where = f"status IN ({_placeholders(params)})"
        rows = await self._fetch(
            f"SELECT data FROM agents WHERE {where} ORDER BY created_at ASC, rowid ASC",
            params,
        )
        return [Agent.model_validate_json(r["data"]) for r in rows]

    async def save_agent(self, agent: Agent) -> None:
        await self._db.execute(
            "INSERT OR REPLACE INTO agents (id, status, role, created_at, data) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                agent.id,
                agent.status.value,
                agent.role.value,
                agent.created_at.isoformat(),
                agent.model_dump_json(),
            ),
        )

    # ── Tasks ──

    async def get_task(self, task_id: TaskId) -> Task | None:
        rows = await self._fetch("SELECT data FROM tasks WHERE id = ?", (task_id,))
        return Task.model_validate_json(rows[0]["data"]) if rows else None

    async def list_tasks(
        self,
        statuses: Iterable[TaskStatus] | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        params: list = []
        where = "1=1"
        if statuses is not None:
            params = [s.value for s in statuses]
            if not params:
                return []
            where = f"status IN ({_placeholders(params)})"
        sql = f"SELECT data FROM tasks WHERE {where} ORDER BY created_at ASC, rowid ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self._fetch(sql, params)
        return [Task.model_validate_json(r["data"]) for r in rows]

    async def save_task(self, task: Task) -> None:
        await self._db.execute(
            "INSERT OR REPLACE INTO tasks (id, status, project_id, created_at, data) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                task.id,
                task.status.value,
                task.project_id,
                task.created_at.isoformat(),
                task.model_dump_json(),
            ),
        )

    # ── Records ──

    async def add_performance_log(self, log: PerformanceLog) -> None:
        await self._db.execute(
            "INSERT INTO performance_logs (id, agent_id, created_at, data) VALUES (?, ?, ?, ?)",
            (log.id, log.agent_id, log.created_at.isoformat(), log.model_dump_json()),
        )

    async def recent_performance(
        self, agent_id: AgentId, limit: int = 20
    ) -> list[PerformanceLog]:
        rows = await self._fetch(
            "SELECT data FROM performance_logs WHERE agent_id = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (agent_id, limit),
        )
        return [PerformanceLog.model_validate_json(r["data"]) for r in rows]

    async def add_governance_event(self, event: GovernanceEvent) -> None:
        await self._db.execute(
            "INSERT INTO governance_events (id, agent_id, action, created_at, data) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                event.id,
                event.agent_id,
                event.action.value,
                event.created_at.isoformat(),
                event.model_dump_json(),
            ),
        )

    async def list_governance_events(
        self,
        agent_id: AgentId | None = None,
        action: GovernanceAction | None = None,
        limit: int = 50,
    ) -> list[GovernanceEvent]:
        conditions = []
        params: list = []
        if agent_id:
            conditions.append("agent_id = ?")
            params.append(agent_id)
        if action:
            conditions.append("action = ?")
            params.append(action.value)
        where = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)
        rows = await self._fetch(
            f"SELECT data FROM governance_events WHERE {where} "
            "ORDER BY created_at DESC, rowid DESC LIMIT ?",
            params,
        )
        return [GovernanceEvent.model_validate_json(r["data"]) for r in rows]

    async def count_governance_events(self) -> int:
        rows = await self._fetch("SELECT COUNT(*) AS n FROM governance_events")
        return rows[0]["n"]

    async def add_generation(self, record: GenerationRecord) -> None:
        await self._db.execute(
            "INSERT INTO generations (id, generation_number, created_at, data) "
            "VALUES (?, ?, ?, ?)",
            (
                record.id,
                record.generation_number,
                record.created_at.isoformat(),
                record.model_dump_json(),
            ),
        )

    async def list_generations(self, limit: int = 50) -> list[GenerationRecord]:
        rows = await self._fetch(
            "SELECT data FROM generations ORDER BY generation_number DESC LIMIT ?",
            (limit,),
        )
        return [GenerationRecord.model_validate_json(r["data"]) for r in rows]

    async def add_nugget(self, nugget: KnowledgeNugget) -> None:
        await self._db.execute(
            "INSERT INTO knowledge_nuggets (id, category, quality_score, created_at, data) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                nugget.id,
                nugget.category,
                nugget.quality_score,
                nugget.created_at.isoformat(),
                nugget.model_dump_json(),
            ),
        )

    async def list_nuggets(
        self, categories: Iterable[str] | None = None, limit: int = 20
    ) -> list[KnowledgeNugget]:
        params: list = []
        where = "1=1"
        if categories is not None:
            params = list(categories)
            if not params:
                return []
            where = f"category IN ({_placeholders(params)})"
        params.append(limit)
        rows = await self._fetch(
            f"SELECT data FROM knowledge_nuggets WHERE {where} "
            "ORDER BY quality_score DESC, created_at ASC LIMIT ?",
            params,
        )
        return [KnowledgeNugget.model_validate_json(r["data"]) for r in rows]


class SQLiteStore(BaseStore):
    """Durable store backed by a single SQLite file."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create tables if needed."""
        async with aiosqlite.connect(self._db_path) as db:
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.commit()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        async with self._lock:
            try:
                db = await aiosqlite.connect(self._db_path)
            except aiosqlite.Error as e:
                raise StoreError(f"Cannot open store {self._db_path}: {e}") from e
            db.row_factory = aiosqlite.Row
            try:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    yield SQLiteTransaction(db)
                except BaseException:
                    await db.rollback()
                    raise
                try:
                    await db.commit()
                except aiosqlite.Error as e:
                    _logger.error("Commit failed on %s: %s", self._db_path, e)
                    await db.rollback()
                    raise StoreError(f"Commit failed: {e}") from e
            finally:
                await db.close()

    def __repr__(self) -> str:
        return f"SQLiteStore({self._db_path!r})"
