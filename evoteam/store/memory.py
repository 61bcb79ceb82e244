"""In-memory store — copy-on-write transactions over plain dicts.

Used by tests and dry runs. Transactions are serialized with a lock;
each one works on copies and swaps them in on commit.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

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


class _MemoryState:
    def __init__(self) -> None:
        self.agents: dict[AgentId, Agent] = {}
        self.tasks: dict[TaskId, Task] = {}
        self.performance: list[PerformanceLog] = []
        self.events: list[GovernanceEvent] = []
        self.generations: list[GenerationRecord] = []
        self.nuggets: list[KnowledgeNugget] = []

    def fork(self) -> _MemoryState:
        # Models are copied on every read and write, so shallow container
        # copies are enough to isolate an open transaction.
        other = _MemoryState()
        other.agents = dict(self.agents)
        other.tasks = dict(self.tasks)
        other.performance = list(self.performance)
        other.events = list(self.events)
        other.generations = list(self.generations)
        other.nuggets = list(self.nuggets)
        return other


class MemoryTransaction(StoreTransaction):
    def __init__(self, state: _MemoryState) -> None:
        self._state = state

    async def get_agent(self, agent_id: AgentId) -> Agent | None:
        agent = self._state.agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def list_agents(
        self, statuses: Iterable[AgentStatus] | None = None
    ) -> list[Agent]:
        wanted = set(statuses) if statuses is not None else None
        agents = [
            a for a in self._state.agents.values()
            if wanted is None or a.status in wanted
        ]
        agents.sort(key=lambda a: a.created_at)
        return [a.model_copy(deep=True) for a in agents]

    async def save_agent(self, agent: Agent) -> None:
        self._state.agents[agent.id] = agent.model_copy(deep=True)

    async def get_task(self, task_id: TaskId) -> Task | None:
        task = self._state.tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_tasks(
        self,
        statuses: Iterable[TaskStatus] | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        wanted = set(statuses) if statuses is not None else None
        tasks = [
            t for t in self._state.tasks.values()
            if wanted is None or t.status in wanted
        ]
        tasks.sort(key=lambda t: t.created_at)
        if limit is not None:
            tasks = tasks[:limit]
        return [t.model_copy(deep=True) for t in tasks]

    async def save_task(self, task: Task) -> None:
        self._state.tasks[task.id] = task.model_copy(deep=True)

    async def add_performance_log(self, log: PerformanceLog) -> None:
        self._state.performance.append(log.model_copy())

    async def recent_performance(
        self, agent_id: AgentId, limit: int = 20
    ) -> list[PerformanceLog]:
        # Newest first; appends are chronological so ties keep that order.
        logs = [p for p in reversed(self._state.performance) if p.agent_id == agent_id]
        logs.sort(key=lambda p: p.created_at, reverse=True)
        return [p.model_copy() for p in logs[:limit]]

    async def add_governance_event(self, event: GovernanceEvent) -> None:
        self._state.events.append(event)

    async def list_governance_events(
        self,
        agent_id: AgentId | None = None,
        action: GovernanceAction | None = None,
        limit: int = 50,
    ) -> list[GovernanceEvent]:
        events = list(reversed(self._state.events))
        if agent_id:
            events = [e for e in events if e.agent_id == agent_id]
        if action:
            events = [e for e in events if e.action == action]
        return sorted(events, key=lambda e: e.created_at, reverse=True)[:limit]

    async def count_governance_events(self) -> int:
        return len(self._state.events)

    async def add_generation(self, record: GenerationRecord) -> None:
        self._state.generations.append(record)

    async def list_generations(self, limit: int = 50) -> list[GenerationRecord]:
        records = sorted(
            self._state.generations,
            key=lambda g: g.generation_number,
            reverse=True,
        )
        return records[:limit]

    async def add_nugget(self, nugget: KnowledgeNugget) -> None:
        self._state.nuggets.append(nugget)

    async def list_nuggets(
        self, categories: Iterable[str] | None = None, limit: int = 20
    ) -> list[KnowledgeNugget]:
        wanted = set(categories) if categories is not None else None
        nuggets = [
            n for n in self._state.nuggets
            if wanted is None or n.category in wanted
        ]
        nuggets.sort(key=lambda n: n.quality_score, reverse=True)
        return nuggets[:limit]


class MemoryStore(BaseStore):
    """Process-local store with the same semantics as the SQLite store."""

    def __init__(self) -> None:
        self._state = _MemoryState()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        async with self._lock:
            working = self._state.fork()
            yield MemoryTransaction(working)
            # Only reached when the block exits cleanly.
            self._state = working

    def __repr__(self) -> str:
        return (
            f"MemoryStore(agents={len(self._state.agents)}, "
            f"tasks={len(self._state.tasks)})"
        )
