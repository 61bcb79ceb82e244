"""Store interfaces — the only door to shared agent and task state.

Every component talks to a `BaseStore`. Reads and writes happen inside
`store.transaction()`; a transaction either commits all of its writes
or none of them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Iterable

from evoteam.exceptions import AgentNotFoundError, AssignmentIntegrityError, TaskNotFoundError
from evoteam.types import (
    Agent,
    AgentId,
    AgentStatus,
    GenerationRecord,
    GovernanceAction,
    GovernanceEvent,
    HELD_STATUSES,
    KnowledgeNugget,
    PerformanceLog,
    Task,
    TaskId,
    TaskStatus,
)


class StoreTransaction(ABC):
    """Unit of work against the store.

    Models returned from a transaction are private copies: mutate them
    freely, then `save_*` to make the change part of the transaction.
    """

    # ── Agents ──

    @abstractmethod
    async def get_agent(self, agent_id: AgentId) -> Agent | None:
        ...

    @abstractmethod
    async def list_agents(
        self, statuses: Iterable[AgentStatus] | None = None
    ) -> list[Agent]:
        """Agents, oldest first, optionally filtered by status."""
        ...

    @abstractmethod
    async def save_agent(self, agent: Agent) -> None:
        ...

    # ── Tasks ──

    @abstractmethod
    async def get_task(self, task_id: TaskId) -> Task | None:
        ...

    @abstractmethod
    async def list_tasks(
        self,
        statuses: Iterable[TaskStatus] | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        """Tasks, oldest first, optionally filtered by status."""
        ...

    @abstractmethod
    async def save_task(self, task: Task) -> None:
        ...

    # ── Append-only records ──

    @abstractmethod
    async def add_performance_log(self, log: PerformanceLog) -> None:
        ...

    @abstractmethod
    async def recent_performance(
        self, agent_id: AgentId, limit: int = 20
    ) -> list[PerformanceLog]:
        """Most recent first."""
        ...

    @abstractmethod
    async def add_governance_event(self, event: GovernanceEvent) -> None:
        ...

    @abstractmethod
    async def list_governance_events(
        self,
        agent_id: AgentId | None = None,
        action: GovernanceAction | None = None,
        limit: int = 50,
    ) -> list[GovernanceEvent]:
        """Most recent first."""
        ...

    @abstractmethod
    async def count_governance_events(self) -> int:
        ...

    @abstractmethod
    async def add_generation(self, record: GenerationRecord) -> None:
        ...

    @abstractmethod
    async def list_generations(self, limit: int = 50) -> list[GenerationRecord]:
        """Highest generation number first."""
        ...

    @abstractmethod
    async def add_nugget(self, nugget: KnowledgeNugget) -> None:
        ...

    @abstractmethod
    async def list_nuggets(
        self, categories: Iterable[str] | None = None, limit: int = 20
    ) -> list[KnowledgeNugget]:
        """Best quality first."""
        ...

    # ── Helpers built on the primitives ──

    async def require_agent(self, agent_id: AgentId) -> Agent:
        agent = await self.get_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(f"No agent with id {agent_id}")
        return agent

    async def require_task(self, task_id: TaskId) -> Task:
        task = await self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"No task with id {task_id}")
        return task

    async def count_tasks(self, statuses: Iterable[TaskStatus]) -> int:
        return len(await self.list_tasks(statuses))

    async def living_agents(self) -> list[Agent]:
        agents = await self.list_agents([AgentStatus.IDLE, AgentStatus.BUSY])
        return [a for a in agents if a.is_alive]

    async def latest_generation_number(self) -> int:
        records = await self.list_generations(limit=1)
        return records[0].generation_number if records else 0


class BaseStore(ABC):
    """Abstract durable store for agents, tasks and their records."""

    async def initialize(self) -> None:
        """Prepare the backing storage. No-op by default."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[StoreTransaction]:
        """Open a serialized, all-or-nothing unit of work."""
        ...


def check_assignment(task: Task, agent: Agent) -> None:
    """Raise if a held task and its agent do not point at each other."""
    if task.status not in HELD_STATUSES:
        return
    if (
        task.assigned_to_agent_id != agent.id
        or agent.current_task_id != task.id
        or agent.status != AgentStatus.BUSY
    ):
        raise AssignmentIntegrityError(
            f"Task {task.id} ({task.status.value}, agent={task.assigned_to_agent_id}) "
            f"and agent {agent.id} ({agent.status.value}, task={agent.current_task_id}) "
            "disagree on assignment"
        )
