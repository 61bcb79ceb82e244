"""Population manager — the agent pool's entry and exit points.

Agents are checked out for work (`request_agent`), returned
(`release_agent`), removed (`terminate_agent`) and created
(`spawn_genesis_agent`, `breed_offspring`, `scale_population`).
Every change that touches both an agent and a task happens in one
store transaction.
"""

from __future__ import annotations

import math

import structlog
from pydantic import BaseModel, Field

from evoteam.config import PopulationConfig
from evoteam.events.bus import EventBus
from evoteam.evolution.engine import EvolutionEngine
from evoteam.evolution.existence import ExistenceModel
from evoteam.evolution.genome import default_genome
from evoteam.evolution.harvester import KnowledgeHarvester
from evoteam.kernel.state_machine import transition
from evoteam.roles import DEVELOPER_ROLES, acceptable_roles, is_developer_request
from evoteam.store.base import BaseStore, StoreTransaction
from evoteam.types import (
    Agent,
    AgentId,
    AgentStatus,
    ExecutionMode,
    GovernanceAction,
    GovernanceEvent,
    HELD_STATUSES,
    PENDING_STATUSES,
    Role,
    Task,
    TaskId,
    TaskStatus,
    new_id,
    utcnow,
)

logger = structlog.get_logger()

# Single-parent reproduction perturbs every gene.
OFFSPRING_MUTATION_RATE = 1.0

_REVIEW_STATUSES = frozenset({TaskStatus.IN_REVIEW, TaskStatus.IN_QA})


class ScaleResult(BaseModel):
    scaled: bool
    action: str
    pending_tasks: int
    current_size: int
    target_size: int
    created: list[AgentId] = Field(default_factory=list)


class PopulationStats(BaseModel):
    total_agents: int = 0
    alive_agents: int = 0
    busy_agents: int = 0
    idle_agents: int = 0
    avg_e: float = 0.0
    avg_score: float = 0.0
    generation_distribution: dict[int, int] = Field(default_factory=dict)
    role_distribution: dict[str, int] = Field(default_factory=dict)


def rank_key(agent: Agent) -> tuple[float, float]:
    """Sort key for "best available": highest E, then highest score."""
    return (-agent.existence_potential, -agent.score)


async def release_held_tasks(tx: StoreTransaction, agent: Agent) -> list[Task]:
    """Put every task the agent holds back in the queue, assignment cleared.

    Review-stage tasks keep their status and only lose the assignee.
    """
    released = []
    for task in await tx.list_tasks(HELD_STATUSES | _REVIEW_STATUSES):
        if task.assigned_to_agent_id != agent.id:
            continue
        if task.status in HELD_STATUSES:
            transition(task, TaskStatus.QUEUED)
        task.assigned_to_agent_id = None
        task.updated_at = utcnow()
        await tx.save_task(task)
        released.append(task)
    return released


class PopulationManager:
    def __init__(
        self,
        store: BaseStore,
        bus: EventBus,
        harvester: KnowledgeHarvester,
        existence: ExistenceModel | None = None,
        engine: EvolutionEngine | None = None,
        config: PopulationConfig | None = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.harvester = harvester
        self.existence = existence or ExistenceModel()
        self.engine = engine or EvolutionEngine()
        self.config = config or PopulationConfig()

    # ── Checkout / return ──

    async def request_agent(self, role: Role | str, task_id: TaskId) -> Agent | None:
        """Check out the best idle agent for `role` and attach the task to it.

        Returns None when no agent fits; the caller leaves the task as it is.
        """
        roles = acceptable_roles(role)
        async with self.store.transaction() as tx:
            task = await tx.require_task(task_id)
            idle = [a for a in await tx.list_agents([AgentStatus.IDLE]) if a.is_alive]

            candidates = [a for a in idle if a.role in roles]
            if not candidates and is_developer_request(role):
                candidates = [a for a in idle if a.role in DEVELOPER_ROLES]
            if not candidates:
                logger.debug("no_agent_available", role=str(role), task_id=task_id)
                return None

            agent = sorted(candidates, key=rank_key)[0]
            agent.status = AgentStatus.BUSY
            agent.last_active_at = utcnow()
            agent.current_task_id = task.id
            agent.project_id = task.project_id
            if task.status in (TaskStatus.QUEUED, TaskStatus.NEEDS_REVISION):
                transition(task, TaskStatus.ASSIGNED)
            task.assigned_to_agent_id = agent.id
            task.updated_at = utcnow()
            await tx.save_task(task)
            await tx.save_agent(agent)

        logger.info(
            "agent_checked_out",
            agent_id=agent.id,
            role=agent.role.value,
            e=round(agent.existence_potential, 1),
            task_id=task_id,
        )
        await self.bus.agent_updated(agent, source="population")
        await self.bus.task_updated(task, source="population")
        return agent

    async def release_agent(
        self,
        agent_id: AgentId,
        elapsed_seconds: float = 0.0,
        mode: ExecutionMode = ExecutionMode.LIVE,
    ) -> Agent | None:
        """Return an agent to the pool after paying its metabolic cost.

        An agent left at or below the termination floor is retired in the
        same transaction instead of going back to IDLE. In dry-run mode the
        agent is only freed from its task: E is not charged and nobody is
        retired.
        """
        released: list[Task] = []
        async with self.store.transaction() as tx:
            agent = await tx.get_agent(agent_id)
            if agent is None:
                logger.warning("release_unknown_agent", agent_id=agent_id)
                return None
            if agent.status == AgentStatus.OFFLINE:
                return agent

            remaining = self.existence.apply_metabolic_cost(
                agent.existence_potential, elapsed_seconds
            )
            terminate = self.existence.should_terminate(remaining)
            if mode == ExecutionMode.LIVE:
                agent.existence_potential = remaining
            if terminate and mode == ExecutionMode.LIVE:
                released = await self.retire_within(tx, agent, "LOW_E")
            else:
                await release_held_tasks(tx, agent)
                agent.status = AgentStatus.IDLE
                agent.current_task_id = None
                agent.last_active_at = utcnow()
                await tx.save_agent(agent)

        if terminate and mode == ExecutionMode.LIVE:
            await self.announce_retirement(agent, "LOW_E", released)
            return agent
        if terminate:
            logger.info("terminate_dry_run", agent_id=agent_id, reason="LOW_E", e=remaining)
            await self.bus.log(f"DRY-RUN: would terminate {agent_id} (LOW_E)",
                               source="population")
        await self.bus.agent_updated(agent, source="population")
        return agent

    # ── Removal ──

    async def terminate_agent(
        self,
        agent_id: AgentId,
        reason: str,
        mode: ExecutionMode = ExecutionMode.LIVE,
        previous_role: Role | None = None,
    ) -> bool:
        """Harvest, then take the agent offline and requeue its work.

        In dry-run mode the decision is only logged. Returns True when the
        agent was actually removed.
        """
        if mode == ExecutionMode.DRY_RUN:
            agent = await self._get(agent_id)
            logger.info(
                "terminate_dry_run",
                agent_id=agent_id,
                reason=reason,
                e=agent.existence_potential if agent else None,
            )
            await self.bus.log(f"DRY-RUN: would terminate {agent_id} ({reason})",
                               source="population")
            return False

        async with self.store.transaction() as tx:
            agent = await tx.get_agent(agent_id)
            if agent is None or agent.status == AgentStatus.OFFLINE:
                return False
            released = await self.retire_within(tx, agent, reason, previous_role)

        await self.announce_retirement(agent, reason, released)
        return True

    async def retire_within(
        self,
        tx: StoreTransaction,
        agent: Agent,
        reason: str,
        previous_role: Role | None = None,
    ) -> list[Task]:
        """Harvest and remove `agent` inside an open transaction.

        Mutates and saves `agent`; returns the tasks put back in the queue.
        """
        held_task_id = agent.current_task_id
        await self.harvester.harvest_into(tx, agent)
        released = await release_held_tasks(tx, agent)
        agent.status = AgentStatus.OFFLINE
        agent.existence_potential = 0.0
        agent.current_task_id = None
        await tx.save_agent(agent)
        await tx.add_governance_event(GovernanceEvent(
            agent_id=agent.id,
            task_id=held_task_id,
            action=GovernanceAction.TERMINATE,
            reason=reason,
            previous_role=previous_role or agent.role,
        ))
        return released

    async def announce_retirement(
        self, agent: Agent, reason: str, released: list[Task]
    ) -> None:
        """Log and publish a committed removal."""
        logger.warning(
            "agent_terminated",
            agent_id=agent.id,
            role=agent.role.value,
            reason=reason,
            requeued=[t.id for t in released],
        )
        await self.bus.agent_updated(agent, source="population")
        for task in released:
            await self.bus.task_updated(task, source="population")
        await self.bus.emit("population.agent_terminated", {
            "agent_id": agent.id,
            "reason": reason,
        }, source="population")

    # ── Creation ──

    def build_genesis_agent(self, role: Role) -> Agent:
        return Agent(
            id=f"evo_{role.value.lower()}_{new_id()[:8]}",
            role=role,
            specialization=role.value,
            existence_potential=self.config.genesis_e,
            generation=0,
            genome=default_genome(role),
        )

    def build_offspring(self, parent: Agent) -> Agent:
        generation = parent.generation + 1
        seed = parent.genome.model_copy(update={
            "id": new_id(),
            "generation": generation,
            "parents": (parent.genome.id,),
            "fitness_history": (),
        })
        return Agent(
            id=f"evo_{parent.role.value.lower()}_gen{generation}_{new_id()[:6]}",
            role=parent.role,
            specialization=parent.specialization,
            existence_potential=self.config.offspring_e,
            generation=generation,
            parent_id=parent.id,
            genome=self.engine.mutate(seed, OFFSPRING_MUTATION_RATE),
        )

    async def spawn_genesis_agent(self, role: Role) -> Agent:
        """Create a generation-0 agent with the role's default genome."""
        agent = self.build_genesis_agent(role)
        async with self.store.transaction() as tx:
            await tx.save_agent(agent)
        logger.info("agent_spawned", agent_id=agent.id, role=role.value, generation=0)
        await self.bus.agent_updated(agent, source="population")
        return agent

    async def breed_offspring(self, parent: Agent) -> Agent:
        """Mutation-only child of a single parent."""
        child = self.build_offspring(parent)
        async with self.store.transaction() as tx:
            await tx.save_agent(child)
        logger.info(
            "agent_bred",
            agent_id=child.id,
            parent_id=parent.id,
            generation=child.generation,
        )
        await self.bus.agent_updated(child, source="population")
        return child

    async def initialize_population(self) -> int:
        """Bootstrap generation 0 when the pool is below its minimum size.

        Returns the number of agents created.
        """
        async with self.store.transaction() as tx:
            existing = len(await tx.living_agents())
        if existing >= self.config.min_size:
            logger.info("bootstrap_skipped", existing=existing)
            return 0

        created = 0
        for role, count in self.config.bootstrap_roles.items():
            for _ in range(count):
                await self.spawn_genesis_agent(role)
                created += 1
        logger.info("population_bootstrapped", created=created)
        await self.bus.emit("population.bootstrapped", {"created": created},
                            source="population")
        return created

    # ── Sizing ──

    def target_size(self, pending_tasks: int) -> int:
        c = self.config
        wanted = math.ceil(pending_tasks / c.tasks_per_agent)
        return min(c.max_size, max(c.min_size, wanted))

    async def scale_population(
        self, mode: ExecutionMode = ExecutionMode.LIVE
    ) -> ScaleResult:
        """Grow quickly toward the workload target; never shrink by force."""
        c = self.config
        async with self.store.transaction() as tx:
            pending = await tx.count_tasks(PENDING_STATUSES)
            living = await tx.living_agents()
        current = len(living)
        target = self.target_size(pending)

        result = ScaleResult(
            scaled=False,
            action="NO_CHANGE",
            pending_tasks=pending,
            current_size=current,
            target_size=target,
        )

        if current < target:
            to_create = min(c.max_scale_up, target - current)
            elites = sorted(
                (a for a in living if a.existence_potential > c.elite_e_threshold),
                key=lambda a: -a.score,
            )[: c.elite_pool]

            if mode == ExecutionMode.DRY_RUN:
                result.action = f"DRY_RUN_SCALE_UP_{to_create}"
            elif len(elites) >= 2:
                for parent in elites[:to_create]:
                    child = await self.breed_offspring(parent)
                    result.created.append(child.id)
                result.action = f"SCALE_UP_BRED_{len(result.created)}"
            else:
                for i in range(to_create):
                    role = c.scale_up_roles[i % len(c.scale_up_roles)]
                    agent = await self.spawn_genesis_agent(role)
                    result.created.append(agent.id)
                result.action = f"SCALE_UP_SPAWNED_{len(result.created)}"
            result.scaled = bool(result.created)
            logger.info(
                "population_scaling_up",
                current=current,
                target=target,
                pending=pending,
                action=result.action,
            )
        elif current > target + c.overcapacity_slack:
            # Attrition through governance and E decay shrinks the pool.
            result.action = "SCALE_DOWN_NATURAL"
            logger.info(
                "population_over_capacity",
                current=current,
                target=target,
                pending=pending,
            )

        await self.bus.emit("population.scaled", result.model_dump(), source="population")
        return result

    async def stats(self) -> PopulationStats:
        async with self.store.transaction() as tx:
            agents = await tx.list_agents()
        alive = [a for a in agents if a.is_alive]
        stats = PopulationStats(
            total_agents=len(agents),
            alive_agents=len(alive),
            busy_agents=sum(1 for a in alive if a.status == AgentStatus.BUSY),
            idle_agents=sum(1 for a in alive if a.status == AgentStatus.IDLE),
        )
        if alive:
            stats.avg_e = sum(a.existence_potential for a in alive) / len(alive)
            stats.avg_score = sum(a.score for a in alive) / len(alive)
        for a in alive:
            stats.generation_distribution[a.generation] = (
                stats.generation_distribution.get(a.generation, 0) + 1
            )
            stats.role_distribution[a.role.value] = (
                stats.role_distribution.get(a.role.value, 0) + 1
            )
        return stats

    async def _get(self, agent_id: AgentId) -> Agent | None:
        async with self.store.transaction() as tx:
            return await tx.get_agent(agent_id)
