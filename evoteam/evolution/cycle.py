"""Evolution cycle — select, cull and breed the living population.

One pass:
  1. Snapshot every living agent with its recent outcomes
  2. Score fitness and rank
  3. Harvest and remove agents at or below the E floor
  4. Take the top slice of survivors as breeding stock
  5. Breed a few children by tournament, crossover and mutation
  6. Record the generation
Removals, births and the generation record commit together.
"""

from __future__ import annotations

import math

import structlog
from pydantic import BaseModel, Field

from evoteam.config import CycleConfig
from evoteam.events.bus import EventBus
from evoteam.evolution.engine import EvolutionEngine, Outcome, ScoredGenome
from evoteam.evolution.existence import ExistenceModel
from evoteam.evolution.population import PopulationManager
from evoteam.evolution.specialization import SpecializationTracker
from evoteam.exceptions import SelfBreedingError
from evoteam.store.base import BaseStore
from evoteam.types import (
    Agent,
    AgentGenerationSnapshot,
    AgentId,
    AgentStatus,
    ExecutionMode,
    GenerationRecord,
    Task,
    new_id,
)

logger = structlog.get_logger()

FITNESS_HISTORY_LIMIT = 20


class ScoredAgent(BaseModel):
    agent: Agent
    fitness: float
    outcomes: list[Outcome] = Field(default_factory=list)


class CycleResult(BaseModel):
    generation_number: int = 0
    terminated: list[AgentId] = Field(default_factory=list)
    bred: list[AgentId] = Field(default_factory=list)
    survivors: list[AgentId] = Field(default_factory=list)
    avg_fitness: float = 0.0
    max_fitness: float = 0.0
    innovations: list[str] = Field(default_factory=list)
    record: GenerationRecord | None = None


def _std_dev(values: list[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


class EvolutionCycle:
    def __init__(
        self,
        store: BaseStore,
        bus: EventBus,
        population: PopulationManager,
        engine: EvolutionEngine | None = None,
        existence: ExistenceModel | None = None,
        config: CycleConfig | None = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.population = population
        self.engine = engine or EvolutionEngine()
        self.existence = existence or ExistenceModel()
        self.config = config or CycleConfig()

    async def snapshot(self) -> list[ScoredAgent]:
        """Living agents with fitness, best first."""
        async with self.store.transaction() as tx:
            agents = await tx.living_agents()
            scored = []
            for agent in agents:
                logs = await tx.recent_performance(agent.id, self.config.outcome_window)
                outcomes = [Outcome.from_log(log) for log in logs]
                scored.append(ScoredAgent(
                    agent=agent,
                    fitness=self.engine.fitness(outcomes),
                    outcomes=outcomes,
                ))
        # Stable: equal fitness keeps store order (oldest first).
        scored.sort(key=lambda s: -s.fitness)
        return scored

    def breed(self, elite: list[ScoredAgent]) -> list[Agent]:
        """Children of tournament-selected elite pairs. Self-pairs are skipped."""
        if len(elite) < 2:
            return []
        pool = [ScoredGenome(genome=s.agent.genome, fitness=s.fitness) for s in elite]
        by_genome = {s.agent.genome.id: s for s in elite}

        children = []
        for _ in range(self.config.breeding_pairs):
            genome_a, genome_b = self.engine.select_pair(pool)
            if genome_a.id == genome_b.id:
                logger.debug("self_pair_skipped", genome_id=genome_a.id)
                continue
            parent_a, parent_b = by_genome[genome_a.id], by_genome[genome_b.id]
            try:
                child_genome = self.engine.crossover(
                    genome_a, genome_b, parent_a.fitness, parent_b.fitness
                )
            except SelfBreedingError:
                continue
            child_genome = self.engine.mutate(child_genome)

            dominant = parent_a if parent_a.fitness >= parent_b.fitness else parent_b
            role = dominant.agent.role
            children.append(Agent(
                id=f"evo_{role.value.lower()}_gen{child_genome.generation}_{new_id()[:6]}",
                role=role,
                specialization=dominant.agent.specialization,
                existence_potential=self.population.config.offspring_e,
                generation=child_genome.generation,
                parent_id=dominant.agent.id,
                genome=child_genome,
            ))
        return children

    async def run(self, mode: ExecutionMode = ExecutionMode.LIVE) -> CycleResult:
        scored = await self.snapshot()
        if not scored:
            logger.info("evolution_cycle_empty")
            return CycleResult()

        doomed = [s for s in scored if self.existence.should_terminate(s.agent.existence_potential)]
        doomed_ids = {s.agent.id for s in doomed}
        survivors = [s for s in scored if s.agent.id not in doomed_ids]
        elite_count = max(1, math.floor(len(survivors) * self.config.elite_percentage))
        elite = survivors[:elite_count]
        children = self.breed(elite)

        fitness_values = [s.fitness for s in scored]
        result = CycleResult(
            terminated=[s.agent.id for s in doomed],
            survivors=[s.agent.id for s in survivors],
            avg_fitness=sum(fitness_values) / len(fitness_values),
            max_fitness=scored[0].fitness,
            innovations=[f"Gen {c.generation} {c.role.value} born" for c in children],
        )

        if mode == ExecutionMode.DRY_RUN:
            result.bred = [f"dry-run-child-{i}" for i in range(len(children))]
            logger.info(
                "evolution_cycle_dry_run",
                would_terminate=result.terminated,
                would_breed=len(children),
            )
            return result

        released: dict[AgentId, tuple[Agent, list[Task]]] = {}
        async with self.store.transaction() as tx:
            generation_number = await tx.latest_generation_number() + 1
            for s in doomed:
                agent = await tx.get_agent(s.agent.id)
                if agent is None or agent.status == AgentStatus.OFFLINE:
                    continue
                tasks = await self.population.retire_within(tx, agent, "LOW_E")
                released[agent.id] = (agent, tasks)

            for s in survivors:
                agent = await tx.get_agent(s.agent.id)
                if agent is None or not agent.is_alive:
                    continue
                history = (agent.genome.fitness_history + (s.fitness,))[-FITNESS_HISTORY_LIMIT:]
                agent.genome = agent.genome.model_copy(update={"fitness_history": history})
                await tx.save_agent(agent)

            for child in children:
                await tx.save_agent(child)

            record = self.build_record(
                generation_number, scored, set(released), children, len(elite)
            )
            await tx.add_generation(record)

        result.generation_number = generation_number
        result.terminated = list(released)
        result.bred = [c.id for c in children]
        result.record = record

        for agent, tasks in released.values():
            await self.population.announce_retirement(agent, "LOW_E", tasks)
        for child in children:
            await self.bus.agent_updated(child, source="evolution")
        logger.info(
            "evolution_cycle_complete",
            generation=generation_number,
            died=len(result.terminated),
            born=len(result.bred),
            avg_fitness=round(result.avg_fitness, 3),
        )
        await self.bus.emit("evolution.generation", {
            "generation_number": generation_number,
            "terminated": result.terminated,
            "bred": result.bred,
            "avg_fitness": result.avg_fitness,
            "max_fitness": result.max_fitness,
        }, source="evolution")
        return result

    def build_record(
        self,
        generation_number: int,
        scored: list[ScoredAgent],
        terminated: set[AgentId],
        children: list[Agent],
        elite_size: int,
    ) -> GenerationRecord:
        fitness_values = [s.fitness for s in scored]
        snapshots = [
            AgentGenerationSnapshot(
                agent_id=s.agent.id,
                role=s.agent.role,
                fitness=s.fitness,
                tasks_completed=s.agent.tasks_handled,
                tasks_succeeded=s.agent.success_count,
                existence_potential=s.agent.existence_potential,
                genome=s.agent.genome,
                parent_id=s.agent.parent_id,
                status="TERMINATED_LOW_E" if s.agent.id in terminated else "ALIVE",
                cause_of_death="Low E" if s.agent.id in terminated else None,
            )
            for s in scored
        ]
        snapshots += [
            AgentGenerationSnapshot(
                agent_id=c.id,
                role=c.role,
                fitness=self.engine.config.base_fitness,
                existence_potential=c.existence_potential,
                genome=c.genome,
                parent_id=c.parent_id,
                status="BORN",
            )
            for c in children
        ]

        counts: dict[str, int] = {}
        for s in scored:
            top = SpecializationTracker.primary(s.agent.genome.specialization)
            counts[top] = counts.get(top, 0) + 1
        distribution = {k: v / len(scored) for k, v in counts.items()}

        return GenerationRecord(
            generation_number=generation_number,
            population_size=len(scored),
            avg_fitness=sum(fitness_values) / len(fitness_values),
            max_fitness=max(fitness_values),
            min_fitness=min(fitness_values),
            fitness_std_dev=_std_dev(fitness_values),
            birth_count=len(children),
            death_count=len(terminated),
            survival_rate=(len(scored) - len(terminated)) / len(scored),
            mutation_rate=self.engine.config.mutation_rate,
            crossover_rate=self.config.breeding_pairs / max(1, elite_size),
            specialization_distribution=distribution,
            innovations=tuple(f"Gen {c.generation} {c.role.value} born" for c in children),
            top_agent_id=scored[0].agent.id,
            agents=tuple(snapshots),
        )
