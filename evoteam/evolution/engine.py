"""Evolution engine — fitness, tournament selection, crossover, mutation.

All randomness flows through an injected `random.Random`, so a seeded
engine is fully reproducible.
"""

from __future__ import annotations

import random
from typing import Sequence

from pydantic import BaseModel, ConfigDict

from evoteam.config import EvolutionConfig
from evoteam.evolution.genome import GENE_RANGES, clamp_gene
from evoteam.exceptions import InsufficientPopulationError, SelfBreedingError
from evoteam.types import Genome, PerformanceLog, new_id


class Outcome(BaseModel):
    """One task result as seen by the fitness function."""

    model_config = ConfigDict(frozen=True)

    success: bool
    quality: float = 0.7
    efficiency: float = 0.5
    complexity: float = 0.5

    @classmethod
    def from_log(cls, log: PerformanceLog) -> Outcome:
        return cls(
            success=log.success,
            quality=log.quality_score,
            efficiency=log.efficiency_score,
            complexity=log.complexity,
        )


class ScoredGenome(BaseModel):
    """A genome paired with the fitness it earned."""

    model_config = ConfigDict(frozen=True)

    genome: Genome
    fitness: float


class EvolutionEngine:
    def __init__(
        self,
        config: EvolutionConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or EvolutionConfig()
        self.rng = rng or random.Random()

    # ── Fitness ──

    def fitness(
        self,
        outcomes: Sequence[Outcome],
        collaboration_history: Sequence[Outcome] = (),
    ) -> float:
        """Weighted blend of performance, efficiency, quality and collaboration.

        Never returns zero: an empty history scores `base_fitness`, anything
        else is floored at `min_fitness`.
        """
        c = self.config
        if not outcomes:
            return c.base_fitness

        weighted_success = 0.0
        total_weight = 0.0
        for o in outcomes:
            weight = 1.0 + o.complexity
            weighted_success += weight if o.success else 0.0
            total_weight += weight
        performance = weighted_success / total_weight if total_weight > 0 else 0.0

        n = len(outcomes)
        avg_efficiency = sum(o.efficiency for o in outcomes) / n
        avg_quality = sum(o.quality for o in outcomes) / n

        if collaboration_history:
            collaboration = (
                sum(1 for o in collaboration_history if o.success)
                / len(collaboration_history)
            )
        else:
            collaboration = 0.5

        value = (
            performance * c.weight_performance
            + avg_efficiency * c.weight_efficiency
            + avg_quality * c.weight_quality
            + collaboration * c.weight_collaboration
        )
        return max(c.min_fitness, min(1.0, value))

    # ── Selection ──

    def tournament_select(
        self, pool: Sequence[ScoredGenome], k: int | None = None
    ) -> Genome:
        """Best of k uniform draws (with replacement); ties go to the first drawn."""
        if not pool:
            raise InsufficientPopulationError("Cannot select from an empty pool")
        k = k or self.config.tournament_size
        best: ScoredGenome | None = None
        for _ in range(max(1, k)):
            candidate = pool[self.rng.randrange(len(pool))]
            if best is None or candidate.fitness > best.fitness:
                best = candidate
        return best.genome

    def select_pair(
        self, pool: Sequence[ScoredGenome], k: int | None = None
    ) -> tuple[Genome, Genome]:
        """Two independent tournaments. The pair may be the same genome."""
        if len(pool) < 2:
            raise InsufficientPopulationError(
                f"Need at least 2 genomes to breed, have {len(pool)}"
            )
        return self.tournament_select(pool, k), self.tournament_select(pool, k)

    # ── Variation ──

    def crossover(
        self,
        parent_a: Genome,
        parent_b: Genome,
        fitness_a: float,
        fitness_b: float,
    ) -> Genome:
        if parent_a.id == parent_b.id:
            raise SelfBreedingError(f"Genome {parent_a.id} cannot breed with itself")

        total = fitness_a + fitness_b
        influence = fitness_a / total if total > 0 else 0.5

        def blend(a: float, b: float) -> float:
            return a * influence + b * (1.0 - influence)

        specialization = {
            key: blend(parent_a.specialization.get(key, 0.0),
                       parent_b.specialization.get(key, 0.0))
            for key in sorted(set(parent_a.specialization) | set(parent_b.specialization))
        }

        return Genome(
            id=new_id(),
            generation=max(parent_a.generation, parent_b.generation) + 1,
            parents=(parent_a.id, parent_b.id),
            system_prompt=self._inherit_prompt(parent_a, parent_b, influence),
            temperature=blend(parent_a.temperature, parent_b.temperature),
            risk_tolerance=blend(parent_a.risk_tolerance, parent_b.risk_tolerance),
            collaboration_preference=blend(
                parent_a.collaboration_preference, parent_b.collaboration_preference
            ),
            specialization=specialization,
        )

    def _inherit_prompt(self, a: Genome, b: Genome, influence: float) -> str:
        # Prompts are inherited whole, never spliced.
        share = self.config.dominant_prompt_share
        if influence > share:
            return a.system_prompt
        if influence < 1.0 - share:
            return b.system_prompt
        return a.system_prompt if influence >= 0.5 else b.system_prompt

    def mutate(self, genome: Genome, rate: float | None = None) -> Genome:
        """Perturb each numeric gene with probability `rate`; returns a new genome."""
        rate = self.config.mutation_rate if rate is None else rate
        step = self.config.mutation_step

        updates: dict = {}
        for name in GENE_RANGES:
            if self.rng.random() < rate:
                value = getattr(genome, name) + self.rng.uniform(-step, step)
                updates[name] = clamp_gene(name, value)

        specialization = dict(genome.specialization)
        for key in sorted(specialization):
            if self.rng.random() < rate:
                specialization[key] = clamp_gene(
                    key, specialization[key] + self.rng.uniform(-step, step)
                )
        updates["specialization"] = specialization

        return genome.model_copy(update=updates)
