"""Outcome rewards — turn one reported result into E and score changes."""

from __future__ import annotations

import math

from pydantic import BaseModel

from evoteam.evolution.existence import ExistenceModel
from evoteam.types import Agent, utcnow

FAILURE_OVERTIME_PENALTY = -3.0


class RewardBreakdown(BaseModel):
    base: float = 0.0
    time_bonus: float = 0.0
    quality_bonus: float = 0.0
    cost_bonus: float = 0.0

    @property
    def delta(self) -> float:
        return self.base + self.time_bonus + self.quality_bonus + self.cost_bonus


class RewardResult(BaseModel):
    agent_id: str
    previous_e: float
    new_e: float
    delta: float
    breakdown: RewardBreakdown
    should_terminate: bool


def time_efficiency(execution_seconds: float | None, expected_seconds: float) -> float:
    """1.0 for instant, 0.5 on schedule, 0.0 at twice the expected time."""
    if not execution_seconds or expected_seconds <= 0:
        return 0.5
    ratio = execution_seconds / expected_seconds
    return max(0.0, 1.0 - min(1.0, ratio / 2.0))


def cost_efficiency(cost_usd: float, ceiling_usd: float) -> float:
    if ceiling_usd <= 0:
        return 0.5
    return max(0.0, min(1.0, 1.0 - cost_usd / ceiling_usd))


class RewardCalculator:
    """Existence-model reward plus speed, quality and cost bonuses."""

    def __init__(self, existence: ExistenceModel | None = None) -> None:
        self.existence = existence or ExistenceModel()

    def breakdown(
        self,
        success: bool,
        complexity: float = 0.5,
        quality: float = 0.7,
        efficiency: float = 0.5,
        execution_seconds: float | None = None,
        expected_seconds: float | None = None,
        cost_efficiency: float | None = None,
    ) -> RewardBreakdown:
        b = RewardBreakdown(
            base=self.existence.reward(success, complexity, quality, efficiency)
        )
        ratio = None
        if execution_seconds and expected_seconds:
            ratio = execution_seconds / expected_seconds

        if not success:
            if ratio is not None and ratio > 2:
                b.time_bonus = FAILURE_OVERTIME_PENALTY
            return b

        if ratio is not None:
            if ratio < 0.5:
                b.time_bonus = 8.0
            elif ratio < 0.75:
                b.time_bonus = 4.0
            elif ratio < 1.0:
                b.time_bonus = 2.0
        if cost_efficiency is not None and cost_efficiency > 0.7:
            b.cost_bonus = float(math.floor((cost_efficiency - 0.5) * 10))
        if quality > 0.8:
            b.quality_bonus = float(math.floor((quality - 0.5) * 8))
        return b

    def apply(self, agent: Agent, success: bool, breakdown: RewardBreakdown) -> RewardResult:
        """Apply a breakdown to `agent` in place (caller persists it)."""
        previous = agent.existence_potential
        delta = breakdown.delta
        agent.existence_potential = self.existence.clamp(previous + delta)
        agent.score = max(0.0, min(100.0, agent.score + math.floor(delta / 2)))
        if success:
            agent.success_count += 1
        else:
            agent.fail_count += 1
        agent.last_active_at = utcnow()
        return RewardResult(
            agent_id=agent.id,
            previous_e=previous,
            new_e=agent.existence_potential,
            delta=delta,
            breakdown=breakdown,
            should_terminate=self.existence.should_terminate(agent.existence_potential),
        )
