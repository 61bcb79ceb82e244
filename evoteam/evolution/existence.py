"""Existence model — the survival arithmetic behind every agent's E value.

Pure and deterministic: no I/O, no randomness. Identical inputs always
produce identical outputs so outcomes can be replayed in tests.
"""

from __future__ import annotations

from evoteam.config import ExistenceConfig


def _unit(value: float) -> float:
    return max(0.0, min(1.0, value))


class ExistenceModel:
    """Rewards, decay, urgency and the termination test for E."""

    def __init__(self, config: ExistenceConfig | None = None) -> None:
        self.config = config or ExistenceConfig()

    def reward(
        self,
        success: bool,
        complexity: float,
        quality: float,
        efficiency: float,
    ) -> float:
        """E delta for one reported outcome.

        Failure costs a fixed penalty. Success pays the base bonus plus
        bonuses scaled by complexity, quality and efficiency (each in [0, 1]).
        """
        c = self.config
        if not success:
            return c.failure_penalty
        return (
            c.success_bonus
            + _unit(complexity) * c.complexity_bonus
            + _unit(quality) * c.quality_bonus
            + _unit(efficiency) * c.efficiency_bonus
        )

    def apply_metabolic_cost(self, current_e: float, elapsed_seconds: float) -> float:
        """Per-minute decay, never below the configured minimum."""
        minutes = max(0.0, elapsed_seconds) / 60.0
        return max(self.config.e_min, current_e - minutes * self.config.cost_per_minute)

    def urgency(self, current_e: float) -> float:
        """0 above the panic threshold, rising linearly to 1 at the floor."""
        c = self.config
        if current_e <= c.termination_floor:
            return 1.0
        if current_e > c.panic_threshold:
            return 0.0
        span = c.panic_threshold - c.termination_floor
        if span <= 0:
            return 1.0
        return _unit(1.0 - (current_e - c.termination_floor) / span)

    def should_terminate(self, e: float) -> bool:
        return e <= self.config.termination_floor

    def clamp(self, e: float) -> float:
        return max(self.config.e_min, min(self.config.e_max, e))
