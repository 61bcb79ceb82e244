"""Agent scoring — turn recent performance logs into a 0..100 score.

Hybrid model: soft components (success, efficiency, quality, consistency)
add up to at most 95 points; hard-rule risk flags subtract up to 50.
"""

from __future__ import annotations

import math
from typing import Sequence

from pydantic import BaseModel

from evoteam.types import PerformanceLog, RiskLevel

NEUTRAL_SCORE = 50.0

WEIGHT_SUCCESS = 30.0
WEIGHT_EFFICIENCY = 25.0
WEIGHT_QUALITY = 25.0
WEIGHT_CONSISTENCY = 15.0
WEIGHT_RISK = 50.0

MAX_COST_USD = 5.0
MAX_DURATION_MS = 60_000.0
MAX_REVISIONS = 3.0

HIGH_COST_USD = 3.0
CONSECUTIVE_FAILURE_LIMIT = 3
LOW_SUCCESS_RATE = 0.4


class ScoreBreakdown(BaseModel):
    success_rate: float = 0.0
    efficiency_score: float = 0.0
    quality_score: float = 0.0
    consistency_score: float = 0.0
    risk_penalty: float = 0.0
    total_score: float = NEUTRAL_SCORE


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _std_dev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    avg = _mean(values)
    return math.sqrt(_mean([(v - avg) ** 2 for v in values]))


def _normalize(value: float, low: float, high: float) -> float:
    if high == low:
        return 0.0
    return _clamp((value - low) / (high - low), 0.0, 1.0)


def consecutive_failures(logs: Sequence[PerformanceLog]) -> int:
    """Failures in a row at the recent end (logs are most recent first)."""
    count = 0
    for log in logs:
        if log.success:
            break
        count += 1
    return count


def risk_penalty(
    avg_cost: float,
    success_count: int,
    fail_count: int,
    streak: int,
    max_revisions: int,
) -> float:
    penalty = 0.0
    if avg_cost > HIGH_COST_USD:
        penalty += 0.4
    if streak >= CONSECUTIVE_FAILURE_LIMIT:
        penalty += 0.3
    if max_revisions > MAX_REVISIONS:
        penalty += 0.2
    handled = success_count + fail_count
    if handled and success_count / handled < LOW_SUCCESS_RATE:
        penalty += 0.1
    return _clamp(penalty, 0.0, 1.0)


def compute_agent_score(logs: Sequence[PerformanceLog]) -> ScoreBreakdown:
    """Score an agent from its recent logs, most recent first."""
    if not logs:
        return ScoreBreakdown()

    successes = sum(1 for log in logs if log.success)
    failures = len(logs) - successes
    success_rate = successes / len(logs)

    costs = [log.cost_usd or 0.0 for log in logs]
    durations = [log.duration_ms or 0.0 for log in logs]
    avg_cost = _mean(costs)
    efficiency = (
        (1 - _normalize(avg_cost, 0.0, MAX_COST_USD)) * 0.5
        + (1 - _normalize(_mean(durations), 0.0, MAX_DURATION_MS)) * 0.5
    )

    revisions = [log.revision_count or 0 for log in logs]
    quality = 1 - _normalize(_mean(revisions), 0.0, MAX_REVISIONS)

    consistency = 1 - _std_dev(costs) / (avg_cost or 1.0)

    penalty = risk_penalty(
        avg_cost=avg_cost,
        success_count=successes,
        fail_count=failures,
        streak=consecutive_failures(logs),
        max_revisions=max(revisions),
    )

    total = _clamp(
        success_rate * WEIGHT_SUCCESS
        + efficiency * WEIGHT_EFFICIENCY
        + quality * WEIGHT_QUALITY
        + consistency * WEIGHT_CONSISTENCY
        - penalty * WEIGHT_RISK,
        0.0,
        100.0,
    )
    return ScoreBreakdown(
        success_rate=success_rate,
        efficiency_score=efficiency,
        quality_score=quality,
        consistency_score=consistency,
        risk_penalty=penalty,
        total_score=total,
    )


def assign_risk_level(score: float) -> RiskLevel:
    if score > 70:
        return RiskLevel.LOW
    if score > 40:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH
