"""Tests for agent scoring."""

import pytest

from evoteam.governance.scoring import (
    NEUTRAL_SCORE,
    assign_risk_level,
    compute_agent_score,
    consecutive_failures,
    risk_penalty,
)
from evoteam.types import PerformanceLog, RiskLevel


def _log(success: bool, **fields) -> PerformanceLog:
    return PerformanceLog(agent_id="a1", success=success, **fields)


def test_no_logs_scores_neutral():
    assert compute_agent_score([]).total_score == NEUTRAL_SCORE


def test_flawless_history_tops_out_at_95():
    breakdown = compute_agent_score([_log(True) for _ in range(5)])
    assert breakdown.success_rate == 1.0
    assert breakdown.risk_penalty == 0.0
    assert breakdown.total_score == pytest.approx(95.0)


def test_expensive_slow_history_loses_efficiency():
    cheap = compute_agent_score([_log(True, cost_usd=0.1, duration_ms=1_000)] * 4)
    costly = compute_agent_score([_log(True, cost_usd=4.5, duration_ms=55_000)] * 4)
    assert costly.efficiency_score < cheap.efficiency_score
    assert costly.risk_penalty == pytest.approx(0.4)
    assert costly.total_score < cheap.total_score


def test_revisions_reduce_quality():
    breakdown = compute_agent_score([_log(True, revision_count=3)] * 3)
    assert breakdown.quality_score == 0.0


def test_consecutive_failures_count_from_most_recent():
    logs = [_log(False), _log(False), _log(True), _log(False)]
    assert consecutive_failures(logs) == 2
    assert consecutive_failures([_log(True), _log(False)]) == 0


def test_risk_penalty_is_capped():
    assert risk_penalty(
        avg_cost=4.0, success_count=1, fail_count=4, streak=3, max_revisions=4,
    ) == 1.0
    assert risk_penalty(
        avg_cost=0.5, success_count=5, fail_count=0, streak=0, max_revisions=0,
    ) == 0.0


def test_risk_levels():
    assert assign_risk_level(71) == RiskLevel.LOW
    assert assign_risk_level(70) == RiskLevel.MEDIUM
    assert assign_risk_level(41) == RiskLevel.MEDIUM
    assert assign_risk_level(40) == RiskLevel.HIGH
