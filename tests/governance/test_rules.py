"""Tests for governance rules and their priority order."""

from evoteam.governance.rules import AgentSnapshot, evaluate
from evoteam.types import GovernanceAction, RiskLevel, Role


def _snapshot(**fields) -> AgentSnapshot:
    defaults = dict(
        agent_id="a1", role=Role.MID_DEV, score=60.0, risk_level=RiskLevel.LOW,
    )
    defaults.update(fields)
    return AgentSnapshot(**defaults)


def test_circuit_breaker_trips_above_ratio():
    decision = evaluate(_snapshot(cost_baseline=1.0, session_cost=3.01))
    assert decision.action == GovernanceAction.TERMINATE
    assert "301%" in decision.reason


def test_circuit_breaker_holds_at_ratio():
    decision = evaluate(_snapshot(cost_baseline=1.0, session_cost=3.0))
    assert decision.action == GovernanceAction.NONE


def test_circuit_breaker_scales_with_task_complexity():
    # a complexity-90 task may cost 1.8x the baseline before the ratio applies
    calm = evaluate(_snapshot(cost_baseline=1.0, session_cost=5.0, current_task_complexity=90))
    assert calm.action == GovernanceAction.NONE
    # trivial tasks use the minimum multiplier, 0.2
    tripped = evaluate(_snapshot(cost_baseline=1.0, session_cost=0.7, current_task_complexity=5))
    assert tripped.action == GovernanceAction.TERMINATE


def test_circuit_breaker_needs_both_costs():
    assert evaluate(_snapshot(session_cost=100.0)).action == GovernanceAction.NONE


def test_failure_limit_terminates():
    decision = evaluate(_snapshot(fail_count=5, success_count=20, score=90.0))
    assert decision.action == GovernanceAction.TERMINATE
    assert decision.reason == "Exceeded failure limit (5/5 failures)"
    assert decision.previous_role == Role.MID_DEV


def test_critical_score_terminates():
    assert evaluate(_snapshot(score=19.0)).action == GovernanceAction.TERMINATE
    high_risk = evaluate(_snapshot(score=29.0, risk_level=RiskLevel.HIGH))
    assert high_risk.action == GovernanceAction.TERMINATE


def test_promotion_to_next_role():
    decision = evaluate(_snapshot(score=85.0, success_count=9, fail_count=1))
    assert decision.action == GovernanceAction.PROMOTE
    assert decision.new_role == Role.SENIOR_DEV


def test_promotion_needs_enough_tasks():
    decision = evaluate(_snapshot(score=85.0, success_count=4))
    assert decision.action == GovernanceAction.NONE


def test_top_of_ladder_is_not_promoted():
    decision = evaluate(_snapshot(role=Role.SENIOR_DEV, score=85.0, success_count=10))
    assert decision.action == GovernanceAction.NONE


def test_demotion_on_poor_performance():
    decision = evaluate(_snapshot(score=35.0, fail_count=4, risk_level=RiskLevel.MEDIUM))
    assert decision.action == GovernanceAction.DEMOTE
    assert decision.previous_role == Role.MID_DEV
    assert decision.new_role == Role.JUNIOR_DEV


def test_junior_dev_is_never_demoted():
    decision = evaluate(_snapshot(
        role=Role.JUNIOR_DEV, score=35.0, fail_count=4, risk_level=RiskLevel.MEDIUM,
    ))
    assert decision.action == GovernanceAction.WARNING


def test_warning_for_medium_risk_below_fifty():
    decision = evaluate(_snapshot(score=45.0, risk_level=RiskLevel.MEDIUM, fail_count=1))
    assert decision.action == GovernanceAction.WARNING


def test_healthy_agent_gets_no_action():
    decision = evaluate(_snapshot(score=65.0, risk_level=RiskLevel.MEDIUM))
    assert decision.action == GovernanceAction.NONE
