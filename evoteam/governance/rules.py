"""Governance rules — decide promote, demote, terminate or warn.

`evaluate` is a pure function of one agent's snapshot. Rules are checked
in strict priority order and the first match wins:

  1. Economic circuit breaker
  2. Hard termination
  3. Promotion
  4. Demotion
  5. Warning
"""

from __future__ import annotations

from pydantic import BaseModel

from evoteam.config import GovernanceConfig
from evoteam.roles import next_role, previous_role
from evoteam.types import Agent, GovernanceAction, RiskLevel, Role


class AgentSnapshot(BaseModel):
    """What the rules see of an agent."""

    agent_id: str
    role: Role
    score: float
    risk_level: RiskLevel
    success_count: int = 0
    fail_count: int = 0
    cost_baseline: float | None = None
    session_cost: float | None = None
    current_task_complexity: float | None = None

    @property
    def tasks_handled(self) -> int:
        return self.success_count + self.fail_count

    @property
    def success_rate(self) -> float:
        handled = self.tasks_handled
        return self.success_count / handled if handled else 0.0

    @classmethod
    def from_agent(cls, agent: Agent, current_task_complexity: float | None = None) -> AgentSnapshot:
        return cls(
            agent_id=agent.id,
            role=agent.role,
            score=agent.score,
            risk_level=agent.risk_level,
            success_count=agent.success_count,
            fail_count=agent.fail_count,
            cost_baseline=agent.cost_baseline,
            session_cost=agent.session_cost,
            current_task_complexity=current_task_complexity,
        )


class GovernanceDecision(BaseModel):
    action: GovernanceAction
    reason: str
    previous_role: Role | None = None
    new_role: Role | None = None


def circuit_breaker(
    snapshot: AgentSnapshot, config: GovernanceConfig
) -> GovernanceDecision | None:
    """Terminate on runaway cost relative to a complexity-adjusted baseline."""
    if not snapshot.cost_baseline or not snapshot.session_cost:
        return None
    complexity = snapshot.current_task_complexity
    if complexity is None:
        complexity = config.standard_complexity
    multiplier = max(config.min_complexity_multiplier, complexity / config.standard_complexity)
    deviation = snapshot.session_cost / (snapshot.cost_baseline * multiplier)
    if deviation <= config.circuit_breaker_ratio:
        return None
    return GovernanceDecision(
        action=GovernanceAction.TERMINATE,
        reason=(
            f"Economic circuit breaker triggered: cost deviation "
            f"{deviation * 100:.0f}% > {config.circuit_breaker_ratio * 100:.0f}% "
            f"(complexity adjusted)"
        ),
        previous_role=snapshot.role,
    )


def hard_termination(
    snapshot: AgentSnapshot, config: GovernanceConfig
) -> GovernanceDecision | None:
    reason = None
    if snapshot.fail_count >= config.termination_fail_count:
        reason = (
            f"Exceeded failure limit "
            f"({snapshot.fail_count}/{config.termination_fail_count} failures)"
        )
    elif snapshot.score < config.termination_score:
        reason = f"Critical performance score ({snapshot.score:.1f}/100)"
    elif (
        snapshot.risk_level == RiskLevel.HIGH
        and snapshot.score < config.termination_high_risk_score
    ):
        reason = f"Sustained HIGH risk level with score {snapshot.score:.1f}"
    if reason is None:
        return None
    return GovernanceDecision(
        action=GovernanceAction.TERMINATE, reason=reason, previous_role=snapshot.role
    )


def promotion(
    snapshot: AgentSnapshot, config: GovernanceConfig
) -> GovernanceDecision | None:
    if snapshot.tasks_handled < config.promotion_min_tasks:
        return None
    if not (
        snapshot.score > config.promotion_score
        and snapshot.success_rate > config.promotion_success_rate
    ):
        return None
    target = next_role(snapshot.role)
    if target is None:
        return None
    return GovernanceDecision(
        action=GovernanceAction.PROMOTE,
        reason=(
            f"Excellent performance (score: {snapshot.score:.1f}, "
            f"success rate: {snapshot.success_rate * 100:.1f}%)"
        ),
        previous_role=snapshot.role,
        new_role=target,
    )


def demotion(
    snapshot: AgentSnapshot, config: GovernanceConfig
) -> GovernanceDecision | None:
    if snapshot.score < config.demotion_score and snapshot.fail_count > config.demotion_fail_count:
        reason = f"Poor performance (score: {snapshot.score:.1f}, {snapshot.fail_count} failures)"
    elif (
        snapshot.risk_level == RiskLevel.HIGH
        and snapshot.score < config.demotion_high_risk_score
    ):
        reason = "HIGH risk level with declining performance"
    else:
        return None
    target = previous_role(snapshot.role)
    if target is None:
        return None
    return GovernanceDecision(
        action=GovernanceAction.DEMOTE,
        reason=reason,
        previous_role=snapshot.role,
        new_role=target,
    )


def warning(
    snapshot: AgentSnapshot, config: GovernanceConfig
) -> GovernanceDecision | None:
    if snapshot.score < config.warning_score and snapshot.risk_level == RiskLevel.MEDIUM:
        return GovernanceDecision(
            action=GovernanceAction.WARNING,
            reason="Performance declining - approaching demotion threshold",
        )
    return None


RULES = (circuit_breaker, hard_termination, promotion, demotion, warning)


def evaluate(
    snapshot: AgentSnapshot, config: GovernanceConfig | None = None
) -> GovernanceDecision:
    config = config or GovernanceConfig()
    for rule in RULES:
        decision = rule(snapshot, config)
        if decision is not None:
            return decision
    return GovernanceDecision(
        action=GovernanceAction.NONE,
        reason="Agent performing within acceptable range",
    )
