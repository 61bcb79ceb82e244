"""Governance loop — periodically re-score every agent and act on the result.

Each agent is evaluated on its own: recent logs are scored, the agent's
metrics refreshed, the rules consulted and the decision applied, all in
one transaction. A failure on one agent is logged and the pass moves on.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel, Field

from evoteam.config import GovernanceConfig
from evoteam.events.bus import EventBus
from evoteam.evolution.population import PopulationManager
from evoteam.governance.audit import AuditTrail
from evoteam.governance.rules import AgentSnapshot, GovernanceDecision, evaluate
from evoteam.governance.scoring import assign_risk_level, compute_agent_score
from evoteam.store.base import BaseStore, StoreTransaction
from evoteam.types import (
    Agent,
    AgentId,
    ExecutionMode,
    GovernanceAction,
    Task,
)

logger = structlog.get_logger()


class GovernanceReport(BaseModel):
    evaluated: int = 0
    skipped: int = 0
    failed: int = 0
    decisions: dict[AgentId, GovernanceAction] = Field(default_factory=dict)


class GovernanceLoop:
    def __init__(
        self,
        store: BaseStore,
        bus: EventBus,
        population: PopulationManager,
        audit: AuditTrail,
        config: GovernanceConfig | None = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.population = population
        self.audit = audit
        self.config = config or GovernanceConfig()

    async def run_once(self, mode: ExecutionMode = ExecutionMode.LIVE) -> GovernanceReport:
        report = GovernanceReport()
        async with self.store.transaction() as tx:
            agent_ids = [a.id for a in await tx.living_agents()]

        for agent_id in agent_ids:
            try:
                decision = await self.evaluate_agent(agent_id, mode)
            except Exception as e:
                report.failed += 1
                logger.error("governance_evaluation_failed", agent_id=agent_id, error=str(e))
                continue
            if decision is None:
                report.skipped += 1
                continue
            report.evaluated += 1
            report.decisions[agent_id] = decision.action

        logger.info(
            "governance_pass_complete",
            evaluated=report.evaluated,
            skipped=report.skipped,
            failed=report.failed,
        )
        return report

    async def evaluate_agent(
        self, agent_id: AgentId, mode: ExecutionMode = ExecutionMode.LIVE
    ) -> GovernanceDecision | None:
        """Score, decide and apply for one agent. None when data is too thin."""
        async with self.store.transaction() as tx:
            agent = await tx.require_agent(agent_id)
            if not agent.is_alive:
                return None
            logs = await tx.recent_performance(agent.id, self.config.recent_outcomes)
            if len(logs) < self.config.min_outcomes_for_eval:
                logger.debug("governance_skip_thin_history", agent_id=agent.id, logs=len(logs))
                return None

            breakdown = compute_agent_score(logs)
            agent.score = breakdown.total_score
            agent.risk_level = assign_risk_level(breakdown.total_score)
            agent.success_count = sum(1 for log in logs if log.success)
            agent.fail_count = len(logs) - agent.success_count

            complexity = None
            if agent.current_task_id:
                task = await tx.get_task(agent.current_task_id)
                complexity = task.complexity_score if task else None
            decision = evaluate(AgentSnapshot.from_agent(agent, complexity), self.config)

            logger.info(
                "agent_evaluated",
                agent_id=agent.id,
                role=agent.role.value,
                score=round(breakdown.total_score, 1),
                risk=agent.risk_level.value,
                action=decision.action.value,
            )
            if mode == ExecutionMode.DRY_RUN:
                # Nothing has been saved yet.
                return decision

            await tx.save_agent(agent)
            released = await self.apply_within(tx, agent, decision)

        await self._announce(agent, decision, released)
        return decision

    async def apply(
        self,
        agent_id: AgentId,
        decision: GovernanceDecision,
        mode: ExecutionMode = ExecutionMode.LIVE,
    ) -> None:
        """Apply an externally made decision to one agent."""
        if mode == ExecutionMode.DRY_RUN:
            logger.info("governance_dry_run", agent_id=agent_id, action=decision.action.value)
            return
        async with self.store.transaction() as tx:
            agent = await tx.require_agent(agent_id)
            released = await self.apply_within(tx, agent, decision)
        await self._announce(agent, decision, released)

    async def apply_within(
        self, tx: StoreTransaction, agent: Agent, decision: GovernanceDecision
    ) -> list[Task]:
        """Write a decision's effects; returns tasks requeued by a termination."""
        if decision.action == GovernanceAction.NONE:
            return []
        if decision.action == GovernanceAction.TERMINATE:
            return await self.population.retire_within(
                tx, agent, decision.reason, decision.previous_role
            )
        if decision.action in (GovernanceAction.PROMOTE, GovernanceAction.DEMOTE):
            agent.role = decision.new_role
            await tx.save_agent(agent)
        await self.audit.record_within(
            tx, AuditTrail.event_for(agent.id, decision, agent.current_task_id)
        )
        return []

    async def _announce(
        self, agent: Agent, decision: GovernanceDecision, released: list[Task]
    ) -> None:
        action = decision.action
        if action == GovernanceAction.NONE:
            return
        if action == GovernanceAction.TERMINATE:
            await self.population.announce_retirement(agent, decision.reason, released)
        elif action == GovernanceAction.WARNING:
            logger.warning("agent_warning", agent_id=agent.id, reason=decision.reason)
        else:
            logger.info(
                "agent_role_changed",
                agent_id=agent.id,
                action=action.value,
                previous_role=decision.previous_role.value if decision.previous_role else None,
                new_role=decision.new_role.value if decision.new_role else None,
            )
            await self.bus.agent_updated(agent, source="governance")
        await self.bus.emit(f"governance.{action.value.lower()}", {
            "agent_id": agent.id,
            "reason": decision.reason,
            "previous_role": decision.previous_role.value if decision.previous_role else None,
            "new_role": decision.new_role.value if decision.new_role else None,
        }, source="governance")
