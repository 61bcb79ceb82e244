"""Audit trail — append-only record of governance decisions.

Every promotion, demotion, termination and warning lands here as a
`GovernanceEvent`. Events are never updated or deleted.
"""

from __future__ import annotations

from evoteam.governance.rules import GovernanceDecision
from evoteam.store.base import BaseStore, StoreTransaction
from evoteam.types import AgentId, GovernanceAction, GovernanceEvent, TaskId


class AuditTrail:
    """Governance event log backed by the shared store."""

    def __init__(self, store: BaseStore) -> None:
        self.store = store

    @staticmethod
    def event_for(
        agent_id: AgentId,
        decision: GovernanceDecision,
        task_id: TaskId | None = None,
    ) -> GovernanceEvent:
        return GovernanceEvent(
            agent_id=agent_id,
            task_id=task_id,
            action=decision.action,
            reason=decision.reason,
            previous_role=decision.previous_role,
            new_role=decision.new_role,
        )

    async def record_within(
        self, tx: StoreTransaction, event: GovernanceEvent
    ) -> GovernanceEvent:
        """Append as part of an open transaction."""
        await tx.add_governance_event(event)
        return event

    async def record(self, event: GovernanceEvent) -> GovernanceEvent:
        async with self.store.transaction() as tx:
            return await self.record_within(tx, event)

    async def record_decision(
        self,
        agent_id: AgentId,
        decision: GovernanceDecision,
        task_id: TaskId | None = None,
    ) -> GovernanceEvent:
        return await self.record(self.event_for(agent_id, decision, task_id))

    async def query(
        self,
        agent_id: AgentId = "",
        action: GovernanceAction | None = None,
        limit: int = 50,
    ) -> list[GovernanceEvent]:
        """Most recent first."""
        async with self.store.transaction() as tx:
            return await tx.list_governance_events(
                agent_id=agent_id or None, action=action, limit=limit
            )

    async def terminations(self, limit: int = 50) -> list[GovernanceEvent]:
        return await self.query(action=GovernanceAction.TERMINATE, limit=limit)

    async def count(self) -> int:
        async with self.store.transaction() as tx:
            return await tx.count_governance_events()

    def __repr__(self) -> str:
        return f"AuditTrail(store={self.store!r})"
