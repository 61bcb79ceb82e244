"""Evolution history — generation timeline and agent lineage."""

from __future__ import annotations

from pydantic import BaseModel, Field

from evoteam.evolution.specialization import SpecializationTracker
from evoteam.exceptions import AgentNotFoundError
from evoteam.store.base import BaseStore
from evoteam.types import AgentId, GenerationRecord


class FamilyTreeNode(BaseModel):
    agent_id: AgentId
    role: str
    generation: int
    status: str
    existence_potential: float
    specialization: str
    children: list[FamilyTreeNode] = Field(default_factory=list)


class EvolutionHistory:
    def __init__(self, store: BaseStore) -> None:
        self.store = store

    async def timeline(self, limit: int = 100) -> list[GenerationRecord]:
        """Generation records in chronological order."""
        async with self.store.transaction() as tx:
            records = await tx.list_generations(limit)
        return list(reversed(records))

    async def latest(self) -> GenerationRecord | None:
        async with self.store.transaction() as tx:
            records = await tx.list_generations(limit=1)
        return records[0] if records else None

    async def family_tree(self, root_agent_id: AgentId) -> FamilyTreeNode:
        """Descendants of an agent, following `parent_id` links."""
        async with self.store.transaction() as tx:
            agents = await tx.list_agents()
        by_id = {a.id: a for a in agents}
        if root_agent_id not in by_id:
            raise AgentNotFoundError(f"No agent with id {root_agent_id}")

        children: dict[AgentId, list[AgentId]] = {}
        for a in agents:
            if a.parent_id:
                children.setdefault(a.parent_id, []).append(a.id)

        def build(agent_id: AgentId, seen: set[AgentId]) -> FamilyTreeNode:
            a = by_id[agent_id]
            seen.add(agent_id)
            return FamilyTreeNode(
                agent_id=a.id,
                role=a.role.value,
                generation=a.generation,
                status=a.status.value,
                existence_potential=a.existence_potential,
                specialization=SpecializationTracker.primary(a.genome.specialization),
                children=[
                    build(child, seen)
                    for child in children.get(agent_id, [])
                    if child not in seen
                ],
            )

        return build(root_agent_id, set())
