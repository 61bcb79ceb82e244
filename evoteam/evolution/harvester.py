"""Knowledge harvester — keep one lesson from each successful agent that leaves.

Harvesting runs inside the same transaction as the removal it precedes,
so a lesson is stored exactly when the agent actually goes offline.
"""

from __future__ import annotations

import hashlib

import structlog

from evoteam.config import HarvestConfig
from evoteam.store.base import BaseStore, StoreTransaction
from evoteam.types import Agent, KnowledgeNugget

logger = structlog.get_logger()

LESSON_PATTERNS = (
    "Always validate inputs for {area} tasks to prevent runtime errors.",
    "Use caching strategies when handling high-load {area} operations.",
    "Prioritize rigorous error handling in {role} workflows.",
    "Keep functions small, pure, and testable in {area} development.",
    "Document assumptions clearly for {role} tasks to improve collaboration.",
    "Refactor early when complexity in {area} modules increases.",
    "Automate repetitive {area} testing steps to save E-cost.",
)


class KnowledgeHarvester:
    def __init__(self, store: BaseStore, config: HarvestConfig | None = None) -> None:
        self.store = store
        self.config = config or HarvestConfig()

    def extract_lesson(self, agent: Agent) -> str:
        """Pick a lesson for the agent; the same agent always gets the same one."""
        digest = hashlib.sha256(agent.id.encode()).digest()
        pattern = LESSON_PATTERNS[int.from_bytes(digest[:4], "big") % len(LESSON_PATTERNS)]
        area = agent.specialization or self.config.fallback_category
        return pattern.format(area=area, role=agent.role.value)

    async def harvest_into(
        self, tx: StoreTransaction, agent: Agent
    ) -> KnowledgeNugget | None:
        """Store the agent's lesson as part of an open transaction."""
        if agent.success_count < self.config.min_successes:
            logger.debug(
                "harvest_skipped",
                agent_id=agent.id,
                successes=agent.success_count,
            )
            return None

        nugget = KnowledgeNugget(
            category=agent.specialization or self.config.fallback_category,
            content=self.extract_lesson(agent),
            source_agent_id=agent.id,
            quality_score=min(1.0, agent.success_count / self.config.quality_divisor),
        )
        await tx.add_nugget(nugget)
        logger.info(
            "knowledge_harvested",
            agent_id=agent.id,
            category=nugget.category,
            quality=nugget.quality_score,
        )
        return nugget

    async def harvest(self, agent: Agent) -> KnowledgeNugget | None:
        async with self.store.transaction() as tx:
            return await self.harvest_into(tx, agent)

    async def relevant_knowledge(self, category: str, limit: int = 3) -> list[str]:
        """Best lessons for a category, with the general fallback mixed in."""
        categories = {category, self.config.fallback_category}
        async with self.store.transaction() as tx:
            nuggets = await tx.list_nuggets(categories, limit=limit)
        return [n.content for n in nuggets]
