"""Tests for the evolution history views."""

import pytest

from evoteam.evolution.history import EvolutionHistory
from evoteam.exceptions import AgentNotFoundError
from evoteam.types import AgentStatus, GenerationRecord, Genome


def _record(n: int) -> GenerationRecord:
    return GenerationRecord(
        generation_number=n, population_size=2, avg_fitness=0.4, max_fitness=0.6,
        min_fitness=0.2, fitness_std_dev=0.2, birth_count=0, death_count=0,
        survival_rate=1.0, mutation_rate=0.1, crossover_rate=0.0,
    )


async def test_timeline_is_chronological(store):
    async with store.transaction() as tx:
        for n in (2, 1, 3):
            await tx.add_generation(_record(n))
    history = EvolutionHistory(store)

    timeline = await history.timeline()

    assert [r.generation_number for r in timeline] == [1, 2, 3]
    assert (await history.latest()).generation_number == 3


async def test_family_tree_follows_parent_links(store, make_agent, put):
    root = make_agent(genome=Genome(specialization={"Backend": 0.8}))
    child = make_agent(generation=1, parent_id=root.id, status=AgentStatus.OFFLINE)
    grandchild = make_agent(generation=2, parent_id=child.id)
    stranger = make_agent()
    await put(root, child, grandchild, stranger)

    tree = await EvolutionHistory(store).family_tree(root.id)

    assert tree.specialization == "Backend"
    assert [c.agent_id for c in tree.children] == [child.id]
    assert tree.children[0].status == "OFFLINE"
    assert tree.children[0].children[0].agent_id == grandchild.id
    assert tree.children[0].children[0].generation == 2


async def test_family_tree_of_unknown_agent(store):
    with pytest.raises(AgentNotFoundError):
        await EvolutionHistory(store).family_tree("nobody")
