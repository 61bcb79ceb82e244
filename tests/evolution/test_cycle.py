"""Tests for the evolution cycle."""

import pytest

from evoteam.evolution.cycle import EvolutionCycle
from evoteam.evolution.engine import EvolutionEngine
from evoteam.types import AgentStatus, ExecutionMode, PerformanceLog, Role


class PairedEngine(EvolutionEngine):
    """Always pairs the two fittest genomes."""

    def select_pair(self, pool, k=None):
        return pool[0].genome, pool[1].genome


class SelfPairEngine(EvolutionEngine):
    def select_pair(self, pool, k=None):
        return pool[0].genome, pool[0].genome


@pytest.fixture
def make_cycle(store, bus, population, existence, rng, config):
    def _factory(engine_cls=EvolutionEngine) -> EvolutionCycle:
        return EvolutionCycle(
            store, bus, population,
            engine=engine_cls(config.evolution, rng=rng),
            existence=existence,
            config=config.cycle,
        )
    return _factory


async def _log_successes(store, agent_id: str, count: int) -> None:
    async with store.transaction() as tx:
        for _ in range(count):
            await tx.add_performance_log(PerformanceLog(
                agent_id=agent_id, success=True, quality_score=0.9, efficiency_score=0.8,
            ))


async def test_empty_population_yields_empty_result(cycle, store):
    result = await cycle.run()

    assert result.generation_number == 0
    assert result.record is None
    async with store.transaction() as tx:
        assert await tx.list_generations() == []


async def test_low_e_agents_are_culled_and_harvested(cycle, store, make_agent, put, fetch):
    dying = make_agent(existence_potential=5.0, success_count=4, specialization="Backend")
    healthy = make_agent(existence_potential=70.0)
    await put(dying, healthy)

    result = await cycle.run()

    assert result.generation_number == 1
    assert result.terminated == [dying.id]
    assert result.survivors == [healthy.id]
    assert (await fetch(dying)).status == AgentStatus.OFFLINE
    assert (await fetch(healthy)).genome.fitness_history == (0.1,)
    async with store.transaction() as tx:
        assert len(await tx.list_nuggets(["Backend"])) == 1
    record = result.record
    assert record.death_count == 1
    assert record.survival_rate == 0.5
    statuses = {s.agent_id: s.status for s in record.agents}
    assert statuses[dying.id] == "TERMINATED_LOW_E"


async def test_children_come_from_the_elite(make_cycle, store, make_agent, put):
    star = make_agent(role=Role.QA)
    others = [make_agent() for _ in range(9)]
    await put(star, *others)
    await _log_successes(store, star.id, 3)

    result = await make_cycle(PairedEngine).run()

    assert len(result.bred) == 3
    async with store.transaction() as tx:
        children = [await tx.get_agent(agent_id) for agent_id in result.bred]
    for child in children:
        assert child.role == Role.QA
        assert child.parent_id == star.id
        assert child.generation == 1
        assert child.existence_potential == 80.0
        assert star.genome.id in child.genome.parents
    assert result.record.birth_count == 3
    assert result.record.top_agent_id == star.id
    assert result.innovations == ["Gen 1 QA born"] * 3


async def test_self_pairs_produce_no_children(make_cycle, make_agent, put):
    await put(*[make_agent() for _ in range(10)])

    result = await make_cycle(SelfPairEngine).run()

    assert result.bred == []
    assert result.generation_number == 1


async def test_generation_numbers_increase(cycle, make_agent, put):
    await put(make_agent(), make_agent())
    first = await cycle.run()
    second = await cycle.run()
    assert (first.generation_number, second.generation_number) == (1, 2)


async def test_dry_run_writes_nothing(make_cycle, store, make_agent, put, fetch):
    dying = make_agent(existence_potential=3.0)
    await put(dying, *[make_agent() for _ in range(10)])

    result = await make_cycle(PairedEngine).run(ExecutionMode.DRY_RUN)

    assert result.terminated == [dying.id]
    assert result.bred == ["dry-run-child-0", "dry-run-child-1", "dry-run-child-2"]
    assert (await fetch(dying)).status == AgentStatus.IDLE
    async with store.transaction() as tx:
        assert await tx.list_generations() == []
        assert len(await tx.list_agents()) == 11
