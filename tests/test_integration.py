"""End-to-end lifecycle: bootstrap, dispatch, work, govern, evolve."""

import pytest

from evoteam.orchestrator import Orchestrator
from evoteam.store.base import check_assignment
from evoteam.types import AgentStatus, TaskStatus


@pytest.fixture
def orchestrator(dispatcher, make_work_cycle, scripted_worker, governance, cycle, population, bus):
    return Orchestrator(
        dispatcher, make_work_cycle(scripted_worker()), governance, cycle, population, bus=bus
    )


async def _assert_consistent(store):
    async with store.transaction() as tx:
        agents = {a.id: a for a in await tx.list_agents()}
        for task in await tx.list_tasks():
            if task.assigned_to_agent_id in agents:
                check_assignment(task, agents[task.assigned_to_agent_id])
        for agent in agents.values():
            if agent.status == AgentStatus.BUSY:
                assert agent.current_task_id is not None
            else:
                assert agent.current_task_id is None
            if agent.status == AgentStatus.OFFLINE:
                assert agent.existence_potential == 0


async def test_tasks_flow_through_the_pipeline(orchestrator, population, store, put, make_task, bus):
    assert await population.initialize_population() == 20
    tasks = [make_task(title=f"Feature {i}") for i in range(4)]
    await put(*tasks)

    for _ in range(3):
        await orchestrator.run_tick()
        await _assert_consistent(store)

    async with store.transaction() as tx:
        statuses = [t.status for t in await tx.list_tasks()]
        logs = [
            log
            for agent in await tx.list_agents()
            for log in await tx.recent_performance(agent.id, limit=100)
        ]
    assert statuses == [TaskStatus.COMPLETED] * 4
    # implementation, review and QA each leave a log per task
    assert len(logs) == 12
    assert bus.history("task.updated")


async def test_evolution_after_work_records_a_generation(orchestrator, population, store, put, make_task):
    await population.initialize_population()
    await put(*(make_task(title=f"Feature {i}") for i in range(2)))
    for _ in range(3):
        await orchestrator.run_tick()

    result = await orchestrator.run_evolution_once()

    assert result is not None
    assert result.generation_number == 1
    async with store.transaction() as tx:
        generations = await tx.list_generations()
        living = await tx.living_agents()
    assert [g.generation_number for g in generations] == [1]
    assert len(living) == 20 + len(result.bred) - len(result.terminated)
    await _assert_consistent(store)
