"""Tests for the population manager."""

import pytest

from evoteam.types import (
    AgentStatus,
    ExecutionMode,
    GovernanceAction,
    Role,
    TaskStatus,
)


async def test_request_agent_picks_highest_e(population, make_agent, make_task, put, fetch):
    weak = make_agent(existence_potential=60.0)
    strong = make_agent(existence_potential=90.0)
    task = make_task()
    await put(weak, strong, task)

    agent = await population.request_agent("MidDev", task.id)

    assert agent.id == strong.id
    assert agent.status == AgentStatus.BUSY
    stored = await fetch(task)
    assert stored.status == TaskStatus.ASSIGNED
    assert stored.assigned_to_agent_id == strong.id


async def test_request_agent_falls_back_to_any_developer(
    population, make_agent, make_task, put, fetch
):
    junior = make_agent(role=Role.JUNIOR_DEV)
    task = make_task(required_role="FrontendDev")
    await put(junior, make_agent(role=Role.QA), task)

    agent = await population.request_agent("FrontendDev", task.id)

    assert agent.id == junior.id
    assert agent.current_task_id == task.id
    assert (await fetch(task)).assigned_to_agent_id == junior.id


async def test_request_agent_returns_none_without_match(
    population, make_agent, make_task, put, fetch
):
    agent = make_agent(role=Role.MID_DEV)
    task = make_task(required_role="Designer")
    await put(agent, task)

    assert await population.request_agent("Designer", task.id) is None
    assert (await fetch(agent)).status == AgentStatus.IDLE
    assert (await fetch(task)).status == TaskStatus.QUEUED


async def test_release_pays_metabolic_cost(population, make_agent, put, fetch):
    agent = make_agent(status=AgentStatus.BUSY, existence_potential=80.0)
    await put(agent)

    released = await population.release_agent(agent.id, elapsed_seconds=600)

    assert released.status == AgentStatus.IDLE
    assert released.existence_potential == pytest.approx(79.0)
    assert (await fetch(agent)).current_task_id is None


async def test_release_below_floor_terminates_and_requeues(
    population, store, make_agent, make_task, put, fetch
):
    task = make_task(status=TaskStatus.IN_PROGRESS)
    agent = make_agent(
        status=AgentStatus.BUSY, existence_potential=10.5, current_task_id=task.id,
    )
    task.assigned_to_agent_id = agent.id
    await put(agent, task)

    released = await population.release_agent(agent.id, elapsed_seconds=600)

    assert released.status == AgentStatus.OFFLINE
    requeued = await fetch(task)
    assert requeued.status == TaskStatus.QUEUED
    assert requeued.assigned_to_agent_id is None
    async with store.transaction() as tx:
        events = await tx.list_governance_events(agent_id=agent.id)
    assert events[0].action == GovernanceAction.TERMINATE
    assert events[0].reason == "LOW_E"


async def test_dry_run_release_below_floor_only_frees_the_agent(
    population, store, bus, make_agent, make_task, put, fetch
):
    task = make_task(status=TaskStatus.NEEDS_REVISION)
    agent = make_agent(
        status=AgentStatus.BUSY, existence_potential=10.2, current_task_id=task.id,
    )
    await put(agent, task)

    released = await population.release_agent(
        agent.id, elapsed_seconds=600, mode=ExecutionMode.DRY_RUN
    )

    stored = await fetch(agent)
    assert released.status == AgentStatus.IDLE
    assert stored.status == AgentStatus.IDLE
    assert stored.current_task_id is None
    assert stored.existence_potential == pytest.approx(10.2)
    assert (await fetch(task)).status == TaskStatus.NEEDS_REVISION
    async with store.transaction() as tx:
        assert await tx.list_governance_events(agent_id=agent.id) == []
    assert "would terminate" in bus.history("log")[0].data["message"]


async def test_terminate_harvests_successful_agents(population, store, make_agent, put):
    veteran = make_agent(success_count=8, specialization="Backend")
    await put(veteran)

    assert await population.terminate_agent(veteran.id, "LOW_SCORE")

    async with store.transaction() as tx:
        nuggets = await tx.list_nuggets(["Backend"])
    assert len(nuggets) == 1
    assert nuggets[0].source_agent_id == veteran.id


async def test_terminate_dry_run_changes_nothing(population, make_agent, put, fetch):
    agent = make_agent()
    await put(agent)

    removed = await population.terminate_agent(agent.id, "LOW_E", ExecutionMode.DRY_RUN)

    assert removed is False
    assert (await fetch(agent)).status == AgentStatus.IDLE


async def test_terminate_twice_is_a_noop(population, make_agent, put):
    agent = make_agent()
    await put(agent)
    assert await population.terminate_agent(agent.id, "LOW_E")
    assert not await population.terminate_agent(agent.id, "LOW_E")


def test_offspring_inherits_from_single_parent(population, make_agent):
    parent = make_agent(role=Role.SENIOR_DEV, generation=3, specialization="Backend")

    child = population.build_offspring(parent)

    assert child.generation == 4
    assert child.parent_id == parent.id
    assert child.role == Role.SENIOR_DEV
    assert child.existence_potential == 80.0
    assert child.genome.parents == (parent.genome.id,)


def test_target_size_follows_workload(population):
    assert population.target_size(40) == 20
    assert population.target_size(5) == 10
    assert population.target_size(500) == 50


async def test_scale_up_breeds_from_elites(population, make_agent, make_task, put):
    await put(*[make_agent(existence_potential=90.0) for _ in range(10)])
    await put(*[make_task(title=f"task {i}") for i in range(40)])

    result = await population.scale_population()

    assert result.target_size == 20
    assert result.action == "SCALE_UP_BRED_5"
    assert len(result.created) == 5
    assert (await population.stats()).alive_agents == 15


async def test_scale_up_spawns_when_no_elites(population, make_agent, make_task, put):
    await put(*[make_agent(existence_potential=40.0) for _ in range(10)])
    await put(*[make_task(title=f"task {i}") for i in range(24)])

    result = await population.scale_population()

    assert result.target_size == 12
    assert result.action == "SCALE_UP_SPAWNED_2"
    stats = await population.stats()
    assert stats.role_distribution == {"MidDev": 11, "SeniorDev": 1}


async def test_scale_up_dry_run_creates_nothing(population, make_agent, make_task, put):
    await put(*[make_task(title=f"task {i}") for i in range(40)])

    result = await population.scale_population(ExecutionMode.DRY_RUN)

    assert result.action == "DRY_RUN_SCALE_UP_5"
    assert not result.scaled
    assert (await population.stats()).total_agents == 0


async def test_over_capacity_never_kills(population, make_agent, make_task, put):
    await put(*[make_agent() for _ in range(60)])
    await put(*[make_task(title=f"task {i}") for i in range(5)])

    result = await population.scale_population()

    assert result.action == "SCALE_DOWN_NATURAL"
    assert not result.scaled
    assert (await population.stats()).alive_agents == 60


async def test_initialize_population_is_idempotent(population):
    created = await population.initialize_population()
    assert created == 20
    assert await population.initialize_population() == 0

    stats = await population.stats()
    assert stats.role_distribution["MidDev"] == 8
    assert stats.generation_distribution == {0: 20}
