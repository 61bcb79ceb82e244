"""Tests for the orchestrator."""

import asyncio

import pytest

from evoteam.orchestrator import DriverIntervals, Orchestrator
from evoteam.types import ExecutionMode, Role, TaskStatus


@pytest.fixture
def make_orchestrator(dispatcher, make_work_cycle, scripted_worker, governance, cycle, population, bus):
    def _factory(worker=None, **kwargs) -> Orchestrator:
        return Orchestrator(
            dispatcher,
            make_work_cycle(worker or scripted_worker()),
            governance,
            cycle,
            population,
            bus=bus,
            **kwargs,
        )
    return _factory


def test_orchestrator_init(make_orchestrator):
    orchestrator = make_orchestrator()
    assert not orchestrator.is_running
    assert orchestrator.passes == {
        "dispatch": 0, "work": 0, "governance": 0, "evolution": 0, "scaling": 0,
    }


async def test_tick_moves_a_task_forward(make_orchestrator, make_agent, make_task, put, fetch):
    task = make_task()
    await put(make_agent(role=Role.MID_DEV), task)
    orchestrator = make_orchestrator()

    await orchestrator.run_tick()

    assert (await fetch(task)).status == TaskStatus.IN_REVIEW
    assert orchestrator.passes["dispatch"] == 1
    assert orchestrator.passes["work"] == 1
    assert orchestrator.passes["governance"] == 1


async def test_failing_pass_is_contained(make_orchestrator, bus, monkeypatch):
    orchestrator = make_orchestrator()

    async def broken():
        raise RuntimeError("database is locked")

    monkeypatch.setattr(orchestrator.dispatcher, "dispatch", broken)
    result = await orchestrator.run_dispatch_once()

    assert result is None
    assert orchestrator.failures["dispatch"] == 1
    error = bus.history("orchestrator.driver_error")[0]
    assert error.data == {"driver": "dispatch", "error": "database is locked"}


async def test_overlapping_pass_is_skipped(make_orchestrator, monkeypatch):
    orchestrator = make_orchestrator()
    release = asyncio.Event()

    async def slow(mode=ExecutionMode.LIVE):
        await release.wait()

    monkeypatch.setattr(orchestrator.governance, "run_once", slow)
    first = asyncio.create_task(orchestrator.run_governance_once())
    await asyncio.sleep(0)

    assert await orchestrator.run_governance_once() is None

    release.set()
    await first
    assert orchestrator.passes["governance"] == 1


async def test_dry_run_mode_reaches_the_drivers(make_orchestrator, make_agent, put, fetch):
    dying = make_agent(existence_potential=2.0)
    await put(dying, make_agent())
    orchestrator = make_orchestrator(mode=ExecutionMode.DRY_RUN)

    result = await orchestrator.run_evolution_once()

    assert result.terminated == [dying.id]
    assert (await fetch(dying)).is_alive


async def test_scaling_pass(make_orchestrator, make_task, put):
    await put(*[make_task(title=f"task {i}") for i in range(4)])
    orchestrator = make_orchestrator()

    result = await orchestrator.run_scaling_once()

    assert result.action == "SCALE_UP_SPAWNED_5"


async def test_start_stop(make_orchestrator, bus):
    orchestrator = make_orchestrator(intervals=DriverIntervals(
        dispatch=0.01, work=0.01, governance=0.01, evolution=0.01, scaling=0.01,
    ))

    await orchestrator.start()
    await orchestrator.start()  # idempotent
    assert orchestrator.is_running
    await asyncio.sleep(0.05)
    await orchestrator.stop()

    assert not orchestrator.is_running
    assert orchestrator.passes["dispatch"] >= 1
    assert bus.history("orchestrator.*")[0].topic == "orchestrator.stopped"
