"""Tests for the task dispatcher."""

from datetime import timedelta

import pytest

from evoteam.config import DispatchConfig
from evoteam.dispatch.dispatcher import (
    DEADLOCK_REASON,
    DispatchOutcome,
    TaskDispatcher,
    route_by_complexity,
    select_candidate,
)
from evoteam.roles import acceptable_roles
from evoteam.types import AgentStatus, Role, Task, TaskStatus, utcnow


def _task(required_role: str, project_id: str = "web") -> Task:
    return Task(title="t", required_role=required_role, project_id=project_id)


# ── Candidate tiers ──


def test_project_affinity_beats_higher_e(make_agent):
    stranger = make_agent(existence_potential=95.0, project_id="api")
    regular = make_agent(existence_potential=60.0, project_id="web")
    task = _task("MidDev")

    picked = select_candidate(task, acceptable_roles("MidDev"), [stranger, regular])

    assert picked.id == regular.id


def test_highest_e_then_score_within_a_tier(make_agent):
    a = make_agent(existence_potential=80.0, score=40.0)
    b = make_agent(existence_potential=80.0, score=70.0)
    c = make_agent(existence_potential=75.0, score=99.0)
    task = _task("MidDev")

    assert select_candidate(task, acceptable_roles("MidDev"), [a, b, c]).id == b.id


def test_loose_match_on_specialization(make_agent):
    designer = make_agent(role=Role.DESIGNER, specialization="Frontend")
    task = _task("FrontendDev")

    assert select_candidate(task, acceptable_roles("FrontendDev"), [designer]).id == designer.id


def test_any_developer_as_last_resort(make_agent):
    junior = make_agent(role=Role.JUNIOR_DEV, specialization="General")
    task = _task("BackendDev")

    assert select_candidate(task, acceptable_roles("BackendDev"), [junior]).id == junior.id


def test_no_candidate(make_agent):
    qa = make_agent(role=Role.QA, specialization="Testing")
    task = _task("Architect")
    assert select_candidate(task, acceptable_roles("Architect"), [qa]) is None


@pytest.mark.parametrize("required_role, complexity, expected", [
    ("TeamLead", 10, "JuniorDev"),
    ("Architect", 19.9, "JuniorDev"),
    ("Architect", 20, "Architect"),
    ("MidDev", 81, "Architect"),
    ("junior_dev", 95, "Architect"),
    ("MidDev", 80, "MidDev"),
    ("SeniorDev", 95, "SeniorDev"),
])
def test_route_by_complexity(required_role, complexity, expected):
    task = Task(title="t", required_role=required_role, complexity_score=complexity)
    assert route_by_complexity(task, DispatchConfig()) == expected


# ── Dispatch passes ──


async def test_frontend_dev_with_only_mid_devs(dispatcher, make_agent, make_task, put, fetch):
    mid = make_agent(role=Role.MID_DEV)
    task = make_task(required_role="FrontendDev")
    await put(mid, make_agent(role=Role.QA), task)

    report = await dispatcher.dispatch()

    assert report.assigned == {task.id: mid.id}
    stored = await fetch(task)
    assert stored.status == TaskStatus.ASSIGNED
    assert stored.owner_agent_id == mid.id
    agent = await fetch(mid)
    assert agent.status == AgentStatus.BUSY
    assert agent.current_task_id == task.id
    assert agent.project_id == task.project_id


async def test_unknown_role_blocks_the_task(dispatcher, make_agent, make_task, put, fetch):
    task = make_task(required_role="Astronaut")
    await put(make_agent(), task)

    report = await dispatcher.dispatch()

    assert report.blocked == [task.id]
    stored = await fetch(task)
    assert stored.status == TaskStatus.BLOCKED
    assert "Astronaut" in stored.blocked_reason


async def test_paused_project_is_skipped(dispatcher, budget, make_agent, make_task, put, fetch):
    task = make_task(project_id="web")
    await put(make_agent(), task)
    await budget.pause_project("web", "manual")

    report = await dispatcher.dispatch()

    assert report.paused == [task.id]
    assert (await fetch(task)).status == TaskStatus.QUEUED


async def test_task_without_candidate_stays_queued(dispatcher, make_agent, make_task, put, fetch):
    task = make_task(required_role="Architect")
    await put(make_agent(role=Role.QA), task)

    report = await dispatcher.dispatch()

    assert report.unmatched == [task.id]
    assert (await fetch(task)).status == TaskStatus.QUEUED


async def test_each_agent_takes_one_task_per_pass(dispatcher, make_agent, make_task, put):
    await put(make_agent(), *[make_task(title=f"task {i}") for i in range(3)])

    report = await dispatcher.dispatch()

    assert len(report.assigned) == 1
    assert len(report.unmatched) == 2


async def test_batch_size_limits_a_pass(store, bus, make_agent, make_task, put):
    dispatcher = TaskDispatcher(store, bus, config=DispatchConfig(batch_size=2))
    await put(*[make_agent() for _ in range(5)])
    await put(*[make_task(title=f"task {i}") for i in range(5)])

    report = await dispatcher.dispatch()

    assert report.examined == 2


async def test_one_failing_task_does_not_stop_the_pass(
    dispatcher, make_agent, make_task, put, monkeypatch
):
    bad = make_task(title="bad")
    good = make_task(title="good")
    await put(make_agent(), bad, good)
    original = dispatcher.dispatch_task

    async def flaky(task_id):
        if task_id == bad.id:
            raise RuntimeError("store hiccup")
        return await original(task_id)

    monkeypatch.setattr(dispatcher, "dispatch_task", flaky)
    report = await dispatcher.dispatch()

    assert report.failed == [bad.id]
    assert good.id in report.assigned


async def test_non_queued_task_is_skipped(dispatcher, make_task, put):
    task = make_task(status=TaskStatus.COMPLETED)
    await put(task)
    assert await dispatcher.dispatch_task(task.id) == (DispatchOutcome.SKIPPED, None)


async def test_owner_survives_redispatch(dispatcher, make_agent, make_task, put, fetch):
    task = make_task(owner_agent_id="original-owner")
    agent = make_agent()
    await put(agent, task)

    await dispatcher.dispatch()

    stored = await fetch(task)
    assert stored.owner_agent_id == "original-owner"
    assert stored.assigned_to_agent_id == agent.id


# ── Stale recovery ──


async def test_stale_in_progress_task_is_requeued(dispatcher, make_agent, make_task, put, fetch):
    stale = make_task(status=TaskStatus.IN_PROGRESS, updated_at=utcnow() - timedelta(hours=1))
    fresh = make_task(status=TaskStatus.IN_PROGRESS)
    worker = make_agent(status=AgentStatus.BUSY, current_task_id=stale.id)
    busy = make_agent(status=AgentStatus.BUSY, current_task_id=fresh.id)
    stale.assigned_to_agent_id = worker.id
    fresh.assigned_to_agent_id = busy.id
    await put(worker, busy, stale, fresh)

    recovered = await dispatcher.recover_stale()

    assert recovered == [stale.id]
    requeued = await fetch(stale)
    assert requeued.status == TaskStatus.QUEUED
    assert requeued.assigned_to_agent_id is None
    freed = await fetch(worker)
    assert freed.status == AgentStatus.IDLE
    assert freed.current_task_id is None
    assert (await fetch(fresh)).status == TaskStatus.IN_PROGRESS


async def test_stale_cutoff_uses_the_given_clock(dispatcher, make_task, put):
    task = make_task(status=TaskStatus.IN_PROGRESS)
    await put(task)

    assert await dispatcher.recover_stale() == []
    assert await dispatcher.recover_stale(now=utcnow() + timedelta(minutes=11)) == [task.id]


async def test_reclaims_stale_review_held_by_a_pool_agent(
    dispatcher, make_agent, make_task, put, fetch
):
    old = utcnow() - timedelta(hours=1)
    qa_task = make_task(status=TaskStatus.IN_QA, updated_at=old)
    routed = make_task(
        status=TaskStatus.IN_REVIEW, assigned_to_agent_id="team_lead", updated_at=old,
    )
    qa = make_agent(role=Role.QA, status=AgentStatus.BUSY, current_task_id=qa_task.id)
    qa_task.assigned_to_agent_id = qa.id
    await put(qa, qa_task, routed)

    assert await dispatcher.recover_stale() == [qa_task.id]

    reclaimed = await fetch(qa_task)
    assert reclaimed.status == TaskStatus.IN_QA
    assert reclaimed.assigned_to_agent_id is None
    assert (await fetch(qa)).status == AgentStatus.IDLE
    assert (await fetch(routed)).assigned_to_agent_id == "team_lead"


# ── Complexity routing and backpressure ──


async def test_easy_lead_task_goes_to_a_junior(dispatcher, make_agent, make_task, put):
    lead = make_agent(role=Role.TEAM_LEAD)
    junior = make_agent(role=Role.JUNIOR_DEV)
    task = make_task(required_role="TeamLead", complexity_score=10)
    await put(lead, junior, task)

    report = await dispatcher.dispatch()

    assert report.assigned == {task.id: junior.id}


async def test_hard_task_waits_for_an_architect(dispatcher, make_agent, make_task, put, fetch):
    task = make_task(required_role="MidDev", complexity_score=90)
    await put(make_agent(role=Role.MID_DEV), task)

    report = await dispatcher.dispatch()

    assert report.unmatched == [task.id]
    assert (await fetch(task)).status == TaskStatus.QUEUED


@pytest.fixture
def busy_architects(make_agent, make_task):
    def _factory(count: int) -> list:
        items = []
        for i in range(count):
            task = make_task(title=f"design {i}", required_role="Architect",
                             status=TaskStatus.IN_PROGRESS)
            architect = make_agent(role=Role.ARCHITECT, status=AgentStatus.BUSY,
                                   current_task_id=task.id)
            task.assigned_to_agent_id = architect.id
            items += [architect, task]
        return items
    return _factory


async def test_swamped_architects_hand_down_to_a_team_lead(
    dispatcher, busy_architects, make_agent, make_task, put
):
    lead = make_agent(role=Role.TEAM_LEAD)
    await put(*busy_architects(6), lead)
    task = make_task(required_role="Architect")
    await put(task)

    report = await dispatcher.dispatch()

    assert report.assigned == {task.id: lead.id}


async def test_no_backpressure_at_the_queue_limit(
    dispatcher, busy_architects, make_agent, make_task, put
):
    await put(*busy_architects(5), make_agent(role=Role.TEAM_LEAD))
    task = make_task(required_role="Architect")
    await put(task)

    report = await dispatcher.dispatch()

    assert report.unmatched == [task.id]


# ── Deadlock detection ──


async def test_repeatedly_rejected_task_is_frozen_in_the_war_room(
    dispatcher, bus, make_task, put, fetch
):
    stuck = make_task(status=TaskStatus.NEEDS_REVISION, retry_count=3)
    retrying = make_task(status=TaskStatus.NEEDS_REVISION, retry_count=2)
    await put(stuck, retrying)

    report = await dispatcher.dispatch()

    assert report.deadlocked == [stuck.id]
    frozen = await fetch(stuck)
    assert frozen.status == TaskStatus.WAR_ROOM
    assert frozen.is_deadlocked
    assert frozen.blocked_reason == DEADLOCK_REASON
    assert (await fetch(retrying)).status == TaskStatus.NEEDS_REVISION
    assert bus.history("task.updated")[0].data["status"] == "WAR_ROOM"
