"""Task dispatcher — match queued tasks to idle agents.

Candidates are searched in tiers and the first non-empty tier wins:

  1. idle agents in the acceptable role set who last worked this project
  2. idle agents in the acceptable role set
  3. idle agents whose role or specialization loosely matches the request
  4. for developer requests, any idle developer

Within a tier the agent with the most E (then the best score) is chosen.

Before the search the request is routed by complexity: easy work asked of
a TeamLead or Architect goes to a JuniorDev, hard work asked of a Junior or
MidDev goes to an Architect. When no executive is free and more than
`executive_queue_limit` tasks are already in progress with that role, the
request drops one rung (Architect to TeamLead, TeamLead to SeniorDev).

Each pass ends by freezing tasks stuck in the revision loop in the war room.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from evoteam.config import DispatchConfig
from evoteam.events.bus import EventBus
from evoteam.evolution.population import rank_key
from evoteam.exceptions import UnknownRoleError
from evoteam.kernel.state_machine import transition
from evoteam.policy.budget import BudgetLimiter
from evoteam.roles import (
    DEVELOPER_ROLES,
    acceptable_roles,
    is_developer_request,
    loosely_matches,
    resolve_role,
)
from evoteam.store.base import BaseStore, StoreTransaction, check_assignment
from evoteam.types import (
    Agent,
    AgentId,
    AgentStatus,
    Role,
    Task,
    TaskId,
    TaskStatus,
    utcnow,
)

logger = structlog.get_logger()

DEADLOCK_REASON = "Infinite loop detected. War Room activated."

EXECUTIVE_ROLES = frozenset({Role.ARCHITECT, Role.TEAM_LEAD})
_JUNIOR_TRACK = frozenset({Role.JUNIOR_DEV, Role.MID_DEV})
_DOWNGRADE = {Role.ARCHITECT: Role.TEAM_LEAD, Role.TEAM_LEAD: Role.SENIOR_DEV}
_REVIEW_STATUSES = (TaskStatus.IN_REVIEW, TaskStatus.IN_QA)


class DispatchOutcome(str, Enum):
    ASSIGNED = "assigned"
    BLOCKED = "blocked"
    NO_CANDIDATE = "no_candidate"
    SKIPPED = "skipped"  # no longer queued when we got to it


class DispatchReport(BaseModel):
    examined: int = 0
    assigned: dict[TaskId, AgentId] = Field(default_factory=dict)
    blocked: list[TaskId] = Field(default_factory=list)
    paused: list[TaskId] = Field(default_factory=list)
    unmatched: list[TaskId] = Field(default_factory=list)
    failed: list[TaskId] = Field(default_factory=list)
    deadlocked: list[TaskId] = Field(default_factory=list)


def route_by_complexity(task: Task, config: DispatchConfig) -> str:
    """The role request to staff `task` with; mid-range work keeps its own."""
    requested = resolve_role(task.required_role)
    if task.complexity_score < config.fast_track_below and requested in EXECUTIVE_ROLES:
        return Role.JUNIOR_DEV.value
    if task.complexity_score > config.escalate_above and requested in _JUNIOR_TRACK:
        return Role.ARCHITECT.value
    return task.required_role


def select_candidate(
    task: Task,
    roles: tuple[Role, ...],
    idle: list[Agent],
    request: str | None = None,
) -> Agent | None:
    """Best idle agent for `task`, or None.

    `request` overrides the task's own role request for the loose tiers.
    """
    request = request or task.required_role
    in_set = [a for a in idle if a.role in roles]
    tiers = [
        [a for a in in_set if a.project_id == task.project_id],
        in_set,
        [a for a in idle if loosely_matches(request, a.role, a.specialization)],
    ]
    if is_developer_request(request):
        tiers.append([a for a in idle if a.role in DEVELOPER_ROLES])
    for tier in tiers:
        if tier:
            return min(tier, key=rank_key)
    return None


async def executive_load(tx: StoreTransaction, role: Role) -> int:
    """In-progress tasks currently held by agents of `role`."""
    holders = {a.id for a in await tx.list_agents([AgentStatus.BUSY]) if a.role == role}
    return sum(
        1 for t in await tx.list_tasks([TaskStatus.IN_PROGRESS])
        if t.assigned_to_agent_id in holders
    )


class TaskDispatcher:
    def __init__(
        self,
        store: BaseStore,
        bus: EventBus,
        budget: BudgetLimiter | None = None,
        config: DispatchConfig | None = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.budget = budget
        self.config = config or DispatchConfig()

    async def dispatch(self) -> DispatchReport:
        """One pass over the oldest queued tasks."""
        report = DispatchReport()
        async with self.store.transaction() as tx:
            queued = await tx.list_tasks([TaskStatus.QUEUED], limit=self.config.batch_size)

        for task in queued:
            report.examined += 1
            if self.budget is not None and self.budget.is_paused(task.project_id):
                logger.debug("dispatch_skip_paused", task_id=task.id, project_id=task.project_id)
                report.paused.append(task.id)
                continue
            try:
                outcome, agent_id = await self.dispatch_task(task.id)
            except Exception as e:
                report.failed.append(task.id)
                logger.error("dispatch_task_failed", task_id=task.id, error=str(e))
                continue

            if outcome == DispatchOutcome.ASSIGNED:
                report.assigned[task.id] = agent_id
            elif outcome == DispatchOutcome.BLOCKED:
                report.blocked.append(task.id)
            elif outcome == DispatchOutcome.NO_CANDIDATE:
                report.unmatched.append(task.id)

        report.deadlocked = await self.detect_deadlocks()

        logger.info(
            "dispatch_pass_complete",
            examined=report.examined,
            assigned=len(report.assigned),
            blocked=len(report.blocked),
            unmatched=len(report.unmatched),
            deadlocked=len(report.deadlocked),
        )
        return report

    async def dispatch_task(
        self, task_id: TaskId
    ) -> tuple[DispatchOutcome, AgentId | None]:
        """Try to assign one task. The read and both writes share a transaction."""
        agent = None
        async with self.store.transaction() as tx:
            task = await tx.require_task(task_id)
            if task.status != TaskStatus.QUEUED:
                return DispatchOutcome.SKIPPED, None

            try:
                request = route_by_complexity(task, self.config)
            except UnknownRoleError as e:
                transition(task, TaskStatus.BLOCKED)
                task.blocked_reason = str(e)
                await tx.save_task(task)
                outcome = DispatchOutcome.BLOCKED
            else:
                idle = [a for a in await tx.list_agents([AgentStatus.IDLE]) if a.is_alive]
                if request != task.required_role:
                    logger.info(
                        "dispatch_complexity_routed",
                        task_id=task.id,
                        complexity=task.complexity_score,
                        requested=task.required_role,
                        routed_to=request,
                    )
                agent = select_candidate(task, acceptable_roles(request), idle, request)
                if agent is None:
                    agent = await self._relieve_backpressure(tx, task, request, idle)
                if agent is None:
                    logger.debug(
                        "dispatch_no_candidate",
                        task_id=task.id,
                        required_role=task.required_role,
                    )
                    return DispatchOutcome.NO_CANDIDATE, None

                transition(task, TaskStatus.ASSIGNED)
                task.assigned_to_agent_id = agent.id
                task.owner_agent_id = task.owner_agent_id or agent.id
                agent.status = AgentStatus.BUSY
                agent.current_task_id = task.id
                agent.project_id = task.project_id
                agent.last_active_at = utcnow()
                check_assignment(task, agent)
                await tx.save_task(task)
                await tx.save_agent(agent)
                outcome = DispatchOutcome.ASSIGNED

        if outcome == DispatchOutcome.BLOCKED:
            logger.error(
                "dispatch_unknown_role",
                task_id=task.id,
                required_role=task.required_role,
            )
            await self.bus.task_updated(task, source="dispatcher")
            return outcome, None

        logger.info(
            "task_dispatched",
            task_id=task.id,
            agent_id=agent.id,
            role=agent.role.value,
            required_role=task.required_role,
        )
        await self.bus.task_updated(task, source="dispatcher")
        await self.bus.agent_updated(agent, source="dispatcher")
        return outcome, agent.id

    async def _relieve_backpressure(
        self, tx: StoreTransaction, task: Task, request: str, idle: list[Agent]
    ) -> Agent | None:
        """An idle agent one rung down when the requested executives are swamped."""
        role = resolve_role(request)
        fallback = _DOWNGRADE.get(role)
        if fallback is None:
            return None
        depth = await executive_load(tx, role)
        if depth <= self.config.executive_queue_limit:
            return None
        logger.warning(
            "dispatch_backpressure",
            task_id=task.id,
            role=role.value,
            queue_depth=depth,
            downgraded_to=fallback.value,
        )
        candidates = [a for a in idle if a.role == fallback]
        return min(candidates, key=rank_key) if candidates else None

    async def detect_deadlocks(self) -> list[TaskId]:
        """Freeze tasks rejected too many times in the war room."""
        frozen: list[Task] = []
        async with self.store.transaction() as tx:
            for task in await tx.list_tasks([TaskStatus.NEEDS_REVISION]):
                if task.is_deadlocked or task.retry_count <= self.config.deadlock_retry_limit:
                    continue
                transition(task, TaskStatus.WAR_ROOM)
                task.is_deadlocked = True
                task.blocked_reason = DEADLOCK_REASON
                task.assigned_to_agent_id = None
                await tx.save_task(task)
                frozen.append(task)

        if frozen:
            logger.warning("deadlocks_detected", count=len(frozen))
        for task in frozen:
            logger.warning("task_frozen_in_war_room", task_id=task.id, retries=task.retry_count)
            await self.bus.task_updated(task, source="dispatcher")
        return [t.id for t in frozen]

    async def recover_stale(self, now: datetime | None = None) -> list[TaskId]:
        """Reclaim work nobody has touched for too long.

        IN_PROGRESS tasks go back to the queue. Review and QA tasks keep
        their stage and only lose the pool agent holding them; tasks routed
        to an outside identity are left alone.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.config.stale_after_seconds)
        recovered: list[Task] = []
        freed: list[Agent] = []
        async with self.store.transaction() as tx:
            for task in await tx.list_tasks([TaskStatus.IN_PROGRESS, *_REVIEW_STATUSES]):
                if task.updated_at >= cutoff:
                    continue
                agent = None
                if task.assigned_to_agent_id:
                    agent = await tx.get_agent(task.assigned_to_agent_id)
                if task.status in _REVIEW_STATUSES and agent is None:
                    continue
                if agent and agent.current_task_id == task.id:
                    agent.current_task_id = None
                    if agent.status == AgentStatus.BUSY:
                        agent.status = AgentStatus.IDLE
                    await tx.save_agent(agent)
                    freed.append(agent)
                if task.status == TaskStatus.IN_PROGRESS:
                    transition(task, TaskStatus.QUEUED)
                else:
                    task.updated_at = now
                task.assigned_to_agent_id = None
                await tx.save_task(task)
                recovered.append(task)

        for task in recovered:
            logger.warning("stale_task_reclaimed", task_id=task.id, status=task.status.value)
            await self.bus.task_updated(task, source="dispatcher")
        for agent in freed:
            await self.bus.agent_updated(agent, source="dispatcher")
        return [t.id for t in recovered]
