"""Work cycle — drive assigned tasks through implementation, review and QA.

One pass picks up every task that has work waiting:

  ASSIGNED, NEEDS_REVISION   implementation (revisions prefer the owner)
  IN_REVIEW, unassigned      review by a reviewer-role agent
  IN_QA, unassigned          QA by a QA-role agent

The worker runs outside any store transaction. Its result is then
written back in one transaction: the task moves on, the agent is
rewarded, a performance log is appended. The agent is returned to the
pool afterwards, paying metabolic cost for the time it worked.
"""

from __future__ import annotations

import time
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from evoteam.config import BudgetConfig, WorkConfig
from evoteam.dispatch.worker import BaseWorker, WorkContext, WorkResult
from evoteam.events.bus import EventBus
from evoteam.evolution.existence import ExistenceModel
from evoteam.evolution.harvester import KnowledgeHarvester
from evoteam.evolution.population import PopulationManager, release_held_tasks
from evoteam.evolution.rewards import (
    RewardCalculator,
    RewardResult,
    cost_efficiency,
    time_efficiency,
)
from evoteam.evolution.specialization import GENERAL, SpecializationTracker
from evoteam.exceptions import BudgetExceededError, UnknownRoleError
from evoteam.kernel.state_machine import transition
from evoteam.policy.budget import BudgetLimiter
from evoteam.policy.confidence import ConfidenceRouter, RouteDecision
from evoteam.store.base import BaseStore, check_assignment
from evoteam.types import (
    Agent,
    AgentId,
    AgentStatus,
    ExecutionMode,
    PerformanceLog,
    PipelineStage,
    Task,
    TaskId,
    TaskStatus,
    utcnow,
)

logger = structlog.get_logger()

COST_BASELINE_WEIGHT = 0.2

_NEXT_ON_SUCCESS = {
    PipelineStage.IMPLEMENTATION: TaskStatus.IN_REVIEW,
    PipelineStage.REVIEW: TaskStatus.IN_QA,
    PipelineStage.QA: TaskStatus.COMPLETED,
}


class OutcomeKind(str, Enum):
    RAN = "ran"
    CAPPED = "capped"  # revision limit hit before the worker ran
    BLOCKED = "blocked"
    DISCARDED = "discarded"  # agent removed while working


class WorkOutcome(BaseModel):
    task_id: TaskId
    agent_id: AgentId | None = None
    stage: PipelineStage
    status: TaskStatus
    kind: OutcomeKind = OutcomeKind.RAN
    success: bool = False
    reward: RewardResult | None = None
    route: RouteDecision | None = None
    note: str = ""


class WorkReport(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    capped: list[TaskId] = Field(default_factory=list)
    blocked: list[TaskId] = Field(default_factory=list)
    routed: list[TaskId] = Field(default_factory=list)
    waiting: list[TaskId] = Field(default_factory=list)  # no agent free
    errors: list[TaskId] = Field(default_factory=list)
    outcomes: list[WorkOutcome] = Field(default_factory=list)


def revision_limit_message(task: Task) -> str:
    return f"Revision limit reached ({task.revision_count}/{task.max_revisions})"


def track_session_cost(agent: Agent, cost_usd: float) -> None:
    """Make `cost_usd` the agent's current session cost.

    The previous session is folded into the baseline first, so the
    circuit breaker compares the latest session against the history
    before it.
    """
    previous = agent.session_cost
    if previous:
        if agent.cost_baseline is None:
            agent.cost_baseline = previous
        else:
            agent.cost_baseline += COST_BASELINE_WEIGHT * (previous - agent.cost_baseline)
    agent.session_cost = cost_usd


class WorkCycle:
    def __init__(
        self,
        store: BaseStore,
        bus: EventBus,
        population: PopulationManager,
        worker: BaseWorker,
        router: ConfidenceRouter,
        harvester: KnowledgeHarvester,
        budget: BudgetLimiter | None = None,
        existence: ExistenceModel | None = None,
        rewards: RewardCalculator | None = None,
        specialization: SpecializationTracker | None = None,
        config: WorkConfig | None = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.population = population
        self.worker = worker
        self.router = router
        self.harvester = harvester
        self.budget = budget
        self.existence = existence or population.existence
        self.rewards = rewards or RewardCalculator(self.existence)
        self.specialization = specialization or SpecializationTracker()
        self.config = config or WorkConfig()

    @property
    def _task_cost_ceiling(self) -> float:
        return (self.budget.config if self.budget else BudgetConfig()).task_limit

    # ── Pass ──

    async def run_once(self, mode: ExecutionMode = ExecutionMode.LIVE) -> WorkReport:
        report = WorkReport()
        for task_id, stage in await self.pending_work():
            try:
                outcome = await self.work_task(task_id, stage, mode)
            except Exception as e:
                report.errors.append(task_id)
                logger.error("work_task_failed", task_id=task_id, stage=stage.value, error=str(e))
                continue
            if outcome is None:
                report.waiting.append(task_id)
                continue

            report.outcomes.append(outcome)
            if outcome.kind == OutcomeKind.CAPPED:
                report.capped.append(task_id)
                continue
            if outcome.kind == OutcomeKind.BLOCKED:
                report.blocked.append(task_id)
                continue
            if outcome.kind == OutcomeKind.DISCARDED:
                continue
            report.processed += 1
            if outcome.success:
                report.succeeded += 1
            else:
                report.failed += 1
            if outcome.route is not None:
                report.routed.append(task_id)

        logger.info(
            "work_pass_complete",
            processed=report.processed,
            succeeded=report.succeeded,
            failed=report.failed,
            capped=len(report.capped),
            blocked=len(report.blocked),
            routed=len(report.routed),
        )
        return report

    async def pending_work(self) -> list[tuple[TaskId, PipelineStage]]:
        """Tasks with a stage waiting to run, oldest first, up to the batch size."""
        async with self.store.transaction() as tx:
            implementation = await tx.list_tasks(
                [TaskStatus.ASSIGNED, TaskStatus.NEEDS_REVISION]
            )
            review = await tx.list_tasks([TaskStatus.IN_REVIEW])
            qa = await tx.list_tasks([TaskStatus.IN_QA])

        work = [(t, PipelineStage.IMPLEMENTATION) for t in implementation]
        work += [(t, PipelineStage.REVIEW) for t in review if not t.assigned_to_agent_id]
        work += [(t, PipelineStage.QA) for t in qa if not t.assigned_to_agent_id]
        work.sort(key=lambda item: item[0].updated_at)
        return [(t.id, stage) for t, stage in work[: self.config.batch_size]]

    # ── One task ──

    async def work_task(
        self,
        task_id: TaskId,
        stage: PipelineStage,
        mode: ExecutionMode = ExecutionMode.LIVE,
    ) -> WorkOutcome | None:
        """Run one stage of one task. None when no agent could be found."""
        async with self.store.transaction() as tx:
            task = await tx.require_task(task_id)

        if task.revision_count >= task.max_revisions:
            return await self._close(
                task_id, stage, TaskStatus.FAILED, revision_limit_message(task),
                OutcomeKind.CAPPED,
            )

        try:
            agent = await self._checkout(task, stage)
        except UnknownRoleError as e:
            return await self._close(
                task_id, stage, TaskStatus.BLOCKED, str(e), OutcomeKind.BLOCKED
            )
        if agent is None:
            return None

        if self.budget is not None:
            try:
                self.budget.require(task.project_id)
            except BudgetExceededError as e:
                return await self._close(
                    task_id, stage, TaskStatus.BLOCKED, str(e), OutcomeKind.BLOCKED
                )

        try:
            return await self._run(task_id, agent, stage, mode)
        except Exception:
            await self._abandon(task_id, agent.id)
            raise

    async def _run(
        self,
        task_id: TaskId,
        agent: Agent,
        stage: PipelineStage,
        mode: ExecutionMode,
    ) -> WorkOutcome:
        task = await self._start(task_id, agent.id, stage)
        ctx = WorkContext(
            agent=agent,
            task=task,
            stage=stage,
            urgency=self.existence.urgency(agent.existence_potential),
            inherited_knowledge=await self.harvester.relevant_knowledge(
                self.specialization.categorize(task), limit=self.config.knowledge_priors
            ),
        )

        started = time.monotonic()
        try:
            result = await self.worker.execute(ctx)
        except Exception as e:
            logger.warning("worker_raised", task_id=task_id, agent_id=agent.id, error=str(e))
            result = WorkResult(success=False, error=f"Worker error: {e}", quality_score=0.0)
        elapsed = result.execution_time_seconds or (time.monotonic() - started)

        return await self._finish(task_id, agent.id, stage, result, elapsed, mode)

    async def _abandon(self, task_id: TaskId, agent_id: AgentId) -> None:
        """Undo a checkout whose stage never completed so the task can be picked up again."""
        async with self.store.transaction() as tx:
            agent = await tx.get_agent(agent_id)
            if agent is None or agent.current_task_id != task_id:
                return
            released = await release_held_tasks(tx, agent)
            agent.status = AgentStatus.IDLE
            agent.current_task_id = None
            await tx.save_agent(agent)

        logger.warning("checkout_abandoned", task_id=task_id, agent_id=agent_id)
        await self.bus.agent_updated(agent, source="work")
        for task in released:
            await self.bus.task_updated(task, source="work")

    async def _checkout(self, task: Task, stage: PipelineStage) -> Agent | None:
        if stage == PipelineStage.REVIEW:
            return await self.population.request_agent(self.config.reviewer_role, task.id)
        if stage == PipelineStage.QA:
            return await self.population.request_agent(self.config.qa_role, task.id)
        if task.status == TaskStatus.ASSIGNED:
            async with self.store.transaction() as tx:
                agent = await tx.require_agent(task.assigned_to_agent_id or "")
                check_assignment(task, agent)
            return agent

        owner = await self._checkout_owner(task.id)
        if owner is not None:
            return owner
        return await self.population.request_agent(task.required_role, task.id)

    async def _checkout_owner(self, task_id: TaskId) -> Agent | None:
        """Give a revision back to the agent that wrote it, if that agent is free."""
        async with self.store.transaction() as tx:
            task = await tx.require_task(task_id)
            if not task.owner_agent_id:
                return None
            owner = await tx.get_agent(task.owner_agent_id)
            if owner is None or not owner.is_alive or owner.status != AgentStatus.IDLE:
                return None
            transition(task, TaskStatus.ASSIGNED)
            task.assigned_to_agent_id = owner.id
            owner.status = AgentStatus.BUSY
            owner.current_task_id = task.id
            owner.project_id = task.project_id
            owner.last_active_at = utcnow()
            await tx.save_task(task)
            await tx.save_agent(owner)
        logger.info("revision_returned_to_owner", task_id=task_id, agent_id=owner.id)
        return owner

    async def _start(self, task_id: TaskId, agent_id: AgentId, stage: PipelineStage) -> Task:
        async with self.store.transaction() as tx:
            task = await tx.require_task(task_id)
            if stage == PipelineStage.IMPLEMENTATION:
                transition(task, TaskStatus.IN_PROGRESS)
            else:
                task.updated_at = utcnow()
            await tx.save_task(task)
        await self.bus.task_updated(task, source="work")
        return task

    async def _close(
        self,
        task_id: TaskId,
        stage: PipelineStage,
        status: TaskStatus,
        reason: str,
        kind: OutcomeKind,
    ) -> WorkOutcome:
        """End a task without running the worker, freeing whoever holds it."""
        freed = None
        async with self.store.transaction() as tx:
            task = await tx.require_task(task_id)
            if task.assigned_to_agent_id:
                freed = await tx.get_agent(task.assigned_to_agent_id)
                if freed and freed.current_task_id == task.id:
                    freed.status = AgentStatus.IDLE
                    freed.current_task_id = None
                    await tx.save_agent(freed)
                else:
                    freed = None
            transition(task, status)
            task.assigned_to_agent_id = None
            if status == TaskStatus.BLOCKED:
                task.blocked_reason = reason
            else:
                task.error_message = reason
            await tx.save_task(task)

        logger.warning("task_closed", task_id=task_id, status=status.value, reason=reason)
        await self.bus.task_updated(task, source="work")
        if freed is not None:
            await self.bus.agent_updated(freed, source="work")
        return WorkOutcome(
            task_id=task_id, stage=stage, status=status, kind=kind, note=reason
        )

    async def _finish(
        self,
        task_id: TaskId,
        agent_id: AgentId,
        stage: PipelineStage,
        result: WorkResult,
        elapsed: float,
        mode: ExecutionMode,
    ) -> WorkOutcome:
        holder = None
        async with self.store.transaction() as tx:
            task = await tx.require_task(task_id)
            agent = await tx.require_agent(agent_id)
            if task.assigned_to_agent_id != agent.id:
                # Agent was removed while working; the task already went back to the queue.
                logger.warning("work_result_discarded", task_id=task_id, agent_id=agent_id)
                return WorkOutcome(
                    task_id=task_id,
                    agent_id=agent_id,
                    stage=stage,
                    status=task.status,
                    kind=OutcomeKind.DISCARDED,
                )

            efficiency = time_efficiency(elapsed, self.config.expected_seconds)
            await tx.add_performance_log(PerformanceLog(
                agent_id=agent.id,
                task_id=task.id,
                stage=stage,
                success=result.success,
                quality_score=result.quality_score,
                efficiency_score=efficiency,
                complexity=task.complexity,
                cost_usd=result.cost_usd,
                duration_ms=elapsed * 1000.0,
                revision_count=task.revision_count,
                failure_reason=None if result.success else result.error,
            ))

            breakdown = self.rewards.breakdown(
                success=result.success,
                complexity=task.complexity,
                quality=result.quality_score,
                efficiency=efficiency,
                execution_seconds=elapsed,
                expected_seconds=self.config.expected_seconds,
                cost_efficiency=cost_efficiency(result.cost_usd, self._task_cost_ceiling),
            )
            reward = self.rewards.apply(agent, result.success, breakdown)
            self._learn(agent, task, result.success)
            track_session_cost(agent, result.cost_usd)
            await tx.save_agent(agent)

            route = None
            if result.success:
                transition(task, _NEXT_ON_SUCCESS[stage])
                if stage == PipelineStage.IMPLEMENTATION:
                    task.output_artifact = result.artifact
                task.assigned_to_agent_id = None
                task.error_message = None
                await tx.save_task(task)
            elif stage == PipelineStage.QA and result.defect is not None:
                holder = await self.router.route_within(tx, task, result.defect)
                route = self.router.decision_for(task)
            else:
                task.revision_count += 1
                if stage != PipelineStage.IMPLEMENTATION:
                    task.retry_count += 1
                task.error_message = result.error
                task.assigned_to_agent_id = None
                if (
                    stage == PipelineStage.IMPLEMENTATION
                    and task.revision_count >= task.max_revisions
                ):
                    transition(task, TaskStatus.FAILED)
                    task.error_message = revision_limit_message(task)
                else:
                    transition(task, TaskStatus.NEEDS_REVISION)
                await tx.save_task(task)

        logger.info(
            "work_recorded",
            task_id=task_id,
            agent_id=agent_id,
            stage=stage.value,
            success=result.success,
            status=task.status.value,
            e_delta=round(reward.delta, 1),
        )
        await self.bus.task_updated(task, source="work")
        if route is not None:
            await self.router.announce(task, result.defect, holder)

        if self.budget is not None and result.cost_usd:
            await self.budget.record_cost(task.project_id, task.id, result.cost_usd)
        await self.population.release_agent(agent_id, elapsed, mode)

        return WorkOutcome(
            task_id=task_id,
            agent_id=agent_id,
            stage=stage,
            status=task.status,
            success=result.success,
            reward=reward,
            route=route,
            note=task.error_message or "",
        )

    def _learn(self, agent: Agent, task: Task, success: bool) -> None:
        category = self.specialization.categorize(task)
        scores = self.specialization.update(
            agent.genome.specialization, category, success, task.complexity
        )
        agent.genome = agent.genome.model_copy(update={"specialization": scores})
        if not success:
            return
        primary = self.specialization.primary(scores)
        if primary != GENERAL and primary != agent.specialization:
            logger.info(
                "specialization_evolved",
                agent_id=agent.id,
                previous=agent.specialization,
                new=primary,
            )
            agent.specialization = primary
