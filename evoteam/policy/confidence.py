"""Confidence router — send a defect fix down the path its confidence earns.

Bands are upper-inclusive:

  confidence >  0.9          auto-verify, assigned to the automation identity
  0.5 < confidence <= 0.9    review, assigned to the reviewer identity
  confidence <= 0.5          war room, unassigned and flagged deadlocked
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel, Field

from evoteam.config import RoutingConfig
from evoteam.events.bus import EventBus
from evoteam.exceptions import InvalidConfidenceError
from evoteam.kernel.state_machine import transition
from evoteam.store.base import BaseStore, StoreTransaction
from evoteam.types import (
    Agent,
    AgentStatus,
    ClarificationEvent,
    HELD_STATUSES,
    Task,
    TaskId,
    TaskStatus,
    utcnow,
)

logger = structlog.get_logger()

AUTO_INSTRUCTION = "Apply patch and run verification tests immediately."
REVIEW_INSTRUCTION = "Review this proposed patch. It has medium confidence."
WAR_ROOM_INSTRUCTION = "Collaborative debugging required."


class DefectReport(BaseModel):
    """A QA finding with a proposed fix."""

    confidence: float = Field(ge=0.0, le=1.0)
    severity: str = "medium"
    suggested_remediation: str = ""
    description: str = ""


class RouteDecision(BaseModel):
    task_id: TaskId
    status: TaskStatus
    assignee: str | None
    deadlocked: bool = False


class ConfidenceRouter:
    def __init__(
        self,
        store: BaseStore,
        bus: EventBus,
        config: RoutingConfig | None = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.config = config or RoutingConfig()

    def classify(self, confidence: float) -> tuple[TaskStatus, str | None]:
        """Target status and assignee for a confidence value."""
        if not 0.0 <= confidence <= 1.0:
            raise InvalidConfidenceError(f"Confidence {confidence} is outside [0, 1]")
        c = self.config
        if confidence > c.auto_threshold:
            return TaskStatus.AUTO_VERIFY, c.automation_identity
        if confidence > c.review_threshold:
            return TaskStatus.IN_REVIEW, c.reviewer_identity
        return TaskStatus.WAR_ROOM, None

    async def route(self, task_id: TaskId, report: DefectReport) -> RouteDecision:
        self.classify(report.confidence)  # reject before touching the store
        async with self.store.transaction() as tx:
            task = await tx.require_task(task_id)
            holder = await self.route_within(tx, task, report)
        await self.announce(task, report, holder)
        return self.decision_for(task)

    async def route_within(
        self, tx: StoreTransaction, task: Task, report: DefectReport
    ) -> Agent | None:
        """Route `task` inside an open transaction.

        Mutates and saves the task; returns the agent freed by the move, if any.
        """
        status, assignee = self.classify(report.confidence)

        # A task leaving a held status frees the agent that held it.
        holder = None
        if task.status in HELD_STATUSES and task.assigned_to_agent_id:
            holder = await tx.get_agent(task.assigned_to_agent_id)
            if holder and holder.current_task_id == task.id:
                holder.status = AgentStatus.IDLE
                holder.current_task_id = None
                await tx.save_agent(holder)
            else:
                holder = None

        transition(task, status)
        task.assigned_to_agent_id = assignee
        task.is_deadlocked = status == TaskStatus.WAR_ROOM

        packet = task.context_packet
        packet.version += 1
        packet.patch = report.suggested_remediation
        if status == TaskStatus.AUTO_VERIFY:
            packet.instruction = AUTO_INSTRUCTION
        elif status == TaskStatus.IN_REVIEW:
            packet.instruction = REVIEW_INSTRUCTION
        else:
            packet.instruction = WAR_ROOM_INSTRUCTION
            packet.details["error"] = "Complex bug with low confidence fix."
        packet.history.append(ClarificationEvent(
            author="confidence_router",
            kind="routing",
            content=(
                f"{report.severity} defect at confidence {report.confidence:.2f} "
                f"routed to {status.value}"
            ),
        ))
        task.updated_at = utcnow()
        await tx.save_task(task)
        return holder

    async def announce(
        self, task: Task, report: DefectReport, holder: Agent | None = None
    ) -> None:
        logger.info(
            "defect_routed",
            task_id=task.id,
            confidence=report.confidence,
            status=task.status.value,
            assignee=task.assigned_to_agent_id,
        )
        await self.bus.task_updated(task, source="router")
        if holder is not None:
            await self.bus.agent_updated(holder, source="router")

    @staticmethod
    def decision_for(task: Task) -> RouteDecision:
        return RouteDecision(
            task_id=task.id,
            status=task.status,
            assignee=task.assigned_to_agent_id,
            deadlocked=task.is_deadlocked,
        )
