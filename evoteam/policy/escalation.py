"""Escalation desk — clear a deadlocked task with a human clarification."""

from __future__ import annotations

import structlog

from evoteam.events.bus import EventBus
from evoteam.kernel.state_machine import transition
from evoteam.store.base import BaseStore
from evoteam.types import ClarificationEvent, Task, TaskId, TaskStatus

logger = structlog.get_logger()


class EscalationDesk:
    def __init__(self, store: BaseStore, bus: EventBus) -> None:
        self.store = store
        self.bus = bus

    async def resolve(
        self,
        task_id: TaskId,
        clarification: str,
        author: str = "operator",
        instruction: str | None = None,
    ) -> Task:
        """Record the clarification and send the task back to the queue.

        The rejection and revision counters start over.
        """
        async with self.store.transaction() as tx:
            task = await tx.require_task(task_id)
            transition(task, TaskStatus.QUEUED)
            packet = task.context_packet
            packet.version += 1
            packet.history.append(ClarificationEvent(
                author=author, kind="resolution", content=clarification
            ))
            if instruction is not None:
                packet.instruction = instruction
            task.is_deadlocked = False
            task.retry_count = 0
            task.revision_count = 0
            task.assigned_to_agent_id = None
            task.blocked_reason = None
            await tx.save_task(task)

        logger.info("escalation_resolved", task_id=task_id, author=author)
        await self.bus.task_updated(task, source="escalation")
        return task
