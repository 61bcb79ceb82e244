"""Task state machine — enforces valid pipeline transitions."""

from __future__ import annotations

from evoteam.exceptions import InvalidTransitionError
from evoteam.types import Task, TaskStatus, utcnow

_ROUTED = {TaskStatus.AUTO_VERIFY, TaskStatus.IN_REVIEW, TaskStatus.WAR_ROOM}

# Valid task transitions for the pipeline
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.QUEUED: {TaskStatus.ASSIGNED, TaskStatus.BLOCKED, TaskStatus.FAILED},
    TaskStatus.ASSIGNED: {
        TaskStatus.IN_PROGRESS,
        TaskStatus.QUEUED,  # released: agent terminated or stale
        TaskStatus.BLOCKED,
        TaskStatus.FAILED,
    },
    TaskStatus.IN_PROGRESS: {
        TaskStatus.IN_REVIEW,
        TaskStatus.NEEDS_REVISION,
        TaskStatus.QUEUED,
        TaskStatus.BLOCKED,
        TaskStatus.FAILED,
    } | _ROUTED,
    TaskStatus.IN_REVIEW: {
        TaskStatus.IN_QA,
        TaskStatus.NEEDS_REVISION,
        TaskStatus.BLOCKED,
        TaskStatus.FAILED,
    } | _ROUTED,
    TaskStatus.IN_QA: {
        TaskStatus.COMPLETED,
        TaskStatus.NEEDS_REVISION,
        TaskStatus.BLOCKED,
        TaskStatus.FAILED,
    } | _ROUTED,
    TaskStatus.NEEDS_REVISION: {
        TaskStatus.ASSIGNED,
        TaskStatus.IN_PROGRESS,
        TaskStatus.QUEUED,
        TaskStatus.BLOCKED,
        TaskStatus.FAILED,
    } | _ROUTED,
    TaskStatus.BLOCKED: {TaskStatus.QUEUED, TaskStatus.FAILED},
    TaskStatus.WAR_ROOM: {TaskStatus.QUEUED, TaskStatus.FAILED},
    TaskStatus.AUTO_VERIFY: {
        TaskStatus.COMPLETED,
        TaskStatus.NEEDS_REVISION,
        TaskStatus.QUEUED,
        TaskStatus.FAILED,
    } | _ROUTED,
    TaskStatus.COMPLETED: set(),  # terminal
    TaskStatus.FAILED: set(),  # terminal
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return current == target or target in VALID_TRANSITIONS.get(current, set())


def transition(task: Task, target: TaskStatus) -> Task:
    """Move `task` to `target` in place, stamping `updated_at`.

    Staying in the same status is allowed and only refreshes the stamp.
    """
    if not can_transition(task.status, target):
        raise InvalidTransitionError(
            f"Cannot transition task {task.id} "
            f"from {task.status.value} to {target.value}"
        )
    task.status = target
    task.updated_at = utcnow()
    return task
