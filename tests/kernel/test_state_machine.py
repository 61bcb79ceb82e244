"""Tests for the task state machine."""

import pytest

from evoteam.exceptions import InvalidTransitionError
from evoteam.kernel.state_machine import (
    TERMINAL_STATUSES,
    can_transition,
    transition,
)
from evoteam.types import Task, TaskStatus


def _task(status: TaskStatus = TaskStatus.QUEUED) -> Task:
    return Task(title="t", required_role="MidDev", status=status)


def test_happy_path_through_the_pipeline():
    task = _task()
    for target in (
        TaskStatus.ASSIGNED,
        TaskStatus.IN_PROGRESS,
        TaskStatus.IN_REVIEW,
        TaskStatus.IN_QA,
        TaskStatus.COMPLETED,
    ):
        transition(task, target)
    assert task.status == TaskStatus.COMPLETED


def test_queued_cannot_jump_to_review():
    task = _task()
    with pytest.raises(InvalidTransitionError):
        transition(task, TaskStatus.IN_REVIEW)
    assert task.status == TaskStatus.QUEUED


def test_terminal_statuses_accept_nothing():
    assert TERMINAL_STATUSES == {TaskStatus.COMPLETED, TaskStatus.FAILED}
    for target in TaskStatus:
        if target != TaskStatus.COMPLETED:
            assert not can_transition(TaskStatus.COMPLETED, target)


def test_same_status_refreshes_timestamp():
    task = _task(TaskStatus.IN_PROGRESS)
    before = task.updated_at
    transition(task, TaskStatus.IN_PROGRESS)
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.updated_at >= before


def test_qa_failure_can_be_routed():
    assert can_transition(TaskStatus.IN_QA, TaskStatus.WAR_ROOM)
    assert can_transition(TaskStatus.IN_QA, TaskStatus.AUTO_VERIFY)
    assert can_transition(TaskStatus.IN_QA, TaskStatus.IN_REVIEW)


def test_war_room_only_goes_back_to_queue_or_fails():
    assert can_transition(TaskStatus.WAR_ROOM, TaskStatus.QUEUED)
    assert can_transition(TaskStatus.WAR_ROOM, TaskStatus.FAILED)
    assert not can_transition(TaskStatus.WAR_ROOM, TaskStatus.ASSIGNED)


def test_blocked_requeues():
    task = _task(TaskStatus.BLOCKED)
    transition(task, TaskStatus.QUEUED)
    assert task.status == TaskStatus.QUEUED
