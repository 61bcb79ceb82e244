"""Tests for the governance audit trail."""

from evoteam.governance.rules import GovernanceDecision
from evoteam.types import GovernanceAction, Role


async def test_record_and_query(audit):
    warning = GovernanceDecision(action=GovernanceAction.WARNING, reason="slipping")
    demotion = GovernanceDecision(
        action=GovernanceAction.DEMOTE, reason="poor",
        previous_role=Role.MID_DEV, new_role=Role.JUNIOR_DEV,
    )
    await audit.record_decision("a1", warning)
    await audit.record_decision("a1", demotion, task_id="t1")
    await audit.record_decision("a2", warning)

    assert await audit.count() == 3
    assert len(await audit.query(agent_id="a1")) == 2
    demotions = await audit.query(action=GovernanceAction.DEMOTE)
    assert demotions[0].task_id == "t1"
    assert demotions[0].new_role == Role.JUNIOR_DEV
    assert await audit.terminations() == []


async def test_query_respects_limit(audit):
    decision = GovernanceDecision(action=GovernanceAction.WARNING, reason="slipping")
    for _ in range(5):
        await audit.record_decision("a1", decision)
    assert len(await audit.query(limit=2)) == 2
