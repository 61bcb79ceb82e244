"""Worker boundary — whatever actually executes a task.

The engine never knows how work is done (LLM call, sandbox, human).
It hands a `WorkContext` to a `BaseWorker` and reads back a `WorkResult`.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from evoteam.policy.confidence import DefectReport
from evoteam.types import Agent, PipelineStage, Task


class WorkContext(BaseModel):
    agent: Agent
    task: Task
    stage: PipelineStage
    urgency: float = 0.0  # 0 = comfortable, 1 = about to be terminated
    inherited_knowledge: list[str] = Field(default_factory=list)


class WorkResult(BaseModel):
    success: bool
    artifact: str | None = None
    error: str | None = None
    quality_score: float = 0.7
    execution_time_seconds: float = 0.0
    cost_usd: float = 0.0
    defect: DefectReport | None = None  # QA stage only


class BaseWorker(ABC):
    @abstractmethod
    async def execute(self, ctx: WorkContext) -> WorkResult: ...


class SimulatedWorker(BaseWorker):
    """Coin-flip worker for local runs and demos.

    Higher-E agents and simpler tasks succeed more often.
    """

    def __init__(
        self,
        success_rate: float = 0.75,
        cost_per_task: float = 0.05,
        rng: random.Random | None = None,
    ) -> None:
        self.success_rate = success_rate
        self.cost_per_task = cost_per_task
        self.rng = rng or random.Random()

    async def execute(self, ctx: WorkContext) -> WorkResult:
        p = self.success_rate + 0.1 * (0.5 - ctx.task.complexity) - 0.1 * ctx.urgency
        success = self.rng.random() < max(0.05, min(0.95, p))
        seconds = 10.0 + 100.0 * ctx.task.complexity * self.rng.random()
        result = WorkResult(
            success=success,
            artifact=f"{ctx.stage.value} output for {ctx.task.title}" if success else None,
            error=None if success else f"{ctx.stage.value} failed",
            quality_score=round(self.rng.uniform(0.5, 1.0), 2),
            execution_time_seconds=seconds,
            cost_usd=self.cost_per_task * (1.0 + ctx.task.complexity),
        )
        if not success and ctx.stage == PipelineStage.QA:
            result.defect = DefectReport(
                confidence=round(self.rng.random(), 2),
                severity="medium",
                suggested_remediation="Re-run the failing check with the fix applied.",
            )
        return result
