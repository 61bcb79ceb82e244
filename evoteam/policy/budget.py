"""Budget limiter — admission control on spend.

Spend is tracked in two buckets: a daily bucket (keyed by calendar date)
and a cumulative bucket per project. Crossing the daily ceiling pauses
every project; crossing a project ceiling pauses that project. Pauses
are lifted only by an explicit resume.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Callable

import structlog
from pydantic import BaseModel, Field

from evoteam.config import BudgetConfig
from evoteam.events.bus import EventBus
from evoteam.exceptions import BudgetExceededError
from evoteam.types import ProjectId, TaskId, utcnow

logger = structlog.get_logger()


class BudgetDecision(BaseModel):
    allowed: bool
    reason: str = ""


class SpendLine(BaseModel):
    spent: float
    limit: float

    @property
    def percent(self) -> float:
        return self.spent / self.limit if self.limit else 0.0


class SpendStats(BaseModel):
    daily: SpendLine
    project: SpendLine | None = None
    is_paused: bool = False


class BudgetState(BaseModel):
    """Everything the limiter tracks, in a form that can be written to disk."""

    daily: dict[str, float] = Field(default_factory=dict)
    project: dict[str, float] = Field(default_factory=dict)
    overrides: dict[str, dict[str, float]] = Field(default_factory=dict)
    paused: list[str] = Field(default_factory=list)
    all_paused: bool = False


class BudgetLimiter:
    """Tracks spend and pauses admission when ceilings are crossed.

    Per-project overrides replace individual fields of the default config.
    """

    def __init__(
        self,
        config: BudgetConfig | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or BudgetConfig()
        self.bus = bus
        self._clock = clock
        self._daily: dict[str, float] = defaultdict(float)
        self._project: dict[ProjectId, float] = defaultdict(float)
        self._overrides: dict[ProjectId, dict] = {}
        self._paused: set[ProjectId] = set()
        self._all_paused = False

    def _today(self) -> str:
        return self._clock().date().isoformat()

    def config_for(self, project_id: ProjectId | None = None) -> BudgetConfig:
        if project_id and project_id in self._overrides:
            return self.config.model_copy(update=self._overrides[project_id])
        return self.config

    def is_paused(self, project_id: ProjectId) -> bool:
        return self._all_paused or project_id in self._paused

    @property
    def all_paused(self) -> bool:
        return self._all_paused

    @property
    def paused_projects(self) -> frozenset[ProjectId]:
        return frozenset(self._paused)

    # ── Spend ──

    async def record_cost(
        self, project_id: ProjectId, task_id: TaskId | None, cost_usd: float
    ) -> BudgetDecision:
        """Add spend to both buckets and enforce the ceilings."""
        if self.is_paused(project_id):
            return BudgetDecision(allowed=False, reason="Project is paused due to budget limits")

        config = self.config_for(project_id)
        today = self._today()
        self._daily[today] += cost_usd
        self._project[project_id] += cost_usd
        daily = self._daily[today]
        project = self._project[project_id]

        if cost_usd > config.task_limit:
            logger.warning(
                "task_cost_exceeded",
                task_id=task_id,
                project_id=project_id,
                cost=cost_usd,
                limit=config.task_limit,
            )
            await self._alert("TASK_LIMIT_EXCEEDED", cost_usd, config.task_limit, project_id)

        if daily > config.daily_limit:
            await self._alert("DAILY_LIMIT_EXCEEDED", daily, config.daily_limit)
            await self.pause_all("Daily budget limit exceeded")
            return BudgetDecision(allowed=False, reason="Daily budget limit exceeded")

        if project > config.project_limit:
            await self._alert("PROJECT_LIMIT_EXCEEDED", project, config.project_limit, project_id)
            await self.pause_project(project_id, "Project budget limit exceeded")
            return BudgetDecision(allowed=False, reason="Project budget limit exceeded")

        if config.warning_threshold <= daily / config.daily_limit < 1:
            await self._alert("DAILY_WARNING", daily, config.daily_limit)
        if config.warning_threshold <= project / config.project_limit < 1:
            await self._alert("PROJECT_WARNING", project, config.project_limit, project_id)

        return BudgetDecision(allowed=True)

    def can_proceed(self, project_id: ProjectId, estimated_cost: float = 0.0) -> bool:
        """Pre-flight check. Never changes state."""
        if self.is_paused(project_id):
            return False
        config = self.config_for(project_id)
        if self._daily.get(self._today(), 0.0) + estimated_cost > config.daily_limit:
            return False
        if self._project.get(project_id, 0.0) + estimated_cost > config.project_limit:
            return False
        return True

    def require(self, project_id: ProjectId, estimated_cost: float = 0.0) -> None:
        """Like `can_proceed`, but raises with the reason."""
        if self.can_proceed(project_id, estimated_cost):
            return
        if self._all_paused:
            reason = "all projects are paused"
        elif project_id in self._paused:
            reason = f"project '{project_id}' is paused"
        else:
            reason = f"estimated cost ${estimated_cost:.2f} would exceed a budget ceiling"
        raise BudgetExceededError(f"Budget check failed: {reason}")

    # ── Pausing ──

    async def pause_project(self, project_id: ProjectId, reason: str) -> None:
        self._paused.add(project_id)
        logger.warning("project_paused", project_id=project_id, reason=reason)
        await self._emit("budget.project_paused", {"project_id": project_id, "reason": reason})

    async def resume_project(self, project_id: ProjectId) -> None:
        self._paused.discard(project_id)
        logger.info("project_resumed", project_id=project_id)
        await self._emit("budget.project_resumed", {"project_id": project_id})

    async def pause_all(self, reason: str) -> None:
        self._all_paused = True
        logger.warning("all_projects_paused", reason=reason)
        await self._emit("budget.all_paused", {"reason": reason})

    async def resume_all(self) -> None:
        self._all_paused = False
        self._paused.clear()
        logger.info("all_projects_resumed")
        await self._emit("budget.all_resumed", {})

    # ── Admin ──

    def set_project_budget(self, project_id: ProjectId, **overrides: float) -> BudgetConfig:
        """Override ceilings for one project (e.g. `project_limit=250`)."""
        unknown = set(overrides) - set(BudgetConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown budget fields: {sorted(unknown)}")
        self._overrides.setdefault(project_id, {}).update(overrides)
        logger.info("project_budget_set", project_id=project_id, **overrides)
        return self.config_for(project_id)

    def spend_stats(self, project_id: ProjectId | None = None) -> SpendStats:
        config = self.config_for(project_id)
        stats = SpendStats(
            daily=SpendLine(
                spent=self._daily.get(self._today(), 0.0), limit=config.daily_limit
            ),
            is_paused=self.is_paused(project_id) if project_id else self._all_paused,
        )
        if project_id:
            stats.project = SpendLine(
                spent=self._project.get(project_id, 0.0), limit=config.project_limit
            )
        return stats

    def reset_daily(self) -> None:
        """Drop today's bucket. Pauses are left alone."""
        self._daily.pop(self._today(), None)
        logger.info("daily_spend_reset")

    # ── Notifications ──

    async def _alert(
        self,
        kind: str,
        current: float,
        limit: float,
        project_id: ProjectId | None = None,
    ) -> None:
        await self._emit("budget.alert", {
            "type": kind,
            "current": current,
            "limit": limit,
            "percent": current / limit if limit else 0.0,
            "project_id": project_id,
        })

    async def _emit(self, topic: str, data: dict) -> None:
        if self.bus is not None:
            await self.bus.emit(topic, data, source="budget")

    # ── Persistence ──

    def snapshot(self) -> BudgetState:
        return BudgetState(
            daily=dict(self._daily),
            project=dict(self._project),
            overrides={k: dict(v) for k, v in self._overrides.items()},
            paused=sorted(self._paused),
            all_paused=self._all_paused,
        )

    def restore(self, state: BudgetState) -> None:
        self._daily = defaultdict(float, state.daily)
        self._project = defaultdict(float, state.project)
        self._overrides = {k: dict(v) for k, v in state.overrides.items()}
        self._paused = set(state.paused)
        self._all_paused = state.all_paused

    def save(self, path: Path) -> None:
        """Persist spend and pauses so separate processes share them."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.snapshot().model_dump_json(indent=2), encoding="utf-8")

    def load(self, path: Path) -> bool:
        """Load state from disk. Returns True if loaded successfully."""
        if not path.exists():
            return False
        try:
            self.restore(BudgetState.model_validate_json(path.read_text(encoding="utf-8")))
        except (OSError, ValueError) as e:
            logger.warning("budget_state_load_failed", path=str(path), error=str(e))
            return False
        return True
