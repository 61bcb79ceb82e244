"""Core types shared across all evoteam subsystems."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

# ── ID Types ──────────────────────────────────────────────────────────────────

AgentId: TypeAlias = str
TaskId: TypeAlias = str
ProjectId: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.utcnow()


# ── Enumerations ─────────────────────────────────────────────────────────────


class Role(str, Enum):
    ARCHITECT = "Architect"
    TEAM_LEAD = "TeamLead"
    SENIOR_DEV = "SeniorDev"
    MID_DEV = "MidDev"
    JUNIOR_DEV = "JuniorDev"
    QA = "QA"
    SENIOR_QA = "SeniorQA"
    DESIGNER = "Designer"


class AgentStatus(str, Enum):
    IDLE = "IDLE"
    BUSY = "BUSY"
    OFFLINE = "OFFLINE"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class TaskStatus(str, Enum):
    QUEUED = "QUEUED"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    IN_QA = "IN_QA"
    NEEDS_REVISION = "NEEDS_REVISION"
    BLOCKED = "BLOCKED"
    WAR_ROOM = "WAR_ROOM"
    AUTO_VERIFY = "AUTO_VERIFY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Statuses in which the task/agent assignment must be mirrored on both rows.
HELD_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS})

# Work that still needs a worker (used for population sizing).
PENDING_STATUSES = frozenset({
    TaskStatus.QUEUED, TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS,
})


class GovernanceAction(str, Enum):
    PROMOTE = "PROMOTE"
    DEMOTE = "DEMOTE"
    TERMINATE = "TERMINATE"
    WARNING = "WARNING"
    NONE = "NONE"


class ExecutionMode(str, Enum):
    """Whether destructive population changes are applied or only logged."""

    LIVE = "live"
    DRY_RUN = "dry_run"


class PipelineStage(str, Enum):
    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    QA = "qa"


# ── Genome ────────────────────────────────────────────────────────────────────


class Genome(BaseModel):
    """Heritable configuration of an agent.

    Frozen: breeding and mutation always build a new value, so a child
    never shares mutable state with its parents.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    generation: int = 0
    parents: tuple[str, ...] = ()
    system_prompt: str = ""
    temperature: float = 0.7
    risk_tolerance: float = 0.5
    collaboration_preference: float = 0.5
    specialization: dict[str, float] = Field(default_factory=dict)
    fitness_history: tuple[float, ...] = ()


# ── Agent & Task ─────────────────────────────────────────────────────────────


class Agent(BaseModel):
    """A long-lived worker unit in the population."""

    id: AgentId = Field(default_factory=new_id)
    role: Role
    specialization: str = "General"
    status: AgentStatus = AgentStatus.IDLE
    current_task_id: TaskId | None = None
    project_id: ProjectId | None = None  # last project worked on

    score: float = 50.0
    success_count: int = 0
    fail_count: int = 0
    risk_level: RiskLevel = RiskLevel.LOW

    existence_potential: float = 100.0
    generation: int = 0
    parent_id: AgentId | None = None
    genome: Genome = Field(default_factory=Genome)

    cost_baseline: float | None = None
    session_cost: float | None = None

    created_at: datetime = Field(default_factory=utcnow)
    last_active_at: datetime = Field(default_factory=utcnow)

    @property
    def is_alive(self) -> bool:
        return self.status != AgentStatus.OFFLINE and self.existence_potential > 0

    @property
    def tasks_handled(self) -> int:
        return self.success_count + self.fail_count


class ClarificationEvent(BaseModel):
    """One entry in a task's clarification history."""

    at: datetime = Field(default_factory=utcnow)
    author: str = ""
    kind: str = "clarification"  # "clarification", "routing", "resolution"
    content: str = ""


class ContextPacket(BaseModel):
    """Versioned, opaque context handed to whoever works a task."""

    version: int = 1
    summary: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    instruction: str = ""
    patch: str = ""
    history: list[ClarificationEvent] = Field(default_factory=list)


class Task(BaseModel):
    """A unit of work flowing through the pipeline."""

    id: TaskId = Field(default_factory=new_id)
    title: str
    description: str = ""
    required_role: str
    project_id: ProjectId = "default"
    complexity_score: float = 50.0  # 1..100

    status: TaskStatus = TaskStatus.QUEUED
    assigned_to_agent_id: AgentId | None = None
    owner_agent_id: AgentId | None = None

    revision_count: int = 0
    max_revisions: int = 3
    retry_count: int = 0  # review/QA rejections since the last escalation

    context_packet: ContextPacket = Field(default_factory=ContextPacket)
    output_artifact: str | None = None
    error_message: str | None = None
    blocked_reason: str | None = None
    is_deadlocked: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def complexity(self) -> float:
        """Complexity normalized to [0, 1]."""
        return max(0.0, min(1.0, self.complexity_score / 100.0))


# ── Records ──────────────────────────────────────────────────────────────────


class PerformanceLog(BaseModel):
    """One reported outcome of an agent working a task."""

    id: str = Field(default_factory=new_id)
    agent_id: AgentId
    task_id: TaskId | None = None
    stage: PipelineStage = PipelineStage.IMPLEMENTATION
    success: bool
    quality_score: float = 0.7
    efficiency_score: float = 0.5
    complexity: float = 0.5
    cost_usd: float = 0.0
    duration_ms: float = 0.0
    revision_count: int = 0
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class GovernanceEvent(BaseModel):
    """Append-only audit record of a governance decision."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    agent_id: AgentId
    task_id: TaskId | None = None
    action: GovernanceAction
    reason: str = ""
    previous_role: Role | None = None
    new_role: Role | None = None
    created_at: datetime = Field(default_factory=utcnow)


class AgentGenerationSnapshot(BaseModel):
    """Per-agent state captured in a generation record."""

    model_config = ConfigDict(frozen=True)

    agent_id: AgentId
    role: Role
    fitness: float
    tasks_completed: int = 0
    tasks_succeeded: int = 0
    existence_potential: float = 0.0
    genome: Genome
    parent_id: AgentId | None = None
    status: str = "ALIVE"  # "ALIVE", "TERMINATED_LOW_E", "BORN"
    cause_of_death: str | None = None


class GenerationRecord(BaseModel):
    """Immutable snapshot of one evolution cycle."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    generation_number: int
    population_size: int
    avg_fitness: float
    max_fitness: float
    min_fitness: float
    fitness_std_dev: float
    birth_count: int
    death_count: int
    survival_rate: float
    mutation_rate: float
    crossover_rate: float
    specialization_distribution: dict[str, float] = Field(default_factory=dict)
    innovations: tuple[str, ...] = ()
    top_agent_id: AgentId | None = None
    agents: tuple[AgentGenerationSnapshot, ...] = ()
    created_at: datetime = Field(default_factory=utcnow)


class KnowledgeNugget(BaseModel):
    """A lesson harvested from an agent leaving the pool."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    category: str
    content: str
    source_agent_id: AgentId
    quality_score: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)
