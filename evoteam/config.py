"""Configuration — every threshold declared once, loaded from environment variables.

Components take their own config model by injection; the module-level
`settings` object is only read by the CLI when wiring things together.
"""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from evoteam.types import ExecutionMode, Role


class ExistenceConfig(BaseModel):
    initial_e: float = 100.0
    e_min: float = 0.0
    e_max: float = 1000.0
    termination_floor: float = 10.0
    cost_per_minute: float = 0.1
    panic_threshold: float = 50.0  # E below which urgency starts to rise
    failure_penalty: float = -2.0
    success_bonus: float = 10.0
    complexity_bonus: float = 5.0
    quality_bonus: float = 5.0
    efficiency_bonus: float = 3.0


class EvolutionConfig(BaseModel):
    mutation_rate: float = 0.1
    mutation_step: float = 0.1  # max absolute delta per mutated field
    tournament_size: int = 3
    weight_performance: float = 0.4
    weight_efficiency: float = 0.2
    weight_quality: float = 0.25
    weight_collaboration: float = 0.15
    base_fitness: float = 0.1
    min_fitness: float = 0.01
    dominant_prompt_share: float = 0.7


class GovernanceConfig(BaseModel):
    min_outcomes_for_eval: int = 3
    recent_outcomes: int = 20
    circuit_breaker_ratio: float = 3.0
    min_complexity_multiplier: float = 0.2
    standard_complexity: float = 50.0
    termination_fail_count: int = 5
    termination_score: float = 20.0
    termination_high_risk_score: float = 30.0
    promotion_min_tasks: int = 5
    promotion_score: float = 80.0
    promotion_success_rate: float = 0.8
    demotion_score: float = 40.0
    demotion_fail_count: int = 3
    demotion_high_risk_score: float = 50.0
    warning_score: float = 50.0


class PopulationConfig(BaseModel):
    min_size: int = 10
    max_size: int = 50
    tasks_per_agent: int = 2
    max_scale_up: int = 5
    elite_e_threshold: float = 50.0
    elite_pool: int = 5
    overcapacity_slack: int = 10
    genesis_e: float = 100.0
    offspring_e: float = 80.0
    scale_up_roles: list[Role] = Field(
        default_factory=lambda: [Role.MID_DEV, Role.SENIOR_DEV, Role.QA]
    )
    bootstrap_roles: dict[Role, int] = Field(
        default_factory=lambda: {
            Role.MID_DEV: 8,
            Role.SENIOR_DEV: 4,
            Role.QA: 3,
            Role.ARCHITECT: 2,
            Role.TEAM_LEAD: 2,
            Role.DESIGNER: 1,
        }
    )


class CycleConfig(BaseModel):
    elite_percentage: float = 0.2
    breeding_pairs: int = 3
    outcome_window: int = 50


class DispatchConfig(BaseModel):
    batch_size: int = 20
    stale_after_seconds: float = 600.0
    fast_track_below: float = 20.0  # complexity under which managers hand off to juniors
    escalate_above: float = 80.0  # complexity over which developers hand up to architects
    executive_queue_limit: int = 5
    deadlock_retry_limit: int = 2


class HarvestConfig(BaseModel):
    min_successes: int = 3
    quality_divisor: float = 20.0
    fallback_category: str = "General"


class BudgetConfig(BaseModel):
    daily_limit: float = 50.0  # USD per day
    project_limit: float = 100.0  # USD per project
    task_limit: float = 5.0  # USD per task
    warning_threshold: float = 0.8


class RoutingConfig(BaseModel):
    auto_threshold: float = 0.9
    review_threshold: float = 0.5
    automation_identity: str = "qa_auto_fixer"
    reviewer_identity: str = "team_lead"


class WorkConfig(BaseModel):
    batch_size: int = 10
    reviewer_role: Role = Role.SENIOR_DEV
    qa_role: Role = Role.QA
    expected_seconds: float = 60.0
    knowledge_priors: int = 3


class EngineConfig(BaseModel):
    """All component configs in one place."""

    existence: ExistenceConfig = Field(default_factory=ExistenceConfig)
    evolution: EvolutionConfig = Field(default_factory=EvolutionConfig)
    governance: GovernanceConfig = Field(default_factory=GovernanceConfig)
    population: PopulationConfig = Field(default_factory=PopulationConfig)
    cycle: CycleConfig = Field(default_factory=CycleConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    harvest: HarvestConfig = Field(default_factory=HarvestConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    work: WorkConfig = Field(default_factory=WorkConfig)


class EvoteamSettings(BaseSettings):
    workspace_dir: Path = Path(".evoteam")
    db_path: Path = Path(".evoteam/evoteam.db")
    log_level: str = "INFO"
    execution_mode: ExecutionMode = ExecutionMode.LIVE

    # Driver cadences (seconds)
    dispatch_interval: float = 20.0
    work_interval: float = 20.0
    governance_interval: float = 300.0
    evolution_interval: float = 3600.0
    scaling_interval: float = 600.0

    engine: EngineConfig = Field(default_factory=EngineConfig)

    model_config = {"env_prefix": "EVOTEAM_", "env_nested_delimiter": "__"}


settings = EvoteamSettings()
