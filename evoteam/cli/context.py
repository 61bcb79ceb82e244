"""CLI runtime context — bridges the sync CLI to the async engine."""

from __future__ import annotations

import asyncio
import importlib
import logging
import random
import sys
from pathlib import Path
from typing import Any, Coroutine

import structlog

from evoteam.config import EvoteamSettings, settings
from evoteam.dispatch.dispatcher import TaskDispatcher
from evoteam.dispatch.work import WorkCycle
from evoteam.dispatch.worker import BaseWorker, SimulatedWorker
from evoteam.events.bus import EventBus
from evoteam.evolution.cycle import EvolutionCycle
from evoteam.evolution.engine import EvolutionEngine
from evoteam.evolution.existence import ExistenceModel
from evoteam.evolution.harvester import KnowledgeHarvester
from evoteam.evolution.history import EvolutionHistory
from evoteam.evolution.population import PopulationManager
from evoteam.governance.audit import AuditTrail
from evoteam.governance.loop import GovernanceLoop
from evoteam.orchestrator import DriverIntervals, Orchestrator
from evoteam.policy.budget import BudgetLimiter
from evoteam.policy.confidence import ConfidenceRouter
from evoteam.policy.escalation import EscalationDesk
from evoteam.store.sqlite import SQLiteStore


def configure_logging(level: str = "INFO") -> None:
    """Route structlog and stdlib logging to stderr at `level`."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, stream=sys.stderr, format="%(name)s: %(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def load_worker(target_path: str | None) -> BaseWorker:
    """Resolve `module:attr` to a worker instance (classes are instantiated)."""
    if not target_path:
        return SimulatedWorker()
    module_name, _, attr = target_path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Worker must look like 'package.module:attr', got '{target_path}'")
    target = getattr(importlib.import_module(module_name), attr)
    worker = target() if isinstance(target, type) else target
    if not isinstance(worker, BaseWorker):
        raise TypeError(f"{target_path} is not a BaseWorker")
    return worker


class EvoteamContext:
    """Singleton runtime context that holds all subsystem instances."""

    _instance: EvoteamContext | None = None

    def __init__(
        self,
        config: EvoteamSettings | None = None,
        worker: BaseWorker | None = None,
        seed: int | None = None,
    ) -> None:
        self.settings = config or settings
        engine_config = self.settings.engine
        self.store = SQLiteStore(str(self.settings.db_path))
        self.bus = EventBus()
        self.rng = random.Random(seed)

        self.existence = ExistenceModel(engine_config.existence)
        self.engine = EvolutionEngine(engine_config.evolution, rng=self.rng)
        self.harvester = KnowledgeHarvester(self.store, engine_config.harvest)
        self.population = PopulationManager(
            self.store,
            self.bus,
            self.harvester,
            existence=self.existence,
            engine=self.engine,
            config=engine_config.population,
        )
        self.audit = AuditTrail(self.store)
        self.governance = GovernanceLoop(
            self.store, self.bus, self.population, self.audit, engine_config.governance
        )
        self.evolution = EvolutionCycle(
            self.store,
            self.bus,
            self.population,
            engine=self.engine,
            existence=self.existence,
            config=engine_config.cycle,
        )
        self.history = EvolutionHistory(self.store)
        self.budget = BudgetLimiter(engine_config.budget, self.bus)
        self.router = ConfidenceRouter(self.store, self.bus, engine_config.routing)
        self.escalation = EscalationDesk(self.store, self.bus)
        self.dispatcher = TaskDispatcher(
            self.store, self.bus, self.budget, engine_config.dispatch
        )
        self.work = WorkCycle(
            self.store,
            self.bus,
            self.population,
            worker or SimulatedWorker(rng=self.rng),
            self.router,
            self.harvester,
            budget=self.budget,
            existence=self.existence,
            config=engine_config.work,
        )
        self._store_initialized = False

    def orchestrator(self) -> Orchestrator:
        s = self.settings
        return Orchestrator(
            self.dispatcher,
            self.work,
            self.governance,
            self.evolution,
            self.population,
            bus=self.bus,
            intervals=DriverIntervals(
                dispatch=s.dispatch_interval,
                work=s.work_interval,
                governance=s.governance_interval,
                evolution=s.evolution_interval,
                scaling=s.scaling_interval,
            ),
            mode=s.execution_mode,
        )

    @property
    def budget_path(self) -> Path:
        return self.settings.workspace_dir / "budget_state.json"

    async def ensure_store(self) -> SQLiteStore:
        """Create the database and load budget state on first use."""
        if not self._store_initialized:
            self.settings.db_path.parent.mkdir(parents=True, exist_ok=True)
            await self.store.initialize()
            self.budget.load(self.budget_path)
            self._store_initialized = True
        return self.store

    def save_budget(self) -> None:
        self.budget.save(self.budget_path)

    @classmethod
    def get(cls) -> EvoteamContext:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls, instance: EvoteamContext | None = None) -> None:
        cls._instance = instance


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)
