"""Shared test fixtures — in-memory store, event bus, factories and a scripted worker."""

from __future__ import annotations

import random

import pytest

from evoteam.config import EngineConfig
from evoteam.dispatch.dispatcher import TaskDispatcher
from evoteam.dispatch.work import WorkCycle
from evoteam.dispatch.worker import BaseWorker, WorkContext, WorkResult
from evoteam.events.bus import EventBus
from evoteam.evolution.cycle import EvolutionCycle
from evoteam.evolution.engine import EvolutionEngine
from evoteam.evolution.existence import ExistenceModel
from evoteam.evolution.harvester import KnowledgeHarvester
from evoteam.evolution.population import PopulationManager
from evoteam.governance.audit import AuditTrail
from evoteam.governance.loop import GovernanceLoop
from evoteam.policy.budget import BudgetLimiter
from evoteam.policy.confidence import ConfidenceRouter
from evoteam.store.memory import MemoryStore
from evoteam.types import Agent, Role, Task


class ScriptedWorker(BaseWorker):
    """Worker that returns canned results in order. No real execution."""

    def __init__(self, results: list[WorkResult] | None = None, default: WorkResult | None = None):
        self._results = list(results or [])
        self._default = default or WorkResult(
            success=True, artifact="done", quality_score=0.7,
            execution_time_seconds=30.0, cost_usd=0.1,
        )
        self.calls: list[WorkContext] = []  # record all calls for assertions

    async def execute(self, ctx: WorkContext) -> WorkResult:
        self.calls.append(ctx)
        if self._results:
            result = self._results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return self._default


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def make_agent():
    def _factory(role: Role = Role.MID_DEV, **fields) -> Agent:
        return Agent(role=role, **fields)
    return _factory


@pytest.fixture
def make_task():
    def _factory(title: str = "Build the login endpoint", required_role: str = "MidDev", **fields) -> Task:
        return Task(title=title, required_role=required_role, **fields)
    return _factory


@pytest.fixture
def put(store):
    """Save agents and tasks in one transaction."""
    async def _put(*items):
        async with store.transaction() as tx:
            for item in items:
                if isinstance(item, Agent):
                    await tx.save_agent(item)
                else:
                    await tx.save_task(item)
        return items
    return _put


@pytest.fixture
def fetch(store):
    """Read back an agent or task by id."""
    async def _fetch(item):
        async with store.transaction() as tx:
            if isinstance(item, Agent):
                return await tx.get_agent(item.id)
            return await tx.get_task(item.id)
    return _fetch


@pytest.fixture
def scripted_worker():
    def _factory(results=None, default=None) -> ScriptedWorker:
        return ScriptedWorker(results=results, default=default)
    return _factory


@pytest.fixture
def harvester(store, config):
    return KnowledgeHarvester(store, config.harvest)


@pytest.fixture
def existence(config):
    return ExistenceModel(config.existence)


@pytest.fixture
def engine(config, rng):
    return EvolutionEngine(config.evolution, rng=rng)


@pytest.fixture
def population(store, bus, harvester, existence, engine, config):
    return PopulationManager(
        store, bus, harvester, existence=existence, engine=engine, config=config.population
    )


@pytest.fixture
def audit(store):
    return AuditTrail(store)


@pytest.fixture
def governance(store, bus, population, audit, config):
    return GovernanceLoop(store, bus, population, audit, config.governance)


@pytest.fixture
def cycle(store, bus, population, engine, existence, config):
    return EvolutionCycle(
        store, bus, population, engine=engine, existence=existence, config=config.cycle
    )


@pytest.fixture
def budget(bus, config):
    return BudgetLimiter(config.budget, bus)


@pytest.fixture
def router(store, bus, config):
    return ConfidenceRouter(store, bus, config.routing)


@pytest.fixture
def dispatcher(store, bus, budget, config):
    return TaskDispatcher(store, bus, budget, config.dispatch)


@pytest.fixture
def make_work_cycle(store, bus, population, router, harvester, budget, existence, config):
    def _factory(worker: BaseWorker) -> WorkCycle:
        return WorkCycle(
            store, bus, population, worker, router, harvester,
            budget=budget, existence=existence, config=config.work,
        )
    return _factory
