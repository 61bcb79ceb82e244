"""Orchestrator — runs every periodic driver in the background.

Each driver (dispatch, work, governance, evolution, scaling) is its own
asyncio task on its own cadence. A pass holds that driver's lock, so two
passes of the same driver never overlap. A failing pass is logged and
the driver carries on with the next one.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog
from pydantic import BaseModel

from evoteam.dispatch.dispatcher import DispatchReport, TaskDispatcher
from evoteam.dispatch.work import WorkCycle, WorkReport
from evoteam.events.bus import EventBus
from evoteam.evolution.cycle import CycleResult, EvolutionCycle
from evoteam.evolution.population import PopulationManager, ScaleResult
from evoteam.governance.loop import GovernanceLoop, GovernanceReport
from evoteam.types import ExecutionMode

logger = structlog.get_logger()


class DriverIntervals(BaseModel):
    """Seconds between passes, per driver."""

    dispatch: float = 20.0
    work: float = 20.0
    governance: float = 300.0
    evolution: float = 3600.0
    scaling: float = 600.0


class Orchestrator:
    """Owns the driver loops and their locks."""

    def __init__(
        self,
        dispatcher: TaskDispatcher,
        work: WorkCycle,
        governance: GovernanceLoop,
        evolution: EvolutionCycle,
        population: PopulationManager,
        bus: EventBus | None = None,
        intervals: DriverIntervals | None = None,
        mode: ExecutionMode = ExecutionMode.LIVE,
    ) -> None:
        self.dispatcher = dispatcher
        self.work = work
        self.governance = governance
        self.evolution = evolution
        self.population = population
        self.bus = bus
        self.intervals = intervals or DriverIntervals()
        self.mode = mode
        self._locks = {
            name: asyncio.Lock()
            for name in ("dispatch", "work", "governance", "evolution", "scaling")
        }
        self._tasks: dict[str, asyncio.Task] = {}
        self._running = False
        self.passes: dict[str, int] = dict.fromkeys(self._locks, 0)
        self.failures: dict[str, int] = dict.fromkeys(self._locks, 0)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        schedule: dict[str, tuple[float, Callable[[], Awaitable[Any]]]] = {
            "dispatch": (self.intervals.dispatch, self.run_dispatch_once),
            "work": (self.intervals.work, self.run_work_once),
            "governance": (self.intervals.governance, self.run_governance_once),
            "evolution": (self.intervals.evolution, self.run_evolution_once),
            "scaling": (self.intervals.scaling, self.run_scaling_once),
        }
        for name, (interval, run) in schedule.items():
            self._tasks[name] = asyncio.create_task(self._loop(name, interval, run))
        logger.info("orchestrator_started", mode=self.mode.value)
        await self._emit("orchestrator.started", {"mode": self.mode.value})

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("orchestrator_stopped", passes=self.passes, failures=self.failures)
        await self._emit("orchestrator.stopped", {"passes": dict(self.passes)})

    # ── Single passes ──

    async def run_dispatch_once(self) -> DispatchReport | None:
        async def _dispatch() -> DispatchReport:
            await self.dispatcher.recover_stale()
            return await self.dispatcher.dispatch()

        return await self._guarded("dispatch", _dispatch)

    async def run_work_once(self) -> WorkReport | None:
        return await self._guarded("work", lambda: self.work.run_once(self.mode))

    async def run_governance_once(self) -> GovernanceReport | None:
        return await self._guarded("governance", lambda: self.governance.run_once(self.mode))

    async def run_evolution_once(self) -> CycleResult | None:
        return await self._guarded("evolution", lambda: self.evolution.run(self.mode))

    async def run_scaling_once(self) -> ScaleResult | None:
        return await self._guarded(
            "scaling", lambda: self.population.scale_population(self.mode)
        )

    async def run_tick(self) -> None:
        """Dispatch, work, then govern, once each."""
        await self.run_dispatch_once()
        await self.run_work_once()
        await self.run_governance_once()

    # ── Internals ──

    async def _guarded(self, name: str, run: Callable[[], Awaitable[Any]]) -> Any:
        """Run one pass under the driver's lock; never raises."""
        lock = self._locks[name]
        if lock.locked():
            logger.debug("driver_pass_skipped", driver=name)
            return None
        async with lock:
            try:
                result = await run()
            except Exception as e:
                self.failures[name] += 1
                logger.error("driver_pass_failed", driver=name, error=str(e))
                await self._emit("orchestrator.driver_error", {"driver": name, "error": str(e)})
                return None
            self.passes[name] += 1
            return result

    async def _loop(
        self, name: str, interval: float, run: Callable[[], Awaitable[Any]]
    ) -> None:
        while self._running:
            await run()
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self.bus is not None:
            await self.bus.emit(topic, data, source="orchestrator")
