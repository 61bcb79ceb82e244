"""Event Bus — fire-and-forget notifications with wildcard matching.

Components publish agent, task, governance, evolution and budget updates
here. Delivery is best effort: a failing subscriber is logged and never
affects the publisher. Topic patterns use fnmatch: "task.*" matches
"task.updated", "*" matches everything.
"""

from __future__ import annotations

import asyncio
import fnmatch
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from pydantic import BaseModel, Field

from evoteam.types import Agent, Task, new_id

logger = structlog.get_logger()

EventHandler = Callable[["Event"], Awaitable[None]]


class Event(BaseModel):
    """A point-in-time notification."""

    id: str = Field(default_factory=new_id)
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class EventBus:
    """Async pub/sub bus with a bounded history."""

    def __init__(self, history_limit: int = 500) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._history: list[Event] = []
        self._history_limit = history_limit
        self._lock = asyncio.Lock()

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, topic: str, data: dict | None = None, source: str = "") -> Event:
        """Publish an event to every matching subscriber."""
        event = Event(topic=topic, data=data or {}, source=source)

        async with self._lock:
            self._history.append(event)
            if len(self._history) > self._history_limit:
                self._history = self._history[-self._history_limit:]

        handlers = [
            handler
            for pattern, subscribed in self._subscribers.items()
            if fnmatch.fnmatch(topic, pattern)
            for handler in subscribed
        ]
        if handlers:
            results = await asyncio.gather(
                *(h(event) for h in handlers), return_exceptions=True
            )
            for handler, result in zip(handlers, results):
                if isinstance(result, Exception):
                    logger.warning(
                        "event_handler_failed",
                        topic=topic,
                        handler=getattr(handler, "__qualname__", repr(handler)),
                        error=str(result),
                    )
        return event

    # ── Typed helpers ──

    async def agent_updated(self, agent: Agent, source: str = "") -> Event:
        return await self.emit("agent.updated", {
            "agent_id": agent.id,
            "role": agent.role.value,
            "status": agent.status.value,
            "existence_potential": agent.existence_potential,
            "current_task_id": agent.current_task_id,
        }, source=source)

    async def task_updated(self, task: Task, source: str = "") -> Event:
        return await self.emit("task.updated", {
            "task_id": task.id,
            "status": task.status.value,
            "assigned_to_agent_id": task.assigned_to_agent_id,
            "project_id": task.project_id,
        }, source=source)

    async def log(self, message: str, level: str = "info", source: str = "") -> Event:
        return await self.emit("log", {"message": message, "level": level}, source=source)

    def history(self, topic_filter: str = "*", limit: int = 50) -> list[Event]:
        """Recent events, newest first, optionally filtered by topic pattern."""
        if topic_filter == "*":
            events = self._history
        else:
            events = [
                e for e in self._history
                if fnmatch.fnmatch(e.topic, topic_filter)
            ]
        return list(reversed(events[-limit:]))

    @property
    def subscriber_count(self) -> int:
        return sum(len(h) for h in self._subscribers.values())

    def topics(self) -> list[str]:
        return sorted({e.topic for e in self._history})
