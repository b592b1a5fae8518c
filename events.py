"""
events.py — typed events emitted by the analysis core.

The orchestrator and the offline queue never write audit rows or analytics
themselves; they emit an AnalysisEvent and whoever subscribed handles it.

Usage:
    bus = EventBus()
    bus.subscribe(database.record_event)      # wired once in main.py
    bus.emit(AnalysisEvent(EventKind.PROVIDER_FAILED, request_id, "openai", {...}))

Handlers may be plain functions or coroutine functions. Coroutine handlers
run as background tasks; await drain() to wait for them. A failing handler
is logged and never reaches the emitter.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    REQUEST_STARTED    = "request_started"
    PROVIDER_SUCCEEDED = "provider_succeeded"
    PROVIDER_FAILED    = "provider_failed"
    PROVIDER_TIMED_OUT = "provider_timed_out"
    RATE_LIMITED       = "rate_limited"
    REQUEST_RESOLVED   = "request_resolved"
    REQUEST_FAILED     = "request_failed"
    REQUEST_QUEUED     = "request_queued"
    REQUEST_REPLAYED   = "request_replayed"


@dataclass(frozen=True)
class AnalysisEvent:
    kind: EventKind
    request_id: str
    provider_id: Optional[str] = None
    detail: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "request_id": self.request_id,
            "provider_id": self.provider_id,
            "detail": dict(self.detail),
            "at": self.at.isoformat(),
        }


Handler = Callable[[AnalysisEvent], Any]


class EventBus:

    def __init__(self) -> None:
        self._handlers: list[Handler] = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, handler: Handler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: Handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def emit(self, event: AnalysisEvent) -> None:
        logger.debug("event %s request=%s provider=%s",
                     event.kind.value, event.request_id, event.provider_id)
        for handler in list(self._handlers):
            try:
                result = handler(event)
            except Exception as exc:
                logger.warning("Event handler %r failed on %s: %s",
                               handler, event.kind.value, exc)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Async event handler failed: %s", exc)

    async def drain(self) -> None:
        """Wait until every scheduled async handler has finished."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
