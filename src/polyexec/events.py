"""
Listener hooks for execution lifecycle events.

Collaborators outside the engine (presence broadcasting, audit trails,
metrics) subscribe by implementing :class:`ExecutionListener` and passing it
to the orchestrator.  All methods are optional no-ops.  Listeners run on the
event loop, so they must return quickly; exceptions they raise are logged
and otherwise ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from .results import ExecutionResult, ExecutionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionEvent:
    """A state transition of one execution."""

    execution_id: str
    language: str
    state: ExecutionState
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ExecutionListener:
    """Base class for lifecycle listeners."""

    def execution_started(self, event: ExecutionEvent) -> None:
        """Called once the request has been accepted and queued."""

    def state_changed(self, event: ExecutionEvent) -> None:
        """Called on every lifecycle transition."""

    def execution_completed(self, result: ExecutionResult) -> None:
        """Called exactly once with the final result."""


class LoggingListener(ExecutionListener):
    """Log lifecycle events through the ``polyexec.events`` logger."""

    def __init__(self, level: int = logging.DEBUG) -> None:
        self.level = level

    def execution_started(self, event: ExecutionEvent) -> None:
        logger.log(self.level, "[%s] Started %s execution", event.execution_id, event.language)

    def state_changed(self, event: ExecutionEvent) -> None:
        logger.log(self.level, "[%s] -> %s", event.execution_id, event.state.value)

    def execution_completed(self, result: ExecutionResult) -> None:
        logger.info(
            "[%s] Execution finished: status=%s, exit_code=%s, duration_ms=%s",
            result.execution_id,
            result.status.value,
            result.exit_code,
            result.duration_ms,
        )


class ListenerGroup:
    """Fan events out to several listeners, isolating their failures."""

    def __init__(self, listeners: Optional[Iterable[ExecutionListener]] = None) -> None:
        self._listeners: List[ExecutionListener] = list(listeners or [])

    def add(self, listener: ExecutionListener) -> None:
        self._listeners.append(listener)

    def remove(self, listener: ExecutionListener) -> None:
        self._listeners.remove(listener)

    def __len__(self) -> int:
        return len(self._listeners)

    def _dispatch(self, method: str, payload: object) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, method)(payload)
            except Exception:
                logger.exception("Listener %r failed in %s", listener, method)

    def execution_started(self, event: ExecutionEvent) -> None:
        self._dispatch("execution_started", event)

    def state_changed(self, event: ExecutionEvent) -> None:
        self._dispatch("state_changed", event)

    def execution_completed(self, result: ExecutionResult) -> None:
        self._dispatch("execution_completed", result)
