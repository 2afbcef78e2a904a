"""Exception taxonomy for the execution engine.

Components raise these and each carries the result status it maps to.
The executors turn :class:`SpawnError` and :class:`CapabilityDenied` into
outcomes themselves, since those keep the stage and timings of the run;
the orchestrator converts every other one into an
:class:`~polyexec.results.ExecutionResult`, so none of them ever reaches a
caller of ``Orchestrator.submit``.
"""

from __future__ import annotations

from .results import ExecutionStatus


class ExecutionError(Exception):
    """Base class for engine errors."""

    status = ExecutionStatus.INTERNAL_ERROR


class ValidationFailed(ExecutionError):
    """Raised when a request is malformed."""

    status = ExecutionStatus.VALIDATION_FAILED


class UnsupportedLanguage(ExecutionError):
    """Raised when a language id is not on the allow-list."""

    status = ExecutionStatus.UNSUPPORTED_LANGUAGE

    def __init__(self, language: str) -> None:
        super().__init__(f"Unsupported language: {language}")
        self.language = language


class QueueFull(ExecutionError):
    """Raised when the admission queue has no room left."""

    status = ExecutionStatus.QUEUE_FULL


class SpawnError(ExecutionError):
    """Raised when a toolchain binary cannot be started at all."""

    status = ExecutionStatus.SPAWN_ERROR


class CapabilityDenied(ExecutionError):
    """Raised when sandboxed code is rejected before it runs."""

    status = ExecutionStatus.CAPABILITY_DENIED
