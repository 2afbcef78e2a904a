"""
Core value types shared by every component of the engine.

An :class:`ExecutionRequest` enters the orchestrator, and exactly one
:class:`ExecutionResult` leaves it.  Both are frozen dataclasses; nothing
downstream mutates them after construction.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import Mapping, Optional


class ExecutionStatus(str, enum.Enum):
    """Terminal outcome of an execution."""

    SUCCEEDED = "succeeded"
    COMPILE_ERROR = "compile_error"
    RUNTIME_ERROR = "runtime_error"
    TIMED_OUT = "timed_out"
    SPAWN_ERROR = "spawn_error"
    CAPABILITY_DENIED = "capability_denied"
    VALIDATION_FAILED = "validation_failed"
    UNSUPPORTED_LANGUAGE = "unsupported_language"
    QUEUE_FULL = "queue_full"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class Stage(str, enum.Enum):
    COMPILE = "compile"
    EXECUTION = "execution"


class ExecutionState(str, enum.Enum):
    """Lifecycle states reported to listeners."""

    QUEUED = "queued"
    COMPILING = "compiling"
    RUNNING = "running"
    FINISHED = "finished"
    CLEANUP_SCHEDULED = "cleanup_scheduled"
    DONE = "done"


def new_execution_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ExecutionRequest:
    """A single request to run ``source_code`` written in ``language``.

    ``timeout_ms`` and ``max_output_bytes`` are optional; the orchestrator
    falls back to the language profile and the service configuration.
    """

    language: str
    source_code: str
    stdin: Optional[str] = None
    timeout_ms: Optional[int] = None
    max_output_bytes: Optional[int] = None
    filename: Optional[str] = None
    id: str = field(default_factory=new_execution_id)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one execution.

    Attributes
    ----------
    execution_id: str
        Identifier of the request this result belongs to.
    status: ExecutionStatus
        Terminal status.  ``success`` is derived from it.
    stdout, stderr: str
        Captured output, capped at the request's output limit.
    exit_code: int, optional
        Exit status of the last step that ran, if any process or sandbox
        ran at all.  Negative values denote termination by a signal.
    stage: Stage
        ``compile`` if the result was decided during compilation,
        ``execution`` otherwise.
    duration_ms: int
        Wall-clock time from submission to finalisation.
    timings: Mapping[str, int]
        Milliseconds spent per stage that actually ran.
    """

    execution_id: str
    status: ExecutionStatus
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    stage: Stage = Stage.EXECUTION
    duration_ms: int = 0
    timings: Mapping[str, int] = field(default_factory=dict)
    truncated: bool = False
    language: Optional[str] = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status is ExecutionStatus.SUCCEEDED
