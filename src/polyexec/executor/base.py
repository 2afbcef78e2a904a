"""
Base interfaces and dataclasses for execution backends.

All concrete executors inherit from :class:`CodeExecutor` and implement
:meth:`CodeExecutor.execute`.  Executors run a single request inside a
workspace the orchestrator has already populated with the source file, and
report the outcome as an :class:`ExecutionOutcome`.  They never raise for
anything the submitted code does; failures of the code itself are
outcomes, not exceptions.

Resource limits (wall clock, output size, and where supported memory) are
enforced by the executor.  Containers and processes outside of Python are
assumed to be configured with additional safeguards (e.g. Docker isolation,
seccomp profiles) to prevent system compromise.
"""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from ..languages import LanguageProfile
from ..results import ExecutionState, ExecutionStatus, Stage
from ..workspace import Workspace

StateCallback = Callable[[ExecutionState], None]


def append_line(text: str, line: str) -> str:
    """Append ``line`` to ``text``, starting it on a line of its own."""
    if text and not text.endswith("\n"):
        text += "\n"
    return text + line


class BoundedBuffer:
    """Byte buffer that keeps at most ``limit`` bytes.

    Writes past the limit are counted and dropped, and :attr:`truncated` is
    set, so producers can keep draining a pipe without unbounded memory.
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.truncated = False
        self.total = 0
        self._data = bytearray()

    def write(self, data: bytes) -> None:
        self.total += len(data)
        room = self.limit - len(self._data)
        if len(data) > room:
            self.truncated = True
            data = data[: max(room, 0)]
        self._data += data

    def __len__(self) -> int:
        return len(self._data)

    def getvalue(self) -> str:
        return self._data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class RunSpec:
    """Everything an executor needs to know about one request.

    Attributes
    ----------
    execution_id: str
        Identifier of the request, used for logging only.
    source_filename: str
        Name of the source file inside the workspace.
    source_code: str
        The user supplied code.  Also written to ``source_filename``.
    stdin: str, optional
        Data to feed to the program before its input is closed.
    timeout_ms: int
        Wall-clock budget of the run step.
    compile_timeout_ms: int
        Independent wall-clock budget of the compile step, if any.
    max_output_bytes: int
        Per-stream cap on captured output.
    """

    execution_id: str
    source_filename: str
    source_code: str
    stdin: Optional[str]
    timeout_ms: int
    compile_timeout_ms: int
    max_output_bytes: int


@dataclass
class ExecutionOutcome:
    """What an executor observed while running a request."""

    status: ExecutionStatus
    stage: Stage
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    timings: Dict[str, int] = field(default_factory=dict)
    truncated: bool = False
    message: str = ""


class CodeExecutor(abc.ABC):
    """
    Abstract base class defining the interface for code executors.

    Executors run user‑supplied code in its workspace and return the
    captured output.  Subclasses override :meth:`execute`.
    """

    @abc.abstractmethod
    async def execute(
        self,
        profile: LanguageProfile,
        workspace: Workspace,
        spec: RunSpec,
        stop: asyncio.Event,
        on_state: Optional[StateCallback] = None,
    ) -> ExecutionOutcome:
        """Run ``spec`` according to ``profile`` inside ``workspace``.

        Parameters
        ----------
        profile: LanguageProfile
            Resolved profile of the request's language.
        workspace: Workspace
            Directory holding the source file.  Executors must guarantee
            that any process they start uses it as its working directory.
        spec: RunSpec
            Code, input and limits of the request.
        stop: asyncio.Event
            Set by the orchestrator when the caller asks to stop the
            execution.  Executors abandon the work as soon as they see it.
        on_state: callable, optional
            Invoked with :attr:`ExecutionState.COMPILING` and
            :attr:`ExecutionState.RUNNING` as the executor enters each step.

        Returns
        -------
        ExecutionOutcome
            Status, captured output, exit status and per-stage timings.
        """
        raise NotImplementedError

    @staticmethod
    def _notify(on_state: Optional[StateCallback], state: ExecutionState) -> None:
        if on_state is not None:
            on_state(state)
