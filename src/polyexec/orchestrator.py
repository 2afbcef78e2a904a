"""
Execution orchestrator.

:class:`Orchestrator` is the single entry point of the engine.  It turns an
:class:`~polyexec.results.ExecutionRequest` into exactly one
:class:`~polyexec.results.ExecutionResult`:

1. validate the request and resolve its language profile,
2. wait for a concurrency slot in FIFO order,
3. allocate a workspace and write the source file into it,
4. hand the run to the in-process sandbox or the process executor,
5. release the slot and schedule deletion of the workspace,

whatever happens in between.  :meth:`Orchestrator.submit` never raises for
anything the request or the submitted code does; every failure, including
internal ones, is reported as a result with ``success`` set to false.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from .config import Config
from .errors import ExecutionError, ValidationFailed
from .events import ExecutionEvent, ExecutionListener, ListenerGroup, LoggingListener
from .executor import CodeExecutor, ExecutionOutcome, ProcessExecutor, RunSpec, SandboxExecutor
from .languages import LanguageProfile, LanguageRegistry, build_registry, validate_filename
from .limiter import ConcurrencyLimiter, Slot
from .results import ExecutionRequest, ExecutionResult, ExecutionState, ExecutionStatus, Stage
from .workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)

_EXECUTION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass
class _Execution:
    request: ExecutionRequest
    language: str
    stop: asyncio.Event
    state: ExecutionState = ExecutionState.QUEUED


class Orchestrator:
    """Run execution requests within the configured limits."""

    def __init__(
        self,
        config: Config,
        registry: Optional[LanguageRegistry] = None,
        workspaces: Optional[WorkspaceManager] = None,
        limiter: Optional[ConcurrencyLimiter] = None,
        process_executor: Optional[CodeExecutor] = None,
        sandbox_executor: Optional[CodeExecutor] = None,
        listeners: Optional[Iterable[ExecutionListener]] = None,
    ) -> None:
        self.config = config
        self.registry = registry or build_registry(config)
        self.workspaces = workspaces or WorkspaceManager(config.workspace_root)
        self.limiter = limiter or ConcurrencyLimiter(config.max_concurrency, config.max_queue_depth)
        self.process_executor = process_executor or ProcessExecutor()
        self.sandbox_executor = sandbox_executor or SandboxExecutor()
        self.listeners = ListenerGroup(listeners if listeners is not None else [LoggingListener()])
        self._inflight: Dict[str, _Execution] = {}

    def start(self) -> None:
        """Start background maintenance.  Requires a running event loop."""
        if self.config.sweep_interval_seconds > 0:
            max_age = max(
                self.config.cleanup_grace_seconds,
                (self.config.compile_timeout_ms + self.config.max_timeout_ms) / 1000,
            )
            self.workspaces.start_sweeper(self.config.sweep_interval_seconds, max_age)

    async def submit(self, request: ExecutionRequest) -> ExecutionResult:
        """Run ``request`` and return its result.

        Parameters
        ----------
        request: ExecutionRequest
            The code to run and its optional limits.

        Returns
        -------
        ExecutionResult
            The single result for ``request``.  Rejected requests are
            reported with ``validation_failed``, ``unsupported_language`` or
            ``queue_full`` status without any code having run.
        """
        start_time = time.perf_counter()
        try:
            profile, filename = self._validate(request)
        except ExecutionError as exc:
            logger.info("[%s] Rejected request: %s", request.id, exc)
            result = self._failure(request, exc.status, str(exc), start_time)
            self.listeners.execution_completed(result)
            return result
        except Exception as exc:
            # Fields of the wrong type, from callers that bypass the API models.
            logger.info("[%s] Rejected malformed request: %s", request.id, exc)
            result = self._failure(
                request, ExecutionStatus.VALIDATION_FAILED, f"Malformed request: {exc}", start_time
            )
            self.listeners.execution_completed(result)
            return result

        execution = _Execution(request=request, language=profile.id, stop=asyncio.Event())
        self._inflight[request.id] = execution
        try:
            self.listeners.execution_started(self._event(execution))
            self._transition(execution, ExecutionState.QUEUED)
            result = await self._run(execution, profile, filename, start_time)
        finally:
            del self._inflight[request.id]
        self._transition(execution, ExecutionState.DONE)
        self.listeners.execution_completed(result)
        return result

    def stop(self, execution_id: str) -> bool:
        """Ask an in-flight execution to stop.

        A queued execution leaves the queue, a running process group is
        killed, and a sandbox run is abandoned.  The execution's result then
        carries the ``cancelled`` status.  Returns False when no execution
        with that id is in flight.
        """
        execution = self._inflight.get(execution_id)
        if execution is None:
            return False
        logger.info("[%s] Stop requested", execution_id)
        execution.stop.set()
        return True

    def stats(self) -> Dict[str, Any]:
        return {
            "capacity": self.limiter.limit,
            "active": self.limiter.active,
            "queued": self.limiter.queued,
            "max_queue_depth": self.limiter.max_queue_depth,
            "in_flight": sorted(self._inflight),
            "pending_cleanups": self.workspaces.pending,
            "abandoned_sandbox_threads": getattr(self.sandbox_executor, "abandoned_threads", 0),
        }

    async def aclose(self) -> None:
        """Stop in-flight executions and delete every pending workspace now."""
        for execution in list(self._inflight.values()):
            execution.stop.set()
        await self.workspaces.aclose()

    def _validate(self, request: ExecutionRequest) -> Tuple[LanguageProfile, str]:
        if not isinstance(request.id, str) or not _EXECUTION_ID_RE.match(request.id):
            raise ValidationFailed(
                "Execution id must be 1-64 characters of letters, digits, '_' or '-'"
            )
        if request.id in self._inflight:
            raise ValidationFailed(f"Execution id {request.id!r} is already in flight")
        if not request.source_code or not request.source_code.strip():
            raise ValidationFailed("Source code must not be empty")
        if len(request.source_code.encode("utf-8")) > self.config.max_source_bytes:
            raise ValidationFailed(
                f"Source code exceeds {self.config.max_source_bytes} bytes"
            )
        if request.stdin is not None and len(request.stdin.encode("utf-8")) > self.config.max_stdin_bytes:
            raise ValidationFailed(f"Stdin exceeds {self.config.max_stdin_bytes} bytes")
        if request.timeout_ms is not None and request.timeout_ms <= 0:
            raise ValidationFailed("timeout_ms must be positive")
        if request.max_output_bytes is not None and request.max_output_bytes <= 0:
            raise ValidationFailed("max_output_bytes must be positive")
        profile = self.registry.resolve(request.language)
        filename = validate_filename(profile, request.filename)
        return profile, filename

    def _run_spec(self, request: ExecutionRequest, profile: LanguageProfile, filename: str) -> RunSpec:
        timeout_ms = request.timeout_ms or profile.default_timeout_ms or self.config.default_timeout_ms
        max_output = min(
            request.max_output_bytes or self.config.max_output_bytes,
            self.config.max_output_bytes,
        )
        return RunSpec(
            execution_id=request.id,
            source_filename=filename,
            source_code=request.source_code,
            stdin=request.stdin,
            timeout_ms=min(timeout_ms, self.config.max_timeout_ms),
            compile_timeout_ms=profile.compile_timeout_ms or self.config.compile_timeout_ms,
            max_output_bytes=max_output,
        )

    async def _run(
        self,
        execution: _Execution,
        profile: LanguageProfile,
        filename: str,
        start_time: float,
    ) -> ExecutionResult:
        request = execution.request
        slot: Optional[Slot] = None
        workspace: Optional[Workspace] = None
        try:
            slot = await self._admit(execution)
            if slot is None:
                result = self._failure(
                    request,
                    ExecutionStatus.CANCELLED,
                    "Execution stopped while queued.",
                    start_time,
                    language=profile.id,
                )
            else:
                workspace = self.workspaces.allocate(request.id)
                self.workspaces.write(workspace, filename, request.source_code)
                executor = self.sandbox_executor if profile.sandboxed else self.process_executor
                outcome = await executor.execute(
                    profile,
                    workspace,
                    self._run_spec(request, profile, filename),
                    execution.stop,
                    on_state=lambda state: self._transition(execution, state),
                )
                result = self._from_outcome(request, profile, outcome, start_time)
        except ExecutionError as exc:
            logger.info("[%s] %s: %s", request.id, exc.status.value, exc)
            result = self._failure(request, exc.status, str(exc), start_time, language=profile.id)
        except Exception as exc:
            logger.exception("[%s] Unhandled error during execution: %s", request.id, exc)
            result = self._failure(
                request,
                ExecutionStatus.INTERNAL_ERROR,
                f"Internal error: {exc}",
                start_time,
                language=profile.id,
            )
        finally:
            if slot is not None:
                slot.release()
            if workspace is not None:
                self.workspaces.schedule_destroy(workspace, self.config.cleanup_grace_seconds)

        self._transition(execution, ExecutionState.FINISHED)
        if workspace is not None:
            self._transition(execution, ExecutionState.CLEANUP_SCHEDULED)
        return result

    async def _admit(self, execution: _Execution) -> Optional[Slot]:
        """Wait for a slot, or return None if the execution is stopped first."""
        if execution.stop.is_set():
            return None
        acquire = asyncio.ensure_future(self.limiter.acquire())
        stopper = asyncio.ensure_future(execution.stop.wait())
        try:
            await asyncio.wait({acquire, stopper}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._abandon_acquire(acquire)
            raise
        finally:
            stopper.cancel()

        if acquire.done():
            slot = acquire.result()
            if execution.stop.is_set():
                slot.release()
                return None
            return slot

        acquire.cancel()
        try:
            slot = await acquire
        except asyncio.CancelledError:
            return None
        slot.release()
        return None

    @staticmethod
    def _abandon_acquire(acquire: "asyncio.Future[Slot]") -> None:
        if not acquire.done():
            acquire.cancel()
        elif not acquire.cancelled() and acquire.exception() is None:
            acquire.result().release()

    def _transition(self, execution: _Execution, state: ExecutionState) -> None:
        execution.state = state
        self.listeners.state_changed(self._event(execution))

    @staticmethod
    def _event(execution: _Execution) -> ExecutionEvent:
        return ExecutionEvent(
            execution_id=execution.request.id,
            language=execution.language,
            state=execution.state,
        )

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.perf_counter() - start_time) * 1000)

    def _from_outcome(
        self,
        request: ExecutionRequest,
        profile: LanguageProfile,
        outcome: ExecutionOutcome,
        start_time: float,
    ) -> ExecutionResult:
        return ExecutionResult(
            execution_id=request.id,
            status=outcome.status,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            exit_code=outcome.exit_code,
            stage=outcome.stage,
            duration_ms=self._elapsed_ms(start_time),
            timings=dict(outcome.timings),
            truncated=outcome.truncated,
            language=profile.id,
            message=outcome.message,
        )

    def _failure(
        self,
        request: ExecutionRequest,
        status: ExecutionStatus,
        message: str,
        start_time: float,
        language: Optional[str] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            execution_id=request.id,
            status=status,
            stderr=message,
            stage=Stage.EXECUTION,
            duration_ms=self._elapsed_ms(start_time),
            language=language,
            message=message,
        )
