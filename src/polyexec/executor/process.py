"""
Executor that compiles and runs code as an isolated child process.

Every toolchain invocation is a fixed argument vector handed straight to
``exec``; no shell is involved.  The child starts in a new session, so it
leads its own process group, and the whole group is killed on timeout or
stop and swept after a normal exit.  That takes care of helper processes
that compilers and interpreters fork, and of anything the submitted code
leaves running in the background.

Standard output and error are read in chunks into buffers capped at the
request's output limit.  Output past the cap is read and dropped so that a
chatty child never blocks on a full pipe.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..errors import SpawnError
from ..languages import LanguageProfile, render_command
from ..results import ExecutionState, ExecutionStatus, Stage
from ..workspace import Workspace
from .base import BoundedBuffer, CodeExecutor, ExecutionOutcome, RunSpec, StateCallback, append_line

try:
    import resource
except ImportError:  # pragma: no cover - non-POSIX
    resource = None  # type: ignore

logger = logging.getLogger(__name__)


@dataclass
class ProcessStep:
    """Observed result of a single child process."""

    stdout: str
    stderr: str
    exit_code: Optional[int]
    duration_ms: int
    truncated: bool = False
    timed_out: bool = False
    cancelled: bool = False


def describe_exit(exit_code: int) -> str:
    if exit_code < 0:
        try:
            name = signal.Signals(-exit_code).name
        except ValueError:
            name = str(-exit_code)
        return f"Process terminated by signal {name}."
    return f"Process exited with code {exit_code}."


class ProcessExecutor(CodeExecutor):
    """Compile (if the profile says so) and run code in a child process."""

    def __init__(self, read_chunk_size: int = 4096, drain_timeout: float = 1.0) -> None:
        """
        Parameters
        ----------
        read_chunk_size: int, optional
            Number of bytes requested per read from the child's pipes.
        drain_timeout: float, optional
            Seconds to keep reading output after the child has exited.  A
            descendant that escaped the process group may hold the pipes
            open; reading is abandoned after this delay.
        """
        self.read_chunk_size = read_chunk_size
        self.drain_timeout = drain_timeout

    async def execute(
        self,
        profile: LanguageProfile,
        workspace: Workspace,
        spec: RunSpec,
        stop: asyncio.Event,
        on_state: Optional[StateCallback] = None,
    ) -> ExecutionOutcome:
        timings = {}
        stage = Stage.COMPILE
        try:
            if profile.compile_command is not None:
                self._notify(on_state, ExecutionState.COMPILING)
                argv = render_command(profile.compile_command, spec.source_filename, workspace.path)
                logger.info("[%s] Compiling: %s", spec.execution_id, " ".join(argv))
                step = await self._run_subprocess(
                    argv,
                    workspace.path,
                    stdin_data=None,
                    timeout_ms=spec.compile_timeout_ms,
                    max_output_bytes=spec.max_output_bytes,
                    stop=stop,
                )
                timings[Stage.COMPILE.value] = step.duration_ms
                if step.timed_out or step.cancelled or step.exit_code != 0:
                    return self._outcome(
                        step, Stage.COMPILE, timings, spec.compile_timeout_ms, ExecutionStatus.COMPILE_ERROR
                    )

            stage = Stage.EXECUTION
            self._notify(on_state, ExecutionState.RUNNING)
            argv = render_command(profile.run_command, spec.source_filename, workspace.path)
            logger.info("[%s] Running: %s", spec.execution_id, " ".join(argv))
            step = await self._run_subprocess(
                argv,
                workspace.path,
                stdin_data=spec.stdin,
                timeout_ms=spec.timeout_ms,
                max_output_bytes=spec.max_output_bytes,
                stop=stop,
                memory_limit_bytes=profile.memory_limit_bytes,
            )
        except SpawnError as exc:
            logger.warning("[%s] %s", spec.execution_id, exc)
            return ExecutionOutcome(
                status=exc.status,
                stage=stage,
                exit_code=None,
                timings=timings,
                message=str(exc),
            )
        timings[Stage.EXECUTION.value] = step.duration_ms
        return self._outcome(step, Stage.EXECUTION, timings, spec.timeout_ms, ExecutionStatus.RUNTIME_ERROR)

    @staticmethod
    def _outcome(
        step: ProcessStep,
        stage: Stage,
        timings: dict,
        timeout_ms: int,
        failed_status: ExecutionStatus,
    ) -> ExecutionOutcome:
        stderr = step.stderr
        if step.cancelled:
            status, message = ExecutionStatus.CANCELLED, "Execution stopped on request."
        elif step.timed_out:
            status = ExecutionStatus.TIMED_OUT
            message = f"Execution timed out after {timeout_ms} ms."
            stderr = append_line(stderr, message)
        elif step.exit_code == 0:
            status, message = ExecutionStatus.SUCCEEDED, ""
        else:
            status = failed_status
            message = describe_exit(step.exit_code if step.exit_code is not None else -1)
            stderr = append_line(stderr, message)
        return ExecutionOutcome(
            status=status,
            stage=stage,
            stdout=step.stdout,
            stderr=stderr,
            exit_code=step.exit_code,
            timings=timings,
            truncated=step.truncated,
            message=message,
        )

    async def _run_subprocess(
        self,
        args: List[str],
        cwd: Path,
        stdin_data: Optional[str],
        timeout_ms: int,
        max_output_bytes: int,
        stop: asyncio.Event,
        memory_limit_bytes: Optional[int] = None,
    ) -> ProcessStep:
        """
        Run ``args`` in ``cwd`` and wait for it, the timeout or ``stop``.

        Parameters
        ----------
        args: list[str]
            Command and arguments to execute.
        cwd: Path
            Working directory for the subprocess.
        stdin_data: str, optional
            Data to supply on standard input.  Input is closed afterwards.
        timeout_ms: int
            Wall-clock budget.  When it runs out the process group is killed.
        max_output_bytes: int
            Cap applied to each of stdout and stderr.
        stop: asyncio.Event
            Kills the process group when set.
        memory_limit_bytes: int, optional
            Address space limit applied to the child where supported.

        Returns
        -------
        ProcessStep
            Captured output, exit status and how the wait ended.

        Raises
        ------
        SpawnError
            If the toolchain binary cannot be started at all.
        """
        start_time = time.perf_counter()
        process = await self._spawn(args, cwd)

        # The child is already running its own image by now, so it may
        # allocate past the limit before this lands.
        self._apply_limits(process.pid, memory_limit_bytes)

        stdout_buf = BoundedBuffer(max_output_bytes)
        stderr_buf = BoundedBuffer(max_output_bytes)
        pumps = [
            asyncio.ensure_future(self._pump(process.stdout, stdout_buf)),
            asyncio.ensure_future(self._pump(process.stderr, stderr_buf)),
        ]
        feeder = asyncio.ensure_future(self._feed(process.stdin, stdin_data))
        waiter = asyncio.ensure_future(process.wait())
        stopper = asyncio.ensure_future(stop.wait())

        timed_out = cancelled = False
        try:
            done, _ = await asyncio.wait(
                {waiter, stopper},
                timeout=timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if waiter not in done:
                timed_out = not done
                cancelled = stopper in done
                self._kill_group(process.pid)
                await waiter
        finally:
            stopper.cancel()
            if process.returncode is None:
                self._kill_group(process.pid)
            else:
                self._sweep_group(process.pid)
            feeder.cancel()
            _, pending = await asyncio.wait(pumps, timeout=self.drain_timeout)
            for pump in pending:
                pump.cancel()
            await asyncio.gather(feeder, *pumps, return_exceptions=True)

        duration = int((time.perf_counter() - start_time) * 1000)
        return ProcessStep(
            stdout=stdout_buf.getvalue(),
            stderr=stderr_buf.getvalue(),
            exit_code=process.returncode,
            duration_ms=duration,
            truncated=stdout_buf.truncated or stderr_buf.truncated,
            timed_out=timed_out,
            cancelled=cancelled,
        )

    @staticmethod
    async def _spawn(args: List[str], cwd: Path) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            reason = exc.strerror or str(exc)
            raise SpawnError(f"Failed to start {args[0]}: {reason}") from exc

    async def _pump(self, stream: Optional[asyncio.StreamReader], buffer: BoundedBuffer) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(self.read_chunk_size)
            if not chunk:
                return
            buffer.write(chunk)

    @staticmethod
    async def _feed(stream: Optional[asyncio.StreamWriter], data: Optional[str]) -> None:
        if stream is None:
            return
        try:
            if data:
                stream.write(data.encode("utf-8"))
                await stream.drain()
        except (BrokenPipeError, ConnectionResetError):
            pass
        finally:
            stream.close()

    @staticmethod
    def _apply_limits(pid: int, memory_limit_bytes: Optional[int]) -> None:
        if resource is None or not hasattr(resource, "prlimit"):
            return
        try:
            resource.prlimit(pid, resource.RLIMIT_CORE, (0, 0))
            if memory_limit_bytes:
                resource.prlimit(pid, resource.RLIMIT_AS, (memory_limit_bytes, memory_limit_bytes))
        except (ProcessLookupError, PermissionError):
            pass
        except (OSError, ValueError) as exc:
            logger.warning("Could not apply resource limits to pid %s: %s", pid, exc)

    @staticmethod
    def _kill_group(pgid: int) -> None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(pgid, signal.SIGKILL)

    @classmethod
    def _sweep_group(cls, pgid: int) -> None:
        """Kill what is left of a group whose leader has been reaped.

        While any member is alive the kernel keeps the group id reserved.
        Once the group is empty the leader's pid may be handed to a new
        session leader, so the sweep is skipped if that pid is in use.
        """
        try:
            os.getpgid(pgid)
        except ProcessLookupError:
            cls._kill_group(pgid)
            return
        logger.debug("Pid %s is in use again; skipping group sweep", pgid)
