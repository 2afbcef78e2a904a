"""Multi-language code execution engine.

This package runs untrusted snippets in one of several languages inside a
bounded environment and returns the captured output.  Interpreted and
compiled languages run as child processes in throwaway workspaces; Python
runs in an in-process restricted sandbox.

The top‑level modules include:

* ``config`` – configuration handling for environment variables.
* ``results`` – request, result, status and lifecycle types.
* ``errors`` – exception taxonomy mapped onto result statuses.
* ``languages`` – the language profile registry.
* ``workspace`` – per‑execution directories and their deferred cleanup.
* ``limiter`` – concurrency slots with a bounded FIFO queue.
* ``executor`` – the process and sandbox execution backends.
* ``events`` – lifecycle listener hooks.
* ``validation`` – static inspection of snippets.
* ``orchestrator`` – the entry point tying everything together.
* ``models`` / ``api`` – Pydantic schemas and the FastAPI application.
"""

from .config import Config
from .orchestrator import Orchestrator
from .results import ExecutionRequest, ExecutionResult, ExecutionState, ExecutionStatus, Stage

__all__ = [
    "Config",
    "Orchestrator",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionState",
    "ExecutionStatus",
    "Stage",
]
