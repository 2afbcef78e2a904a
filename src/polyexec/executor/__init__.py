"""
Execution backends for the engine.

Two backends implement the ``CodeExecutor`` interface from ``base.py``:

* ``ProcessExecutor`` compiles (when the language needs it) and runs code
  as a child process in its own process group.
* ``SandboxExecutor`` runs Python, the host language, inside a fresh
  restricted in-process sandbox.

The orchestrator selects one per request from the language profile.
"""

from .base import BoundedBuffer, CodeExecutor, ExecutionOutcome, RunSpec
from .process import ProcessExecutor
from .sandbox import RestrictedSandbox, SandboxExecutor, check_policy

__all__ = [
    "BoundedBuffer",
    "CodeExecutor",
    "ExecutionOutcome",
    "RunSpec",
    "ProcessExecutor",
    "RestrictedSandbox",
    "SandboxExecutor",
    "check_policy",
]
