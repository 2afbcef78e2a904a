"""
In-process restricted sandbox for Python snippets.

Python is the host language, so Python code can be run without spawning a
process.  Each request gets a brand new :class:`RestrictedSandbox`; an
instance is single-use because a restricted global surface can accumulate
mutated or leaked references.

The sandbox exposes a curated surface only:

* output capture through ``print`` and a ``sys`` stand-in whose ``stdout``
  and ``stderr`` write into per-instance bounded buffers,
* ``input()`` and ``sys.stdin`` fed from the request's stdin,
* a ``time`` stand-in whose ``sleep`` never outlives the deadline,
* a short list of pure standard library modules, exposed through
  per-instance proxies that carry neither submodules nor private names.

Everything else (``open``, ``exec``/``eval``/``compile``, ``globals``,
unlisted imports, dunder and frame attribute traversal) is denied.  A
static pass over the AST rejects what it can see before anything runs; the
rest is caught at runtime by the curated builtins.  A runtime denial is
recorded on the instance, so code that swallows the error is still
reported as denied.

Runs happen on a daemon thread raced against the wall-clock budget.  When
the budget runs out (or the caller stops the run) the instance is flagged
to abort, which a per-thread trace hook turns into an exception at the
next traced line, and the thread is abandoned without being awaited.  The
trace hook and the event loop only get to run between C calls, so the code
is also rewritten to keep those calls short (see :mod:`.guards`).

This is a containment layer for well-meaning or buggy code, not a security
boundary against a determined attacker; deployments that run hostile code
should also isolate the host process itself.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import importlib
import io
import logging
import sys
import threading
import time
import traceback
import types
import weakref
from typing import Any, Dict, FrozenSet, List, Optional

from ..errors import CapabilityDenied
from ..languages import LanguageProfile
from ..results import ExecutionState, ExecutionStatus, Stage
from ..workspace import Workspace
from .base import BoundedBuffer, CodeExecutor, ExecutionOutcome, RunSpec, StateCallback, append_line
from .guards import BUILTIN_OVERRIDES, HELPERS, MODULE_OVERRIDES, RESERVED_PREFIX, guard_arithmetic

logger = logging.getLogger(__name__)

SAFE_MODULES: FrozenSet[str] = frozenset(
    {
        "abc",
        "array",
        "base64",
        "binascii",
        "bisect",
        "cmath",
        "collections",
        "collections.abc",
        "copy",
        "dataclasses",
        "datetime",
        "difflib",
        "enum",
        "functools",
        "hashlib",
        "heapq",
        "itertools",
        "json",
        "math",
        "numbers",
        "operator",
        "random",
        "statistics",
        "string",
        "struct",
        "textwrap",
        "unicodedata",
    }
)

# Public names that would hand out attribute traversal by string.
MODULE_DENYLIST: Dict[str, FrozenSet[str]] = {
    "operator": frozenset({"attrgetter", "methodcaller"}),
    "string": frozenset({"Formatter"}),
}

SHIM_MODULES: FrozenSet[str] = frozenset({"sys", "time"})

SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytearray", "bytes",
    "callable", "chr", "classmethod", "complex", "dict", "dir", "divmod",
    "enumerate", "filter", "float", "format", "frozenset", "hash", "hex",
    "id", "int", "isinstance", "issubclass", "iter", "len", "list", "map",
    "max", "min", "next", "object", "oct", "ord", "pow", "property",
    "range", "repr", "reversed", "round", "set", "slice", "sorted",
    "staticmethod", "str", "sum", "super", "tuple", "type", "zip",
    "Ellipsis", "NotImplemented",
)

DENIED_BUILTINS = (
    "breakpoint", "compile", "eval", "exec", "globals", "help", "locals",
    "memoryview", "open", "vars",
)

ALLOWED_DUNDER_ATTRIBUTES: FrozenSet[str] = frozenset(
    {
        "__init__", "__name__", "__qualname__", "__doc__", "__class__",
        "__str__", "__repr__", "__len__", "__iter__", "__next__",
        "__enter__", "__exit__", "__call__", "__eq__", "__ne__", "__hash__",
        "__lt__", "__le__", "__gt__", "__ge__", "__add__", "__sub__",
        "__getitem__", "__setitem__", "__contains__",
    }
)

BLOCKED_ATTRIBUTES: FrozenSet[str] = frozenset(
    {
        "ag_code", "ag_frame", "cr_await", "cr_code", "cr_frame",
        "f_back", "f_builtins", "f_code", "f_globals", "f_locals",
        "gi_code", "gi_frame", "gi_yieldfrom", "mro", "tb_frame", "tb_next",
    }
)

FORBIDDEN_NAMES: FrozenSet[str] = frozenset(
    {
        "__builtins__", "__loader__", "__spec__", "__build_class__",
        "BaseException", "GeneratorExit", "KeyboardInterrupt", "SystemExit",
    }
)


class CapabilityViolation(BaseException):
    """Raised inside sandboxed code that reaches for a denied capability."""


class SandboxAbort(BaseException):
    """Raised inside sandboxed code to unwind it after a timeout or stop."""


def _attribute_allowed(name: str) -> bool:
    if name in BLOCKED_ATTRIBUTES:
        return False
    if name.startswith("__"):
        return name in ALLOWED_DUNDER_ATTRIBUTES
    return True


def _module_allowed(name: str) -> bool:
    return name in SAFE_MODULES or name in SHIM_MODULES


class _PolicyVisitor(ast.NodeVisitor):
    def __init__(self) -> None:
        self.violations: List[str] = []

    def _flag(self, node: ast.AST, message: str) -> None:
        line = getattr(node, "lineno", "?")
        self.violations.append(f"line {line}: {message}")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if not _attribute_allowed(node.attr):
            self._flag(node, f"access to attribute '{node.attr}' is not allowed")
        self.generic_visit(node)

    def _check_binding(self, node: ast.AST, name: Optional[str]) -> None:
        if name and name.startswith(RESERVED_PREFIX):
            self._flag(node, f"the name '{name}' is reserved")

    def visit_Name(self, node: ast.Name) -> None:
        if node.id in FORBIDDEN_NAMES:
            self._flag(node, f"use of '{node.id}' is not allowed")
        self._check_binding(node, node.id)
        self.generic_visit(node)

    def visit_arg(self, node: ast.arg) -> None:
        self._check_binding(node, node.arg)
        self.generic_visit(node)

    def visit_alias(self, node: ast.alias) -> None:
        self._check_binding(node, node.asname)
        self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._check_binding(node, node.name)
        self.generic_visit(node)

    visit_AsyncFunctionDef = visit_FunctionDef
    visit_ClassDef = visit_FunctionDef

    def visit_MatchAs(self, node: ast.MatchAs) -> None:
        self._check_binding(node, node.name)
        self.generic_visit(node)

    visit_MatchStar = visit_MatchAs

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            if not _module_allowed(alias.name):
                self._flag(node, f"import of '{alias.name}' is not allowed")
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if node.level:
            self._flag(node, "relative imports are not allowed")
        elif not _module_allowed(node.module or ""):
            self._flag(node, f"import of '{node.module}' is not allowed")
        self.generic_visit(node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is None:
            self._flag(node, "bare 'except:' is not allowed; catch Exception instead")
        self._check_binding(node, node.name)
        self.generic_visit(node)


def check_policy(tree: ast.AST) -> List[str]:
    """Return the static policy violations found in ``tree``."""
    visitor = _PolicyVisitor()
    visitor.visit(tree)
    return visitor.violations


def enforce_policy(tree: ast.AST) -> None:
    """Raise :class:`~polyexec.errors.CapabilityDenied` if ``tree`` breaks the policy."""
    violations = check_policy(tree)
    if violations:
        raise CapabilityDenied("; ".join(violations))


class _CaptureStream(io.TextIOBase):
    def __init__(self, buffer: BoundedBuffer) -> None:
        self._buffer = buffer

    def writable(self) -> bool:
        return True

    def write(self, s: str) -> int:
        if not isinstance(s, str):
            raise TypeError(f"write() argument must be str, not {type(s).__name__}")
        self._buffer.write(s.encode("utf-8"))
        return len(s)


class RestrictedSandbox:
    """A single-use restricted evaluation context."""

    def __init__(self, stdin: Optional[str], max_output_bytes: int) -> None:
        self.stdout = BoundedBuffer(max_output_bytes)
        self.stderr = BoundedBuffer(max_output_bytes)
        self.denials: List[str] = []
        self.timed_out = False
        self._abort = threading.Event()
        self._deadline = float("inf")
        self._filename = ""
        self._used = False
        self._stdin = io.StringIO(stdin or "")
        self._out = _CaptureStream(self.stdout)
        self._err = _CaptureStream(self.stderr)
        self._modules: Dict[str, types.ModuleType] = {}
        self._source_lines: List[str] = []

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self) -> None:
        """Ask the running code to unwind at its next traced line."""
        self._abort.set()

    def run(self, code: types.CodeType, filename: str, deadline: float) -> int:
        """Execute ``code`` and return its exit code.

        ``filename`` must be the name ``code`` was compiled under.  Must be
        called at most once per instance, on the thread that should run the
        code.
        """
        if self._used:
            raise RuntimeError("RestrictedSandbox instances are single-use")
        self._used = True
        self._filename = filename
        self._deadline = deadline

        namespace: Dict[str, Any] = {
            "__builtins__": self._builtins(),
            "__name__": "__main__",
            "__doc__": None,
        }
        sys.settrace(self._trace)
        try:
            exec(code, namespace)
            return 0
        except SystemExit as exc:
            return self._exit_code(exc)
        except CapabilityViolation as exc:
            self._err.write(f"CapabilityDenied: {exc}\n")
            return 1
        except SandboxAbort:
            return 1
        except BaseException as exc:
            self._err.write(self._format_exception(exc))
            return 1
        finally:
            sys.settrace(None)

    def set_source(self, source: str) -> None:
        self._source_lines = source.splitlines()

    def _exit_code(self, exc: SystemExit) -> int:
        if exc.code is None:
            return 0
        if isinstance(exc.code, int):
            return exc.code
        self._err.write(f"{exc.code}\n")
        return 1

    def _format_exception(self, exc: BaseException) -> str:
        lines = ["Traceback (most recent call last):\n"]
        for frame, lineno in traceback.walk_tb(exc.__traceback__):
            if frame.f_code.co_filename != self._filename:
                continue
            lines.append(f'  File "{self._filename}", line {lineno}, in {frame.f_code.co_name}\n')
            if 0 < lineno <= len(self._source_lines):
                lines.append(f"    {self._source_lines[lineno - 1].strip()}\n")
        lines.extend(traceback.format_exception_only(type(exc), exc))
        return "".join(lines)

    def _checkpoint(self) -> None:
        if not self._abort.is_set() and time.monotonic() >= self._deadline:
            self.timed_out = True
            self._abort.set()
        if self._abort.is_set():
            raise SandboxAbort()

    def _trace(self, frame: types.FrameType, event: str, arg: Any):
        self._checkpoint()
        if frame.f_code.co_filename == self._filename:
            return self._trace
        return None

    def _deny(self, message: str) -> CapabilityViolation:
        self.denials.append(message)
        return CapabilityViolation(message)

    def _builtins(self) -> Dict[str, Any]:
        namespace: Dict[str, Any] = {name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES}
        for name, value in vars(builtins).items():
            if isinstance(value, type) and issubclass(value, Exception):
                namespace[name] = value
        namespace.update(BUILTIN_OVERRIDES)
        namespace.update(HELPERS)
        namespace["__build_class__"] = builtins.__build_class__
        namespace["__import__"] = self._import
        namespace["print"] = self._print
        namespace["input"] = self._input
        namespace["getattr"] = self._getattr
        namespace["hasattr"] = self._hasattr
        namespace["setattr"] = self._setattr
        namespace["delattr"] = self._delattr
        namespace["exit"] = namespace["quit"] = self._exit
        for name in DENIED_BUILTINS:
            namespace[name] = self._denied(f"{name}() is not available in the sandbox")
        return namespace

    def _denied(self, message: str):
        def denied(*args: Any, **kwargs: Any) -> Any:
            raise self._deny(message)

        denied.__name__ = "denied"
        return denied

    def _print(self, *args: Any, sep: Optional[str] = " ", end: Optional[str] = "\n", file: Any = None, flush: bool = False) -> None:
        stream = self._out if file is None else file
        sep = " " if sep is None else sep
        end = "\n" if end is None else end
        stream.write(sep.join(str(arg) for arg in args) + end)

    def _input(self, prompt: Any = "") -> str:
        if prompt:
            self._out.write(str(prompt))
        line = self._stdin.readline()
        if not line:
            raise EOFError("EOF when reading a line")
        return line.rstrip("\n")

    def _exit(self, code: Any = None) -> None:
        raise SystemExit(code)

    def _check_attribute(self, name: Any) -> None:
        if isinstance(name, str) and not _attribute_allowed(name):
            raise self._deny(f"access to attribute '{name}' is not allowed")

    def _getattr(self, obj: Any, name: str, *default: Any) -> Any:
        self._check_attribute(name)
        return getattr(obj, name, *default)

    def _hasattr(self, obj: Any, name: str) -> bool:
        self._check_attribute(name)
        return hasattr(obj, name)

    def _setattr(self, obj: Any, name: str, value: Any) -> None:
        self._check_attribute(name)
        setattr(obj, name, value)

    def _delattr(self, obj: Any, name: str) -> None:
        self._check_attribute(name)
        delattr(obj, name)

    def _import(self, name: str, globals: Any = None, locals: Any = None, fromlist: Any = (), level: int = 0) -> types.ModuleType:
        if level:
            raise self._deny("relative imports are not allowed")
        if not _module_allowed(name):
            raise self._deny(f"import of '{name}' is not allowed")
        if fromlist or "." not in name:
            return self._module(name)
        top, _, rest = name.partition(".")
        parent = self._module(top)
        setattr(parent, rest, self._module(name))
        return parent

    def _module(self, name: str) -> types.ModuleType:
        cached = self._modules.get(name)
        if cached is not None:
            return cached
        if name == "sys":
            proxy = self._sys_module()
        elif name == "time":
            proxy = self._time_module()
        else:
            proxy = self._proxy(importlib.import_module(name))
        self._modules[name] = proxy
        return proxy

    @staticmethod
    def _proxy(module: types.ModuleType) -> types.ModuleType:
        proxy = types.ModuleType(module.__name__)
        denied = MODULE_DENYLIST.get(module.__name__, frozenset())
        for attr in dir(module):
            if attr.startswith("_") or attr in denied:
                continue
            value = getattr(module, attr)
            if isinstance(value, types.ModuleType):
                continue
            setattr(proxy, attr, value)
        for attr, value in MODULE_OVERRIDES.get(module.__name__, {}).items():
            setattr(proxy, attr, value)
        return proxy

    def _sys_module(self) -> types.ModuleType:
        module = types.ModuleType("sys")
        module.stdout = self._out
        module.stderr = self._err
        module.stdin = self._stdin
        module.argv = [self._filename]
        module.version = sys.version
        module.version_info = sys.version_info
        module.platform = sys.platform
        module.maxsize = sys.maxsize
        module.byteorder = sys.byteorder
        module.exit = self._exit
        module.getrecursionlimit = sys.getrecursionlimit
        return module

    def _time_module(self) -> types.ModuleType:
        module = types.ModuleType("time")
        for attr in (
            "time", "time_ns", "monotonic", "monotonic_ns", "perf_counter",
            "perf_counter_ns", "gmtime", "localtime", "strftime", "mktime",
        ):
            setattr(module, attr, getattr(time, attr))
        module.sleep = self._sleep
        return module

    def _sleep(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("sleep length must be non-negative")
        end = min(time.monotonic() + seconds, self._deadline)
        while not self._abort.is_set():
            remaining = end - time.monotonic()
            if remaining <= 0:
                break
            self._abort.wait(min(remaining, 0.05))
        self._checkpoint()


class SandboxExecutor(CodeExecutor):
    """Run Python snippets in a fresh :class:`RestrictedSandbox` per request."""

    def __init__(self) -> None:
        self._abandoned: "weakref.WeakSet[threading.Thread]" = weakref.WeakSet()

    @property
    def abandoned_threads(self) -> int:
        """Number of abandoned sandbox threads that are still running."""
        return sum(1 for thread in list(self._abandoned) if thread.is_alive())

    async def execute(
        self,
        profile: LanguageProfile,
        workspace: Workspace,
        spec: RunSpec,
        stop: asyncio.Event,
        on_state: Optional[StateCallback] = None,
    ) -> ExecutionOutcome:
        self._notify(on_state, ExecutionState.RUNNING)
        start_time = time.perf_counter()
        filename = spec.source_filename

        def finish(status: ExecutionStatus, stdout: str = "", stderr: str = "", exit_code: Optional[int] = None,
                   truncated: bool = False, message: str = "") -> ExecutionOutcome:
            duration = int((time.perf_counter() - start_time) * 1000)
            return ExecutionOutcome(
                status=status,
                stage=Stage.EXECUTION,
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
                timings={Stage.EXECUTION.value: duration},
                truncated=truncated,
                message=message,
            )

        try:
            tree = ast.parse(spec.source_code, filename=filename)
            enforce_policy(tree)
            code = compile(guard_arithmetic(tree), filename, "exec")
        except SyntaxError as exc:
            stderr = "".join(traceback.format_exception_only(type(exc), exc))
            return finish(ExecutionStatus.RUNTIME_ERROR, stderr=stderr, exit_code=1, message="Syntax error.")
        except CapabilityDenied as exc:
            logger.info("[%s] Sandbox policy rejected code: %s", spec.execution_id, exc)
            return finish(exc.status, stderr=f"CapabilityDenied: {exc}\n", message=str(exc))

        sandbox = RestrictedSandbox(stdin=spec.stdin, max_output_bytes=spec.max_output_bytes)
        sandbox.set_source(spec.source_code)
        deadline = time.monotonic() + spec.timeout_ms / 1000
        loop = asyncio.get_running_loop()
        done: "asyncio.Future[Optional[int]]" = loop.create_future()

        def resolve(exit_code: Optional[int]) -> None:
            if not done.done():
                done.set_result(exit_code)

        def target() -> None:
            exit_code = None
            try:
                exit_code = sandbox.run(code, filename, deadline)
            except Exception:
                logger.exception("[%s] Sandbox thread failed", spec.execution_id)
            finally:
                try:
                    loop.call_soon_threadsafe(resolve, exit_code)
                except RuntimeError:
                    # The loop is gone; nobody is waiting for this run any more.
                    pass

        thread = threading.Thread(target=target, name=f"sandbox-{spec.execution_id}", daemon=True)
        thread.start()

        stopper = asyncio.ensure_future(stop.wait())
        try:
            finished, _ = await asyncio.wait(
                {done, stopper},
                timeout=spec.timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stopper.cancel()
            if not done.done():
                sandbox.abort()
                self._abandoned.add(thread)

        truncated = sandbox.stdout.truncated or sandbox.stderr.truncated
        if done not in finished:
            if stopper in finished:
                return finish(
                    ExecutionStatus.CANCELLED,
                    stdout=sandbox.stdout.getvalue(),
                    stderr=sandbox.stderr.getvalue(),
                    truncated=truncated,
                    message="Execution stopped on request.",
                )
            message = f"Execution timed out after {spec.timeout_ms} ms."
            logger.info("[%s] Sandbox run abandoned after timeout", spec.execution_id)
            return finish(
                ExecutionStatus.TIMED_OUT,
                stdout=sandbox.stdout.getvalue(),
                stderr=append_line(sandbox.stderr.getvalue(), message),
                truncated=truncated,
                message=message,
            )

        exit_code = done.result()
        if exit_code is None:
            raise RuntimeError("Sandbox thread failed; see the log for the traceback")
        stdout, stderr = sandbox.stdout.getvalue(), sandbox.stderr.getvalue()
        if sandbox.denials:
            return finish(
                ExecutionStatus.CAPABILITY_DENIED,
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
                truncated=truncated,
                message="; ".join(sandbox.denials),
            )
        if sandbox.timed_out:
            message = f"Execution timed out after {spec.timeout_ms} ms."
            return finish(
                ExecutionStatus.TIMED_OUT,
                stdout=stdout,
                stderr=append_line(stderr, message),
                truncated=truncated,
                message=message,
            )
        if exit_code == 0:
            return finish(ExecutionStatus.SUCCEEDED, stdout=stdout, stderr=stderr, exit_code=0, truncated=truncated)
        return finish(
            ExecutionStatus.RUNTIME_ERROR,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            truncated=truncated,
            message=f"Process exited with code {exit_code}.",
        )
