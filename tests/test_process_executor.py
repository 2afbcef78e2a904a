"""Tests for the child process executor.

Most tests drive ``bash`` directly so that they run anywhere; tests for
other toolchains are skipped when the toolchain is not installed.
"""

from __future__ import annotations

import asyncio
import os
import platform
import shutil
import time
from pathlib import Path

import pytest

from polyexec.executor import ProcessExecutor, RunSpec
from polyexec.executor.base import BoundedBuffer
from polyexec.languages import BUILTIN_PROFILES, LanguageProfile
from polyexec.results import ExecutionState, ExecutionStatus, Stage
from polyexec.workspace import WorkspaceManager

SHELL = LanguageProfile(
    id="shell",
    name="Shell",
    file_extension=".sh",
    default_filename="main.sh",
    run_command=("bash", "{source}"),
)

# ``bash -n`` only parses the script, which makes a convenient compile step.
CHECKED_SHELL = LanguageProfile(
    id="checked-shell",
    name="Checked shell",
    file_extension=".sh",
    default_filename="main.sh",
    compile_command=("bash", "-n", "{source}"),
    run_command=("bash", "{source}"),
)

PROFILES = {p.id: p for p in BUILTIN_PROFILES}


def requires(*binaries):
    missing = [b for b in binaries if shutil.which(b) is None]
    return pytest.mark.skipif(bool(missing), reason=f"missing toolchain: {', '.join(missing)}")


def run(tmp_path, code, profile=SHELL, stdin=None, timeout_ms=5_000, compile_timeout_ms=5_000,
        max_output_bytes=1024 * 1024, stop_after=None):
    """Run ``code`` once and return ``(outcome, states, workspace)``."""

    async def scenario():
        manager = WorkspaceManager(tmp_path / "ws")
        workspace = manager.allocate("test")
        manager.write(workspace, profile.default_filename, code)
        spec = RunSpec(
            execution_id="test",
            source_filename=profile.default_filename,
            source_code=code,
            stdin=stdin,
            timeout_ms=timeout_ms,
            compile_timeout_ms=compile_timeout_ms,
            max_output_bytes=max_output_bytes,
        )
        stop = asyncio.Event()
        if stop_after is not None:
            asyncio.get_running_loop().call_later(stop_after, stop.set)
        states = []
        outcome = await ProcessExecutor().execute(profile, workspace, spec, stop, states.append)
        return outcome, states, workspace

    return asyncio.run(scenario())


def wait_until_gone(pid, timeout=3.0):
    """Return True once ``pid`` no longer exists (or is a zombie)."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with open(f"/proc/{pid}/stat") as fh:
                state = fh.read().rsplit(")", 1)[1].split()[0]
        except FileNotFoundError:
            return True
        if state in ("Z", "X"):
            return True
        time.sleep(0.05)
    return False


def test_hello(tmp_path):
    outcome, states, _ = run(tmp_path, "echo hello\n")
    assert outcome.status is ExecutionStatus.SUCCEEDED
    assert outcome.stdout == "hello\n"
    assert outcome.exit_code == 0
    assert outcome.stage is Stage.EXECUTION
    assert states == [ExecutionState.RUNNING]
    assert set(outcome.timings) == {"execution"}


def test_runs_in_workspace(tmp_path):
    outcome, _, workspace = run(tmp_path, "pwd\nls\n")
    lines = outcome.stdout.splitlines()
    assert os.path.realpath(lines[0]) == os.path.realpath(workspace.path)
    assert lines[1:] == ["main.sh"]


def test_stdin_is_fed_then_closed(tmp_path):
    outcome, _, _ = run(tmp_path, 'read line\necho "got $line"\ncat\necho end\n', stdin="abc\nrest\n")
    assert outcome.status is ExecutionStatus.SUCCEEDED
    assert outcome.stdout == "got abc\nrest\nend\n"


def test_no_stdin_means_eof(tmp_path):
    outcome, _, _ = run(tmp_path, "cat\necho done\n", timeout_ms=2_000)
    assert outcome.status is ExecutionStatus.SUCCEEDED
    assert outcome.stdout == "done\n"


def test_nonzero_exit(tmp_path):
    outcome, _, _ = run(tmp_path, "echo oops >&2\nexit 3\n")
    assert outcome.status is ExecutionStatus.RUNTIME_ERROR
    assert outcome.exit_code == 3
    assert outcome.stderr.startswith("oops\n")
    assert outcome.stderr.endswith("Process exited with code 3.")


def test_killed_by_signal(tmp_path):
    outcome, _, _ = run(tmp_path, "kill -SEGV $$\n")
    assert outcome.status is ExecutionStatus.RUNTIME_ERROR
    assert outcome.exit_code == -11
    assert "Process terminated by signal SIGSEGV." in outcome.stderr


def test_timeout(tmp_path):
    start = time.monotonic()
    outcome, _, _ = run(tmp_path, "echo before\nsleep 30\n", timeout_ms=300)
    assert time.monotonic() - start < 5
    assert outcome.status is ExecutionStatus.TIMED_OUT
    assert outcome.stdout == "before\n"
    assert outcome.stderr.endswith("Execution timed out after 300 ms.")


def test_timeout_kills_whole_process_group(tmp_path):
    outcome, _, _ = run(tmp_path, "sleep 300 &\necho $!\nsleep 300\n", timeout_ms=300)
    assert outcome.status is ExecutionStatus.TIMED_OUT
    assert wait_until_gone(int(outcome.stdout.strip()))


def test_background_children_are_swept_after_exit(tmp_path):
    outcome, _, _ = run(tmp_path, "sleep 300 &\necho $!\n")
    assert outcome.status is ExecutionStatus.SUCCEEDED
    assert wait_until_gone(int(outcome.stdout.strip()))


def test_sweep_skips_reused_pid(monkeypatch):
    killed = []
    monkeypatch.setattr(os, "getpgid", lambda pid: 1)
    monkeypatch.setattr(os, "killpg", lambda pgid, sig: killed.append(pgid))
    ProcessExecutor._sweep_group(4242)
    assert killed == []


def test_sweep_kills_group_of_reaped_leader(monkeypatch):
    killed = []

    def gone(pid):
        raise ProcessLookupError(pid)

    monkeypatch.setattr(os, "getpgid", gone)
    monkeypatch.setattr(os, "killpg", lambda pgid, sig: killed.append(pgid))
    ProcessExecutor._sweep_group(4242)
    assert killed == [4242]


def test_output_is_capped(tmp_path):
    outcome, _, _ = run(tmp_path, "head -c 200000 /dev/zero | tr '\\0' 'x'\necho tail >&2\n", max_output_bytes=1000)
    assert outcome.status is ExecutionStatus.SUCCEEDED
    assert outcome.truncated
    assert outcome.stdout == "x" * 1000
    assert outcome.stderr == "tail\n"


def test_stop(tmp_path):
    outcome, _, _ = run(tmp_path, "sleep 30\n", stop_after=0.2)
    assert outcome.status is ExecutionStatus.CANCELLED
    assert outcome.exit_code == -9


def test_missing_toolchain(tmp_path):
    profile = LanguageProfile(
        id="ghost",
        name="Ghost",
        file_extension=".gh",
        default_filename="main.gh",
        run_command=("polyexec-no-such-binary", "{source}"),
    )
    outcome, _, _ = run(tmp_path, "boo", profile=profile)
    assert outcome.status is ExecutionStatus.SPAWN_ERROR
    assert outcome.exit_code is None
    assert "Failed to start polyexec-no-such-binary" in outcome.message


def test_compile_then_run(tmp_path):
    outcome, states, _ = run(tmp_path, "echo compiled\n", profile=CHECKED_SHELL)
    assert outcome.status is ExecutionStatus.SUCCEEDED
    assert outcome.stdout == "compiled\n"
    assert states == [ExecutionState.COMPILING, ExecutionState.RUNNING]
    assert set(outcome.timings) == {"compile", "execution"}


def test_compile_error_skips_run(tmp_path):
    outcome, states, _ = run(tmp_path, "echo never\nif then fi\n", profile=CHECKED_SHELL)
    assert outcome.status is ExecutionStatus.COMPILE_ERROR
    assert outcome.stage is Stage.COMPILE
    assert outcome.stdout == ""
    assert "syntax error" in outcome.stderr
    assert states == [ExecutionState.COMPILING]
    assert "execution" not in outcome.timings


def test_compile_timeout_uses_compile_budget(tmp_path):
    profile = LanguageProfile(
        id="slow",
        name="Slow compiler",
        file_extension=".sh",
        default_filename="main.sh",
        compile_command=("sleep", "30"),
        run_command=("bash", "{source}"),
    )
    outcome, _, _ = run(tmp_path, "echo hi\n", profile=profile, compile_timeout_ms=200, timeout_ms=10_000)
    assert outcome.status is ExecutionStatus.TIMED_OUT
    assert outcome.stage is Stage.COMPILE
    assert "Execution timed out after 200 ms." in outcome.stderr


def test_bounded_buffer():
    buf = BoundedBuffer(5)
    buf.write(b"abc")
    buf.write(b"defgh")
    assert buf.getvalue() == "abcde"
    assert buf.truncated
    assert buf.total == 8
    assert len(buf) == 5


@requires("node")
def test_javascript(tmp_path):
    outcome, _, _ = run(tmp_path, "console.log('Hello World')\n", profile=PROFILES["javascript"])
    assert outcome.status is ExecutionStatus.SUCCEEDED
    assert outcome.stdout == "Hello World\n"


@requires("g++")
def test_cpp_compile_and_run(tmp_path):
    code = '#include <iostream>\nint main() { std::cout << "Hi" << std::endl; return 0; }\n'
    outcome, states, workspace = run(tmp_path, code, profile=PROFILES["cpp"], compile_timeout_ms=60_000)
    assert outcome.status is ExecutionStatus.SUCCEEDED
    assert outcome.stdout == "Hi\n"
    assert states == [ExecutionState.COMPILING, ExecutionState.RUNNING]
    assert (Path(workspace.path) / "program").exists()


@requires("g++")
def test_cpp_compile_error(tmp_path):
    outcome, _, _ = run(tmp_path, "int main() { return }\n", profile=PROFILES["cpp"], compile_timeout_ms=60_000)
    assert outcome.status is ExecutionStatus.COMPILE_ERROR
    assert outcome.stage is Stage.COMPILE
    assert "error" in outcome.stderr


@requires("gcc")
@pytest.mark.skipif(platform.machine() not in ("x86_64", "i686"), reason="integer division by zero only traps on x86")
def test_c_runtime_error(tmp_path):
    code = "int main(void) { volatile int zero = 0; return 10 / zero; }\n"
    outcome, _, _ = run(tmp_path, code, profile=PROFILES["c"], compile_timeout_ms=60_000)
    assert outcome.status is ExecutionStatus.RUNTIME_ERROR
    assert outcome.exit_code == -8
    assert "SIGFPE" in outcome.stderr
