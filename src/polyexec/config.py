"""Configuration loader.

The execution engine reads its configuration from environment variables so
that the same container image can run in several contexts (docker‑compose,
a bare VM, CI).  Reasonable defaults are provided so that local development
works out of the box.

Environment variables:

``POLYEXEC_ALLOWED_LANGS``
    Comma‑separated list of language ids permitted for execution.  Empty or
    unset enables every built‑in language profile.

``POLYEXEC_WORKSPACE_ROOT``
    Directory under which per‑execution workspaces are created.  Defaults to
    ``/tmp/polyexec``.  Nothing under it needs to survive a restart.

``POLYEXEC_MAX_CONCURRENCY``
    Number of executions allowed to run at the same time.  Default is 4.

``POLYEXEC_MAX_QUEUE_DEPTH``
    Number of submissions allowed to wait for a free slot.  Further
    submissions are rejected immediately.  Default is 32.

``POLYEXEC_DEFAULT_TIMEOUT_MS``
    Run‑step wall‑clock budget used when neither the request nor the
    language profile provides one.  Default is 10000.

``POLYEXEC_MAX_TIMEOUT_MS``
    Upper bound applied to any requested run timeout.  Default is 30000.

``POLYEXEC_COMPILE_TIMEOUT_MS``
    Separate wall‑clock budget for compile steps.  Default is 30000.

``POLYEXEC_MAX_OUTPUT_BYTES``
    Per‑stream cap on captured stdout/stderr.  Default is 1 MiB.

``POLYEXEC_MAX_SOURCE_BYTES`` / ``POLYEXEC_MAX_STDIN_BYTES``
    Size limits for submitted source code and stdin.  Defaults are 256 KiB
    and 1 MiB.

``POLYEXEC_CLEANUP_GRACE_SECONDS``
    Delay between finalising a result and deleting its workspace.  Default
    is 5.

``POLYEXEC_SWEEP_INTERVAL_SECONDS``
    Period of the background sweeper that reaps orphaned workspaces.  Zero
    disables it.  Default is 60.

``POLYEXEC_LOG_LEVEL``
    Logging level name for the ``polyexec`` logger.  Default is ``INFO``.

``PORT``
    The port on which the API server listens.  Defaults to 8080.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List


def _parse_list(value: str | None) -> List[str]:
    if not value:
        return []
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def _int_var(name: str, default: int, minimum: int = 0) -> int:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    try:
        parsed = int(val)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {val}")
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed


def _float_var(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    try:
        parsed = float(val)
    except ValueError:
        raise ValueError(f"Invalid number for {name}: {val}")
    if parsed < 0:
        raise ValueError(f"{name} must not be negative, got {parsed}")
    return parsed


@dataclass(frozen=True)
class Config:
    """Centralised configuration object."""

    allowed_langs: List[str]
    workspace_root: str
    max_concurrency: int
    max_queue_depth: int
    default_timeout_ms: int
    max_timeout_ms: int
    compile_timeout_ms: int
    max_output_bytes: int
    max_source_bytes: int
    max_stdin_bytes: int
    cleanup_grace_seconds: float
    sweep_interval_seconds: float
    log_level: str
    port: int

    @classmethod
    def load(cls) -> "Config":
        log_level = os.getenv("POLYEXEC_LOG_LEVEL", "INFO").upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ValueError(f"Invalid POLYEXEC_LOG_LEVEL: {log_level}")

        max_timeout_ms = _int_var("POLYEXEC_MAX_TIMEOUT_MS", 30_000, minimum=1)
        default_timeout_ms = _int_var("POLYEXEC_DEFAULT_TIMEOUT_MS", 10_000, minimum=1)
        if default_timeout_ms > max_timeout_ms:
            raise ValueError(
                "POLYEXEC_DEFAULT_TIMEOUT_MS must not exceed POLYEXEC_MAX_TIMEOUT_MS"
            )

        return cls(
            allowed_langs=_parse_list(os.getenv("POLYEXEC_ALLOWED_LANGS")),
            workspace_root=os.getenv("POLYEXEC_WORKSPACE_ROOT", "/tmp/polyexec"),
            max_concurrency=_int_var("POLYEXEC_MAX_CONCURRENCY", 4, minimum=1),
            max_queue_depth=_int_var("POLYEXEC_MAX_QUEUE_DEPTH", 32),
            default_timeout_ms=default_timeout_ms,
            max_timeout_ms=max_timeout_ms,
            compile_timeout_ms=_int_var("POLYEXEC_COMPILE_TIMEOUT_MS", 30_000, minimum=1),
            max_output_bytes=_int_var("POLYEXEC_MAX_OUTPUT_BYTES", 1024 * 1024, minimum=1),
            max_source_bytes=_int_var("POLYEXEC_MAX_SOURCE_BYTES", 256 * 1024, minimum=1),
            max_stdin_bytes=_int_var("POLYEXEC_MAX_STDIN_BYTES", 1024 * 1024),
            cleanup_grace_seconds=_float_var("POLYEXEC_CLEANUP_GRACE_SECONDS", 5.0),
            sweep_interval_seconds=_float_var("POLYEXEC_SWEEP_INTERVAL_SECONDS", 60.0),
            log_level=log_level,
            port=_int_var("PORT", 8080, minimum=1),
        )

    @classmethod
    def from_env(cls) -> "Config":
        """
        Alternate constructor used by the API to load configuration.

        This wrapper calls :meth:`load` to construct the configuration.
        It exists to provide a more intuitive name when consumed in
        application code.
        """
        return cls.load()
