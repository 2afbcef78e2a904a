"""Shared fixtures for the engine tests."""

from __future__ import annotations

import dataclasses

import pytest

from polyexec.config import Config


@pytest.fixture
def config(tmp_path, monkeypatch) -> Config:
    """Default configuration with workspaces under ``tmp_path``."""
    for name in (
        "POLYEXEC_ALLOWED_LANGS",
        "POLYEXEC_MAX_CONCURRENCY",
        "POLYEXEC_MAX_QUEUE_DEPTH",
        "POLYEXEC_DEFAULT_TIMEOUT_MS",
        "POLYEXEC_MAX_TIMEOUT_MS",
        "POLYEXEC_COMPILE_TIMEOUT_MS",
        "POLYEXEC_MAX_OUTPUT_BYTES",
        "POLYEXEC_MAX_SOURCE_BYTES",
        "POLYEXEC_MAX_STDIN_BYTES",
        "POLYEXEC_WORKSPACE_ROOT",
        "POLYEXEC_CLEANUP_GRACE_SECONDS",
        "POLYEXEC_SWEEP_INTERVAL_SECONDS",
        "POLYEXEC_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    return dataclasses.replace(
        Config.load(),
        workspace_root=str(tmp_path / "workspaces"),
        cleanup_grace_seconds=0.0,
        sweep_interval_seconds=0.0,
        default_timeout_ms=5_000,
    )
