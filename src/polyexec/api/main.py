"""
FastAPI application for the execution engine.

This module configures logging, builds an :class:`~polyexec.Orchestrator`
from the environment and registers the HTTP routes in front of it.  Every
execution request that parses is answered with HTTP 200; whether the code
ran successfully is part of the response body.

Authentication is expected to be handled in front of the service (reverse
proxy or API gateway).
"""

from __future__ import annotations

import contextlib
import logging
import platform
import sys
from typing import AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Request

from ..config import Config
from ..errors import ExecutionError
from ..models import (
    ExecuteRequest,
    ExecuteResponse,
    LanguageInfo,
    LanguagesResponse,
    SystemInfo,
    ValidateRequest,
    ValidateResponse,
)
from ..orchestrator import Orchestrator
from ..validation import inspect_source


logger = logging.getLogger("polyexec")


def configure_logging(level: str) -> None:
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("[polyexec] %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Build the application around a new orchestrator."""
    config = config or Config.from_env()
    configure_logging(config.log_level)
    logger.info(
        "Loaded config: workspace_root=%s, allowed_langs=%s, max_concurrency=%s, max_queue_depth=%s",
        config.workspace_root,
        config.allowed_langs or "all",
        config.max_concurrency,
        config.max_queue_depth,
    )

    engine = Orchestrator(config)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        engine.start()
        try:
            yield
        finally:
            await engine.aclose()

    app = FastAPI(title="Code Execution Engine", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.engine = engine

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log every request and its response status."""
        method = request.method
        path = request.url.path
        client = getattr(request.client, "host", "unknown")
        logger.debug("Incoming request: %s %s from %s", method, path, client)
        response = await call_next(request)
        logger.info("Response: %s %s -> %s", method, path, response.status_code)
        return response

    @app.get("/health")
    async def health() -> Dict[str, str]:
        """Return a simple health check response."""
        return {"status": "ok"}

    @app.get("/v1/languages", response_model=LanguagesResponse)
    async def languages() -> LanguagesResponse:
        """List the languages this instance accepts."""
        return LanguagesResponse(
            languages=[LanguageInfo.from_profile(p) for p in engine.registry.profiles()]
        )

    @app.post("/v1/execute", response_model=ExecuteResponse)
    async def execute(req: ExecuteRequest) -> ExecuteResponse:
        """Run a snippet and return its captured output."""
        request = req.to_request()
        logger.info("[/v1/execute] %s request %s", request.language, request.id)
        result = await engine.submit(request)
        return ExecuteResponse.from_result(result)

    @app.post("/v1/executions/{execution_id}/stop")
    async def stop(execution_id: str) -> Dict[str, str]:
        """Stop an execution that is queued or running."""
        if not engine.stop(execution_id):
            raise HTTPException(status_code=404, detail="Execution not found")
        return {"detail": "Stop requested"}

    @app.post("/v1/validate", response_model=ValidateResponse)
    async def validate(req: ValidateRequest) -> ValidateResponse:
        """Check a snippet for syntax and security issues without running it."""
        try:
            report = inspect_source(engine.registry, req.language, req.code)
        except ExecutionError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return ValidateResponse.from_report(report)

    @app.get("/v1/system", response_model=SystemInfo)
    async def system() -> SystemInfo:
        """Report host details, configured limits and live engine statistics."""
        return SystemInfo(
            platform=platform.platform(),
            python_version=sys.version.split()[0],
            languages=engine.registry.ids(),
            limits={
                "max_concurrency": config.max_concurrency,
                "max_queue_depth": config.max_queue_depth,
                "default_timeout_ms": config.default_timeout_ms,
                "max_timeout_ms": config.max_timeout_ms,
                "compile_timeout_ms": config.compile_timeout_ms,
                "max_output_bytes": config.max_output_bytes,
                "max_source_bytes": config.max_source_bytes,
                "max_stdin_bytes": config.max_stdin_bytes,
            },
            stats=engine.stats(),
        )

    return app
