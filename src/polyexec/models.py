"""Pydantic models for request and response bodies.

These models describe the HTTP surface of the engine.  They are thin
wrappers around the dataclasses in :mod:`polyexec.results`,
:mod:`polyexec.languages` and :mod:`polyexec.validation`; conversion
helpers live next to each response model.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .languages import LanguageProfile
from .results import ExecutionRequest, ExecutionResult, new_execution_id
from .validation import ValidationReport


class ExecuteRequest(BaseModel):
    """Request body for running a snippet."""

    language: str = Field(..., description="Language id or alias, e.g. 'python', 'js', 'c++'.")
    code: str = Field(..., description="Source code to execute.")
    stdin: Optional[str] = Field(
        default=None, description="Standard input to pass to the program."
    )
    filename: Optional[str] = Field(
        default=None,
        description="Source filename.  Must carry the language's extension.",
    )
    timeout_ms: Optional[int] = Field(
        default=None, description="Run timeout.  Capped by the server maximum."
    )
    execution_id: Optional[str] = Field(
        default=None,
        description="Caller chosen id, usable to stop the execution.  Generated if omitted.",
    )

    def to_request(self) -> ExecutionRequest:
        return ExecutionRequest(
            id=self.execution_id or new_execution_id(),
            language=self.language,
            source_code=self.code,
            stdin=self.stdin,
            timeout_ms=self.timeout_ms,
            filename=self.filename,
        )


class ExecuteResponse(BaseModel):
    """Response body for code execution."""

    execution_id: str
    success: bool
    status: str
    language: Optional[str] = None
    stdout: str
    stderr: str
    exit_code: Optional[int] = None
    stage: str
    execution_time_ms: int
    timings: Dict[str, int] = Field(default_factory=dict)
    truncated: bool = False
    message: str = ""

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "ExecuteResponse":
        return cls(
            execution_id=result.execution_id,
            success=result.success,
            status=result.status.value,
            language=result.language,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            stage=result.stage.value,
            execution_time_ms=result.duration_ms,
            timings=dict(result.timings),
            truncated=result.truncated,
            message=result.message,
        )


class LanguageInfo(BaseModel):
    id: str
    name: str
    extension: str
    has_compilation: bool
    sandboxed: bool
    aliases: List[str] = Field(default_factory=list)

    @classmethod
    def from_profile(cls, profile: LanguageProfile) -> "LanguageInfo":
        return cls(
            id=profile.id,
            name=profile.name,
            extension=profile.file_extension,
            has_compilation=profile.has_compilation,
            sandboxed=profile.sandboxed,
            aliases=list(profile.aliases),
        )


class LanguagesResponse(BaseModel):
    languages: List[LanguageInfo]


class ValidateRequest(BaseModel):
    """Request body for inspecting a snippet without running it."""

    language: str
    code: str


class IssueInfo(BaseModel):
    type: str
    message: str
    line: Optional[int] = None


class ValidateResponse(BaseModel):
    success: bool
    language: str
    issues: List[IssueInfo] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: ValidationReport) -> "ValidateResponse":
        return cls(
            success=report.success,
            language=report.language,
            issues=[IssueInfo(type=i.type, message=i.message, line=i.line) for i in report.issues],
            suggestions=list(report.suggestions),
        )


class SystemInfo(BaseModel):
    """Host and engine status, for operators."""

    platform: str
    python_version: str
    languages: List[str]
    limits: Dict[str, Any]
    stats: Dict[str, Any]
