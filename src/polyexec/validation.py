"""
Static inspection of a snippet without running it.

:func:`inspect_source` reports syntax problems (for Python, which can be
parsed in-process) and lines that match well known risky patterns for the
language.  Risky patterns are advisory: they are reported as ``security``
issues but do not make the report fail.  Sandbox policy violations for
Python are reported as ``capability`` issues and do fail it, since the
sandbox would refuse to run the code.
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Tuple

from .errors import ValidationFailed
from .executor.sandbox import check_policy
from .languages import LanguageProfile, LanguageRegistry

_SCRIPT_PATTERNS = (
    (r"\beval\s*\(", "Avoid using eval() - security risk"),
    (r"\bFunction\s*\(", "Avoid using Function constructor - security risk"),
    (r"document\.write", "Avoid document.write - can break page structure"),
    (r"\brequire\s*\(\s*['\"]child_process['\"]", "Spawning processes is not allowed"),
)

_PATTERNS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "javascript": _SCRIPT_PATTERNS,
    "typescript": _SCRIPT_PATTERNS,
    "python": (
        (r"\beval\s*\(", "Avoid using eval() - security risk"),
        (r"\bexec\s*\(", "Avoid using exec() - security risk"),
        (r"__import__\s*\(", "Dynamic imports are not allowed in the sandbox"),
        (r"\bos\.system\s*\(", "Spawning processes is not allowed"),
        (r"\bsubprocess\.", "Spawning processes is not allowed"),
    ),
    "shell": (
        (r"\brm\s+-[a-zA-Z]*r[a-zA-Z]*f?\s+/(\s|$)", "Recursive delete of the filesystem root"),
        (r"\b(curl|wget)\b[^|\n]*\|\s*(ba)?sh\b", "Piping downloaded content into a shell"),
    ),
    "php": (
        (r"\beval\s*\(", "Avoid using eval() - security risk"),
        (r"\b(shell_exec|system|passthru|proc_open)\s*\(", "Spawning processes is not allowed"),
    ),
    "ruby": (
        (r"\beval\s*\(", "Avoid using eval() - security risk"),
        (r"`[^`]*`|\bsystem\s*\(", "Spawning processes is not allowed"),
    ),
}

_COMPILED: Dict[str, List[Tuple[Pattern[str], str]]] = {
    language: [(re.compile(pattern), message) for pattern, message in patterns]
    for language, patterns in _PATTERNS.items()
}


@dataclass(frozen=True)
class Issue:
    type: str
    message: str
    line: Optional[int] = None


@dataclass
class ValidationReport:
    """Outcome of :func:`inspect_source`."""

    language: str
    success: bool = True
    issues: List[Issue] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


def _check_python(code: str, report: ValidationReport) -> None:
    try:
        tree = ast.parse(code)
    except SyntaxError as exc:
        report.success = False
        report.issues.append(Issue(type="syntax", message=exc.msg, line=exc.lineno))
        return
    report.suggestions.append("Syntax appears valid")
    for violation in check_policy(tree):
        report.success = False
        line: Optional[int] = None
        match = re.match(r"line (\d+): (.*)", violation)
        if match:
            line, violation = int(match.group(1)), match.group(2)
        report.issues.append(Issue(type="capability", message=violation, line=line))


def _check_patterns(profile: LanguageProfile, code: str, report: ValidationReport) -> None:
    for lineno, text in enumerate(code.splitlines(), start=1):
        for pattern, message in _COMPILED.get(profile.id, ()):
            if pattern.search(text):
                report.issues.append(Issue(type="security", message=message, line=lineno))


def inspect_source(registry: LanguageRegistry, language: str, code: str) -> ValidationReport:
    """Inspect ``code`` written in ``language``.

    Raises :class:`~polyexec.errors.UnsupportedLanguage` for unknown
    languages and :class:`~polyexec.errors.ValidationFailed` for empty code.
    """
    profile = registry.resolve(language)
    if not code or not code.strip():
        raise ValidationFailed("Code is required")

    report = ValidationReport(language=profile.id)
    if profile.id == "python":
        _check_python(code, report)
    else:
        report.suggestions.append(f"Syntax is checked when {profile.name} code runs")
    _check_patterns(profile, code, report)
    return report
