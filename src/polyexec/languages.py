"""
Language profiles and the registry that resolves them.

A :class:`LanguageProfile` describes how source code in one language is
compiled (optionally) and run.  Commands are fixed argument vectors; the
only substitutions allowed are whole-argument placeholders:

``{source}``
    The validated source filename, relative to the workspace.
``{stem}``
    The source filename without its extension (e.g. a Java class name).
``{workdir}``
    The absolute path of the workspace.

Nothing submitted by a caller is ever spliced into a command string and no
command is ever handed to a shell.

The registry is built once at startup and never mutated; it is safe to
share between concurrent executions without locking.
"""

from __future__ import annotations

import re
import types
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import Config
from .errors import UnsupportedLanguage, ValidationFailed

MiB = 1024 * 1024

_FILENAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,99}$")
_PLACEHOLDERS = ("{source}", "{stem}", "{workdir}")


@dataclass(frozen=True)
class LanguageProfile:
    """Immutable description of how to execute one language."""

    id: str
    name: str
    file_extension: str
    default_filename: str
    run_command: Tuple[str, ...]
    compile_command: Optional[Tuple[str, ...]] = None
    sandboxed: bool = False
    memory_limit_bytes: Optional[int] = None
    default_timeout_ms: Optional[int] = None
    compile_timeout_ms: Optional[int] = None
    aliases: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def has_compilation(self) -> bool:
        return self.compile_command is not None


BUILTIN_PROFILES: Tuple[LanguageProfile, ...] = (
    LanguageProfile(
        id="javascript",
        name="JavaScript",
        file_extension=".js",
        default_filename="main.js",
        run_command=("node", "{source}"),
        aliases=("js", "node"),
    ),
    LanguageProfile(
        id="typescript",
        name="TypeScript",
        file_extension=".ts",
        default_filename="main.ts",
        run_command=("ts-node", "{source}"),
        aliases=("ts",),
    ),
    LanguageProfile(
        id="python",
        name="Python",
        file_extension=".py",
        default_filename="main.py",
        run_command=("python3", "-u", "{source}"),
        sandboxed=True,
        aliases=("py", "python3"),
    ),
    LanguageProfile(
        id="java",
        name="Java",
        file_extension=".java",
        default_filename="Main.java",
        compile_command=("javac", "{source}"),
        run_command=("java", "-cp", "{workdir}", "{stem}"),
    ),
    LanguageProfile(
        id="cpp",
        name="C++",
        file_extension=".cpp",
        default_filename="main.cpp",
        compile_command=("g++", "-O0", "-o", "program", "{source}"),
        run_command=("{workdir}/program",),
        memory_limit_bytes=256 * MiB,
        aliases=("c++", "cxx"),
    ),
    LanguageProfile(
        id="c",
        name="C",
        file_extension=".c",
        default_filename="main.c",
        compile_command=("gcc", "-O0", "-o", "program", "{source}"),
        run_command=("{workdir}/program",),
        memory_limit_bytes=256 * MiB,
    ),
    LanguageProfile(
        id="go",
        name="Go",
        file_extension=".go",
        default_filename="main.go",
        run_command=("go", "run", "{source}"),
        aliases=("golang",),
    ),
    LanguageProfile(
        id="rust",
        name="Rust",
        file_extension=".rs",
        default_filename="main.rs",
        compile_command=("rustc", "-o", "program", "{source}"),
        run_command=("{workdir}/program",),
        memory_limit_bytes=256 * MiB,
        aliases=("rs",),
    ),
    LanguageProfile(
        id="php",
        name="PHP",
        file_extension=".php",
        default_filename="main.php",
        run_command=("php", "{source}"),
        memory_limit_bytes=512 * MiB,
    ),
    LanguageProfile(
        id="ruby",
        name="Ruby",
        file_extension=".rb",
        default_filename="main.rb",
        run_command=("ruby", "{source}"),
        memory_limit_bytes=512 * MiB,
        aliases=("rb",),
    ),
    LanguageProfile(
        id="shell",
        name="Shell",
        file_extension=".sh",
        default_filename="main.sh",
        run_command=("bash", "{source}"),
        memory_limit_bytes=512 * MiB,
        aliases=("bash", "sh"),
    ),
)


class LanguageRegistry:
    """Read-only lookup table from language id (or alias) to profile."""

    def __init__(self, profiles: Iterable[LanguageProfile]) -> None:
        by_id: dict[str, LanguageProfile] = {}
        lookup: dict[str, LanguageProfile] = {}
        for profile in profiles:
            if profile.id in by_id:
                raise ValueError(f"Duplicate language profile: {profile.id}")
            _check_command(profile.run_command, profile.id)
            if profile.compile_command is not None:
                _check_command(profile.compile_command, profile.id)
            by_id[profile.id] = profile
            for key in (profile.id, *profile.aliases):
                key = key.lower()
                if key in lookup:
                    raise ValueError(f"Language key {key!r} is ambiguous")
                lookup[key] = profile
        self._profiles: Mapping[str, LanguageProfile] = types.MappingProxyType(by_id)
        self._lookup: Mapping[str, LanguageProfile] = types.MappingProxyType(lookup)

    def resolve(self, language_id: str) -> LanguageProfile:
        """Return the profile for ``language_id`` or raise :class:`UnsupportedLanguage`."""
        key = (language_id or "").strip().lower()
        try:
            return self._lookup[key]
        except KeyError:
            raise UnsupportedLanguage(language_id) from None

    def __contains__(self, language_id: object) -> bool:
        return isinstance(language_id, str) and language_id.strip().lower() in self._lookup

    def __len__(self) -> int:
        return len(self._profiles)

    def profiles(self) -> List[LanguageProfile]:
        return list(self._profiles.values())

    def ids(self) -> List[str]:
        return list(self._profiles)


def _check_command(argv: Sequence[str], language: str) -> None:
    if not argv:
        raise ValueError(f"Empty command for language {language}")
    for arg in argv:
        if "{" in arg and not any(token in arg for token in _PLACEHOLDERS):
            raise ValueError(f"Unknown placeholder in {arg!r} for language {language}")


def build_registry(config: Config, profiles: Sequence[LanguageProfile] = BUILTIN_PROFILES) -> LanguageRegistry:
    """Build the registry for ``config``.

    Only languages listed in ``config.allowed_langs`` are kept; an empty
    allow-list keeps every profile.  Profiles without their own timeouts
    inherit the configured defaults.
    """
    allowed = set(config.allowed_langs)
    known = {p.id for p in profiles}
    unknown = allowed - known
    if unknown:
        raise ValueError(f"Unknown languages in allow-list: {', '.join(sorted(unknown))}")

    selected = []
    for profile in profiles:
        if allowed and profile.id not in allowed:
            continue
        selected.append(
            LanguageProfile(
                id=profile.id,
                name=profile.name,
                file_extension=profile.file_extension,
                default_filename=profile.default_filename,
                run_command=profile.run_command,
                compile_command=profile.compile_command,
                sandboxed=profile.sandboxed,
                memory_limit_bytes=profile.memory_limit_bytes,
                default_timeout_ms=min(
                    profile.default_timeout_ms or config.default_timeout_ms,
                    config.max_timeout_ms,
                ),
                compile_timeout_ms=profile.compile_timeout_ms or config.compile_timeout_ms,
                aliases=profile.aliases,
            )
        )
    return LanguageRegistry(selected)


def validate_filename(profile: LanguageProfile, filename: Optional[str]) -> str:
    """Return a safe source filename for ``profile``.

    ``None`` selects the profile default.  Caller supplied names must be a
    single plain path segment carrying the profile's extension.
    """
    if filename is None:
        return profile.default_filename
    if not _FILENAME_RE.match(filename) or ".." in filename:
        raise ValidationFailed(f"Invalid filename: {filename!r}")
    if not filename.endswith(profile.file_extension) or filename == profile.file_extension:
        raise ValidationFailed(
            f"Filename {filename!r} must end with {profile.file_extension!r}"
        )
    return filename


def render_command(argv: Sequence[str], filename: str, workdir: Path) -> List[str]:
    """Substitute placeholders in ``argv``, one argument at a time."""
    stem = filename.rsplit(".", 1)[0]
    rendered = []
    for arg in argv:
        rendered.append(
            arg.replace("{workdir}", str(workdir))
            .replace("{source}", filename)
            .replace("{stem}", stem)
        )
    return rendered
