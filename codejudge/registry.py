"""Language runtime registry: how to compile and run each supported language."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable

from codejudge.errors import ConfigError, UnsupportedLanguageError
from codejudge.models import ResourceLimits

# Compilers and VMs get more room than user programs.
DEFAULT_COMPILE_LIMITS = ResourceLimits(
    cpu_time_ms=10_000,
    wall_time_ms=20_000,
    memory_kb=1024 * 1024,
    output_limit_bytes=64 * 1024,
)


@dataclass(frozen=True)
class RuntimeProfile:
    """Invocation profile for one language.

    Command templates are argv lists whose items may reference ``{source}``,
    ``{artifact}``, ``{workdir}``, ``{memory_mb}`` and ``{heap_mb}``.
    """

    language: str
    run_command: tuple[str, ...]
    source_filename: str
    compile_command: tuple[str, ...] = ()
    artifact_name: str = ""
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    compile_limits: ResourceLimits = DEFAULT_COMPILE_LIMITS
    expression_template: str | None = None
    limit_address_space: bool = True
    oom_markers: tuple[str, ...] = ()
    aliases: tuple[str, ...] = ()
    display_name: str = ""

    @property
    def requires_compile(self) -> bool:
        return bool(self.compile_command)

    def compile_argv(self, workdir: Path, limits: ResourceLimits | None = None) -> list[str]:
        return self._render(self.compile_command, workdir, limits or self.compile_limits)

    def run_argv(self, workdir: Path, limits: ResourceLimits | None = None) -> list[str]:
        return self._render(self.run_command, workdir, limits or self.limits)

    def _render(self, template: tuple[str, ...], workdir: Path, limits: ResourceLimits) -> list[str]:
        memory_mb = max(1, limits.memory_kb // 1024)
        values = {
            "source": str(workdir / self.source_filename),
            "artifact": str(workdir / (self.artifact_name or "main")),
            "workdir": str(workdir),
            "memory_mb": memory_mb,
            # V8 and the JVM need headroom beyond the managed heap.
            "heap_mb": max(32, memory_mb * 3 // 4),
        }
        try:
            return [part.format_map(values) for part in template]
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigError(f"Bad command template for {self.language}: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "display_name": self.display_name or self.language,
            "requires_compile": self.requires_compile,
            "source_filename": self.source_filename,
            "aliases": list(self.aliases),
            "limits": self.limits.to_dict(),
        }


DEFAULT_PROFILES: tuple[RuntimeProfile, ...] = (
    RuntimeProfile(
        language="python",
        display_name="Python",
        # Same interpreter that runs the judge; -I ignores user site and PYTHON* env.
        run_command=(sys.executable, "-I", "-B", "{source}"),
        source_filename="main.py",
        expression_template="\nprint({expression})\n",
        oom_markers=("MemoryError",),
        aliases=("python3", "py"),
    ),
    RuntimeProfile(
        language="javascript",
        display_name="JavaScript",
        run_command=("node", "--max-old-space-size={heap_mb}", "{source}"),
        source_filename="main.js",
        expression_template="\nconsole.log({expression});\n",
        limit_address_space=False,
        oom_markers=("JavaScript heap out of memory", "Allocation failed"),
        aliases=("js", "node"),
    ),
    RuntimeProfile(
        language="java",
        display_name="Java",
        compile_command=("javac", "-encoding", "UTF-8", "-J-Xmx512m", "-d", "{workdir}", "{source}"),
        run_command=("java", "-Xmx{heap_mb}m", "-XX:+UseSerialGC", "-cp", "{workdir}", "Main"),
        source_filename="Main.java",
        artifact_name="Main.class",
        limit_address_space=False,
        oom_markers=("java.lang.OutOfMemoryError",),
    ),
    RuntimeProfile(
        language="cpp",
        display_name="C++",
        compile_command=("g++", "-O2", "-std=c++17", "-DONLINE_JUDGE", "-o", "{artifact}", "{source}"),
        run_command=("{artifact}",),
        source_filename="main.cpp",
        artifact_name="main",
        oom_markers=("std::bad_alloc",),
        aliases=("c++",),
    ),
)


class RuntimeRegistry:
    """Read-only lookup from language identifier to :class:`RuntimeProfile`."""

    def __init__(self, profiles: Iterable[RuntimeProfile]) -> None:
        by_name: dict[str, RuntimeProfile] = {}
        aliases: dict[str, str] = {}
        for profile in profiles:
            name = _normalize(profile.language)
            if name in by_name:
                raise ConfigError(f"Duplicate runtime profile: {profile.language}")
            by_name[name] = profile
            for alias in profile.aliases:
                aliases[_normalize(alias)] = name
        self._profiles = MappingProxyType(by_name)
        self._aliases = MappingProxyType(aliases)

    @classmethod
    def default(cls) -> RuntimeRegistry:
        return cls(DEFAULT_PROFILES)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuntimeRegistry:
        """Build from ``{"languages": {"python": {...}, ...}}``.

        Entries naming a built-in language are layered over the built-in
        profile; other entries must give at least ``run`` and ``source``.
        """
        builtin = {p.language: p for p in DEFAULT_PROFILES}
        languages = data.get("languages")
        if not isinstance(languages, dict) or not languages:
            raise ConfigError("Runtime configuration needs a non-empty 'languages' mapping")
        return cls(
            _profile_from_dict(name, spec or {}, builtin.get(name))
            for name, spec in languages.items()
        )

    @classmethod
    def from_file(cls, path: str | Path) -> RuntimeRegistry:
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot load runtime configuration {path}: {e}") from e
        return cls.from_dict(data)

    def resolve(self, language: str) -> RuntimeProfile:
        name = _normalize(language)
        name = self._aliases.get(name, name)
        try:
            return self._profiles[name]
        except KeyError:
            raise UnsupportedLanguageError(language, self.languages()) from None

    def supports(self, language: str) -> bool:
        name = _normalize(language)
        return self._aliases.get(name, name) in self._profiles

    def languages(self) -> list[str]:
        return sorted(self._profiles)

    def profiles(self) -> list[RuntimeProfile]:
        return [self._profiles[name] for name in self.languages()]

    def with_limits(self, **overrides: int | None) -> RuntimeRegistry:
        """Return a registry whose default run ceilings carry *overrides*."""
        return RuntimeRegistry(
            replace(p, limits=p.limits.merged(**overrides)) for p in self._profiles.values()
        )

    def __contains__(self, language: object) -> bool:
        return isinstance(language, str) and self.supports(language)

    def __len__(self) -> int:
        return len(self._profiles)


def _normalize(language: str) -> str:
    return (language or "").strip().lower()


def _limits_from_dict(data: dict[str, Any] | None, base: ResourceLimits) -> ResourceLimits:
    if not data:
        return base
    known = set(base.to_dict())
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown limit fields: {', '.join(sorted(unknown))}")
    return base.merged(**{k: int(v) for k, v in data.items()})


def _profile_from_dict(
    name: str, spec: dict[str, Any], base: RuntimeProfile | None
) -> RuntimeProfile:
    if base is None:
        if "run" not in spec or "source" not in spec:
            raise ConfigError(f"Runtime {name!r} needs 'run' and 'source'")
        base = RuntimeProfile(language=name, run_command=(), source_filename="")
    return replace(
        base,
        language=name,
        run_command=tuple(spec.get("run", base.run_command)),
        source_filename=spec.get("source", base.source_filename),
        compile_command=tuple(spec.get("compile", base.compile_command)),
        artifact_name=spec.get("artifact", base.artifact_name),
        limits=_limits_from_dict(spec.get("limits"), base.limits),
        compile_limits=_limits_from_dict(spec.get("compile_limits"), base.compile_limits),
        expression_template=spec.get("expression_template", base.expression_template),
        limit_address_space=bool(spec.get("limit_address_space", base.limit_address_space)),
        oom_markers=tuple(spec.get("oom_markers", base.oom_markers)),
        aliases=tuple(spec.get("aliases", base.aliases)),
        display_name=spec.get("display_name", base.display_name),
    )
