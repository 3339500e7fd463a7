"""Configuration for codejudge, loaded from environment variables."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Callable

from codejudge.errors import ConfigError


def _parse_bool(value: str) -> bool:
    return value.strip().lower() not in ("0", "false", "no", "off", "")


def _parse_command(value: str) -> tuple[str, ...]:
    return tuple(shlex.split(value))


@dataclass
class Config:
    # Worker pool and admission
    max_workers: int = 4
    max_queue_depth: int = 100
    per_user_challenge_cap: bool = False
    retry_after_seconds: float = 2.0

    # Default run ceilings; None keeps each runtime profile's own value
    cpu_time_ms: int | None = None
    wall_time_ms: int | None = None
    memory_kb: int | None = None
    output_limit_bytes: int | None = None

    # Sandbox
    sandbox_wrapper: tuple[str, ...] = field(default_factory=tuple)  # e.g. ("unshare", "-rn")
    workspace_root: str = ""
    poll_interval_ms: int = 10
    runtimes_file: str = ""

    # Collaborators
    challenge_store: str = "memory"  # "memory", "json" or "http"
    challenges_file: str = ""
    challenge_api_url: str = ""
    result_sink: str = "memory"  # "memory", "sqlite" or "http"
    sqlite_path: str = "instance/codejudge.db"
    result_webhook_url: str = ""
    http_timeout: float = 10.0
    api_token: str = ""

    # Web / CLI
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")
        if self.max_queue_depth < 1:
            raise ConfigError("max_queue_depth must be at least 1")
        if self.challenge_store not in ("memory", "json", "http"):
            raise ConfigError(f"Unknown challenge store: {self.challenge_store}")
        if self.result_sink not in ("memory", "sqlite", "http"):
            raise ConfigError(f"Unknown result sink: {self.result_sink}")

    def limit_overrides(self) -> dict[str, int | None]:
        return {
            "cpu_time_ms": self.cpu_time_ms,
            "wall_time_ms": self.wall_time_ms,
            "memory_kb": self.memory_kb,
            "output_limit_bytes": self.output_limit_bytes,
        }

    @classmethod
    def from_env(cls, **overrides) -> Config:
        kwargs: dict = {}
        env_map: dict[str, tuple[str, Callable[[str], object]]] = {
            "CODEJUDGE_MAX_WORKERS": ("max_workers", int),
            "CODEJUDGE_MAX_QUEUE_DEPTH": ("max_queue_depth", int),
            "CODEJUDGE_PER_USER_CHALLENGE_CAP": ("per_user_challenge_cap", _parse_bool),
            "CODEJUDGE_RETRY_AFTER_SECONDS": ("retry_after_seconds", float),
            "CODEJUDGE_CPU_TIME_MS": ("cpu_time_ms", int),
            "CODEJUDGE_WALL_TIME_MS": ("wall_time_ms", int),
            "CODEJUDGE_MEMORY_KB": ("memory_kb", int),
            "CODEJUDGE_OUTPUT_LIMIT_BYTES": ("output_limit_bytes", int),
            "CODEJUDGE_SANDBOX_WRAPPER": ("sandbox_wrapper", _parse_command),
            "CODEJUDGE_WORKSPACE_ROOT": ("workspace_root", str),
            "CODEJUDGE_POLL_INTERVAL_MS": ("poll_interval_ms", int),
            "CODEJUDGE_RUNTIMES_FILE": ("runtimes_file", str),
            "CODEJUDGE_CHALLENGE_STORE": ("challenge_store", str),
            "CODEJUDGE_CHALLENGES_FILE": ("challenges_file", str),
            "CODEJUDGE_CHALLENGE_API_URL": ("challenge_api_url", str),
            "CODEJUDGE_RESULT_SINK": ("result_sink", str),
            "CODEJUDGE_SQLITE_PATH": ("sqlite_path", str),
            "CODEJUDGE_RESULT_WEBHOOK_URL": ("result_webhook_url", str),
            "CODEJUDGE_HTTP_TIMEOUT": ("http_timeout", float),
            "CODEJUDGE_API_TOKEN": ("api_token", str),
            "CODEJUDGE_HOST": ("host", str),
            "CODEJUDGE_PORT": ("port", int),
            "CODEJUDGE_LOG_LEVEL": ("log_level", str),
        }
        for env_var, (field_name, conv) in env_map.items():
            val = os.environ.get(env_var)
            if val is not None:
                try:
                    kwargs[field_name] = conv(val)
                except ValueError as e:
                    raise ConfigError(f"Invalid value for {env_var}: {val!r}") from e
        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)
