"""Abstract sandbox interface for running submitted code."""

from __future__ import annotations

import threading
from typing import ContextManager, Protocol, runtime_checkable

from codejudge.models import ExecutionOutcome, ResourceLimits
from codejudge.registry import RuntimeProfile


@runtime_checkable
class PreparedProgram(Protocol):
    """A materialized (and, where needed, compiled) submission."""

    profile: RuntimeProfile
    compile_outcome: ExecutionOutcome | None

    @property
    def compile_failed(self) -> bool: ...

    def execute(
        self,
        stdin: str = "",
        limits: ResourceLimits | None = None,
        cancel: threading.Event | None = None,
        source_code: str | None = None,
    ) -> ExecutionOutcome: ...


@runtime_checkable
class SandboxExecutor(Protocol):
    def prepare(
        self,
        source_code: str,
        profile: RuntimeProfile,
        cancel: threading.Event | None = None,
    ) -> ContextManager[PreparedProgram]: ...

    def run(
        self,
        source_code: str,
        profile: RuntimeProfile,
        stdin: str = "",
        limits: ResourceLimits | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionOutcome: ...
