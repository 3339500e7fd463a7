"""Factories that build the judging stack from configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from codejudge.challenges import ChallengeStore, InMemoryChallengeStore
from codejudge.errors import ConfigError
from codejudge.evaluator import Evaluator
from codejudge.executor_base import SandboxExecutor
from codejudge.registry import RuntimeRegistry
from codejudge.sandbox import LocalSandbox
from codejudge.scheduler import SubmissionScheduler
from codejudge.service import JudgeService
from codejudge.sink import InMemoryResultSink, ResultSink

if TYPE_CHECKING:
    from codejudge.config import Config


def create_registry(config: Config) -> RuntimeRegistry:
    """Built-in profiles (or the runtimes file) with configured ceilings applied."""
    if config.runtimes_file:
        registry = RuntimeRegistry.from_file(config.runtimes_file)
    else:
        registry = RuntimeRegistry.default()
    return registry.with_limits(**config.limit_overrides())


def create_sandbox(config: Config) -> SandboxExecutor:
    return LocalSandbox(
        workspace_root=config.workspace_root or None,
        wrapper=config.sandbox_wrapper,
        poll_interval=config.poll_interval_ms / 1000,
    )


def create_sink(config: Config) -> ResultSink:
    """Create a result sink based on config.result_sink."""
    if config.result_sink == "sqlite":
        from codejudge.sink import SqliteResultSink

        return SqliteResultSink(config.sqlite_path)
    if config.result_sink == "http":
        from codejudge.sink import HttpResultSink

        if not config.result_webhook_url:
            raise ConfigError("CODEJUDGE_RESULT_WEBHOOK_URL is required for the http sink")
        return HttpResultSink(
            config.result_webhook_url,
            api_token=config.api_token,
            timeout=config.http_timeout,
        )
    return InMemoryResultSink()


def create_challenge_store(config: Config) -> ChallengeStore:
    """Create a challenge store based on config.challenge_store."""
    if config.challenge_store == "json":
        from codejudge.challenges import JsonChallengeStore

        if not config.challenges_file:
            raise ConfigError("CODEJUDGE_CHALLENGES_FILE is required for the json store")
        return JsonChallengeStore(config.challenges_file)
    if config.challenge_store == "http":
        from codejudge.challenges import HttpChallengeStore

        if not config.challenge_api_url:
            raise ConfigError("CODEJUDGE_CHALLENGE_API_URL is required for the http store")
        return HttpChallengeStore(
            config.challenge_api_url,
            api_token=config.api_token,
            timeout=config.http_timeout,
        )
    return InMemoryChallengeStore()


def create_scheduler(
    config: Config, evaluator: Evaluator, sink: ResultSink
) -> SubmissionScheduler:
    return SubmissionScheduler(
        evaluator,
        sink,
        max_workers=config.max_workers,
        max_queue_depth=config.max_queue_depth,
        per_user_challenge_cap=config.per_user_challenge_cap,
        retry_after=config.retry_after_seconds,
    )


def create_service(
    config: Config,
    challenges: ChallengeStore | None = None,
    sink: ResultSink | None = None,
) -> JudgeService:
    """Wire the full stack. The scheduler is returned unstarted."""
    registry = create_registry(config)
    evaluator = Evaluator(registry, create_sandbox(config))
    sink = sink if sink is not None else create_sink(config)
    return JudgeService(
        challenges if challenges is not None else create_challenge_store(config),
        registry,
        create_scheduler(config, evaluator, sink),
        sink,
    )
