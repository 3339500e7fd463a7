"""CLI interface for codejudge."""

from __future__ import annotations

import argparse
import json
import logging
import sys

from codejudge.challenges import InMemoryChallengeStore
from codejudge.config import Config
from codejudge.errors import JudgeError
from codejudge.factory import create_registry, create_service
from codejudge.models import Challenge
from codejudge.sink import InMemoryResultSink


def load_challenge(path: str) -> Challenge:
    """Load a challenge from a JSON file."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    data.setdefault("id", "local")
    return Challenge.from_dict(data)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _judge(args: argparse.Namespace, config: Config) -> int:
    challenge = load_challenge(args.challenge)
    with open(args.source, encoding="utf-8") as f:
        source_code = f.read()
    language = args.language or challenge.language
    if not language:
        print("Error: --language is required when the challenge names none", file=sys.stderr)
        return 2

    service = create_service(
        config,
        challenges=InMemoryChallengeStore([challenge]),
        sink=InMemoryResultSink(),
    )
    with service.scheduler:
        submission_id = service.submit(challenge.id, args.user, language, source_code)
        service.scheduler.wait(submission_id)
    result = service.query(submission_id)

    print(json.dumps(result, indent=2))
    verdict = result.get("verdict") or {}
    print(
        f"{result['status']}: {verdict.get('passedCount', 0)}/{verdict.get('totalCount', 0)} passed",
        file=sys.stderr,
    )
    return 0 if result["status"] == "SUCCESS" else 1


def _languages(config: Config) -> int:
    for profile in create_registry(config).profiles():
        aliases = f" (aliases: {', '.join(profile.aliases)})" if profile.aliases else ""
        kind = "compiled" if profile.requires_compile else "interpreted"
        print(f"{profile.language:<12} {kind:<12}{aliases}")
    return 0


def _serve(config: Config) -> int:
    from codejudge.web.app import create_app

    service = create_service(config)
    app = create_app(service)
    service.scheduler.start()
    try:
        app.run(host=config.host, port=config.port, threaded=True)
    finally:
        service.scheduler.shutdown(wait=True, cancel_pending=True)
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="codejudge",
        description="codejudge: sandboxed judge for code submissions",
    )
    parser.add_argument("--log-level", type=str, default=None, help="Logging level (default INFO)")
    subparsers = parser.add_subparsers(dest="command")

    judge_parser = subparsers.add_parser("judge", help="Judge one source file against a challenge")
    judge_parser.add_argument("challenge", help="Path to challenge JSON file")
    judge_parser.add_argument("-s", "--source", required=True, help="Path to the source file")
    judge_parser.add_argument("-l", "--language", type=str, default=None)
    judge_parser.add_argument("--user", type=str, default="cli")
    judge_parser.add_argument("--cpu-time-ms", type=int, default=None)
    judge_parser.add_argument("--wall-time-ms", type=int, default=None)
    judge_parser.add_argument("--memory-kb", type=int, default=None)
    judge_parser.add_argument("--runtimes", type=str, default=None, help="Runtime profiles JSON file")

    languages_parser = subparsers.add_parser("languages", help="List supported languages")
    languages_parser.add_argument("--runtimes", type=str, default=None, help="Runtime profiles JSON file")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--workers", type=int, default=None, help="Worker threads")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    # Build config from env + CLI overrides
    overrides = {
        "log_level": args.log_level,
        "runtimes_file": getattr(args, "runtimes", None),
        "cpu_time_ms": getattr(args, "cpu_time_ms", None),
        "wall_time_ms": getattr(args, "wall_time_ms", None),
        "memory_kb": getattr(args, "memory_kb", None),
        "host": getattr(args, "host", None),
        "port": getattr(args, "port", None),
        "max_workers": getattr(args, "workers", None),
    }
    try:
        config = Config.from_env(**overrides)
    except JudgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    _configure_logging(config.log_level)

    try:
        if args.command == "judge":
            code = _judge(args, config)
        elif args.command == "languages":
            code = _languages(config)
        else:
            code = _serve(config)
    except (JudgeError, OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)
