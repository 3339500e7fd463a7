"""Data models for the judging core."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable

from codejudge.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerdictStatus(enum.Enum):
    SUCCESS = "SUCCESS"
    WRONG_ANSWER = "WRONG_ANSWER"
    COMPILE_ERROR = "COMPILE_ERROR"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    TIMEOUT = "TIMEOUT"
    MEMORY_EXCEEDED = "MEMORY_EXCEEDED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Highest priority first. INTERNAL_ERROR never comes out of case aggregation
# but outranks everything when it is present.
_STATUS_PRIORITY = [
    VerdictStatus.INTERNAL_ERROR,
    VerdictStatus.COMPILE_ERROR,
    VerdictStatus.RUNTIME_ERROR,
    VerdictStatus.TIMEOUT,
    VerdictStatus.MEMORY_EXCEEDED,
    VerdictStatus.WRONG_ANSWER,
    VerdictStatus.SUCCESS,
]


def worst_status(statuses: Iterable[VerdictStatus]) -> VerdictStatus:
    """Return the highest-priority status, SUCCESS for an empty iterable."""
    return min(statuses, key=_STATUS_PRIORITY.index, default=VerdictStatus.SUCCESS)


class SubmissionStatus(enum.Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    WRONG_ANSWER = "WRONG_ANSWER"
    COMPILE_ERROR = "COMPILE_ERROR"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    TIMEOUT = "TIMEOUT"
    MEMORY_EXCEEDED = "MEMORY_EXCEEDED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self not in (SubmissionStatus.QUEUED, SubmissionStatus.RUNNING)

    @classmethod
    def from_verdict(cls, status: VerdictStatus) -> SubmissionStatus:
        return cls(status.value)


_VERDICT_STATES = frozenset(SubmissionStatus(v.value) for v in VerdictStatus)

_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.QUEUED: frozenset({SubmissionStatus.RUNNING, SubmissionStatus.CANCELLED}),
    SubmissionStatus.RUNNING: _VERDICT_STATES | {SubmissionStatus.CANCELLED},
}


@dataclass(frozen=True)
class ResourceLimits:
    cpu_time_ms: int = 2000
    wall_time_ms: int = 5000
    memory_kb: int = 256 * 1024
    output_limit_bytes: int = 1024 * 1024

    def merged(self, **overrides: int | None) -> ResourceLimits:
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    def to_dict(self) -> dict[str, int]:
        return {
            "cpu_time_ms": self.cpu_time_ms,
            "wall_time_ms": self.wall_time_ms,
            "memory_kb": self.memory_kb,
            "output_limit_bytes": self.output_limit_bytes,
        }


@dataclass(frozen=True)
class TestCase:
    input: str = ""
    expected_output: str = ""
    is_hidden: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestCase:
        """Accept both the camelCase shape stored by the course service and snake_case."""
        expected = data.get("expectedOutput", data.get("expected_output", ""))
        hidden = data.get("isHidden", data.get("is_hidden", False))
        return cls(
            input=str(data.get("input") or ""),
            expected_output=str(expected if expected is not None else ""),
            is_hidden=bool(hidden),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "input": self.input,
            "expected_output": self.expected_output,
            "is_hidden": self.is_hidden,
        }


@dataclass(frozen=True)
class Challenge:
    id: str
    test_cases: tuple[TestCase, ...]
    title: str = ""
    language: str | None = None
    wall_time_ms: int | None = None
    memory_kb: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Challenge:
        raw_cases = data.get("testCases", data.get("test_cases", []))
        # Platform rows store test cases as a JSON text column.
        if isinstance(raw_cases, str):
            raw_cases = json.loads(raw_cases or "[]")
        return cls(
            id=str(data["id"]),
            test_cases=tuple(TestCase.from_dict(tc) for tc in raw_cases or []),
            title=data.get("title", ""),
            language=data.get("language"),
            wall_time_ms=data.get("wallTimeMs", data.get("wall_time_ms")),
            memory_kb=data.get("memoryKb", data.get("memory_kb")),
        )

    def limit_overrides(self) -> dict[str, int | None]:
        return {"wall_time_ms": self.wall_time_ms, "memory_kb": self.memory_kb}


@dataclass
class ExecutionOutcome:
    stdout: str
    stderr: str
    exit_code: int
    wall_time_ms: int = 0
    peak_memory_kb: int = 0
    timed_out: bool = False
    oom: bool = False
    stage: str = "run"  # "compile" or "run"
    output_truncated: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return (
            self.exit_code == 0
            and not self.timed_out
            and not self.oom
            and not self.cancelled
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "wall_time_ms": self.wall_time_ms,
            "peak_memory_kb": self.peak_memory_kb,
            "timed_out": self.timed_out,
            "oom": self.oom,
            "stage": self.stage,
            "output_truncated": self.output_truncated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionOutcome:
        return cls(
            stdout=data.get("stdout", ""),
            stderr=data.get("stderr", ""),
            exit_code=data.get("exit_code", 0),
            wall_time_ms=data.get("wall_time_ms", 0),
            peak_memory_kb=data.get("peak_memory_kb", 0),
            timed_out=data.get("timed_out", False),
            oom=data.get("oom", False),
            stage=data.get("stage", "run"),
            output_truncated=data.get("output_truncated", False),
        )


@dataclass
class CaseResult:
    index: int
    test_case: TestCase
    outcome: ExecutionOutcome
    status: VerdictStatus

    @property
    def passed(self) -> bool:
        return self.status is VerdictStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "test_case": self.test_case.to_dict(),
            "status": self.status.value,
            "passed": self.passed,
            "outcome": self.outcome.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CaseResult:
        return cls(
            index=data["index"],
            test_case=TestCase.from_dict(data["test_case"]),
            outcome=ExecutionOutcome.from_dict(data["outcome"]),
            status=VerdictStatus(data["status"]),
        )

    def to_public_dict(self) -> dict[str, Any]:
        """Hidden cases only reveal whether they passed."""
        if self.test_case.is_hidden:
            return {"index": self.index, "hidden": True, "passed": self.passed}
        return {
            "index": self.index,
            "hidden": False,
            "passed": self.passed,
            "status": self.status.value,
            "input": self.test_case.input,
            "expectedOutput": self.test_case.expected_output,
            "actualOutput": self.outcome.stdout,
            "stderr": self.outcome.stderr,
            "timeMs": self.outcome.wall_time_ms,
            "memoryKb": self.outcome.peak_memory_kb,
            "timedOut": self.outcome.timed_out,
            "outputTruncated": self.outcome.output_truncated,
        }


@dataclass
class Verdict:
    status: VerdictStatus
    passed_count: int = 0
    total_count: int = 0
    per_case_results: list[CaseResult] = field(default_factory=list)
    total_time_ms: int = 0
    peak_memory_kb: int = 0
    message: str = ""
    retryable: bool = False  # infrastructure failure the scheduler may retry

    def __post_init__(self) -> None:
        all_passed = self.total_count > 0 and self.passed_count == self.total_count
        if (self.status is VerdictStatus.SUCCESS) != (
            all_passed and all(r.passed for r in self.per_case_results)
        ):
            raise ValueError(
                f"Inconsistent verdict: {self.status.value} with "
                f"{self.passed_count}/{self.total_count} passed"
            )

    @classmethod
    def from_cases(cls, results: list[CaseResult], total_count: int) -> Verdict:
        return cls(
            status=worst_status(r.status for r in results),
            passed_count=sum(1 for r in results if r.passed),
            total_count=total_count,
            per_case_results=results,
            total_time_ms=sum(r.outcome.wall_time_ms for r in results),
            peak_memory_kb=max((r.outcome.peak_memory_kb for r in results), default=0),
        )

    @classmethod
    def compile_error(cls, outcome: ExecutionOutcome, total_count: int) -> Verdict:
        message = outcome.stderr or outcome.stdout
        if outcome.timed_out:
            message = "Compilation timed out"
        elif outcome.oom:
            message = "Compilation exceeded the memory limit"
        return cls(
            status=VerdictStatus.COMPILE_ERROR,
            total_count=total_count,
            total_time_ms=outcome.wall_time_ms,
            peak_memory_kb=outcome.peak_memory_kb,
            message=message,
        )

    @classmethod
    def internal_error(cls, message: str, total_count: int = 0, retryable: bool = False) -> Verdict:
        return cls(
            status=VerdictStatus.INTERNAL_ERROR,
            total_count=total_count,
            message=message,
            retryable=retryable,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "passed_count": self.passed_count,
            "total_count": self.total_count,
            "per_case_results": [r.to_dict() for r in self.per_case_results],
            "total_time_ms": self.total_time_ms,
            "peak_memory_kb": self.peak_memory_kb,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Verdict:
        return cls(
            status=VerdictStatus(data["status"]),
            passed_count=data.get("passed_count", 0),
            total_count=data.get("total_count", 0),
            per_case_results=[CaseResult.from_dict(r) for r in data.get("per_case_results", [])],
            total_time_ms=data.get("total_time_ms", 0),
            peak_memory_kb=data.get("peak_memory_kb", 0),
            message=data.get("message", ""),
        )

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "passedCount": self.passed_count,
            "totalCount": self.total_count,
            "totalTimeMs": self.total_time_ms,
            "peakMemoryKb": self.peak_memory_kb,
            "message": self.message,
            "cases": [r.to_public_dict() for r in self.per_case_results],
        }


@dataclass(frozen=True)
class Submission:
    challenge_id: str
    user_id: str
    language: str
    source_code: str
    id: str = ""
    submitted_at: datetime = field(default_factory=utcnow)
    status: SubmissionStatus = SubmissionStatus.QUEUED
    verdict: Verdict | None = None

    @property
    def slot(self) -> tuple[str, str]:
        """Submissions sharing a slot run one at a time, in submission order."""
        return (self.user_id, self.challenge_id)

    def advance(self, status: SubmissionStatus, verdict: Verdict | None = None) -> Submission:
        """Return the submission moved to *status*; terminal states are final."""
        allowed = _TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise InvalidTransitionError(self.status.value, status.value)
        return replace(self, status=status, verdict=verdict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "challenge_id": self.challenge_id,
            "user_id": self.user_id,
            "language": self.language,
            "source_code": self.source_code,
            "submitted_at": self.submitted_at.isoformat(),
            "status": self.status.value,
            "verdict": self.verdict.to_dict() if self.verdict else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Submission:
        verdict = data.get("verdict")
        return cls(
            challenge_id=data["challenge_id"],
            user_id=data["user_id"],
            language=data["language"],
            source_code=data["source_code"],
            id=data.get("id", ""),
            submitted_at=datetime.fromisoformat(data["submitted_at"]),
            status=SubmissionStatus(data["status"]),
            verdict=Verdict.from_dict(verdict) if verdict else None,
        )

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "submissionId": self.id,
            "challengeId": self.challenge_id,
            "userId": self.user_id,
            "language": self.language,
            "submittedAt": self.submitted_at.isoformat(),
            "status": self.status.value,
            "verdict": self.verdict.to_public_dict() if self.verdict else None,
        }


@dataclass(frozen=True)
class SubmissionRecord:
    """Immutable handoff to durable storage, emitted once per terminal submission."""

    submission: Submission
    completed_at: datetime = field(default_factory=utcnow)

    @property
    def verdict(self) -> Verdict | None:
        return self.submission.verdict

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission": self.submission.to_dict(),
            "completed_at": self.completed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubmissionRecord:
        return cls(
            submission=Submission.from_dict(data["submission"]),
            completed_at=datetime.fromisoformat(data["completed_at"]),
        )
