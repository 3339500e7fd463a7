"""Test case evaluator: runs every case through the sandbox and grades the result."""

from __future__ import annotations

import logging
import threading
from typing import Sequence

from codejudge.errors import SandboxError, SubmissionCancelled, UnsupportedLanguageError
from codejudge.executor_base import SandboxExecutor
from codejudge.harness import build_case_program, outputs_match
from codejudge.models import (
    CaseResult,
    ExecutionOutcome,
    ResourceLimits,
    TestCase,
    Verdict,
    VerdictStatus,
)
from codejudge.registry import RuntimeRegistry
from codejudge.sandbox import LocalSandbox

logger = logging.getLogger(__name__)


def classify(outcome: ExecutionOutcome, test_case: TestCase) -> VerdictStatus:
    """Map one run to a per-case status."""
    if outcome.oom:
        return VerdictStatus.MEMORY_EXCEEDED
    if outcome.timed_out:
        return VerdictStatus.TIMEOUT
    if outcome.exit_code != 0:
        return VerdictStatus.RUNTIME_ERROR
    if not outputs_match(test_case.expected_output, outcome.stdout):
        return VerdictStatus.WRONG_ANSWER
    return VerdictStatus.SUCCESS


class Evaluator:
    def __init__(
        self,
        registry: RuntimeRegistry | None = None,
        sandbox: SandboxExecutor | None = None,
    ) -> None:
        self.registry = registry or RuntimeRegistry.default()
        self.sandbox: SandboxExecutor = sandbox or LocalSandbox()

    def evaluate(
        self,
        source_code: str,
        language: str,
        test_cases: Sequence[TestCase],
        limits: ResourceLimits | None = None,
        cancel: threading.Event | None = None,
        label: str = "",
    ) -> Verdict:
        """Grade *source_code* against *test_cases*, in order.

        Every case runs even after a failure so the caller sees all of them.
        A sandbox failure aborts the remaining cases and returns a retryable
        INTERNAL_ERROR with no per-case results. Raises
        :class:`SubmissionCancelled` when *cancel* is set mid-evaluation.
        """
        cases = tuple(test_cases)
        tag = f"[{label}] " if label else ""
        try:
            profile = self.registry.resolve(language)
        except UnsupportedLanguageError as e:
            logger.warning("%s%s", tag, e)
            return Verdict.internal_error(str(e), total_count=len(cases))
        if not cases:
            return Verdict.internal_error("No test cases to run")

        limits = limits or profile.limits
        try:
            with self.sandbox.prepare(source_code, profile, cancel) as program:
                if program.compile_outcome is not None and program.compile_outcome.cancelled:
                    raise SubmissionCancelled(label)
                if program.compile_failed:
                    logger.info("%sCompile error (%s)", tag, profile.language)
                    return Verdict.compile_error(program.compile_outcome, len(cases))

                results: list[CaseResult] = []
                for index, test_case in enumerate(cases):
                    if cancel is not None and cancel.is_set():
                        raise SubmissionCancelled(label)
                    replacement, stdin = build_case_program(source_code, test_case, profile)
                    if replacement is None and not profile.requires_compile:
                        # Undo an expression appended for an earlier case.
                        replacement = source_code
                    outcome = program.execute(stdin, limits, cancel, source_code=replacement)
                    if outcome.cancelled:
                        raise SubmissionCancelled(label)
                    status = classify(outcome, test_case)
                    results.append(CaseResult(index, test_case, outcome, status))
                    logger.debug("%sCase %d/%d: %s", tag, index + 1, len(cases), status.value)
        except SandboxError as e:
            logger.error("%sSandbox failure: %s", tag, e)
            return Verdict.internal_error(f"Sandbox failure: {e}", len(cases), retryable=True)

        verdict = Verdict.from_cases(results, len(cases))
        logger.info(
            "%sVerdict %s (%d/%d passed, %dms, %dKB)",
            tag,
            verdict.status.value,
            verdict.passed_count,
            verdict.total_count,
            verdict.total_time_ms,
            verdict.peak_memory_kb,
        )
        return verdict
