"""Tests for the submission scheduler, mostly against a fake evaluator."""

from __future__ import annotations

import threading
import time

import pytest

from codejudge.errors import (
    ConcurrencyLimitError,
    EmptySourceError,
    NoTestCasesError,
    QueueFullError,
    SubmissionCancelled,
    UnsupportedLanguageError,
)
from codejudge.evaluator import Evaluator
from codejudge.models import (
    CaseResult,
    ExecutionOutcome,
    ResourceLimits,
    Submission,
    SubmissionStatus,
    TestCase,
    Verdict,
    VerdictStatus,
)
from codejudge.registry import RuntimeRegistry
from codejudge.scheduler import SubmissionScheduler
from codejudge.sink import InMemoryResultSink

CASES = (TestCase("", "ok"),)


def _success() -> Verdict:
    outcome = ExecutionOutcome(stdout="ok\n", stderr="", exit_code=0)
    return Verdict.from_cases([CaseResult(0, CASES[0], outcome, VerdictStatus.SUCCESS)], 1)


class FakeEvaluator:
    """Stands in for Evaluator; ``gate`` holds evaluations until released."""

    def __init__(self, results=None, gate: threading.Event | None = None) -> None:
        self.registry = RuntimeRegistry.default()
        self.results = list(results or [])
        self.gate = gate
        self.calls: list[str] = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    def evaluate(self, source_code, language, test_cases, limits=None, cancel=None, label=""):
        with self._lock:
            self.calls.append(source_code)
            result = self.results.pop(0) if self.results else _success()
        self.started.set()
        if self.gate is not None:
            while not self.gate.wait(0.01):
                if cancel is not None and cancel.is_set():
                    raise SubmissionCancelled(label)
        if isinstance(result, Exception):
            raise result
        return result


def _submission(user: str = "u1", challenge: str = "c1", code: str = "print('ok')") -> Submission:
    return Submission(challenge_id=challenge, user_id=user, language="python", source_code=code)


def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


class TestLifecycle:
    def test_runs_to_verdict_and_emits_record(self):
        sink = InMemoryResultSink()
        with SubmissionScheduler(FakeEvaluator(), sink, max_workers=2) as scheduler:
            sid = scheduler.enqueue(_submission(), CASES)
            final = scheduler.wait(sid, timeout=5)
        assert final.status is SubmissionStatus.SUCCESS
        assert final.verdict.passed_count == 1
        record = sink.get(sid)
        assert record.submission.status is SubmissionStatus.SUCCESS
        assert len(sink) == 1

    def test_status_transitions_are_published(self):
        seen: list[SubmissionStatus] = []
        with SubmissionScheduler(FakeEvaluator(), InMemoryResultSink()) as scheduler:
            scheduler.subscribe(lambda s: seen.append(s.status))
            sid = scheduler.enqueue(_submission(), CASES)
            scheduler.wait(sid, timeout=5)
        _wait_until(lambda: len(seen) == 3)
        assert seen == [SubmissionStatus.QUEUED, SubmissionStatus.RUNNING, SubmissionStatus.SUCCESS]

    def test_ids_are_unique(self):
        scheduler = SubmissionScheduler(FakeEvaluator(), InMemoryResultSink(), max_queue_depth=10)
        ids = {scheduler.enqueue(_submission(user=f"u{i}"), CASES) for i in range(5)}
        assert len(ids) == 5
        scheduler.shutdown(cancel_pending=True)

    def test_status_unknown(self):
        scheduler = SubmissionScheduler(FakeEvaluator(), InMemoryResultSink())
        assert scheduler.status("missing") is None
        assert scheduler.wait("missing", timeout=0.1) is None
        assert scheduler.cancel("missing") is False


class TestValidation:
    def test_empty_source(self):
        scheduler = SubmissionScheduler(FakeEvaluator(), InMemoryResultSink())
        with pytest.raises(EmptySourceError):
            scheduler.enqueue(_submission(code="   \n"), CASES)

    def test_unsupported_language(self):
        scheduler = SubmissionScheduler(FakeEvaluator(), InMemoryResultSink())
        sub = Submission(challenge_id="c", user_id="u", language="cobol", source_code="x")
        with pytest.raises(UnsupportedLanguageError):
            scheduler.enqueue(sub, CASES)

    def test_no_test_cases(self):
        scheduler = SubmissionScheduler(FakeEvaluator(), InMemoryResultSink())
        with pytest.raises(NoTestCasesError):
            scheduler.enqueue(_submission(), ())


class TestAdmission:
    def test_queue_full_rejects_without_dropping(self):
        scheduler = SubmissionScheduler(FakeEvaluator(), InMemoryResultSink(), max_queue_depth=2, retry_after=3)
        first = scheduler.enqueue(_submission(user="a"), CASES)
        second = scheduler.enqueue(_submission(user="b"), CASES)
        with pytest.raises(QueueFullError) as exc:
            scheduler.enqueue(_submission(user="c"), CASES)
        assert exc.value.retryable
        assert exc.value.retry_after == 3
        assert scheduler.status(first).status is SubmissionStatus.QUEUED
        assert scheduler.status(second).status is SubmissionStatus.QUEUED
        assert scheduler.stats()["queued"] == 2

        # The queued work still runs once workers start.
        scheduler.start()
        assert scheduler.wait(first, timeout=5).status is SubmissionStatus.SUCCESS
        assert scheduler.wait(second, timeout=5).status is SubmissionStatus.SUCCESS
        scheduler.shutdown()

    def test_per_user_challenge_cap(self):
        gate = threading.Event()
        evaluator = FakeEvaluator(gate=gate)
        scheduler = SubmissionScheduler(evaluator, InMemoryResultSink(), per_user_challenge_cap=True).start()
        try:
            sid = scheduler.enqueue(_submission(), CASES)
            with pytest.raises(ConcurrencyLimitError):
                scheduler.enqueue(_submission(), CASES)
            # Other challenges and other users are unaffected.
            other = scheduler.enqueue(_submission(challenge="c2"), CASES)
            gate.set()
            scheduler.wait(sid, timeout=5)
            scheduler.wait(other, timeout=5)
            _wait_until(lambda: scheduler.status(sid) is None)
            again = scheduler.enqueue(_submission(), CASES)
            assert scheduler.wait(again, timeout=5).status is SubmissionStatus.SUCCESS
        finally:
            gate.set()
            scheduler.shutdown()

    def test_worker_count_bounds_concurrency(self):
        gate = threading.Event()
        scheduler = SubmissionScheduler(FakeEvaluator(gate=gate), InMemoryResultSink(), max_workers=2).start()
        try:
            ids = [scheduler.enqueue(_submission(user=f"u{i}"), CASES) for i in range(4)]
            _wait_until(lambda: scheduler.stats()["running"] == 2)
            assert scheduler.stats()["queued"] == 2
            gate.set()
            for sid in ids:
                assert scheduler.wait(sid, timeout=5).status is SubmissionStatus.SUCCESS
        finally:
            gate.set()
            scheduler.shutdown()


class TestOrdering:
    def test_same_slot_runs_in_submission_order(self):
        evaluator = FakeEvaluator()
        scheduler = SubmissionScheduler(evaluator, InMemoryResultSink(), max_workers=4)
        ids = [scheduler.enqueue(_submission(code=f"print({i})"), CASES) for i in range(5)]
        order: list[str] = []
        scheduler.subscribe(lambda s: s.status is SubmissionStatus.RUNNING and order.append(s.id))
        scheduler.start()
        for sid in ids:
            scheduler.wait(sid, timeout=5)
        scheduler.shutdown()
        assert order == ids
        assert evaluator.calls == [f"print({i})" for i in range(5)]

    def test_same_slot_never_runs_concurrently(self):
        gate = threading.Event()
        scheduler = SubmissionScheduler(FakeEvaluator(gate=gate), InMemoryResultSink(), max_workers=4).start()
        try:
            first = scheduler.enqueue(_submission(), CASES)
            second = scheduler.enqueue(_submission(), CASES)
            _wait_until(lambda: scheduler.status(first).status is SubmissionStatus.RUNNING)
            time.sleep(0.1)
            assert scheduler.status(second).status is SubmissionStatus.QUEUED
            gate.set()
            assert scheduler.wait(second, timeout=5).status is SubmissionStatus.SUCCESS
        finally:
            gate.set()
            scheduler.shutdown()


class TestCancellation:
    def test_cancel_queued(self):
        evaluator = FakeEvaluator()
        sink = InMemoryResultSink()
        scheduler = SubmissionScheduler(evaluator, sink)
        sid = scheduler.enqueue(_submission(), CASES)
        assert scheduler.cancel(sid) is True
        assert scheduler.cancel(sid) is False
        scheduler.start()
        scheduler.shutdown()
        assert evaluator.calls == []
        assert sink.get(sid).submission.status is SubmissionStatus.CANCELLED
        assert sink.get(sid).verdict is None

    def test_cancel_running(self):
        gate = threading.Event()
        evaluator = FakeEvaluator(gate=gate)
        sink = InMemoryResultSink()
        scheduler = SubmissionScheduler(evaluator, sink).start()
        try:
            sid = scheduler.enqueue(_submission(), CASES)
            assert evaluator.started.wait(5)
            assert scheduler.cancel(sid) is True
            final = scheduler.wait(sid, timeout=5)
            assert final.status is SubmissionStatus.CANCELLED
            assert scheduler.cancel(sid) is False
        finally:
            gate.set()
            scheduler.shutdown()
        assert sink.get(sid).submission.status is SubmissionStatus.CANCELLED

    def test_shutdown_cancels_pending(self):
        sink = InMemoryResultSink()
        scheduler = SubmissionScheduler(FakeEvaluator(), sink)
        ids = [scheduler.enqueue(_submission(user=f"u{i}"), CASES) for i in range(3)]
        scheduler.shutdown(cancel_pending=True)
        assert all(sink.get(sid).submission.status is SubmissionStatus.CANCELLED for sid in ids)
        with pytest.raises(RuntimeError):
            scheduler.enqueue(_submission(), CASES)

    def test_cancel_racing_completion_matches_recorded_status(self, monkeypatch):
        finishing = threading.Event()
        advance = Submission.advance

        def slow_advance(submission, status, verdict=None):
            if status is SubmissionStatus.SUCCESS:
                finishing.set()
                time.sleep(0.3)
            return advance(submission, status, verdict)

        monkeypatch.setattr(Submission, "advance", slow_advance)
        sink = InMemoryResultSink()
        with SubmissionScheduler(FakeEvaluator(), sink) as scheduler:
            sid = scheduler.enqueue(_submission(), CASES)
            assert finishing.wait(5)
            cancelled = scheduler.cancel(sid)
            final = scheduler.wait(sid, timeout=5)
        assert cancelled is False
        assert final.status is SubmissionStatus.SUCCESS
        assert sink.get(sid).submission.status is SubmissionStatus.SUCCESS


class TestFailures:
    def test_retries_infrastructure_failure_once(self):
        evaluator = FakeEvaluator(results=[Verdict.internal_error("sandbox down", 1, retryable=True)])
        with SubmissionScheduler(evaluator, InMemoryResultSink()) as scheduler:
            sid = scheduler.enqueue(_submission(), CASES)
            final = scheduler.wait(sid, timeout=5)
        assert final.status is SubmissionStatus.SUCCESS
        assert len(evaluator.calls) == 2

    def test_gives_up_after_second_failure(self):
        evaluator = FakeEvaluator(results=[RuntimeError("boom"), RuntimeError("boom again")])
        with SubmissionScheduler(evaluator, InMemoryResultSink()) as scheduler:
            sid = scheduler.enqueue(_submission(), CASES)
            final = scheduler.wait(sid, timeout=5)
        assert final.status is SubmissionStatus.INTERNAL_ERROR
        assert final.verdict.per_case_results == []
        assert "boom again" in final.verdict.message
        assert len(evaluator.calls) == 2

    def test_user_code_outcomes_are_not_retried(self):
        outcome = ExecutionOutcome(stdout="", stderr="Traceback", exit_code=1)
        failed = Verdict.from_cases([CaseResult(0, CASES[0], outcome, VerdictStatus.RUNTIME_ERROR)], 1)
        evaluator = FakeEvaluator(results=[failed])
        with SubmissionScheduler(evaluator, InMemoryResultSink()) as scheduler:
            sid = scheduler.enqueue(_submission(), CASES)
            final = scheduler.wait(sid, timeout=5)
        assert final.status is SubmissionStatus.RUNTIME_ERROR
        assert len(evaluator.calls) == 1

    def test_sink_failure_does_not_affect_other_submissions(self):
        class FlakySink(InMemoryResultSink):
            def emit(self, record):
                if record.submission.user_id == "bad":
                    raise OSError("disk full")
                super().emit(record)

        sink = FlakySink()
        with SubmissionScheduler(FakeEvaluator(), sink) as scheduler:
            bad = scheduler.enqueue(_submission(user="bad"), CASES)
            good = scheduler.enqueue(_submission(user="good"), CASES)
            assert scheduler.wait(bad, timeout=5).status is SubmissionStatus.SUCCESS
            assert scheduler.wait(good, timeout=5).status is SubmissionStatus.SUCCESS
        assert sink.get(bad) is None
        assert sink.get(good) is not None

    def test_listener_failure_is_contained(self):
        def broken(submission):
            raise ValueError("listener bug")

        with SubmissionScheduler(FakeEvaluator(), InMemoryResultSink()) as scheduler:
            scheduler.subscribe(broken)
            sid = scheduler.enqueue(_submission(), CASES)
            assert scheduler.wait(sid, timeout=5).status is SubmissionStatus.SUCCESS


class TestEvents:
    def test_nothing_is_buffered_without_a_dispatcher(self):
        scheduler = SubmissionScheduler(FakeEvaluator(), InMemoryResultSink())
        for i in range(3):
            scheduler.enqueue(_submission(user=f"u{i}"), CASES)
        assert scheduler._events.qsize() == 0
        scheduler.shutdown(cancel_pending=True)
        assert scheduler._events.qsize() == 0

    def test_final_status_reaches_listeners_on_shutdown(self):
        seen: list[SubmissionStatus] = []
        scheduler = SubmissionScheduler(FakeEvaluator(), InMemoryResultSink()).start()
        scheduler.subscribe(lambda s: seen.append(s.status))
        scheduler.enqueue(_submission(), CASES)
        scheduler.shutdown()
        assert seen[-1] is SubmissionStatus.SUCCESS


class TestRealProcesses:
    def test_concurrent_infinite_loops_time_out_independently(self):
        limits = ResourceLimits(cpu_time_ms=2000, wall_time_ms=2000, memory_kb=256 * 1024)
        loop = "while True:\n    pass\n"
        sink = InMemoryResultSink()
        with SubmissionScheduler(Evaluator(), sink, max_workers=2) as scheduler:
            start = time.monotonic()
            ids = [
                scheduler.enqueue(_submission(user=user, code=loop), CASES, limits)
                for user in ("alice", "bob")
            ]
            finals = [scheduler.wait(sid, timeout=30) for sid in ids]
            elapsed = time.monotonic() - start
        assert [f.status for f in finals] == [SubmissionStatus.TIMEOUT, SubmissionStatus.TIMEOUT]
        assert all(sink.get(sid).verdict.status is VerdictStatus.TIMEOUT for sid in ids)
        # Back to back they would need at least two full wall limits.
        assert elapsed < 3.8
