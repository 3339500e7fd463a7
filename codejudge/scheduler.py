"""Bounded worker pool that owns submissions from enqueue until their verdict is handed off."""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field, replace
from typing import Callable, Sequence

from codejudge.errors import (
    ConcurrencyLimitError,
    EmptySourceError,
    NoTestCasesError,
    QueueFullError,
    SubmissionCancelled,
)
from codejudge.evaluator import Evaluator
from codejudge.models import (
    ResourceLimits,
    Submission,
    SubmissionRecord,
    SubmissionStatus,
    TestCase,
    Verdict,
    VerdictStatus,
)
from codejudge.sink import ResultSink

logger = logging.getLogger(__name__)

Listener = Callable[[Submission], None]

MAX_ATTEMPTS = 2  # one internal retry for infrastructure failures
RECENT_RESULTS = 1000  # finished submissions kept for wait()


@dataclass
class _Job:
    submission: Submission
    test_cases: tuple[TestCase, ...]
    limits: ResourceLimits | None = None
    cancel: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)


class SubmissionScheduler:
    """Accepts submissions without blocking and judges them on a fixed pool of threads.

    Submissions from one user for one challenge share a slot; a worker never
    claims a job whose slot is already running, so each slot is judged in
    submission order. All shared state lives under ``self._lock``.

    Status changes are queued under the lock and delivered to listeners by a
    single dispatcher thread, so every listener sees them in order.
    """

    def __init__(
        self,
        evaluator: Evaluator,
        sink: ResultSink,
        max_workers: int = 4,
        max_queue_depth: int = 100,
        per_user_challenge_cap: bool = False,
        retry_after: float = 2.0,
    ) -> None:
        self.evaluator = evaluator
        self.sink = sink
        self.max_workers = max_workers
        self.max_queue_depth = max_queue_depth
        self.per_user_challenge_cap = per_user_challenge_cap
        self.retry_after = retry_after

        self._lock = threading.Lock()
        self._work_available = threading.Condition(self._lock)
        self._pending: deque[_Job] = deque()
        self._jobs: dict[str, _Job] = {}
        self._recent: OrderedDict[str, Submission] = OrderedDict()
        self._running_slots: set[tuple[str, str]] = set()
        self._running = 0
        self._stopping = False
        self._workers: list[threading.Thread] = []
        self._listeners: list[Listener] = []
        self._events: queue.Queue[Submission | None] = queue.Queue()
        self._dispatcher: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> SubmissionScheduler:
        with self._lock:
            if self._workers:
                return self
            self._stopping = False
            for n in range(self.max_workers):
                worker = threading.Thread(
                    target=self._work, name=f"codejudge-worker-{n + 1}", daemon=True
                )
                self._workers.append(worker)
            if self._dispatcher is None:
                self._dispatcher = threading.Thread(
                    target=self._dispatch, name="codejudge-events", daemon=True
                )
                self._dispatcher.start()
            workers = list(self._workers)
        for worker in workers:
            worker.start()
        logger.info("Scheduler started with %d workers", self.max_workers)
        return self

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        """Stop accepting work; workers exit once the queue is drained.

        With ``wait=False`` the dispatcher stops at once and status changes
        published after this call are dropped.
        """
        if cancel_pending:
            with self._lock:
                pending_ids = [job.submission.id for job in self._pending]
            for submission_id in pending_ids:
                self.cancel(submission_id)
        with self._lock:
            self._stopping = True
            self._work_available.notify_all()
            workers, self._workers = self._workers, []
        if wait:
            for worker in workers:
                worker.join()
        with self._lock:
            dispatcher, self._dispatcher = self._dispatcher, None
        if dispatcher is not None:
            self._events.put(None)
            if wait:
                dispatcher.join()
        logger.info("Scheduler stopped")

    def __enter__(self) -> SubmissionScheduler:
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.shutdown(wait=True, cancel_pending=True)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def enqueue(
        self,
        submission: Submission,
        test_cases: Sequence[TestCase],
        limits: ResourceLimits | None = None,
    ) -> str:
        """Admit *submission* and return its id; never blocks.

        Raises a ValidationError for bad input and an AdmissionError
        (retryable) when the queue or the user's slot is full.
        """
        if not submission.source_code.strip():
            raise EmptySourceError()
        self.evaluator.registry.resolve(submission.language)
        if not test_cases:
            raise NoTestCasesError(submission.challenge_id)

        queued = replace(
            submission,
            id=submission.id or uuid.uuid4().hex,
            status=SubmissionStatus.QUEUED,
            verdict=None,
        )
        with self._lock:
            if self._stopping:
                raise RuntimeError("Scheduler is shut down")
            if queued.id in self._jobs:
                raise ValueError(f"Duplicate submission id: {queued.id}")
            if len(self._pending) >= self.max_queue_depth:
                raise QueueFullError(len(self._pending), self.retry_after)
            if self.per_user_challenge_cap and any(
                job.submission.slot == queued.slot for job in self._jobs.values()
            ):
                raise ConcurrencyLimitError(queued.user_id, queued.challenge_id, self.retry_after)
            job = _Job(queued, tuple(test_cases), limits)
            self._jobs[queued.id] = job
            self._pending.append(job)
            self._publish(queued)
            self._work_available.notify()

        logger.info(
            "[%s] Queued %s submission from user %s for challenge %s",
            queued.id, queued.language, queued.user_id, queued.challenge_id,
        )
        return queued.id

    def cancel(self, submission_id: str) -> bool:
        """Cancel a queued or running submission; False if there was nothing to cancel."""
        with self._lock:
            job = self._jobs.get(submission_id)
            if job is None or job.cancel.is_set() or job.submission.status.is_terminal:
                return False
            job.cancel.set()
            if job.submission.status is not SubmissionStatus.QUEUED:
                logger.info("[%s] Cancelling running submission", submission_id)
                return True
            self._pending.remove(job)
            del self._jobs[submission_id]

        logger.info("[%s] Cancelled before execution", submission_id)
        self._finish(job, job.submission.advance(SubmissionStatus.CANCELLED))
        return True

    def status(self, submission_id: str) -> Submission | None:
        """Current state of an active submission, None once handed off."""
        with self._lock:
            job = self._jobs.get(submission_id)
            return job.submission if job else None

    def wait(self, submission_id: str, timeout: float | None = None) -> Submission | None:
        """Block until *submission_id* is terminal.

        Returns None for unknown ids and when *timeout* expires first.
        """
        with self._lock:
            job = self._jobs.get(submission_id)
            if job is None:
                return self._recent.get(submission_id)
        if not job.done.wait(timeout):
            return None
        return job.submission

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* with every status change; returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "queued": len(self._pending),
                "running": self._running,
                "workers": len(self._workers),
                "max_queue_depth": self.max_queue_depth,
            }

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _claim(self) -> _Job | None:
        for index, job in enumerate(self._pending):
            if job.submission.slot not in self._running_slots:
                del self._pending[index]
                return job
        return None

    def _work(self) -> None:
        while True:
            with self._lock:
                job = self._claim()
                while job is None:
                    if self._stopping:
                        return
                    self._work_available.wait()
                    job = self._claim()
                job.submission = job.submission.advance(SubmissionStatus.RUNNING)
                slot = job.submission.slot
                self._running += 1
                self._running_slots.add(slot)
                self._publish(job.submission)

            try:
                self._process(job)
            finally:
                with self._lock:
                    self._running -= 1
                    self._running_slots.discard(slot)
                    self._jobs.pop(job.submission.id, None)
                    # A job waiting on this slot may now be claimable.
                    self._work_available.notify_all()

    def _process(self, job: _Job) -> None:
        submission = job.submission
        try:
            verdict = self._judge(job)
        except SubmissionCancelled:
            verdict = None

        # Decide and publish the terminal state together so cancel() either
        # lands before it (and wins) or sees a terminal status.
        with self._lock:
            cancelled = verdict is None or job.cancel.is_set()
            if cancelled:
                final = submission.advance(SubmissionStatus.CANCELLED)
            else:
                final = submission.advance(SubmissionStatus.from_verdict(verdict.status), verdict)
            job.submission = final
        if cancelled:
            logger.info("[%s] Cancelled while running", submission.id)
        self._finish(job, final)

    def _judge(self, job: _Job) -> Verdict:
        submission = job.submission
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                verdict = self.evaluator.evaluate(
                    submission.source_code,
                    submission.language,
                    job.test_cases,
                    limits=job.limits,
                    cancel=job.cancel,
                    label=submission.id,
                )
            except SubmissionCancelled:
                raise
            except Exception as e:
                # A fault in one submission must not take the worker down.
                logger.exception("[%s] Evaluation crashed", submission.id)
                verdict = Verdict.internal_error(
                    f"{type(e).__name__}: {e}", len(job.test_cases), retryable=True
                )
            if not (verdict.status is VerdictStatus.INTERNAL_ERROR and verdict.retryable):
                return verdict
            if attempt < MAX_ATTEMPTS and not job.cancel.is_set():
                logger.warning(
                    "[%s] Infrastructure failure, retrying: %s", submission.id, verdict.message
                )
        return verdict

    def _finish(self, job: _Job, final: Submission) -> None:
        job.submission = final
        try:
            self.sink.emit(SubmissionRecord(final))
        except Exception:
            logger.exception("[%s] Result sink rejected the record", final.id)
        with self._lock:
            self._recent[final.id] = final
            while len(self._recent) > RECENT_RESULTS:
                self._recent.popitem(last=False)
            self._publish(final)
        job.done.set()
        logger.info("[%s] Finished: %s", final.id, final.status.value)

    def _publish(self, submission: Submission) -> None:
        # Caller holds self._lock. Without a dispatcher nobody drains the queue.
        if self._dispatcher is not None:
            self._events.put(submission)

    def _dispatch(self) -> None:
        while True:
            submission = self._events.get()
            if submission is None:
                return
            with self._lock:
                listeners = list(self._listeners)
            for listener in listeners:
                try:
                    listener(submission)
                except Exception:
                    logger.exception("[%s] Status listener failed", submission.id)
