"""Submit API and Verdict Query: the facade callers talk to."""

from __future__ import annotations

import logging
from typing import Any

from codejudge.challenges import ChallengeStore
from codejudge.errors import EmptySourceError, NoTestCasesError, UnknownSubmissionError
from codejudge.models import Submission
from codejudge.registry import RuntimeRegistry
from codejudge.scheduler import SubmissionScheduler
from codejudge.sink import QueryableSink, ResultSink

logger = logging.getLogger(__name__)


class JudgeService:
    def __init__(
        self,
        challenges: ChallengeStore,
        registry: RuntimeRegistry,
        scheduler: SubmissionScheduler,
        sink: ResultSink,
    ) -> None:
        self.challenges = challenges
        self.registry = registry
        self.scheduler = scheduler
        self.sink = sink

    def submit(self, challenge_id: str, user_id: str, language: str, source_code: str) -> str:
        """Validate and enqueue a submission; returns its id.

        Validation and admission errors are raised here. Everything that
        happens to the code afterwards is only visible through :meth:`query`.
        """
        if not source_code or not source_code.strip():
            raise EmptySourceError()
        profile = self.registry.resolve(language)
        challenge = self.challenges.get(str(challenge_id))
        if not challenge.test_cases:
            raise NoTestCasesError(challenge.id)

        limits = profile.limits.merged(**challenge.limit_overrides())
        submission = Submission(
            challenge_id=challenge.id,
            user_id=str(user_id),
            language=profile.language,
            source_code=source_code,
        )
        return self.scheduler.enqueue(submission, challenge.test_cases, limits)

    def query(self, submission_id: str) -> dict[str, Any]:
        """Status payload for a submission, with its verdict once terminal."""
        active = self.scheduler.status(submission_id)
        if active is not None:
            return active.to_public_dict()
        if isinstance(self.sink, QueryableSink):
            record = self.sink.get(submission_id)
            if record is not None:
                return record.submission.to_public_dict()
        raise UnknownSubmissionError(submission_id)

    def cancel(self, submission_id: str) -> bool:
        return self.scheduler.cancel(submission_id)

    def languages(self) -> list[dict[str, Any]]:
        return [p.to_dict() for p in self.registry.profiles()]

    def history(self, user_id: str, challenge_id: str | None = None) -> list[dict[str, Any]]:
        """Finished submissions for a user, newest first; empty if the sink can't be queried."""
        if not isinstance(self.sink, QueryableSink):
            return []
        return [
            r.submission.to_public_dict()
            for r in self.sink.list_for_user(str(user_id), challenge_id)
        ]
