"""Exception hierarchy for the judging core."""

from __future__ import annotations


class JudgeError(Exception):
    """Base class for every error raised by codejudge."""

    retryable: bool = False


# ---------------------------------------------------------------------------
# Validation errors: rejected before enqueue, never retryable
# ---------------------------------------------------------------------------


class ValidationError(JudgeError):
    pass


class UnsupportedLanguageError(ValidationError):
    def __init__(self, language: str, supported: list[str] | None = None) -> None:
        self.language = language
        self.supported = sorted(supported or [])
        message = f"Unsupported language: {language!r}"
        if self.supported:
            message += f" (available: {', '.join(self.supported)})"
        super().__init__(message)


class EmptySourceError(ValidationError):
    def __init__(self) -> None:
        super().__init__("Source code must not be empty")


class ChallengeNotFoundError(ValidationError):
    def __init__(self, challenge_id: str) -> None:
        self.challenge_id = challenge_id
        super().__init__(f"Challenge not found: {challenge_id}")


class NoTestCasesError(ValidationError):
    def __init__(self, challenge_id: str) -> None:
        self.challenge_id = challenge_id
        super().__init__(f"Challenge {challenge_id} has no test cases")


# ---------------------------------------------------------------------------
# Admission errors: caller may retry after backoff
# ---------------------------------------------------------------------------


class AdmissionError(JudgeError):
    retryable = True

    def __init__(self, message: str, retry_after: float = 1.0) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class QueueFullError(AdmissionError):
    def __init__(self, depth: int, retry_after: float = 1.0) -> None:
        self.depth = depth
        super().__init__(f"Submission queue is full ({depth} pending)", retry_after)


class ConcurrencyLimitError(AdmissionError):
    def __init__(self, user_id: str, challenge_id: str, retry_after: float = 1.0) -> None:
        self.user_id = user_id
        self.challenge_id = challenge_id
        super().__init__(
            f"User {user_id} already has a submission in flight for challenge {challenge_id}",
            retry_after,
        )


# ---------------------------------------------------------------------------
# Infrastructure and lifecycle errors
# ---------------------------------------------------------------------------


class SandboxError(JudgeError):
    """The sandbox could not start or clean up an execution."""

    retryable = True


class SubmissionCancelled(JudgeError):
    def __init__(self, submission_id: str = "") -> None:
        self.submission_id = submission_id
        if submission_id:
            super().__init__(f"Submission {submission_id} was cancelled")
        else:
            super().__init__("Submission was cancelled")


class UnknownSubmissionError(JudgeError):
    def __init__(self, submission_id: str) -> None:
        self.submission_id = submission_id
        super().__init__(f"Unknown submission: {submission_id}")


class InvalidTransitionError(JudgeError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move submission from {current} to {target}")


class ChallengeStoreError(JudgeError):
    """The external challenge store failed to answer."""

    retryable = True


class ConfigError(JudgeError):
    pass
