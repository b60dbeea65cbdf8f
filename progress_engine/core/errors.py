"""Domain errors raised by the gamification engine."""

from typing import Optional


class ProgressEngineError(Exception):
    """Base class for all engine errors."""

    code = "progress_error"
    status_code = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self):
        return {"error": self.code, "detail": self.message, **self.context}


class NotFound(ProgressEngineError):
    """A referenced course, quiz or enrollment does not exist."""

    code = "not_found"
    status_code = 404


class InvalidUser(ProgressEngineError):
    """Malformed or unknown user identifier."""

    code = "invalid_user"
    status_code = 400


class InvalidEvent(ProgressEngineError):
    """Unknown activity kind or malformed payload."""

    code = "invalid_event"
    status_code = 422


class RequirementNotMet(ProgressEngineError):
    """Course completion requested before articles and quizzes are done."""

    code = "requirement_not_met"
    status_code = 409


class ConcurrentUpdateConflict(ProgressEngineError):
    """The progress row changed between read and write."""

    code = "concurrent_update_conflict"
    status_code = 409


class StoreUnavailable(ProgressEngineError):
    """Persistence layer unreachable or timed out. Safe to retry."""

    code = "store_unavailable"
    status_code = 503

    def __init__(self, message: str, retry_after: Optional[int] = 1, **context):
        super().__init__(message, **context)
        self.retry_after = retry_after
