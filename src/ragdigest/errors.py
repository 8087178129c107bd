"""Exceptions raised by the digestion pipeline."""
from __future__ import annotations

DEFAULT_USER_MESSAGE = "Document processing failed. Please try again later."
TOO_LARGE_USER_MESSAGE = "Document too large even after filtering, try a smaller file."
CANCELLED_USER_MESSAGE = "Document processing was cancelled."


class PipelineError(RuntimeError):
    """Base exception for failures that abort a pipeline run.

    ``str(error)`` carries the diagnostic text for logs while
    :attr:`user_message` is the single terminal message shown to callers.
    """

    def __init__(
        self,
        message: str,
        *,
        user_message: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.user_message = user_message or DEFAULT_USER_MESSAGE
        if cause is not None:
            self.__cause__ = cause


class CollaboratorError(PipelineError):
    """Raised when a collaborator call reports an error."""

    def __init__(
        self,
        message: str,
        *,
        task: str,
        status_code: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.task = task
        self.status_code = status_code

    @property
    def is_rate_limited(self) -> bool:
        return is_rate_limit_message(str(self)) or self.status_code == 429


class StageError(PipelineError):
    """Raised when a stage past chunk analysis cannot produce its result."""

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        user_message: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, user_message=user_message, cause=cause)
        self.stage = stage


class InvalidCollaboratorResponseError(StageError):
    """Raised when a collaborator answers with data of the wrong shape."""


class BudgetExceededError(PipelineError):
    """Raised when a token estimate is above a hard ceiling."""

    def __init__(self, message: str, *, estimated_tokens: int, limit: int, scope: str) -> None:
        super().__init__(message, user_message=TOO_LARGE_USER_MESSAGE)
        self.estimated_tokens = estimated_tokens
        self.limit = limit
        self.scope = scope


class PipelineCancelledError(PipelineError):
    """Raised at a stage boundary once the run has been cancelled."""

    def __init__(self, message: str = "pipeline cancelled") -> None:
        super().__init__(message, user_message=CANCELLED_USER_MESSAGE)


def is_rate_limit_message(message: str | None) -> bool:
    """Return ``True`` when *message* signals HTTP 429 / rate limiting."""

    if not message:
        return False
    lowered = message.lower()
    return "429" in lowered or "rate limit" in lowered


__all__ = [
    "BudgetExceededError",
    "CollaboratorError",
    "InvalidCollaboratorResponseError",
    "PipelineCancelledError",
    "PipelineError",
    "StageError",
    "is_rate_limit_message",
]
