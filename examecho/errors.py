"""
Error taxonomy for the ExamEcho core.

ExamEchoError
├── IngestionError          source material could not be turned into a Source
├── InvalidTransitionError  operation requested from a step that does not allow it
└── InferenceError          a call to the inference service failed (carries ``stage``)
    ├── RateLimitedError        still rate-limited after every retry
    ├── MalformedResponseError  reply did not match the stage's schema
    └── InferenceServiceError   any other service failure (not retried)
"""

from __future__ import annotations


class ExamEchoError(Exception):
    """Base class for every error raised by the core."""


class IngestionError(ExamEchoError):
    """Study material could not be read or is of an unsupported type."""


class InvalidTransitionError(ExamEchoError):
    """A session operation was requested from a step that does not accept it."""


class InferenceError(ExamEchoError):
    """A request to the inference service failed for the given stage."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class RateLimitedError(InferenceError):
    """The service kept rate-limiting the request after all retries."""

    def __init__(self, stage: str, attempts: int) -> None:
        super().__init__(
            stage,
            f"still rate-limited after {attempts} attempts. "
            "Please wait 20-60 seconds and try again.",
        )
        self.attempts = attempts


class MalformedResponseError(InferenceError):
    """The reply could not be decoded into the expected response shape."""

    def __init__(self, stage: str, detail: str) -> None:
        super().__init__(stage, f"malformed response ({detail})")
        self.detail = detail


class InferenceServiceError(InferenceError):
    """The service rejected or failed the request for a non-transient reason."""
