"""Custom exceptions for the media retrieval pipeline."""

from __future__ import annotations

from dataclasses import dataclass

from chatmedia.db.models.enums import FailureReason


class MediaPipelineError(Exception):
    """Base exception for media pipeline errors."""

    def __init__(self, message: str, code: str = "MEDIA_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class NotAnAttachmentError(MediaPipelineError):
    """Raised when a raw object carries no recognizable media reference."""

    def __init__(self, message: str = "Object is not an attachment"):
        super().__init__(message, "NOT_AN_ATTACHMENT")


class FetchError(MediaPipelineError):
    """Raised when a single fetch attempt fails.

    Attributes:
        kind: Classified failure reason.
        status_code: HTTP status for ``HttpStatus`` failures.
    """

    def __init__(
        self,
        kind: FailureReason,
        detail: str | None = None,
        status_code: int | None = None,
    ):
        self.kind = kind
        self.status_code = status_code
        message = kind.value
        if status_code is not None:
            message = f"{message} {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, kind.value)


class AuthTokenUnavailableError(MediaPipelineError):
    """Raised when no access token can be obtained."""

    def __init__(self, message: str = "Access token unavailable"):
        super().__init__(message, FailureReason.AUTH_TOKEN_UNAVAILABLE.value)


@dataclass(frozen=True)
class AttemptFailure:
    """One failed sub-attempt of the resolution chain."""

    method: str
    authenticated: bool
    reason: FailureReason
    detail: str

    def describe(self) -> str:
        mode = "auth" if self.authenticated else "anon"
        return f"{self.method}[{mode}]: {self.detail}"


class AllStrategiesExhaustedError(MediaPipelineError):
    """Raised when every candidate source and sub-attempt failed."""

    def __init__(self, attempts: list[AttemptFailure]):
        self.attempts = list(attempts)
        if self.attempts:
            summary = "; ".join(a.describe() for a in self.attempts)
        else:
            summary = "no attempt was made"
        super().__init__(
            f"{FailureReason.ALL_STRATEGIES_EXHAUSTED.value}: {summary}",
            FailureReason.ALL_STRATEGIES_EXHAUSTED.value,
        )

    @property
    def primary_reason(self) -> FailureReason:
        """The shared reason when every attempt failed the same way."""
        reasons = {a.reason for a in self.attempts}
        if len(reasons) == 1:
            return reasons.pop()
        return FailureReason.ALL_STRATEGIES_EXHAUSTED

    @property
    def details(self) -> list[str]:
        return [a.describe() for a in self.attempts]


class InvalidTransitionError(MediaPipelineError):
    """Raised when an outcome is moved along a transition that does not exist."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move attachment from {current} to {target}",
            "INVALID_TRANSITION",
        )


class PipelineFatalError(MediaPipelineError):
    """Raised when the whole run cannot continue (no token, storage unreachable)."""

    def __init__(self, message: str, code: str = "PIPELINE_FATAL"):
        super().__init__(message, code)
