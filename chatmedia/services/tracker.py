"""Per-attachment download state.

Outcomes live inside the owning chat document under each attachment's
``download`` key. Transitions::

    pending -> downloading -> completed | failed
    failed -> downloading            (retry on a later run)
    completed -> downloading         (backing file missing, or forced)
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, Field

from chatmedia.db.models.enums import DownloadStatus, MediaType
from chatmedia.services.exceptions import InvalidTransitionError
from chatmedia.services.strategies import DownloadResult

OUTCOME_KEY = "download"


class DownloadOutcome(BaseModel):
    """Persisted result of resolving one attachment."""

    status: DownloadStatus = DownloadStatus.PENDING
    local_path: str | None = None
    byte_size: int | None = None
    method: str | None = None
    degraded: bool = False
    media_type: MediaType | None = None
    attempts: int = 0
    last_attempt_at: datetime | None = None
    completed_at: datetime | None = None
    failure_reason: str | None = None
    failure_details: list[str] = Field(default_factory=list)

    @classmethod
    def from_attachment(cls, attachment: Mapping[str, Any]) -> DownloadOutcome:
        """Read the outcome stored on *attachment*, or a fresh pending one."""
        stored = attachment.get(OUTCOME_KEY)
        if isinstance(stored, Mapping):
            return cls.model_validate(dict(stored))
        return cls()

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DownloadStateTracker:
    """Decides whether attachments need work and records what happened."""

    def __init__(self, media_root: Path):
        self.media_root = media_root

    def resolve_path(self, outcome: DownloadOutcome) -> Path | None:
        """Absolute path of the outcome's file; stored paths are media-root relative."""
        if not outcome.local_path:
            return None
        path = Path(outcome.local_path)
        if not path.is_absolute():
            path = self.media_root / path
        return path

    def file_present(self, outcome: DownloadOutcome) -> bool:
        path = self.resolve_path(outcome)
        if path is None:
            return False
        try:
            return path.is_file() and path.stat().st_size > 0
        except OSError:
            return False

    def should_process(self, outcome: DownloadOutcome, force: bool = False) -> bool:
        """Return False only for completed outcomes whose file is still on disk."""
        if outcome.status != DownloadStatus.COMPLETED:
            return True
        if force:
            return True
        return not self.file_present(outcome)

    def record_start(self, outcome: DownloadOutcome, force: bool = False) -> None:
        """Move *outcome* to ``downloading``.

        A ``downloading`` outcome left behind by an interrupted run may be
        restarted.

        Raises:
            InvalidTransitionError: If the outcome is completed, its file is
                present and *force* is not set.
        """
        if outcome.status == DownloadStatus.COMPLETED and not self.should_process(outcome, force):
            raise InvalidTransitionError(outcome.status.value, DownloadStatus.DOWNLOADING.value)

        outcome.status = DownloadStatus.DOWNLOADING
        outcome.attempts += 1
        outcome.last_attempt_at = _now()

    def record_success(self, outcome: DownloadOutcome, result: DownloadResult) -> None:
        if outcome.status != DownloadStatus.DOWNLOADING:
            raise InvalidTransitionError(outcome.status.value, DownloadStatus.COMPLETED.value)

        now = _now()
        outcome.status = DownloadStatus.COMPLETED
        outcome.local_path = self._relative(result.path)
        outcome.byte_size = result.byte_size
        outcome.method = result.method
        outcome.degraded = result.degraded
        outcome.last_attempt_at = now
        outcome.completed_at = now
        outcome.failure_reason = None
        outcome.failure_details = []

    def record_failure(
        self,
        outcome: DownloadOutcome,
        reason: str,
        details: list[str] | None = None,
    ) -> None:
        """Move *outcome* to ``failed``, replacing any earlier failure.

        Pending outcomes may fail directly when they never reach the
        resolution chain (no source available). Completed outcomes must go
        through ``record_start`` first.
        """
        if outcome.status == DownloadStatus.COMPLETED:
            raise InvalidTransitionError(outcome.status.value, DownloadStatus.FAILED.value)

        outcome.status = DownloadStatus.FAILED
        outcome.local_path = None
        outcome.byte_size = None
        outcome.method = None
        outcome.degraded = False
        outcome.completed_at = None
        outcome.last_attempt_at = _now()
        outcome.failure_reason = reason
        outcome.failure_details = list(details or [])

    def _relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.media_root).as_posix()
        except ValueError:
            return str(path)
