"""Database models for chatmedia."""

from chatmedia.db.models.chat import Chat
from chatmedia.db.models.enums import (
    DownloadStatus,
    FailureReason,
    MediaType,
    SourceKind,
)

__all__ = [
    # Models
    "Chat",
    # Enums
    "DownloadStatus",
    "FailureReason",
    "MediaType",
    "SourceKind",
]
