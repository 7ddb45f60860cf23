"""Enum types for database models and attachment outcomes."""

from __future__ import annotations

import enum


class DownloadStatus(str, enum.Enum):
    """Download status for a single attachment."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


class SourceKind(str, enum.Enum):
    """Kinds of candidate source an attachment can be fetched from."""

    DIRECT_URL = "direct-url"
    THUMBNAIL_URL = "thumbnail-url"
    DRIVE_FILE_REF = "drive-file-ref"
    CHAT_RESOURCE_REF = "chat-resource-ref"

    @property
    def is_url(self) -> bool:
        return self in (SourceKind.DIRECT_URL, SourceKind.THUMBNAIL_URL)


class MediaType(str, enum.Enum):
    """Coarse media classification derived from the MIME type."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    ARCHIVE = "archive"
    OTHER = "other"


class FailureReason(str, enum.Enum):
    """Reasons recorded on a failed attachment outcome."""

    NO_SOURCE_AVAILABLE = "NoSourceAvailable"
    ALL_STRATEGIES_EXHAUSTED = "AllStrategiesExhausted"
    TIMEOUT = "Timeout"
    HTTP_STATUS = "HttpStatus"
    DISGUISED_ERROR_PAGE = "DisguisedErrorPage"
    AUTH_TOKEN_UNAVAILABLE = "AuthTokenUnavailable"
    TOO_MANY_REDIRECTS = "TooManyRedirects"
    EMPTY_PAYLOAD = "EmptyPayload"
    PAYLOAD_TOO_LARGE = "PayloadTooLarge"
    NETWORK = "Network"
    API_ERROR = "ApiError"
    STRATEGY_DISABLED = "StrategyDisabled"
    UNEXPECTED_ERROR = "UnexpectedError"
