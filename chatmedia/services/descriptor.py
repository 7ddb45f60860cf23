"""Attachment descriptor normalization.

Turns upstream Google Chat attachment objects, in any of the shapes the
ingestion side has stored over time, into a single ``AttachmentDescriptor``:

- ``attachments`` lists and legacy scalar ``attachment`` fields
- list-like dicts keyed ``"0"``, ``"1"``, ... (array serialized as object)
- ``contentName``/``contentType`` as well as ``filename``/``mimeType`` aliases
- download URIs, Chat API resource names, Drive file ids, attachment tokens
  and thumbnail URIs

Normalization is pure: nothing here touches the network or the filesystem.
"""

from __future__ import annotations

import re
import time
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field

from chatmedia.db.models.enums import MediaType, SourceKind
from chatmedia.services.exceptions import NotAnAttachmentError

# Maximum length of the sanitized name part of a stored filename
MAX_NAME_LENGTH = 100

DEFAULT_NAME = "attachment"
DEFAULT_EXTENSION = ".bin"

CHAT_ATTACHMENT_URL = "https://chat.google.com/api/get_attachment_url"

MIME_EXTENSIONS: dict[str, str] = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
    "image/heic": ".heic",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
    "video/avi": ".avi",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/wav": ".wav",
    "audio/ogg": ".ogg",
    "audio/aac": ".aac",
    "application/pdf": ".pdf",
    "text/plain": ".txt",
    "text/csv": ".csv",
    "application/zip": ".zip",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/vnd.ms-powerpoint": ".ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": ".pptx",
}

DOCUMENT_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "text/plain",
    "text/csv",
}

ARCHIVE_TYPES = {
    "application/zip",
    "application/x-rar-compressed",
    "application/x-7z-compressed",
}

# Keys whose presence marks an object as an attachment
MEDIA_KEYS = (
    "contentName",
    "contentType",
    "filename",
    "fileName",
    "mimeType",
    "downloadUri",
    "downloadUrl",
    "thumbnailUri",
    "thumbnailUrl",
    "attachmentDataRef",
    "driveDataRef",
    "attachmentToken",
)

# Default diagnostic labels per source kind
DEFAULT_METHODS: dict[SourceKind, str] = {
    SourceKind.DIRECT_URL: "direct",
    SourceKind.THUMBNAIL_URL: "thumbnail",
    SourceKind.DRIVE_FILE_REF: "drive_api",
    SourceKind.CHAT_RESOURCE_REF: "chat_api",
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9.\-]+")
_NAME_EXTENSION = re.compile(r"\.([A-Za-z0-9]{1,10})$")


class CandidateSource(BaseModel):
    """One place an attachment's bytes might be fetched from."""

    model_config = ConfigDict(frozen=True)

    kind: SourceKind
    uri: str | None = None
    resource_ref: str | None = None
    requires_auth: bool = True
    method: str | None = None

    @property
    def label(self) -> str:
        """Diagnostic name of this source, also used as the filename prefix."""
        return self.method or DEFAULT_METHODS[self.kind]

    @property
    def target(self) -> str:
        return self.uri or self.resource_ref or ""


class AttachmentDescriptor(BaseModel):
    """Canonical, strategy-agnostic representation of one attachment."""

    id: str | None = None
    display_name: str | None = None
    mime_type: str | None = None
    media_type: MediaType = MediaType.OTHER
    safe_name: str = DEFAULT_NAME
    extension: str = DEFAULT_EXTENSION
    candidate_sources: list[CandidateSource] = Field(default_factory=list)

    @property
    def filename(self) -> str:
        return f"{self.safe_name}{self.extension}"

    @property
    def is_image(self) -> bool:
        return self.media_type == MediaType.IMAGE

    @classmethod
    def build(
        cls,
        *,
        display_name: str | None = None,
        mime_type: str | None = None,
        candidate_sources: list[CandidateSource] | None = None,
        id: str | None = None,
    ) -> AttachmentDescriptor:
        """Create a descriptor, deriving the filesystem-safe name fields."""
        stem, extension = split_display_name(display_name, mime_type)
        return cls(
            id=id,
            display_name=display_name,
            mime_type=mime_type,
            media_type=classify_media_type(mime_type),
            safe_name=sanitize_name(stem),
            extension=extension,
            candidate_sources=list(candidate_sources or []),
        )

    def storage_filename(self, prefix: str, timestamp_ms: int | None = None) -> str:
        """Return ``<prefix>_<timestamp>_<safe_name><extension>``."""
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)
        return f"{sanitize_name(prefix)}_{timestamp_ms}_{self.filename}"


def sanitize_name(name: str | None) -> str:
    """Make *name* safe for use as a single path component.

    Every character other than ASCII letters, digits, ``.`` and ``-`` is
    replaced by ``_``. Leading and trailing dots/underscores are stripped so
    the result can never be ``..`` or a hidden file.
    """
    if not name:
        return DEFAULT_NAME
    cleaned = _UNSAFE_CHARS.sub("_", name).strip("._")
    cleaned = cleaned[:MAX_NAME_LENGTH].rstrip("._")
    return cleaned or DEFAULT_NAME


def extension_for(display_name: str | None, mime_type: str | None) -> str:
    """Resolve a file extension, preferring the one embedded in the name."""
    return split_display_name(display_name, mime_type)[1]


def split_display_name(
    display_name: str | None, mime_type: str | None
) -> tuple[str | None, str]:
    """Split *display_name* into a stem and an extension.

    Falls back to the MIME type table and then to ``.bin`` when the name has
    no usable extension.
    """
    if display_name:
        match = _NAME_EXTENSION.search(display_name)
        if match:
            return display_name[: match.start()], f".{match.group(1).lower()}"
    mime = normalize_mime(mime_type)
    return display_name, MIME_EXTENSIONS.get(mime or "", DEFAULT_EXTENSION)


def normalize_mime(mime_type: str | None) -> str | None:
    """Lower-case a MIME type and drop parameters such as ``charset``."""
    if not mime_type or not isinstance(mime_type, str):
        return None
    return mime_type.split(";", 1)[0].strip().lower() or None


def classify_media_type(mime_type: str | None) -> MediaType:
    """Classify a MIME type into a coarse media type."""
    mime = normalize_mime(mime_type)
    if not mime:
        return MediaType.OTHER
    if mime.startswith("image/"):
        return MediaType.IMAGE
    if mime.startswith("video/"):
        return MediaType.VIDEO
    if mime.startswith("audio/"):
        return MediaType.AUDIO
    if mime in DOCUMENT_TYPES:
        return MediaType.DOCUMENT
    if mime in ARCHIVE_TYPES:
        return MediaType.ARCHIVE
    return MediaType.OTHER


def coerce_attachment_list(value: Any) -> list[Any]:
    """Coerce an attachment field into an ordered list.

    Handles ``None``, lists, a single attachment object, and dicts whose keys
    are all numeric strings (an array that was serialized as an object).
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, Mapping):
        if value and all(isinstance(k, str) and k.isdigit() for k in value):
            return [value[k] for k in sorted(value, key=int)]
        return [value]
    return [value]


def extract_raw_attachments(message: Mapping[str, Any]) -> list[Any]:
    """Return the raw attachment objects of *message* as a list.

    The plural ``attachments`` field wins; the legacy ``attachment`` field is
    used only when the plural one is empty or missing.
    """
    attachments = coerce_attachment_list(message.get("attachments"))
    if attachments:
        return attachments
    return coerce_attachment_list(message.get("attachment"))


def attachment_token_urls(token: str, content_type: str | None) -> list[str]:
    """Build the Chat ``get_attachment_url`` URLs for an attachment token."""
    content_type = content_type or "application/octet-stream"
    urls = []
    for extra in (
        {"url_type": "DOWNLOAD_URL"},
        {"url_type": "FIFE_URL", "sz": "s0"},
    ):
        params = {
            "url_type": extra["url_type"],
            "content_type": content_type,
            "attachment_token": token,
        }
        if "sz" in extra:
            params["sz"] = extra["sz"]
        urls.append(f"{CHAT_ATTACHMENT_URL}?{urlencode(params)}")
    return urls


def normalize_attachment(raw: Any) -> AttachmentDescriptor:
    """Normalize one upstream attachment object.

    Returns a descriptor even when no fetchable source could be found (the
    caller records that as ``NoSourceAvailable``).

    Raises:
        NotAnAttachmentError: If *raw* is not a mapping or carries none of the
            fields that identify an attachment.
    """
    if not isinstance(raw, Mapping):
        raise NotAnAttachmentError(f"Unsupported attachment shape: {type(raw).__name__}")
    if not any(raw.get(key) for key in MEDIA_KEYS) and not _source_token(raw):
        raise NotAnAttachmentError("No media reference found")

    display_name = _first_str(raw, "contentName", "filename", "fileName")
    mime_type = _first_str(raw, "contentType", "mimeType")

    sources = _candidate_sources(raw, mime_type)
    attachment_id = (
        _first_str(raw, "name")
        or _nested_str(raw, "attachmentDataRef", "resourceName")
        or _nested_str(raw, "driveDataRef", "driveFileId")
    )

    return AttachmentDescriptor.build(
        id=attachment_id,
        display_name=display_name,
        mime_type=mime_type,
        candidate_sources=sources,
    )


def _candidate_sources(raw: Mapping[str, Any], mime_type: str | None) -> list[CandidateSource]:
    """Collect candidate sources, full resolution first and thumbnails last."""
    sources: list[CandidateSource] = []

    download_uri = _first_str(raw, "downloadUri", "downloadUrl")
    if download_uri:
        sources.append(
            CandidateSource(
                kind=SourceKind.DIRECT_URL,
                uri=download_uri,
                requires_auth=True,
                method="download_uri",
            )
        )

    resource_name = _nested_str(raw, "attachmentDataRef", "resourceName")
    if resource_name:
        sources.append(
            CandidateSource(
                kind=SourceKind.CHAT_RESOURCE_REF,
                resource_ref=resource_name,
                requires_auth=True,
            )
        )

    drive_file_id = _nested_str(raw, "driveDataRef", "driveFileId")
    if drive_file_id:
        sources.append(
            CandidateSource(
                kind=SourceKind.DRIVE_FILE_REF,
                resource_ref=drive_file_id,
                requires_auth=True,
            )
        )

    token = _first_str(raw, "attachmentToken") or _source_token(raw)
    if token:
        for url in attachment_token_urls(token, mime_type):
            sources.append(
                CandidateSource(
                    kind=SourceKind.DIRECT_URL,
                    uri=url,
                    requires_auth=True,
                    method="attachment_token",
                )
            )

    thumbnail_uri = _first_str(raw, "thumbnailUri", "thumbnailUrl")
    if thumbnail_uri:
        sources.append(
            CandidateSource(
                kind=SourceKind.THUMBNAIL_URL,
                uri=thumbnail_uri,
                requires_auth=True,
            )
        )

    unique: list[CandidateSource] = []
    seen: set[tuple[SourceKind, str]] = set()
    for source in sources:
        key = (source.kind, source.target)
        if key not in seen:
            seen.add(key)
            unique.append(source)
    return unique


def _first_str(raw: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _nested_str(raw: Mapping[str, Any], outer: str, inner: str) -> str | None:
    nested = raw.get(outer)
    if isinstance(nested, Mapping):
        return _first_str(nested, inner)
    return None


def _source_token(raw: Mapping[str, Any]) -> str | None:
    # ``source`` is an enum string in the Chat API but an object in older
    # stored documents
    return _nested_str(raw, "source", "attachmentToken")
