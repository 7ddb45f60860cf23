"""Typed Google Drive and Chat media download client.

The Google client libraries are synchronous, so each download runs in a
worker thread and writes straight to the destination file. Every failure
leaves this module as ``FetchError`` so the resolution chain can move on to
the next source.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import google_auth_httplib2
import httplib2
from google.auth.exceptions import GoogleAuthError, RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload

from chatmedia.core.logging import get_logger
from chatmedia.db.models.enums import FailureReason
from chatmedia.services.exceptions import FetchError

logger = get_logger(__name__)

# Chunk size for MediaIoBaseDownload
DOWNLOAD_CHUNK_SIZE = 4 * 1024 * 1024

# Socket timeout for API calls when none is configured
DEFAULT_API_TIMEOUT = 120.0

# Docs, Sheets and Slides have no stored bytes; Drive only exports them
GOOGLE_APPS_MIME_PREFIX = "application/vnd.google-apps."
EXPORT_MIME_TYPE = "application/pdf"
EXPORT_METHOD = "drive_export"


@dataclass(frozen=True)
class MediaDownload:
    """Result of an API download.

    ``method`` is set when the payload is not the file's own bytes.
    """

    byte_size: int
    method: str | None = None
    content_type: str | None = None


def _write_media(request: Any, dest_path: Path) -> int:
    with open(dest_path, "wb") as f:
        downloader = MediaIoBaseDownload(f, request, chunksize=DOWNLOAD_CHUNK_SIZE)
        done = False
        while not done:
            _, done = downloader.next_chunk()
    return dest_path.stat().st_size


class GoogleMediaClient:
    """Downloads Drive files and Chat message media by reference."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout or DEFAULT_API_TIMEOUT

    async def download_drive_file(self, file_id: str, dest_path: Path, token: str) -> MediaDownload:
        """Download a Drive file into *dest_path*.

        When Drive refuses the download with 403 and the file is a
        Google-native document, the document is exported as PDF instead.

        Raises:
            FetchError: If the API call fails.
        """

        def _run(http: google_auth_httplib2.AuthorizedHttp) -> MediaDownload:
            files = build("drive", "v3", http=http, cache_discovery=False).files()
            try:
                request = files.get_media(fileId=file_id, supportsAllDrives=True)
                return MediaDownload(byte_size=_write_media(request, dest_path))
            except HttpError as e:
                if e.resp.status != 403:
                    raise
                metadata = files.get(
                    fileId=file_id,
                    fields="mimeType",
                    supportsAllDrives=True,
                ).execute()
                mime_type = metadata.get("mimeType") or ""
                if not mime_type.startswith(GOOGLE_APPS_MIME_PREFIX):
                    raise

            logger.info("drive_file_exporting", file_id=file_id, mime_type=mime_type)
            request = files.export_media(fileId=file_id, mimeType=EXPORT_MIME_TYPE)
            return MediaDownload(
                byte_size=_write_media(request, dest_path),
                method=EXPORT_METHOD,
                content_type=EXPORT_MIME_TYPE,
            )

        return await self._download(_run, token, operation="drive_file")

    async def download_chat_media(self, resource_name: str, dest_path: Path, token: str) -> MediaDownload:
        """Download Chat attachment media by its ``attachmentDataRef`` resource name."""

        def _run(http: google_auth_httplib2.AuthorizedHttp) -> MediaDownload:
            service = build("chat", "v1", http=http, cache_discovery=False)
            request = service.media().download_media(resourceName=resource_name)
            return MediaDownload(byte_size=_write_media(request, dest_path))

        return await self._download(_run, token, operation="chat_media")

    def _authorized_http(self, token: str) -> google_auth_httplib2.AuthorizedHttp:
        return google_auth_httplib2.AuthorizedHttp(
            Credentials(token=token),
            http=httplib2.Http(timeout=self.timeout),
        )

    async def _download(
        self,
        run: Callable[[google_auth_httplib2.AuthorizedHttp], MediaDownload],
        token: str,
        operation: str,
    ) -> MediaDownload:
        http = self._authorized_http(token)
        try:
            return await asyncio.to_thread(run, http)
        except HttpError as e:
            raise FetchError(
                FailureReason.HTTP_STATUS,
                detail=f"{operation} API error",
                status_code=e.resp.status,
            ) from e
        except RefreshError as e:
            # A bare access token cannot be refreshed, so a 401 ends up here
            raise FetchError(
                FailureReason.HTTP_STATUS,
                detail=f"{operation}: access token rejected",
                status_code=401,
            ) from e
        except GoogleAuthError as e:
            raise FetchError(FailureReason.AUTH_TOKEN_UNAVAILABLE, detail=f"{operation}: {e}") from e
        except TimeoutError as e:
            raise FetchError(FailureReason.TIMEOUT, detail=operation) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise FetchError(FailureReason.NETWORK, detail=f"{operation}: {e}") from e
