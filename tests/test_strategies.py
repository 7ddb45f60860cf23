"""Tests for the resolution strategy chain."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from google.auth.exceptions import RefreshError

from chatmedia.core.config import Settings
from chatmedia.db.models.enums import FailureReason, SourceKind
from chatmedia.services.descriptor import AttachmentDescriptor, CandidateSource
from chatmedia.services.exceptions import AllStrategiesExhaustedError, FetchError
from chatmedia.services.fetcher import AuthenticatedFetcher, FetchedFile
from chatmedia.services.google_auth import AuthContext, StaticTokenProvider
from chatmedia.services.google_media import GoogleMediaClient
from chatmedia.services.strategies import (
    GoogleApiStrategy,
    HttpUrlStrategy,
    ResolutionChain,
    default_strategies,
)

PDF_BYTES = b"%PDF-1.4\n" + b"0" * 128


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def auth() -> AuthContext:
    return AuthContext(StaticTokenProvider("tok"))


@pytest.fixture
def anonymous_auth() -> AuthContext:
    return AuthContext(None, allow_anonymous=True)


def fake_fetcher(outcomes: dict[str, object]) -> MagicMock:
    """Fetcher whose result depends on the source target.

    Each value is either an exception to raise or a list consumed per call.
    """

    async def fetch(source: CandidateSource, token: str | None, dest_path: Path) -> FetchedFile:
        outcome = outcomes[source.target]
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        dest_path.write_bytes(PDF_BYTES)
        return FetchedFile(path=dest_path, byte_size=len(PDF_BYTES))

    fetcher = MagicMock(spec=AuthenticatedFetcher)
    fetcher.fetch = AsyncMock(side_effect=fetch)
    fetcher.close = AsyncMock()
    return fetcher


def make_chain(fetcher, media_root: Path, *, try_unauthenticated: bool = True, enabled_kinds=None) -> ResolutionChain:
    strategies = [
        HttpUrlStrategy(fetcher, try_unauthenticated=try_unauthenticated),
        GoogleApiStrategy(fetcher),
    ]
    return ResolutionChain(strategies, media_root, enabled_kinds=enabled_kinds)


def url(kind: SourceKind, target: str, requires_auth: bool = False) -> CandidateSource:
    return CandidateSource(kind=kind, uri=target, requires_auth=requires_auth)


OK = "ok"
FORBIDDEN = FetchError(FailureReason.HTTP_STATUS, status_code=403)


# =============================================================================
# Ordering and Short-circuit Tests
# =============================================================================


class TestResolutionOrder:
    """Tests for source ordering and short-circuit evaluation."""

    @pytest.mark.asyncio
    async def test_stops_at_first_success(self, auth, media_root):
        """Test sources after the first success are never fetched."""
        fetcher = fake_fetcher({"https://x/1": OK, "https://x/2": OK, "https://x/3": OK})
        descriptor = AttachmentDescriptor.build(
            display_name="report.pdf",
            candidate_sources=[
                url(SourceKind.DIRECT_URL, "https://x/1"),
                url(SourceKind.DIRECT_URL, "https://x/2"),
                url(SourceKind.DIRECT_URL, "https://x/3"),
            ],
        )

        result = await make_chain(fetcher, media_root).resolve(descriptor, auth)

        assert fetcher.fetch.await_count == 1
        assert fetcher.fetch.await_args.args[0].uri == "https://x/1"
        assert result.path.exists()

    @pytest.mark.asyncio
    async def test_falls_through_to_next_source(self, auth, media_root):
        fetcher = fake_fetcher({"https://x/1": FORBIDDEN, "https://x/2": OK})
        descriptor = AttachmentDescriptor.build(
            display_name="report.pdf",
            candidate_sources=[
                url(SourceKind.DIRECT_URL, "https://x/1"),
                url(SourceKind.DIRECT_URL, "https://x/2"),
            ],
        )

        result = await make_chain(fetcher, media_root).resolve(descriptor, auth)

        assert fetcher.fetch.await_count == 2
        assert len(result.failed_attempts) == 1
        assert result.failed_attempts[0].reason == FailureReason.HTTP_STATUS

    @pytest.mark.asyncio
    async def test_thumbnail_tried_last(self, auth, media_root):
        fetcher = fake_fetcher({"https://x/thumb": OK, "https://x/full": OK})
        descriptor = AttachmentDescriptor.build(
            display_name="photo.png",
            mime_type="image/png",
            candidate_sources=[
                url(SourceKind.THUMBNAIL_URL, "https://x/thumb"),
                url(SourceKind.DIRECT_URL, "https://x/full"),
            ],
        )

        result = await make_chain(fetcher, media_root).resolve(descriptor, auth)

        assert result.method == "direct"
        assert result.degraded is False
        assert fetcher.fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_thumbnail_fallback_is_degraded(self, auth, media_root):
        fetcher = fake_fetcher({"https://x/full": FORBIDDEN, "https://x/thumb": OK})
        descriptor = AttachmentDescriptor.build(
            display_name="photo.png",
            mime_type="image/png",
            candidate_sources=[
                url(SourceKind.DIRECT_URL, "https://x/full"),
                url(SourceKind.THUMBNAIL_URL, "https://x/thumb"),
            ],
        )

        result = await make_chain(fetcher, media_root).resolve(descriptor, auth)

        assert result.method == "thumbnail"
        assert result.source_kind == SourceKind.THUMBNAIL_URL
        assert result.degraded is True
        assert result.path.name.startswith("thumbnail_")


# =============================================================================
# Authentication Sub-attempt Tests
# =============================================================================


class TestSubAttempts:
    """Tests for with-token and without-token attempts."""

    @pytest.mark.asyncio
    async def test_auth_then_anonymous(self, auth, media_root):
        fetcher = fake_fetcher({"https://x/1": [FORBIDDEN, OK]})
        descriptor = AttachmentDescriptor.build(
            display_name="a.pdf",
            candidate_sources=[url(SourceKind.DIRECT_URL, "https://x/1", requires_auth=True)],
        )

        result = await make_chain(fetcher, media_root).resolve(descriptor, auth)

        tokens = [call.args[1] for call in fetcher.fetch.await_args_list]
        assert tokens == ["tok", None]
        assert result.authenticated is False

    @pytest.mark.asyncio
    async def test_anonymous_retry_disabled(self, auth, media_root):
        fetcher = fake_fetcher({"https://x/1": [FORBIDDEN, OK]})
        descriptor = AttachmentDescriptor.build(
            display_name="a.pdf",
            candidate_sources=[url(SourceKind.DIRECT_URL, "https://x/1", requires_auth=True)],
        )

        with pytest.raises(AllStrategiesExhaustedError):
            await make_chain(fetcher, media_root, try_unauthenticated=False).resolve(descriptor, auth)

        assert fetcher.fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_public_source_gets_single_attempt(self, auth, media_root):
        fetcher = fake_fetcher({"https://x/1": OK})
        descriptor = AttachmentDescriptor.build(
            display_name="a.pdf",
            candidate_sources=[url(SourceKind.DIRECT_URL, "https://x/1", requires_auth=False)],
        )

        result = await make_chain(fetcher, media_root).resolve(descriptor, auth)

        assert fetcher.fetch.await_args.args[1] is None
        assert result.authenticated is False

    @pytest.mark.asyncio
    async def test_missing_token_skips_to_anonymous(self, anonymous_auth, media_root):
        """Test an unavailable token is recorded and the anonymous attempt still runs."""
        fetcher = fake_fetcher({"https://x/1": OK})
        descriptor = AttachmentDescriptor.build(
            display_name="a.pdf",
            candidate_sources=[url(SourceKind.DIRECT_URL, "https://x/1", requires_auth=True)],
        )

        result = await make_chain(fetcher, media_root).resolve(descriptor, anonymous_auth)

        assert fetcher.fetch.await_count == 1
        assert result.failed_attempts[0].reason == FailureReason.AUTH_TOKEN_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_api_source_without_token(self, anonymous_auth, media_root):
        fetcher = fake_fetcher({"drive123": OK})
        descriptor = AttachmentDescriptor.build(
            display_name="a.pdf",
            candidate_sources=[CandidateSource(kind=SourceKind.DRIVE_FILE_REF, resource_ref="drive123")],
        )

        with pytest.raises(AllStrategiesExhaustedError) as exc_info:
            await make_chain(fetcher, media_root).resolve(descriptor, anonymous_auth)

        fetcher.fetch.assert_not_awaited()
        assert exc_info.value.primary_reason == FailureReason.AUTH_TOKEN_UNAVAILABLE


# =============================================================================
# Exhaustion and Configuration Tests
# =============================================================================


class TestExhaustion:
    """Tests for AllStrategiesExhaustedError and enabled kinds."""

    @pytest.mark.asyncio
    async def test_all_failures_preserved(self, auth, media_root):
        timeout = FetchError(FailureReason.TIMEOUT, detail="read timeout")
        fetcher = fake_fetcher({"https://x/1": [FORBIDDEN, FORBIDDEN], "https://x/2": timeout})
        descriptor = AttachmentDescriptor.build(
            display_name="a.pdf",
            candidate_sources=[
                url(SourceKind.DIRECT_URL, "https://x/1", requires_auth=True),
                url(SourceKind.THUMBNAIL_URL, "https://x/2"),
            ],
        )

        with pytest.raises(AllStrategiesExhaustedError) as exc_info:
            await make_chain(fetcher, media_root).resolve(descriptor, auth)

        error = exc_info.value
        assert [a.reason for a in error.attempts] == [
            FailureReason.HTTP_STATUS,
            FailureReason.HTTP_STATUS,
            FailureReason.TIMEOUT,
        ]
        assert error.primary_reason == FailureReason.ALL_STRATEGIES_EXHAUSTED
        assert error.details[0] == "direct[auth]: HttpStatus 403"
        assert list(media_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_single_shared_reason_reported(self, auth, media_root):
        disguised = FetchError(FailureReason.DISGUISED_ERROR_PAGE)
        fetcher = fake_fetcher({"https://x/1": disguised})
        descriptor = AttachmentDescriptor.build(
            display_name="a.pdf",
            candidate_sources=[url(SourceKind.DIRECT_URL, "https://x/1")],
        )

        with pytest.raises(AllStrategiesExhaustedError) as exc_info:
            await make_chain(fetcher, media_root).resolve(descriptor, auth)

        assert exc_info.value.primary_reason == FailureReason.DISGUISED_ERROR_PAGE

    @pytest.mark.asyncio
    async def test_unexpected_error_moves_to_next_source(self, auth, media_root):
        """Test an exception other than FetchError is recorded and the chain continues."""
        fetcher = fake_fetcher({"https://x/1": RuntimeError("decoder crashed"), "https://x/2": OK})
        descriptor = AttachmentDescriptor.build(
            display_name="a.pdf",
            candidate_sources=[
                url(SourceKind.DIRECT_URL, "https://x/1"),
                url(SourceKind.THUMBNAIL_URL, "https://x/2"),
            ],
        )

        result = await make_chain(fetcher, media_root).resolve(descriptor, auth)

        assert result.method == "thumbnail"
        assert fetcher.fetch.await_count == 2
        assert result.failed_attempts[0].reason == FailureReason.UNEXPECTED_ERROR
        assert result.failed_attempts[0].detail == "RuntimeError: decoder crashed"

    @pytest.mark.asyncio
    async def test_disabled_kind_not_fetched(self, auth, media_root):
        fetcher = fake_fetcher({"https://x/thumb": OK})
        descriptor = AttachmentDescriptor.build(
            display_name="a.png",
            candidate_sources=[url(SourceKind.THUMBNAIL_URL, "https://x/thumb")],
        )
        chain = make_chain(fetcher, media_root, enabled_kinds=["direct-url", "drive-file-ref"])

        with pytest.raises(AllStrategiesExhaustedError) as exc_info:
            await chain.resolve(descriptor, auth)

        fetcher.fetch.assert_not_awaited()
        assert exc_info.value.primary_reason == FailureReason.STRATEGY_DISABLED

    def test_default_strategies_follow_settings(self, media_root):
        fetcher = fake_fetcher({})
        config = Settings(media_path=media_root, try_unauthenticated=False)
        strategies = default_strategies(fetcher, config)

        assert isinstance(strategies[0], HttpUrlStrategy)
        assert strategies[0].try_unauthenticated is False
        assert isinstance(strategies[1], GoogleApiStrategy)

    def test_destination_is_unique(self, media_root):
        chain = make_chain(fake_fetcher({}), media_root)
        descriptor = AttachmentDescriptor.build(display_name="a.pdf")
        source = url(SourceKind.DIRECT_URL, "https://x/1")

        first = chain.destination_for(descriptor, source)
        first.write_bytes(b"data")
        second = chain.destination_for(descriptor, source)

        assert first.parent == media_root
        assert second != first


# =============================================================================
# End-to-end Chain Tests
# =============================================================================


class TestChainWithFetcher:
    """Tests running the chain over a real fetcher and mocked HTTP."""

    @pytest.mark.asyncio
    async def test_forbidden_direct_falls_back_to_thumbnail(self, auth, media_root):
        """Test a 403 direct URL resolves from the thumbnail, keeping the .pdf extension."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/1":
                return httpx.Response(403)
            return httpx.Response(200, content=PDF_BYTES, headers={"content-type": "application/pdf"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        config = Settings(media_path=media_root, host_min_delay=0)
        fetcher = AuthenticatedFetcher(client=client, config=config)
        chain = ResolutionChain(default_strategies(fetcher, config), media_root)
        descriptor = AttachmentDescriptor.build(
            display_name="report.pdf",
            mime_type="application/pdf",
            candidate_sources=[
                CandidateSource(kind=SourceKind.DIRECT_URL, uri="https://x/1", requires_auth=True),
                CandidateSource(kind=SourceKind.THUMBNAIL_URL, uri="https://x/2", requires_auth=False),
            ],
        )

        result = await chain.resolve(descriptor, auth)
        await client.aclose()

        assert result.method == "thumbnail"
        assert result.path.suffix == ".pdf"
        assert result.path.read_bytes() == PDF_BYTES
        assert [a.reason for a in result.failed_attempts] == [
            FailureReason.HTTP_STATUS,
            FailureReason.HTTP_STATUS,
        ]

    @pytest.mark.asyncio
    async def test_rejected_api_token_falls_through_to_thumbnail(self, auth, media_root):
        """Test a Chat API auth failure does not stop the chain before the thumbnail."""
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=PDF_BYTES))
        )
        config = Settings(media_path=media_root, host_min_delay=0)
        fetcher = AuthenticatedFetcher(client=client, media_client=GoogleMediaClient(), config=config)
        chain = ResolutionChain(default_strategies(fetcher, config), media_root)
        descriptor = AttachmentDescriptor.build(
            display_name="report.pdf",
            mime_type="application/pdf",
            candidate_sources=[
                CandidateSource(kind=SourceKind.CHAT_RESOURCE_REF, resource_ref="spaces/A/attachments/B"),
                CandidateSource(kind=SourceKind.THUMBNAIL_URL, uri="https://x/thumb", requires_auth=False),
            ],
        )

        downloader = MagicMock()
        downloader.return_value.next_chunk.side_effect = RefreshError("invalid_grant")
        with patch("chatmedia.services.google_media.build"), patch(
            "chatmedia.services.google_media.MediaIoBaseDownload", downloader
        ):
            result = await chain.resolve(descriptor, auth)
        await client.aclose()

        assert result.method == "thumbnail"
        assert result.degraded is True
        assert len(result.failed_attempts) == 1
        assert result.failed_attempts[0].method == "chat_api"
        assert result.failed_attempts[0].reason == FailureReason.HTTP_STATUS
        assert [p.name for p in media_root.iterdir()] == [result.path.name]
