"""Resolution strategy chain.

Walks an attachment's candidate sources in preference order and stops at the
first attempt that yields a validated payload. Each source is handled by the
first enabled strategy that accepts its kind; a strategy decides which
sub-attempts (with or without the access token) a source gets.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from chatmedia.core.config import Settings, settings
from chatmedia.core.logging import get_logger
from chatmedia.db.models.enums import FailureReason, SourceKind
from chatmedia.services.descriptor import AttachmentDescriptor, CandidateSource
from chatmedia.services.exceptions import (
    AllStrategiesExhaustedError,
    AttemptFailure,
    FetchError,
)
from chatmedia.services.fetcher import AuthenticatedFetcher, FetchedFile
from chatmedia.services.google_auth import AuthContext

logger = get_logger(__name__)


@dataclass(frozen=True)
class DownloadResult:
    """A successfully resolved attachment."""

    path: Path
    byte_size: int
    method: str
    source_kind: SourceKind
    authenticated: bool
    degraded: bool = False
    content_type: str | None = None
    failed_attempts: list[AttemptFailure] = field(default_factory=list)


class ResolutionStrategy(ABC):
    """One technique for turning a candidate source into bytes."""

    name: str = "strategy"
    kinds: tuple[SourceKind, ...] = ()

    def __init__(self, fetcher: AuthenticatedFetcher):
        self.fetcher = fetcher

    def handles(self, source: CandidateSource) -> bool:
        return source.kind in self.kinds

    @abstractmethod
    def sub_attempts(self, source: CandidateSource) -> list[bool]:
        """Return the token modes to try, in order (``True`` = with token)."""

    async def attempt(
        self,
        source: CandidateSource,
        token: str | None,
        dest_path: Path,
    ) -> FetchedFile:
        return await self.fetcher.fetch(source, token, dest_path)


class HttpUrlStrategy(ResolutionStrategy):
    """Plain GET of a direct or thumbnail URL.

    Auth-requiring URLs are tried with the token first and then without it,
    since some CDNs reject bearer tokens they do not need.
    """

    name = "http_url"
    kinds = (SourceKind.DIRECT_URL, SourceKind.THUMBNAIL_URL)

    def __init__(self, fetcher: AuthenticatedFetcher, try_unauthenticated: bool = True):
        super().__init__(fetcher)
        self.try_unauthenticated = try_unauthenticated

    def sub_attempts(self, source: CandidateSource) -> list[bool]:
        if not source.requires_auth:
            return [False]
        if self.try_unauthenticated:
            return [True, False]
        return [True]


class GoogleApiStrategy(ResolutionStrategy):
    """Download through the Drive or Chat API; always authenticated."""

    name = "google_api"
    kinds = (SourceKind.DRIVE_FILE_REF, SourceKind.CHAT_RESOURCE_REF)

    def sub_attempts(self, source: CandidateSource) -> list[bool]:
        return [True]


def default_strategies(
    fetcher: AuthenticatedFetcher,
    config: Settings | None = None,
) -> list[ResolutionStrategy]:
    config = config or settings
    return [
        HttpUrlStrategy(fetcher, try_unauthenticated=config.try_unauthenticated),
        GoogleApiStrategy(fetcher),
    ]


class ResolutionChain:
    """Ordered, configurable list of strategies applied to one descriptor."""

    def __init__(
        self,
        strategies: list[ResolutionStrategy],
        media_root: Path,
        enabled_kinds: list[str] | None = None,
    ):
        self.strategies = strategies
        self.media_root = media_root
        if enabled_kinds is None:
            self.enabled_kinds = set(SourceKind)
        else:
            self.enabled_kinds = {SourceKind(kind) for kind in enabled_kinds}

    @staticmethod
    def ordered_sources(descriptor: AttachmentDescriptor) -> list[CandidateSource]:
        """Full-resolution sources in their given order, thumbnails last."""
        sources = descriptor.candidate_sources
        full = [s for s in sources if s.kind != SourceKind.THUMBNAIL_URL]
        thumbnails = [s for s in sources if s.kind == SourceKind.THUMBNAIL_URL]
        return full + thumbnails

    def strategy_for(self, source: CandidateSource) -> ResolutionStrategy | None:
        if source.kind not in self.enabled_kinds:
            return None
        for strategy in self.strategies:
            if strategy.handles(source):
                return strategy
        return None

    def destination_for(self, descriptor: AttachmentDescriptor, source: CandidateSource) -> Path:
        """Pick a not-yet-existing path under the media root."""
        filename = descriptor.storage_filename(source.label, int(time.time() * 1000))
        path = self.media_root / filename
        counter = 1
        while path.exists():
            stem = Path(filename).stem
            suffix = Path(filename).suffix
            path = self.media_root / f"{stem}_{counter}{suffix}"
            counter += 1
        return path

    async def close(self) -> None:
        """Close the fetchers behind every strategy."""
        closed: set[int] = set()
        for strategy in self.strategies:
            if id(strategy.fetcher) not in closed:
                closed.add(id(strategy.fetcher))
                await strategy.fetcher.close()

    async def resolve(self, descriptor: AttachmentDescriptor, auth: AuthContext) -> DownloadResult:
        """Try sources in order until one yields a validated payload.

        Raises:
            AllStrategiesExhaustedError: With every sub-attempt's failure.
        """
        failures: list[AttemptFailure] = []

        for source in self.ordered_sources(descriptor):
            strategy = self.strategy_for(source)
            if strategy is None:
                failures.append(
                    AttemptFailure(
                        method=source.label,
                        authenticated=False,
                        reason=FailureReason.STRATEGY_DISABLED,
                        detail=f"no enabled strategy for {source.kind.value}",
                    )
                )
                continue

            for with_token in strategy.sub_attempts(source):
                token = None
                if with_token:
                    token = await auth.get_token()
                    if token is None:
                        failures.append(
                            AttemptFailure(
                                method=source.label,
                                authenticated=True,
                                reason=FailureReason.AUTH_TOKEN_UNAVAILABLE,
                                detail=auth.last_error or "no access token",
                            )
                        )
                        continue

                dest_path = self.destination_for(descriptor, source)
                try:
                    fetched = await strategy.attempt(source, token, dest_path)
                except FetchError as e:
                    logger.debug(
                        "resolution_attempt_failed",
                        attachment=descriptor.display_name,
                        method=source.label,
                        authenticated=with_token,
                        reason=e.kind.value,
                        error=e.message,
                    )
                    failures.append(
                        AttemptFailure(
                            method=source.label,
                            authenticated=with_token,
                            reason=e.kind,
                            detail=e.message,
                        )
                    )
                    continue
                except Exception as e:
                    # One broken source must not hide the remaining ones
                    logger.warning(
                        "resolution_attempt_error",
                        attachment=descriptor.display_name,
                        method=source.label,
                        authenticated=with_token,
                        error=str(e),
                        exc_info=True,
                    )
                    failures.append(
                        AttemptFailure(
                            method=source.label,
                            authenticated=with_token,
                            reason=FailureReason.UNEXPECTED_ERROR,
                            detail=f"{type(e).__name__}: {e}",
                        )
                    )
                    continue

                degraded = source.kind == SourceKind.THUMBNAIL_URL
                if degraded:
                    logger.info(
                        "resolved_from_thumbnail",
                        attachment=descriptor.display_name,
                        is_image=descriptor.is_image,
                    )
                return DownloadResult(
                    path=fetched.path,
                    byte_size=fetched.byte_size,
                    method=fetched.method or source.label,
                    source_kind=source.kind,
                    authenticated=with_token,
                    degraded=degraded,
                    content_type=fetched.content_type,
                    failed_attempts=failures,
                )

        raise AllStrategiesExhaustedError(failures)
