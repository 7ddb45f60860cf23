"""Batch orchestrator for attachment downloads.

Walks every chat with attachments, drives each unresolved attachment through
normalization, the resolution chain and the state tracker, and saves the chat
once after all of its attachments have been handled.
"""

from __future__ import annotations

import asyncio
import signal
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from chatmedia.core.config import Settings, settings
from chatmedia.core.logging import get_logger
from chatmedia.db.models import Chat
from chatmedia.db.models.enums import FailureReason
from chatmedia.services.chat_store import RecordStore
from chatmedia.services.descriptor import extract_raw_attachments, normalize_attachment
from chatmedia.services.exceptions import (
    AllStrategiesExhaustedError,
    AuthTokenUnavailableError,
    NotAnAttachmentError,
    PipelineFatalError,
)
from chatmedia.services.fetcher import AuthenticatedFetcher
from chatmedia.services.google_auth import AuthContext
from chatmedia.services.strategies import ResolutionChain, default_strategies
from chatmedia.services.tracker import OUTCOME_KEY, DownloadOutcome, DownloadStateTracker

logger = get_logger(__name__)


@dataclass
class RunSummary:
    """Counters accumulated over one run."""

    total: int = 0
    skipped: int = 0
    succeeded: int = 0
    failed: int = 0
    degraded: int = 0
    not_attachments: int = 0
    records_seen: int = 0
    records_saved: int = 0
    cancelled: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed

    @property
    def success_rate(self) -> float:
        """Percentage of attempted attachments that succeeded (100 when none were)."""
        if self.attempted == 0:
            return 100.0
        return round(self.succeeded / self.attempted * 100, 1)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "skipped": self.skipped,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "degraded": self.degraded,
            "not_attachments": self.not_attachments,
            "records_seen": self.records_seen,
            "records_saved": self.records_saved,
            "success_rate": self.success_rate,
            "cancelled": self.cancelled,
        }


def _adopt_attachments(message: dict[str, Any], attachments: list[Any]) -> None:
    """Keep *attachments* on the message's plural ``attachments`` list.

    Numeric-keyed objects and the legacy singular field are rewritten as a
    list so stored outcomes are found at the same place on the next run.
    """
    current = message.get("attachments")
    if isinstance(current, list) and current:
        return
    if not current:
        message.pop("attachment", None)
    message["attachments"] = attachments


class _Throttle:
    """Fixed pause before every network-bound attachment except the first."""

    def __init__(self, orchestrator: BatchOrchestrator):
        self.orchestrator = orchestrator
        self.used = False

    async def wait(self) -> None:
        if self.used:
            await self.orchestrator._pause()
        self.used = True


class BatchOrchestrator:
    """Runs the download pipeline over every chat in the store.

    Attachments within one chat are always processed sequentially. With
    ``concurrency > 1`` several chats are processed at once, each by exactly
    one worker.

    Shutdown is cooperative: after ``request_shutdown()`` the in-flight
    attachment finishes, its chat is saved and no further work starts.
    """

    def __init__(
        self,
        store: RecordStore,
        chain: ResolutionChain,
        tracker: DownloadStateTracker,
        auth: AuthContext,
        *,
        delay: float | None = None,
        concurrency: int = 1,
        force: bool = False,
    ):
        self.store = store
        self.chain = chain
        self.tracker = tracker
        self.auth = auth
        self.delay = settings.download_delay if delay is None else delay
        self.concurrency = max(1, concurrency)
        self.force = force
        self._shutdown_event = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._shutdown_event.is_set()

    def request_shutdown(self) -> None:
        """Request a clean stop after the current attachment."""
        if not self.stopping:
            logger.info("media_run_shutdown_requested")
        self._shutdown_event.set()

    def install_signal_handlers(self) -> None:
        """Stop cleanly on SIGTERM and SIGINT."""
        try:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self.request_shutdown)
        except (NotImplementedError, RuntimeError):
            # Signal handlers not supported (e.g., Windows, or running in thread)
            pass

    async def run(self, chat_ids: list[str] | None = None) -> RunSummary:
        """Process every chat (or only *chat_ids*) and return the run summary.

        Raises:
            PipelineFatalError: If no access token can be obtained, or the
                media directory or the database is unreachable.
        """
        summary = RunSummary()
        logger.info(
            "media_run_started",
            chat_ids=chat_ids,
            force=self.force,
            delay=self.delay,
            concurrency=self.concurrency,
        )

        try:
            await self._prepare()
            if self.concurrency == 1:
                await self._run_sequential(summary, chat_ids)
            else:
                await self._run_pool(summary, chat_ids)
        except PipelineFatalError as e:
            logger.error("media_run_aborted", error=e.message, code=e.code, **summary.as_dict())
            raise

        summary.cancelled = summary.cancelled or self.stopping
        summary.finished_at = datetime.now(timezone.utc)
        logger.info(
            "media_run_complete",
            duration_seconds=round((summary.finished_at - summary.started_at).total_seconds(), 1),
            **summary.as_dict(),
        )
        return summary

    async def _prepare(self) -> None:
        try:
            self.tracker.media_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PipelineFatalError(
                f"Media directory unavailable: {self.tracker.media_root}: {e}",
                "STORAGE_UNAVAILABLE",
            ) from e

        try:
            await self.auth.start()
        except AuthTokenUnavailableError as e:
            raise PipelineFatalError(e.message, e.code) from e

    async def _run_sequential(self, summary: RunSummary, chat_ids: list[str] | None) -> None:
        throttle = _Throttle(self)
        async with aclosing(self.store.iter_records(chat_ids)) as records:
            async for chat in records:
                if self.stopping:
                    summary.cancelled = True
                    break
                await self.process_record(chat, summary, throttle)

    async def _run_pool(self, summary: RunSummary, chat_ids: list[str] | None) -> None:
        queue: asyncio.Queue[Chat | None] = asyncio.Queue(maxsize=self.concurrency * 2)

        async def produce() -> None:
            async with aclosing(self.store.iter_records(chat_ids)) as records:
                async for chat in records:
                    if self.stopping:
                        summary.cancelled = True
                        break
                    await queue.put(chat)
            for _ in range(self.concurrency):
                await queue.put(None)

        async def consume() -> None:
            throttle = _Throttle(self)
            while True:
                chat = await queue.get()
                if chat is None:
                    return
                if self.stopping:
                    summary.cancelled = True
                    continue
                await self.process_record(chat, summary, throttle)

        tasks = [asyncio.create_task(produce())]
        tasks.extend(asyncio.create_task(consume()) for _ in range(self.concurrency))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def process_record(
        self,
        chat: Chat,
        summary: RunSummary,
        throttle: _Throttle | None = None,
    ) -> bool:
        """Process every attachment of *chat*, then save it once if anything changed.

        Returns:
            True if the chat was saved.
        """
        throttle = throttle or _Throttle(self)
        summary.records_seen += 1
        dirty = False

        for message in chat.messages or []:
            if self.stopping:
                break
            attachments = extract_raw_attachments(message)
            if not attachments:
                continue

            for raw in attachments:
                if self.stopping:
                    summary.cancelled = True
                    break
                if await self.process_attachment(raw, summary, throttle):
                    dirty = True
                    _adopt_attachments(message, attachments)

        if not dirty:
            return False

        await self.store.save(chat)
        summary.records_saved += 1
        return True

    async def process_attachment(
        self,
        raw: Any,
        summary: RunSummary,
        throttle: _Throttle | None = None,
    ) -> bool:
        """Drive one raw attachment through the pipeline.

        Never raises for per-attachment problems; they end up as a failed
        outcome stored on *raw*.

        Returns:
            True if an outcome was written to *raw*.
        """
        try:
            descriptor = normalize_attachment(raw)
        except NotAnAttachmentError as e:
            summary.not_attachments += 1
            logger.debug("not_an_attachment", reason=e.message)
            return False

        summary.total += 1
        outcome = DownloadOutcome.from_attachment(raw)

        if not self.tracker.should_process(outcome, self.force):
            summary.skipped += 1
            logger.debug(
                "attachment_already_downloaded",
                attachment=descriptor.display_name,
                local_path=outcome.local_path,
            )
            return False

        outcome.media_type = descriptor.media_type

        if not descriptor.candidate_sources:
            # A completed outcome reaching here lost its file or is forced
            self.tracker.record_start(outcome, force=self.force)
            self.tracker.record_failure(outcome, FailureReason.NO_SOURCE_AVAILABLE.value)
            summary.failed += 1
            logger.warning(
                "attachment_failed",
                attachment=descriptor.display_name,
                reason=FailureReason.NO_SOURCE_AVAILABLE.value,
            )
            raw[OUTCOME_KEY] = outcome.to_document()
            return True

        if throttle is not None:
            await throttle.wait()

        self.tracker.record_start(outcome, force=self.force)

        try:
            result = await self.chain.resolve(descriptor, self.auth)
        except AllStrategiesExhaustedError as e:
            reason = e.primary_reason.value
            self.tracker.record_failure(outcome, reason, e.details)
            summary.failed += 1
            logger.warning(
                "attachment_failed",
                attachment=descriptor.display_name,
                reason=reason,
                attempts=e.details,
            )
        except Exception as e:
            logger.error(
                "attachment_unexpected_error",
                attachment=descriptor.display_name,
                error=str(e),
                exc_info=True,
            )
            self.tracker.record_failure(
                outcome,
                FailureReason.UNEXPECTED_ERROR.value,
                [f"{type(e).__name__}: {e}"],
            )
            summary.failed += 1
        else:
            self.tracker.record_success(outcome, result)
            summary.succeeded += 1
            if result.degraded:
                summary.degraded += 1
            logger.info(
                "attachment_downloaded",
                attachment=descriptor.display_name,
                method=result.method,
                authenticated=result.authenticated,
                degraded=result.degraded,
                bytes=result.byte_size,
                path=outcome.local_path,
                failed_attempts=len(result.failed_attempts),
            )

        raw[OUTCOME_KEY] = outcome.to_document()
        return True

    async def _pause(self) -> None:
        """Wait the inter-download delay, returning early on shutdown."""
        if self.delay <= 0 or self.stopping:
            return
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.delay)
        except TimeoutError:
            pass

    async def aclose(self) -> None:
        await self.chain.close()


def build_orchestrator(
    store: RecordStore,
    auth: AuthContext,
    config: Settings | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    delay: float | None = None,
    concurrency: int | None = None,
    force: bool = False,
) -> BatchOrchestrator:
    """Wire fetcher, resolution chain and tracker from *config*."""
    config = config or settings
    fetcher = AuthenticatedFetcher(
        client=client,
        media_client=auth.media_client,
        config=config,
    )
    chain = ResolutionChain(
        default_strategies(fetcher, config),
        media_root=config.media_path,
        enabled_kinds=config.enabled_source_kinds,
    )
    tracker = DownloadStateTracker(config.media_path)
    return BatchOrchestrator(
        store,
        chain,
        tracker,
        auth,
        delay=config.download_delay if delay is None else delay,
        concurrency=config.concurrency if concurrency is None else concurrency,
        force=force,
    )
