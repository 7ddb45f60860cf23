"""
Attachment media download command.

Downloads the media referenced by stored chat messages and records a
download outcome on every attachment.

Usage:
    chatmedia [options]

Options:
    --chat          Only process this chat id (repeatable)
    --force         Re-download attachments that are already completed
    --delay         Seconds to wait between downloads (default: CHATMEDIA_DOWNLOAD_DELAY)
    --concurrency   Chats processed at once (default: CHATMEDIA_CONCURRENCY)
    --log-level     DEBUG, INFO, WARNING or ERROR

Exit codes: 0 when the run completed (even if some attachments failed),
1 when the run was aborted, 2 for invalid arguments.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from sqlalchemy.exc import SQLAlchemyError

from chatmedia.core.config import Settings, settings
from chatmedia.core.logging import get_logger, setup_logging
from chatmedia.db import create_engine, create_session_maker, init_db
from chatmedia.services.chat_store import ChatStore
from chatmedia.services.exceptions import PipelineFatalError
from chatmedia.services.google_auth import AuthContext, provider_from_settings
from chatmedia.services.google_media import GoogleMediaClient
from chatmedia.services.orchestrator import RunSummary, build_orchestrator

logger = get_logger(__name__)


def _non_negative_float(value: str) -> float:
    number = float(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {value}")
    return number


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatmedia",
        description="Download media attachments referenced by stored chat messages",
    )
    parser.add_argument(
        "--chat",
        dest="chat_ids",
        action="append",
        default=None,
        metavar="ID",
        help="Only process this chat (repeatable)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Re-download attachments even if their file is present",
    )
    parser.add_argument(
        "--delay",
        type=_non_negative_float,
        default=None,
        help="Seconds between downloads (default: from settings)",
    )
    parser.add_argument(
        "--concurrency",
        type=_positive_int,
        default=None,
        help="Chats processed at once (default: from settings)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        default=None,
        help="Log level (default: from settings)",
    )
    return parser


async def run_pipeline(
    chat_ids: list[str] | None = None,
    *,
    force: bool = False,
    delay: float | None = None,
    concurrency: int | None = None,
    config: Settings | None = None,
) -> RunSummary:
    """Set up storage and authentication, then run one batch.

    Raises:
        PipelineFatalError: If the database, the media directory or the
            access token is unavailable.
    """
    config = config or settings
    try:
        if not config.database_url:
            config.config_path.mkdir(parents=True, exist_ok=True)
        engine = create_engine(config.resolved_database_url)
    except OSError as e:
        raise PipelineFatalError(f"Database unavailable: {e}", "STORAGE_UNAVAILABLE") from e

    try:
        try:
            await init_db(engine)
        except (SQLAlchemyError, OSError) as e:
            raise PipelineFatalError(f"Database unavailable: {e}", "STORAGE_UNAVAILABLE") from e

        store = ChatStore(create_session_maker(engine))
        auth = AuthContext(
            provider_from_settings(config),
            GoogleMediaClient(timeout=config.request_timeout),
            allow_anonymous=config.allow_anonymous,
        )
        orchestrator = build_orchestrator(
            store,
            auth,
            config,
            delay=delay,
            concurrency=concurrency,
            force=force,
        )
        orchestrator.install_signal_handlers()
        try:
            return await orchestrator.run(chat_ids)
        finally:
            await orchestrator.aclose()
    finally:
        await engine.dispose()


def print_summary(summary: RunSummary) -> None:
    print(f"\n{'=' * 60}")
    print("Media Download Summary")
    print(f"{'=' * 60}")
    print(f"  Chats processed: {summary.records_seen}")
    print(f"  Chats saved: {summary.records_saved}")
    print(f"  Attachments seen: {summary.total}")
    print(f"  Already downloaded (skipped): {summary.skipped}")
    print(f"  Downloaded: {summary.succeeded}")
    print(f"    from thumbnails: {summary.degraded}")
    print(f"  Failed: {summary.failed}")
    print(f"  Success rate: {summary.success_rate:.1f}%")
    if summary.not_attachments:
        print(f"  Ignored (not attachments): {summary.not_attachments}")
    if summary.cancelled:
        print("\nRun was stopped early; remaining attachments will be processed next time.")
    print()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level)

    try:
        summary = asyncio.run(
            run_pipeline(
                args.chat_ids,
                force=args.force,
                delay=args.delay,
                concurrency=args.concurrency,
            )
        )
    except PipelineFatalError as e:
        logger.error("pipeline_fatal", error=e.message, code=e.code)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    print_summary(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
