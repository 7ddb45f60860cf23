"""Storage collaborator: iterates and saves owning chat records."""

from __future__ import annotations

from typing import AsyncIterator, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import flag_modified

from chatmedia.core.logging import get_logger
from chatmedia.db.models import Chat
from chatmedia.services.exceptions import PipelineFatalError

logger = get_logger(__name__)


class RecordStore(Protocol):
    """What the orchestrator needs from the persistence layer."""

    def iter_records(self, chat_ids: list[str] | None = None) -> AsyncIterator[Chat]: ...

    async def save(self, chat: Chat) -> None: ...


class ChatStore:
    """Loads chats one at a time and saves each back in its own transaction.

    Database failures are raised as ``PipelineFatalError``: a run that cannot
    persist outcomes has no point continuing.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def list_ids(self, chat_ids: list[str] | None = None) -> list[str]:
        query = select(Chat.id).order_by(Chat.created_at, Chat.id)
        if chat_ids:
            query = query.where(Chat.id.in_(chat_ids))
        try:
            async with self.session_maker() as db:
                result = await db.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PipelineFatalError(f"Cannot list chats: {e}", "STORAGE_UNAVAILABLE") from e

    async def iter_records(self, chat_ids: list[str] | None = None) -> AsyncIterator[Chat]:
        """Yield chats that reference at least one attachment.

        Ids are listed up front and each chat is loaded in a short session of
        its own, so no transaction stays open while media is downloaded.
        """
        for chat_id in await self.list_ids(chat_ids):
            try:
                async with self.session_maker() as db:
                    chat = await db.get(Chat, chat_id)
            except SQLAlchemyError as e:
                raise PipelineFatalError(
                    f"Cannot load chat {chat_id}: {e}", "STORAGE_UNAVAILABLE"
                ) from e

            if chat is None:
                # Deleted between listing and loading
                continue
            if not chat.has_attachments():
                continue
            yield chat

    async def save(self, chat: Chat) -> None:
        """Persist *chat*'s messages, including every embedded outcome."""
        try:
            async with self.session_maker() as db:
                merged = await db.merge(chat)
                # In-place edits to the JSON document are not tracked
                flag_modified(merged, "messages")
                await db.commit()
        except SQLAlchemyError as e:
            raise PipelineFatalError(f"Cannot save chat {chat.id}: {e}", "STORAGE_UNAVAILABLE") from e

        logger.debug("chat_saved", chat_id=chat.id)
