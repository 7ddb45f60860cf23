"""Tests for ChatStore."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from chatmedia.services.chat_store import ChatStore
from chatmedia.services.exceptions import PipelineFatalError


def attachment_message(message_id: str, name: str = "a.png") -> dict:
    return {
        "messageId": message_id,
        "attachments": [{"contentName": name, "downloadUri": f"https://x/{message_id}"}],
    }


class TestIterRecords:
    """Tests for iterating owning records."""

    @pytest.mark.asyncio
    async def test_only_chats_with_attachments(self, store, add_chat):
        with_media = await add_chat([attachment_message("m1")], "With media")
        await add_chat([{"messageId": "m2", "text": "hello"}], "Text only")
        await add_chat([], "Empty")

        ids = [chat.id async for chat in store.iter_records()]

        assert ids == [with_media]

    @pytest.mark.asyncio
    async def test_legacy_attachment_field_counts(self, store, add_chat):
        chat_id = await add_chat([{"messageId": "m1", "attachment": {"contentName": "a.png"}}])

        ids = [chat.id async for chat in store.iter_records()]

        assert ids == [chat_id]

    @pytest.mark.asyncio
    async def test_filter_by_chat_ids(self, store, add_chat):
        first = await add_chat([attachment_message("m1")], "First")
        await add_chat([attachment_message("m2")], "Second")

        ids = [chat.id async for chat in store.iter_records([first])]

        assert ids == [first]


class TestSave:
    """Tests for persisting owning records."""

    @pytest.mark.asyncio
    async def test_in_place_changes_persisted(self, store, add_chat, load_chat):
        """Test edits inside the JSON document are written back."""
        chat_id = await add_chat([attachment_message("m1")])
        chat = [c async for c in store.iter_records()][0]

        chat.messages[0]["attachments"][0]["download"] = {"status": "completed"}
        await store.save(chat)

        reloaded = await load_chat(chat_id)
        assert reloaded.messages[0]["attachments"][0]["download"] == {"status": "completed"}

    @pytest.mark.asyncio
    async def test_database_error_is_fatal(self):
        session_maker = MagicMock(side_effect=OperationalError("SELECT", {}, Exception("locked")))
        store = ChatStore(session_maker)

        with pytest.raises(PipelineFatalError) as exc_info:
            await store.list_ids()

        assert exc_info.value.code == "STORAGE_UNAVAILABLE"
