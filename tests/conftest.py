"""Pytest configuration and fixtures."""

import os
import tempfile
from pathlib import Path

import pytest

# Create a temporary directory for test paths
_test_tmp_dir = tempfile.mkdtemp(prefix="chatmedia_test_")

# Set config paths BEFORE importing chatmedia modules
os.environ["CHATMEDIA_CONFIG_PATH"] = str(Path(_test_tmp_dir) / "config")
os.environ["CHATMEDIA_MEDIA_PATH"] = str(Path(_test_tmp_dir) / "media")
os.environ["CHATMEDIA_DOWNLOAD_DELAY"] = "0"
os.environ["CHATMEDIA_HOST_MIN_DELAY"] = "0"

from chatmedia.core.config import Settings
from chatmedia.db import create_engine, create_session_maker, init_db
from chatmedia.db.models import Chat
from chatmedia.services.chat_store import ChatStore


@pytest.fixture
def media_root(tmp_path) -> Path:
    """Media directory for one test."""
    path = tmp_path / "media"
    path.mkdir()
    return path


@pytest.fixture
def test_settings(tmp_path, media_root) -> Settings:
    """Settings pointing at per-test paths with throttling disabled."""
    return Settings(
        config_path=tmp_path / "config",
        media_path=media_root,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'chatmedia.db'}",
        download_delay=0,
        host_min_delay=0,
        access_token="test-token",
    )


@pytest.fixture
async def db_engine(test_settings):
    """Create a file-backed test database engine.

    A file is used instead of ``:memory:`` because the store opens a new
    session (and connection) per record.
    """
    engine = create_engine(test_settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return create_session_maker(db_engine)


@pytest.fixture
def store(session_maker) -> ChatStore:
    return ChatStore(session_maker)


@pytest.fixture
def add_chat(session_maker):
    """Insert a chat with the given messages and return its id."""

    async def _add(messages: list[dict], display_name: str = "Test chat") -> str:
        async with session_maker() as db:
            chat = Chat(
                space_name=f"spaces/{display_name.replace(' ', '')}",
                display_name=display_name,
                messages=messages,
            )
            db.add(chat)
            await db.commit()
            return chat.id

    return _add


@pytest.fixture
def load_chat(session_maker):
    """Load a chat fresh from the database."""

    async def _load(chat_id: str) -> Chat:
        async with session_maker() as db:
            return await db.get(Chat, chat_id)

    return _load


def pytest_sessionfinish(session, exitstatus):
    """Clean up temp directories after test session."""
    import shutil
    if Path(_test_tmp_dir).exists():
        shutil.rmtree(_test_tmp_dir, ignore_errors=True)
