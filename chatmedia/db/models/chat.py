"""Chat model: the owning record for message attachments."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from chatmedia.db.base import Base


class Chat(Base):
    """A chat space with its messages stored as one JSON document.

    Each message is a dict carrying ``messageId`` and the upstream attachment
    fields. Attachment download outcomes are embedded under the ``download``
    key of each attachment entry.
    """

    __tablename__ = "chats"

    # Primary key
    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # Upstream identification
    space_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Message documents
    messages: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("ix_chats_space_name", "space_name"),
    )

    def has_attachments(self) -> bool:
        """Check whether any message references at least one attachment."""
        for message in self.messages or []:
            if message.get("attachments") or message.get("attachment"):
                return True
        return False
