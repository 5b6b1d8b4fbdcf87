# src/korum_sync/models/message.py
"""Models describing direct and korum messages and their side tables."""

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from korum_sync.db.session import Base
from korum_sync.db.time import utcnow

from ._ids import new_id


class Message(Base):
    """Message addressed either to one receiver or to a korum, never both."""

    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "(receiver_id IS NULL) <> (korum_id IS NULL)",
            name="ck_messages_single_scope",
        ),
        Index("ix_messages_korum_id", "korum_id"),
        Index("ix_messages_pair", "sender_id", "receiver_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    sender_id: Mapped[str] = mapped_column(String(36), nullable=False)
    receiver_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    korum_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("korums.id", ondelete="CASCADE"),
        nullable=True,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    reply_to_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    attachment_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class MessageReaction(Base):
    """One emoji reaction by one user on one message."""

    __tablename__ = "message_reactions"

    message_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("messages.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    emoji: Mapped[str] = mapped_column(String(32), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class PinnedMessage(Base):
    """Pinned flag for korum messages, kept outside the message row."""

    __tablename__ = "korum_pinned_messages"

    korum_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("korums.id", ondelete="CASCADE"),
        primary_key=True,
    )
    message_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("messages.id", ondelete="CASCADE"),
        primary_key=True,
    )
    pinned_by: Mapped[str] = mapped_column(String(36), nullable=False)
    pinned_at: Mapped[datetime] = mapped_column(default=utcnow)
