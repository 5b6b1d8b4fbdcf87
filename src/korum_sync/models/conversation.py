# src/korum_sync/models/conversation.py
"""Two-party conversation rows keyed by their canonical participant pair."""

from datetime import datetime

from sqlalchemy import CheckConstraint, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from korum_sync.db.session import Base
from korum_sync.db.time import utcnow

from ._ids import new_id


class Conversation(Base):
    """Direct conversation between exactly two users.

    ``participant_one`` always sorts before ``participant_two`` so the pair has
    one identity regardless of who initiated it.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("participant_one", "participant_two", name="uq_conversations_pair"),
        CheckConstraint("participant_one < participant_two", name="ck_conversations_canonical"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    participant_one: Mapped[str] = mapped_column(String(36), nullable=False)
    participant_two: Mapped[str] = mapped_column(String(36), nullable=False)
    last_message_at: Mapped[datetime] = mapped_column(default=utcnow)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
