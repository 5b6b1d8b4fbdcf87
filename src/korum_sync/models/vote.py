# src/korum_sync/models/vote.py
"""Models capturing voting interactions on posts and comments."""

from sqlalchemy import CheckConstraint, Index, SmallInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from korum_sync.db.session import Base


class Vote(Base):
    """Per-user vote on a post or comment.

    Absence of a row means "no vote"; changing a vote replaces ``value``.
    """

    __tablename__ = "votes"
    __table_args__ = (
        CheckConstraint("value IN (1, -1)", name="ck_votes_value"),
        CheckConstraint("target_type IN ('post', 'comment')", name="ck_votes_target_type"),
        Index("ix_votes_target", "target_id", "target_type"),
    )

    # Composite primary key prevents duplicate votes from the same user.
    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    target_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    target_type: Mapped[str] = mapped_column(String(16), primary_key=True)

    # 1 = upvote, -1 = downvote.
    value: Mapped[int] = mapped_column(SmallInteger, nullable=False)
