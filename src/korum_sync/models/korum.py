# src/korum_sync/models/korum.py
"""SQLAlchemy models for korums and their membership."""

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from korum_sync.db.session import Base
from korum_sync.db.time import utcnow

from ._ids import new_id


class Korum(Base):
    """Community metadata used for grouping posts, members and group chat."""

    __tablename__ = "korums"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    admin_only_posting: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str] = mapped_column(String(36), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class KorumMember(Base):
    """Join table mapping users into korums with a role."""

    __tablename__ = "korum_members"
    __table_args__ = (
        CheckConstraint("role IN ('admin', 'moderator', 'member')", name="ck_korum_members_role"),
    )

    korum_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("korums.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="member")
    joined_at: Mapped[datetime] = mapped_column(default=utcnow)
