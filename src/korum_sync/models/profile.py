# src/korum_sync/models/profile.py
"""Public user profiles joined onto posts, comments and messages."""

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from korum_sync.db.session import Base


class Profile(Base):
    """Display information for a user account."""

    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    department: Mapped[str] = mapped_column(Text, nullable=False, default="")
    batch: Mapped[str] = mapped_column(Text, nullable=False, default="")
