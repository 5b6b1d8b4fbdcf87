"""Shared Pydantic types for entity snapshots."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

PostCategory = Literal["academic_help", "project", "notice", "question", "resource"]
KorumType = Literal["batch", "department", "project", "club", "course"]
MemberRole = Literal["admin", "moderator", "member"]
NotificationType = Literal[
    "message",
    "comment",
    "reply",
    "mention",
    "announcement",
    "korum_invite",
    "upvote",
]
TargetType = Literal["post", "comment"]
VoteValue = Literal[-1, 0, 1]

PRIVILEGED_ROLES: tuple[str, ...] = ("admin", "moderator")


class Snapshot(BaseModel):
    """Immutable view of a row as last read from the store.

    Unknown columns are ignored; missing required columns fail validation so a
    partial row never reaches the cache.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")


class AuthorProfile(Snapshot):
    """Public profile fields joined onto authored entities."""

    user_id: str
    full_name: str
    avatar_url: str | None = None
    department: str = ""
    batch: str = ""
