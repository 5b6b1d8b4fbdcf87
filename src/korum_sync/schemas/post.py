"""Post-related Pydantic schemas."""
from __future__ import annotations

import re
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from .common import AuthorProfile, PostCategory, Snapshot, VoteValue

TAG_PATTERN = re.compile(r"^[a-z0-9]+$")


class Post(Snapshot):
    """Post snapshot joined with its author and the current user's vote."""

    id: str
    author_id: str
    title: str
    content: str
    category: PostCategory
    tags: tuple[str, ...] = ()
    korum_id: str | None = None
    upvotes: int = Field(ge=0)
    downvotes: int = Field(ge=0)
    comment_count: int = Field(default=0, ge=0)
    version: int = 1
    created_at: datetime
    updated_at: datetime | None = None
    author: AuthorProfile | None = None
    user_vote: VoteValue = 0

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes


class PostCreate(BaseModel):
    """Schema for creating a new post."""

    title: str
    content: str
    category: PostCategory
    tags: list[str] = Field(default_factory=list)
    korum_id: str | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: object) -> object:
        if isinstance(value, list | tuple):
            return [str(tag).strip().lstrip("#").lower() for tag in value if str(tag).strip()]
        return value

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: list[str]) -> list[str]:
        for tag in value:
            if not TAG_PATTERN.match(tag):
                raise ValueError(f"Tag '{tag}' must be lowercase alphanumeric")
        # Preserve first occurrence order while dropping duplicates.
        return list(dict.fromkeys(value))
