"""Comment-related Pydantic schemas."""
from __future__ import annotations

from datetime import datetime

from pydantic import Field

from .common import AuthorProfile, Snapshot, VoteValue


class Comment(Snapshot):
    """Comment snapshot; ``parent_id`` is None for root comments."""

    id: str
    post_id: str
    author_id: str
    parent_id: str | None = None
    content: str
    upvotes: int = Field(ge=0)
    downvotes: int = Field(ge=0)
    version: int = 1
    created_at: datetime
    updated_at: datetime | None = None
    author: AuthorProfile | None = None
    user_vote: VoteValue = 0


class CommentNode(Snapshot):
    """Nested presentation of a comment and its replies."""

    comment: Comment
    replies: tuple[CommentNode, ...] = ()
