"""Vote-related Pydantic schemas."""
from __future__ import annotations

from pydantic import Field

from .common import Snapshot, TargetType, VoteValue


class VoteTally(Snapshot):
    """Authoritative tallies returned by the store's vote operation."""

    target_id: str
    target_type: TargetType
    upvotes: int = Field(ge=0)
    downvotes: int = Field(ge=0)
    user_vote: VoteValue
    version: int | None = None
