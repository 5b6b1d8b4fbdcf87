"""Korum-related Pydantic schemas."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .common import AuthorProfile, KorumType, MemberRole, Snapshot


class Korum(Snapshot):
    """Korum snapshot joined with the current user's membership."""

    id: str
    name: str
    description: str | None = None
    type: KorumType
    avatar_url: str | None = None
    is_private: bool = False
    admin_only_posting: bool = False
    member_count: int = Field(default=0, ge=0)
    created_by: str
    version: int = 1
    created_at: datetime
    is_member: bool = False
    user_role: MemberRole | None = None


class KorumMembership(Snapshot):
    """Membership row joined with the member's profile."""

    korum_id: str
    user_id: str
    role: MemberRole
    joined_at: datetime | None = None
    profile: AuthorProfile | None = None


class KorumCreate(BaseModel):
    """Schema for creating a new korum."""

    name: str
    description: str
    type: KorumType
    is_private: bool = False
    admin_only_posting: bool = False
