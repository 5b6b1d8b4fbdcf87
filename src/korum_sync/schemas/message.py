"""Message and conversation Pydantic schemas."""
from __future__ import annotations

from collections import Counter
from datetime import datetime

from pydantic import model_validator

from .common import AuthorProfile, Snapshot


class Reaction(Snapshot):
    """One emoji placed on a message by one user."""

    emoji: str
    user_id: str


class Message(Snapshot):
    """Direct or korum message; exactly one of receiver/korum is set."""

    id: str
    sender_id: str
    receiver_id: str | None = None
    korum_id: str | None = None
    content: str
    reply_to_id: str | None = None
    attachment_url: str | None = None
    is_read: bool = False
    version: int = 1
    created_at: datetime
    sender: AuthorProfile | None = None
    reactions: tuple[Reaction, ...] = ()
    is_pinned: bool = False

    @model_validator(mode="after")
    def _single_scope(self) -> Message:
        if (self.receiver_id is None) == (self.korum_id is None):
            raise ValueError("message must target exactly one of receiver_id or korum_id")
        return self

    @property
    def reaction_counts(self) -> dict[str, int]:
        """Count per emoji, always derived from the full reaction list."""
        return dict(Counter(reaction.emoji for reaction in self.reactions))


class Conversation(Snapshot):
    """Two-party conversation with its canonical participant pair."""

    id: str
    participant_one: str
    participant_two: str
    last_message_at: datetime | None = None
    created_at: datetime | None = None
    other_user: AuthorProfile | None = None
    last_message: str | None = None
    unread_count: int = 0

    @property
    def pair(self) -> tuple[str, str]:
        return (self.participant_one, self.participant_two)


class PinnedMessage(Snapshot):
    """Pin side-table row joined with the pinned message."""

    korum_id: str
    message_id: str
    pinned_by: str
    pinned_at: datetime | None = None
    message: Message | None = None
