"""
Pydantic schemas for entity snapshots, mutation inputs and realtime events.

Snapshots are frozen so a value handed to a consumer can never be mutated in
place; cache updates always replace whole snapshots.
"""

from .comment import Comment, CommentNode
from .common import AuthorProfile, Snapshot
from .events import ChangeEvent
from .korum import Korum, KorumCreate, KorumMembership
from .message import Conversation, Message, PinnedMessage, Reaction
from .notification import Notification
from .post import Post, PostCreate
from .vote import VoteTally

__all__ = [
    "AuthorProfile", "Snapshot",
    "ChangeEvent",
    "Comment", "CommentNode",
    "Conversation", "Message", "PinnedMessage", "Reaction",
    "Korum", "KorumCreate", "KorumMembership",
    "Notification",
    "Post", "PostCreate",
    "VoteTally",
]
