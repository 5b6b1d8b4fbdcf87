# src/korum_sync/models/__init__.py
"""SQLAlchemy models backing the reference store."""

from .conversation import Conversation
from .korum import Korum, KorumMember
from .message import Message, MessageReaction, PinnedMessage
from .notification import Notification
from .post import Comment, Post
from .profile import Profile
from .vote import Vote

TABLES = {
    "profiles": Profile,
    "posts": Post,
    "comments": Comment,
    "votes": Vote,
    "korums": Korum,
    "korum_members": KorumMember,
    "conversations": Conversation,
    "messages": Message,
    "message_reactions": MessageReaction,
    "korum_pinned_messages": PinnedMessage,
    "notifications": Notification,
}

__all__ = [
    "Comment", "Post",
    "Conversation",
    "Korum", "KorumMember",
    "Message", "MessageReaction", "PinnedMessage",
    "Notification",
    "Profile",
    "Vote",
    "TABLES",
]
