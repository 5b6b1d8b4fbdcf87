"""Synchronization services built on the entity cache."""

from .cache import CacheEntry, CacheKey, EntityCache
from .comment_tree import CommentForest, build_comment_tree
from .conversations import ConversationResolver, canonical_pair
from .korums import KorumService
from .messaging import MessagingService
from .notifications import NotificationService
from .posts import PostService
from .queries import QueryExecutor
from .realtime import ChannelHub, RealtimeRouter, Scope, Subscription, WatchHandle
from .votes import VoteCoordinator, toggled_vote, vote_delta

__all__ = [
    "CacheEntry", "CacheKey", "EntityCache",
    "CommentForest", "build_comment_tree",
    "ConversationResolver", "canonical_pair",
    "KorumService",
    "MessagingService",
    "NotificationService",
    "PostService",
    "QueryExecutor",
    "ChannelHub", "RealtimeRouter", "Scope", "Subscription", "WatchHandle",
    "VoteCoordinator", "toggled_vote", "vote_delta",
]
