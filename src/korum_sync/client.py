"""Wiring of the sync core for one signed-in user."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from korum_sync.core.settings import Settings, settings
from korum_sync.schemas.comment import Comment
from korum_sync.schemas.message import Conversation, Message
from korum_sync.schemas.post import Post, PostCreate
from korum_sync.schemas.vote import VoteTally
from korum_sync.services.cache import CacheKey, EntityCache
from korum_sync.services.conversations import ConversationResolver
from korum_sync.services.korums import KorumService
from korum_sync.services.messaging import MessagingService
from korum_sync.services.notifications import NotificationService
from korum_sync.services.posts import PostService
from korum_sync.services.queries import QueryExecutor
from korum_sync.services.realtime import ChannelHub, RealtimeRouter, Scope, WatchHandle
from korum_sync.services.votes import VoteCoordinator
from korum_sync.store import StoreClient, build_store

# Configure logger for this module
logger = logging.getLogger(__name__)


class KorumSyncClient:
    """Entry point bundling every sync component around one shared cache.

    Components are exposed as attributes (``queries``, ``votes``, ``resolver``,
    ``router``, ``content``, ``korums``, ``messaging``, ``notifications``); the
    most common operations are also available directly on the client.

    Example:
        async with KorumSyncClient.from_settings(user_id) as client:
            posts = await client.queries.posts(category="question")
            await client.cast_vote(posts[0].id, "post", 1)
    """

    def __init__(
        self,
        user_id: str,
        store: StoreClient,
        cache: EntityCache | None = None,
        *,
        config: Settings = settings,
    ) -> None:
        self.user_id = user_id
        self.store = store
        self.cache = cache if cache is not None else EntityCache()
        self.config = config

        self.queries = QueryExecutor(self.cache, store, user_id)
        self.votes = VoteCoordinator(self.cache, store, user_id, refetch=self.queries.refetch)
        self.queries.add_overlay(self.votes.overlay)
        self.resolver = ConversationResolver(self.cache, store)
        self.hub = ChannelHub(
            store,
            queue_size=config.realtime_queue_size,
            reconnect_initial=config.realtime_reconnect_initial_seconds,
            reconnect_max=config.realtime_reconnect_max_seconds,
        )
        self.router = RealtimeRouter(
            self.cache,
            self.queries,
            self.hub,
            dedupe_window=config.realtime_dedupe_window,
        )
        self.content = PostService(self.cache, store, self.queries, user_id, config)
        self.korums = KorumService(self.cache, store, self.queries, user_id, config)
        self.messaging = MessagingService(self.cache, store, self.queries, self.resolver, user_id, config)
        self.notifications = NotificationService(self.cache, store, user_id)

    @classmethod
    def from_settings(cls, user_id: str, config: Settings | None = None) -> KorumSyncClient:
        config = config or settings
        store = build_store(config)
        logger.info(
            "%s %s: client for %s using the %s store",
            config.app_name,
            config.app_version,
            user_id,
            config.store_backend,
        )
        return cls(user_id, store, config=config)

    async def close(self) -> None:
        """Release every realtime channel and the store connection."""
        await self.hub.close()
        await self.store.close()

    async def __aenter__(self) -> KorumSyncClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Shortcuts for the core operations.

    async def cast_vote(self, target_id: str, target_type: str, desired: int) -> VoteTally:
        return await self.votes.cast_vote(target_id, target_type, desired)

    async def resolve_conversation(self, other_user_id: str) -> Conversation:
        return await self.resolver.resolve_conversation(self.user_id, other_user_id)

    async def create_post(self, data: PostCreate | dict[str, Any]) -> Post:
        return await self.content.create_post(data)

    async def create_comment(self, post_id: str, content: str, parent_id: str | None = None) -> Comment:
        return await self.content.create_comment(post_id, content, parent_id)

    async def send_direct_message(self, receiver_id: str, content: str, **options: Any) -> Message:
        return await self.messaging.send_direct_message(receiver_id, content, **options)

    async def send_korum_message(self, korum_id: str, content: str, **options: Any) -> Message:
        return await self.messaging.send_korum_message(korum_id, content, **options)

    @asynccontextmanager
    async def watch(self, scope: Scope, keys: Iterable[CacheKey] = ()) -> AsyncIterator[WatchHandle]:
        """Keep cached views for ``scope`` live while the block runs."""
        async with self.router.watch(scope, keys) as handle:
            yield handle

    def abandon(self, key: CacheKey) -> None:
        self.queries.abandon(key)
