"""Cache-through queries with explicit, fail-closed joins.

Each query selects its primary rows, issues one extra select per joined
relation (author profiles, the current user's votes, memberships, pins,
reactions) and merges the results into frozen snapshots. A row missing a
required field raises ``SchemaMismatchError``; nothing partial is cached.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from itertools import count
from typing import Any

from korum_sync.core.errors import NotFoundError, ValidationError
from korum_sync.schemas.comment import Comment
from korum_sync.schemas.common import AuthorProfile
from korum_sync.schemas.korum import Korum, KorumMembership
from korum_sync.schemas.message import Conversation, Message, PinnedMessage, Reaction
from korum_sync.schemas.notification import Notification
from korum_sync.schemas.post import Post
from korum_sync.store.base import (
    RPC_MARK_MESSAGES_READ,
    AllOf,
    AnyOf,
    Filter,
    Order,
    StoreClient,
    eq,
    in_,
)

from .cache import CacheKey, EntityCache
from .comment_tree import CommentForest, build_comment_tree
from .merge import merge_row
from .views import find_entity, replace_entity

# Configure logger for this module
logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]
Overlay = Callable[[CacheKey, Any], Any]

NEWEST_FIRST = (Order("created_at", descending=True),)
OLDEST_FIRST = (Order("created_at"),)


def _entity_versions(value: Any) -> Iterable[tuple[str, int]]:
    if isinstance(value, CommentForest):
        items: Iterable[Any] = value.comments()
    elif isinstance(value, tuple):
        items = value
    else:
        items = (value,)
    for item in items:
        entity_id = getattr(item, "id", None)
        version = getattr(item, "version", None)
        if entity_id is not None and isinstance(version, int):
            yield entity_id, version


class QueryExecutor:
    """Runs queries for one user and stores their results in the cache.

    Concurrent reads of the same key share one fetch. ``abandon`` discards
    whatever is in flight for a key; ``refetch`` re-runs the loader that last
    produced it.
    """

    def __init__(self, cache: EntityCache, store: StoreClient, user_id: str) -> None:
        self._cache = cache
        self._store = store
        self._user_id = user_id
        self._loaders: dict[CacheKey, Loader] = {}
        self._generations: dict[CacheKey, int] = {}
        self._tokens = count(1)
        self._inflight: dict[CacheKey, asyncio.Future[Any]] = {}
        self._overlays: list[Overlay] = []
        cache.add_removal_listener(self._forget)

    @property
    def user_id(self) -> str:
        return self._user_id

    def add_overlay(self, overlay: Overlay) -> None:
        """Register a transform applied to every fetched value before caching.

        Coordinators use this to keep still-pending optimistic state visible
        when a view is re-fetched underneath them.
        """
        self._overlays.append(overlay)

    # ------------------------------------------------------------------
    # cache-through machinery
    # ------------------------------------------------------------------

    async def read(self, key: CacheKey, loader: Loader, *, force: bool = False) -> Any:
        self._loaders[key] = loader
        if not force:
            cached = self._cache.get(key)
            if cached is not None:
                return cached
        return await self._load(key, fresh=force)

    async def refetch(self, key: CacheKey) -> Any | None:
        """Re-run the query behind ``key``; a vanished entity drops the key."""
        if key not in self._loaders:
            logger.debug("No loader registered for %s; invalidating", key)
            self._cache.invalidate(key)
            return None
        try:
            return await self._load(key, fresh=True)
        except NotFoundError:
            logger.debug("Entity behind %s is gone; removing it from the cache", key)
            self._cache.remove(key)
            return None

    def abandon(self, key: CacheKey) -> None:
        """Ignore the eventual result of any fetch in flight for ``key``."""
        self._generations[key] = next(self._tokens)
        self._inflight.pop(key, None)
        logger.debug("Abandoned in-flight query for %s", key)

    def _forget(self, key: CacheKey) -> None:
        # A fetch still in flight for a removed key no longer matches any generation.
        self._loaders.pop(key, None)
        self._generations.pop(key, None)

    def is_loading(self, key: CacheKey) -> bool:
        return key in self._inflight

    async def _load(self, key: CacheKey, *, fresh: bool) -> Any:
        future = None if fresh else self._inflight.get(key)
        if future is None:
            if fresh or key not in self._generations:
                self._generations[key] = next(self._tokens)
            future = asyncio.ensure_future(self._fetch(key, self._loaders[key], self._generations[key]))
            self._inflight[key] = future
            future.add_done_callback(lambda done, key=key: self._settle(key, done))
        return await asyncio.shield(future)

    def _settle(self, key: CacheKey, future: asyncio.Future[Any]) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]
        if not future.cancelled():
            # Failures reach the awaiting callers; mark them retrieved for abandoned fetches.
            future.exception()

    async def _fetch(self, key: CacheKey, loader: Loader, generation: int) -> Any:
        value = await loader()
        if self._generations.get(key) != generation:
            logger.debug("Discarding superseded result for %s", key)
            return value
        value = self._keep_newer(key, value)
        for overlay in self._overlays:
            value = overlay(key, value)
        for entity_id, version in _entity_versions(value):
            self._cache.mark_authoritative(entity_id, version)
        self._cache.set(key, value)
        return value

    def _keep_newer(self, key: CacheKey, value: Any) -> Any:
        """Keep cached snapshots written after this fetch read its rows."""
        for entity_id, version in list(_entity_versions(value)):
            applied = self._cache.authoritative_version(entity_id)
            if applied is None or version >= applied:
                continue
            newer = self._newer_snapshot(key, find_entity(value, entity_id), version)
            if newer is None:
                logger.debug("No cached copy of %s newer than fetched version %s", entity_id, version)
                continue
            logger.debug("Keeping %s at version %s over fetched version %s in %s", entity_id, newer.version, version, key)
            value = replace_entity(value, entity_id, lambda _fetched, newer=newer: newer)
        return value

    def _newer_snapshot(self, key: CacheKey, fetched: Any, version: int) -> Any | None:
        candidates = [self._cache.get(key, allow_stale=True)]
        candidates.extend(value for other, value in self._cache.entries() if other != key)
        for cached in candidates:
            found = find_entity(cached, fetched.id)
            if type(found) is type(fetched) and found.version > version:
                return found
        return None

    # ------------------------------------------------------------------
    # joins
    # ------------------------------------------------------------------

    async def profiles(self, user_ids: Iterable[str | None]) -> dict[str, AuthorProfile]:
        wanted = sorted({user_id for user_id in user_ids if user_id})
        if not wanted:
            return {}
        rows = await self._store.select("profiles", [in_("user_id", wanted)])
        return {row["user_id"]: merge_row(AuthorProfile, row, "profiles") for row in rows}

    async def _user_votes(self, target_type: str, target_ids: Iterable[str]) -> dict[str, int]:
        wanted = list(target_ids)
        if not wanted:
            return {}
        rows = await self._store.select(
            "votes",
            [eq("user_id", self._user_id), eq("target_type", target_type), in_("target_id", wanted)],
        )
        return {row["target_id"]: int(row["value"]) for row in rows}

    async def _reactions(self, message_ids: Iterable[str]) -> dict[str, tuple[Reaction, ...]]:
        wanted = list(message_ids)
        if not wanted:
            return {}
        rows = await self._store.select("message_reactions", [in_("message_id", wanted)], OLDEST_FIRST)
        grouped: dict[str, list[Reaction]] = defaultdict(list)
        for row in rows:
            grouped[row["message_id"]].append(merge_row(Reaction, row, "message_reactions"))
        return {message_id: tuple(items) for message_id, items in grouped.items()}

    async def _pinned_ids(self, korum_id: str) -> set[str]:
        rows = await self._store.select("korum_pinned_messages", [eq("korum_id", korum_id)])
        return {row["message_id"] for row in rows}

    async def _memberships(self, korum_ids: Iterable[str] | None = None) -> dict[str, str]:
        filters: list[Any] = [eq("user_id", self._user_id)]
        if korum_ids is not None:
            filters.append(in_("korum_id", list(korum_ids)))
        rows = await self._store.select("korum_members", filters)
        return {row["korum_id"]: row["role"] for row in rows}

    async def _merge_posts(self, rows: list[dict[str, Any]]) -> tuple[Post, ...]:
        profiles, votes = await asyncio.gather(
            self.profiles(row.get("author_id") for row in rows),
            self._user_votes("post", [row["id"] for row in rows if "id" in row]),
        )
        return tuple(
            merge_row(
                Post,
                row,
                "posts",
                author=profiles.get(row.get("author_id")),
                user_vote=votes.get(row.get("id"), 0),
            )
            for row in rows
        )

    async def _merge_messages(
        self,
        rows: list[dict[str, Any]],
        pinned: set[str] | None = None,
    ) -> tuple[Message, ...]:
        profiles, reactions = await asyncio.gather(
            self.profiles(row.get("sender_id") for row in rows),
            self._reactions(row["id"] for row in rows if "id" in row),
        )
        pinned = pinned or set()
        return tuple(
            merge_row(
                Message,
                row,
                "messages",
                sender=profiles.get(row.get("sender_id")),
                reactions=reactions.get(row.get("id"), ()),
                is_pinned=row.get("id") in pinned,
            )
            for row in rows
        )

    # ------------------------------------------------------------------
    # posts and comments
    # ------------------------------------------------------------------

    async def posts(
        self,
        category: str | None = None,
        korum_id: str | None = None,
        *,
        force: bool = False,
    ) -> tuple[Post, ...]:
        """Posts newest first, optionally limited to a category or korum."""

        async def load() -> tuple[Post, ...]:
            filters: list[Any] = []
            if category:
                filters.append(eq("category", category))
            if korum_id:
                filters.append(eq("korum_id", korum_id))
            rows = await self._store.select("posts", filters, NEWEST_FIRST)
            return await self._merge_posts(rows)

        return await self.read(CacheKey.posts(category, korum_id), load, force=force)

    async def post(self, post_id: str, *, force: bool = False) -> Post:
        async def load() -> Post:
            rows = await self._store.select("posts", [eq("id", post_id)], limit=1)
            if not rows:
                raise NotFoundError("Post not found", collection="posts", entity_id=post_id)
            return (await self._merge_posts(rows))[0]

        return await self.read(CacheKey.post(post_id), load, force=force)

    async def search_posts(self, term: str, *, force: bool = False) -> tuple[Post, ...]:
        """Search posts; ``#tag`` matches the tag set, anything else title or content."""
        cleaned = term.strip()
        if not cleaned:
            raise ValidationError("Search term must not be empty", field_name="term")

        if cleaned.startswith("#"):
            tag = cleaned[1:].strip().lower()
            if not tag:
                raise ValidationError("Tag search needs a tag after '#'", field_name="term")
            predicate: Any = Filter("tags", "contains", (tag,))
        else:
            predicate = AnyOf((Filter("title", "ilike", cleaned), Filter("content", "ilike", cleaned)))

        async def load() -> tuple[Post, ...]:
            rows = await self._store.select("posts", [predicate], NEWEST_FIRST)
            return await self._merge_posts(rows)

        return await self.read(CacheKey.search(cleaned), load, force=force)

    async def comments(self, post_id: str, *, force: bool = False) -> CommentForest:
        """Comment forest of one post with authors and the user's votes."""

        async def load() -> CommentForest:
            rows = await self._store.select("comments", [eq("post_id", post_id)], OLDEST_FIRST)
            profiles, votes = await asyncio.gather(
                self.profiles(row.get("author_id") for row in rows),
                self._user_votes("comment", [row["id"] for row in rows if "id" in row]),
            )
            return build_comment_tree(
                merge_row(
                    Comment,
                    row,
                    "comments",
                    author=profiles.get(row.get("author_id")),
                    user_vote=votes.get(row.get("id"), 0),
                )
                for row in rows
            )

        return await self.read(CacheKey.comments(post_id), load, force=force)

    # ------------------------------------------------------------------
    # korums
    # ------------------------------------------------------------------

    async def korums(self, *, force: bool = False) -> tuple[Korum, ...]:
        async def load() -> tuple[Korum, ...]:
            rows, roles = await asyncio.gather(
                self._store.select(
                    "korums",
                    order=(Order("member_count", descending=True), Order("name")),
                ),
                self._memberships(),
            )
            return tuple(
                merge_row(
                    Korum,
                    row,
                    "korums",
                    is_member=row.get("id") in roles,
                    user_role=roles.get(row.get("id")),
                )
                for row in rows
            )

        return await self.read(CacheKey.korums(), load, force=force)

    async def korum(self, korum_id: str, *, force: bool = False) -> Korum:
        async def load() -> Korum:
            rows, roles = await asyncio.gather(
                self._store.select("korums", [eq("id", korum_id)], limit=1),
                self._memberships([korum_id]),
            )
            if not rows:
                raise NotFoundError("Korum not found", collection="korums", entity_id=korum_id)
            return merge_row(
                Korum,
                rows[0],
                "korums",
                is_member=korum_id in roles,
                user_role=roles.get(korum_id),
            )

        return await self.read(CacheKey.korum(korum_id), load, force=force)

    async def korum_members(self, korum_id: str, *, force: bool = False) -> tuple[KorumMembership, ...]:
        async def load() -> tuple[KorumMembership, ...]:
            rows = await self._store.select(
                "korum_members", [eq("korum_id", korum_id)], (Order("joined_at"),)
            )
            profiles = await self.profiles(row.get("user_id") for row in rows)
            return tuple(
                merge_row(KorumMembership, row, "korum_members", profile=profiles.get(row.get("user_id")))
                for row in rows
            )

        return await self.read(CacheKey.korum_members(korum_id), load, force=force)

    # ------------------------------------------------------------------
    # messaging
    # ------------------------------------------------------------------

    def _thread_filter(self, other_user_id: str) -> AnyOf:
        return AnyOf((
            AllOf((eq("sender_id", self._user_id), eq("receiver_id", other_user_id))),
            AllOf((eq("sender_id", other_user_id), eq("receiver_id", self._user_id))),
        ))

    async def _summarize(self, row: dict[str, Any], profiles: dict[str, AuthorProfile]) -> Conversation:
        other = row["participant_two"] if row.get("participant_one") == self._user_id else row.get("participant_one")
        latest, unread = await asyncio.gather(
            self._store.select("messages", [self._thread_filter(other)], NEWEST_FIRST, limit=1),
            self._store.select(
                "messages",
                [eq("sender_id", other), eq("receiver_id", self._user_id), eq("is_read", False)],
            ),
        )
        return merge_row(
            Conversation,
            row,
            "conversations",
            other_user=profiles.get(other),
            last_message=latest[0]["content"] if latest else None,
            unread_count=len(unread),
        )

    async def conversations(self, *, force: bool = False) -> tuple[Conversation, ...]:
        """Conversations of the current user, most recently active first."""

        async def load() -> tuple[Conversation, ...]:
            rows = await self._store.select(
                "conversations",
                [AnyOf((eq("participant_one", self._user_id), eq("participant_two", self._user_id)))],
                (Order("last_message_at", descending=True),),
            )
            others = [
                row.get("participant_two") if row.get("participant_one") == self._user_id else row.get("participant_one")
                for row in rows
            ]
            profiles = await self.profiles(others)
            return tuple(await asyncio.gather(*(self._summarize(row, profiles) for row in rows)))

        return await self.read(CacheKey.conversations(), load, force=force)

    async def messages(self, other_user_id: str, *, force: bool = False) -> tuple[Message, ...]:
        """Direct thread with ``other_user_id``; incoming messages are marked read."""
        if other_user_id == self._user_id:
            raise ValidationError("Cannot open a conversation with yourself", field_name="other_user_id")

        async def load() -> tuple[Message, ...]:
            rows = await self._store.select("messages", [self._thread_filter(other_user_id)], OLDEST_FIRST)
            incoming_unread = {
                row["id"] for row in rows
                if row.get("sender_id") == other_user_id and not row.get("is_read")
            }
            if incoming_unread:
                await self._store.rpc(
                    RPC_MARK_MESSAGES_READ,
                    {"sender_id": other_user_id, "receiver_id": self._user_id},
                )
                rows = [
                    {**row, "is_read": True} if row["id"] in incoming_unread else row
                    for row in rows
                ]
            return await self._merge_messages(rows)

        return await self.read(CacheKey.messages(other_user_id), load, force=force)

    async def korum_messages(self, korum_id: str, *, force: bool = False) -> tuple[Message, ...]:
        async def load() -> tuple[Message, ...]:
            rows, pinned = await asyncio.gather(
                self._store.select("messages", [eq("korum_id", korum_id)], OLDEST_FIRST),
                self._pinned_ids(korum_id),
            )
            return await self._merge_messages(rows, pinned)

        return await self.read(CacheKey.korum_messages(korum_id), load, force=force)

    async def pinned_messages(self, korum_id: str, *, force: bool = False) -> tuple[PinnedMessage, ...]:
        async def load() -> tuple[PinnedMessage, ...]:
            pins = await self._store.select(
                "korum_pinned_messages",
                [eq("korum_id", korum_id)],
                (Order("pinned_at", descending=True),),
            )
            if not pins:
                return ()
            ids = [pin["message_id"] for pin in pins]
            rows = await self._store.select("messages", [in_("id", ids)])
            messages = {message.id: message for message in await self._merge_messages(rows, set(ids))}
            return tuple(
                merge_row(PinnedMessage, pin, "korum_pinned_messages", message=messages.get(pin["message_id"]))
                for pin in pins
            )

        return await self.read(CacheKey.pinned_messages(korum_id), load, force=force)

    # ------------------------------------------------------------------
    # notifications
    # ------------------------------------------------------------------

    async def notifications(self, *, limit: int = 50, force: bool = False) -> tuple[Notification, ...]:
        async def load() -> tuple[Notification, ...]:
            rows = await self._store.select(
                "notifications", [eq("user_id", self._user_id)], NEWEST_FIRST, limit=limit
            )
            return tuple(merge_row(Notification, row, "notifications") for row in rows)

        return await self.read(CacheKey.notifications(), load, force=force)

    async def unread_notification_count(self) -> int:
        cached = self._cache.get(CacheKey.notifications())
        if cached is not None:
            return sum(1 for notification in cached if not notification.is_read)
        rows = await self._store.select(
            "notifications", [eq("user_id", self._user_id), eq("is_read", False)]
        )
        return len(rows)
