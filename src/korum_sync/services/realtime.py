"""Realtime channels and the router that folds change events into the cache.

``ChannelHub`` owns the physical store channels. Logical subscribers share one
channel per scope key; the channel is closed when the last subscriber leaves.
A dropped channel is reopened with exponential backoff, after which every
subscriber receives a synthetic ``resync`` event.

``RealtimeRouter`` consumes subscriptions and decides, per event, whether to
patch cached snapshots in place, re-fetch the affected keys, or drop the
event as a duplicate or as older than what the cache already holds.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from korum_sync.core.errors import ChannelDisruptedError, SchemaMismatchError, SyncError
from korum_sync.db.time import utcnow
from korum_sync.schemas.comment import Comment
from korum_sync.schemas.events import ChangeEvent
from korum_sync.schemas.korum import Korum
from korum_sync.schemas.message import Message
from korum_sync.schemas.notification import Notification
from korum_sync.schemas.post import Post
from korum_sync.store.base import Filter, StoreChannel, StoreClient, eq

from .cache import CacheKey, EntityCache
from .merge import merge_row
from .queries import QueryExecutor
from .views import (
    MESSAGE_VIEWS,
    TABLE_VIEWS,
    find_entity,
    keys_containing,
    patch_everywhere,
    remove_entity,
)

# Configure logger for this module
logger = logging.getLogger(__name__)

_END = object()

ENTITY_SCHEMAS: dict[str, type[BaseModel]] = {
    "posts": Post,
    "comments": Comment,
    "korums": Korum,
    "messages": Message,
    "notifications": Notification,
}

# Columns that decide which list an entity belongs to; a change means re-fetch.
SCOPE_COLUMNS: dict[str, tuple[str, ...]] = {
    "posts": ("category", "korum_id"),
    "comments": ("post_id", "parent_id"),
    "messages": ("sender_id", "receiver_id", "korum_id"),
    "notifications": ("user_id",),
}

# Cached collections refreshed after a channel of the given table reconnects.
RESYNC_VIEWS: dict[str, tuple[str, ...]] = {
    **TABLE_VIEWS,
    "korum_members": ("korum-members", "korums", "korum"),
    "message_reactions": MESSAGE_VIEWS + ("pinned-messages",),
    "korum_pinned_messages": ("pinned-messages", "korum-messages"),
}


@dataclass(frozen=True)
class Scope:
    """Table plus optional equality filter identifying one physical channel."""

    table: str
    column: str | None = None
    value: Any = None

    @property
    def key(self) -> str:
        if self.column is None:
            return self.table
        return f"{self.table}:{self.column}=eq.{self.value}"

    @property
    def row_filter(self) -> Filter | None:
        return eq(self.column, self.value) if self.column is not None else None

    @classmethod
    def posts(cls) -> Scope:
        return cls("posts")

    @classmethod
    def post(cls, post_id: str) -> Scope:
        return cls("posts", "id", post_id)

    @classmethod
    def post_comments(cls, post_id: str) -> Scope:
        return cls("comments", "post_id", post_id)

    @classmethod
    def korums(cls) -> Scope:
        return cls("korums")

    @classmethod
    def korum_members(cls, korum_id: str) -> Scope:
        return cls("korum_members", "korum_id", korum_id)

    @classmethod
    def direct_messages(cls, user_id: str) -> Scope:
        return cls("messages", "receiver_id", user_id)

    @classmethod
    def korum_messages(cls, korum_id: str) -> Scope:
        return cls("messages", "korum_id", korum_id)

    @classmethod
    def korum_reactions(cls, korum_id: str) -> Scope:
        return cls("message_reactions", "korum_id", korum_id)

    @classmethod
    def korum_pins(cls, korum_id: str) -> Scope:
        return cls("korum_pinned_messages", "korum_id", korum_id)

    @classmethod
    def notifications(cls, user_id: str) -> Scope:
        return cls("notifications", "user_id", user_id)


def resync_event(table: str) -> ChangeEvent:
    return ChangeEvent(operation="resync", table=table, committed_at=utcnow())


class Subscription:
    """One logical subscriber's bounded event queue, iterated asynchronously."""

    def __init__(self, scope: Scope, maxsize: int) -> None:
        self.scope = scope
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def deliver(self, event: ChangeEvent) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            # Too far behind to catch up event by event; refresh instead.
            self.dropped += self._drain()
            self._queue.put_nowait(resync_event(self.scope.table))
            logger.warning("Subscriber on %s overflowed; collapsing backlog into a resync", self.scope.key)

    def _drain(self) -> int:
        drained = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            drained += 1
        return drained

    def end(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        return item


class _SharedChannel:
    """Physical channel for one scope key and its logical subscribers."""

    def __init__(self, hub: ChannelHub, scope: Scope, channel: StoreChannel) -> None:
        self.hub = hub
        self.scope = scope
        self.channel: StoreChannel | None = channel
        self.subscribers: list[Subscription] = []
        self.task: asyncio.Task[None] | None = None
        self.reconnects = 0

    def broadcast(self, event: ChangeEvent) -> None:
        for subscriber in list(self.subscribers):
            subscriber.deliver(event)

    async def pump(self) -> None:
        delay = self.hub.reconnect_initial
        try:
            while True:
                if self.channel is None:
                    try:
                        self.channel = await self.hub.store.open_channel(self.scope.table, self.scope.row_filter)
                    except SyncError as exc:
                        logger.warning("Reopening channel %s failed: %s; retrying in %.2fs", self.scope.key, exc.message, delay)
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, self.hub.reconnect_max)
                        continue
                    self.reconnects += 1
                    logger.info("Channel %s reconnected", self.scope.key)
                    self.broadcast(resync_event(self.scope.table))
                try:
                    async for event in self.channel:
                        delay = self.hub.reconnect_initial
                        self.broadcast(event)
                    logger.debug("Channel %s closed by the store", self.scope.key)
                    return
                except ChannelDisruptedError as exc:
                    logger.warning("Channel %s disrupted: %s; reconnecting in %.2fs", self.scope.key, exc.message, delay)
                    self.channel = None
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, self.hub.reconnect_max)
        except SyncError as exc:
            logger.error("Channel %s failed: %s; ending its subscribers", self.scope.key, exc.message, exc_info=True)
            if self.channel is not None:
                await self.channel.close()
                self.channel = None
        finally:
            # A channel that stops pumping must not be handed to new subscribers.
            self.hub._forget(self)
            for subscriber in self.subscribers:
                subscriber.end()

    async def shutdown(self) -> None:
        if self.task is not None:
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)
        if self.channel is not None:
            await self.channel.close()
            self.channel = None
        for subscriber in self.subscribers:
            subscriber.end()


class ChannelHub:
    """Reference-counted sharing of store channels across subscribers."""

    def __init__(
        self,
        store: StoreClient,
        *,
        queue_size: int = 256,
        reconnect_initial: float = 0.5,
        reconnect_max: float = 30.0,
    ) -> None:
        self.store = store
        self.queue_size = queue_size
        self.reconnect_initial = reconnect_initial
        self.reconnect_max = reconnect_max
        self._channels: dict[str, _SharedChannel] = {}
        self._lock = asyncio.Lock()

    def subscriber_count(self, scope: Scope) -> int:
        shared = self._channels.get(scope.key)
        return len(shared.subscribers) if shared else 0

    @property
    def open_scopes(self) -> list[str]:
        return list(self._channels)

    @asynccontextmanager
    async def subscribe(self, scope: Scope) -> AsyncIterator[Subscription]:
        """Attach a subscriber to ``scope``; released on every exit path."""
        subscription = Subscription(scope, self.queue_size)
        await self._acquire(scope, subscription)
        try:
            yield subscription
        finally:
            await self._release(scope, subscription)

    async def _acquire(self, scope: Scope, subscription: Subscription) -> None:
        async with self._lock:
            shared = self._channels.get(scope.key)
            if shared is None:
                channel = await self.store.open_channel(scope.table, scope.row_filter)
                shared = _SharedChannel(self, scope, channel)
                shared.task = asyncio.create_task(shared.pump())
                self._channels[scope.key] = shared
                logger.debug("Opened channel %s", scope.key)
            shared.subscribers.append(subscription)

    async def _release(self, scope: Scope, subscription: Subscription) -> None:
        async with self._lock:
            subscription.end()
            shared = self._channels.get(scope.key)
            if shared is None:
                return
            if subscription in shared.subscribers:
                shared.subscribers.remove(subscription)
            if not shared.subscribers:
                del self._channels[scope.key]
                await shared.shutdown()
                logger.debug("Closed channel %s", scope.key)

    def _forget(self, shared: _SharedChannel) -> None:
        if self._channels.get(shared.scope.key) is shared:
            del self._channels[shared.scope.key]
            logger.debug("Dropped finished channel %s", shared.scope.key)

    async def close(self) -> None:
        async with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
        for shared in channels:
            await shared.shutdown()


@dataclass
class WatchHandle:
    """What a ``watch`` block hands back to the caller."""

    scope: Scope
    keys: tuple[CacheKey, ...]
    handled: int = 0
    failed: int = 0


class RealtimeRouter:
    """Turns change events into cache patches, removals and re-fetches."""

    def __init__(
        self,
        cache: EntityCache,
        executor: QueryExecutor,
        hub: ChannelHub,
        *,
        dedupe_window: int = 1024,
    ) -> None:
        self._cache = cache
        self._executor = executor
        self._hub = hub
        self._user_id = executor.user_id
        self._seen: OrderedDict[tuple[Any, ...], None] = OrderedDict()
        self._dedupe_window = dedupe_window

    @asynccontextmanager
    async def watch(self, scope: Scope, keys: Iterable[CacheKey] = ()) -> AsyncIterator[WatchHandle]:
        """Keep the cache current for ``scope`` while the block is active.

        ``keys`` are re-fetched, along with every cached view of the scope's
        table, whenever the channel has to be re-established.
        """
        handle = WatchHandle(scope=scope, keys=tuple(keys))
        async with self._hub.subscribe(scope) as subscription:
            task = asyncio.create_task(self._consume(subscription, handle))
            try:
                yield handle
            finally:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def _consume(self, subscription: Subscription, handle: WatchHandle) -> None:
        async for event in subscription:
            try:
                await self.dispatch(event, handle.keys)
            except SyncError as exc:
                handle.failed += 1
                logger.warning("Refreshing after %s %s failed: %s", event.operation, event.table, exc.message)
            except (KeyError, TypeError, ValueError):
                handle.failed += 1
                logger.error("Failed to process %s event on %s", event.operation, event.table, exc_info=True)
            finally:
                handle.handled += 1

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------

    def _is_duplicate(self, event: ChangeEvent) -> bool:
        fingerprint = (
            event.table,
            event.operation,
            tuple(sorted(event.key.items())),
            event.version if event.version is not None else event.committed_at,
        )
        if fingerprint in self._seen:
            return True
        self._seen[fingerprint] = None
        if len(self._seen) > self._dedupe_window:
            self._seen.popitem(last=False)
        return False

    async def dispatch(self, event: ChangeEvent, keys: Iterable[CacheKey] = ()) -> None:
        """Apply one change event to the cache."""
        if event.operation == "resync":
            await self._resync(event.table, keys)
            return
        if self._is_duplicate(event):
            logger.debug("Dropping re-delivered %s on %s %s", event.operation, event.table, event.key)
            return

        if event.table in ENTITY_SCHEMAS:
            await self._entity_event(event)
        elif event.table == "conversations":
            await self._refetch([CacheKey.conversations()])
        elif event.table == "korum_members":
            await self._membership_event(event)
        elif event.table == "message_reactions":
            await self._reaction_event(event)
        elif event.table == "korum_pinned_messages":
            await self._pin_event(event)
        else:
            logger.debug("Ignoring event for unwatched table %s", event.table)

    async def _refetch(self, keys: Iterable[CacheKey]) -> None:
        for key in dict.fromkeys(keys):
            if key in self._cache:
                await self._executor.refetch(key)

    async def _resync(self, table: str, keys: Iterable[CacheKey]) -> None:
        collections = RESYNC_VIEWS.get(table, ())
        logger.info("Resynchronizing %s after reconnect", table)
        await self._refetch([*keys, *self._cache.keys(*collections)])

    # ------------------------------------------------------------------
    # entity tables
    # ------------------------------------------------------------------

    async def _entity_event(self, event: ChangeEvent) -> None:
        table = event.table
        entity_id = event.value("id")
        views = TABLE_VIEWS[table]

        if event.operation == "delete":
            self._remove(table, entity_id)
            return
        if self._cache.is_stale_version(entity_id, event.version):
            logger.debug("Discarding stale %s %s v%s", table, entity_id, event.version)
            return

        holding = keys_containing(self._cache, views, entity_id)
        if event.operation == "update":
            if not holding:
                return
            if self._patchable(event, holding):
                if self._cache.is_held(entity_id):
                    logger.debug("Deferring patch of %s %s behind a pending mutation", table, entity_id)
                    self._cache.defer(entity_id, event.version, lambda: self._apply_deferred(event))
                    return
                try:
                    self._apply_patch(event)
                except SchemaMismatchError:
                    logger.debug("Patch of %s %s did not validate; re-fetching", table, entity_id)
                    await self._refetch(holding)
                else:
                    await self._refetch(self._side_effect_keys(event))
                return
            await self._refetch(holding)
            return

        await self._refetch([*holding, *self._list_keys(event)])

    def _patchable(self, event: ChangeEvent, holding: list[CacheKey]) -> bool:
        if event.record is None:
            return False
        schema = ENTITY_SCHEMAS[event.table]
        required = [name for name, info in schema.model_fields.items() if info.is_required()]
        if any(name not in event.record for name in required):
            return False
        entity_id = event.value("id")
        for key in holding:
            current = find_entity(self._cache.get(key, allow_stale=True), entity_id)
            if current is None:
                continue
            for column in SCOPE_COLUMNS.get(event.table, ()):
                if column in event.record and event.record[column] != getattr(current, column):
                    return False
        return True

    def _apply_patch(self, event: ChangeEvent) -> None:
        schema = ENTITY_SCHEMAS[event.table]
        entity_id = event.value("id")
        fields = {name: value for name, value in (event.record or {}).items() if name in schema.model_fields}

        def updater(entity: Any) -> Any:
            return merge_row(schema, {**entity.model_dump(), **fields}, event.table)

        touched = patch_everywhere(self._cache, TABLE_VIEWS[event.table], entity_id, updater)
        self._cache.mark_authoritative(entity_id, event.version)
        logger.debug("Patched %s %s in %d views", event.table, entity_id, len(touched))

    def _apply_deferred(self, event: ChangeEvent) -> None:
        try:
            self._apply_patch(event)
        except SchemaMismatchError:
            entity_id = event.value("id")
            for key in keys_containing(self._cache, TABLE_VIEWS[event.table], entity_id):
                self._cache.invalidate(key)

    def _remove(self, table: str, entity_id: Any) -> None:
        for key in self._cache.keys(*TABLE_VIEWS[table]):
            value = self._cache.get(key, allow_stale=True)
            if value is None or find_entity(value, entity_id) is None:
                continue
            if isinstance(value, tuple) or key.collection == "comments":
                self._cache.patch(key, lambda current: remove_entity(current, entity_id))
            else:
                self._cache.remove(key)
        if table == "posts":
            self._cache.remove(CacheKey.comments(entity_id))
        elif table == "messages":
            for key in self._cache.keys("pinned-messages"):
                self._cache.invalidate(key)
        logger.debug("Removed %s %s from cached views", table, entity_id)

    def _other_party(self, event: ChangeEvent) -> str | None:
        sender = event.value("sender_id")
        receiver = event.value("receiver_id")
        if receiver is None:
            return None
        return sender if receiver == self._user_id else receiver

    def _side_effect_keys(self, event: ChangeEvent) -> list[CacheKey]:
        # Read receipts change the unread counters shown in the conversation list.
        if event.table == "messages" and event.value("receiver_id") is not None:
            return [CacheKey.conversations()]
        return []

    def _list_keys(self, event: ChangeEvent) -> list[CacheKey]:
        table = event.table
        if table == "posts":
            category = event.value("category")
            korum_id = event.value("korum_id")
            for key in self._cache.keys("search"):
                self._cache.invalidate(key)
            return [
                key for key in self._cache.keys("posts")
                if (key.params[0] is None or key.params[0] == category)
                and (key.params[1] is None or key.params[1] == korum_id)
            ]
        if table == "comments":
            return [CacheKey.comments(event.value("post_id"))]
        if table == "korums":
            return [CacheKey.korums()]
        if table == "messages":
            korum_id = event.value("korum_id")
            if korum_id is not None:
                return [CacheKey.korum_messages(korum_id)]
            other = self._other_party(event)
            return [CacheKey.messages(other), CacheKey.conversations()] if other else []
        if table == "notifications":
            if event.value("user_id") != self._user_id:
                return []
            return [CacheKey.notifications()]
        return []

    # ------------------------------------------------------------------
    # side tables
    # ------------------------------------------------------------------

    async def _membership_event(self, event: ChangeEvent) -> None:
        korum_id = event.value("korum_id")
        keys = [CacheKey.korum_members(korum_id)]
        if event.value("user_id") == self._user_id:
            keys += [CacheKey.korums(), CacheKey.korum(korum_id)]
        await self._refetch(keys)

    async def _reaction_event(self, event: ChangeEvent) -> None:
        # Aggregates come from the full reaction list, so re-read the message views.
        message_id = event.value("message_id")
        keys = keys_containing(self._cache, MESSAGE_VIEWS, message_id)
        korum_id = event.value("korum_id")
        if korum_id is not None:
            self._cache.invalidate(CacheKey.pinned_messages(korum_id))
        await self._refetch(keys)

    async def _pin_event(self, event: ChangeEvent) -> None:
        korum_id = event.value("korum_id")
        message_id = event.value("message_id")
        pinned = event.operation != "delete"
        patch_everywhere(
            self._cache,
            ("korum-messages",),
            message_id,
            lambda message: message if message.is_pinned == pinned else message.model_copy(update={"is_pinned": pinned}),
        )
        await self._refetch([CacheKey.pinned_messages(korum_id)])
