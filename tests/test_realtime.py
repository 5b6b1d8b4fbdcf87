import asyncio

import pytest

from korum_sync.core.errors import AuthorizationError
from korum_sync.db.time import utcnow
from korum_sync.schemas.events import ChangeEvent
from korum_sync.services.cache import CacheKey
from korum_sync.services.realtime import Scope, Subscription
from korum_sync.store.base import StoreChannel, eq


def post_event(row, operation="update", **changes):
    record = {**row, **changes}
    return ChangeEvent(
        operation=operation,
        table="posts",
        key={"id": row["id"]},
        record=record,
        version=record.get("version"),
        committed_at=utcnow(),
    )


async def wait_for(condition, attempts=200):
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition not reached")


def titles(client):
    return [post.title for post in client.cache.get(CacheKey.posts(), allow_stale=True)]


def test_scope_keys():
    assert Scope.posts().key == "posts"
    assert Scope.post_comments("p1").key == "comments:post_id=eq.p1"
    assert Scope.korum_messages("k1").row_filter == eq("korum_id", "k1")


def test_overflowing_subscriber_collapses_into_resync():
    subscription = Subscription(Scope.posts(), maxsize=2)
    for version in (1, 2, 3):
        subscription.deliver(ChangeEvent(operation="insert", table="posts", key={"id": "p"}, version=version))

    assert subscription.dropped == 2
    assert subscription._queue.qsize() == 1
    assert subscription._queue.get_nowait().operation == "resync"


@pytest.mark.asyncio
async def test_subscribers_share_one_channel(client, store):
    hub = client.hub
    async with hub.subscribe(Scope.posts()):
        async with hub.subscribe(Scope.posts()):
            assert hub.subscriber_count(Scope.posts()) == 2
            assert store.feed.open_count == 1
        assert hub.subscriber_count(Scope.posts()) == 1
        assert store.feed.open_count == 1

    assert hub.open_scopes == []
    assert store.feed.open_count == 0


@pytest.mark.asyncio
async def test_subscriber_released_when_block_raises(client, store):
    with pytest.raises(RuntimeError):
        async with client.hub.subscribe(Scope.korums()):
            raise RuntimeError("boom")

    assert client.hub.open_scopes == []
    assert store.feed.open_count == 0


@pytest.mark.asyncio
async def test_update_is_patched_in_place(client, store, seed):
    post = seed.post(title="Original title")
    await client.queries.posts()

    async with client.watch(Scope.posts()) as handle:
        await store.update("posts", [eq("id", post["id"])], {"title": "Edited title"})
        await wait_for(lambda: handle.handled >= 1)

    assert titles(client) == ["Edited title"]
    assert client.cache.authoritative_version(post["id"]) == 2


@pytest.mark.asyncio
async def test_stale_event_is_discarded(client, seed):
    post = seed.post(title="Current title", version=5)
    await client.queries.posts()

    await client.router.dispatch(post_event(post, title="Older title", version=4))

    assert titles(client) == ["Current title"]


@pytest.mark.asyncio
async def test_redelivered_event_is_applied_once(client, seed, mocker):
    first = seed.post(title="First post")
    await client.queries.posts()
    second = seed.post(title="Second post")
    refetch = mocker.spy(client.queries, "refetch")

    event = post_event(second, operation="insert")
    await client.router.dispatch(event)
    await client.router.dispatch(event)

    assert refetch.call_count == 1
    assert titles(client) == ["Second post", "First post"]
    assert first["id"] != second["id"]


@pytest.mark.asyncio
async def test_patch_waits_for_pending_mutation(client, seed):
    post = seed.post(title="Before")
    await client.queries.posts()
    client.cache.hold(post["id"])

    await client.router.dispatch(post_event(post, title="After", version=2))
    assert titles(client) == ["Before"]

    client.cache.release(post["id"])
    assert titles(client) == ["After"]


@pytest.mark.asyncio
async def test_category_change_triggers_refetch(client, store, seed):
    post = seed.post(category="question")
    await client.queries.posts("question")
    rows = await store.update("posts", [eq("id", post["id"])], {"category": "notice"})

    await client.router.dispatch(post_event(rows[0]))

    assert client.cache.get(CacheKey.posts("question")) == ()


@pytest.mark.asyncio
async def test_delete_removes_post_everywhere(client, seed):
    post = seed.post()
    await client.queries.posts()
    await client.queries.post(post["id"])
    await client.queries.comments(post["id"])

    await client.router.dispatch(post_event(post, operation="delete"))

    assert client.cache.get(CacheKey.posts()) == ()
    assert CacheKey.post(post["id"]) not in client.cache
    assert CacheKey.comments(post["id"]) not in client.cache


@pytest.mark.asyncio
async def test_reconnect_resynchronizes_cached_views(client, store, seed):
    seed.post(title="Seen before the drop")
    await client.queries.posts()

    async with client.watch(Scope.posts()) as handle:
        # Seeded rows bypass the change feed; only a resync can surface this one.
        seed.post(title="Missed by the feed")
        store.feed.disconnect_all()
        await wait_for(lambda: handle.handled >= 1)

    assert titles(client) == ["Missed by the feed", "Seen before the drop"]


@pytest.mark.asyncio
async def test_store_close_ends_watchers(client, store):
    async with client.hub.subscribe(Scope.posts()) as subscription:
        await store.close()
        events = [event async for event in subscription]

    assert events == []


class RevokedChannel(StoreChannel):
    """Channel whose credentials are rejected on the first read."""

    def __init__(self):
        super().__init__("posts")
        self.closed = False

    async def __aiter__(self):
        raise AuthorizationError("token expired")
        yield

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_channel_failure_ends_subscribers(client, store, mocker):
    channel = RevokedChannel()
    mocker.patch.object(store, "open_channel", return_value=channel)

    async with client.hub.subscribe(Scope.posts()) as subscription:
        events = await asyncio.wait_for(_collect(subscription), timeout=1)
        assert client.hub.open_scopes == []

    assert events == []
    assert channel.closed


@pytest.mark.asyncio
async def test_store_closed_channel_is_reopened_for_new_subscribers(client, store):
    async with client.hub.subscribe(Scope.posts()) as first:
        await store.feed.close_all()
        assert await asyncio.wait_for(_collect(first), timeout=1) == []
        assert client.hub.open_scopes == []

        async with client.hub.subscribe(Scope.posts()) as second:
            assert store.feed.open_count == 1
            await store.insert(
                "posts",
                {
                    "author_id": "user-b",
                    "title": "After the close",
                    "content": "Delivered on the reopened channel.",
                    "category": "question",
                },
            )
            event = await asyncio.wait_for(second.__anext__(), timeout=1)

    assert event.operation == "insert"
    assert event.record["title"] == "After the close"


async def _collect(subscription):
    return [event async for event in subscription]
