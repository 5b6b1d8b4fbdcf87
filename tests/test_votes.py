import asyncio

import pytest

from korum_sync.core.errors import MutationFailedError, TransientStoreError, ValidationError
from korum_sync.services.cache import CacheKey
from korum_sync.services.votes import toggled_vote, vote_delta
from korum_sync.store.base import eq

USER_A = "user-a"


def shown(client, post_id):
    for post in client.cache.get(CacheKey.posts(), allow_stale=True):
        if post.id == post_id:
            return post.upvotes, post.downvotes, post.user_vote
    return None


def seed_tally(seed, post_id, up, down):
    for index in range(up):
        seed.vote(f"voter-up-{index}", post_id, 1)
    for index in range(down):
        seed.vote(f"voter-down-{index}", post_id, -1)


def gate_rpc(mocker, store):
    release = asyncio.Event()
    original = store.rpc

    async def gated(name, params):
        await release.wait()
        return await original(name, params)

    mocker.patch.object(store, "rpc", side_effect=gated)
    return release


def test_toggle_rule():
    assert toggled_vote(0, 1) == 1
    assert toggled_vote(1, 1) == 0
    assert toggled_vote(1, -1) == -1
    assert toggled_vote(-1, 0) == 0


def test_vote_delta_never_goes_negative():
    assert vote_delta(3, 1, 0, 1) == (4, 1)
    assert vote_delta(3, 1, 1, -1) == (2, 2)
    assert vote_delta(0, 0, 1, 0) == (0, 0)


@pytest.mark.asyncio
async def test_optimistic_vote_settles_on_server_tally(client, store, seed, mocker):
    post = seed.post(upvotes=3, downvotes=1)
    seed_tally(seed, post["id"], 3, 1)
    await client.queries.posts()
    release = gate_rpc(mocker, store)

    task = asyncio.create_task(client.cast_vote(post["id"], "post", 1))
    await asyncio.sleep(0)
    assert shown(client, post["id"]) == (4, 1, 1)

    # Someone else upvotes while ours is in flight.
    seed.vote("late-voter", post["id"], 1)
    release.set()
    tally = await task

    assert (tally.upvotes, tally.downvotes, tally.user_vote) == (5, 1, 1)
    assert shown(client, post["id"]) == (5, 1, 1)
    assert client.votes.pending_votes(post["id"], "post") == 0


@pytest.mark.asyncio
async def test_failed_vote_restores_previous_tally(client, store, seed, mocker):
    post = seed.post(upvotes=3, downvotes=1)
    seed_tally(seed, post["id"], 3, 1)
    await client.queries.posts()
    mocker.patch.object(store, "rpc", side_effect=TransientStoreError("timed out"))

    with pytest.raises(MutationFailedError) as exc_info:
        await client.cast_vote(post["id"], "post", 1)

    assert exc_info.value.recoverable is True
    assert shown(client, post["id"]) == (3, 1, 0)
    assert not client.cache.is_held(post["id"])


@pytest.mark.asyncio
async def test_repeating_a_vote_retracts_it(client, seed):
    post = seed.post(upvotes=1, downvotes=0)
    seed.vote(USER_A, post["id"], 1)
    await client.queries.posts()
    assert shown(client, post["id"]) == (1, 0, 1)

    tally = await client.cast_vote(post["id"], "post", 1)

    assert (tally.upvotes, tally.user_vote) == (0, 0)
    assert shown(client, post["id"]) == (0, 0, 0)


@pytest.mark.asyncio
async def test_rapid_votes_end_in_the_last_state(client, store, seed):
    post = seed.post(upvotes=3, downvotes=1)
    seed_tally(seed, post["id"], 3, 1)
    await client.queries.posts()

    await asyncio.gather(
        client.cast_vote(post["id"], "post", 1),
        client.cast_vote(post["id"], "post", -1),
    )

    rows = await store.select("votes", [eq("user_id", USER_A), eq("target_id", post["id"])])
    assert [row["value"] for row in rows] == [-1]
    assert shown(client, post["id"]) == (3, 2, -1)


@pytest.mark.asyncio
async def test_pending_vote_survives_a_refetch(client, store, seed, mocker):
    post = seed.post(upvotes=3, downvotes=1)
    seed_tally(seed, post["id"], 3, 1)
    await client.queries.posts()
    release = gate_rpc(mocker, store)

    task = asyncio.create_task(client.cast_vote(post["id"], "post", 1))
    await asyncio.sleep(0)
    await client.queries.refetch(CacheKey.posts())
    assert shown(client, post["id"]) == (4, 1, 1)

    release.set()
    await task
    assert shown(client, post["id"]) == (4, 1, 1)


@pytest.mark.asyncio
async def test_vote_on_deleted_post_rolls_back_and_refetches(client, store, seed):
    post = seed.post(upvotes=0, downvotes=0)
    await client.queries.posts()
    await store.delete("posts", [eq("id", post["id"])])

    with pytest.raises(MutationFailedError) as exc_info:
        await client.cast_vote(post["id"], "post", 1)

    assert exc_info.value.cause.code == "CONFLICT"
    assert client.cache.get(CacheKey.posts()) == ()


@pytest.mark.asyncio
async def test_vote_on_uncached_comment_uses_stored_vote(client, seed):
    post = seed.post()
    comment = seed.comment(post["id"])
    seed.vote(USER_A, comment["id"], -1, target_type="comment")

    tally = await client.cast_vote(comment["id"], "comment", -1)

    assert (tally.downvotes, tally.user_vote) == (0, 0)


@pytest.mark.asyncio
async def test_invalid_vote_is_rejected_before_sending(client, store, mocker):
    rpc = mocker.patch.object(store, "rpc")

    with pytest.raises(ValidationError):
        await client.cast_vote("p1", "post", 2)
    with pytest.raises(ValidationError):
        await client.cast_vote("p1", "korum", 1)

    rpc.assert_not_called()


@pytest.mark.asyncio
async def test_failed_second_vote_restores_first_confirmation(client, store, seed, mocker):
    post = seed.post(upvotes=3, downvotes=1)
    seed_tally(seed, post["id"], 3, 1)
    await client.queries.posts()
    original = store.rpc

    async def downvote_fails(name, params):
        if params["value"] == -1:
            raise TransientStoreError("timed out")
        return await original(name, params)

    mocker.patch.object(store, "rpc", side_effect=downvote_fails)

    first, second = await asyncio.gather(
        client.cast_vote(post["id"], "post", 1),
        client.cast_vote(post["id"], "post", -1),
        return_exceptions=True,
    )

    assert (first.upvotes, first.downvotes, first.user_vote) == (4, 1, 1)
    assert isinstance(second, MutationFailedError)
    assert shown(client, post["id"]) == (4, 1, 1)
    assert client.votes._targets == {}


@pytest.mark.asyncio
async def test_refetch_read_before_confirmation_keeps_confirmed_tally(client, store, seed, mocker):
    post = seed.post(upvotes=3, downvotes=1)
    seed_tally(seed, post["id"], 3, 1)
    await client.queries.posts()
    original = store.select
    read = asyncio.Event()
    release = asyncio.Event()

    async def slow_posts(collection, *args, **kwargs):
        rows = await original(collection, *args, **kwargs)
        if collection == "posts" and not release.is_set():
            read.set()
            await release.wait()
        return rows

    mocker.patch.object(store, "select", side_effect=slow_posts)
    refetch = asyncio.create_task(client.queries.refetch(CacheKey.posts()))
    await read.wait()

    tally = await client.cast_vote(post["id"], "post", 1)
    release.set()
    await refetch

    assert (tally.upvotes, tally.downvotes, tally.user_vote) == (4, 1, 1)
    assert shown(client, post["id"]) == (4, 1, 1)
    assert client.cache.authoritative_version(post["id"]) == tally.version
