import asyncio

import pytest

from korum_sync.core.errors import AuthorizationError, MutationFailedError, TransientStoreError, ValidationError
from korum_sync.schemas.message import Reaction
from korum_sync.services.cache import CacheKey
from korum_sync.services.messaging import toggled_reactions

USER_A = "user-a"


def test_toggled_reactions_adds_then_removes():
    once = toggled_reactions((), "🔥", USER_A)
    twice = toggled_reactions(once, "🔥", USER_A)

    assert once == (Reaction(emoji="🔥", user_id=USER_A),)
    assert twice == ()


@pytest.mark.asyncio
async def test_first_message_creates_conversation(client, store, seed):
    await client.queries.conversations()

    message = await client.send_direct_message("user-b", "  Are you coming to the lab?  ")

    assert message.content == "Are you coming to the lab?"
    assert message.sender.user_id == USER_A
    assert len(await store.select("conversations")) == 1
    assert client.cache.get(CacheKey.conversations()) is None


@pytest.mark.asyncio
async def test_message_appends_to_open_thread(client, seed):
    seed.message("user-b", "ping", receiver_id=USER_A)
    await client.queries.messages("user-b")

    sent = await client.send_direct_message("user-b", "pong")

    thread = client.cache.get(CacheKey.messages("user-b"))
    assert [m.content for m in thread] == ["ping", "pong"]
    assert thread[-1].id == sent.id


@pytest.mark.asyncio
async def test_empty_message_is_rejected(client):
    with pytest.raises(ValidationError):
        await client.send_direct_message("user-b", "   ")


@pytest.mark.asyncio
async def test_reply_outside_conversation_is_rejected(client, seed):
    elsewhere = seed.message("user-b", "private", receiver_id="user-c")

    with pytest.raises(ValidationError):
        await client.send_direct_message("user-b", "replying", reply_to_id=elsewhere["id"])


@pytest.mark.asyncio
async def test_non_member_cannot_post_to_korum(client, store, seed, mocker):
    korum = seed.korum(members={"user-b": "admin"})
    insert = mocker.spy(store, "insert")

    with pytest.raises(AuthorizationError):
        await client.send_korum_message(korum["id"], "hello all")

    insert.assert_not_called()


@pytest.mark.asyncio
async def test_admin_only_korum_blocks_members(client, seed):
    korum = seed.korum(members={USER_A: "member"}, admin_only_posting=True)

    with pytest.raises(AuthorizationError):
        await client.send_korum_message(korum["id"], "announcement")


@pytest.mark.asyncio
async def test_member_message_joins_korum_chat(client, seed):
    korum = seed.korum(members={USER_A: "member"})
    await client.queries.korum_messages(korum["id"])

    sent = await client.send_korum_message(korum["id"], "hello all")

    assert client.cache.get(CacheKey.korum_messages(korum["id"])) == (sent,)


@pytest.mark.asyncio
async def test_reaction_counts_follow_server_list(client, seed):
    korum = seed.korum(members={USER_A: "member", "user-b": "member"})
    message = seed.message("user-b", "ship it", korum_id=korum["id"])
    await client.queries.korum_messages(korum["id"])

    reactions = await client.messaging.toggle_reaction(message["id"], "🚀")

    cached = client.cache.get(CacheKey.korum_messages(korum["id"]))[0]
    assert reactions == (Reaction(emoji="🚀", user_id=USER_A),)
    assert cached.reaction_counts == {"🚀": 1}


@pytest.mark.asyncio
async def test_failed_reaction_is_rolled_back(client, store, seed, mocker):
    korum = seed.korum(members={USER_A: "member"})
    message = seed.message(USER_A, "hi", korum_id=korum["id"])
    await client.queries.korum_messages(korum["id"])
    mocker.patch.object(store, "rpc", side_effect=TransientStoreError("offline"))

    with pytest.raises(MutationFailedError):
        await client.messaging.toggle_reaction(message["id"], "👍")

    assert client.cache.get(CacheKey.korum_messages(korum["id"]))[0].reactions == ()


@pytest.mark.asyncio
async def test_pinning_requires_moderator(client, seed):
    korum = seed.korum(members={USER_A: "member"})
    message = seed.message("user-b", "read the rules", korum_id=korum["id"])

    with pytest.raises(AuthorizationError):
        await client.messaging.pin_message(korum["id"], message["id"])


@pytest.mark.asyncio
async def test_pin_and_unpin(client, seed):
    korum = seed.korum(members={USER_A: "moderator"})
    message = seed.message("user-b", "read the rules", korum_id=korum["id"])
    await client.queries.korum_messages(korum["id"])

    pinned = await client.messaging.pin_message(korum["id"], message["id"])
    assert pinned.message.is_pinned
    assert client.cache.get(CacheKey.korum_messages(korum["id"]))[0].is_pinned
    assert [pin.message_id for pin in await client.queries.pinned_messages(korum["id"])] == [message["id"]]

    assert await client.messaging.unpin_message(korum["id"], message["id"]) is True
    assert not client.cache.get(CacheKey.korum_messages(korum["id"]))[0].is_pinned
    assert await client.queries.pinned_messages(korum["id"]) == ()


@pytest.mark.asyncio
async def test_mark_conversation_read(client, seed):
    seed.conversation(USER_A, "user-b")
    seed.message("user-b", "one", receiver_id=USER_A)
    seed.message("user-b", "two", receiver_id=USER_A)
    await client.queries.conversations()

    updated = await client.messaging.mark_conversation_read("user-b")

    assert updated == 2
    assert client.cache.get(CacheKey.conversations())[0].unread_count == 0


@pytest.mark.asyncio
async def test_failed_toggle_keeps_a_later_toggle(client, store, seed, mocker):
    korum = seed.korum(members={USER_A: "member"})
    message = seed.message(USER_A, "hi", korum_id=korum["id"])
    await client.queries.korum_messages(korum["id"])
    original = store.rpc
    fail_first = asyncio.Event()
    finish_second = asyncio.Event()

    async def gated(name, params):
        if params["emoji"] == "👍":
            await fail_first.wait()
            raise TransientStoreError("offline")
        await finish_second.wait()
        return await original(name, params)

    mocker.patch.object(store, "rpc", side_effect=gated)
    first = asyncio.create_task(client.messaging.toggle_reaction(message["id"], "👍"))
    second = asyncio.create_task(client.messaging.toggle_reaction(message["id"], "🎉"))
    await asyncio.sleep(0)

    fail_first.set()
    with pytest.raises(MutationFailedError):
        await first
    for _ in range(5):
        await asyncio.sleep(0)
    party = (Reaction(emoji="🎉", user_id=USER_A),)
    assert client.cache.get(CacheKey.korum_messages(korum["id"]))[0].reactions == party

    finish_second.set()
    assert await second == party
    assert client.cache.get(CacheKey.korum_messages(korum["id"]))[0].reactions == party
    assert len(client.messaging._locks) == 0
