import asyncio
from unittest.mock import AsyncMock

import pytest

from korum_sync.core.errors import ValidationError
from korum_sync.services.cache import EntityCache
from korum_sync.services.conversations import ConversationResolver, canonical_pair
from korum_sync.store.base import RPC_FIND_OR_CREATE_CONVERSATION, StoreClient


def test_canonical_pair_ignores_argument_order():
    assert canonical_pair("user-b", "user-a") == ("user-a", "user-b")
    assert canonical_pair("user-a", "user-b") == ("user-a", "user-b")


@pytest.mark.parametrize("pair", [("user-a", "user-a"), ("", "user-b"), ("user-a", "")])
def test_canonical_pair_rejects_degenerate_pairs(pair):
    with pytest.raises(ValidationError):
        canonical_pair(*pair)


@pytest.mark.asyncio
async def test_either_order_resolves_to_one_conversation(store):
    resolver = ConversationResolver(EntityCache(), store)

    first = await resolver.resolve_conversation("user-a", "user-b")
    second = await resolver.resolve_conversation("user-b", "user-a")

    assert first.id == second.id
    assert first.pair == ("user-a", "user-b")
    assert len(await store.select("conversations")) == 1


@pytest.mark.asyncio
async def test_concurrent_resolution_creates_one_row(store, mocker):
    resolver = ConversationResolver(EntityCache(), store)
    rpc = mocker.spy(store, "rpc")

    results = await asyncio.gather(
        resolver.resolve_conversation("user-a", "user-b"),
        resolver.resolve_conversation("user-b", "user-a"),
        resolver.resolve_conversation("user-a", "user-b"),
    )

    assert len({conversation.id for conversation in results}) == 1
    assert rpc.call_count == 1
    assert rpc.call_args.args[0] == RPC_FIND_OR_CREATE_CONVERSATION


@pytest.mark.asyncio
async def test_separate_clients_share_the_stored_conversation(store):
    one = ConversationResolver(EntityCache(), store)
    two = ConversationResolver(EntityCache(), store)

    first, second = await asyncio.gather(
        one.resolve_conversation("user-a", "user-b"),
        two.resolve_conversation("user-b", "user-a"),
    )

    assert first.id == second.id
    assert len(await store.select("conversations")) == 1


@pytest.mark.asyncio
async def test_existing_conversation_is_reused(store, seed):
    existing = seed.conversation("user-c", "user-a")
    resolver = ConversationResolver(EntityCache(), store)

    conversation = await resolver.resolve_conversation("user-a", "user-c")

    assert conversation.id == existing["id"]


@pytest.mark.asyncio
async def test_reply_must_stay_in_its_conversation(store, seed):
    resolver = ConversationResolver(EntityCache(), store)
    original = seed.message("user-b", receiver_id="user-c")
    own = seed.message("user-b", receiver_id="user-a")

    target = await resolver.resolve_reply(own["id"], sender_id="user-a", receiver_id="user-b")
    assert target.id == own["id"]

    with pytest.raises(ValidationError):
        await resolver.resolve_reply(original["id"], sender_id="user-a", receiver_id="user-b")


@pytest.mark.asyncio
async def test_pin_requires_message_of_same_korum(store, seed):
    resolver = ConversationResolver(EntityCache(), store)
    korum = seed.korum(members={"user-a": "admin"})
    other = seed.korum(name="Other korum")
    message = seed.message("user-a", korum_id=korum["id"])
    direct = seed.message("user-a", receiver_id="user-b")

    assert (await resolver.resolve_pin(korum["id"], message["id"])).id == message["id"]
    with pytest.raises(ValidationError):
        await resolver.resolve_pin(other["id"], message["id"])
    with pytest.raises(ValidationError):
        await resolver.resolve_pin(korum["id"], direct["id"])


@pytest.mark.asyncio
async def test_store_answer_for_another_pair_is_rejected():
    store = AsyncMock(spec=StoreClient)
    store.rpc.return_value = {
        "id": "conv-1",
        "participant_one": "user-a",
        "participant_two": "user-c",
        "created": False,
    }
    cache = EntityCache()
    resolver = ConversationResolver(cache, store)

    with pytest.raises(ValidationError):
        await resolver.resolve_conversation("user-b", "user-a")

    store.rpc.assert_awaited_once_with(
        RPC_FIND_OR_CREATE_CONVERSATION,
        {"participant_one": "user-a", "participant_two": "user-b"},
    )
    assert len(cache) == 0
