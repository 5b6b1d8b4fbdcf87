import pytest

from korum_sync.core.errors import NotFoundError, TransientStoreError, ValidationError
from korum_sync.services.cache import CacheKey
from korum_sync.services.validation import validate_post

USER_A = "user-a"

VALID_POST = {
    "title": "Help with recursion",
    "content": "My recursive descent parser loops forever on left recursion.",
    "category": "question",
    "tags": ["#Parsing", "compilers", "parsing"],
}


def test_post_input_is_normalized():
    post = validate_post({**VALID_POST, "title": "  Help with recursion  "})

    assert post.title == "Help with recursion"
    assert post.tags == ["parsing", "compilers"]


@pytest.mark.parametrize(
    ("changes", "field"),
    [
        ({"title": "Hey"}, "title"),
        ({"content": "   "}, "content"),
        ({"category": "gossip"}, "category"),
        ({"tags": ["a", "b", "c", "d", "e", "f"]}, "tags"),
        ({"tags": ["not valid"]}, "tags"),
    ],
)
def test_invalid_post_input(changes, field):
    with pytest.raises(ValidationError) as exc_info:
        validate_post({**VALID_POST, **changes})

    assert exc_info.value.field_name.startswith(field)


@pytest.mark.asyncio
async def test_create_post_prepends_to_matching_lists(client, seed):
    seed.post(title="Existing question")
    await client.queries.posts()
    await client.queries.posts("notice")
    await client.queries.search_posts("recursion")

    created = await client.create_post(VALID_POST)

    assert created.author.user_id == USER_A
    assert created.tags == ("parsing", "compilers")
    assert client.cache.get(CacheKey.posts())[0].id == created.id
    assert client.cache.get(CacheKey.posts("notice")) == ()
    assert client.cache.get(CacheKey.search("recursion")) is None


@pytest.mark.asyncio
async def test_invalid_post_never_reaches_the_store(client, store, mocker):
    insert = mocker.patch.object(store, "insert")

    with pytest.raises(ValidationError):
        await client.create_post({**VALID_POST, "content": "short"})

    insert.assert_not_called()


@pytest.mark.asyncio
async def test_comment_updates_count_and_forest(client, seed):
    post = seed.post()
    root = seed.comment(post["id"])
    await client.queries.posts()
    await client.queries.comments(post["id"])

    reply = await client.create_comment(post["id"], "Try printing the call stack.", parent_id=root["id"])

    forest = client.cache.get(CacheKey.comments(post["id"]))
    assert [c.id for c in forest.replies(root["id"])] == [reply.id]
    assert client.cache.get(CacheKey.posts())[0].comment_count == 2


@pytest.mark.asyncio
async def test_reply_to_another_posts_comment_is_rejected(client, seed):
    first = seed.post()
    second = seed.post()
    foreign = seed.comment(second["id"])

    with pytest.raises(ValidationError):
        await client.create_comment(first["id"], "Wrong thread", parent_id=foreign["id"])


@pytest.mark.asyncio
async def test_reply_to_missing_parent(client, seed):
    post = seed.post()

    with pytest.raises(NotFoundError):
        await client.create_comment(post["id"], "Hello?", parent_id="missing")


@pytest.mark.asyncio
async def test_failed_forest_refresh_leaves_it_stale(client, store, seed, mocker):
    post = seed.post()
    await client.queries.comments(post["id"])
    mocker.patch.object(client.queries, "refetch", side_effect=TransientStoreError("offline"))

    created = await client.create_comment(post["id"], "Still stored")

    entry = client.cache.entry(CacheKey.comments(post["id"]))
    assert entry.stale is True
    assert created.id in entry.value
