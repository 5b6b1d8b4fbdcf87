import pytest

from korum_sync.client import KorumSyncClient
from korum_sync.core.settings import Settings
from korum_sync.services.cache import CacheKey
from korum_sync.services.realtime import Scope
from korum_sync.store import HttpStore, SqlStore, build_store


def test_build_store_follows_backend_setting():
    sql = build_store(Settings(KORUM_STORE_BACKEND="sql", KORUM_DATABASE_URL="sqlite://"))
    http = build_store(Settings(KORUM_STORE_BACKEND="http", KORUM_STORE_BASE_URL="https://store.test"))

    assert isinstance(sql, SqlStore)
    assert isinstance(http, HttpStore)


@pytest.mark.asyncio
async def test_from_settings_runs_end_to_end():
    config = Settings(KORUM_STORE_BACKEND="sql", KORUM_DATABASE_URL="sqlite://")

    async with KorumSyncClient.from_settings("user-a", config) as client:
        created = await client.create_post(
            {
                "title": "First post here",
                "content": "Checking that the whole client wires up.",
                "category": "resource",
            }
        )
        posts = await client.queries.posts()

    assert [post.id for post in posts] == [created.id]


@pytest.mark.asyncio
async def test_close_releases_channels(client, store):
    await client.queries.posts()
    async with client.watch(Scope.posts(), keys=[CacheKey.posts()]):
        assert store.feed.open_count == 1

    await client.close()

    assert client.hub.open_scopes == []
    assert store.feed.open_count == 0
