import json

import httpx
import pytest

from korum_sync.core.errors import (
    AuthorizationError,
    ChannelDisruptedError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from korum_sync.core.settings import Settings
from korum_sync.store.base import AnyOf, Filter, Order, eq, in_
from korum_sync.store.http import CircuitState, HttpStore, encode_params


@pytest.fixture
def http_settings():
    return Settings(
        KORUM_STORE_BACKEND="http",
        KORUM_STORE_BASE_URL="https://store.test",
        KORUM_STORE_API_KEY="anon-key",
        KORUM_CIRCUIT_FAILURE_THRESHOLD=2,
        KORUM_REALTIME_POLL_INTERVAL_SECONDS=0.01,
    )


def make_store(settings, handler):
    return HttpStore(settings, transport=httpx.MockTransport(handler))


def test_encode_params_covers_filters_order_and_limit():
    params = encode_params(
        [
            eq("category", "question"),
            in_("id", ["a", "b"]),
            Filter("tags", "contains", ("rust",)),
            Filter("korum_id", "is_null", True),
            AnyOf((Filter("title", "ilike", "lexer"), Filter("content", "ilike", "lexer"))),
        ],
        [Order("created_at", descending=True), Order("title")],
        limit=10,
    )

    assert params == [
        ("category", "eq.question"),
        ("id", "in.(a,b)"),
        ("tags", "cs.{rust}"),
        ("korum_id", "is.null"),
        ("or", "(title.ilike.*lexer*,content.ilike.*lexer*)"),
        ("order", "created_at.desc,title.asc"),
        ("limit", "10"),
    ]


def test_missing_base_url_is_rejected():
    with pytest.raises(ValidationError):
        HttpStore(Settings(KORUM_STORE_BACKEND="http", KORUM_STORE_BASE_URL=None))


@pytest.mark.asyncio
async def test_select_sends_filters_and_credentials(http_settings):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "p1"}])

    store = make_store(http_settings, handler)
    rows = await store.select("posts", [eq("category", "notice")], limit=5)
    await store.close()

    assert rows == [{"id": "p1"}]
    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/rest/v1/posts"
    assert request.url.params.multi_items() == [("select", "*"), ("category", "eq.notice"), ("limit", "5")]
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["Authorization"] == "Bearer anon-key"


@pytest.mark.asyncio
async def test_rpc_unwraps_single_row_payload(http_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/rest/v1/rpc/apply_vote"
        assert json.loads(request.content) == {"target_id": "p1", "value": 1}
        return httpx.Response(200, json=[{"upvotes": 4, "downvotes": 1}])

    store = make_store(http_settings, handler)
    result = await store.rpc("apply_vote", {"target_id": "p1", "value": 1})

    assert result == {"upvotes": 4, "downvotes": 1}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "error"),
    [
        (400, ValidationError),
        (403, AuthorizationError),
        (404, NotFoundError),
        (409, ConflictError),
        (503, TransientStoreError),
    ],
)
async def test_status_codes_map_onto_errors(http_settings, status, error):
    store = make_store(http_settings, lambda request: httpx.Response(status, json={"message": "nope"}))

    with pytest.raises(error) as exc_info:
        await store.insert("posts", {"title": "x"})

    assert "nope" in exc_info.value.message


@pytest.mark.asyncio
async def test_timeouts_open_the_circuit(http_settings):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ReadTimeout("slow", request=request)

    store = make_store(http_settings, handler)
    for _ in range(2):
        with pytest.raises(TransientStoreError):
            await store.select("posts")

    with pytest.raises(TransientStoreError, match="circuit breaker"):
        await store.select("posts")
    assert len(calls) == 2
    assert store.get_circuit_breaker_status()["state"] == CircuitState.OPEN.value


@pytest.mark.asyncio
async def test_polling_channel_delivers_events_after_cursor(http_settings):
    batches = [
        {"events": [], "cursor": "c1"},
        {
            "events": [{"operation": "insert", "table": "posts", "key": {"id": "p9"}, "version": 1}],
            "cursor": "c2",
        },
    ]
    cursors = []

    def handler(request: httpx.Request) -> httpx.Response:
        cursors.append(request.url.params.get("cursor"))
        if batches:
            return httpx.Response(200, json=batches.pop(0))
        return httpx.Response(503, json={"message": "gone"})

    store = make_store(http_settings, handler)
    channel = await store.open_channel("posts", eq("korum_id", "k1"))

    received = []
    with pytest.raises(ChannelDisruptedError):
        async for event in channel:
            received.append(event)

    assert [event.entity_id for event in received] == ["p9"]
    assert cursors[:2] == [None, "c1"]
