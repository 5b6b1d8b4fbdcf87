"""HTTP client for a PostgREST-style remote store.

This module provides the HttpStore class that handles all communication
between the sync core and the remote relational store. It includes:

- Query-string encoding of filters, ordering and limits
- Mapping of HTTP status codes onto the sync error taxonomy
- Circuit breaker pattern for fault tolerance
- Cursor-based polling channels for realtime change events
- Object storage uploads
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from korum_sync.core.errors import (
    AuthorizationError,
    ChannelDisruptedError,
    ConflictError,
    NotFoundError,
    SyncError,
    TransientStoreError,
    ValidationError,
)
from korum_sync.core.settings import Settings, settings
from korum_sync.schemas.events import ChangeEvent

from .base import AllOf, AnyOf, Filter, Order, Predicate, StoreChannel, StoreClient

# Configure logger for this module
logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_UNPROCESSABLE = 422
HTTP_INTERNAL_SERVER_ERROR = 500

REST_PREFIX = "/rest/v1"
STORAGE_PREFIX = "/storage/v1/object"
REALTIME_PATH = "/realtime/v1/changes"


class CircuitState(Enum):
    """Circuit breaker states for fault tolerance."""
    CLOSED = "closed"      # Normal operation - requests allowed
    OPEN = "open"          # Circuit is open - requests blocked
    HALF_OPEN = "half_open"  # Testing if service is back - one request allowed


@dataclass
class CircuitBreaker:
    """Circuit breaker counting consecutive transient failures."""

    failure_threshold: int = 5
    recovery_timeout: float = 30.0

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _last_failure_time: float = 0.0

    def is_open(self) -> bool:
        """Check if circuit is open."""
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time > self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
            return self._state == CircuitState.OPEN
        return False

    def record_success(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN

    @property
    def state(self) -> CircuitState:
        return self._state


def _literal(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    if any(ch in text for ch in ",()\""):
        text = '"' + text.replace('"', '\\"') + '"'
    return text


def encode_condition(predicate: Predicate) -> str:
    """Encode a predicate in the ``column.op.value`` form used inside ``or=``."""
    if isinstance(predicate, AnyOf):
        return "or(" + ",".join(encode_condition(item) for item in predicate.filters) + ")"
    if isinstance(predicate, AllOf):
        return "and(" + ",".join(encode_condition(item) for item in predicate.filters) + ")"
    return f"{predicate.column}.{encode_value(predicate)}"


def encode_value(item: Filter) -> str:
    """Encode the operator/value half of a column filter."""
    if item.op == "in":
        return "in.(" + ",".join(_literal(v) for v in item.value) + ")"
    if item.op == "contains":
        return "cs.{" + ",".join(_literal(v) for v in item.value) + "}"
    if item.op == "ilike":
        return f"ilike.*{item.value}*"
    if item.op == "is_null":
        return "is.null" if item.value else "not.is.null"
    return f"{item.op}.{_literal(item.value)}"


def encode_params(
    filters: Sequence[Predicate] = (),
    order: Sequence[Order] = (),
    limit: int | None = None,
) -> list[tuple[str, str]]:
    """Translate filters, ordering and limit into query parameters."""
    params: list[tuple[str, str]] = []
    for predicate in filters:
        if isinstance(predicate, Filter):
            params.append((predicate.column, encode_value(predicate)))
        elif isinstance(predicate, AnyOf):
            params.append(("or", "(" + ",".join(encode_condition(i) for i in predicate.filters) + ")"))
        else:
            params.append(("and", "(" + ",".join(encode_condition(i) for i in predicate.filters) + ")"))
    if order:
        params.append(
            ("order", ",".join(f"{o.column}.{'desc' if o.descending else 'asc'}" for o in order))
        )
    if limit is not None:
        params.append(("limit", str(limit)))
    return params


def error_for_response(response: httpx.Response, context: str) -> SyncError:
    """Map an unsuccessful response onto the sync error taxonomy."""
    try:
        payload = response.json()
        detail = payload.get("message") or payload.get("error") or response.text
    except ValueError:
        detail = response.text
    message = f"{context}: {detail}" if detail else context
    status_code = response.status_code
    if status_code in (HTTP_BAD_REQUEST, HTTP_UNPROCESSABLE):
        return ValidationError(message)
    if status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
        return AuthorizationError(message, action=context)
    if status_code == HTTP_NOT_FOUND:
        return NotFoundError(message, collection=context, entity_id=None)
    if status_code == HTTP_CONFLICT:
        return ConflictError(message, collection=context)
    return TransientStoreError(message, status_code=status_code)


class PollingChannel(StoreChannel):
    """Realtime channel that polls the change stream with a cursor."""

    def __init__(
        self,
        store: HttpStore,
        table: str,
        row_filter: Filter | None,
        cursor: str | None,
        interval: float,
    ) -> None:
        super().__init__(table, row_filter)
        self._store = store
        self._cursor = cursor
        self._interval = interval
        self._closed = asyncio.Event()

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        while not self._closed.is_set():
            try:
                events, self._cursor = await self._store.pull_changes(
                    self.table, self.row_filter, self._cursor
                )
            except TransientStoreError as exc:
                raise ChannelDisruptedError(
                    f"Realtime poll failed: {exc.message}", scope=self.table
                ) from exc
            for event in events:
                if self._closed.is_set():
                    return
                yield event
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self._interval)
            except TimeoutError:
                continue

    async def close(self) -> None:
        self._closed.set()


class HttpStore(StoreClient):
    """httpx client wrapper for the remote store."""

    def __init__(
        self,
        config: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or settings
        if not self.config.store_base_url:
            raise ValidationError("KORUM_STORE_BASE_URL is required for the HTTP store")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=self.config.circuit_failure_threshold,
            recovery_timeout=self.config.circuit_recovery_seconds,
        )

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.store_base_url or "",
                    timeout=httpx.Timeout(self.config.store_http_timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    def _build_headers(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.config.store_api_key:
            headers["apikey"] = self.config.store_api_key
        token = self.config.store_access_token or self.config.store_api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if extra:
            headers.update(extra)
        return headers

    @dataclass
    class RequestParams:
        """Parameters for HTTP requests."""
        method: str
        path: str
        context: str
        json_data: Any | None = None
        content: bytes | None = None
        params: list[tuple[str, str]] | None = None
        headers: dict[str, str] | None = None

    async def _request(self, params: RequestParams) -> Any:
        if self._circuit_breaker.is_open():
            raise TransientStoreError("Store circuit breaker is open - service unavailable")

        client = await self._ensure_client()
        try:
            response = await client.request(
                params.method,
                params.path,
                json=params.json_data,
                content=params.content,
                params=params.params,
                headers=self._build_headers(params.headers),
            )
        except httpx.TimeoutException as exc:
            self._circuit_breaker.record_failure()
            raise TransientStoreError(f"{params.context}: request timed out") from exc
        except httpx.HTTPError as exc:
            self._circuit_breaker.record_failure()
            raise TransientStoreError(f"{params.context}: {exc}") from exc

        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            self._circuit_breaker.record_failure()
            raise error_for_response(response, params.context)
        self._circuit_breaker.record_success()
        if response.is_error:
            raise error_for_response(response, params.context)
        if not response.content:
            return None
        return response.json()

    async def select(
        self,
        collection: str,
        filters: Sequence[Predicate] = (),
        order: Sequence[Order] = (),
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        payload = await self._request(
            self.RequestParams(
                method="GET",
                path=f"{REST_PREFIX}/{collection}",
                context=collection,
                params=[("select", "*"), *encode_params(filters, order, limit)],
            )
        )
        return list(payload or [])

    async def insert(self, collection: str, values: Mapping[str, Any]) -> dict[str, Any]:
        payload = await self._request(
            self.RequestParams(
                method="POST",
                path=f"{REST_PREFIX}/{collection}",
                context=collection,
                json_data=dict(values),
                headers={"Prefer": "return=representation"},
            )
        )
        rows = payload if isinstance(payload, list) else [payload]
        if not rows or rows[0] is None:
            raise TransientStoreError(f"{collection}: insert returned no row")
        return rows[0]

    async def update(
        self,
        collection: str,
        filters: Sequence[Predicate],
        values: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        payload = await self._request(
            self.RequestParams(
                method="PATCH",
                path=f"{REST_PREFIX}/{collection}",
                context=collection,
                json_data=dict(values),
                params=encode_params(filters),
                headers={"Prefer": "return=representation"},
            )
        )
        return list(payload or [])

    async def delete(self, collection: str, filters: Sequence[Predicate]) -> int:
        payload = await self._request(
            self.RequestParams(
                method="DELETE",
                path=f"{REST_PREFIX}/{collection}",
                context=collection,
                params=encode_params(filters),
                headers={"Prefer": "return=representation"},
            )
        )
        return len(payload or [])

    async def rpc(self, name: str, params: Mapping[str, Any]) -> dict[str, Any]:
        payload = await self._request(
            self.RequestParams(
                method="POST",
                path=f"{REST_PREFIX}/rpc/{name}",
                context=name,
                json_data=dict(params),
            )
        )
        if isinstance(payload, list):
            payload = payload[0] if payload else {}
        return dict(payload or {})

    async def pull_changes(
        self,
        table: str,
        row_filter: Filter | None,
        cursor: str | None,
    ) -> tuple[list[ChangeEvent], str | None]:
        """Pull one batch of change events for ``table`` after ``cursor``."""
        query: list[tuple[str, str]] = [("table", table)]
        if row_filter is not None:
            query.append(("filter", f"{row_filter.column}={encode_value(row_filter)}"))
        if cursor:
            query.append(("cursor", cursor))

        payload = await self._request(
            self.RequestParams(method="GET", path=REALTIME_PATH, context=table, params=query)
        ) or {}
        events = [ChangeEvent.model_validate(item) for item in payload.get("events", []) or []]
        return events, payload.get("cursor", cursor)

    async def open_channel(self, table: str, row_filter: Filter | None = None) -> StoreChannel:
        # Establish the starting cursor so only changes after subscription are delivered.
        _, cursor = await self.pull_changes(table, row_filter, None)
        return PollingChannel(
            self,
            table,
            row_filter,
            cursor,
            interval=max(0.05, self.config.realtime_poll_interval_seconds),
        )

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        await self._request(
            self.RequestParams(
                method="POST",
                path=f"{STORAGE_PREFIX}/{bucket}/{path}",
                context=f"upload {bucket}",
                content=data,
                headers={"Content-Type": content_type},
            )
        )
        base = (self.config.store_public_url or self.config.store_base_url or "").rstrip("/")
        return f"{base}{STORAGE_PREFIX}/public/{bucket}/{path}"

    def get_circuit_breaker_status(self) -> dict[str, Any]:
        return {
            "state": self._circuit_breaker.state.value,
            "is_open": self._circuit_breaker.is_open(),
        }

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
