"""Contract for the external relational store consumed by the sync core.

The core never talks to a database driver directly. Every read, write, named
atomic operation and realtime subscription goes through a ``StoreClient``.
Two implementations ship with the package:

- SqlStore: SQLAlchemy-backed reference store used locally and in tests
- HttpStore: httpx client for a PostgREST-style remote service
"""

from __future__ import annotations

import abc
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from korum_sync.schemas.events import ChangeEvent

FilterOp = Literal["eq", "neq", "in", "contains", "ilike", "is_null", "gt"]

# Named atomic operations every store must implement.
RPC_APPLY_VOTE = "apply_vote"
RPC_INCREMENT_COMMENT_COUNT = "increment_comment_count"
RPC_JOIN_KORUM = "join_korum"
RPC_LEAVE_KORUM = "leave_korum"
RPC_FIND_OR_CREATE_CONVERSATION = "find_or_create_conversation"
RPC_TOUCH_CONVERSATION = "touch_conversation"
RPC_TOGGLE_REACTION = "toggle_reaction"
RPC_MARK_MESSAGES_READ = "mark_messages_read"


@dataclass(frozen=True)
class Filter:
    """Single predicate over a column.

    ``contains`` tests list membership of every element of ``value`` (tag
    search); ``ilike`` is a case-insensitive substring match; ``any_of`` groups
    alternative filters joined by OR.
    """

    column: str
    op: FilterOp
    value: Any = None

    def matches(self, row: Mapping[str, Any]) -> bool:
        current = row.get(self.column)
        if self.op == "eq":
            return current == self.value
        if self.op == "neq":
            return current != self.value
        if self.op == "in":
            return current in tuple(self.value)
        if self.op == "contains":
            return set(self.value).issubset(set(current or ()))
        if self.op == "ilike":
            return current is not None and str(self.value).lower() in str(current).lower()
        if self.op == "is_null":
            return (current is None) == bool(self.value)
        if self.op == "gt":
            return current is not None and current > self.value
        raise ValueError(f"Unsupported filter op: {self.op}")


@dataclass(frozen=True)
class AnyOf:
    """Disjunction of filters (``a OR b``)."""

    filters: tuple[Filter | AllOf, ...]

    def matches(self, row: Mapping[str, Any]) -> bool:
        return any(item.matches(row) for item in self.filters)


@dataclass(frozen=True)
class AllOf:
    """Conjunction of filters, used inside ``AnyOf``."""

    filters: tuple[Filter, ...]

    def matches(self, row: Mapping[str, Any]) -> bool:
        return all(item.matches(row) for item in self.filters)


Predicate = Filter | AnyOf | AllOf


@dataclass(frozen=True)
class Order:
    """Sort instruction for ``select``."""

    column: str
    descending: bool = False


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def in_(column: str, values: Sequence[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def matches_all(row: Mapping[str, Any], predicates: Sequence[Predicate]) -> bool:
    """Return True if ``row`` satisfies every predicate."""
    return all(predicate.matches(row) for predicate in predicates)


class StoreChannel(abc.ABC):
    """Realtime subscription to one table and optional row filter.

    Lifecycle is open -> deliver(event)* -> close. Iteration raises
    ``ChannelDisruptedError`` when the underlying connection drops.
    """

    def __init__(self, table: str, row_filter: Filter | None = None) -> None:
        self.table = table
        self.row_filter = row_filter

    @abc.abstractmethod
    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        """Yield change events until closed."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the subscription; further iteration ends."""


class StoreClient(abc.ABC):
    """External relational/object store used by the sync core."""

    @abc.abstractmethod
    async def select(
        self,
        collection: str,
        filters: Sequence[Predicate] = (),
        order: Sequence[Order] = (),
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return rows of ``collection`` matching every filter."""

    @abc.abstractmethod
    async def insert(self, collection: str, values: Mapping[str, Any]) -> dict[str, Any]:
        """Insert one row and return it as stored."""

    @abc.abstractmethod
    async def update(
        self,
        collection: str,
        filters: Sequence[Predicate],
        values: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        """Update matching rows and return them as stored."""

    @abc.abstractmethod
    async def delete(self, collection: str, filters: Sequence[Predicate]) -> int:
        """Delete matching rows and return how many were removed."""

    @abc.abstractmethod
    async def rpc(self, name: str, params: Mapping[str, Any]) -> dict[str, Any]:
        """Run a named atomic server-side operation."""

    @abc.abstractmethod
    async def open_channel(self, table: str, row_filter: Filter | None = None) -> StoreChannel:
        """Open a realtime channel for ``table``."""

    @abc.abstractmethod
    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Store an object and return its public URL."""

    async def close(self) -> None:
        """Release client resources."""
