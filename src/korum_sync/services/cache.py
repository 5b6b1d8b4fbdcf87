"""Keyed in-memory store of fetched results.

The cache is the single shared mutable resource of the sync core. Every
component reads and writes it through ``get``/``set``/``patch``/``invalidate``;
snapshots it hands out are frozen and are never mutated in place.

All methods are synchronous. On a single event loop a synchronous call can
not interleave with another, so ``patch`` is atomic with respect to concurrent
``patch``/``set`` calls from the vote coordinator and the realtime router.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from korum_sync.db.time import utcnow

# Configure logger for this module
logger = logging.getLogger(__name__)

InvalidationListener = Callable[["CacheKey"], None]


@dataclass(frozen=True)
class CacheKey:
    """Structured cache address: collection name plus ordered parameters.

    Two queries with different filters never share a key.
    """

    collection: str
    params: tuple[Any, ...] = ()

    def __str__(self) -> str:
        if not self.params:
            return self.collection
        return f"{self.collection}({', '.join(repr(p) for p in self.params)})"

    @classmethod
    def posts(cls, category: str | None = None, korum_id: str | None = None) -> CacheKey:
        return cls("posts", (category, korum_id))

    @classmethod
    def post(cls, post_id: str) -> CacheKey:
        return cls("post", (post_id,))

    @classmethod
    def search(cls, term: str) -> CacheKey:
        return cls("search", (term.strip().lower(),))

    @classmethod
    def comments(cls, post_id: str) -> CacheKey:
        return cls("comments", (post_id,))

    @classmethod
    def korums(cls) -> CacheKey:
        return cls("korums")

    @classmethod
    def korum(cls, korum_id: str) -> CacheKey:
        return cls("korum", (korum_id,))

    @classmethod
    def korum_members(cls, korum_id: str) -> CacheKey:
        return cls("korum-members", (korum_id,))

    @classmethod
    def conversations(cls) -> CacheKey:
        return cls("conversations")

    @classmethod
    def conversation(cls, participant_one: str, participant_two: str) -> CacheKey:
        return cls("conversation", (participant_one, participant_two))

    @classmethod
    def messages(cls, other_user_id: str) -> CacheKey:
        return cls("messages", (other_user_id,))

    @classmethod
    def korum_messages(cls, korum_id: str) -> CacheKey:
        return cls("korum-messages", (korum_id,))

    @classmethod
    def pinned_messages(cls, korum_id: str) -> CacheKey:
        return cls("pinned-messages", (korum_id,))

    @classmethod
    def notifications(cls) -> CacheKey:
        return cls("notifications")


@dataclass(frozen=True)
class CacheEntry:
    """Latest known snapshot for a key."""

    value: Any
    fetched_at: datetime = field(default_factory=utcnow)
    stale: bool = False


@dataclass
class _Deferred:
    version: int | None
    apply: Callable[[], None]


class EntityCache:
    """In-memory cache of query results keyed by ``CacheKey``.

    Besides the keyed entries it tracks, per entity id:

    - the version of the last authoritative write, so late realtime events
      carrying older data can be discarded
    - optimistic holds placed by in-flight mutations, during which realtime
      patches for that entity are deferred instead of applied
    """

    def __init__(self) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._authoritative: dict[str, int] = {}
        self._holds: dict[str, int] = defaultdict(int)
        self._deferred: dict[str, _Deferred] = {}
        self._listeners: list[InvalidationListener] = []
        self._removal_listeners: list[InvalidationListener] = []

    # ------------------------------------------------------------------
    # keyed entries
    # ------------------------------------------------------------------

    def get(self, key: CacheKey, *, allow_stale: bool = False) -> Any | None:
        """Return the snapshot for ``key``; stale entries read as absent."""
        entry = self._entries.get(key)
        if entry is None or (entry.stale and not allow_stale):
            return None
        return entry.value

    def entry(self, key: CacheKey) -> CacheEntry | None:
        return self._entries.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def set(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value)

    def patch(self, key: CacheKey, updater: Callable[[Any], Any]) -> Any | None:
        """Replace the value at ``key`` with ``updater(value)``.

        Absent keys are left absent. Staleness and fetch time are preserved,
        since a patch does not make an entry any fresher.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        updated = updater(entry.value)
        if updated is not entry.value:
            self._entries[key] = replace(entry, value=updated)
        return updated

    def invalidate(self, key: CacheKey) -> bool:
        """Mark ``key`` stale so the next reader re-fetches it."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if not entry.stale:
            self._entries[key] = replace(entry, stale=True)
        logger.debug("Invalidated %s", key)
        for listener in list(self._listeners):
            listener(key)
        return True

    def invalidate_prefix(self, collection: str) -> list[CacheKey]:
        keys = self.keys(collection)
        for key in keys:
            self.invalidate(key)
        return keys

    def remove(self, key: CacheKey) -> bool:
        removed = self._entries.pop(key, None) is not None
        if removed:
            for listener in list(self._removal_listeners):
                listener(key)
        return removed

    def keys(self, *collections: str) -> list[CacheKey]:
        """Keys of the given collections (all keys when none are given)."""
        return [
            key for key in self._entries
            if not collections or key.collection in collections
        ]

    def entries(self, *collections: str) -> Iterator[tuple[CacheKey, Any]]:
        """Iterate ``(key, value)`` pairs, stale ones included."""
        for key in self.keys(*collections):
            entry = self._entries.get(key)
            if entry is not None:
                yield key, entry.value

    def clear(self) -> None:
        self._entries.clear()
        self._authoritative.clear()
        self._holds.clear()
        self._deferred.clear()

    def add_invalidation_listener(self, listener: InvalidationListener) -> Callable[[], None]:
        """Register ``listener`` and return a function that unregisters it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def add_removal_listener(self, listener: InvalidationListener) -> None:
        """Call ``listener`` with every key dropped by ``remove``."""
        self._removal_listeners.append(listener)

    # ------------------------------------------------------------------
    # recency markers
    # ------------------------------------------------------------------

    def mark_authoritative(self, entity_id: str, version: int | None) -> None:
        """Record that data at ``version`` for ``entity_id`` has been applied."""
        if version is None:
            return
        current = self._authoritative.get(entity_id)
        if current is None or version > current:
            self._authoritative[entity_id] = version

    def authoritative_version(self, entity_id: str) -> int | None:
        return self._authoritative.get(entity_id)

    def is_stale_version(self, entity_id: str, version: int | None) -> bool:
        """True if data at ``version`` is not newer than what is already applied."""
        if version is None:
            return False
        current = self._authoritative.get(entity_id)
        return current is not None and version <= current

    # ------------------------------------------------------------------
    # optimistic holds
    # ------------------------------------------------------------------

    def hold(self, entity_id: str) -> None:
        self._holds[entity_id] += 1

    def is_held(self, entity_id: str) -> bool:
        return self._holds.get(entity_id, 0) > 0

    def defer(self, entity_id: str, version: int | None, apply: Callable[[], None]) -> None:
        """Park a realtime patch for a held entity; only the newest is kept."""
        current = self._deferred.get(entity_id)
        if current is None or (version or 0) >= (current.version or 0):
            self._deferred[entity_id] = _Deferred(version=version, apply=apply)

    def release(self, entity_id: str) -> None:
        """Drop one hold; when none remain, apply a deferred patch if still newer."""
        remaining = self._holds.get(entity_id, 0) - 1
        if remaining > 0:
            self._holds[entity_id] = remaining
            return
        self._holds.pop(entity_id, None)
        deferred = self._deferred.pop(entity_id, None)
        if deferred is not None and not self.is_stale_version(entity_id, deferred.version):
            logger.debug("Applying deferred realtime patch for %s", entity_id)
            deferred.apply()
