"""Helpers for locating and replacing one entity inside cached views.

A cached value is one of:

- a single snapshot (``("post", id)``, ``("korum", id)``)
- a tuple of snapshots (list views)
- a ``CommentForest`` (comment views)

Every helper returns a new value and leaves the input untouched. When nothing
changes the original object is returned, which lets ``EntityCache.patch`` skip
the write.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

from korum_sync.schemas.common import Snapshot

from .cache import CacheKey, EntityCache
from .comment_tree import CommentForest

# Cached collections holding snapshots of each store table.
TABLE_VIEWS: dict[str, tuple[str, ...]] = {
    "posts": ("posts", "post", "search"),
    "comments": ("comments",),
    "korums": ("korums", "korum"),
    "messages": ("messages", "korum-messages"),
    "notifications": ("notifications",),
    "conversations": ("conversations",),
}

POST_VIEWS = TABLE_VIEWS["posts"]
COMMENT_VIEWS = TABLE_VIEWS["comments"]
KORUM_VIEWS = TABLE_VIEWS["korums"]
MESSAGE_VIEWS = TABLE_VIEWS["messages"]
NOTIFICATION_VIEWS = TABLE_VIEWS["notifications"]

Updater = Callable[[Any], Any]


def _identity(item: Any) -> Any:
    return getattr(item, "id", None)


def find_entity(value: Any, entity_id: str) -> Any | None:
    """Return the snapshot with ``entity_id`` held in ``value``, if any."""
    if isinstance(value, CommentForest):
        return value.get(entity_id)
    if isinstance(value, tuple):
        for item in value:
            if _identity(item) == entity_id:
                return item
        return None
    if isinstance(value, Snapshot) and _identity(value) == entity_id:
        return value
    return None


def replace_entity(value: Any, entity_id: str, updater: Updater) -> Any:
    """Apply ``updater`` to the snapshot with ``entity_id`` inside ``value``."""
    if isinstance(value, CommentForest):
        return value.replace(entity_id, updater)
    if isinstance(value, tuple):
        changed = False
        items = []
        for item in value:
            if _identity(item) == entity_id:
                updated = updater(item)
                changed = changed or updated is not item
                items.append(updated)
            else:
                items.append(item)
        return tuple(items) if changed else value
    if isinstance(value, Snapshot) and _identity(value) == entity_id:
        return updater(value)
    return value


def remove_entity(value: Any, entity_id: str) -> Any:
    """Drop the snapshot with ``entity_id`` from a list or forest view."""
    if isinstance(value, CommentForest):
        return value.without(entity_id)
    if isinstance(value, tuple):
        kept = tuple(item for item in value if _identity(item) != entity_id)
        return kept if len(kept) != len(value) else value
    return value


def append_entity(value: Any, entity: Any, *, newest_first: bool = False) -> Any:
    """Add ``entity`` to a list or forest view; an existing id is replaced."""
    if isinstance(value, CommentForest):
        return value.with_comment(entity)
    if not isinstance(value, tuple):
        return value
    entity_id = _identity(entity)
    if any(_identity(item) == entity_id for item in value):
        return replace_entity(value, entity_id, lambda _: entity)
    return (entity, *value) if newest_first else (*value, entity)


def keys_containing(cache: EntityCache, collections: Iterable[str], entity_id: str) -> list[CacheKey]:
    return [
        key for key, value in cache.entries(*collections)
        if find_entity(value, entity_id) is not None
    ]


def patch_everywhere(
    cache: EntityCache,
    collections: Iterable[str],
    entity_id: str,
    updater: Updater,
) -> list[CacheKey]:
    """Patch every cached view of ``collections`` that holds ``entity_id``."""
    touched = keys_containing(cache, collections, entity_id)
    for key in touched:
        cache.patch(key, lambda value: replace_entity(value, entity_id, updater))
    return touched


def capture_fields(
    cache: EntityCache,
    collections: Iterable[str],
    entity_id: str,
    fields: Iterable[str],
) -> dict[CacheKey, dict[str, Any]]:
    """Record the current values of ``fields`` for ``entity_id`` per view."""
    names = tuple(fields)
    captured: dict[CacheKey, dict[str, Any]] = {}
    for key, value in cache.entries(*collections):
        entity = find_entity(value, entity_id)
        if entity is not None:
            captured[key] = {name: getattr(entity, name) for name in names}
    return captured


def restore_fields(
    cache: EntityCache,
    captured: Mapping[CacheKey, Mapping[str, Any]],
    entity_id: str,
) -> None:
    """Write previously captured field values back into their views.

    Only the captured fields are restored; anything else that changed in
    the meantime (a realtime comment count, an edited title) is kept.
    """
    for key, fields in captured.items():
        cache.patch(
            key,
            lambda value, fields=fields: replace_entity(
                value, entity_id, lambda entity: entity.model_copy(update=dict(fields))
            ),
        )
