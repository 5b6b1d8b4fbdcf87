"""Post and comment creation."""

from __future__ import annotations

import logging
from typing import Any

from korum_sync.core.errors import NotFoundError, SyncError, ValidationError
from korum_sync.core.settings import Settings, settings
from korum_sync.schemas.comment import Comment
from korum_sync.schemas.post import Post, PostCreate
from korum_sync.store.base import RPC_INCREMENT_COMMENT_COUNT, StoreClient, eq

from .cache import CacheKey, EntityCache
from .merge import merge_row
from .queries import QueryExecutor
from .validation import validate_comment, validate_post
from .views import POST_VIEWS, append_entity, patch_everywhere

# Configure logger for this module
logger = logging.getLogger(__name__)


class PostService:
    """Creates posts and comments and folds the results into cached views."""

    def __init__(
        self,
        cache: EntityCache,
        store: StoreClient,
        executor: QueryExecutor,
        user_id: str,
        config: Settings = settings,
    ) -> None:
        self._cache = cache
        self._store = store
        self._executor = executor
        self._user_id = user_id
        self._config = config

    async def create_post(self, data: PostCreate | dict[str, Any]) -> Post:
        """Validate and store a new post, then show it at the top of matching lists.

        Raises:
            ValidationError: For bad title, content, category or tags
        """
        post = validate_post(data, self._config)
        row = await self._store.insert(
            "posts",
            {
                "author_id": self._user_id,
                "title": post.title,
                "content": post.content,
                "category": post.category,
                "tags": list(post.tags),
                "korum_id": post.korum_id,
                "upvotes": 0,
                "downvotes": 0,
                "comment_count": 0,
            },
        )
        profiles = await self._executor.profiles([self._user_id])
        created = merge_row(Post, row, "posts", author=profiles.get(self._user_id))
        self._cache.mark_authoritative(created.id, created.version)

        for key in self._cache.keys("posts"):
            category, korum_id = key.params
            if category not in (None, created.category) or korum_id not in (None, created.korum_id):
                continue
            self._cache.patch(key, lambda value: append_entity(value, created, newest_first=True))
        for key in self._cache.keys("search"):
            self._cache.invalidate(key)

        logger.info("Created post %s in %s", created.id, created.category)
        return created

    async def _parent(self, post_id: str, parent_id: str) -> Comment:
        forest = self._cache.get(CacheKey.comments(post_id), allow_stale=True)
        if forest is not None and parent_id in forest:
            return forest.get(parent_id)
        rows = await self._store.select("comments", [eq("id", parent_id)], limit=1)
        if not rows:
            raise NotFoundError("Parent comment not found", collection="comments", entity_id=parent_id)
        return merge_row(Comment, rows[0], "comments")

    async def create_comment(self, post_id: str, content: str, parent_id: str | None = None) -> Comment:
        """Add a comment (or reply) and apply the authoritative comment count.

        Raises:
            ValidationError: For empty/oversized content or a parent on another post
            NotFoundError: If ``parent_id`` does not exist
        """
        text = validate_comment(content, self._config)
        if parent_id is not None:
            parent = await self._parent(post_id, parent_id)
            if parent.post_id != post_id:
                raise ValidationError("Reply must belong to the same post", field_name="parent_id")

        row = await self._store.insert(
            "comments",
            {
                "post_id": post_id,
                "author_id": self._user_id,
                "parent_id": parent_id,
                "content": text,
                "upvotes": 0,
                "downvotes": 0,
            },
        )
        counted = await self._store.rpc(RPC_INCREMENT_COMMENT_COUNT, {"post_id": post_id})
        if not self._cache.is_stale_version(post_id, counted.get("version")):
            patch_everywhere(
                self._cache,
                POST_VIEWS,
                post_id,
                lambda post: post.model_copy(update={"comment_count": counted["comment_count"]}),
            )
            self._cache.mark_authoritative(post_id, counted.get("version"))

        profiles = await self._executor.profiles([self._user_id])
        created = merge_row(Comment, row, "comments", author=profiles.get(self._user_id))
        self._cache.mark_authoritative(created.id, created.version)

        key = CacheKey.comments(post_id)
        if key in self._cache:
            self._cache.patch(key, lambda forest: forest.with_comment(created))
            try:
                await self._executor.refetch(key)
            except SyncError as exc:
                # The comment is stored; a later read settles the forest.
                logger.warning("Refreshing comments of %s failed: %s", post_id, exc.message)
                self._cache.invalidate(key)
        return created
