"""Optimistic read-flag changes for notifications."""

from __future__ import annotations

import logging
from typing import Any

from korum_sync.core.errors import MutationFailedError, NotFoundError, SyncError
from korum_sync.schemas.notification import Notification
from korum_sync.store.base import StoreClient, eq

from .cache import CacheKey, EntityCache
from .merge import merge_row
from .views import NOTIFICATION_VIEWS, capture_fields, patch_everywhere, restore_fields

# Configure logger for this module
logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(self, cache: EntityCache, store: StoreClient, user_id: str) -> None:
        self._cache = cache
        self._store = store
        self._user_id = user_id

    def _mark_locally(self, notification_id: str) -> dict[CacheKey, dict[str, Any]]:
        captured = capture_fields(self._cache, NOTIFICATION_VIEWS, notification_id, ("is_read",))
        patch_everywhere(
            self._cache,
            NOTIFICATION_VIEWS,
            notification_id,
            lambda notification: notification.model_copy(update={"is_read": True}),
        )
        return captured

    def _reconcile(self, rows: list[dict[str, Any]]) -> list[Notification]:
        confirmed: list[Notification] = []
        for row in rows:
            notification = merge_row(Notification, row, "notifications")
            if not self._cache.is_stale_version(notification.id, notification.version):
                patch_everywhere(self._cache, NOTIFICATION_VIEWS, notification.id, lambda _, n=notification: n)
                self._cache.mark_authoritative(notification.id, notification.version)
            confirmed.append(notification)
        return confirmed

    async def mark_notification_read(self, notification_id: str) -> Notification:
        """Flip one notification to read, restoring it if the store refuses."""
        captured = self._mark_locally(notification_id)
        try:
            rows = await self._store.update(
                "notifications",
                [eq("id", notification_id), eq("user_id", self._user_id)],
                {"is_read": True},
            )
            if not rows:
                raise NotFoundError("Notification not found", collection="notifications", entity_id=notification_id)
            return self._reconcile(rows)[0]
        except SyncError as exc:
            restore_fields(self._cache, captured, notification_id)
            logger.warning("Marking notification %s read rolled back: %s", notification_id, exc.message)
            raise MutationFailedError(f"Could not mark notification as read: {exc.message}", exc) from exc

    async def mark_all_notifications_read(self) -> int:
        """Flip every unread notification of the user to read."""
        cached = self._cache.get(CacheKey.notifications(), allow_stale=True) or ()
        captured = {
            notification.id: self._mark_locally(notification.id)
            for notification in cached
            if not notification.is_read
        }
        try:
            rows = await self._store.update(
                "notifications",
                [eq("user_id", self._user_id), eq("is_read", False)],
                {"is_read": True},
            )
        except SyncError as exc:
            for notification_id, fields in captured.items():
                restore_fields(self._cache, fields, notification_id)
            logger.warning("Marking all notifications read rolled back: %s", exc.message)
            raise MutationFailedError(f"Could not mark notifications as read: {exc.message}", exc) from exc
        self._reconcile(rows)
        return len(rows)
