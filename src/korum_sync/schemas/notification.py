"""Notification Pydantic schemas."""
from __future__ import annotations

from datetime import datetime

from .common import NotificationType, Snapshot


class Notification(Snapshot):
    """User notification with an optional deep link."""

    id: str
    user_id: str
    type: NotificationType
    title: str = ""
    body: str = ""
    link_url: str | None = None
    is_read: bool = False
    version: int = 1
    created_at: datetime
