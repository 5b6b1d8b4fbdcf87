# tests/conftest.py
from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from itertools import count
from typing import Any

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from korum_sync.client import KorumSyncClient
from korum_sync.core.settings import Settings
from korum_sync.db.session import create_tables, drop_tables, make_engine, make_session_factory
from korum_sync.models import (
    Comment,
    Conversation,
    Korum,
    KorumMember,
    Message,
    Notification,
    Post,
    Profile,
    Vote,
)
from korum_sync.services.cache import EntityCache
from korum_sync.store.sql import SqlStore, row_to_dict

TEST_DB_URL = "sqlite://"
BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)

USER_A = "user-a"
USER_B = "user-b"
USER_C = "user-c"


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = make_engine(TEST_DB_URL)
    create_tables(engine)
    try:
        yield engine
    finally:
        drop_tables(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return make_session_factory(engine)


@pytest.fixture()
def store(session_factory: sessionmaker[Session]) -> SqlStore:
    return SqlStore(session_factory)


@pytest.fixture()
def cache() -> EntityCache:
    return EntityCache()


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        KORUM_REALTIME_RECONNECT_INITIAL_SECONDS=0.01,
        KORUM_REALTIME_RECONNECT_MAX_SECONDS=0.05,
        KORUM_REALTIME_QUEUE_SIZE=64,
    )


@pytest.fixture()
def client(store: SqlStore, cache: EntityCache, test_settings: Settings) -> KorumSyncClient:
    return KorumSyncClient(USER_A, store, cache, config=test_settings)


class Seeder:
    """Writes rows straight through the ORM, bypassing the store's change feed."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self._tick = count(1)

    def _stamp(self) -> datetime:
        return BASE_TIME + timedelta(minutes=next(self._tick))

    def _add(self, obj: Any) -> dict[str, Any]:
        with self._session_factory() as session:
            session.add(obj)
            session.commit()
            return row_to_dict(obj)

    def profile(self, user_id: str, full_name: str | None = None, **extra: Any) -> dict[str, Any]:
        return self._add(Profile(user_id=user_id, full_name=full_name or user_id.title(), **extra))

    def post(
        self,
        author_id: str = USER_B,
        title: str = "How do I read a stack trace?",
        content: str = "The traceback goes on for pages and I am lost.",
        category: str = "question",
        **extra: Any,
    ) -> dict[str, Any]:
        extra.setdefault("created_at", self._stamp())
        extra.setdefault("tags", [])
        return self._add(Post(author_id=author_id, title=title, content=content, category=category, **extra))

    def comment(
        self,
        post_id: str,
        author_id: str = USER_B,
        content: str = "Start from the bottom.",
        parent_id: str | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        extra.setdefault("created_at", self._stamp())
        return self._add(
            Comment(post_id=post_id, author_id=author_id, content=content, parent_id=parent_id, **extra)
        )

    def vote(self, user_id: str, target_id: str, value: int, target_type: str = "post") -> dict[str, Any]:
        return self._add(Vote(user_id=user_id, target_id=target_id, target_type=target_type, value=value))

    def korum(
        self,
        name: str = "Compilers Club",
        members: dict[str, str] | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        members = members or {}
        extra.setdefault("created_at", self._stamp())
        extra.setdefault("type", "club")
        extra.setdefault("created_by", next(iter(members), USER_B))
        row = self._add(Korum(name=name, member_count=len(members), **extra))
        for user_id, role in members.items():
            self._add(KorumMember(korum_id=row["id"], user_id=user_id, role=role, joined_at=self._stamp()))
        return row

    def message(self, sender_id: str, content: str = "hello", **extra: Any) -> dict[str, Any]:
        extra.setdefault("created_at", self._stamp())
        return self._add(Message(sender_id=sender_id, content=content, **extra))

    def conversation(self, user_a: str, user_b: str) -> dict[str, Any]:
        one, two = sorted((user_a, user_b))
        return self._add(Conversation(participant_one=one, participant_two=two, last_message_at=self._stamp()))

    def notification(self, user_id: str = USER_A, **extra: Any) -> dict[str, Any]:
        extra.setdefault("created_at", self._stamp())
        extra.setdefault("type", "comment")
        return self._add(Notification(user_id=user_id, **extra))


@pytest.fixture()
def seed(session_factory: sessionmaker[Session]) -> Seeder:
    seeder = Seeder(session_factory)
    for user_id in (USER_A, USER_B, USER_C):
        seeder.profile(user_id)
    return seeder
