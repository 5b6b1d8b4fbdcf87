"""SQLAlchemy-backed reference implementation of the store contract.

Every named operation runs in a single transaction and recomputes aggregates
from the underlying rows, the way server-side triggers would. Committed
writes are published to an in-process change feed so realtime channels see
them exactly as a remote subscriber would.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

from sqlalchemy import and_, func, inspect, or_, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from korum_sync.core.errors import (
    AuthorizationError,
    ChannelDisruptedError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from korum_sync.db.time import utcnow
from korum_sync.models import (
    TABLES,
    Comment,
    Conversation,
    Korum,
    KorumMember,
    Message,
    MessageReaction,
    PinnedMessage,
    Post,
    Vote,
)
from korum_sync.schemas.common import PRIVILEGED_ROLES
from korum_sync.schemas.events import ChangeEvent

from .base import (
    RPC_APPLY_VOTE,
    RPC_FIND_OR_CREATE_CONVERSATION,
    RPC_INCREMENT_COMMENT_COUNT,
    RPC_JOIN_KORUM,
    RPC_LEAVE_KORUM,
    RPC_MARK_MESSAGES_READ,
    RPC_TOGGLE_REACTION,
    RPC_TOUCH_CONVERSATION,
    AllOf,
    AnyOf,
    Filter,
    Order,
    Predicate,
    StoreChannel,
    StoreClient,
)

# Configure logger for this module
logger = logging.getLogger(__name__)

_CLOSED = object()
_DISCONNECTED = object()


def row_to_dict(obj: Any) -> dict[str, Any]:
    """Convert an ORM instance into a plain column dictionary."""
    return {attr.key: getattr(obj, attr.key) for attr in inspect(obj).mapper.column_attrs}


def _primary_key(obj: Any) -> dict[str, Any]:
    mapper = inspect(obj).mapper
    return {column.key: getattr(obj, column.key) for column in mapper.primary_key}


class QueueChannel(StoreChannel):
    """In-process channel fed by ``ChangeFeed``."""

    def __init__(self, feed: ChangeFeed, table: str, row_filter: Filter | None = None) -> None:
        super().__init__(table, row_filter)
        self._feed = feed
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False

    def offer(self, event: ChangeEvent) -> None:
        if self.closed or event.table != self.table:
            return
        if self.row_filter is not None and not self.row_filter.matches(event.record or event.key):
            return
        self._queue.put_nowait(event)

    def disconnect(self) -> None:
        """Simulate a dropped connection; the next read raises."""
        self._queue.put_nowait(_DISCONNECTED)

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        while not self.closed:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            if item is _DISCONNECTED:
                self.closed = True
                self._feed.discard(self)
                raise ChannelDisruptedError("Realtime channel disconnected", scope=self.table)
            yield item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed.discard(self)
        self._queue.put_nowait(_CLOSED)


class ChangeFeed:
    """Fan-out of committed changes to open channels."""

    def __init__(self) -> None:
        self._channels: list[QueueChannel] = []

    def open(self, table: str, row_filter: Filter | None = None) -> QueueChannel:
        channel = QueueChannel(self, table, row_filter)
        self._channels.append(channel)
        return channel

    def discard(self, channel: QueueChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def publish(self, event: ChangeEvent) -> None:
        for channel in list(self._channels):
            channel.offer(event)

    def disconnect_all(self) -> None:
        for channel in list(self._channels):
            channel.disconnect()

    async def close_all(self) -> None:
        for channel in list(self._channels):
            await channel.close()

    @property
    def open_count(self) -> int:
        return len(self._channels)


class SqlStore(StoreClient):
    """Store contract implemented over a SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        public_url: str = "memory://objects",
    ) -> None:
        self._session_factory = session_factory
        self._public_url = public_url.rstrip("/")
        self.feed = ChangeFeed()
        self.objects: dict[tuple[str, str], bytes] = {}
        self._rpcs = {
            RPC_APPLY_VOTE: self._apply_vote,
            RPC_INCREMENT_COMMENT_COUNT: self._increment_comment_count,
            RPC_JOIN_KORUM: self._join_korum,
            RPC_LEAVE_KORUM: self._leave_korum,
            RPC_FIND_OR_CREATE_CONVERSATION: self._find_or_create_conversation,
            RPC_TOUCH_CONVERSATION: self._touch_conversation,
            RPC_TOGGLE_REACTION: self._toggle_reaction,
            RPC_MARK_MESSAGES_READ: self._mark_messages_read,
        }

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _model(collection: str) -> Any:
        try:
            return TABLES[collection]
        except KeyError as exc:
            raise ValidationError(f"Unknown collection '{collection}'", field_name="collection") from exc

    def _clause(self, model: Any, predicate: Predicate) -> Any:
        if isinstance(predicate, AnyOf):
            return or_(*(self._clause(model, item) for item in predicate.filters))
        if isinstance(predicate, AllOf):
            return and_(*(self._clause(model, item) for item in predicate.filters))

        column = getattr(model, predicate.column)
        if predicate.op == "eq":
            return column == predicate.value
        if predicate.op == "neq":
            return column != predicate.value
        if predicate.op == "in":
            return column.in_(list(predicate.value))
        if predicate.op == "ilike":
            return column.ilike(f"%{predicate.value}%")
        if predicate.op == "is_null":
            return column.is_(None) if predicate.value else column.is_not(None)
        if predicate.op == "gt":
            return column > predicate.value
        raise ValidationError(f"Filter op '{predicate.op}' is not supported in SQL", field_name="op")

    def _query(self, model: Any, filters: Sequence[Predicate]) -> tuple[Any, list[Predicate]]:
        # JSON containment has no portable SQL form; it is applied after loading.
        stmt = select(model)
        deferred: list[Predicate] = []
        for predicate in filters:
            if isinstance(predicate, Filter) and predicate.op == "contains":
                deferred.append(predicate)
            else:
                stmt = stmt.where(self._clause(model, predicate))
        return stmt, deferred

    def _publish(self, operation: str, collection: str, obj: Any) -> None:
        record = row_to_dict(obj)
        event = ChangeEvent(
            operation=operation,  # type: ignore[arg-type]
            table=collection,
            key=_primary_key(obj),
            record=record,
            version=record.get("version"),
            committed_at=utcnow(),
        )
        self.feed.publish(event)

    @staticmethod
    def _bump(obj: Any) -> None:
        if hasattr(obj, "version"):
            obj.version = (obj.version or 0) + 1

    async def _run(self, work: Any, *args: Any) -> Any:
        # Yield first so concurrent callers interleave as they would over a network.
        await asyncio.sleep(0)
        with self._session_factory() as session:
            try:
                return work(session, *args)
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"Write rejected by a uniqueness or integrity rule: {exc.orig}") from exc
            except OperationalError as exc:
                session.rollback()
                raise TransientStoreError(f"Store unavailable: {exc.orig}") from exc
            except SQLAlchemyError as exc:
                session.rollback()
                raise TransientStoreError(f"Store request failed: {exc}") from exc

    # ------------------------------------------------------------------
    # generic table access
    # ------------------------------------------------------------------

    async def select(
        self,
        collection: str,
        filters: Sequence[Predicate] = (),
        order: Sequence[Order] = (),
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        model = self._model(collection)

        def work(session: Session) -> list[dict[str, Any]]:
            stmt, deferred = self._query(model, filters)
            for item in order:
                column = getattr(model, item.column)
                stmt = stmt.order_by(column.desc() if item.descending else column.asc())
            if limit is not None and not deferred:
                stmt = stmt.limit(limit)
            rows = [row_to_dict(obj) for obj in session.scalars(stmt)]
            if deferred:
                rows = [row for row in rows if all(p.matches(row) for p in deferred)]
                if limit is not None:
                    rows = rows[:limit]
            return rows

        return await self._run(work)

    async def insert(self, collection: str, values: Mapping[str, Any]) -> dict[str, Any]:
        model = self._model(collection)

        def work(session: Session) -> dict[str, Any]:
            self._authorize_insert(session, collection, values)
            try:
                obj = model(**dict(values))
            except TypeError as exc:
                raise ValidationError(f"Invalid columns for '{collection}': {exc}") from exc
            session.add(obj)
            session.commit()
            self._publish("insert", collection, obj)
            return row_to_dict(obj)

        return await self._run(work)

    def _authorize_insert(self, session: Session, collection: str, values: Mapping[str, Any]) -> None:
        if collection == "messages" and values.get("korum_id"):
            korum = session.get(Korum, values["korum_id"])
            if korum is None:
                raise NotFoundError("Korum not found", collection="korums", entity_id=values["korum_id"])
            if korum.admin_only_posting:
                role = self._role(session, korum.id, values.get("sender_id"))
                if role not in PRIVILEGED_ROLES:
                    raise AuthorizationError(
                        "Only admins and moderators can post in this korum",
                        action="send_korum_message",
                    )
        elif collection == "korum_pinned_messages":
            role = self._role(session, values.get("korum_id"), values.get("pinned_by"))
            if role not in PRIVILEGED_ROLES:
                raise AuthorizationError(
                    "Only admins and moderators can pin messages",
                    action="pin_message",
                )

    @staticmethod
    def _role(session: Session, korum_id: Any, user_id: Any) -> str | None:
        member = session.get(KorumMember, (korum_id, user_id))
        return member.role if member else None

    async def update(
        self,
        collection: str,
        filters: Sequence[Predicate],
        values: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        model = self._model(collection)

        def work(session: Session) -> list[dict[str, Any]]:
            stmt, deferred = self._query(model, filters)
            changed = [
                obj for obj in session.scalars(stmt)
                if all(p.matches(row_to_dict(obj)) for p in deferred)
            ]
            for obj in changed:
                for column, value in values.items():
                    setattr(obj, column, value)
                self._bump(obj)
            session.commit()
            for obj in changed:
                self._publish("update", collection, obj)
            return [row_to_dict(obj) for obj in changed]

        return await self._run(work)

    async def delete(self, collection: str, filters: Sequence[Predicate]) -> int:
        model = self._model(collection)

        def work(session: Session) -> int:
            stmt, deferred = self._query(model, filters)
            doomed = [
                obj for obj in session.scalars(stmt)
                if all(p.matches(row_to_dict(obj)) for p in deferred)
            ]
            for obj in doomed:
                session.delete(obj)
            session.commit()
            for obj in doomed:
                self._publish("delete", collection, obj)
            return len(doomed)

        return await self._run(work)

    # ------------------------------------------------------------------
    # named atomic operations
    # ------------------------------------------------------------------

    async def rpc(self, name: str, params: Mapping[str, Any]) -> dict[str, Any]:
        handler = self._rpcs.get(name)
        if handler is None:
            raise ValidationError(f"Unknown operation '{name}'", field_name="rpc")
        return await self._run(handler, dict(params))

    def _apply_vote(self, session: Session, params: dict[str, Any]) -> dict[str, Any]:
        target_type = params["target_type"]
        value = int(params["value"])
        if target_type not in ("post", "comment"):
            raise ValidationError("target_type must be 'post' or 'comment'", field_name="target_type")
        if value not in (-1, 0, 1):
            raise ValidationError("vote value must be -1, 0 or 1", field_name="value")

        model = Post if target_type == "post" else Comment
        collection = "posts" if target_type == "post" else "comments"
        target = session.get(model, params["target_id"])
        if target is None:
            raise ConflictError(
                "Vote target no longer exists",
                collection=collection,
                entity_id=params["target_id"],
            )

        key = (params["user_id"], params["target_id"], target_type)
        existing = session.get(Vote, key)
        if value == 0:
            if existing is not None:
                session.delete(existing)
        elif existing is not None:
            existing.value = value
        else:
            session.add(Vote(user_id=key[0], target_id=key[1], target_type=key[2], value=value))
        session.flush()

        # Tallies always come from the full vote set, never from increments.
        counts = dict(
            session.execute(
                select(Vote.value, func.count())
                .where(Vote.target_id == target.id, Vote.target_type == target_type)
                .group_by(Vote.value)
            ).all()
        )
        target.upvotes = int(counts.get(1, 0))
        target.downvotes = int(counts.get(-1, 0))
        self._bump(target)
        session.commit()
        self._publish("update", collection, target)
        return {
            "target_id": target.id,
            "target_type": target_type,
            "upvotes": target.upvotes,
            "downvotes": target.downvotes,
            "user_vote": value,
            "version": target.version,
        }

    def _increment_comment_count(self, session: Session, params: dict[str, Any]) -> dict[str, Any]:
        post = session.get(Post, params["post_id"])
        if post is None:
            raise ConflictError("Post no longer exists", collection="posts", entity_id=params["post_id"])
        post.comment_count = session.scalar(
            select(func.count()).select_from(Comment).where(Comment.post_id == post.id)
        ) or 0
        self._bump(post)
        session.commit()
        self._publish("update", "posts", post)
        return {"post_id": post.id, "comment_count": post.comment_count, "version": post.version}

    def _member_count(self, session: Session, korum: Korum) -> int:
        return session.scalar(
            select(func.count()).select_from(KorumMember).where(KorumMember.korum_id == korum.id)
        ) or 0

    def _join_korum(self, session: Session, params: dict[str, Any]) -> dict[str, Any]:
        korum = session.get(Korum, params["korum_id"])
        if korum is None:
            raise ConflictError("Korum no longer exists", collection="korums", entity_id=params["korum_id"])
        member = session.get(KorumMember, (korum.id, params["user_id"]))
        joined = member is None
        if joined:
            member = KorumMember(korum_id=korum.id, user_id=params["user_id"], role=params.get("role", "member"))
            session.add(member)
            session.flush()
        korum.member_count = self._member_count(session, korum)
        self._bump(korum)
        session.commit()
        if joined:
            self._publish("insert", "korum_members", member)
        self._publish("update", "korums", korum)
        return {
            "korum_id": korum.id,
            "member_count": korum.member_count,
            "role": member.role,
            "version": korum.version,
        }

    def _leave_korum(self, session: Session, params: dict[str, Any]) -> dict[str, Any]:
        korum = session.get(Korum, params["korum_id"])
        if korum is None:
            raise ConflictError("Korum no longer exists", collection="korums", entity_id=params["korum_id"])
        member = session.get(KorumMember, (korum.id, params["user_id"]))
        removed = row_to_dict(member) if member is not None else None
        if member is not None:
            session.delete(member)
            session.flush()
        korum.member_count = self._member_count(session, korum)
        self._bump(korum)
        session.commit()
        if removed is not None:
            self.feed.publish(
                ChangeEvent(
                    operation="delete",
                    table="korum_members",
                    key={"korum_id": korum.id, "user_id": params["user_id"]},
                    record=removed,
                    committed_at=utcnow(),
                )
            )
        self._publish("update", "korums", korum)
        return {
            "korum_id": korum.id,
            "member_count": korum.member_count,
            "role": None,
            "version": korum.version,
        }

    def _find_or_create_conversation(self, session: Session, params: dict[str, Any]) -> dict[str, Any]:
        one, two = sorted((params["participant_one"], params["participant_two"]))
        if one == two:
            raise ValidationError("A conversation needs two distinct participants", field_name="participant_two")

        def lookup() -> Conversation | None:
            return session.scalar(
                select(Conversation).where(
                    Conversation.participant_one == one,
                    Conversation.participant_two == two,
                )
            )

        existing = lookup()
        if existing is not None:
            return {**row_to_dict(existing), "created": False}

        conversation = Conversation(participant_one=one, participant_two=two)
        session.add(conversation)
        try:
            session.commit()
        except IntegrityError:
            # Another writer created the pair first; the unique constraint wins.
            session.rollback()
            existing = lookup()
            if existing is None:
                raise
            return {**row_to_dict(existing), "created": False}
        self._publish("insert", "conversations", conversation)
        return {**row_to_dict(conversation), "created": True}

    def _touch_conversation(self, session: Session, params: dict[str, Any]) -> dict[str, Any]:
        conversation = session.get(Conversation, params["conversation_id"])
        if conversation is None:
            raise NotFoundError(
                "Conversation not found",
                collection="conversations",
                entity_id=params["conversation_id"],
            )
        conversation.last_message_at = utcnow()
        session.commit()
        self._publish("update", "conversations", conversation)
        return row_to_dict(conversation)

    def _toggle_reaction(self, session: Session, params: dict[str, Any]) -> dict[str, Any]:
        message = session.get(Message, params["message_id"])
        if message is None:
            raise ConflictError("Message no longer exists", collection="messages", entity_id=params["message_id"])
        key = (message.id, params["user_id"], params["emoji"])
        reaction = session.get(MessageReaction, key)
        if reaction is None:
            reaction = MessageReaction(message_id=key[0], user_id=key[1], emoji=key[2])
            session.add(reaction)
            operation = "insert"
        else:
            session.delete(reaction)
            operation = "delete"
        self._bump(message)
        session.commit()
        self.feed.publish(
            ChangeEvent(
                operation=operation,  # type: ignore[arg-type]
                table="message_reactions",
                key={"message_id": key[0], "user_id": key[1], "emoji": key[2]},
                record={"message_id": key[0], "user_id": key[1], "emoji": key[2], "korum_id": message.korum_id},
                committed_at=utcnow(),
            )
        )
        reactions = session.scalars(
            select(MessageReaction)
            .where(MessageReaction.message_id == message.id)
            .order_by(MessageReaction.created_at)
        ).all()
        return {
            "message_id": message.id,
            "reactions": [{"emoji": r.emoji, "user_id": r.user_id} for r in reactions],
            "version": message.version,
        }

    def _mark_messages_read(self, session: Session, params: dict[str, Any]) -> dict[str, Any]:
        unread = session.scalars(
            select(Message).where(
                Message.sender_id == params["sender_id"],
                Message.receiver_id == params["receiver_id"],
                Message.is_read.is_(False),
            )
        ).all()
        for message in unread:
            message.is_read = True
            self._bump(message)
        session.commit()
        for message in unread:
            self._publish("update", "messages", message)
        return {"updated": len(unread)}

    # ------------------------------------------------------------------
    # realtime and objects
    # ------------------------------------------------------------------

    async def open_channel(self, table: str, row_filter: Filter | None = None) -> StoreChannel:
        self._model(table)
        await asyncio.sleep(0)
        return self.feed.open(table, row_filter)

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        self.objects[(bucket, path)] = bytes(data)
        return f"{self._public_url}/{bucket}/{path}"

    async def close(self) -> None:
        await self.feed.close_all()
