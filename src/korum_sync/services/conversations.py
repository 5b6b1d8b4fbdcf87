"""Canonical identities for conversations, replies and pins."""

from __future__ import annotations

import asyncio
import logging

from korum_sync.core.errors import NotFoundError, ValidationError
from korum_sync.schemas.message import Conversation, Message
from korum_sync.store.base import RPC_FIND_OR_CREATE_CONVERSATION, StoreClient, eq

from .cache import CacheKey, EntityCache
from .merge import merge_row
from .views import MESSAGE_VIEWS, find_entity

# Configure logger for this module
logger = logging.getLogger(__name__)


def canonical_pair(user_a: str, user_b: str) -> tuple[str, str]:
    """Order two participant ids so either argument order gives one identity."""
    if not user_a or not user_b:
        raise ValidationError("Both participants are required", field_name="participant")
    if user_a == user_b:
        raise ValidationError("A conversation needs two distinct participants", field_name="participant")
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


class ConversationResolver:
    """Finds or creates the single conversation for a pair of users.

    Creation is delegated to the store's atomic ``find_or_create_conversation``
    keyed on the canonical pair. Concurrent callers in this client share one
    request; concurrent callers in other clients are settled by the store's
    uniqueness rule.
    """

    def __init__(self, cache: EntityCache, store: StoreClient) -> None:
        self._cache = cache
        self._store = store
        self._inflight: dict[tuple[str, str], asyncio.Future[Conversation]] = {}

    async def resolve_conversation(self, user_a: str, user_b: str) -> Conversation:
        pair = canonical_pair(user_a, user_b)
        key = CacheKey.conversation(*pair)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        future = self._inflight.get(pair)
        if future is None:
            future = asyncio.ensure_future(self._find_or_create(pair))
            self._inflight[pair] = future
            future.add_done_callback(lambda _: self._inflight.pop(pair, None))
        return await asyncio.shield(future)

    async def _find_or_create(self, pair: tuple[str, str]) -> Conversation:
        row = await self._store.rpc(
            RPC_FIND_OR_CREATE_CONVERSATION,
            {"participant_one": pair[0], "participant_two": pair[1]},
        )
        conversation = merge_row(Conversation, row, "conversations")
        if conversation.pair != pair:
            raise ValidationError(
                f"Store returned conversation {conversation.id} for a different pair",
                field_name="participant",
            )
        self._cache.set(CacheKey.conversation(*pair), conversation)
        if row.get("created"):
            logger.info("Created conversation %s for %s/%s", conversation.id, *pair)
            self._cache.invalidate(CacheKey.conversations())
        return conversation

    async def _message(self, message_id: str) -> Message:
        for _, value in self._cache.entries(*MESSAGE_VIEWS):
            cached = find_entity(value, message_id)
            if cached is not None:
                return cached
        rows = await self._store.select("messages", [eq("id", message_id)], limit=1)
        if not rows:
            raise NotFoundError("Message not found", collection="messages", entity_id=message_id)
        return merge_row(Message, rows[0], "messages")

    async def resolve_reply(
        self,
        reply_to_id: str,
        *,
        sender_id: str,
        receiver_id: str | None = None,
        korum_id: str | None = None,
    ) -> Message:
        """Return the replied-to message after checking it shares the new message's scope."""
        target = await self._message(reply_to_id)
        if korum_id is not None:
            if target.korum_id != korum_id:
                raise ValidationError("Replies must stay within the same korum", field_name="reply_to_id")
            return target
        if receiver_id is None or target.receiver_id is None:
            raise ValidationError("Replies must stay within the same conversation", field_name="reply_to_id")
        if canonical_pair(target.sender_id, target.receiver_id) != canonical_pair(sender_id, receiver_id):
            raise ValidationError("Replies must stay within the same conversation", field_name="reply_to_id")
        return target

    async def resolve_pin(self, korum_id: str, message_id: str) -> Message:
        """Return the message to pin, which must be a message of ``korum_id``."""
        target = await self._message(message_id)
        if target.korum_id is None:
            raise ValidationError("Only korum messages can be pinned", field_name="message_id")
        if target.korum_id != korum_id:
            raise ValidationError("Message belongs to a different korum", field_name="message_id")
        return target
