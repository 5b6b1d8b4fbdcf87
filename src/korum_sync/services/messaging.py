"""Direct and korum messaging: sends, reactions, pins and read receipts."""

from __future__ import annotations

import logging
from typing import Any

from korum_sync.core.errors import (
    AuthorizationError,
    MutationFailedError,
    SchemaMismatchError,
    SyncError,
    ValidationError,
)
from korum_sync.core.settings import Settings, settings
from korum_sync.schemas.common import PRIVILEGED_ROLES
from korum_sync.schemas.korum import Korum
from korum_sync.schemas.message import Message, PinnedMessage, Reaction
from korum_sync.store.base import (
    RPC_MARK_MESSAGES_READ,
    RPC_TOGGLE_REACTION,
    RPC_TOUCH_CONVERSATION,
    StoreClient,
    eq,
)

from .cache import CacheKey, EntityCache
from .conversations import ConversationResolver
from .locks import KeyedLocks
from .merge import merge_row
from .queries import QueryExecutor
from .validation import validate_message
from .views import MESSAGE_VIEWS, append_entity, capture_fields, patch_everywhere, restore_fields

# Configure logger for this module
logger = logging.getLogger(__name__)

MAX_EMOJI_LENGTH = 32


def toggled_reactions(reactions: tuple[Reaction, ...], emoji: str, user_id: str) -> tuple[Reaction, ...]:
    """Add the user's ``emoji`` reaction, or remove it if already present."""
    mine = Reaction(emoji=emoji, user_id=user_id)
    if mine in reactions:
        return tuple(reaction for reaction in reactions if reaction != mine)
    return (*reactions, mine)


class MessagingService:
    """Sends messages and manages reactions, pins and read state."""

    def __init__(
        self,
        cache: EntityCache,
        store: StoreClient,
        executor: QueryExecutor,
        resolver: ConversationResolver,
        user_id: str,
        config: Settings = settings,
    ) -> None:
        self._cache = cache
        self._store = store
        self._executor = executor
        self._resolver = resolver
        self._user_id = user_id
        self._config = config
        self._locks = KeyedLocks()

    async def _stored_message(self, row: dict[str, Any]) -> Message:
        profiles = await self._executor.profiles([self._user_id])
        message = merge_row(Message, row, "messages", sender=profiles.get(self._user_id))
        self._cache.mark_authoritative(message.id, message.version)
        return message

    async def send_direct_message(
        self,
        receiver_id: str,
        content: str,
        *,
        reply_to_id: str | None = None,
        attachment_url: str | None = None,
    ) -> Message:
        """Send a direct message, creating the conversation on first contact."""
        text = validate_message(content, self._config)
        conversation = await self._resolver.resolve_conversation(self._user_id, receiver_id)
        if reply_to_id is not None:
            await self._resolver.resolve_reply(reply_to_id, sender_id=self._user_id, receiver_id=receiver_id)

        row = await self._store.insert(
            "messages",
            {
                "sender_id": self._user_id,
                "receiver_id": receiver_id,
                "content": text,
                "reply_to_id": reply_to_id,
                "attachment_url": attachment_url,
            },
        )
        await self._store.rpc(RPC_TOUCH_CONVERSATION, {"conversation_id": conversation.id})
        message = await self._stored_message(row)
        self._cache.patch(CacheKey.messages(receiver_id), lambda thread: append_entity(thread, message))
        self._cache.invalidate(CacheKey.conversations())
        return message

    def _require_privileged(self, korum: Korum, action: str) -> None:
        if korum.user_role not in PRIVILEGED_ROLES:
            raise AuthorizationError("Only korum admins and moderators can do that", action=action)

    async def send_korum_message(
        self,
        korum_id: str,
        content: str,
        *,
        reply_to_id: str | None = None,
        attachment_url: str | None = None,
    ) -> Message:
        """Post to a korum's group chat.

        Membership and the admin-only-posting flag are checked against the
        cached korum before anything is sent; the store checks again.
        """
        text = validate_message(content, self._config)
        korum = await self._executor.korum(korum_id)
        if not korum.is_member:
            raise AuthorizationError("Join the korum to post messages", action="send_korum_message")
        if korum.admin_only_posting:
            self._require_privileged(korum, "send_korum_message")
        if reply_to_id is not None:
            await self._resolver.resolve_reply(reply_to_id, sender_id=self._user_id, korum_id=korum_id)

        row = await self._store.insert(
            "messages",
            {
                "sender_id": self._user_id,
                "korum_id": korum_id,
                "content": text,
                "reply_to_id": reply_to_id,
                "attachment_url": attachment_url,
            },
        )
        message = await self._stored_message(row)
        self._cache.patch(CacheKey.korum_messages(korum_id), lambda thread: append_entity(thread, message))
        return message

    async def toggle_reaction(self, message_id: str, emoji: str) -> tuple[Reaction, ...]:
        """Add or remove the user's reaction; counts follow the returned full list."""
        emoji = emoji.strip()
        if not emoji or len(emoji) > MAX_EMOJI_LENGTH:
            raise ValidationError("Reaction must be a single emoji", field_name="emoji")

        # At most one toggle per message in flight.
        async with self._locks.hold(message_id):
            captured = capture_fields(self._cache, MESSAGE_VIEWS, message_id, ("reactions",))
            patch_everywhere(
                self._cache,
                MESSAGE_VIEWS,
                message_id,
                lambda message: message.model_copy(
                    update={"reactions": toggled_reactions(message.reactions, emoji, self._user_id)}
                ),
            )

            self._cache.hold(message_id)
            try:
                result = await self._store.rpc(
                    RPC_TOGGLE_REACTION,
                    {"message_id": message_id, "user_id": self._user_id, "emoji": emoji},
                )
                items = result.get("reactions")
                if items is None:
                    raise SchemaMismatchError(
                        "Reaction toggle returned no reaction list", collection="message_reactions"
                    )
                reactions = tuple(merge_row(Reaction, item, "message_reactions") for item in items)
            except SyncError as exc:
                restore_fields(self._cache, captured, message_id)
                logger.warning("Reaction on message %s rolled back: %s", message_id, exc.message)
                raise MutationFailedError(f"Could not update your reaction: {exc.message}", exc) from exc
            else:
                confirmed: dict[str, Any] = {"reactions": reactions}
                if result.get("version") is not None:
                    confirmed["version"] = result["version"]
                patch_everywhere(
                    self._cache,
                    MESSAGE_VIEWS,
                    message_id,
                    lambda message: message.model_copy(update=confirmed),
                )
                self._cache.mark_authoritative(message_id, result.get("version"))
            finally:
                self._cache.release(message_id)
            return reactions

    async def pin_message(self, korum_id: str, message_id: str) -> PinnedMessage:
        korum = await self._executor.korum(korum_id)
        self._require_privileged(korum, "pin_message")
        message = await self._resolver.resolve_pin(korum_id, message_id)

        row = await self._store.insert(
            "korum_pinned_messages",
            {"korum_id": korum_id, "message_id": message_id, "pinned_by": self._user_id},
        )
        self._set_pinned(korum_id, message_id, True)
        return merge_row(
            PinnedMessage,
            row,
            "korum_pinned_messages",
            message=message.model_copy(update={"is_pinned": True}),
        )

    async def unpin_message(self, korum_id: str, message_id: str) -> bool:
        korum = await self._executor.korum(korum_id)
        self._require_privileged(korum, "unpin_message")
        removed = await self._store.delete(
            "korum_pinned_messages",
            [eq("korum_id", korum_id), eq("message_id", message_id)],
        )
        self._set_pinned(korum_id, message_id, False)
        return removed > 0

    def _set_pinned(self, korum_id: str, message_id: str, pinned: bool) -> None:
        self._cache.patch(
            CacheKey.korum_messages(korum_id),
            lambda thread: tuple(
                message.model_copy(update={"is_pinned": pinned}) if message.id == message_id else message
                for message in thread
            ),
        )
        self._cache.invalidate(CacheKey.pinned_messages(korum_id))

    async def mark_conversation_read(self, other_user_id: str) -> int:
        """Mark every message from ``other_user_id`` to the user as read."""
        result = await self._store.rpc(
            RPC_MARK_MESSAGES_READ,
            {"sender_id": other_user_id, "receiver_id": self._user_id},
        )
        self._cache.patch(
            CacheKey.messages(other_user_id),
            lambda thread: tuple(
                message.model_copy(update={"is_read": True})
                if message.sender_id == other_user_id and not message.is_read
                else message
                for message in thread
            ),
        )
        self._cache.patch(
            CacheKey.conversations(),
            lambda conversations: tuple(
                conversation.model_copy(update={"unread_count": 0})
                if other_user_id in conversation.pair
                else conversation
                for conversation in conversations
            ),
        )
        return int(result.get("updated", 0))
