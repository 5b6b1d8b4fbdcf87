"""Optimistic vote coordinator.

Flow of ``cast_vote``:

1. Resolve the caller's current vote and apply the toggle rule
2. Capture the vote fields of every cached view holding the target, then
   apply the optimistic delta to those views
3. Send ``apply_vote`` to the store; calls for one target are serialized
4. On success, overwrite the views with the authoritative tallies
5. On failure, restore the views and raise ``MutationFailedError``
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from itertools import count
from typing import Any

from korum_sync.core.errors import ConflictError, MutationFailedError, SyncError, ValidationError
from korum_sync.schemas.vote import VoteTally
from korum_sync.store.base import RPC_APPLY_VOTE, StoreClient, eq

from .cache import CacheKey, EntityCache
from .merge import merge_row
from .views import (
    COMMENT_VIEWS,
    POST_VIEWS,
    capture_fields,
    find_entity,
    keys_containing,
    patch_everywhere,
    replace_entity,
    restore_fields,
)

# Configure logger for this module
logger = logging.getLogger(__name__)

VOTE_FIELDS = ("upvotes", "downvotes", "user_vote")
VALID_VOTES = (-1, 0, 1)

Refetch = Callable[[CacheKey], Awaitable[Any]]


def toggled_vote(current: int, desired: int) -> int:
    """Clicking the direction already chosen clears the vote."""
    return 0 if desired == current else desired


def vote_delta(upvotes: int, downvotes: int, old: int, new: int) -> tuple[int, int]:
    """Tentative tallies after the user's vote changes from ``old`` to ``new``."""
    upvotes = upvotes + (1 if new == 1 else 0) - (1 if old == 1 else 0)
    downvotes = downvotes + (1 if new == -1 else 0) - (1 if old == -1 else 0)
    return max(upvotes, 0), max(downvotes, 0)


def with_user_vote(entity: Any, new: int) -> Any:
    """Return ``entity`` with the user's vote moved to ``new`` and counts adjusted."""
    if entity.user_vote == new:
        return entity
    upvotes, downvotes = vote_delta(entity.upvotes, entity.downvotes, entity.user_vote, new)
    return entity.model_copy(update={"upvotes": upvotes, "downvotes": downvotes, "user_vote": new})


@dataclass
class _TargetState:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Outstanding calls in issue order: sequence number -> value sent.
    pending: dict[int, int] = field(default_factory=dict)
    confirmations: int = 0
    confirmed: VoteTally | None = None
    # Calls currently inside cast_vote for this target.
    users: int = 0


class VoteCoordinator:
    """Applies, reconciles and rolls back the current user's votes."""

    def __init__(
        self,
        cache: EntityCache,
        store: StoreClient,
        user_id: str,
        *,
        refetch: Refetch | None = None,
    ) -> None:
        self._cache = cache
        self._store = store
        self._user_id = user_id
        self._refetch = refetch
        self._targets: dict[tuple[str, str], _TargetState] = {}
        self._sequence = count(1)

    @staticmethod
    def _views(target_type: str) -> tuple[str, ...]:
        return POST_VIEWS if target_type == "post" else COMMENT_VIEWS

    def cached_vote(self, target_id: str, target_type: str) -> int | None:
        """Current user's vote as shown by the cache, pending votes included."""
        state = self._targets.get((target_type, target_id))
        if state is not None and state.pending:
            return next(reversed(state.pending.values()))
        for _, value in self._cache.entries(*self._views(target_type)):
            entity = find_entity(value, target_id)
            if entity is not None:
                return entity.user_vote
        return None

    async def _stored_vote(self, target_id: str, target_type: str) -> int:
        rows = await self._store.select(
            "votes",
            [eq("user_id", self._user_id), eq("target_id", target_id), eq("target_type", target_type)],
            limit=1,
        )
        return int(rows[0]["value"]) if rows else 0

    def pending_votes(self, target_id: str, target_type: str) -> int:
        state = self._targets.get((target_type, target_id))
        return len(state.pending) if state is not None else 0

    def overlay(self, key: CacheKey, value: Any) -> Any:
        """Re-apply still-pending votes to a freshly fetched view."""
        for (target_type, target_id), state in self._targets.items():
            if not state.pending or key.collection not in self._views(target_type):
                continue
            latest = next(reversed(state.pending.values()))
            value = replace_entity(value, target_id, lambda entity, latest=latest: with_user_vote(entity, latest))
        return value

    async def cast_vote(self, target_id: str, target_type: str, desired: int) -> VoteTally:
        """Cast, change or retract the current user's vote on a post or comment.

        Args:
            target_id: Post or comment id
            target_type: ``"post"`` or ``"comment"``
            desired: -1, 0 or 1; repeating the current value retracts it

        Returns:
            The authoritative tallies confirmed by the store

        Raises:
            ValidationError: For an invalid target type or vote value
            MutationFailedError: When the store rejected the vote; the cached
                views have been restored
        """
        if target_type not in ("post", "comment"):
            raise ValidationError("target_type must be 'post' or 'comment'", field_name="target_type")
        if desired not in VALID_VOTES:
            raise ValidationError("Vote value must be -1, 0 or 1", field_name="value")

        key = (target_type, target_id)
        state = self._targets.setdefault(key, _TargetState())
        state.users += 1
        try:
            return await self._cast(target_id, target_type, state, desired)
        finally:
            state.users -= 1
            if not state.users:
                del self._targets[key]

    async def _cast(self, target_id: str, target_type: str, state: _TargetState, desired: int) -> VoteTally:
        current = self.cached_vote(target_id, target_type)
        if current is None:
            # Nothing on screen to update optimistically; resolve and send in one step.
            async with state.lock:
                current = self.cached_vote(target_id, target_type)
                if current is None:
                    current = await self._stored_vote(target_id, target_type)
                new_value = toggled_vote(current, desired)
                seq = self._register(state, new_value)
                return await self._send(target_id, target_type, state, seq, new_value, {}, state.confirmations)

        new_value = toggled_vote(current, desired)
        seq = self._register(state, new_value)
        # Snapshot after any earlier optimistic update, before this one.
        captured = capture_fields(self._cache, self._views(target_type), target_id, VOTE_FIELDS)
        epoch = state.confirmations
        patch_everywhere(
            self._cache,
            self._views(target_type),
            target_id,
            lambda entity: with_user_vote(entity, new_value),
        )
        logger.debug("Optimistic vote %s on %s %s", new_value, target_type, target_id)

        self._cache.hold(target_id)
        try:
            async with state.lock:
                return await self._send(target_id, target_type, state, seq, new_value, captured, epoch)
        finally:
            self._cache.release(target_id)

    def _register(self, state: _TargetState, value: int) -> int:
        seq = next(self._sequence)
        state.pending[seq] = value
        return seq

    async def _send(
        self,
        target_id: str,
        target_type: str,
        state: _TargetState,
        seq: int,
        value: int,
        captured: dict[CacheKey, dict[str, Any]],
        epoch: int,
    ) -> VoteTally:
        params = {
            "user_id": self._user_id,
            "target_id": target_id,
            "target_type": target_type,
            "value": value,
        }
        try:
            result = await self._store.rpc(RPC_APPLY_VOTE, params)
            tally = merge_row(VoteTally, {"target_id": target_id, "target_type": target_type, **result}, "votes")
        except SyncError as exc:
            state.pending.pop(seq, None)
            self._rollback(target_id, target_type, state, captured, epoch)
            logger.warning("Vote on %s %s rolled back: %s", target_type, target_id, exc.message)
            if isinstance(exc, ConflictError):
                await self._force_refetch(target_id, target_type)
            raise MutationFailedError(f"Could not record your vote: {exc.message}", exc) from exc

        state.pending.pop(seq, None)
        state.confirmations += 1
        state.confirmed = tally
        self._cache.mark_authoritative(target_id, tally.version)
        self._show(target_id, target_type, state, tally)
        return tally

    def _show(self, target_id: str, target_type: str, state: _TargetState, tally: VoteTally) -> None:
        authoritative = {"upvotes": tally.upvotes, "downvotes": tally.downvotes, "user_vote": tally.user_vote}
        if tally.version is not None:
            authoritative["version"] = tally.version
        patch_everywhere(
            self._cache,
            self._views(target_type),
            target_id,
            lambda entity: entity.model_copy(update=authoritative),
        )
        self._reapply_pending(target_id, target_type, state)

    def _reapply_pending(self, target_id: str, target_type: str, state: _TargetState) -> None:
        if not state.pending:
            return
        latest = next(reversed(state.pending.values()))
        patch_everywhere(
            self._cache,
            self._views(target_type),
            target_id,
            lambda entity: with_user_vote(entity, latest),
        )

    def _rollback(
        self,
        target_id: str,
        target_type: str,
        state: _TargetState,
        captured: dict[CacheKey, dict[str, Any]],
        epoch: int,
    ) -> None:
        if state.confirmations != epoch and state.confirmed is not None:
            # An earlier call was confirmed after our snapshot; it is newer truth.
            self._show(target_id, target_type, state, state.confirmed)
            return
        restore_fields(self._cache, captured, target_id)
        self._reapply_pending(target_id, target_type, state)

    async def _force_refetch(self, target_id: str, target_type: str) -> None:
        keys = keys_containing(self._cache, self._views(target_type), target_id)
        for key in keys:
            self._cache.invalidate(key)
        if self._refetch is None:
            return
        for key in keys:
            try:
                await self._refetch(key)
            except SyncError as exc:
                logger.warning("Refetch of %s after vote conflict failed: %s", key, exc.message)
