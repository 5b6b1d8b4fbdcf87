"""Korum creation and optimistic membership changes."""

from __future__ import annotations

import logging
from typing import Any

from korum_sync.core.errors import ConflictError, MutationFailedError, SyncError
from korum_sync.core.settings import Settings, settings
from korum_sync.schemas.korum import Korum, KorumCreate
from korum_sync.store.base import RPC_JOIN_KORUM, RPC_LEAVE_KORUM, StoreClient

from .cache import CacheKey, EntityCache
from .locks import KeyedLocks
from .merge import merge_row
from .queries import QueryExecutor
from .validation import validate_korum
from .views import KORUM_VIEWS, capture_fields, find_entity, keys_containing, patch_everywhere, restore_fields

# Configure logger for this module
logger = logging.getLogger(__name__)

MEMBERSHIP_FIELDS = ("is_member", "user_role", "member_count")


class KorumService:
    """Creates korums and joins or leaves them for the current user."""

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
        self._locks = KeyedLocks()

    async def create_korum(self, data: KorumCreate | dict[str, Any]) -> Korum:
        """Create a korum with the current user as its admin."""
        korum = validate_korum(data, self._config)
        row = await self._store.insert(
            "korums",
            {
                "name": korum.name,
                "description": korum.description,
                "type": korum.type,
                "is_private": korum.is_private,
                "admin_only_posting": korum.admin_only_posting,
                "created_by": self._user_id,
                "member_count": 0,
            },
        )
        joined = await self._store.rpc(
            RPC_JOIN_KORUM,
            {"korum_id": row["id"], "user_id": self._user_id, "role": "admin"},
        )
        created = merge_row(
            Korum,
            {**row, "member_count": joined["member_count"], "version": joined.get("version", row.get("version"))},
            "korums",
            is_member=True,
            user_role="admin",
        )
        self._cache.set(CacheKey.korum(created.id), created)
        self._cache.mark_authoritative(created.id, created.version)
        self._cache.invalidate(CacheKey.korums())
        logger.info("Created korum %s", created.id)
        return created

    def _cached(self, korum_id: str) -> Korum | None:
        for _, value in self._cache.entries(*KORUM_VIEWS):
            korum = find_entity(value, korum_id)
            if korum is not None:
                return korum
        return None

    async def join_korum(self, korum_id: str) -> Korum | None:
        return await self._change_membership(korum_id, joining=True)

    async def leave_korum(self, korum_id: str) -> Korum | None:
        return await self._change_membership(korum_id, joining=False)

    async def _change_membership(self, korum_id: str, *, joining: bool) -> Korum | None:
        async with self._locks.hold(korum_id):
            current = self._cached(korum_id)
            if current is not None and current.is_member == joining:
                return current

            captured = capture_fields(self._cache, KORUM_VIEWS, korum_id, MEMBERSHIP_FIELDS)
            step = 1 if joining else -1
            patch_everywhere(
                self._cache,
                KORUM_VIEWS,
                korum_id,
                lambda korum: korum.model_copy(
                    update={
                        "is_member": joining,
                        "user_role": "member" if joining else None,
                        "member_count": max(korum.member_count + step, 0),
                    }
                ),
            )

            self._cache.hold(korum_id)
            try:
                result = await self._store.rpc(
                    RPC_JOIN_KORUM if joining else RPC_LEAVE_KORUM,
                    {"korum_id": korum_id, "user_id": self._user_id},
                )
            except SyncError as exc:
                restore_fields(self._cache, captured, korum_id)
                action = "join" if joining else "leave"
                logger.warning("Could not %s korum %s: %s", action, korum_id, exc.message)
                if isinstance(exc, ConflictError):
                    for key in keys_containing(self._cache, KORUM_VIEWS, korum_id):
                        await self._executor.refetch(key)
                raise MutationFailedError(f"Could not {action} the korum: {exc.message}", exc) from exc
            else:
                authoritative = {
                    "is_member": joining,
                    "user_role": result.get("role") if joining else None,
                    "member_count": result["member_count"],
                }
                if result.get("version") is not None:
                    authoritative["version"] = result["version"]
                patch_everywhere(
                    self._cache,
                    KORUM_VIEWS,
                    korum_id,
                    lambda korum: korum.model_copy(update=authoritative),
                )
                self._cache.mark_authoritative(korum_id, result.get("version"))
            finally:
                self._cache.release(korum_id)

        self._cache.invalidate(CacheKey.korum_members(korum_id))
        return self._cached(korum_id)
