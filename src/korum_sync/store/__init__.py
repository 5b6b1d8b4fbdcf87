"""External store clients used by the sync core."""

from __future__ import annotations

from korum_sync.core.settings import Settings, settings
from korum_sync.db.session import create_tables, make_engine, make_session_factory

from .base import AllOf, AnyOf, Filter, Order, StoreChannel, StoreClient, eq, in_
from .http import HttpStore
from .sql import SqlStore


def build_store(config: Settings | None = None) -> StoreClient:
    """Build the store selected by ``KORUM_STORE_BACKEND``."""
    config = config or settings
    if config.store_backend == "http":
        return HttpStore(config)

    engine = make_engine(config.database_url, echo=config.sql_debug)
    create_tables(engine)
    return SqlStore(make_session_factory(engine))


__all__ = [
    "AllOf",
    "AnyOf",
    "Filter",
    "Order",
    "StoreChannel",
    "StoreClient",
    "eq",
    "in_",
    "HttpStore",
    "SqlStore",
    "build_store",
]
