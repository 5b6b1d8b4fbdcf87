"""Client-side synchronization core for the Korum social platform.

The package keeps a local cache of posts, comments, votes, conversations and
messages consistent across optimistic local mutations, confirmations from the
remote store and realtime change events pushed by other clients.
"""

__version__ = "0.1.0"

from .client import KorumSyncClient
from .core.errors import (
    AuthorizationError,
    ChannelDisruptedError,
    ConflictError,
    MutationFailedError,
    NotFoundError,
    SchemaMismatchError,
    SyncError,
    TransientStoreError,
    ValidationError,
)
from .services.cache import CacheKey, EntityCache

__all__ = [
    "__version__",
    "KorumSyncClient",
    "CacheKey",
    "EntityCache",
    "SyncError",
    "ValidationError",
    "AuthorizationError",
    "ConflictError",
    "TransientStoreError",
    "ChannelDisruptedError",
    "SchemaMismatchError",
    "NotFoundError",
    "MutationFailedError",
]
