"""Key-value store adapter used by every social component."""

from .base import (  # noqa: F401
    ABORT,
    KeyValueStore,
    MutationEvent,
    PushUnavailableError,
    StoreError,
    StoreUnavailableError,
    TransactionConflictError,
    TransactionResult,
)
from .factory import STORE_BACKENDS, create_store  # noqa: F401
from .feed import MutationFeed  # noqa: F401
from .memory import MemoryStore  # noqa: F401
from .redis import RedisStore  # noqa: F401
from .sql import SQLStore  # noqa: F401

__all__ = [
    "ABORT",
    "KeyValueStore",
    "MutationEvent",
    "MutationFeed",
    "MemoryStore",
    "SQLStore",
    "RedisStore",
    "STORE_BACKENDS",
    "create_store",
    "StoreError",
    "StoreUnavailableError",
    "TransactionConflictError",
    "PushUnavailableError",
    "TransactionResult",
]
