from __future__ import annotations

import logging

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from fortized.realtime.transport import RelayTransport

from .base import KeyValueStore
from .feed import MutationFeed
from .memory import MemoryStore
from .redis import RedisStore
from .sql import SQLStore

logger = logging.getLogger(__name__)

STORE_BACKENDS = ("memory", "sql", "redis")


def create_store(
    backend: str,
    *,
    database_url: str | None = None,
    redis_url: str | None = None,
    namespace: str = "fortized",
    transport: RelayTransport | None = None,
    relay_backend: str | None = None,
    max_retries: int = 25,
) -> KeyValueStore:
    """Build the store selected by *backend*.

    A relay *transport* turns on cross-node push for the shared backends. A
    SQL store without one is poll-only, since other writers would never be
    seen by this process's watchers.
    """

    name = backend.strip().lower()
    if name not in STORE_BACKENDS:
        raise ValueError(f"Unknown store backend '{backend}'; expected one of {', '.join(STORE_BACKENDS)}")

    if name == "memory":
        return MemoryStore()

    feed = MutationFeed(transport, backend=relay_backend) if transport is not None else None

    if name == "sql":
        if not database_url:
            raise ValueError("database_url is required for the sql store backend")
        if database_url.startswith("sqlite") and ":memory:" in database_url:
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                future=True,
            )
            store = SQLStore(engine, feed=feed, push=feed is not None, max_retries=max_retries)
        else:
            store = SQLStore.from_url(
                database_url, feed=feed, push=feed is not None, max_retries=max_retries
            )
        store.create_schema()
        logger.info("Using SQL store (%s push)", "relayed" if feed else "no")
        return store

    if not redis_url:
        raise ValueError("redis_url is required for the redis store backend")
    logger.info("Using Redis store under namespace '%s'", namespace)
    return RedisStore.from_url(
        redis_url, namespace=namespace, feed=feed, max_retries=max_retries
    )
