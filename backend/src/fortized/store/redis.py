"""Remote store on Redis, with optimistic WATCH/MULTI transactions."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from typing import Any, Iterator, Mapping

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError, WatchError

from fortized.monitoring import store_conflicts_total
from fortized.realtime.transport import Subscription

from .base import (
    ABORT,
    MutationEvent,
    MutationHandler,
    PushUnavailableError,
    StoreUnavailableError,
    TransactionConflictError,
    TransactionFn,
    TransactionResult,
    decode_value,
    encode_value,
    key_matches,
    merge_fields,
)
from .feed import MutationFeed

logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


@contextlib.contextmanager
def _unavailable_on_error() -> Iterator[None]:
    try:
        yield
    except WatchError:
        raise
    except _REDIS_ERRORS as exc:
        raise StoreUnavailableError("Redis store is unavailable") from exc


class RedisStore:
    """Stores JSON documents under ``<namespace>:<key>``."""

    backend_name = "redis"

    def __init__(
        self,
        client: Any,
        *,
        namespace: str = "fortized",
        feed: MutationFeed | None = None,
        push: bool = True,
        max_retries: int = 25,
    ) -> None:
        self._client = client
        self._namespace = namespace.rstrip(":")
        self._feed = (feed or MutationFeed()) if push else None
        self._max_retries = max_retries

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisStore":
        client = redis_asyncio.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    @property
    def feed(self) -> MutationFeed | None:
        return self._feed

    def _name(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key

    def _strip(self, name: str) -> str:
        if not self._namespace:
            return name
        return name[len(self._namespace) + 1 :]

    async def get(self, key: str) -> Any:
        with _unavailable_on_error():
            raw = await self._client.get(self._name(key))
        return decode_value(key, raw)

    async def set(self, key: str, value: Any) -> None:
        if value is None:
            await self.delete(key)
            return
        encoded = encode_value(key, value)
        with _unavailable_on_error():
            await self._client.set(self._name(key), encoded)
        await self._emit(key, decode_value(key, encoded))

    async def update(self, key: str, fields: Mapping[str, Any]) -> None:
        await self.transaction(key, lambda current: merge_fields(current, fields))

    async def delete(self, key: str) -> None:
        with _unavailable_on_error():
            removed = await self._client.delete(self._name(key))
        if removed:
            await self._emit(key, None)

    async def transaction(self, key: str, fn: TransactionFn) -> TransactionResult:
        name = self._name(key)
        for attempt in range(1, self._max_retries + 1):
            with _unavailable_on_error():
                async with self._client.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(name)
                        current = decode_value(key, await pipe.get(name))
                        new_value = fn(current)
                        if new_value is ABORT:
                            await pipe.unwatch()
                            return TransactionResult(committed=False, value=current)
                        encoded = None if new_value is None else encode_value(key, new_value)
                        pipe.multi()
                        if encoded is None:
                            pipe.delete(name)
                        else:
                            pipe.set(name, encoded)
                        await pipe.execute()
                    except WatchError:
                        store_conflicts_total.labels(self.backend_name).inc()
                        logger.debug("Transaction on %s lost the race (attempt %s)", key, attempt)
                        continue
            stored = decode_value(key, encoded)
            await self._emit(key, stored)
            return TransactionResult(committed=True, value=stored)
        raise TransactionConflictError(f"Gave up on '{key}' after {self._max_retries} conflicts")

    async def keys(self, prefix: str) -> list[str]:
        pattern = self._name(_GLOB_SPECIAL.sub(r"\\\1", prefix)) + "*"
        found: list[str] = []
        with _unavailable_on_error():
            async for name in self._client.scan_iter(match=pattern):
                key = self._strip(name)
                if key_matches(key, prefix):
                    found.append(key)
        return sorted(found)

    async def watch(self, prefix: str, handler: MutationHandler) -> Subscription:
        if self._feed is None:
            raise PushUnavailableError("Push delivery is disabled for this store")
        return await self._feed.watch(prefix, handler)

    async def close(self) -> None:
        if self._feed is not None:
            await self._feed.stop()
        with contextlib.suppress(*_REDIS_ERRORS):
            await self._client.aclose()

    async def _emit(self, key: str, value: Any) -> None:
        if self._feed is None:
            return
        action = "delete" if value is None else "set"
        await self._feed.publish(MutationEvent(key=key, value=value, action=action))
