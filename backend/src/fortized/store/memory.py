"""Process-local store for single-device deployments and tests."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

from fortized.realtime.transport import Subscription

from .base import (
    ABORT,
    MutationEvent,
    MutationHandler,
    PushUnavailableError,
    TransactionFn,
    TransactionResult,
    decode_value,
    encode_value,
    key_matches,
    merge_fields,
)
from .feed import MutationFeed


class MemoryStore:
    """Keeps JSON-encoded values in a dict.

    Values are encoded on write and decoded on read, so callers never share
    mutable state with the store and anything that would not survive a real
    backend fails here too.
    """

    backend_name = "memory"

    def __init__(self, *, feed: MutationFeed | None = None, push: bool = True) -> None:
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._feed = (feed or MutationFeed()) if push else None

    @property
    def feed(self) -> MutationFeed | None:
        return self._feed

    async def get(self, key: str) -> Any:
        return decode_value(key, self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        if value is None:
            await self.delete(key)
            return
        encoded = encode_value(key, value)
        async with self._lock:
            self._data[key] = encoded
        await self._emit(key, decode_value(key, encoded))

    async def update(self, key: str, fields: Mapping[str, Any]) -> None:
        await self.transaction(key, lambda current: merge_fields(current, fields))

    async def delete(self, key: str) -> None:
        async with self._lock:
            existed = self._data.pop(key, None) is not None
        if existed:
            await self._emit(key, None)

    async def transaction(self, key: str, fn: TransactionFn) -> TransactionResult:
        async with self._lock:
            current = decode_value(key, self._data.get(key))
            new_value = fn(current)
            if new_value is ABORT:
                return TransactionResult(committed=False, value=current)
            if new_value is None:
                self._data.pop(key, None)
                stored = None
            else:
                encoded = encode_value(key, new_value)
                self._data[key] = encoded
                stored = decode_value(key, encoded)
        await self._emit(key, stored)
        return TransactionResult(committed=True, value=stored)

    async def keys(self, prefix: str) -> list[str]:
        return sorted(key for key in self._data if key_matches(key, prefix))

    async def watch(self, prefix: str, handler: MutationHandler) -> Subscription:
        if self._feed is None:
            raise PushUnavailableError("Push delivery is disabled for this store")
        return await self._feed.watch(prefix, handler)

    async def close(self) -> None:
        if self._feed is not None:
            await self._feed.stop()

    async def _emit(self, key: str, value: Any) -> None:
        if self._feed is None:
            return
        action = "delete" if value is None else "set"
        await self._feed.publish(MutationEvent(key=key, value=value, action=action))
