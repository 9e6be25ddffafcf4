"""Relational store: one versioned row per key, updated by compare-and-swap."""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, TypeVar

import anyio
from sqlalchemy import DateTime, Integer, String, Text, create_engine, delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

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

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


class KVEntry(Base):
    """A single JSON document addressed by its hierarchical key."""

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class SQLStore:
    """Store backed by SQLAlchemy.

    Blocking database calls run in a worker thread so the event loop keeps
    serving other sessions. Without a relay-enabled feed, only writes made by
    this process are pushed; everything else is picked up by polling.
    """

    backend_name = "sql"

    def __init__(
        self,
        engine: Engine,
        *,
        feed: MutationFeed | None = None,
        push: bool = True,
        max_retries: int = 25,
    ) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(
            bind=engine, autocommit=False, autoflush=False, future=True
        )
        self._feed = (feed or MutationFeed()) if push else None
        self._max_retries = max_retries

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "SQLStore":
        engine = create_engine(url, future=True, pool_pre_ping=True)
        return cls(engine, **kwargs)

    @property
    def feed(self) -> MutationFeed | None:
        return self._feed

    def create_schema(self) -> None:
        Base.metadata.create_all(self._engine)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await anyio.to_thread.run_sync(functools.partial(fn, *args))
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("Database backend is unavailable") from exc

    # ------------------------------------------------------------------
    # Blocking helpers (worker thread)
    # ------------------------------------------------------------------
    def _read_sync(self, key: str) -> tuple[str | None, int | None]:
        with self._session_factory() as db:
            row = db.execute(
                select(KVEntry.value, KVEntry.version).where(KVEntry.key == key)
            ).one_or_none()
        if row is None:
            return None, None
        value, version = row
        return value, version

    def _write_sync(self, key: str, encoded: str | None) -> bool:
        """Last-writer-wins write; returns whether anything changed."""

        with self._session_factory() as db:
            entry = db.get(KVEntry, key)
            if encoded is None:
                if entry is None:
                    return False
                db.delete(entry)
            elif entry is None:
                db.add(KVEntry(key=key, value=encoded, version=1))
            else:
                entry.value = encoded
                entry.version += 1
                entry.updated_at = datetime.now(timezone.utc)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                self._swap(db, key, None, encoded, force=True)
            return True

    def _compare_and_swap_sync(self, key: str, expected: int | None, encoded: str | None) -> bool:
        with self._session_factory() as db:
            return self._swap(db, key, expected, encoded)

    @staticmethod
    def _swap(
        db: Session, key: str, expected: int | None, encoded: str | None, *, force: bool = False
    ) -> bool:
        now = datetime.now(timezone.utc)
        if expected is None and not force:
            if encoded is None:
                return True
            db.add(KVEntry(key=key, value=encoded, version=1, updated_at=now))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True

        conditions = [KVEntry.key == key]
        if not force:
            conditions.append(KVEntry.version == expected)
        if encoded is None:
            result = db.execute(delete(KVEntry).where(*conditions))
        else:
            result = db.execute(
                update(KVEntry)
                .where(*conditions)
                .values(value=encoded, version=KVEntry.version + 1, updated_at=now)
            )
        db.commit()
        return result.rowcount == 1

    def _keys_sync(self, prefix: str) -> list[str]:
        pattern = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._session_factory() as db:
            rows = db.execute(
                select(KVEntry.key).where(KVEntry.key.like(f"{pattern}%", escape="\\"))
            ).scalars()
            return sorted(key for key in rows if key_matches(key, prefix))

    # ------------------------------------------------------------------
    # Store contract
    # ------------------------------------------------------------------
    async def get(self, key: str) -> Any:
        raw, _ = await self._run(self._read_sync, key)
        return decode_value(key, raw)

    async def set(self, key: str, value: Any) -> None:
        encoded = None if value is None else encode_value(key, value)
        if await self._run(self._write_sync, key, encoded):
            await self._emit(key, decode_value(key, encoded))

    async def update(self, key: str, fields: Mapping[str, Any]) -> None:
        await self.transaction(key, lambda current: merge_fields(current, fields))

    async def delete(self, key: str) -> None:
        await self.set(key, None)

    async def transaction(self, key: str, fn: TransactionFn) -> TransactionResult:
        for attempt in range(1, self._max_retries + 1):
            raw, version = await self._run(self._read_sync, key)
            current = decode_value(key, raw)
            new_value = fn(current)
            if new_value is ABORT:
                return TransactionResult(committed=False, value=current)
            encoded = None if new_value is None else encode_value(key, new_value)
            if await self._run(self._compare_and_swap_sync, key, version, encoded):
                stored = decode_value(key, encoded)
                await self._emit(key, stored)
                return TransactionResult(committed=True, value=stored)
            store_conflicts_total.labels(self.backend_name).inc()
            logger.debug("Transaction on %s lost the race (attempt %s)", key, attempt)
        raise TransactionConflictError(f"Gave up on '{key}' after {self._max_retries} conflicts")

    async def keys(self, prefix: str) -> list[str]:
        return await self._run(self._keys_sync, prefix)

    async def watch(self, prefix: str, handler: MutationHandler) -> Subscription:
        if self._feed is None:
            raise PushUnavailableError("Push delivery is disabled for this store")
        return await self._feed.watch(prefix, handler)

    async def close(self) -> None:
        if self._feed is not None:
            await self._feed.stop()
        self._engine.dispose()

    async def _emit(self, key: str, value: Any) -> None:
        if self._feed is None:
            return
        action = "delete" if value is None else "set"
        await self._feed.publish(MutationEvent(key=key, value=value, action=action))
