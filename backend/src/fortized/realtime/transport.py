"""Pub/sub relay that carries store mutations between nodes."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import nats
import redis.asyncio as redis_asyncio
from nats.errors import Error as NatsError
from redis.exceptions import RedisError

from fortized.monitoring import relay_restarts_total

logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)
_NATS_ERRORS: tuple[type[BaseException], ...] = (
    NatsError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

_RECONNECT_BASE_DELAY = 0.5
_RECONNECT_MAX_DELAY = 30.0

MUTATIONS_TOPIC = "mutations"

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(slots=True)
class RelayConfig:
    """Connection details for the relay backends."""

    redis_url: str | None = None
    nats_url: str | None = None
    prefix: str = "fortized.realtime"
    node_id: str | None = None


class TransportUnavailableError(RuntimeError):
    """Raised when a relay backend is not configured or cannot be reached."""


class Subscription:
    """Handle returned by every subscribe/watch call; ``close`` detaches it."""

    def __init__(
        self,
        name: str,
        cleanup: Callable[[], Awaitable[None]],
        task: asyncio.Task[Any] | None = None,
    ) -> None:
        self._name = name
        self._cleanup = cleanup
        self._task = task
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._cleanup()


@dataclass(slots=True, eq=False)
class _RedisListener:
    channel: str
    handler: MessageHandler
    task: asyncio.Task[Any] | None = None
    closed: bool = False


class RelayTransport:
    """Publishes JSON payloads over Redis pub/sub or NATS subjects."""

    def __init__(self, config: RelayConfig) -> None:
        self._config = config
        self._redis: Any | None = None
        self._nats: Any | None = None
        self._listeners: list[_RedisListener] = []
        self._nats_subscriptions: list[Subscription] = []
        self._reconnect_task: asyncio.Task[Any] | None = None
        self._reconnect_lock = asyncio.Lock()

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def configured(self) -> bool:
        return bool(self._config.redis_url or self._config.nats_url)

    def default_backend(self) -> str:
        if self._redis is not None:
            return "redis"
        if self._nats is not None and self._nats.is_connected:
            return "nats"
        raise TransportUnavailableError("No relay backend is connected")

    async def start(self) -> None:
        if self._config.redis_url and self._redis is None:
            await self._connect_redis()
        if self._config.nats_url and (self._nats is None or not self._nats.is_connected):
            try:
                self._nats = await nats.connect(self._config.nats_url, name=self._config.node_id)
            except (*_NATS_ERRORS, OSError) as exc:
                raise TransportUnavailableError("NATS relay is unavailable") from exc

    async def stop(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnect_task
            self._reconnect_task = None
        for listener in list(self._listeners):
            await self._detach(listener, final=True)
        for subscription in list(self._nats_subscriptions):
            await subscription.close()
        self._nats_subscriptions.clear()
        if self._redis is not None:
            with contextlib.suppress(*_REDIS_ERRORS):
                await self._redis.aclose()
            self._redis = None
        if self._nats is not None and self._nats.is_connected:
            await self._nats.drain()
        self._nats = None

    def _channel(self, topic: str) -> str:
        prefix = self._config.prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    async def publish(self, topic: str, payload: dict[str, Any], *, backend: str | None = None) -> None:
        target = backend or self.default_backend()
        channel = self._channel(topic)
        encoded = json.dumps(payload)
        if target == "redis":
            if self._redis is None and self._config.redis_url:
                await self._connect_redis()
            if self._redis is None:
                raise TransportUnavailableError("Redis relay is not configured")
            try:
                await self._redis.publish(channel, encoded)
            except _REDIS_ERRORS as exc:
                self._schedule_reconnect("publish_failed")
                raise TransportUnavailableError("Redis relay is unavailable") from exc
            return
        if target == "nats":
            if self._nats is None or not self._nats.is_connected:
                raise TransportUnavailableError("NATS relay is not connected")
            try:
                await self._nats.publish(channel, encoded.encode("utf-8"))
            except _NATS_ERRORS as exc:
                raise TransportUnavailableError("NATS relay is unavailable") from exc
            return
        raise TransportUnavailableError(f"Unsupported relay backend '{target}'")

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------
    async def subscribe(
        self, topic: str, handler: MessageHandler, *, backend: str | None = None
    ) -> Subscription:
        target = backend or self.default_backend()
        channel = self._channel(topic)
        if target == "redis":
            if self._redis is None and self._config.redis_url:
                await self._connect_redis()
            if self._redis is None:
                raise TransportUnavailableError("Redis relay is not configured")
            listener = _RedisListener(channel=channel, handler=handler)
            self._listeners.append(listener)
            try:
                await self._attach(listener)
            except TransportUnavailableError:
                await self._detach(listener, final=True)
                self._schedule_reconnect("subscribe_failed")
                raise
            return Subscription(channel, functools.partial(self._detach, listener, final=True))
        if target == "nats":
            if self._nats is None or not self._nats.is_connected:
                raise TransportUnavailableError("NATS relay is not connected")

            async def deliver(message: Any) -> None:
                await self._deliver(handler, channel, message.data)

            nats_subscription = await self._nats.subscribe(channel, cb=deliver)
            wrapper = Subscription(channel, nats_subscription.unsubscribe)
            self._nats_subscriptions.append(wrapper)
            return wrapper
        raise TransportUnavailableError(f"Unsupported relay backend '{target}'")

    async def _deliver(self, handler: MessageHandler, channel: str, raw: Any) -> None:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        if not isinstance(raw, str):
            return
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarded malformed relay payload on %s", channel)
            return
        try:
            await handler(payload)
        except Exception:
            logger.exception("Relay handler failed for %s", channel)

    # ------------------------------------------------------------------
    # Redis plumbing
    # ------------------------------------------------------------------
    async def _connect_redis(self) -> None:
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except (*_REDIS_ERRORS, OSError) as exc:
            with contextlib.suppress(*_REDIS_ERRORS, OSError):
                await client.aclose()
            raise TransportUnavailableError("Redis relay is unavailable") from exc
        self._redis = client

    async def _attach(self, listener: _RedisListener) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis relay is not connected")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(listener.channel)
        except _REDIS_ERRORS as exc:
            with contextlib.suppress(*_REDIS_ERRORS):
                await pubsub.aclose()
            raise TransportUnavailableError("Redis relay is unavailable") from exc

        async def read() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    await self._deliver(listener.handler, listener.channel, message.get("data"))
            finally:
                with contextlib.suppress(*_REDIS_ERRORS):
                    await pubsub.unsubscribe(listener.channel)
                with contextlib.suppress(*_REDIS_ERRORS):
                    await pubsub.aclose()

        listener.task = asyncio.create_task(read(), name=f"relay-redis-{listener.channel}")
        listener.task.add_done_callback(functools.partial(self._on_reader_done, listener))

    def _on_reader_done(self, listener: _RedisListener, task: asyncio.Task[Any]) -> None:
        if listener.closed or task.cancelled() or listener.task is not task:
            return
        exc = task.exception()
        logger.warning(
            "Relay reader for %s stopped; scheduling reconnect",
            listener.channel,
            exc_info=exc,
        )
        self._schedule_reconnect("reader_stopped")

    async def _detach(self, listener: _RedisListener, *, final: bool) -> None:
        if final:
            listener.closed = True
            if listener in self._listeners:
                self._listeners.remove(listener)
        task, listener.task = listener.task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _schedule_reconnect(self, reason: str) -> None:
        if not self._config.redis_url:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        logger.info("Scheduling relay reconnect (%s)", reason)
        self._reconnect_task = asyncio.create_task(
            self._reconnect(reason), name="relay-redis-reconnect"
        )

    async def _reconnect(self, reason: str) -> None:
        attempt = 0
        while True:
            await asyncio.sleep(min(_RECONNECT_BASE_DELAY * (2**attempt), _RECONNECT_MAX_DELAY))
            try:
                async with self._reconnect_lock:
                    for listener in list(self._listeners):
                        await self._detach(listener, final=False)
                    if self._redis is not None:
                        with contextlib.suppress(*_REDIS_ERRORS, OSError):
                            await self._redis.aclose()
                        self._redis = None
                    await self._connect_redis()
                    for listener in list(self._listeners):
                        await self._attach(listener)
            except TransportUnavailableError:
                attempt += 1
                logger.warning("Relay reconnect attempt %s failed (%s)", attempt, reason)
                continue
            break
        relay_restarts_total.labels("redis", reason).inc()
        logger.info("Relay reconnected (%s, %s listeners)", reason, len(self._listeners))
