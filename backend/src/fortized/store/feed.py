"""Fan-out of store mutations to in-process watchers and other nodes."""

from __future__ import annotations

import itertools
import logging
import uuid
from typing import Any

from fortized.monitoring import relay_publish_errors_total
from fortized.realtime.transport import (
    MUTATIONS_TOPIC,
    RelayTransport,
    Subscription,
    TransportUnavailableError,
)

from .base import MutationEvent, MutationHandler, key_matches

logger = logging.getLogger(__name__)


class MutationFeed:
    """Delivers every committed write to the watchers registered for its key.

    Without a transport the feed only reaches watchers in this process. With a
    :class:`RelayTransport` each local write is also published to the other
    nodes and their writes are replayed here, skipping our own echoes.
    """

    def __init__(
        self,
        transport: RelayTransport | None = None,
        *,
        node_id: str | None = None,
        backend: str | None = None,
    ) -> None:
        self._transport = transport
        self._backend = backend
        self._node_id = node_id or (transport.node_id if transport else None) or uuid.uuid4().hex
        self._watchers: dict[int, tuple[str, MutationHandler]] = {}
        self._ids = itertools.count(1)
        self._remote: Subscription | None = None
        self._publish_warning_logged = False

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def relayed(self) -> bool:
        return self._remote is not None

    @property
    def watcher_count(self) -> int:
        return len(self._watchers)

    async def start(self) -> None:
        if self._transport is None or self._remote is not None:
            return
        try:
            self._remote = await self._transport.subscribe(
                MUTATIONS_TOPIC, self._on_remote, backend=self._backend
            )
        except TransportUnavailableError:
            logger.warning(
                "Mutation relay unavailable; push delivery limited to this process",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self._remote = None

    async def stop(self) -> None:
        if self._remote is not None:
            await self._remote.close()
            self._remote = None
        self._watchers.clear()

    async def watch(self, prefix: str, handler: MutationHandler) -> Subscription:
        watcher_id = next(self._ids)
        self._watchers[watcher_id] = (prefix, handler)

        async def cleanup() -> None:
            self._watchers.pop(watcher_id, None)

        return Subscription(f"watch:{prefix}", cleanup)

    async def publish(self, event: MutationEvent) -> None:
        await self.dispatch(event)
        if self._remote is None or self._transport is None:
            return
        payload: dict[str, Any] = {**event.to_payload(), "origin": self._node_id}
        try:
            await self._transport.publish(MUTATIONS_TOPIC, payload, backend=self._backend)
        except TransportUnavailableError:
            if not self._publish_warning_logged:
                logger.warning(
                    "Mutation relay unavailable while publishing %s; other nodes will catch up by polling",
                    event.key,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._publish_warning_logged = True
            relay_publish_errors_total.labels(self._backend or "default", "unavailable").inc()
        else:
            self._publish_warning_logged = False

    async def dispatch(self, event: MutationEvent) -> None:
        for prefix, handler in list(self._watchers.values()):
            if not key_matches(event.key, prefix):
                continue
            try:
                await handler(event)
            except Exception:
                logger.exception("Mutation watcher for %s failed", prefix)

    async def _on_remote(self, payload: dict[str, Any]) -> None:
        if payload.get("origin") == self._node_id:
            return
        try:
            event = MutationEvent.from_payload(payload)
        except (KeyError, TypeError):
            logger.warning("Discarded malformed mutation payload")
            return
        await self.dispatch(event)
