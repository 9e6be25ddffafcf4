"""Process-wide store, relay and social services used by the API."""

from __future__ import annotations

import logging
import uuid

from fortized.realtime.transport import RelayConfig, RelayTransport, TransportUnavailableError
from fortized.social.services import SocialServices, build_services
from fortized.store import KeyValueStore, create_store

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


class SocialRuntime:
    """Owns the store and relay transport behind one set of social services."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: KeyValueStore | None = None,
    ) -> None:
        self.settings = settings
        self.node_id = settings.realtime_node_id or uuid.uuid4().hex
        self.transport: RelayTransport | None = None
        if settings.realtime_redis_url or settings.realtime_nats_url:
            self.transport = RelayTransport(
                RelayConfig(
                    redis_url=settings.realtime_redis_url,
                    nats_url=settings.realtime_nats_url,
                    prefix=settings.realtime_namespace,
                    node_id=self.node_id,
                )
            )
        if store is None:
            store = create_store(
                settings.store_backend,
                database_url=settings.database_url,
                redis_url=settings.store_redis_url,
                namespace=settings.store_namespace,
                transport=self.transport,
                relay_backend=settings.realtime_backend_preference,
                max_retries=settings.store_transaction_max_retries,
            )
        self.store = store
        self.services: SocialServices = build_services(
            store,
            limits=settings.social_limits,
            poll_interval=settings.sync_poll_interval_seconds,
        )
        self._started = False

    async def startup(self) -> None:
        if self._started:
            return
        self._started = True
        if self.transport is not None:
            try:
                await self.transport.start()
            except TransportUnavailableError:
                logger.warning(
                    "Mutation relay unavailable during startup; continuing without cross-node push",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
        feed = getattr(self.store, "feed", None)
        if feed is not None:
            await feed.start()
        logger.info(
            "Social runtime started (store=%s, node=%s)", self.store.backend_name, self.node_id
        )

    async def shutdown(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.services.close()
        if self.transport is not None:
            await self.transport.stop()


_runtime: SocialRuntime | None = None


def get_runtime() -> SocialRuntime:
    global _runtime
    if _runtime is None:
        _runtime = SocialRuntime(get_settings())
    return _runtime


def set_runtime(runtime: SocialRuntime | None) -> None:
    global _runtime
    _runtime = runtime


async def startup_runtime() -> None:
    await get_runtime().startup()


async def shutdown_runtime() -> None:
    await get_runtime().shutdown()
