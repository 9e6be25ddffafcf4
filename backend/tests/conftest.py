"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from passlib.context import CryptContext
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from fortized.realtime.transport import Subscription, TransportUnavailableError
from fortized.social import auth
from fortized.social.services import SocialServices, build_services
from fortized.store import MemoryStore, RedisStore, SQLStore

from app.config import get_settings
from app.main import app
from app.runtime import SocialRuntime, set_runtime

# Keep hashing cheap in tests.
auth.pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"], deprecated="auto", pbkdf2_sha256__default_rounds=1000
)


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


# ----------------------------------------------------------------------
# Fake Redis speaking the subset of the client API the store relies on
# ----------------------------------------------------------------------
class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._watched: dict[str, int] = {}
        self._buffer: list[tuple[str, str, str | None]] | None = None

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *_exc: Any) -> bool:
        self._watched.clear()
        self._buffer = None
        return False

    async def watch(self, *names: str) -> None:
        self._redis.check()
        for name in names:
            self._watched[name] = self._redis.versions.get(name, 0)

    async def get(self, name: str) -> str | None:
        return await self._redis.get(name)

    async def unwatch(self) -> None:
        self._watched.clear()

    def multi(self) -> None:
        self._buffer = []

    def set(self, name: str, value: str) -> "FakePipeline":
        assert self._buffer is not None
        self._buffer.append(("set", name, value))
        return self

    def delete(self, name: str) -> "FakePipeline":
        assert self._buffer is not None
        self._buffer.append(("delete", name, None))
        return self

    async def execute(self) -> list[Any]:
        self._redis.check()
        if self._redis.interference:
            self._redis.interference.pop(0)()
        for name, version in self._watched.items():
            if self._redis.versions.get(name, 0) != version:
                self._watched.clear()
                self._buffer = None
                raise WatchError("Watched variable changed.")
        results: list[Any] = []
        for op, name, value in self._buffer or []:
            if op == "set":
                self._redis.write(name, value)
                results.append(True)
            else:
                results.append(self._redis.remove(name))
        self._watched.clear()
        self._buffer = None
        return results


class FakeRedis:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.versions: dict[str, int] = {}
        self.online = True
        self.closed = False
        self.interference: list[Callable[[], None]] = []

    def check(self) -> None:
        if not self.online:
            raise RedisConnectionError("offline")

    def write(self, name: str, value: str) -> None:
        self.data[name] = value
        self.versions[name] = self.versions.get(name, 0) + 1

    def remove(self, name: str) -> int:
        if name not in self.data:
            return 0
        del self.data[name]
        self.versions[name] = self.versions.get(name, 0) + 1
        return 1

    async def get(self, name: str) -> str | None:
        self.check()
        return self.data.get(name)

    async def set(self, name: str, value: str) -> bool:
        self.check()
        self.write(name, value)
        return True

    async def delete(self, name: str) -> int:
        self.check()
        return self.remove(name)

    async def scan_iter(self, match: str = "*"):
        self.check()
        # Patterns are "<escaped prefix>*".
        prefix = re.sub(r"\\(.)", r"\1", match[:-1])
        for name in sorted(self.data):
            if name.startswith(prefix):
                yield name

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


# ----------------------------------------------------------------------
# In-process stand-in for the relay transport
# ----------------------------------------------------------------------
class FakeRelayBus:
    """Delivers every published payload to all subscribers, like a broker."""

    def __init__(self) -> None:
        self.handlers: dict[int, tuple[str, Callable[[dict[str, Any]], Awaitable[None]]]] = {}
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.online = True
        self._next = 0

    def transport(self, node_id: str) -> "FakeRelayTransport":
        return FakeRelayTransport(self, node_id)


class FakeRelayTransport:
    def __init__(self, bus: FakeRelayBus, node_id: str) -> None:
        self._bus = bus
        self.node_id = node_id

    async def subscribe(self, topic: str, handler, *, backend: str | None = None) -> Subscription:
        if not self._bus.online:
            raise TransportUnavailableError("offline")
        self._bus._next += 1
        handle = self._bus._next
        self._bus.handlers[handle] = (topic, handler)

        async def cleanup() -> None:
            self._bus.handlers.pop(handle, None)

        return Subscription(topic, cleanup)

    async def publish(self, topic: str, payload: dict[str, Any], *, backend: str | None = None) -> None:
        if not self._bus.online:
            raise TransportUnavailableError("offline")
        self._bus.published.append((topic, payload))
        for subscribed, handler in list(self._bus.handlers.values()):
            if subscribed == topic:
                await handler(payload)


@pytest.fixture()
def relay_bus() -> FakeRelayBus:
    return FakeRelayBus()


# ----------------------------------------------------------------------
# Stores and services
# ----------------------------------------------------------------------
@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(params=["memory", "sql", "redis"])
def store(request, tmp_path, fake_redis):
    """Every store backend with push delivery enabled."""

    if request.param == "memory":
        yield MemoryStore()
        return
    if request.param == "sql":
        # File-backed SQLite with the default pool: each worker thread that
        # SQLStore dispatches to gets its own connection.
        engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'store.db'}", future=True)
        try:
            sql_store = SQLStore(engine)
            sql_store.create_schema()
            yield sql_store
        finally:
            engine.dispose()
        return
    yield RedisStore(fake_redis, namespace="test")


@pytest.fixture()
def services() -> SocialServices:
    return build_services(MemoryStore(), poll_interval=60.0)


@pytest.fixture()
def client() -> Iterator[TestClient]:
    """Yield a FastAPI TestClient backed by a fresh in-memory store."""

    set_runtime(SocialRuntime(get_settings(), store=MemoryStore()))
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        set_runtime(None)
