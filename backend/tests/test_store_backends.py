"""Behaviour shared by the memory, SQL and Redis store backends."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from fortized.social.models import User
from fortized.social.services import build_services
from fortized.store import ABORT, MemoryStore, MutationEvent, PushUnavailableError, StoreUnavailableError
from fortized.store.keys import user_key


@pytest.mark.anyio("asyncio")
async def test_set_get_and_delete(store) -> None:
    assert await store.get("users/alice") is None

    await store.set("users/alice", {"username": "alice", "friends": []})
    assert await store.get("users/alice") == {"username": "alice", "friends": []}

    await store.set("users/alice", None)
    assert await store.get("users/alice") is None

    await store.set("statuses/alice", "online")
    await store.delete("statuses/alice")
    await store.delete("statuses/alice")
    assert await store.get("statuses/alice") is None


@pytest.mark.anyio("asyncio")
async def test_values_are_copies(store) -> None:
    record = {"friends": ["bob"]}
    await store.set("users/alice", record)
    record["friends"].append("carol")

    loaded = await store.get("users/alice")
    loaded["friends"].append("dave")
    assert await store.get("users/alice") == {"friends": ["bob"]}


@pytest.mark.anyio("asyncio")
async def test_update_merges_fields(store) -> None:
    await store.set("users/alice", {"username": "alice", "onyx": 25})
    await store.update("users/alice", {"onyx": 30, "pfp": "a.png"})
    assert await store.get("users/alice") == {"username": "alice", "onyx": 30, "pfp": "a.png"}

    await store.update("users/new", {"username": "new"})
    assert await store.get("users/new") == {"username": "new"}


@pytest.mark.anyio("asyncio")
async def test_transaction_commits_and_aborts(store) -> None:
    result = await store.transaction("counter", lambda current: (current or 0) + 1)
    assert result.committed and result.value == 1
    result = await store.transaction("counter", lambda current: current + 1)
    assert result.value == 2

    aborted = await store.transaction("counter", lambda current: ABORT)
    assert not aborted.committed
    assert aborted.value == 2
    assert await store.get("counter") == 2

    removed = await store.transaction("counter", lambda current: None)
    assert removed.committed
    assert await store.get("counter") is None


@pytest.mark.anyio("asyncio")
async def test_keys_respect_segment_boundaries(store) -> None:
    for key in ("users/alice", "users/bob", "usersx/carol", "statuses/alice"):
        await store.set(key, {"k": key})

    assert await store.keys("users/") == ["users/alice", "users/bob"]
    assert await store.keys("users") == ["users/alice", "users/bob"]
    assert await store.keys("nothing/") == []


@pytest.mark.anyio("asyncio")
async def test_unserializable_value_is_rejected(store) -> None:
    with pytest.raises(StoreUnavailableError):
        await store.set("users/alice", {"when": object()})


@pytest.mark.anyio("asyncio")
async def test_watch_pushes_matching_mutations(store) -> None:
    events: list[MutationEvent] = []

    async def handler(event: MutationEvent) -> None:
        events.append(event)

    subscription = await store.watch("statuses/", handler)
    await store.set("statuses/alice", "idle")
    await store.set("users/alice", {"username": "alice"})
    await store.transaction("statuses/bob", lambda current: "dnd")
    await store.delete("statuses/alice")

    assert [(event.key, event.value, event.action) for event in events] == [
        ("statuses/alice", "idle", "set"),
        ("statuses/bob", "dnd", "set"),
        ("statuses/alice", None, "delete"),
    ]

    await subscription.close()
    await store.set("statuses/alice", "online")
    assert len(events) == 3
    await store.close()


@pytest.mark.anyio("asyncio")
async def test_aborted_transaction_does_not_push(store) -> None:
    events: list[Any] = []

    async def handler(event: MutationEvent) -> None:
        events.append(event)

    await store.watch("users/", handler)
    await store.transaction("users/alice", lambda current: ABORT)
    assert events == []


@pytest.mark.anyio("asyncio")
async def test_watch_without_push_raises() -> None:
    store = MemoryStore(push=False)
    assert store.feed is None

    async def handler(event: MutationEvent) -> None:  # pragma: no cover - never called
        raise AssertionError(event)

    with pytest.raises(PushUnavailableError):
        await store.watch("users/", handler)


@pytest.mark.anyio("asyncio")
async def test_failing_watcher_does_not_break_writes(store) -> None:
    received: list[str] = []

    async def broken(event: MutationEvent) -> None:
        raise RuntimeError("boom")

    async def healthy(event: MutationEvent) -> None:
        received.append(event.key)

    await store.watch("users/", broken)
    await store.watch("users/", healthy)
    await store.set("users/alice", {"username": "alice"})

    assert received == ["users/alice"]
    assert await store.get("users/alice") == {"username": "alice"}


@pytest.mark.anyio("asyncio")
async def test_concurrent_reactions_and_notifications_are_not_lost(store) -> None:
    services = build_services(store, poll_interval=60.0)
    reactors = [f"user{index}" for index in range(8)]
    for name in ["alice", *reactors]:
        await store.set(user_key(name), User(username=name).to_record())
    sent = await services.messaging.send_channel("keep", "general", "alice", "react to me")
    message_id = sent.data.id

    await asyncio.gather(
        *(
            services.messaging.toggle_reaction("keep", "general", message_id, "🔥", name)
            for name in reactors
        )
    )
    await asyncio.gather(
        *(services.notifications.push("alice", "dm", name, {"preview": name}) for name in reactors)
    )

    (message,) = await services.messaging.get_channel_messages("keep", "general")
    assert sorted(message.reactions["🔥"]) == reactors
    notifications = await services.notifications.list("alice")
    assert sorted(item.source for item in notifications) == reactors
    assert len({item.id for item in notifications}) == len(reactors)
    await services.realtime.shutdown()
