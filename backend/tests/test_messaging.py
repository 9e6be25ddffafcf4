from __future__ import annotations

import pytest

from fortized.social.limits import SocialLimits
from fortized.social.messaging import thread_key
from fortized.social.outcome import Rejection
from fortized.social.services import build_services
from fortized.store import MemoryStore
from fortized.store.keys import channel_key, dm_key


async def _register(services, *names: str) -> None:
    for name in names:
        assert await services.identity.register(name, "password1")


def test_thread_key_is_order_independent() -> None:
    assert thread_key("bob", "alice") == "alice__bob"
    assert thread_key("Alice", "BOB") == thread_key("bob", "alice")
    assert dm_key("bob", "alice") == "dms/alice__bob"


@pytest.mark.anyio("asyncio")
async def test_send_direct_appends_and_notifies(services) -> None:
    await _register(services, "alice", "bob")
    text = "x" * 100

    outcome = await services.messaging.send_direct("alice", "bob", text)

    assert outcome.ok
    message = outcome.data
    assert message.source == "alice" and message.text == text
    assert message.timestamp.endswith("Z")
    assert len(message.time) == 5

    thread = await services.messaging.get_thread("bob", "alice")
    assert [(item.source, item.text) for item in thread] == [("alice", text)]

    notification = (await services.notifications.list("bob"))[0]
    assert notification.type == "dm"
    assert notification.source == "alice"
    assert notification.data == {"preview": "x" * 60}


@pytest.mark.anyio("asyncio")
async def test_send_direct_rejections_leave_no_trace(services) -> None:
    await _register(services, "alice")

    assert (await services.messaging.send_direct("alice", "alice", "hi")).code is Rejection.SELF_REFERENCE
    assert (await services.messaging.send_direct("alice", "ghost", "hi")).code is Rejection.UNKNOWN_USER
    assert (await services.messaging.send_direct("alice", "bob", "   ")).code is Rejection.INVALID_INPUT
    assert await services.store.keys("dms/") == []
    assert await services.messaging.recent_partners("alice") == []


@pytest.mark.anyio("asyncio")
async def test_thread_keeps_send_order(services) -> None:
    await _register(services, "alice", "bob")
    await services.messaging.send_direct("alice", "bob", "one")
    await services.messaging.send_direct("bob", "alice", "two")
    await services.messaging.send_direct("alice", "bob", "three")

    thread = await services.messaging.get_thread("alice", "bob")
    assert [item.text for item in thread] == ["one", "two", "three"]


@pytest.mark.anyio("asyncio")
async def test_partner_index_is_most_recent_first_without_duplicates(services) -> None:
    await _register(services, "alice", "bob", "carol")
    await services.messaging.send_direct("alice", "bob", "hi bob")
    await services.messaging.send_direct("alice", "carol", "hi carol")
    await services.messaging.send_direct("bob", "alice", "hi again")

    assert await services.messaging.recent_partners("alice") == ["bob", "carol"]
    assert await services.messaging.recent_partners("bob") == ["alice"]
    assert await services.messaging.recent_partners("carol") == ["alice"]


@pytest.mark.anyio("asyncio")
async def test_partner_index_is_capped() -> None:
    services = build_services(MemoryStore(), limits=SocialLimits(dm_partner_cap=3))
    await _register(services, "alice", "p1", "p2", "p3", "p4")
    for partner in ("p1", "p2", "p3", "p4"):
        await services.messaging.send_direct("alice", partner, "hello")

    assert await services.messaging.recent_partners("alice") == ["p4", "p3", "p2"]


@pytest.mark.anyio("asyncio")
async def test_channel_log_is_capped_fifo() -> None:
    services = build_services(MemoryStore(), limits=SocialLimits(channel_message_cap=5))
    await _register(services, "alice")
    for index in range(8):
        await services.messaging.send_channel("keep", "general", "alice", f"m{index}")

    messages = await services.messaging.get_channel_messages("keep", "general")
    assert [item.text for item in messages] == ["m3", "m4", "m5", "m6", "m7"]
    assert all(item.reactions == {} for item in messages)


@pytest.mark.anyio("asyncio")
async def test_channel_send_requires_known_sender_and_text(services) -> None:
    await _register(services, "alice")
    assert (await services.messaging.send_channel("keep", "general", "ghost", "hi")).code is Rejection.UNKNOWN_USER
    assert (await services.messaging.send_channel("keep", "general", "alice", "")).code is Rejection.INVALID_INPUT
    assert await services.messaging.get_channel_messages("keep", "general") == []


@pytest.mark.anyio("asyncio")
async def test_toggle_reaction_adds_and_removes(services) -> None:
    await _register(services, "alice", "bob")
    sent = await services.messaging.send_channel("keep", "general", "alice", "hello")
    message_id = sent.data.id

    first = await services.messaging.toggle_reaction("keep", "general", message_id, "🔥", "alice")
    assert first.data == {"🔥": ["alice"]}
    second = await services.messaging.toggle_reaction("keep", "general", message_id, "🔥", "bob")
    assert second.data == {"🔥": ["alice", "bob"]}
    third = await services.messaging.toggle_reaction("keep", "general", message_id, "🔥", "alice")
    assert third.data == {"🔥": ["bob"]}
    fourth = await services.messaging.toggle_reaction("keep", "general", message_id, "🔥", "bob")
    assert fourth.data == {}

    stored = await services.messaging.get_channel_messages("keep", "general")
    assert stored[0].reactions == {}


@pytest.mark.anyio("asyncio")
async def test_reaction_on_missing_message_changes_nothing(services) -> None:
    await _register(services, "alice")
    await services.messaging.send_channel("keep", "general", "alice", "hello")
    before = await services.store.get(channel_key("keep", "general"))

    outcome = await services.messaging.toggle_reaction("keep", "general", "missing", "👍", "alice")

    assert not outcome.ok and outcome.code is Rejection.NOT_FOUND
    assert await services.store.get(channel_key("keep", "general")) == before
