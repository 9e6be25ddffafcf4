"""Session and scoped subscriptions over push and polling delivery."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from fortized.monitoring import sync_sessions
from fortized.realtime.sync import SessionCallbacks, StatusEvent
from fortized.social.models import DirectMessage, Notification, PresenceStatus, isoformat, new_record_id
from fortized.social.services import build_services
from fortized.store import MemoryStore
from fortized.store.keys import dm_key, notifications_key


class Recorder:
    """Collects every callback invocation as ``(name, payload)`` tuples."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    def callbacks(self) -> SessionCallbacks:
        return SessionCallbacks(
            on_new_notification=lambda item: self.events.append(("notification", item.type)),
            on_new_dm=lambda event: self.events.append(("dm", (event.partner, event.preview))),
            on_friend_request=lambda event: self.events.append(("friend_request", event.username)),
            on_friend_accept=lambda event: self.events.append(("friend_accept", event.username)),
            on_status_change=lambda event: self.events.append(("status", (event.username, event.status))),
            on_dm_index_change=lambda partners: self.events.append(("dm_index", partners)),
        )

    def named(self, name: str) -> list[Any]:
        return [payload for event, payload in self.events if event == name]


async def _register(services, *names: str) -> None:
    for name in names:
        assert await services.identity.register(name, "password1")


async def _befriend(services, first: str, second: str) -> None:
    await services.friends.send_request(first, second)
    await services.friends.accept_request(second, first)


@pytest.fixture()
def polling_services():
    return build_services(MemoryStore(push=False), poll_interval=60.0)


@pytest.mark.anyio("asyncio")
async def test_push_delivers_friend_request_once(services) -> None:
    await _register(services, "alice", "bob")
    recorder = Recorder()
    session = services.realtime.session()
    await session.subscribe("alice", recorder.callbacks())
    assert session.push_active

    await services.friends.send_request("bob", "alice")
    await session.poll_once()

    assert recorder.named("friend_request") == ["bob"]
    assert recorder.named("notification") == ["friend_request"]
    await session.unsubscribe()


@pytest.mark.anyio("asyncio")
async def test_polling_delivers_direct_messages_once(polling_services) -> None:
    services = polling_services
    await _register(services, "alice", "bob")
    recorder = Recorder()
    session = services.realtime.session()
    await session.subscribe("alice", recorder.callbacks())
    assert not session.push_active

    await services.messaging.send_direct("bob", "alice", "y" * 80)
    assert recorder.events == []

    await session.poll_once()
    await session.poll_once()

    assert recorder.named("dm") == [("bob", "y" * 60)]
    assert recorder.named("dm_index") == [["bob"]]
    assert recorder.named("notification") == ["dm"]
    await session.unsubscribe()


@pytest.mark.anyio("asyncio")
async def test_friend_accept_is_reported_to_the_requester(services) -> None:
    await _register(services, "alice", "bob")
    await services.friends.send_request("alice", "bob")
    recorder = Recorder()
    session = services.realtime.session()
    await session.subscribe("alice", recorder.callbacks())

    await services.friends.accept_request("bob", "alice")

    assert recorder.named("friend_accept") == ["bob"]
    await session.unsubscribe()


@pytest.mark.anyio("asyncio")
async def test_existing_notifications_are_baselined(services) -> None:
    await _register(services, "alice", "bob", "carol")
    await services.friends.send_request("bob", "alice")
    recorder = Recorder()
    session = services.realtime.session()

    await session.subscribe("alice", recorder.callbacks())
    await session.poll_once()
    assert recorder.named("notification") == []

    await services.friends.send_request("carol", "alice")
    assert recorder.named("friend_request") == ["carol"]
    await session.unsubscribe()


@pytest.mark.anyio("asyncio")
async def test_replay_unread_skips_read_entries(services) -> None:
    await _register(services, "alice", "bob", "carol")
    await services.friends.send_request("bob", "alice")
    await services.notifications.mark_all_read("alice")
    await services.friends.send_request("carol", "alice")
    recorder = Recorder()
    session = services.realtime.session()

    await session.subscribe("alice", recorder.callbacks(), replay_unread=True)
    await session.poll_once()

    assert recorder.named("friend_request") == ["carol"]
    await session.unsubscribe()


@pytest.mark.anyio("asyncio")
async def test_status_changes_of_friends_are_reported(services) -> None:
    await _register(services, "alice", "bob")
    await _befriend(services, "alice", "bob")
    received: list[StatusEvent] = []
    session = services.realtime.session()
    await session.subscribe("alice", SessionCallbacks(on_status_change=received.append))

    await services.identity.set_status("bob", "idle")
    await services.identity.set_status("bob", "idle")
    await services.identity.set_status("alice", "dnd")
    await session.poll_once()

    assert received == [StatusEvent("bob", PresenceStatus.IDLE)]
    await session.unsubscribe()


@pytest.mark.anyio("asyncio")
async def test_polling_detects_status_changes(polling_services) -> None:
    services = polling_services
    await _register(services, "alice", "bob")
    await _befriend(services, "alice", "bob")
    recorder = Recorder()
    session = services.realtime.session()
    await session.subscribe("alice", recorder.callbacks())

    await services.identity.logout("bob")
    await session.poll_once()
    await session.poll_once()

    assert recorder.named("status") == [("bob", PresenceStatus.OFFLINE)]
    await session.unsubscribe()


@pytest.mark.anyio("asyncio")
async def test_unsubscribe_is_idempotent_and_silences_callbacks(services) -> None:
    await _register(services, "alice", "bob")
    before = sync_sessions.value()
    recorder = Recorder()
    session = services.realtime.session()
    await session.subscribe("alice", recorder.callbacks())
    assert sync_sessions.value() == before + 1

    await session.unsubscribe()
    await session.unsubscribe()
    assert sync_sessions.value() == before
    assert not session.subscribed

    await services.friends.send_request("bob", "alice")
    await session.poll_once()
    assert recorder.events == []


@pytest.mark.anyio("asyncio")
async def test_resubscribe_switches_users(services) -> None:
    await _register(services, "alice", "bob", "carol")
    before = sync_sessions.value()
    recorder = Recorder()
    session = services.realtime.session()
    await session.subscribe("alice", recorder.callbacks())
    await session.subscribe("bob", recorder.callbacks())
    assert sync_sessions.value() == before + 1

    await services.friends.send_request("carol", "alice")
    await services.friends.send_request("carol", "bob")

    assert recorder.named("friend_request") == ["carol"]
    assert session.username == "bob"
    await session.unsubscribe()


@pytest.mark.anyio("asyncio")
async def test_callbacks_may_write_to_the_store(services) -> None:
    await _register(services, "alice", "bob")
    session = services.realtime.session()
    seen: list[str] = []

    async def mark_read(event) -> None:
        seen.append(event.partner)
        await services.notifications.mark_all_read("alice")

    await session.subscribe("alice", SessionCallbacks(on_new_dm=mark_read))
    await services.messaging.send_direct("bob", "alice", "ping")

    assert seen == ["bob"]
    assert await services.notifications.unread_count("alice") == 0
    await session.unsubscribe()


@pytest.mark.anyio("asyncio")
async def test_failing_callback_does_not_stop_delivery(services) -> None:
    await _register(services, "alice", "bob", "carol")
    session = services.realtime.session()
    requests: list[str] = []

    def broken(notification) -> None:
        raise RuntimeError("boom")

    await session.subscribe(
        "alice",
        SessionCallbacks(
            on_new_notification=broken,
            on_friend_request=lambda event: requests.append(event.username),
        ),
    )
    await services.friends.send_request("bob", "alice")
    await services.friends.send_request("carol", "alice")

    assert requests == ["bob", "carol"]
    await session.unsubscribe()


@pytest.mark.anyio("asyncio")
async def test_session_context_lifecycle(services) -> None:
    await _register(services, "alice", "bob")
    context = services.session()

    with pytest.raises(RuntimeError):
        await context.subscribe()
    assert not (await context.open("ghost")).ok

    assert (await context.open("Alice")).ok
    recorder = Recorder()
    await context.subscribe(recorder.callbacks())
    assert context.active and context.sync.subscribed

    await context.close()
    assert not context.active and not context.sync.subscribed
    await services.friends.send_request("bob", "alice")
    assert recorder.events == []


@pytest.mark.anyio("asyncio")
async def test_channel_watch_reports_new_messages_once(services) -> None:
    await _register(services, "alice")
    await services.messaging.send_channel("keep", "general", "alice", "before")
    received: list[str] = []

    watch = await services.realtime.subscribe_channel(
        "keep", "general", lambda message: received.append(message.text)
    )
    await services.messaging.send_channel("keep", "general", "alice", "after")
    await services.messaging.send_channel("keep", "other", "alice", "elsewhere")
    await watch.poll_once()

    assert received == ["after"]

    await watch.close()
    await watch.close()
    assert watch.closed
    await services.messaging.send_channel("keep", "general", "alice", "late")
    assert received == ["after"]


@pytest.mark.anyio("asyncio")
async def test_reactions_do_not_redeliver_channel_messages(services) -> None:
    await _register(services, "alice")
    received: list[str] = []
    watch = await services.realtime.subscribe_channel(
        "keep", "general", lambda message: received.append(message.id)
    )
    sent = await services.messaging.send_channel("keep", "general", "alice", "hello")
    await services.messaging.toggle_reaction("keep", "general", sent.data.id, "👍", "alice")

    assert received == [sent.data.id]
    await watch.close()


@pytest.mark.anyio("asyncio")
async def test_thread_watch_by_polling(polling_services) -> None:
    services = polling_services
    await _register(services, "alice", "bob")
    received: list[tuple[str, str]] = []

    watch = await services.realtime.subscribe_thread(
        "bob", "alice", lambda message: received.append((message.source, message.text))
    )
    assert not watch.push_active
    await services.messaging.send_direct("alice", "bob", "hi")
    assert received == []

    await watch.poll_once()
    await watch.poll_once()
    assert received == [("alice", "hi")]
    await services.close()


@pytest.mark.anyio("asyncio")
async def test_session_context_switches_users(services) -> None:
    await _register(services, "alice", "bob")
    recorder = Recorder()
    session = services.session()

    with pytest.raises(RuntimeError):
        await session.subscribe(recorder.callbacks())

    missing = await session.open("ghost")
    assert not missing
    assert not session.active

    assert await session.open("Alice")
    assert session.username == "alice"
    await session.subscribe(recorder.callbacks())
    assert session.sync.subscribed

    # Switching users drops the previous user's subscription.
    assert await session.open("bob")
    assert not session.sync.subscribed
    await services.friends.send_request("bob", "alice")
    assert recorder.named("friend_request") == []

    await session.close()
    await session.close()
    assert session.username is None


def _thread_log(count: int, start: datetime) -> list[dict[str, Any]]:
    return [
        DirectMessage.compose("alice", f"message {index}", start + timedelta(seconds=index)).to_record()
        for index in range(count)
    ]


def _notification(source: str, moment: datetime, *, read: bool = False) -> dict[str, Any]:
    return Notification(
        id=new_record_id(moment),
        type="dm",
        source=source,
        data={"preview": "hi"},
        time=isoformat(moment),
        read=read,
    ).to_record()


@pytest.mark.anyio("asyncio")
async def test_long_thread_is_not_redelivered(polling_services) -> None:
    services = polling_services
    await _register(services, "alice", "bob")
    start = datetime.now(timezone.utc) - timedelta(hours=1)
    await services.store.set(dm_key("alice", "bob"), _thread_log(1200, start))
    received: list[str] = []

    watch = await services.realtime.subscribe_thread(
        "alice", "bob", lambda message: received.append(message.text)
    )
    assert len(watch.history) == 1200
    await watch.poll_once()
    await watch.poll_once()
    assert received == []

    await services.messaging.send_direct("bob", "alice", "still here")
    await watch.poll_once()
    await watch.poll_once()
    assert received == ["still here"]
    await watch.close()


@pytest.mark.anyio("asyncio")
async def test_large_notification_log_is_not_redelivered(polling_services) -> None:
    services = polling_services
    await _register(services, "alice")
    start = datetime.now(timezone.utc) - timedelta(hours=1)
    entries = [_notification("bob", start + timedelta(seconds=index)) for index in range(300)]
    await services.store.set(notifications_key("alice"), list(reversed(entries)))
    recorder = Recorder()
    session = services.realtime.session()

    await session.subscribe("alice", recorder.callbacks())
    await session.poll_once()
    await session.poll_once()

    assert recorder.events == []
    await session.unsubscribe()


@pytest.mark.anyio("asyncio")
async def test_records_committed_out_of_order_are_reported_once(polling_services) -> None:
    services = polling_services
    await _register(services, "alice", "bob")
    now = datetime.now(timezone.utc)
    key = dm_key("alice", "bob")
    await services.store.set(key, [])
    received: list[str] = []
    watch = await services.realtime.subscribe_thread(
        "alice", "bob", lambda message: received.append(message.text)
    )

    newer = DirectMessage.compose("bob", "newer", now).to_record()
    await services.store.set(key, [newer])
    await watch.poll_once()
    # minted a second earlier but written after "newer" was delivered
    older = DirectMessage.compose("alice", "older", now - timedelta(seconds=1)).to_record()
    await services.store.set(key, [newer, older])
    await watch.poll_once()
    await watch.poll_once()

    assert received == ["newer", "older"]
    await watch.close()


@pytest.mark.anyio("asyncio")
async def test_session_baseline_is_what_later_events_build_on(services) -> None:
    await _register(services, "alice", "bob", "carol")
    await _befriend(services, "alice", "bob")
    await services.messaging.send_direct("bob", "alice", "before")
    recorder = Recorder()
    session = services.realtime.session()

    await session.subscribe("alice", recorder.callbacks())
    baseline = session.baseline
    assert [item.type for item in baseline.notifications] == ["dm", "friend_accept"]
    assert baseline.partners == ["bob"]
    assert baseline.statuses == {"bob": PresenceStatus.ONLINE}

    await services.friends.send_request("carol", "alice")
    assert recorder.named("notification") == ["friend_request"]
    assert [item.type for item in session.baseline.notifications] == ["dm", "friend_accept"]
    await session.unsubscribe()
    assert session.baseline.notifications == []


@pytest.mark.anyio("asyncio")
async def test_channel_watch_history_and_live_messages_do_not_overlap(services) -> None:
    await _register(services, "alice")
    await services.messaging.send_channel("keep", "general", "alice", "one")
    received: list[str] = []

    watch = await services.realtime.subscribe_channel(
        "keep", "general", lambda message: received.append(message.text)
    )
    await services.messaging.send_channel("keep", "general", "alice", "two")
    await watch.poll_once()

    assert [message.text for message in watch.history] == ["one"]
    assert received == ["two"]
    await watch.close()


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("fixture_name", ["services", "polling_services"])
async def test_presence_is_reported_for_friends_only(request, fixture_name) -> None:
    services = request.getfixturevalue(fixture_name)
    await _register(services, "alice", "bob", "carol")
    recorder = Recorder()
    session = services.realtime.session()
    await session.subscribe("alice", recorder.callbacks())

    await services.identity.set_status("carol", "idle")
    await session.poll_once()
    assert recorder.named("status") == []

    # a friend made mid-session starts from the status seen at that point
    await _befriend(services, "alice", "bob")
    await session.poll_once()
    assert recorder.named("status") == []

    await services.identity.set_status("bob", "idle")
    await session.poll_once()
    await session.poll_once()
    assert recorder.named("status") == [("bob", PresenceStatus.IDLE)]

    await services.friends.remove_friend("alice", "bob")
    await session.poll_once()
    await services.identity.set_status("bob", "dnd")
    await session.poll_once()
    assert recorder.named("status") == [("bob", PresenceStatus.IDLE)]
    await session.unsubscribe()
