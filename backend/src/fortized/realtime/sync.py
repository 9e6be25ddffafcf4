"""Session-level and scoped realtime subscriptions over the key-value store.

Every subscription combines two delivery paths. Store watches push
mutations as they are committed, when the backend can do so, and a poll loop
re-reads the same keys every ``poll_interval`` seconds as a safety net. Both
paths hand their snapshot to one ingest routine that remembers what it has
already delivered, so a logical event reaches its callback at most once.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from fortized.monitoring import realtime_events_total, sync_poll_cycles_total, sync_sessions
from fortized.social.messaging import message_entries, partner_entries
from fortized.social.models import (
    ChannelMessage,
    DirectMessage,
    Notification,
    NotificationType,
    PresenceStatus,
    User,
    record_id_millis,
)
from fortized.social.notifications import notification_entries
from fortized.store.base import KeyValueStore, MutationEvent, PushUnavailableError, StoreError
from fortized.store.keys import (
    STATUSES_PREFIX,
    channel_key,
    dm_index_key,
    dm_key,
    normalize_username,
    notifications_key,
    status_key,
    user_key,
)

from .transport import Subscription

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
# how far out of order records may commit and still be reported
DELIVERY_WINDOW_MS = 5_000

Callback = Callable[..., Any]


@dataclass(frozen=True, slots=True)
class FriendEvent:
    username: str
    notification: Notification


@dataclass(frozen=True, slots=True)
class DirectMessageEvent:
    partner: str
    preview: str
    notification: Notification


@dataclass(frozen=True, slots=True)
class StatusEvent:
    username: str
    status: PresenceStatus


@dataclass(slots=True)
class SessionCallbacks:
    """Handlers for one session; each may be a plain or a coroutine function."""

    on_new_notification: Callable[[Notification], Any] | None = None
    on_new_dm: Callable[[DirectMessageEvent], Any] | None = None
    on_friend_request: Callable[[FriendEvent], Any] | None = None
    on_friend_accept: Callable[[FriendEvent], Any] | None = None
    on_status_change: Callable[[StatusEvent], Any] | None = None
    on_dm_index_change: Callable[[list[str]], Any] | None = None


async def _invoke(callback: Callback | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Realtime callback %s failed", getattr(callback, "__name__", callback))


class _DeliveryCursor:
    """High-water mark over time-ordered record ids.

    Ids older than the newest delivered one by more than ``window_ms`` count as
    delivered. Ids inside the window are remembered one by one, so records that
    commit slightly out of order (ids are minted before the write) are still
    reported exactly once. Memory is bounded by the window, not by log length.
    """

    def __init__(self, window_ms: int) -> None:
        self._window = window_ms
        self._mark = 0
        self._recent: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._recent)

    @property
    def mark(self) -> int:
        return self._mark

    def advance(self, record_id: str) -> bool:
        """Record *record_id*; return False when it was already delivered."""

        stamp = record_id_millis(record_id)
        if stamp < self._mark - self._window or record_id in self._recent:
            return False
        self._recent[record_id] = stamp
        if stamp > self._mark:
            self._mark = stamp
            floor = stamp - self._window
            self._recent = {key: value for key, value in self._recent.items() if value >= floor}
        return True

    def clear(self) -> None:
        self._mark = 0
        self._recent = {}


def _by_id(entries: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted((entry for entry in entries if entry.get("id")), key=lambda entry: str(entry["id"]))


async def _close_all(subscriptions: Iterable[Subscription]) -> None:
    for subscription in subscriptions:
        try:
            await subscription.close()
        except Exception:
            logger.exception("Failed to close %s", subscription.name)


@dataclass(slots=True)
class SessionBaseline:
    """What was stored when a session subscribed; later events build on it."""

    notifications: list[Notification] = field(default_factory=list)
    partners: list[str] = field(default_factory=list)
    statuses: dict[str, PresenceStatus] = field(default_factory=dict)


class SyncSession:
    """Realtime view of one signed-in user.

    ``subscribe`` baselines what is already stored, so only changes made after
    the call are reported (pass ``replay_unread=True`` to also deliver the
    unread notifications found at that moment). Presence is tracked for
    friends only, whichever delivery path reports it.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        delivery_window_ms: int = DELIVERY_WINDOW_MS,
    ) -> None:
        self._store = store
        self._poll_interval = poll_interval
        self._username: str | None = None
        self._callbacks = SessionCallbacks()
        self._watches: list[Subscription] = []
        self._poll_task: asyncio.Task[None] | None = None
        self._generation = 0
        self._lock = asyncio.Lock()
        self._cursor = _DeliveryCursor(delivery_window_ms)
        self._partners: list[str] | None = None
        self._friends: set[str] = set()
        self._statuses: dict[str, PresenceStatus] = {}
        self._baseline = SessionBaseline()
        self._poll_warning_logged = False

    @property
    def username(self) -> str | None:
        return self._username

    @property
    def subscribed(self) -> bool:
        return self._username is not None

    @property
    def push_active(self) -> bool:
        return bool(self._watches)

    @property
    def baseline(self) -> SessionBaseline:
        return self._baseline

    async def subscribe(
        self,
        username: str,
        callbacks: SessionCallbacks | None = None,
        *,
        replay_unread: bool = False,
    ) -> None:
        await self.unsubscribe()
        name = normalize_username(username)
        self._username = name
        self._callbacks = callbacks or SessionCallbacks()
        self._generation += 1
        sync_sessions.inc()
        try:
            await self._take_baseline()
        except StoreError:
            await self.unsubscribe()
            raise
        await self._attach_push(name)
        self._poll_task = asyncio.create_task(
            self._poll_loop(self._generation), name=f"sync-poll-{name}"
        )
        if replay_unread:
            # stored newest-first; replay in the order they were created
            for notification in reversed(self._baseline.notifications):
                if not notification.read:
                    await self._dispatch_notification(notification, "replay")

    async def unsubscribe(self) -> None:
        """Stop polling and drop every watch; safe to call at any time."""

        was_subscribed = self._username is not None
        self._username = None
        self._generation += 1
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        watches, self._watches = self._watches, []
        await _close_all(watches)
        self._callbacks = SessionCallbacks()
        self._cursor.clear()
        self._partners = None
        self._friends = set()
        self._statuses = {}
        self._baseline = SessionBaseline()
        self._poll_warning_logged = False
        if was_subscribed:
            sync_sessions.dec()

    async def poll_once(self) -> None:
        """Run one polling pass: notifications, partner index and friend presence."""

        name = self._username
        if name is None:
            return
        generation = self._generation
        notifications = await self._store.get(notifications_key(name))
        partners = await self._store.get(dm_index_key(name))
        friends = await self._read_friends(name)
        statuses = [(friend, await self._store.get(status_key(friend))) for friend in friends]
        if generation != self._generation:
            return

        await self._ingest_notifications(notifications, via="poll")
        await self._ingest_partners(partner_entries(partners), via="poll")
        async with self._lock:
            self._track_friends(friends)
        for friend, raw in statuses:
            await self._ingest_status(friend, raw, via="poll")
        sync_poll_cycles_total.labels("session").inc()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    async def _read_friends(self, username: str) -> list[str]:
        user = User.from_record(await self._store.get(user_key(username)))
        return list(user.friends) if user is not None else []

    def _track_friends(self, friends: Iterable[str]) -> list[str]:
        """Replace the friend set; return the names that were not tracked yet."""

        current = set(friends)
        added = sorted(current - self._friends)
        for gone in self._friends - current:
            self._statuses.pop(gone, None)
        self._friends = current
        return added

    async def _take_baseline(self) -> None:
        name = self._username
        assert name is not None
        entries = notification_entries(await self._store.get(notifications_key(name)))
        for entry in _by_id(entries):
            self._cursor.advance(str(entry["id"]))
        self._partners = partner_entries(await self._store.get(dm_index_key(name)))
        friends = await self._read_friends(name)
        self._track_friends(friends)
        for friend in friends:
            raw = await self._store.get(status_key(friend))
            self._statuses[friend] = PresenceStatus.coerce(raw) or PresenceStatus.OFFLINE
        self._baseline = SessionBaseline(
            notifications=[Notification.model_validate(entry) for entry in entries],
            partners=list(self._partners),
            statuses=dict(self._statuses),
        )

    async def _attach_push(self, name: str) -> None:
        handlers: list[tuple[str, Callable[[MutationEvent], Awaitable[None]]]] = [
            (notifications_key(name), self._on_notifications),
            (dm_index_key(name), self._on_partners),
            (user_key(name), self._on_user),
            (STATUSES_PREFIX, self._on_status),
        ]
        try:
            for prefix, handler in handlers:
                self._watches.append(await self._store.watch(prefix, handler))
        except PushUnavailableError:
            watches, self._watches = self._watches, []
            await _close_all(watches)
            logger.info(
                "Push delivery unavailable for %s; polling every %.1fs",
                name,
                self._poll_interval,
            )

    async def _poll_loop(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            if generation != self._generation:
                return
            try:
                await self.poll_once()
            except StoreError:
                if not self._poll_warning_logged:
                    logger.warning(
                        "Realtime poll for %s failed; retrying every %.1fs",
                        self._username,
                        self._poll_interval,
                        exc_info=logger.isEnabledFor(logging.DEBUG),
                    )
                    self._poll_warning_logged = True
                continue
            self._poll_warning_logged = False

    # ------------------------------------------------------------------
    # Push handlers
    # ------------------------------------------------------------------
    async def _on_notifications(self, event: MutationEvent) -> None:
        await self._ingest_notifications(event.value, via="push")

    async def _on_partners(self, event: MutationEvent) -> None:
        await self._ingest_partners(partner_entries(event.value), via="push")

    async def _on_user(self, event: MutationEvent) -> None:
        if event.key != user_key(self._username or ""):
            return
        user = User.from_record(event.value)
        generation = self._generation
        async with self._lock:
            added = self._track_friends(user.friends if user is not None else [])
        # new friends start from their current status without an event
        for friend in added:
            raw = await self._store.get(status_key(friend))
            if generation != self._generation:
                return
            async with self._lock:
                if friend in self._friends:
                    self._statuses.setdefault(
                        friend, PresenceStatus.coerce(raw) or PresenceStatus.OFFLINE
                    )

    async def _on_status(self, event: MutationEvent) -> None:
        username = event.key[len(STATUSES_PREFIX):]
        if not username or "/" in username:
            return
        await self._ingest_status(username, event.value, via="push")

    # ------------------------------------------------------------------
    # Ingest (shared by push and poll)
    # ------------------------------------------------------------------
    async def _ingest_notifications(self, raw: Any, *, via: str) -> None:
        if self._username is None:
            return
        fresh: list[Notification] = []
        async with self._lock:
            for entry in _by_id(notification_entries(raw)):
                if not self._cursor.advance(str(entry["id"])) or entry.get("read"):
                    continue
                fresh.append(Notification.model_validate(entry))
        for notification in fresh:
            await self._dispatch_notification(notification, via)

    async def _dispatch_notification(self, notification: Notification, via: str) -> None:
        callbacks = self._callbacks
        realtime_events_total.labels(notification.type, via).inc()
        await _invoke(callbacks.on_new_notification, notification)
        if notification.type == NotificationType.FRIEND_REQUEST.value:
            await _invoke(callbacks.on_friend_request, FriendEvent(notification.source, notification))
        elif notification.type == NotificationType.FRIEND_ACCEPT.value:
            await _invoke(callbacks.on_friend_accept, FriendEvent(notification.source, notification))
        elif notification.type == NotificationType.DM.value:
            preview = str((notification.data or {}).get("preview", ""))
            await _invoke(
                callbacks.on_new_dm,
                DirectMessageEvent(partner=notification.source, preview=preview, notification=notification),
            )

    async def _ingest_partners(self, partners: list[str], *, via: str) -> None:
        if self._username is None:
            return
        async with self._lock:
            if partners == self._partners:
                return
            self._partners = list(partners)
        realtime_events_total.labels("dm_index", via).inc()
        await _invoke(self._callbacks.on_dm_index_change, list(partners))

    async def _ingest_status(self, username: str, raw: Any, *, via: str) -> None:
        if self._username is None or username == self._username:
            return
        status = PresenceStatus.coerce(raw) if raw is not None else PresenceStatus.OFFLINE
        if status is None:
            return
        async with self._lock:
            if username not in self._friends:
                return
            previous = self._statuses.get(username)
            self._statuses[username] = status
            # first sight of a friend only records the status
            if previous is None or previous == status:
                return
        realtime_events_total.labels("status", via).inc()
        await _invoke(self._callbacks.on_status_change, StatusEvent(username, status))


class ScopedWatch:
    """Reports messages appended to one thread or channel log.

    Messages already present when the watch starts are not reported; they are
    kept in :attr:`history` instead. Each message is delivered once, whichever
    path sees it first.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str,
        callback: Callback,
        *,
        model: type[DirectMessage] = DirectMessage,
        kind: str = "message",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        delivery_window_ms: int = DELIVERY_WINDOW_MS,
    ) -> None:
        self._store = store
        self._key = key
        self._callback = callback
        self._model = model
        self._kind = kind
        self._poll_interval = poll_interval
        self._cursor = _DeliveryCursor(delivery_window_ms)
        self._lock = asyncio.Lock()
        self._watch: Subscription | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._history: list[DirectMessage] = []
        self._closed = False
        self._poll_warning_logged = False

    @property
    def key(self) -> str:
        return self._key

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def push_active(self) -> bool:
        return self._watch is not None

    @property
    def history(self) -> list[DirectMessage]:
        """Messages stored when the watch started, in send order."""

        return list(self._history)

    async def start(self) -> "ScopedWatch":
        entries = message_entries(await self._store.get(self._key))
        for entry in _by_id(entries):
            self._cursor.advance(str(entry["id"]))
        self._history = [self._model.model_validate(entry) for entry in entries]
        try:
            self._watch = await self._store.watch(self._key, self._on_mutation)
        except PushUnavailableError:
            logger.debug("Push unavailable for %s; polling only", self._key)
        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"sync-watch-{self._key}")
        return self

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._watch is not None:
            watch, self._watch = self._watch, None
            await _close_all([watch])

    async def poll_once(self) -> None:
        if self._closed:
            return
        await self._ingest(await self._store.get(self._key), via="poll")
        sync_poll_cycles_total.labels("scoped").inc()

    async def _poll_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.poll_once()
            except StoreError:
                if not self._poll_warning_logged:
                    logger.warning(
                        "Realtime poll for %s failed",
                        self._key,
                        exc_info=logger.isEnabledFor(logging.DEBUG),
                    )
                    self._poll_warning_logged = True
                continue
            self._poll_warning_logged = False

    async def _on_mutation(self, event: MutationEvent) -> None:
        if event.key == self._key:
            await self._ingest(event.value, via="push")

    async def _ingest(self, raw: Any, *, via: str) -> None:
        if self._closed:
            return
        fresh: list[DirectMessage] = []
        async with self._lock:
            for entry in _by_id(message_entries(raw)):
                if self._cursor.advance(str(entry["id"])):
                    fresh.append(self._model.model_validate(entry))
        for message in fresh:
            realtime_events_total.labels(self._kind, via).inc()
            await _invoke(self._callback, message)


class RealtimeSync:
    """Creates sessions and scoped watches that share one store and interval."""

    def __init__(self, store: KeyValueStore, *, poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
        self._store = store
        self._poll_interval = poll_interval
        self._sessions: "weakref.WeakSet[SyncSession]" = weakref.WeakSet()
        self._scoped: set[ScopedWatch] = set()

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    def session(self) -> SyncSession:
        session = SyncSession(self._store, poll_interval=self._poll_interval)
        self._sessions.add(session)
        return session

    async def subscribe_channel(
        self, bastion_id: str, channel_id: str, callback: Callable[[ChannelMessage], Any]
    ) -> ScopedWatch:
        return await self._scoped_watch(
            channel_key(bastion_id, channel_id), callback, ChannelMessage, "channel_message"
        )

    async def subscribe_thread(
        self, first: str, second: str, callback: Callable[[DirectMessage], Any]
    ) -> ScopedWatch:
        return await self._scoped_watch(dm_key(first, second), callback, DirectMessage, "direct_message")

    async def _scoped_watch(
        self, key: str, callback: Callback, model: type[DirectMessage], kind: str
    ) -> ScopedWatch:
        self._scoped = {watch for watch in self._scoped if not watch.closed}
        watch = ScopedWatch(
            self._store, key, callback, model=model, kind=kind, poll_interval=self._poll_interval
        )
        await watch.start()
        self._scoped.add(watch)
        return watch

    async def shutdown(self) -> None:
        for session in list(self._sessions):
            await session.unsubscribe()
        scoped, self._scoped = self._scoped, set()
        for watch in scoped:
            await watch.close()
