"""Wiring of the social services around one store."""

from __future__ import annotations

from dataclasses import dataclass

from fortized.realtime.sync import DEFAULT_POLL_INTERVAL, RealtimeSync
from fortized.store.base import KeyValueStore

from .auth import AuthProvider, PasswordAuthProvider
from .bastions import BastionDirectory
from .friends import FriendGraph
from .identity import IdentityService
from .limits import SocialLimits
from .messaging import MessagingService
from .notifications import NotificationCenter
from .session import SessionContext


@dataclass(slots=True)
class SocialServices:
    store: KeyValueStore
    limits: SocialLimits
    auth: AuthProvider
    identity: IdentityService
    notifications: NotificationCenter
    friends: FriendGraph
    messaging: MessagingService
    bastions: BastionDirectory
    realtime: RealtimeSync

    def session(self) -> SessionContext:
        return SessionContext(self.identity, self.realtime.session())

    async def close(self) -> None:
        await self.realtime.shutdown()
        await self.store.close()


def build_services(
    store: KeyValueStore,
    *,
    limits: SocialLimits | None = None,
    auth: AuthProvider | None = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> SocialServices:
    limits = limits or SocialLimits()
    auth = auth or PasswordAuthProvider(store)
    notifications = NotificationCenter(store, limits)
    return SocialServices(
        store=store,
        limits=limits,
        auth=auth,
        identity=IdentityService(store, auth, limits),
        notifications=notifications,
        friends=FriendGraph(store, notifications, limits),
        messaging=MessagingService(store, notifications, limits),
        bastions=BastionDirectory(store),
        realtime=RealtimeSync(store, poll_interval=poll_interval),
    )
