"""Explicit session object for a signed-in user."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fortized.store.keys import normalize_username

from .identity import IdentityService
from .outcome import Outcome, Rejection

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from fortized.realtime.sync import SessionCallbacks, SyncSession

logger = logging.getLogger(__name__)


class SessionContext:
    """Tracks who is acting and owns that user's realtime subscription.

    ``open`` binds the context to a user; ``close`` releases the subscription
    so no handler outlives the session.
    """

    def __init__(self, identity: IdentityService, sync: "SyncSession") -> None:
        self._identity = identity
        self._sync = sync
        self._username: str | None = None

    @property
    def username(self) -> str | None:
        return self._username

    @property
    def active(self) -> bool:
        return self._username is not None

    @property
    def sync(self) -> "SyncSession":
        return self._sync

    async def open(self, username: str) -> Outcome:
        name = normalize_username(username)
        if self._username is not None and self._username != name:
            await self.close()
        if await self._identity.get_user(name) is None:
            return Outcome.reject(Rejection.UNKNOWN_USER, "User not found.")
        self._username = name
        return Outcome.success(data=name)

    async def subscribe(
        self, callbacks: "SessionCallbacks | None" = None, *, replay_unread: bool = False
    ) -> None:
        if self._username is None:
            raise RuntimeError("Session is not open")
        await self._sync.subscribe(self._username, callbacks, replay_unread=replay_unread)

    async def close(self) -> None:
        await self._sync.unsubscribe()
        if self._username is not None:
            logger.debug("Closed session for %s", self._username)
        self._username = None
