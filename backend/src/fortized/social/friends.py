"""Friend request lifecycle across pairs of user records.

Each user record is rewritten through its own store transaction, so a
concurrent edit to the same record is retried instead of lost. The two
records touched by one operation are not updated atomically together: a
crash or a racing operation between the two writes can leave one side ahead
of the other until the next operation on the pair rewrites both.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from fortized.store.base import ABORT, KeyValueStore
from fortized.store.keys import normalize_username, user_key

from .limits import SocialLimits
from .models import NotificationType, User
from .notifications import NotificationCenter
from .outcome import Outcome, Rejection

logger = logging.getLogger(__name__)


def _add(items: list[str], name: str) -> bool:
    if name in items:
        return False
    items.append(name)
    return True


def _discard(items: list[str], name: str) -> bool:
    if name not in items:
        return False
    items[:] = [item for item in items if item != name]
    return True


@dataclass(slots=True)
class FriendRequests:
    incoming: list[str] = field(default_factory=list)
    outgoing: list[str] = field(default_factory=list)


class FriendGraph:
    def __init__(
        self,
        store: KeyValueStore,
        notifications: NotificationCenter,
        limits: SocialLimits | None = None,
    ) -> None:
        self._store = store
        self._notifications = notifications
        self._limits = limits or SocialLimits()

    async def _load(self, username: str) -> User | None:
        return User.from_record(await self._store.get(user_key(username)))

    async def _edit(self, username: str, mutate: Callable[[User], bool]) -> bool:
        """Apply *mutate* to the stored record; skip the write when nothing changed."""

        def apply(current: Any) -> Any:
            user = User.from_record(current)
            if user is None or not mutate(user):
                return ABORT
            return user.to_record()

        result = await self._store.transaction(user_key(username), apply)
        return result.committed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def send_request(self, sender: str, recipient: str) -> Outcome:
        me, them = normalize_username(sender), normalize_username(recipient)
        if me == them:
            return Outcome.reject(Rejection.SELF_REFERENCE, "Can't add yourself.")

        mine, theirs = await self._load(me), await self._load(them)
        if mine is None:
            return Outcome.reject(Rejection.UNKNOWN_USER, "Your account not found.")
        if theirs is None:
            return Outcome.reject(Rejection.UNKNOWN_USER, "User not found.")
        if them in mine.friends:
            return Outcome.reject(Rejection.ALREADY_FRIENDS, "Already friends.")
        if them in mine.friend_requests_sent:
            return Outcome.reject(Rejection.DUPLICATE_REQUEST, "Request already sent.")

        # They asked first: accept instead of opening a second pending request.
        if them in mine.friend_requests_received or me in theirs.friend_requests_sent:
            logger.info("Mutual request between %s and %s; accepting", me, them)
            return await self.accept_request(me, them)

        await self._edit(me, lambda user: _add(user.friend_requests_sent, them))
        await self._edit(them, lambda user: _add(user.friend_requests_received, me))
        await self._notifications.push(them, NotificationType.FRIEND_REQUEST, me)
        logger.info("Friend request %s -> %s", me, them)
        return Outcome.success(f"Friend request sent to {them}!")

    async def accept_request(self, accepter: str, requester: str) -> Outcome:
        me, them = normalize_username(accepter), normalize_username(requester)
        if me == them:
            return Outcome.reject(Rejection.SELF_REFERENCE, "Can't befriend yourself.")
        if await self._load(me) is None or await self._load(them) is None:
            return Outcome.reject(Rejection.UNKNOWN_USER, "User not found.")

        def befriend(other: str) -> Callable[[User], bool]:
            def mutate(user: User) -> bool:
                return any(
                    [
                        _add(user.friends, other),
                        _discard(user.friend_requests_received, other),
                        _discard(user.friend_requests_sent, other),
                    ]
                )

            return mutate

        await self._edit(me, befriend(them))
        await self._edit(them, befriend(me))
        if self._limits.mark_request_read_on_accept:
            await self._notifications.mark_read_from(me, NotificationType.FRIEND_REQUEST, them)
        await self._notifications.push(them, NotificationType.FRIEND_ACCEPT, me)
        logger.info("%s and %s are now friends", me, them)
        return Outcome.success(f"You are now friends with {them}!")

    async def decline_request(self, decliner: str, requester: str) -> Outcome:
        me, them = normalize_username(decliner), normalize_username(requester)
        await self._edit(
            me,
            lambda user: any(
                [
                    _discard(user.friend_requests_received, them),
                    _discard(user.friend_requests_sent, them),
                ]
            ),
        )
        await self._edit(
            them,
            lambda user: any(
                [
                    _discard(user.friend_requests_sent, me),
                    _discard(user.friend_requests_received, me),
                ]
            ),
        )
        return Outcome.success("Request declined.")

    async def remove_friend(self, username: str, friend: str) -> Outcome:
        me, them = normalize_username(username), normalize_username(friend)
        await self._edit(me, lambda user: _discard(user.friends, them))
        await self._edit(them, lambda user: _discard(user.friends, me))
        return Outcome.success(f"Removed {them} from friends.")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def list_friends(self, username: str) -> list[str]:
        user = await self._load(username)
        return list(user.friends) if user is not None else []

    async def list_requests(self, username: str) -> FriendRequests:
        user = await self._load(username)
        if user is None:
            return FriendRequests()
        return FriendRequests(
            incoming=list(user.friend_requests_received),
            outgoing=list(user.friend_requests_sent),
        )
