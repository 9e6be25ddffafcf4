"""User records, registration and presence."""

from __future__ import annotations

import logging
import re
from typing import Any

from fortized.store.base import ABORT, KeyValueStore
from fortized.store.keys import USERS_PREFIX, normalize_username, status_key, user_key

from .auth import AuthProvider
from .limits import SocialLimits
from .models import PresenceStatus, User
from .outcome import Outcome, Rejection

logger = logging.getLogger(__name__)

_USERNAME_REJECTED_CHARS = re.compile(r"[^a-z0-9_]")


def sanitize_username(raw: str) -> str:
    """Lower-case *raw* and drop everything outside ``[a-z0-9_]``."""

    return _USERNAME_REJECTED_CHARS.sub("", (raw or "").strip().lower())


class IdentityService:
    def __init__(
        self,
        store: KeyValueStore,
        auth: AuthProvider,
        limits: SocialLimits | None = None,
    ) -> None:
        self._store = store
        self._auth = auth
        self._limits = limits or SocialLimits()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    async def register(self, username: str, password: str, email: str = "") -> Outcome:
        name = sanitize_username(username)
        if len(name) < self._limits.min_username_length:
            return Outcome.reject(
                Rejection.INVALID_INPUT,
                f"Username must be {self._limits.min_username_length}+ characters (a-z, 0-9, _).",
            )
        if not password or len(password) < self._limits.min_password_length:
            return Outcome.reject(
                Rejection.INVALID_INPUT,
                f"Password must be {self._limits.min_password_length}+ characters.",
            )

        user = User(
            username=name,
            display_name=name,
            email=email or "",
            onyx=self._limits.starting_balance,
            status=PresenceStatus.ONLINE,
        )
        record = user.to_record()
        result = await self._store.transaction(
            user_key(name), lambda current: ABORT if current is not None else record
        )
        if not result.committed:
            return Outcome.reject(Rejection.ALREADY_EXISTS, "Username already taken.")

        await self._auth.enroll(name, password)
        await self._store.set(status_key(name), PresenceStatus.ONLINE.value)
        logger.info("Registered user %s", name)
        return Outcome.success(f"Welcome, {name}!", data=user)

    async def login(self, username: str, password: str) -> Outcome:
        name = normalize_username(username or "")
        user = await self.get_user(name)
        if user is None:
            return Outcome.reject(Rejection.UNKNOWN_USER, "User not found.")
        if not await self._auth.verify(name, password or ""):
            return Outcome.reject(Rejection.BAD_CREDENTIALS, "Wrong password.")
        await self.set_status(name, PresenceStatus.ONLINE)
        user.status = PresenceStatus.ONLINE
        return Outcome.success(f"Logged in as {name}.", data=user)

    async def logout(self, username: str) -> Outcome:
        return await self.set_status(username, PresenceStatus.OFFLINE)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    async def get_user(self, username: str) -> User | None:
        if not username:
            return None
        return User.from_record(await self._store.get(user_key(username)))

    async def exists(self, username: str) -> bool:
        return await self.get_user(username) is not None

    async def list_users(self) -> list[User]:
        users = []
        for key in await self._store.keys(USERS_PREFIX):
            user = User.from_record(await self._store.get(key))
            if user is not None:
                users.append(user)
        return sorted(users, key=lambda item: item.username)

    async def save_user(self, user: User) -> None:
        await self._store.update(user_key(user.username), user.to_record())

    async def update_profile(
        self,
        username: str,
        *,
        display_name: str | None = None,
        email: str | None = None,
        pfp: str | None = None,
        banner: str | None = None,
    ) -> Outcome:
        changes = {
            "displayName": display_name.strip() if display_name is not None else None,
            "email": email,
            "pfp": pfp,
            "banner": banner,
        }
        changes = {field: value for field, value in changes.items() if value is not None}
        if changes.get("displayName") == "":
            return Outcome.reject(Rejection.INVALID_INPUT, "Display name cannot be empty.")

        def apply(current: Any) -> Any:
            if current is None:
                return ABORT
            return {**current, **changes}

        result = await self._store.transaction(user_key(username), apply)
        if not result.committed:
            return Outcome.reject(Rejection.UNKNOWN_USER, "User not found.")
        return Outcome.success("Profile updated.", data=User.from_record(result.value))

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------
    async def get_status(self, username: str) -> PresenceStatus:
        value = await self._store.get(status_key(username))
        return PresenceStatus.coerce(value) or PresenceStatus.OFFLINE

    async def set_status(self, username: str, status: PresenceStatus | str) -> Outcome:
        presence = PresenceStatus.coerce(status)
        if presence is None:
            return Outcome.reject(Rejection.INVALID_INPUT, f"Unknown status '{status}'.")

        def apply(current: Any) -> Any:
            if current is None:
                return ABORT
            return {**current, "status": presence.value}

        result = await self._store.transaction(user_key(username), apply)
        if not result.committed:
            return Outcome.reject(Rejection.UNKNOWN_USER, "User not found.")
        await self._store.set(status_key(username), presence.value)
        return Outcome.success(data=presence)
