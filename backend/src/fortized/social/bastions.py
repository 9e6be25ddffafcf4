"""Bastion registry, membership lists and invite codes."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from fortized.store.base import ABORT, KeyValueStore
from fortized.store.keys import (
    BASTIONS_PREFIX,
    bastion_key,
    invite_key,
    members_key,
    normalize_username,
    user_key,
)

from .outcome import Outcome, Rejection

logger = logging.getLogger(__name__)


def _members(value: Any) -> list[str]:
    if isinstance(value, Mapping):
        value = list(value.values())
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


class BastionDirectory:
    """Free-form bastion descriptors plus the membership lists guarding channels."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def list_bastions(self) -> dict[str, dict[str, Any]]:
        bastions: dict[str, dict[str, Any]] = {}
        for key in await self._store.keys(BASTIONS_PREFIX):
            value = await self._store.get(key)
            if isinstance(value, dict):
                bastions[key[len(BASTIONS_PREFIX):]] = value
        return bastions

    async def get_bastion(self, bastion_id: str) -> dict[str, Any] | None:
        value = await self._store.get(bastion_key(bastion_id))
        return value if isinstance(value, dict) else None

    async def save_bastion(self, bastion_id: str, data: Mapping[str, Any]) -> None:
        await self._store.set(bastion_key(bastion_id), {**data, "id": bastion_id})

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------
    async def get_members(self, bastion_id: str) -> list[str]:
        return _members(await self._store.get(members_key(bastion_id)))

    async def is_member(self, bastion_id: str, username: str) -> bool:
        return normalize_username(username) in await self.get_members(bastion_id)

    async def add_member(self, bastion_id: str, username: str) -> list[str]:
        name = normalize_username(username)

        def apply(current: Any) -> Any:
            members = _members(current)
            if name in members:
                return ABORT
            return [*members, name]

        result = await self._store.transaction(members_key(bastion_id), apply)
        await self._track_membership(name, bastion_id, joined=True)
        return _members(result.value)

    async def remove_member(self, bastion_id: str, username: str) -> list[str]:
        name = normalize_username(username)

        def apply(current: Any) -> Any:
            members = _members(current)
            if name not in members:
                return ABORT
            return [member for member in members if member != name]

        result = await self._store.transaction(members_key(bastion_id), apply)
        await self._track_membership(name, bastion_id, joined=False)
        return _members(result.value)

    async def _track_membership(self, username: str, bastion_id: str, *, joined: bool) -> None:
        """Mirror a membership change into the user's ``bastions`` list."""

        def apply(current: Any) -> Any:
            if not isinstance(current, dict):
                return ABORT
            joined_ids = [str(item) for item in current.get("bastions") or []]
            if (bastion_id in joined_ids) == joined:
                return ABORT
            if joined:
                joined_ids.append(bastion_id)
            else:
                joined_ids.remove(bastion_id)
            return {**current, "bastions": joined_ids}

        await self._store.transaction(user_key(username), apply)

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------
    async def get_invite(self, code: str) -> dict[str, Any] | None:
        value = await self._store.get(invite_key(code))
        return value if isinstance(value, dict) else None

    async def save_invite(self, code: str, data: Mapping[str, Any]) -> None:
        await self._store.set(invite_key(code), {"uses": 0, **data, "code": code})

    async def increment_invite_uses(self, code: str) -> Outcome:
        def apply(current: Any) -> Any:
            if not isinstance(current, dict):
                return ABORT
            return {**current, "uses": int(current.get("uses") or 0) + 1}

        result = await self._store.transaction(invite_key(code), apply)
        if not result.committed:
            return Outcome.reject(Rejection.NOT_FOUND, "Invite not found.")
        return Outcome.success(data=result.value["uses"])

    async def join_with_invite(self, code: str, username: str) -> Outcome:
        invite = await self.get_invite(code)
        if invite is None or not invite.get("bastionId"):
            return Outcome.reject(Rejection.NOT_FOUND, "Invite not found.")
        bastion_id = str(invite["bastionId"])
        if await self.get_bastion(bastion_id) is None:
            return Outcome.reject(Rejection.NOT_FOUND, "Bastion not found.")
        if await self.is_member(bastion_id, username):
            return Outcome.success("Already a member.", data=bastion_id)
        await self.add_member(bastion_id, username)
        await self.increment_invite_uses(code)
        logger.info("%s joined bastion %s with invite %s", username, bastion_id, code)
        return Outcome.success("Joined bastion.", data=bastion_id)
