"""Direct message threads, bastion channel logs and emoji reactions."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from fortized.store.base import ABORT, KeyValueStore
from fortized.store.keys import (
    channel_key,
    dm_index_key,
    dm_key,
    normalize_username,
    thread_key,
    user_key,
)

from .limits import SocialLimits
from .models import ChannelMessage, DirectMessage, NotificationType
from .notifications import NotificationCenter
from .outcome import Outcome, Rejection

logger = logging.getLogger(__name__)

__all__ = ["MessagingService", "thread_key"]


def message_entries(value: Any) -> list[dict[str, Any]]:
    """Normalise a stored message log into a list in send order."""

    if isinstance(value, list):
        return [entry for entry in value if isinstance(entry, dict)]
    if isinstance(value, Mapping):
        return sorted(
            (entry for entry in value.values() if isinstance(entry, dict)),
            key=lambda entry: (str(entry.get("timestamp", "")), str(entry.get("id", ""))),
        )
    return []


def partner_entries(value: Any) -> list[str]:
    if isinstance(value, Mapping):
        value = list(value.values())
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


class MessagingService:
    def __init__(
        self,
        store: KeyValueStore,
        notifications: NotificationCenter,
        limits: SocialLimits | None = None,
    ) -> None:
        self._store = store
        self._notifications = notifications
        self._limits = limits or SocialLimits()

    async def _exists(self, username: str) -> bool:
        return await self._store.get(user_key(username)) is not None

    # ------------------------------------------------------------------
    # Direct messages
    # ------------------------------------------------------------------
    async def send_direct(self, sender: str, recipient: str, text: str) -> Outcome:
        me, them = normalize_username(sender), normalize_username(recipient)
        if not text or not text.strip():
            return Outcome.reject(Rejection.INVALID_INPUT, "Message cannot be empty.")
        if me == them:
            return Outcome.reject(Rejection.SELF_REFERENCE, "Can't message yourself.")
        if not await self._exists(me) or not await self._exists(them):
            return Outcome.reject(Rejection.UNKNOWN_USER, "User not found.")

        message = DirectMessage.compose(me, text)
        record = message.to_record()
        await self._store.transaction(
            dm_key(me, them), lambda current: [*message_entries(current), record]
        )
        await self._touch_partner(me, them)
        await self._touch_partner(them, me)
        await self._notifications.push(
            them,
            NotificationType.DM,
            me,
            {"preview": text[: self._limits.dm_preview_length]},
        )
        return Outcome.success(data=message)

    async def _touch_partner(self, username: str, partner: str) -> None:
        cap = self._limits.dm_partner_cap

        def move_to_front(current: Any) -> Any:
            rest = [name for name in partner_entries(current) if name != partner]
            return [partner, *rest][:cap]

        await self._store.transaction(dm_index_key(username), move_to_front)

    async def get_thread(self, first: str, second: str) -> list[DirectMessage]:
        raw = await self._store.get(dm_key(first, second))
        return [DirectMessage.model_validate(entry) for entry in message_entries(raw)]

    async def recent_partners(self, username: str) -> list[str]:
        return partner_entries(await self._store.get(dm_index_key(username)))

    # ------------------------------------------------------------------
    # Bastion channels
    # ------------------------------------------------------------------
    async def send_channel(
        self, bastion_id: str, channel_id: str, sender: str, text: str
    ) -> Outcome:
        me = normalize_username(sender)
        if not text or not text.strip():
            return Outcome.reject(Rejection.INVALID_INPUT, "Message cannot be empty.")
        if not await self._exists(me):
            return Outcome.reject(Rejection.UNKNOWN_USER, "User not found.")

        message = ChannelMessage.compose(me, text)
        record = message.to_record()
        cap = self._limits.channel_message_cap
        await self._store.transaction(
            channel_key(bastion_id, channel_id),
            lambda current: [*message_entries(current), record][-cap:],
        )
        return Outcome.success(data=message)

    async def get_channel_messages(self, bastion_id: str, channel_id: str) -> list[ChannelMessage]:
        raw = await self._store.get(channel_key(bastion_id, channel_id))
        return [ChannelMessage.model_validate(entry) for entry in message_entries(raw)]

    async def toggle_reaction(
        self,
        bastion_id: str,
        channel_id: str,
        message_id: str,
        emoji: str,
        username: str,
    ) -> Outcome:
        """Add *username* to the emoji's reactors, or remove them if present.

        The whole channel log is rewritten inside one transaction, so
        concurrent toggles on the same message are applied one after the
        other. A missing message leaves the log untouched.
        """

        if not emoji:
            return Outcome.reject(Rejection.INVALID_INPUT, "Emoji is required.")
        name = normalize_username(username)
        reactions: dict[str, list[str]] = {}

        def apply(current: Any) -> Any:
            nonlocal reactions
            messages = message_entries(current)
            for entry in messages:
                if entry.get("id") != message_id:
                    continue
                reactions = {key: list(value) for key, value in (entry.get("reactions") or {}).items()}
                reactors = reactions.get(emoji, [])
                if name in reactors:
                    reactors.remove(name)
                else:
                    reactors.append(name)
                if reactors:
                    reactions[emoji] = reactors
                else:
                    reactions.pop(emoji, None)
                entry["reactions"] = reactions
                return messages
            return ABORT

        result = await self._store.transaction(channel_key(bastion_id, channel_id), apply)
        if not result.committed:
            return Outcome.reject(Rejection.NOT_FOUND, "Message not found.")
        return Outcome.success(data=reactions)
