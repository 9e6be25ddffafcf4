"""Per-user notification log with read state and a retention cap."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from fortized.store.base import ABORT, KeyValueStore
from fortized.store.keys import normalize_username, notifications_key, user_key

from .limits import SocialLimits
from .models import Notification, NotificationType, isoformat, new_record_id, utcnow

logger = logging.getLogger(__name__)


def notification_entries(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, list):
        return [entry for entry in value if isinstance(entry, dict)]
    if isinstance(value, Mapping):
        # keyed by id; newest first by id
        return sorted(
            (entry for entry in value.values() if isinstance(entry, dict)),
            key=lambda entry: str(entry.get("id", "")),
            reverse=True,
        )
    return []


class NotificationCenter:
    """Stores notifications newest-first under ``notifications/<username>``.

    Appends go through a store transaction so two concurrent pushes to the
    same user never overwrite each other.
    """

    def __init__(self, store: KeyValueStore, limits: SocialLimits | None = None) -> None:
        self._store = store
        self._limits = limits or SocialLimits()

    async def push(
        self,
        target: str,
        kind: NotificationType | str,
        source: str,
        data: Mapping[str, Any] | None = None,
    ) -> Notification | None:
        """Prepend a notification for *target*.

        Returns ``None`` without writing anything when *target* has no user
        record.
        """

        if await self._store.get(user_key(target)) is None:
            logger.debug("Dropped %s notification for missing user %s", kind, target)
            return None

        moment = utcnow()
        notification = Notification(
            id=new_record_id(moment),
            type=kind.value if isinstance(kind, NotificationType) else str(kind),
            source=normalize_username(source),
            data=dict(data) if data is not None else None,
            time=isoformat(moment),
            read=False,
        )
        record = notification.to_record()
        cap = self._limits.notification_cap

        await self._store.transaction(
            notifications_key(target),
            lambda current: [record, *notification_entries(current)][:cap],
        )
        return notification

    async def list(self, username: str) -> list[Notification]:
        raw = await self._store.get(notifications_key(username))
        return [Notification.model_validate(entry) for entry in notification_entries(raw)]

    async def unread_count(self, username: str) -> int:
        return sum(1 for entry in await self.list(username) if not entry.read)

    async def mark_all_read(self, username: str) -> int:
        """Flip every unread entry to read and return how many changed."""

        return await self._mark(username, lambda entry: True)

    async def mark_read_from(self, username: str, kind: NotificationType | str, source: str) -> int:
        kind_value = kind.value if isinstance(kind, NotificationType) else str(kind)
        source_name = normalize_username(source)
        return await self._mark(
            username,
            lambda entry: entry.get("type") == kind_value and entry.get("from") == source_name,
        )

    async def _mark(self, username: str, selector) -> int:
        flipped = 0

        def apply(current: Any) -> Any:
            nonlocal flipped
            entries = notification_entries(current)
            flipped = 0
            for entry in entries:
                if not entry.get("read") and selector(entry):
                    entry["read"] = True
                    flipped += 1
            return entries if flipped else ABORT

        result = await self._store.transaction(notifications_key(username), apply)
        return flipped if result.committed else 0
