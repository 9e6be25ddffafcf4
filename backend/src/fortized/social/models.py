"""Persisted record shapes.

Records are stored as JSON documents with camelCase field names. Every
collection defaults to empty, so a document written by an older client (or a
backend that drops empty lists) still loads without loss.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RecordT = TypeVar("RecordT", bound="Record")


class PresenceStatus(str, Enum):
    """User-configurable presence indicator."""

    ONLINE = "online"
    IDLE = "idle"
    DND = "dnd"
    OFFLINE = "offline"

    @classmethod
    def coerce(cls, value: Any) -> "PresenceStatus | None":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class NotificationType(str, Enum):
    """Known notification kinds; other strings are accepted as-is."""

    FRIEND_REQUEST = "friend_request"
    FRIEND_ACCEPT = "friend_accept"
    DM = "dm"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def clock_time(moment: datetime) -> str:
    return moment.astimezone().strftime("%H:%M")


def new_record_id(moment: datetime | None = None) -> str:
    """Time-ordered id: millisecond timestamp in hex plus a random suffix.

    Ids sort by creation time. Uniqueness of the suffix is probabilistic.
    """

    moment = moment or utcnow()
    millis = int(moment.timestamp() * 1000)
    return f"{millis:012x}{secrets.token_hex(4)}"


def record_id_millis(record_id: str) -> int:
    """Creation time encoded in a :func:`new_record_id` id; 0 when it has none."""

    try:
        return int(str(record_id)[:12], 16)
    except ValueError:
        return 0


class Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls: type[RecordT], data: Mapping[str, Any] | None) -> RecordT | None:
        if not isinstance(data, Mapping):
            return None
        return cls.model_validate(dict(data))


class User(Record):
    username: str
    display_name: str = ""
    email: str = ""
    pfp: str | None = None
    banner: str | None = None
    onyx: int = 0
    status: PresenceStatus = PresenceStatus.OFFLINE
    friends: list[str] = Field(default_factory=list)
    friend_requests_sent: list[str] = Field(default_factory=list)
    friend_requests_received: list[str] = Field(default_factory=list)
    bastions: list[str] = Field(default_factory=list)
    radiance_until: str | None = None
    last_daily: str | None = None
    created_at: str = Field(default_factory=lambda: isoformat(utcnow()))


class Notification(Record):
    id: str
    type: str
    source: str = Field(alias="from")
    data: dict[str, Any] | None = None
    time: str
    read: bool = False


class DirectMessage(Record):
    id: str
    source: str = Field(alias="from")
    text: str
    time: str
    timestamp: str

    @classmethod
    def compose(cls, source: str, text: str, moment: datetime | None = None, **extra: Any):
        moment = moment or utcnow()
        return cls(
            id=new_record_id(moment),
            source=source,
            text=text,
            time=clock_time(moment),
            timestamp=isoformat(moment),
            **extra,
        )


class ChannelMessage(DirectMessage):
    reactions: dict[str, list[str]] = Field(default_factory=dict)
