"""Schemas for the notification feed."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    source: str = Field(description="Username that caused the notification")
    data: dict[str, Any] | None = None
    time: str
    read: bool = False


class NotificationList(BaseModel):
    items: list[NotificationRead] = Field(default_factory=list)
    unread: int = 0


class UnreadCount(BaseModel):
    unread: int = 0


class MarkReadResult(BaseModel):
    marked: int = 0
