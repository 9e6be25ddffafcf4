"""Notification feed endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from fortized.social.services import SocialServices

from app.api.deps import get_current_username, get_services
from app.schemas import MarkReadResult, NotificationList, NotificationRead, UnreadCount

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationList)
async def list_notifications(
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> NotificationList:
    """Return notifications newest first."""

    items = await services.notifications.list(username)
    return NotificationList(
        items=[NotificationRead.model_validate(item, from_attributes=True) for item in items],
        unread=sum(1 for item in items if not item.read),
    )


@router.get("/unread", response_model=UnreadCount)
async def unread_notifications(
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> UnreadCount:
    return UnreadCount(unread=await services.notifications.unread_count(username))


@router.post("/read", response_model=MarkReadResult)
async def mark_notifications_read(
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> MarkReadResult:
    """Mark every notification of the current user as read."""

    return MarkReadResult(marked=await services.notifications.mark_all_read(username))
