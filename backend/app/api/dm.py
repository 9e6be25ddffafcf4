"""Direct message endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from fortized.social.services import SocialServices

from app.api.deps import ensure_ok, get_current_username, get_services
from app.schemas import DirectMessageRead, MessageCreate, PartnerList

router = APIRouter(prefix="/dm", tags=["direct"])


@router.get("/partners", response_model=PartnerList)
async def list_partners(
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> PartnerList:
    """Return recent conversation partners, most recent first."""

    return PartnerList(partners=await services.messaging.recent_partners(username))


@router.get("/{partner}", response_model=list[DirectMessageRead])
async def read_thread(
    partner: str,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> list[DirectMessageRead]:
    """Return the conversation with *partner* in send order."""

    if await services.identity.get_user(partner) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    messages = await services.messaging.get_thread(username, partner)
    return [DirectMessageRead.model_validate(message, from_attributes=True) for message in messages]


@router.post("/{partner}", response_model=DirectMessageRead, status_code=status.HTTP_201_CREATED)
async def send_direct_message(
    partner: str,
    payload: MessageCreate,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> DirectMessageRead:
    outcome = ensure_ok(await services.messaging.send_direct(username, partner, payload.text))
    return DirectMessageRead.model_validate(outcome.data, from_attributes=True)
