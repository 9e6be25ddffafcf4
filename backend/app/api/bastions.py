"""Bastion registry, membership, invites and channel message endpoints."""

from __future__ import annotations

import secrets

from fastapi import APIRouter, Depends, HTTPException, status

from fortized.social.services import SocialServices

from app.api.deps import ensure_ok, get_current_username, get_services, require_bastion_member
from app.schemas import (
    BastionRead,
    BastionWrite,
    ChannelMessageRead,
    InviteAccepted,
    InviteCreate,
    InviteRead,
    MemberList,
    MessageCreate,
    ReactionRequest,
    ReactionResult,
    bastion_payload,
)

router = APIRouter(prefix="/bastions", tags=["bastions"])


@router.get("", response_model=list[BastionRead])
async def list_bastions(
    _: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> list[BastionRead]:
    bastions = await services.bastions.list_bastions()
    return [bastion_payload(bastion_id, data) for bastion_id, data in bastions.items()]


# Invite routes come first so "/invites/{code}" is never read as a bastion id.
@router.get("/invites/{code}", response_model=InviteRead)
async def read_invite(
    code: str,
    _: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> InviteRead:
    invite = await services.bastions.get_invite(code)
    if invite is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invite not found")
    return InviteRead.from_record(invite)


@router.post("/invites/{code}/accept", response_model=InviteAccepted)
async def accept_invite(
    code: str,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> InviteAccepted:
    """Join the bastion an invite points to."""

    outcome = ensure_ok(await services.bastions.join_with_invite(code, username))
    return InviteAccepted(bastion_id=outcome.data, message=outcome.msg)


@router.put("/{bastion_id}", response_model=BastionRead)
async def save_bastion(
    bastion_id: str,
    payload: BastionWrite,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> BastionRead:
    """Create a bastion, or update one the current user belongs to."""

    existing = await services.bastions.get_bastion(bastion_id)
    if existing is not None and not await services.bastions.is_member(bastion_id, username):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a bastion member")

    data = payload.model_dump(mode="json")
    data["owner"] = existing.get("owner", username) if existing else username
    await services.bastions.save_bastion(bastion_id, data)
    if existing is None:
        await services.bastions.add_member(bastion_id, username)
    return bastion_payload(bastion_id, await services.bastions.get_bastion(bastion_id) or data)


@router.get("/{bastion_id}", response_model=BastionRead)
async def read_bastion(
    bastion_id: str,
    _: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> BastionRead:
    bastion = await services.bastions.get_bastion(bastion_id)
    if bastion is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bastion not found")
    return bastion_payload(bastion_id, bastion)


@router.get("/{bastion_id}/members", response_model=MemberList)
async def list_members(
    bastion_id: str,
    _: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> MemberList:
    return MemberList(members=await services.bastions.get_members(bastion_id))


@router.post("/{bastion_id}/members", response_model=MemberList)
async def join_bastion(
    bastion_id: str,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> MemberList:
    if await services.bastions.get_bastion(bastion_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bastion not found")
    return MemberList(members=await services.bastions.add_member(bastion_id, username))


@router.delete("/{bastion_id}/members/{member}", response_model=MemberList)
async def remove_member(
    bastion_id: str,
    member: str,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> MemberList:
    """Leave a bastion, or remove someone from a bastion you own."""

    bastion = await services.bastions.get_bastion(bastion_id)
    if bastion is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bastion not found")
    if member.lower() != username and bastion.get("owner") != username:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the owner can remove members")
    return MemberList(members=await services.bastions.remove_member(bastion_id, member))


@router.post("/{bastion_id}/invites", response_model=InviteRead, status_code=status.HTTP_201_CREATED)
async def create_invite(
    bastion_id: str,
    payload: InviteCreate,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> InviteRead:
    await require_bastion_member(bastion_id, username, services)
    code = payload.code or secrets.token_urlsafe(6)
    if await services.bastions.get_invite(code) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Invite code already in use")
    await services.bastions.save_invite(code, {"bastionId": bastion_id, "createdBy": username})
    invite = await services.bastions.get_invite(code)
    return InviteRead.from_record(invite or {"code": code, "bastionId": bastion_id})


@router.get(
    "/{bastion_id}/channels/{channel_id}/messages",
    response_model=list[ChannelMessageRead],
)
async def read_channel_messages(
    bastion_id: str,
    channel_id: str,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> list[ChannelMessageRead]:
    await require_bastion_member(bastion_id, username, services)
    messages = await services.messaging.get_channel_messages(bastion_id, channel_id)
    return [ChannelMessageRead.model_validate(message, from_attributes=True) for message in messages]


@router.post(
    "/{bastion_id}/channels/{channel_id}/messages",
    response_model=ChannelMessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def send_channel_message(
    bastion_id: str,
    channel_id: str,
    payload: MessageCreate,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> ChannelMessageRead:
    await require_bastion_member(bastion_id, username, services)
    outcome = ensure_ok(
        await services.messaging.send_channel(bastion_id, channel_id, username, payload.text)
    )
    return ChannelMessageRead.model_validate(outcome.data, from_attributes=True)


@router.post(
    "/{bastion_id}/channels/{channel_id}/messages/{message_id}/reactions",
    response_model=ReactionResult,
)
async def toggle_reaction(
    bastion_id: str,
    channel_id: str,
    message_id: str,
    payload: ReactionRequest,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> ReactionResult:
    """Toggle the current user's reaction; unknown messages are left alone."""

    await require_bastion_member(bastion_id, username, services)
    outcome = await services.messaging.toggle_reaction(
        bastion_id, channel_id, message_id, payload.emoji, username
    )
    return ReactionResult(
        message_id=message_id,
        applied=outcome.ok,
        reactions=outcome.data or {},
    )
