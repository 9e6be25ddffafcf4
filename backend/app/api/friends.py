"""Friend request and friend list endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from fortized.social.services import SocialServices

from app.api.deps import ensure_ok, get_current_username, get_services
from app.schemas import ActionResult, FriendRequestCreate, FriendRequestList, PublicUser

router = APIRouter(prefix="/friends", tags=["friends"])


@router.get("", response_model=list[PublicUser])
async def list_friends(
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> list[PublicUser]:
    """Return the current user's friends with their presence."""

    friends: list[PublicUser] = []
    for name in await services.friends.list_friends(username):
        user = await services.identity.get_user(name)
        if user is None:
            continue
        user.status = await services.identity.get_status(name)
        friends.append(PublicUser.model_validate(user, from_attributes=True))
    return friends


@router.get("/requests", response_model=FriendRequestList)
async def list_friend_requests(
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> FriendRequestList:
    requests = await services.friends.list_requests(username)
    return FriendRequestList(incoming=requests.incoming, outgoing=requests.outgoing)


@router.post("/requests", response_model=ActionResult, status_code=status.HTTP_201_CREATED)
async def send_friend_request(
    payload: FriendRequestCreate,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> ActionResult:
    """Send a friend request, or accept at once when the target already asked."""

    outcome = ensure_ok(await services.friends.send_request(username, payload.username))
    return ActionResult(ok=True, message=outcome.msg)


@router.post("/requests/{requester}/accept", response_model=ActionResult)
async def accept_friend_request(
    requester: str,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> ActionResult:
    outcome = ensure_ok(await services.friends.accept_request(username, requester))
    return ActionResult(ok=True, message=outcome.msg)


@router.post("/requests/{requester}/decline", response_model=ActionResult)
async def decline_friend_request(
    requester: str,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> ActionResult:
    outcome = ensure_ok(await services.friends.decline_request(username, requester))
    return ActionResult(ok=True, message=outcome.msg)


@router.delete("/{friend}", response_model=ActionResult)
async def remove_friend(
    friend: str,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> ActionResult:
    outcome = ensure_ok(await services.friends.remove_friend(username, friend))
    return ActionResult(ok=True, message=outcome.msg)
