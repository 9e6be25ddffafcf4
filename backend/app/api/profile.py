"""Profile management and user directory endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from fortized.social.services import SocialServices

from app.api.deps import ensure_ok, get_current_username, get_services
from app.schemas import PublicUser, StatusRead, StatusUpdate, UserProfileRead, UserProfileUpdate

router = APIRouter(prefix="/profile", tags=["profile"])
users_router = APIRouter(prefix="/users", tags=["users"])


async def _load_profile(username: str, services: SocialServices) -> UserProfileRead:
    user = await services.identity.get_user(username)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return UserProfileRead.model_validate(user, from_attributes=True)


@router.get("/me", response_model=UserProfileRead)
async def read_profile(
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> UserProfileRead:
    """Return profile information for the authenticated user."""

    return await _load_profile(username, services)


@router.patch("", response_model=UserProfileRead)
async def update_profile(
    payload: UserProfileUpdate,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> UserProfileRead:
    """Update mutable profile fields for the current user."""

    if any(value is not None for value in (payload.display_name, payload.email, payload.pfp, payload.banner)):
        ensure_ok(
            await services.identity.update_profile(
                username,
                display_name=payload.display_name,
                email=payload.email,
                pfp=payload.pfp,
                banner=payload.banner,
            )
        )
    if payload.status is not None:
        ensure_ok(await services.identity.set_status(username, payload.status))
    return await _load_profile(username, services)


@router.put("/status", response_model=StatusRead)
async def update_status(
    payload: StatusUpdate,
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> StatusRead:
    """Change the presence status of the current user."""

    outcome = ensure_ok(await services.identity.set_status(username, payload.status))
    return StatusRead(username=username, status=outcome.data)


@users_router.get("", response_model=list[PublicUser])
async def list_users(
    _: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> list[PublicUser]:
    """List every registered user."""

    return [PublicUser.model_validate(user, from_attributes=True) for user in await services.identity.list_users()]


@users_router.get("/{username}", response_model=PublicUser)
async def read_user(
    username: str,
    _: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> PublicUser:
    user = await services.identity.get_user(username)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    user.status = await services.identity.get_status(user.username)
    return PublicUser.model_validate(user, from_attributes=True)


@users_router.get("/{username}/status", response_model=StatusRead)
async def read_user_status(
    username: str,
    _: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> StatusRead:
    user = await services.identity.get_user(username)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return StatusRead(username=user.username, status=await services.identity.get_status(user.username))
