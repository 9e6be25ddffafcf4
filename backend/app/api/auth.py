"""Authentication API endpoints."""

from datetime import timedelta

from fastapi import APIRouter, Depends, status

from fortized.social.services import SocialServices

from app.api.deps import ensure_ok, get_current_username, get_services
from app.config import get_settings
from app.core.security import create_access_token
from app.schemas import ActionResult, LoginRequest, RegisterRequest, Token, UserProfileRead

router = APIRouter()
settings = get_settings()


def _issue_token(username: str) -> Token:
    access_token_expires = timedelta(minutes=settings.access_token_expire_minutes)
    access_token = create_access_token({"sub": username}, expires_delta=access_token_expires)
    return Token(
        access_token=access_token,
        token_type="bearer",
        expires_in=int(access_token_expires.total_seconds()),
    )


@router.post("/register", response_model=UserProfileRead, status_code=status.HTTP_201_CREATED)
async def register_user(
    payload: RegisterRequest,
    services: SocialServices = Depends(get_services),
) -> UserProfileRead:
    """Register a new user in the system."""

    outcome = ensure_ok(
        await services.identity.register(payload.username, payload.password, payload.email)
    )
    return UserProfileRead.model_validate(outcome.data, from_attributes=True)


@router.post("/login", response_model=Token)
async def login_user(
    credentials: LoginRequest,
    services: SocialServices = Depends(get_services),
) -> Token:
    """Authenticate a user and return a JWT access token."""

    outcome = ensure_ok(await services.identity.login(credentials.username, credentials.password))
    return _issue_token(outcome.data.username)


@router.post("/logout", response_model=ActionResult)
async def logout_user(
    username: str = Depends(get_current_username),
    services: SocialServices = Depends(get_services),
) -> ActionResult:
    """Mark the current user offline."""

    ensure_ok(await services.identity.logout(username))
    return ActionResult(ok=True, message="Logged out.")
