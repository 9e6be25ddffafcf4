"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from fortized.social.outcome import Outcome, Rejection
from fortized.social.services import SocialServices

from app.core.security import decode_access_token
from app.runtime import SocialRuntime, get_runtime

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

REJECTION_STATUS = {
    Rejection.UNKNOWN_USER: status.HTTP_404_NOT_FOUND,
    Rejection.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    Rejection.SELF_REFERENCE: status.HTTP_400_BAD_REQUEST,
    Rejection.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    Rejection.ALREADY_FRIENDS: status.HTTP_409_CONFLICT,
    Rejection.DUPLICATE_REQUEST: status.HTTP_409_CONFLICT,
    Rejection.ALREADY_EXISTS: status.HTTP_409_CONFLICT,
    Rejection.BAD_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
}


def get_services(runtime: SocialRuntime = Depends(get_runtime)) -> SocialServices:
    return runtime.services


async def get_current_username(
    token: str = Depends(oauth2_scheme),
    services: SocialServices = Depends(get_services),
) -> str:
    """Retrieve the current username from the JWT token."""

    return await get_username_from_token(token, services)


async def get_username_from_token(token: str, services: SocialServices) -> str:
    """Resolve a username from a JWT token or raise an HTTP 401 error."""

    payload = decode_access_token(token)
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    if await services.identity.get_user(subject) is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    return subject


def ensure_ok(outcome: Outcome) -> Outcome:
    """Return *outcome* when it succeeded, otherwise raise the matching HTTP error."""

    if outcome.ok:
        return outcome
    status_code = REJECTION_STATUS.get(outcome.code, status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=status_code, detail=outcome.msg or "Request rejected")


async def require_bastion_member(bastion_id: str, username: str, services: SocialServices) -> None:
    """Ensure the user belongs to the bastion, raising HTTP 403 otherwise."""

    if await services.bastions.get_bastion(bastion_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bastion not found")
    if not await services.bastions.is_member(bastion_id, username):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a bastion member")
