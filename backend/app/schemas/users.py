"""Schemas related to user profiles, presence and friendships."""

from pydantic import BaseModel, ConfigDict, Field, constr

from fortized.social.models import PresenceStatus


class PublicUser(BaseModel):
    """Minimal public-facing user information."""

    model_config = ConfigDict(from_attributes=True)

    username: str
    display_name: str = ""
    pfp: str | None = None
    banner: str | None = None
    status: PresenceStatus = PresenceStatus.OFFLINE


class UserProfileRead(PublicUser):
    """Detailed representation of the current user profile."""

    email: str = ""
    onyx: int = 0
    friends: list[str] = Field(default_factory=list)
    friend_requests_sent: list[str] = Field(default_factory=list)
    friend_requests_received: list[str] = Field(default_factory=list)
    bastions: list[str] = Field(default_factory=list)
    radiance_until: str | None = None
    last_daily: str | None = None
    created_at: str


class UserProfileUpdate(BaseModel):
    """Payload for updating profile fields; omitted fields stay unchanged."""

    display_name: constr(strip_whitespace=True, min_length=1, max_length=128) | None = None
    email: constr(strip_whitespace=True, max_length=254) | None = None
    pfp: constr(max_length=2048) | None = None
    banner: constr(max_length=2048) | None = None
    status: PresenceStatus | None = Field(
        default=None,
        description="Optional new presence status.",
    )


class StatusRead(BaseModel):
    username: str
    status: PresenceStatus


class StatusUpdate(BaseModel):
    status: PresenceStatus


class FriendRequestCreate(BaseModel):
    """Target of a new friend request."""

    username: constr(strip_whitespace=True, min_length=1, max_length=64)


class FriendRequestList(BaseModel):
    """Pending requests split by direction."""

    incoming: list[str] = Field(default_factory=list)
    outgoing: list[str] = Field(default_factory=list)


class ActionResult(BaseModel):
    """Outcome of a state-changing action."""

    ok: bool = True
    message: str = ""
