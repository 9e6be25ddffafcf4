"""Schemas for authentication endpoints."""

from pydantic import BaseModel, Field, constr


class RegisterRequest(BaseModel):
    """Payload for creating a new account."""

    username: constr(strip_whitespace=True, min_length=1, max_length=64) = Field(
        ..., description="Requested username; reduced to lowercase a-z, 0-9 and _"
    )
    password: constr(max_length=128) = Field(
        ..., description="Plain text password handed to the auth provider"
    )
    email: constr(strip_whitespace=True, max_length=254) = Field(
        default="", description="Optional contact address"
    )


class LoginRequest(BaseModel):
    """Payload for user login."""

    username: constr(strip_whitespace=True, min_length=1, max_length=64) = Field(..., description="Username")
    password: constr(max_length=128) = Field(..., description="User password")


class Token(BaseModel):
    """Access token returned after successful authentication."""

    access_token: str = Field(..., description="JWT access token")
    token_type: str = Field(default="bearer", description="Token type, always 'bearer'")
    expires_in: int | None = Field(
        default=None,
        description="Number of seconds until the access token expires",
    )
