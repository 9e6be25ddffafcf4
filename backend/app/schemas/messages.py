"""Schemas for direct and bastion channel messages."""

from pydantic import BaseModel, ConfigDict, Field, constr


class MessageCreate(BaseModel):
    """Payload for sending a text message."""

    text: constr(min_length=1, max_length=2000) = Field(..., description="Message body")


class DirectMessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source: str
    text: str
    time: str
    timestamp: str


class ChannelMessageRead(DirectMessageRead):
    reactions: dict[str, list[str]] = Field(default_factory=dict)


class PartnerList(BaseModel):
    partners: list[str] = Field(default_factory=list)


class ReactionRequest(BaseModel):
    """Emoji to toggle for the current user."""

    emoji: constr(strip_whitespace=True, min_length=1, max_length=64)


class ReactionResult(BaseModel):
    message_id: str
    applied: bool
    reactions: dict[str, list[str]] = Field(default_factory=dict)
