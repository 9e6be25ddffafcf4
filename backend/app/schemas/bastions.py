"""Schemas for the bastion registry, members and invites."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, constr


class BastionWrite(BaseModel):
    """Bastion descriptor; unknown fields are stored as sent."""

    model_config = ConfigDict(extra="allow")

    name: constr(strip_whitespace=True, min_length=1, max_length=100)
    icon: str | None = None
    channels: list[str] = Field(default_factory=lambda: ["general"])


class BastionRead(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    owner: str | None = None
    icon: str | None = None
    channels: list[str] = Field(default_factory=list)


class MemberList(BaseModel):
    members: list[str] = Field(default_factory=list)


class InviteCreate(BaseModel):
    code: constr(pattern=r"^[A-Za-z0-9_-]{4,32}$") | None = None


class InviteRead(BaseModel):
    code: str
    bastion_id: str
    created_by: str | None = None
    uses: int = 0

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "InviteRead":
        return cls(
            code=str(record.get("code", "")),
            bastion_id=str(record.get("bastionId", "")),
            created_by=record.get("createdBy"),
            uses=int(record.get("uses") or 0),
        )


class InviteAccepted(BaseModel):
    bastion_id: str
    message: str = ""


def bastion_payload(bastion_id: str, data: dict[str, Any]) -> BastionRead:
    return BastionRead.model_validate({**data, "id": bastion_id})
