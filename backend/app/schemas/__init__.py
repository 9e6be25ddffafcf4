"""Pydantic schemas for API payloads."""

from .auth import LoginRequest, RegisterRequest, Token
from .bastions import (
    BastionRead,
    BastionWrite,
    InviteAccepted,
    InviteCreate,
    InviteRead,
    MemberList,
    bastion_payload,
)
from .messages import (
    ChannelMessageRead,
    DirectMessageRead,
    MessageCreate,
    PartnerList,
    ReactionRequest,
    ReactionResult,
)
from .notifications import MarkReadResult, NotificationList, NotificationRead, UnreadCount
from .users import (
    ActionResult,
    FriendRequestCreate,
    FriendRequestList,
    PublicUser,
    StatusRead,
    StatusUpdate,
    UserProfileRead,
    UserProfileUpdate,
)

__all__ = [
    "LoginRequest",
    "RegisterRequest",
    "Token",
    "PublicUser",
    "UserProfileRead",
    "UserProfileUpdate",
    "StatusRead",
    "StatusUpdate",
    "FriendRequestCreate",
    "FriendRequestList",
    "ActionResult",
    "NotificationRead",
    "NotificationList",
    "UnreadCount",
    "MarkReadResult",
    "MessageCreate",
    "DirectMessageRead",
    "ChannelMessageRead",
    "PartnerList",
    "ReactionRequest",
    "ReactionResult",
    "BastionWrite",
    "BastionRead",
    "MemberList",
    "InviteCreate",
    "InviteRead",
    "InviteAccepted",
    "bastion_payload",
]
