from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class SocialLimits:
    """Retention caps and policy switches shared by the social services."""

    notification_cap: int = 50
    dm_partner_cap: int = 30
    channel_message_cap: int = 500
    dm_preview_length: int = 60
    starting_balance: int = 25
    min_username_length: int = 3
    min_password_length: int = 6
    mark_request_read_on_accept: bool = False
