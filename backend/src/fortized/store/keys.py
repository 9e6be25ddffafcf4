"""Hierarchical key layout used by the social core."""

from __future__ import annotations

THREAD_SEPARATOR = "__"

USERS_PREFIX = "users/"
STATUSES_PREFIX = "statuses/"
BASTIONS_PREFIX = "globalBastions/"


def normalize_username(username: str) -> str:
    return username.strip().lower()


def user_key(username: str) -> str:
    return f"{USERS_PREFIX}{normalize_username(username)}"


def credentials_key(username: str) -> str:
    return f"credentials/{normalize_username(username)}"


def status_key(username: str) -> str:
    return f"{STATUSES_PREFIX}{normalize_username(username)}"


def notifications_key(username: str) -> str:
    return f"notifications/{normalize_username(username)}"


def thread_key(first: str, second: str) -> str:
    """Canonical identifier of the conversation between two users.

    Both participants derive the same key regardless of argument order.
    """

    pair = sorted((normalize_username(first), normalize_username(second)))
    return THREAD_SEPARATOR.join(pair)


def dm_key(first: str, second: str) -> str:
    return f"dms/{thread_key(first, second)}"


def dm_index_key(username: str) -> str:
    return f"dmIndex/{normalize_username(username)}"


def channel_key(bastion_id: str, channel_id: str) -> str:
    return f"bastionMsgs/{bastion_id}/{channel_id}"


def bastion_key(bastion_id: str) -> str:
    return f"{BASTIONS_PREFIX}{bastion_id}"


def members_key(bastion_id: str) -> str:
    return f"bastionMembers/{bastion_id}"


def invite_key(code: str) -> str:
    return f"invites/{code}"
