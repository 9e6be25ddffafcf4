"""Credential handling kept apart from user records."""

from __future__ import annotations

import logging
from typing import Protocol

import anyio
from passlib.context import CryptContext

from fortized.store.base import KeyValueStore
from fortized.store.keys import credentials_key

from .models import isoformat, utcnow

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class AuthProvider(Protocol):
    """Accepts a username and password and answers whether they match."""

    async def enroll(self, username: str, password: str) -> None:
        ...

    async def verify(self, username: str, password: str) -> bool:
        ...


class PasswordAuthProvider:
    """Stores salted password hashes under ``credentials/<username>``."""

    def __init__(self, store: KeyValueStore, context: CryptContext | None = None) -> None:
        self._store = store
        self._context = context or pwd_context

    async def enroll(self, username: str, password: str) -> None:
        hashed = await anyio.to_thread.run_sync(self._context.hash, password)
        await self._store.set(
            credentials_key(username),
            {"hash": hashed, "updatedAt": isoformat(utcnow())},
        )

    async def verify(self, username: str, password: str) -> bool:
        record = await self._store.get(credentials_key(username))
        if not isinstance(record, dict) or not record.get("hash"):
            return False
        try:
            return await anyio.to_thread.run_sync(self._context.verify, password, record["hash"])
        except (ValueError, TypeError):
            logger.warning("Stored credentials for %s are unreadable", username)
            return False
