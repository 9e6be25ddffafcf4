"""Key-value store contract shared by every persistence backend."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Protocol

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from fortized.realtime.transport import Subscription


class StoreError(RuntimeError):
    """Base class for store level failures."""


class StoreUnavailableError(StoreError):
    """Raised when the backend cannot be reached or a value cannot be encoded."""


class TransactionConflictError(StoreError):
    """Raised when a transaction keeps losing the compare-and-swap race."""


class PushUnavailableError(StoreError):
    """Raised by ``watch`` when the backend cannot push mutations."""


class _Abort:
    def __repr__(self) -> str:
        return "ABORT"


ABORT: Any = _Abort()
"""Returned from a transaction function to leave the stored value untouched."""


@dataclass(slots=True)
class TransactionResult:
    committed: bool
    value: Any


@dataclass(slots=True)
class MutationEvent:
    """A single write observed on the store."""

    key: str
    value: Any
    action: str = "set"

    def to_payload(self) -> dict[str, Any]:
        return {"key": self.key, "value": self.value, "action": self.action}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MutationEvent":
        return cls(
            key=str(payload["key"]),
            value=payload.get("value"),
            action=str(payload.get("action", "set")),
        )


MutationHandler = Callable[[MutationEvent], Awaitable[None]]
TransactionFn = Callable[[Any], Any]


class KeyValueStore(Protocol):
    """Operations the social core relies on.

    Every method is awaitable, including on purely local backends, so the
    calling code never depends on whether a write completed synchronously.
    """

    backend_name: str

    async def get(self, key: str) -> Any:
        """Return the decoded value stored at *key* or ``None``."""

    async def set(self, key: str, value: Any) -> None:
        """Replace the value at *key*; ``None`` removes it."""

    async def update(self, key: str, fields: Mapping[str, Any]) -> None:
        """Shallow-merge *fields* into the mapping stored at *key*."""

    async def delete(self, key: str) -> None:
        """Remove *key*, ignoring missing entries."""

    async def transaction(self, key: str, fn: TransactionFn) -> TransactionResult:
        """Atomically replace the value at *key* with ``fn(current)``."""

    async def keys(self, prefix: str) -> list[str]:
        """Return the sorted keys below *prefix*."""

    async def watch(self, prefix: str, handler: MutationHandler) -> "Subscription":
        """Push mutations below *prefix* to *handler*."""

    async def close(self) -> None:
        """Release backend resources."""


def encode_value(key: str, value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise StoreUnavailableError(f"Value for '{key}' is not serializable") from exc


def decode_value(key: str, raw: str | bytes | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StoreUnavailableError(f"Stored value for '{key}' is corrupt") from exc


def merge_fields(current: Any, fields: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(current) if isinstance(current, Mapping) else {}
    merged.update(fields)
    return merged


def key_matches(key: str, prefix: str) -> bool:
    """Return whether *key* equals *prefix* or lives below it."""

    if key == prefix:
        return True
    parent = prefix if prefix.endswith("/") else prefix + "/"
    return key.startswith(parent)
