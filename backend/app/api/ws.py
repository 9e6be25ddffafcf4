"""WebSocket endpoints streaming session, channel and direct message events."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from fortized.realtime.sync import (
    DirectMessageEvent,
    FriendEvent,
    ScopedWatch,
    SessionBaseline,
    SessionCallbacks,
    StatusEvent,
)
from fortized.social.models import DirectMessage, Notification
from fortized.social.services import SocialServices
from fortized.store.keys import normalize_username

from app.api.deps import get_username_from_token
from app.config import get_settings
from app.runtime import get_runtime
from app.schemas import ChannelMessageRead, DirectMessageRead, NotificationRead

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            )
            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through the websocket, returning False once it is gone."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


async def _send_error(websocket: WebSocket, detail: str) -> None:
    await safe_send_json(websocket, {"type": "error", "detail": detail})


async def _resolve_user(websocket: WebSocket, services: SocialServices) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        return await get_username_from_token(token, services)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


def _iter_payloads(websocket: WebSocket) -> AsyncIterator[str]:
    return iter_keepalive_messages(
        websocket,
        websocket.receive_text,
        timeout_seconds=settings.websocket_keepalive_timeout_seconds,
        ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
    )


async def _decode(websocket: WebSocket, raw_message: str) -> dict[str, Any] | None:
    if raw_message.strip().lower() == "ping":
        return {"type": "ping"}
    try:
        payload = json.loads(raw_message)
    except json.JSONDecodeError:
        await _send_error(websocket, "Invalid message format")
        return None
    if not isinstance(payload, dict):
        await _send_error(websocket, "Message payload must be a JSON object")
        return None
    return payload


def _notification_payload(notification: Notification) -> dict[str, Any]:
    return NotificationRead.model_validate(notification, from_attributes=True).model_dump(mode="json")


def _session_callbacks(websocket: WebSocket, ready: asyncio.Event) -> SessionCallbacks:
    # events wait until the snapshot they build on has been sent
    async def on_new_notification(notification: Notification) -> None:
        await ready.wait()
        await safe_send_json(
            websocket, {"type": "notification", "notification": _notification_payload(notification)}
        )

    async def on_friend_request(event: FriendEvent) -> None:
        await ready.wait()
        await safe_send_json(websocket, {"type": "friend_request", "from": event.username})

    async def on_friend_accept(event: FriendEvent) -> None:
        await ready.wait()
        await safe_send_json(websocket, {"type": "friend_accept", "from": event.username})

    async def on_new_dm(event: DirectMessageEvent) -> None:
        await ready.wait()
        await safe_send_json(
            websocket, {"type": "dm", "from": event.partner, "preview": event.preview}
        )

    async def on_status_change(event: StatusEvent) -> None:
        await ready.wait()
        await safe_send_json(
            websocket, {"type": "status", "username": event.username, "status": event.status.value}
        )

    async def on_dm_index_change(partners: list[str]) -> None:
        await ready.wait()
        await safe_send_json(websocket, {"type": "dm_index", "partners": partners})

    return SessionCallbacks(
        on_new_notification=on_new_notification,
        on_new_dm=on_new_dm,
        on_friend_request=on_friend_request,
        on_friend_accept=on_friend_accept,
        on_status_change=on_status_change,
        on_dm_index_change=on_dm_index_change,
    )


async def _send_session_snapshot(
    username: str, websocket: WebSocket, baseline: SessionBaseline
) -> None:
    notifications = baseline.notifications
    await safe_send_json(
        websocket,
        {
            "type": "session_snapshot",
            "username": username,
            "notifications": [_notification_payload(item) for item in notifications],
            "unread": sum(1 for item in notifications if not item.read),
            "friends": {friend: state.value for friend, state in sorted(baseline.statuses.items())},
            "partners": baseline.partners,
        },
    )


def _message_sender(
    websocket: WebSocket, schema: type[DirectMessageRead], ready: asyncio.Event
) -> Callable[[DirectMessage], Awaitable[None]]:
    async def on_message(message: DirectMessage) -> None:
        await ready.wait()
        await safe_send_json(
            websocket,
            {
                "type": "message",
                "message": schema.model_validate(message, from_attributes=True).model_dump(mode="json"),
            },
        )

    return on_message


def _history_payload(schema: type[DirectMessageRead], watch: ScopedWatch) -> list[dict[str, Any]]:
    return [
        schema.model_validate(item, from_attributes=True).model_dump(mode="json")
        for item in watch.history
    ]


@router.websocket("/session")
async def websocket_session(websocket: WebSocket) -> None:
    """Stream notifications, DMs and friend presence for the signed-in user."""

    services = get_runtime().services
    username = await _resolve_user(websocket, services)
    if username is None:
        return

    await websocket.accept()
    session = services.session()
    ready = asyncio.Event()
    try:
        opened = await session.open(username)
        if not opened:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=opened.msg)
            return
        # subscribing first means the snapshot and the live events share one baseline
        await session.subscribe(_session_callbacks(websocket, ready))
        try:
            await _send_session_snapshot(username, websocket, session.sync.baseline)
        finally:
            ready.set()

        async for raw_message in _iter_payloads(websocket):
            payload = await _decode(websocket, raw_message)
            if payload is None:
                continue
            payload_type = payload.get("type")
            if payload_type == "ping":
                await safe_send_json(websocket, {"type": "pong"})
            elif payload_type == "pong":
                continue
            elif payload_type == "mark_read":
                marked = await services.notifications.mark_all_read(username)
                await safe_send_json(websocket, {"type": "marked_read", "marked": marked})
            elif payload_type == "status":
                outcome = await services.identity.set_status(username, str(payload.get("status", "")))
                if not outcome:
                    await _send_error(websocket, outcome.msg)
            else:
                await _send_error(websocket, "Unsupported message type")
    finally:
        ready.set()
        await session.close()


@router.websocket("/bastions/{bastion_id}/channels/{channel_id}")
async def websocket_channel(websocket: WebSocket, bastion_id: str, channel_id: str) -> None:
    """Stream new messages and reactions for one bastion channel."""

    services = get_runtime().services
    username = await _resolve_user(websocket, services)
    if username is None:
        return

    if await services.bastions.get_bastion(bastion_id) is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Bastion not found")
        return
    if not await services.bastions.is_member(bastion_id, username):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Not a bastion member")
        return

    await websocket.accept()
    ready = asyncio.Event()
    watch = await services.realtime.subscribe_channel(
        bastion_id, channel_id, _message_sender(websocket, ChannelMessageRead, ready)
    )
    try:
        try:
            await safe_send_json(
                websocket,
                {"type": "history", "messages": _history_payload(ChannelMessageRead, watch)},
            )
        finally:
            ready.set()

        async for raw_message in _iter_payloads(websocket):
            payload = await _decode(websocket, raw_message)
            if payload is None:
                continue
            payload_type = payload.get("type", "message")
            if payload_type == "ping":
                await safe_send_json(websocket, {"type": "pong"})
            elif payload_type == "message":
                outcome = await services.messaging.send_channel(
                    bastion_id, channel_id, username, str(payload.get("text", ""))
                )
                if not outcome:
                    await _send_error(websocket, outcome.msg)
            elif payload_type == "reaction":
                message_id = str(payload.get("message_id", ""))
                outcome = await services.messaging.toggle_reaction(
                    bastion_id, channel_id, message_id, str(payload.get("emoji", "")), username
                )
                if not outcome:
                    await _send_error(websocket, outcome.msg)
                    continue
                await safe_send_json(
                    websocket,
                    {"type": "reaction", "message_id": message_id, "reactions": outcome.data},
                )
            else:
                await _send_error(websocket, "Unsupported message type")
    finally:
        await watch.close()


@router.websocket("/dm/{partner}")
async def websocket_direct(websocket: WebSocket, partner: str) -> None:
    """Stream one direct message thread and accept new messages on it."""

    services = get_runtime().services
    username = await _resolve_user(websocket, services)
    if username is None:
        return

    other = normalize_username(partner)
    if await services.identity.get_user(other) is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="User not found")
        return

    await websocket.accept()
    ready = asyncio.Event()
    watch = await services.realtime.subscribe_thread(
        username, other, _message_sender(websocket, DirectMessageRead, ready)
    )
    try:
        try:
            await safe_send_json(
                websocket,
                {
                    "type": "history",
                    "partner": other,
                    "messages": _history_payload(DirectMessageRead, watch),
                },
            )
        finally:
            ready.set()

        async for raw_message in _iter_payloads(websocket):
            payload = await _decode(websocket, raw_message)
            if payload is None:
                continue
            payload_type = payload.get("type", "message")
            if payload_type == "ping":
                await safe_send_json(websocket, {"type": "pong"})
            elif payload_type == "message":
                outcome = await services.messaging.send_direct(
                    username, other, str(payload.get("text", ""))
                )
                if not outcome:
                    await _send_error(websocket, outcome.msg)
            else:
                await _send_error(websocket, "Unsupported message type")
    finally:
        await watch.close()
