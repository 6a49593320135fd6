"""WebSocket endpoint for the signaling channel."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from pydantic import ValidationError

from bella.realtime import (
    ConnectionHandle,
    PairLockTimeout,
    get_conversation_bus,
    get_presence_registry,
    safe_send_json,
)
from bella.signaling import RELAY_EVENTS, FrameError, build_frame, error_frame, parse_frame

from app.api.deps import get_user_from_token
from app.config import get_settings
from app.core.clock import to_epoch_ms, utcnow
from app.core.errors import CoreError, ValidationFailedError
from app.database import get_db_session
from app.models import CallResponse, QueueStatus, UserRef
from app.monitoring.metrics import signaling_frames_total
from app.schemas import MessageCreate, normalize_session_kind
from app.services import chat
from app.services import sessions as session_service
from app.services.chat import message_payload
from app.services.store import MatchmakingStore
from app.services.waiting_queue import WaitingQueue

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")

Handler = Callable[[ConnectionHandle, Dict[str, Any]], Awaitable[Dict[str, Any] | None]]


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
    max_silence_seconds: float | int | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle.

    Iteration stops once nothing was received for ``max_silence_seconds``.
    """

    ping_payload = ping_payload or build_frame("ping")
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    silence = float(max_silence_seconds) if max_silence_seconds else 0.0
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
            if silence > 0 and now - last_activity >= silence:
                logger.info("Closing silent signaling connection after %.0fs", now - last_activity)
                break
            should_ping = False
            if interval <= 0:
                should_ping = True
            elif now - last_activity >= interval and (
                last_ping_sent is None or now - last_ping_sent >= interval
            ):
                should_ping = True

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


async def _resolve_user(websocket: WebSocket) -> UserRef | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        with get_db_session() as db:
            user = get_user_from_token(token, db)
            db.expunge(user)
            return user
    except CoreError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


def _require_str(data: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise ValidationFailedError(f"{keys[0]} is required")


# ----------------------------------------------------------------------
# Frame handlers
# ----------------------------------------------------------------------
async def _join_conversation(handle: ConnectionHandle, data: Dict[str, Any]) -> Dict[str, Any]:
    conversation_id = _require_str(data, "conversationId", "roomId", "sessionId")
    with get_db_session() as db:
        room_id = chat.resolve_conversation(MatchmakingStore(db), conversation_id, handle.user_id)
    await get_conversation_bus().join(handle, room_id)
    return build_frame("ack", {"event": "join-conversation", "conversationId": room_id})


async def _leave_conversation(handle: ConnectionHandle, data: Dict[str, Any]) -> Dict[str, Any]:
    conversation_id = _require_str(data, "conversationId", "roomId", "sessionId")
    with get_db_session() as db:
        room_id = chat.resolve_conversation(MatchmakingStore(db), conversation_id, handle.user_id)
    await get_conversation_bus().leave(handle, room_id)
    return build_frame("ack", {"event": "leave-conversation", "conversationId": room_id})


def _typing(typing: bool) -> Handler:
    async def handler(handle: ConnectionHandle, data: Dict[str, Any]) -> None:
        conversation_id = _require_str(data, "conversationId", "roomId", "sessionId")
        with get_db_session() as db:
            room_id = chat.resolve_conversation(MatchmakingStore(db), conversation_id, handle.user_id)
        await get_conversation_bus().set_typing(handle, room_id, typing)
        return None

    return handler


async def _send_message(handle: ConnectionHandle, data: Dict[str, Any]) -> Dict[str, Any]:
    conversation_id = _require_str(data, "conversationId", "roomId", "sessionId")
    try:
        payload = MessageCreate.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailedError(exc.errors()[0].get("msg", "Invalid message")) from exc
    with get_db_session() as db:
        message = await chat.send_message(
            MatchmakingStore(db), handle.user_id, conversation_id, payload, sender=handle
        )
        body = message_payload(message)
    ack: Dict[str, Any] = {"event": "send-message", "message": body}
    if data.get("clientId") is not None:
        ack["clientId"] = data["clientId"]
    return build_frame("ack", ack)


async def _call_request(handle: ConnectionHandle, data: Dict[str, Any]) -> Dict[str, Any]:
    callee_id = _require_str(data, "targetUserId", "calleeId")
    kind = normalize_session_kind(data.get("callType"))
    with get_db_session() as db:
        session = await session_service.start_direct_call(
            MatchmakingStore(db), handle.user_id, callee_id, kind, sender=handle
        )
        body = session_service.session_event_data(session, state=session.state.value)
    return build_frame("ack", {"event": "call-request", **body})


async def _call_response(handle: ConnectionHandle, data: Dict[str, Any]) -> Dict[str, Any]:
    session_id = _require_str(data, "sessionId", "callId")
    raw = data.get("response")
    try:
        response = CallResponse(str(raw).strip().lower())
    except ValueError:
        raise ValidationFailedError("response must be accept, decline or ignore") from None
    with get_db_session() as db:
        session = await session_service.call_response(
            MatchmakingStore(db), session_id, handle.user_id, response, sender=handle
        )
        body = session_service.session_event_data(session, state=session.state.value)
    return build_frame("ack", {"event": "call-response", **body})


def _relay(event: str) -> Handler:
    async def handler(handle: ConnectionHandle, data: Dict[str, Any]) -> None:
        with get_db_session() as db:
            await session_service.relay_signal(MatchmakingStore(db), handle.user_id, event, data)
        return None

    return handler


async def _heartbeat(handle: ConnectionHandle, data: Dict[str, Any]) -> Dict[str, Any]:
    with get_db_session() as db:
        store = MatchmakingStore(db)
        entry = store.get_queue_entry(handle.user_id)
        if entry is not None and entry.status != QueueStatus.LEFT:
            with store.transaction():
                WaitingQueue(store).heartbeat(handle.user_id)
    return build_frame("heartbeat", {"at": to_epoch_ms(utcnow())})


async def _privacy_settings(handle: ConnectionHandle, data: Dict[str, Any]) -> Dict[str, Any]:
    visible = data.get("showOnlineStatus")
    if not isinstance(visible, bool):
        raise ValidationFailedError("showOnlineStatus must be a boolean")
    get_presence_registry().set_visibility(handle.user_id, visible)
    return build_frame("ack", {"event": "privacy-settings", "showOnlineStatus": visible})


HANDLERS: Dict[str, Handler] = {
    "join-conversation": _join_conversation,
    "leave-conversation": _leave_conversation,
    "typing-start": _typing(True),
    "typing-stop": _typing(False),
    "send-message": _send_message,
    "call-request": _call_request,
    "call-response": _call_response,
    "heartbeat": _heartbeat,
    "privacy-settings": _privacy_settings,
    **{event: _relay(event) for event in RELAY_EVENTS},
}


async def dispatch_frame(handle: ConnectionHandle, raw: str) -> Dict[str, Any] | None:
    """Handle one inbound frame; returns the frame to send back, if any."""

    try:
        frame = parse_frame(raw)
    except FrameError as exc:
        signaling_frames_total.labels("invalid", "rejected").inc()
        return error_frame(ValidationFailedError.code, str(exc))

    try:
        reply = await HANDLERS[frame.event](handle, frame.data)
    except CoreError as exc:
        signaling_frames_total.labels(frame.event, "error").inc()
        return error_frame(exc.code, exc.detail, event=frame.event)
    except PairLockTimeout:
        signaling_frames_total.labels(frame.event, "error").inc()
        return error_frame("CONFLICT", "Another operation for this pair is in progress", event=frame.event)
    except Exception:
        signaling_frames_total.labels(frame.event, "error").inc()
        logger.exception("Signaling frame %s from %s failed", frame.event, handle.user_id)
        return error_frame("INTERNAL", "Internal error", event=frame.event)
    signaling_frames_total.labels(frame.event, "ok").inc()
    return reply


@router.websocket("/signaling")
async def websocket_signaling(websocket: WebSocket) -> None:
    """Full-duplex ``{event, data}`` channel for chat, calls and WebRTC relay."""

    user = await _resolve_user(websocket)
    if user is None:
        return

    await websocket.accept()
    presence = get_presence_registry()
    bus = get_conversation_bus()
    handle = ConnectionHandle(user_id=user.id, websocket=websocket)
    presence.set_visibility(user.id, user.show_online_status)
    await presence.attach(handle)
    await handle.send(
        build_frame(
            "connected",
            {
                "userId": user.id,
                "connectionId": handle.id,
                "heartbeatMs": int(settings.signaling_heartbeat_seconds * 1000),
            },
        )
    )
    logger.info("Signaling connection %s opened for %s", handle.id, user.id)

    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.signaling_heartbeat_seconds,
            ping_interval_seconds=settings.signaling_heartbeat_seconds,
            max_silence_seconds=settings.signaling_idle_timeout_seconds,
        ):
            reply = await dispatch_frame(handle, raw_message)
            if reply is not None and not await handle.send(reply):
                break
    finally:
        await bus.leave_all(handle)
        await presence.detach(handle)
        if websocket.application_state == WebSocketState.CONNECTED:
            try:
                await websocket.close()
            except RuntimeError:
                logger.debug("Signaling socket %s already closed", handle.id)
        logger.info("Signaling connection %s closed for %s", handle.id, user.id)
