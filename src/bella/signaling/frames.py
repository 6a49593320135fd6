"""Frame codec for the signaling channel.

Every frame on the wire is a UTF-8 JSON object ``{"event": str, "data": object}``.
Keeping the parsing and envelope rules here lets them be unit tested without a
socket.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

CLIENT_EVENTS = frozenset(
    {
        "join-conversation",
        "leave-conversation",
        "typing-start",
        "typing-stop",
        "send-message",
        "call-request",
        "call-response",
        "webrtc-offer",
        "webrtc-answer",
        "webrtc-ice",
        "heartbeat",
        "privacy-settings",
    }
)

SERVER_EVENTS = frozenset(
    {
        "message",
        "typing-start",
        "typing-stop",
        "match:found",
        "call:incoming",
        "call:response",
        "call:ended",
        "webrtc-offer",
        "webrtc-answer",
        "webrtc-ice",
        "presence",
        "connected",
        "heartbeat",
        "ping",
        "ack",
        "error",
    }
)

RELAY_EVENTS = frozenset({"webrtc-offer", "webrtc-answer", "webrtc-ice"})

# Conversation bus kinds and the frame names clients listen for.
CONVERSATION_FRAME_NAMES: Dict[str, str] = {
    "message": "message",
    "typing-start": "typing-start",
    "typing-stop": "typing-stop",
    "call-request": "call:incoming",
    "call-response": "call:response",
    "call-ended": "call:ended",
    "webrtc-offer": "webrtc-offer",
    "webrtc-answer": "webrtc-answer",
    "webrtc-ice": "webrtc-ice",
}

MAX_FRAME_BYTES = 64 * 1024


class FrameError(ValueError):
    """Raised when an inbound frame is not a valid ``{event, data}`` object."""


@dataclass(slots=True)
class Frame:
    event: str
    data: Dict[str, Any] = field(default_factory=dict)


def build_frame(event: str, data: Mapping[str, Any] | None = None) -> Dict[str, Any]:
    return {"event": event, "data": dict(data or {})}


def conversation_frame(kind: str, data: Mapping[str, Any]) -> Dict[str, Any]:
    """Build the client-facing frame for a conversation bus event kind."""

    try:
        event = CONVERSATION_FRAME_NAMES[kind]
    except KeyError:
        raise FrameError(f"Unsupported conversation event '{kind}'") from None
    return build_frame(event, data)


def error_frame(code: str, detail: str, *, event: str | None = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {"code": code, "detail": detail}
    if event:
        data["event"] = event
    return build_frame("error", data)


def parse_frame(raw: str | bytes) -> Frame:
    """Decode a client frame, rejecting malformed JSON and unknown events."""

    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FrameError("Frames must be UTF-8 encoded") from exc
    if len(raw) > MAX_FRAME_BYTES:
        raise FrameError("Frame is too large")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise FrameError("Invalid message format") from exc
    if not isinstance(payload, dict):
        raise FrameError("Frame must be a JSON object")
    event = payload.get("event")
    if not isinstance(event, str) or not event:
        raise FrameError("Frame event must be provided")
    if event not in CLIENT_EVENTS:
        raise FrameError(f"Unknown event '{event}'")
    data = payload.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise FrameError("Frame data must be a JSON object")
    return Frame(event=event, data=data)


def build_relay_envelope(
    event: str,
    *,
    from_user_id: str,
    session_id: str,
    payload: Any,
) -> Dict[str, Any]:
    """Wrap a WebRTC offer/answer/ICE payload for the target; the payload is never inspected."""

    if event not in RELAY_EVENTS:
        raise FrameError(f"'{event}' is not a relay event")
    return build_frame(
        event,
        {"fromUserId": from_user_id, "sessionId": session_id, "payload": payload},
    )


__all__ = [
    "CLIENT_EVENTS",
    "CONVERSATION_FRAME_NAMES",
    "Frame",
    "FrameError",
    "RELAY_EVENTS",
    "SERVER_EVENTS",
    "build_frame",
    "build_relay_envelope",
    "conversation_frame",
    "error_frame",
    "parse_frame",
]
