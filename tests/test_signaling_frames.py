from __future__ import annotations

import json

import pytest

from bella.signaling import (
    FrameError,
    build_frame,
    build_relay_envelope,
    conversation_frame,
    error_frame,
    parse_frame,
)


def test_parse_frame_accepts_client_events():
    frame = parse_frame(json.dumps({"event": "typing-start", "data": {"conversationId": "room"}}))
    assert frame.event == "typing-start"
    assert frame.data == {"conversationId": "room"}


def test_parse_frame_defaults_missing_data_and_decodes_bytes():
    frame = parse_frame(b'{"event": "heartbeat"}')
    assert (frame.event, frame.data) == ("heartbeat", {})


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("not json", "Invalid message format"),
        ("[1, 2]", "Frame must be a JSON object"),
        ('{"data": {}}', "Frame event must be provided"),
        ('{"event": "drop-tables"}', "Unknown event"),
        ('{"event": "heartbeat", "data": [1]}', "Frame data must be a JSON object"),
        (b"\xff\xfe", "Frames must be UTF-8 encoded"),
    ],
)
def test_parse_frame_rejects_malformed_input(raw, message):
    with pytest.raises(FrameError, match=message):
        parse_frame(raw)


def test_parse_frame_rejects_oversized_frames():
    raw = json.dumps({"event": "send-message", "data": {"content": "x" * 70_000}})
    with pytest.raises(FrameError, match="too large"):
        parse_frame(raw)


def test_relay_envelope_passes_payload_through_untouched():
    payload = {"sdp": "v=0\r\no=- 46117317 2 IN IP4 127.0.0.1", "type": "offer", "extra": [1, None]}
    frame = build_relay_envelope("webrtc-offer", from_user_id="u1", session_id="s1", payload=payload)

    assert frame == {
        "event": "webrtc-offer",
        "data": {"fromUserId": "u1", "sessionId": "s1", "payload": payload},
    }
    assert frame["data"]["payload"] is payload


def test_relay_envelope_only_wraps_webrtc_events():
    with pytest.raises(FrameError):
        build_relay_envelope("send-message", from_user_id="u1", session_id="s1", payload={})


def test_conversation_frame_maps_bus_kinds_to_client_events():
    assert conversation_frame("call-request", {"sessionId": "s1"})["event"] == "call:incoming"
    assert conversation_frame("call-ended", {})["event"] == "call:ended"
    assert conversation_frame("message", {"id": 1}) == build_frame("message", {"id": 1})
    with pytest.raises(FrameError):
        conversation_frame("presence", {})


def test_error_frame_carries_code_and_event():
    assert error_frame("NOT_FOUND", "Session not found", event="call-response") == {
        "event": "error",
        "data": {"code": "NOT_FOUND", "detail": "Session not found", "event": "call-response"},
    }
    assert "event" not in error_frame("VALIDATION_FAILED", "bad")["data"]
