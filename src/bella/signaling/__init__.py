"""Signaling channel helpers."""

from .frames import (  # noqa: F401
    CLIENT_EVENTS,
    RELAY_EVENTS,
    SERVER_EVENTS,
    Frame,
    FrameError,
    build_frame,
    build_relay_envelope,
    conversation_frame,
    error_frame,
    parse_frame,
)
