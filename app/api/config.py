"""Configuration endpoints for exposing runtime options to the clients."""

from __future__ import annotations

from fastapi import APIRouter

from app.config import get_settings

router = APIRouter(prefix="/config", tags=["config"])


@router.get("/webrtc")
def read_webrtc_config() -> dict[str, object]:
    """Expose WebRTC ICE configuration and the call timeouts clients must honour."""

    settings = get_settings()
    return {
        "iceServers": settings.webrtc_ice_servers_payload,
        "stun": [str(url) for url in settings.webrtc_stun_servers],
        "turn": {
            "urls": [str(url) for url in settings.webrtc_turn_servers],
            "username": settings.webrtc_turn_username,
        },
        "timeouts": {
            "ringMs": settings.call_ring_ms,
            "negotiationMs": settings.negotiation_ttl_ms,
            "proposalMs": settings.proposal_ttl_ms,
            "heartbeatMs": int(settings.signaling_heartbeat_seconds * 1000),
            "queueHeartbeatMs": settings.queue_heartbeat_ms,
        },
    }
