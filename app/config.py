from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Iterable, List

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class IceServer(BaseModel):
    """Representation of a WebRTC ICE server configuration."""

    urls: list[str] = Field(default_factory=list, description="ICE server URLs")
    username: str | None = Field(default=None, description="Optional TURN username")
    credential: str | None = Field(default=None, description="Optional TURN credential")

    @field_validator("urls", mode="before")
    @classmethod
    def ensure_list(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple, set)):
            return [str(item) for item in value]
        return [] if value in (None, Ellipsis) else [str(value)]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Bella Matchmaking Core", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:8081",
            "http://127.0.0.1",
        ],
        description="List of allowed CORS origins",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$",
        description="Optional regular expression that matches allowed CORS origins",
    )

    database_user: str = Field(default="bella")
    database_password: str = Field(default="bella")
    database_host: str = Field(default="db")
    database_port: int = Field(default=3306)
    database_name: str = Field(default="bella")
    database_dsn: str | None = Field(
        default=None,
        description="Full SQLAlchemy URL; takes precedence over the individual database_* parts.",
    )

    jwt_secret_key: str = Field(default="changeme")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=30)

    # Matchmaking timing knobs
    queue_tick_ms: int = Field(default=500, description="Interval between matcher and sweeper ticks")
    proposal_ttl_ms: int = Field(default=120_000, description="Lifetime of a PENDING match proposal")
    call_ring_ms: int = Field(default=7_000, description="Ring timeout for direct calls")
    queue_heartbeat_ms: int = Field(
        default=90_000, description="WAITING entries without a heartbeat for this long are dropped"
    )
    negotiation_ttl_ms: int = Field(
        default=30_000, description="Deadline for an ACCEPTED session to become LIVE"
    )
    decline_cooldown_hours: int = Field(
        default=24, description="Window during which a declined or skipped pair is not re-proposed"
    )
    scheduler_enabled: bool = Field(default=True, description="Run the background matcher/sweeper loop")
    store_outage_grace_seconds: float = Field(
        default=30.0, description="How long the scheduler tolerates store failures before reporting degraded"
    )
    match_history_limit: int = Field(default=50)
    wait_estimate_sample_size: int = Field(
        default=50, description="Number of recent matches used for the wait time hint"
    )

    chat_history_default_limit: int = Field(default=50)
    chat_history_max_limit: int = Field(default=200)
    chat_message_max_length: int = Field(default=2000)
    notifications_max_limit: int = Field(default=50)
    activity_max_limit: int = Field(default=100)
    notification_write_retries: int = Field(default=3)
    notification_retry_base_delay: float = Field(default=0.05)

    presence_grace_seconds: float = Field(
        default=5.0, description="Delay before a user with no open connections is treated as offline"
    )
    signaling_heartbeat_seconds: float = Field(
        default=20.0, description="Maximum interval between client heartbeats"
    )
    signaling_missed_heartbeats: int = Field(
        default=2, description="Number of silent heartbeat intervals tolerated before closing"
    )

    realtime_redis_url: str | None = Field(
        default=None, description="Redis URL used for cross-node pub/sub and pair locks"
    )
    realtime_namespace: str = Field(default="bella.realtime")
    realtime_node_id: str | None = Field(default=None)
    realtime_lock_timeout_seconds: float = Field(default=5.0)
    realtime_typing_ttl_seconds: float = Field(default=8.0)

    rate_limit_enabled: bool = Field(default=True)
    rate_limit_storage_uri: str = Field(default="memory://")
    rate_limit_queue: str = Field(default="30/minute")
    rate_limit_messages: str = Field(default="120/minute")
    rate_limit_reports: str = Field(default="10/minute")

    webrtc_ice_servers: list[IceServer] = Field(
        default_factory=list,
        description="List of ICE (STUN/TURN) servers available to WebRTC peers.",
    )
    webrtc_stun_servers: list[str] = Field(
        default_factory=list,
        description="Additional STUN endpoints exposed to clients.",
    )
    webrtc_turn_servers: list[str] = Field(
        default_factory=list,
        description="TURN endpoints exposed to clients.",
    )
    webrtc_turn_username: str | None = Field(default=None)
    webrtc_turn_credential: str | None = Field(default=None)

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[1] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        if self.database_dsn:
            return self.database_dsn
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def queue_tick_seconds(self) -> float:
        return self.queue_tick_ms / 1000

    @property
    def signaling_idle_timeout_seconds(self) -> float:
        return self.signaling_heartbeat_seconds * max(self.signaling_missed_heartbeats, 1)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator(
        "webrtc_ice_servers",
        "webrtc_stun_servers",
        "webrtc_turn_servers",
        mode="before",
    )
    @classmethod
    def parse_iterable_field(cls, value: Any) -> list[Any] | Any:
        if value in (None, "", Ellipsis):
            return []
        if isinstance(value, str):
            try:
                import json

                parsed = json.loads(value)
                if isinstance(parsed, (list, tuple, set)):
                    return list(parsed)
            except json.JSONDecodeError:
                return [item.strip() for item in value.split(",") if item.strip()]
            return [str(value)]
        if isinstance(value, (list, tuple, set)):
            return list(value)
        return [value]

    def _aggregate_ice_servers(self) -> list[IceServer]:
        def coerce_server(entry: Any) -> IceServer | None:
            if isinstance(entry, IceServer):
                return entry
            if isinstance(entry, dict):
                return IceServer.model_validate(entry)
            if isinstance(entry, str):
                return IceServer(urls=[entry])
            if isinstance(entry, Iterable):
                return IceServer(urls=[str(item) for item in entry])
            return None

        servers: list[IceServer] = []
        for item in self.webrtc_ice_servers:
            server = coerce_server(item)
            if server is not None:
                servers.append(server)

        if self.webrtc_stun_servers:
            servers.append(IceServer(urls=[str(url) for url in self.webrtc_stun_servers]))

        if self.webrtc_turn_servers:
            servers.append(
                IceServer(
                    urls=[str(url) for url in self.webrtc_turn_servers],
                    username=self.webrtc_turn_username,
                    credential=self.webrtc_turn_credential,
                )
            )

        if not servers:
            servers.append(IceServer(urls=["stun:stun.l.google.com:19302"]))

        return servers

    @property
    def webrtc_ice_servers_payload(self) -> list[dict[str, Any]]:
        return [server.model_dump(mode="json") for server in self._aggregate_ice_servers()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
