"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/calls.db",
        description="SQLAlchemy connection string.",
    )

    # Migrations / schema
    auto_create_db_schema: bool = Field(
        default=True,
        description="If true, creates tables automatically on startup (useful for local/dev).",
    )

    # Ringing
    ring_timeout_seconds: int = Field(
        default=30,
        ge=1,
        description="How many ticks an unanswered incoming call may ring before it is marked missed.",
    )
    ring_tick_seconds: float = Field(default=1.0, gt=0.0)
    ring_grace_seconds: int = Field(
        default=5,
        ge=0,
        description="Extra ticks the caller waits past the ring timeout before withdrawing the call.",
    )

    # Signaling
    signaling_url: str = Field(
        default="ws://localhost:8000/api/signaling/ws",
        description="Relay endpoint used by the WebSocket signaling transport.",
    )
    signaling_reconnect_seconds: float = Field(default=2.0, gt=0.0)
    signaling_topic_prefix: str = Field(default="signal_")
    change_topic: str = Field(
        default="call_changes",
        description="Relay topic on which clients share committed call row changes.",
    )

    # Peer connectivity
    ice_servers: list[str] = Field(
        default_factory=lambda: [
            "stun:stun.l.google.com:19302",
            "stun:stun1.l.google.com:19302",
        ]
    )

    # Local media capture
    media_backend: Literal["aiortc", "none"] = Field(default="aiortc")
    audio_device: str = Field(default="default")
    audio_format: str | None = Field(default="pulse")  # e.g. avfoundation, dshow
    video_device: str = Field(default="/dev/video0")
    video_format: str | None = Field(default="v4l2")
    video_size: str = Field(default="1280x720")

    # Queries
    history_page_size: int = Field(default=20, ge=1, le=200)

    data_dir: Path = Field(default=Path("./data"))

    @field_validator("data_dir")
    @classmethod
    def ensure_data_dir(cls, value: Path) -> Path:
        value.mkdir(parents=True, exist_ok=True)
        return value

    @field_validator("ice_servers")
    @classmethod
    def strip_ice_servers(cls, value: list[str]) -> list[str]:
        return [url.strip() for url in value if url.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
