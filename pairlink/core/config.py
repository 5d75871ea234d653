"""Application configuration for the signaling server and the peer client."""
from __future__ import annotations

import json
from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5001)
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"]
    )

    turn_secret: str = Field(default="")
    turn_realm: str = Field(default="localhost")
    turn_host: str = Field(default="")
    turn_ttl_seconds: int = Field(default=86400, ge=1)
    stun_urls: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["stun:stun.l.google.com:19302"]
    )

    signaling_url: str = Field(default="http://localhost:5001")
    media_policy: str = Field(default="require")
    camera_format: str = Field(default="v4l2")
    camera_user_device: str = Field(default="/dev/video0")
    camera_environment_device: str = Field(default="/dev/video1")
    camera_options: dict[str, str] = Field(default_factory=lambda: {"video_size": "640x480", "framerate": "30"})
    microphone_format: str = Field(default="pulse")
    microphone_device: str = Field(default="default")

    @field_validator("cors_allow_origins", "stun_urls", mode="before")
    @classmethod
    def _split_lists(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                return json.loads(stripped)
            return [item.strip() for item in stripped.split(",") if item.strip()]
        return value

    @field_validator("media_policy")
    @classmethod
    def _check_media_policy(cls, value: str) -> str:
        lowered = value.strip().lower()
        if lowered not in {"require", "optional"}:
            raise ValueError("media_policy must be 'require' or 'optional'")
        return lowered


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
