"""Configuration schema for the session client.

Defines Pydantic models for the relay endpoint, ICE servers, negotiation
timeouts and local media source.
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from src.relay.protocol import DEFAULT_MAX_ENVELOPE_BYTES

DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]


class IceServerConfig(BaseModel):
    """One STUN/TURN server entry."""

    urls: list[str] = Field(..., min_length=1, description="Server URLs")
    username: str | None = Field(default=None, description="TURN username")
    credential: str | None = Field(default=None, description="TURN credential")


def _default_ice_servers() -> list[IceServerConfig]:
    return [IceServerConfig(urls=[url]) for url in DEFAULT_ICE_SERVERS]


class ClientConfig(BaseModel):
    """Root client configuration."""

    server_url: str = Field(
        default="ws://localhost:8080", description="Relay WebSocket URL"
    )
    ice_servers: list[IceServerConfig] = Field(default_factory=_default_ice_servers)
    negotiation_timeout_s: float = Field(
        default=15.0,
        gt=0,
        description="Seconds a peer may stay in OFFERING/ANSWERING before it is closed",
    )
    connect_timeout_s: float = Field(
        default=10.0, gt=0, description="Relay connection open timeout in seconds"
    )
    max_envelope_bytes: int = Field(
        default=DEFAULT_MAX_ENVELOPE_BYTES, ge=256, description="Largest envelope accepted"
    )
    media_source: str | None = Field(
        default=None,
        description="Media file or device for local capture (synthetic tracks if unset)",
    )
    media_format: str | None = Field(
        default=None, description="Container/device format for media_source (e.g. v4l2)"
    )

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        """Require a WebSocket URL."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"server_url must start with ws:// or wss://, got '{v}'")
        return v

    @classmethod
    def from_yaml(cls, path: Path) -> "ClientConfig":
        """Load configuration from YAML file with environment variable overrides.

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "ClientConfig":
        """Load configuration from YAML or use defaults if file doesn't exist."""
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(apply_env_overrides({}))


def apply_env_overrides(data: dict) -> dict:
    """Overlay ROOMLINK_* environment variables onto raw config data."""
    if server_url := os.getenv("ROOMLINK_SERVER_URL"):
        data["server_url"] = server_url

    if media_source := os.getenv("ROOMLINK_MEDIA_SOURCE"):
        data["media_source"] = media_source

    return data
