"""Configuration schema for the relay server.

Defines Pydantic models for loading and validating relay configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

from src.relay.protocol import DEFAULT_MAX_ENVELOPE_BYTES

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8080, ge=0, le=65535, description="Bind port (0 = ephemeral)")
    max_connections: int = Field(default=1000, ge=1, description="Maximum concurrent connections")
    send_queue_size: int = Field(
        default=256,
        ge=1,
        description="Outbound envelopes buffered per connection before it is disconnected",
    )
    max_message_bytes: int = Field(
        default=2**20,
        ge=1024,
        description="Frame size limit enforced by the socket layer (closes the connection)",
    )


class ProtocolConfig(BaseModel):
    """Envelope codec configuration."""

    max_envelope_bytes: int = Field(
        default=DEFAULT_MAX_ENVELOPE_BYTES,
        ge=256,
        description="Largest envelope accepted; larger ones are rejected, connection kept",
    )


class HealthConfig(BaseModel):
    """Health and metrics HTTP endpoint configuration."""

    enabled: bool = Field(default=True, description="Serve /health and /metrics")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int = Field(default=8081, ge=0, le=65535, description="Bind port")


class RelayConfig(BaseModel):
    """Root relay configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize the logging level name."""
        level = v.upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}, got '{v}'")
        return level

    @model_validator(mode="after")
    def validate_envelope_limit(self) -> "RelayConfig":
        """Ensure the codec limit fits inside the socket frame limit."""
        if self.protocol.max_envelope_bytes > self.websocket.max_message_bytes:
            raise ValueError(
                "protocol.max_envelope_bytes must not exceed websocket.max_message_bytes "
                f"({self.protocol.max_envelope_bytes} > {self.websocket.max_message_bytes})"
            )
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> "RelayConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

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
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RelayConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(apply_env_overrides({}))


def apply_env_overrides(data: dict) -> dict:
    """Overlay RELAY_* environment variables onto raw config data."""
    if relay_host := os.getenv("RELAY_HOST"):
        data.setdefault("websocket", {})["host"] = relay_host

    if relay_port := os.getenv("RELAY_PORT"):
        data.setdefault("websocket", {})["port"] = int(relay_port)

    if log_level := os.getenv("RELAY_LOG_LEVEL"):
        data["log_level"] = log_level

    if max_envelope := os.getenv("RELAY_MAX_ENVELOPE_BYTES"):
        data.setdefault("protocol", {})["max_envelope_bytes"] = int(max_envelope)

    return data
