"""Unit tests for relay and client configuration.

Tests configuration loading, validation, defaults and environment
overrides.
"""

from pathlib import Path

import pytest

from src.client.config import DEFAULT_ICE_SERVERS, ClientConfig, IceServerConfig
from src.relay.config import HealthConfig, ProtocolConfig, RelayConfig, WebSocketConfig
from src.relay.protocol import DEFAULT_MAX_ENVELOPE_BYTES

REPO_ROOT = Path(__file__).resolve().parents[2]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in (
        "RELAY_HOST",
        "RELAY_PORT",
        "RELAY_LOG_LEVEL",
        "RELAY_MAX_ENVELOPE_BYTES",
        "ROOMLINK_SERVER_URL",
        "ROOMLINK_MEDIA_SOURCE",
    ):
        monkeypatch.delenv(var, raising=False)


def test_websocket_config_defaults() -> None:
    config = WebSocketConfig()
    assert config.host == "0.0.0.0"  # noqa: S104
    assert config.port == 8080
    assert config.max_connections == 1000
    assert config.send_queue_size == 256
    assert config.max_message_bytes == 2**20


def test_websocket_config_validation() -> None:
    """Port 0 binds an ephemeral port; out-of-range ports are rejected."""
    assert WebSocketConfig(port=0).port == 0

    with pytest.raises(ValueError):
        WebSocketConfig(port=70000)

    with pytest.raises(ValueError):
        WebSocketConfig(send_queue_size=0)


def test_protocol_and_health_defaults() -> None:
    assert ProtocolConfig().max_envelope_bytes == DEFAULT_MAX_ENVELOPE_BYTES
    health = HealthConfig()
    assert health.enabled is True
    assert health.port == 8081


def test_relay_config_defaults() -> None:
    config = RelayConfig()
    assert config.log_level == "INFO"
    assert config.graceful_shutdown_timeout_s == 10


def test_log_level_normalized() -> None:
    assert RelayConfig(log_level="debug").log_level == "DEBUG"

    with pytest.raises(ValueError, match="log_level"):
        RelayConfig(log_level="chatty")


def test_envelope_limit_must_fit_frame_limit() -> None:
    with pytest.raises(ValueError, match="max_envelope_bytes"):
        RelayConfig(
            websocket=WebSocketConfig(max_message_bytes=4096),
            protocol=ProtocolConfig(max_envelope_bytes=8192),
        )


def test_relay_config_from_yaml(tmp_path: Path) -> None:
    config_file = tmp_path / "relay.yaml"
    config_file.write_text(
        """
websocket:
  host: "127.0.0.1"
  port: 9000
  send_queue_size: 32
protocol:
  max_envelope_bytes: 4096
health:
  enabled: false
log_level: "WARNING"
"""
    )

    config = RelayConfig.from_yaml(config_file)

    assert config.websocket.host == "127.0.0.1"
    assert config.websocket.port == 9000
    assert config.websocket.send_queue_size == 32
    assert config.protocol.max_envelope_bytes == 4096
    assert config.health.enabled is False
    assert config.log_level == "WARNING"


def test_relay_config_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path / "relay.yaml"
    config_file.write_text("websocket:\n  port: 9000\n")
    monkeypatch.setenv("RELAY_PORT", "9100")
    monkeypatch.setenv("RELAY_HOST", "10.0.0.5")
    monkeypatch.setenv("RELAY_LOG_LEVEL", "error")

    config = RelayConfig.from_yaml(config_file)

    assert config.websocket.port == 9100
    assert config.websocket.host == "10.0.0.5"
    assert config.log_level == "ERROR"


def test_relay_config_missing_file() -> None:
    with pytest.raises(FileNotFoundError):
        RelayConfig.from_yaml(Path("/nonexistent/relay.yaml"))


def test_relay_config_non_mapping(tmp_path: Path) -> None:
    config_file = tmp_path / "relay.yaml"
    config_file.write_text("- just\n- a list\n")

    with pytest.raises(ValueError, match="mapping"):
        RelayConfig.from_yaml(config_file)


def test_relay_config_with_defaults_missing() -> None:
    config = RelayConfig.from_yaml_with_defaults(Path("/nonexistent/relay.yaml"))
    assert config.websocket.port == 8080


def test_shipped_configs_load() -> None:
    relay = RelayConfig.from_yaml(REPO_ROOT / "configs" / "relay.yaml")
    client = ClientConfig.from_yaml(REPO_ROOT / "configs" / "client.yaml")

    assert relay.websocket.port == 8080
    assert client.server_url == "ws://localhost:8080"


class TestClientConfig:
    """Test client configuration."""

    def test_defaults(self) -> None:
        config = ClientConfig()
        assert config.server_url == "ws://localhost:8080"
        assert [server.urls[0] for server in config.ice_servers] == DEFAULT_ICE_SERVERS
        assert config.negotiation_timeout_s == 15.0
        assert config.media_source is None

    def test_server_url_must_be_websocket(self) -> None:
        with pytest.raises(ValueError, match="ws://"):
            ClientConfig(server_url="http://localhost:8080")

        assert ClientConfig(server_url="wss://relay.example.com").server_url.startswith("wss")

    def test_timeout_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            ClientConfig(negotiation_timeout_s=0)

    def test_ice_server_requires_url(self) -> None:
        with pytest.raises(ValueError):
            IceServerConfig(urls=[])

    def test_from_yaml_with_turn(self, tmp_path: Path) -> None:
        config_file = tmp_path / "client.yaml"
        config_file.write_text(
            """
server_url: "ws://relay:9000"
ice_servers:
  - urls: ["turn:turn.example.com:3478"]
    username: "user"
    credential: "secret"
negotiation_timeout_s: 5
"""
        )

        config = ClientConfig.from_yaml(config_file)

        assert config.server_url == "ws://relay:9000"
        assert config.ice_servers[0].username == "user"
        assert config.negotiation_timeout_s == 5.0

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ROOMLINK_SERVER_URL", "ws://override:1234")
        monkeypatch.setenv("ROOMLINK_MEDIA_SOURCE", "/tmp/clip.mp4")

        config = ClientConfig.from_yaml_with_defaults(None)

        assert config.server_url == "ws://override:1234"
        assert config.media_source == "/tmp/clip.mp4"
