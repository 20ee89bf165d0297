#!/usr/bin/env python3
"""Validate relay and client configuration files.

This tool validates relay.yaml and client.yaml using the Pydantic models
the relay and client load at startup, catching configuration errors before
runtime.

Exit codes:
    0: All configurations valid
    1: Configuration validation failed

Usage:
    ./scripts/validate-config.py
    ./scripts/validate-config.py --relay configs/relay.yaml
    ./scripts/validate-config.py --client configs/client.yaml
    ./scripts/validate-config.py --help
"""

import argparse
import sys
from pathlib import Path

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError

from src.client.config import ClientConfig
from src.relay.config import RelayConfig


def format_validation_errors(e: ValidationError) -> str:
    """Format Pydantic validation errors in a user-friendly way."""
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        msg = error["msg"]
        errors.append(f"      Field: {loc or '(root)'}")
        errors.append(f"      Error: {msg}")
        errors.append(f"      Type: {error['type']}")

        if "greater than" in msg.lower() or "less than" in msg.lower():
            errors.append("      Resolution: Check valid range in configuration comments")
        elif "field required" in msg.lower():
            errors.append(f"      Resolution: Add required field '{loc}' to configuration")
        errors.append("")

    return "\n".join(errors)


def validate_relay_config(path: Path, verbose: bool = False) -> bool:
    """Validate relay.yaml configuration.

    Returns:
        True if valid, False otherwise
    """
    try:
        config = RelayConfig.from_yaml(path)
        print(f"✅ {path}: Valid relay configuration")

        if verbose:
            print("\n   Configuration loaded successfully:")
            print(f"   - WebSocket: {config.websocket.host}:{config.websocket.port}")
            print(f"   - Send queue: {config.websocket.send_queue_size} envelopes")
            print(f"   - Envelope limit: {config.protocol.max_envelope_bytes} bytes")
            health = config.health
            print(f"   - Health: {f'{health.host}:{health.port}' if health.enabled else 'disabled'}")
            print(f"   - Log Level: {config.log_level}")

        return True

    except FileNotFoundError:
        print(f"❌ {path}: File not found")
        print(f"   Resolution: Create relay configuration file at {path}")
        return False

    except ValidationError as e:
        print(f"❌ {path}: Invalid relay configuration")
        print("\n   Validation Errors:")
        print(format_validation_errors(e))
        return False

    except Exception as e:
        print(f"❌ {path}: YAML parse error")
        print(f"   Error: {e}")
        print("   Resolution: Check YAML syntax (indentation, quotes, colons)")
        return False


def validate_client_config(path: Path, verbose: bool = False) -> bool:
    """Validate client.yaml configuration."""
    try:
        config = ClientConfig.from_yaml(path)
        print(f"✅ {path}: Valid client configuration")

        if verbose:
            print("\n   Configuration loaded successfully:")
            print(f"   - Relay: {config.server_url}")
            for server in config.ice_servers:
                print(f"   - ICE: {', '.join(server.urls)}")
            print(f"   - Negotiation timeout: {config.negotiation_timeout_s}s")
            print(f"   - Media: {config.media_source or 'synthetic'}")

        return True

    except FileNotFoundError:
        print(f"❌ {path}: File not found")
        print(f"   Resolution: Create client configuration file at {path}")
        return False

    except ValidationError as e:
        print(f"❌ {path}: Invalid client configuration")
        print("\n   Validation Errors:")
        print(format_validation_errors(e))
        return False

    except Exception as e:
        print(f"❌ {path}: YAML parse error")
        print(f"   Error: {e}")
        return False


def main() -> int:
    """Main entry point for config validation tool.

    Returns:
        Exit code (0=success, 1=validation failed)
    """
    parser = argparse.ArgumentParser(
        description="Validate relay and client configuration files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Validate both configs (default)
  ./scripts/validate-config.py

  # Validate specific config
  ./scripts/validate-config.py --relay configs/relay.yaml
  ./scripts/validate-config.py --client configs/client.yaml
        """,
    )
    parser.add_argument(
        "--relay",
        type=Path,
        default=Path("configs/relay.yaml"),
        help="Path to relay.yaml (default: configs/relay.yaml)",
    )
    parser.add_argument(
        "--client",
        type=Path,
        default=Path("configs/client.yaml"),
        help="Path to client.yaml (default: configs/client.yaml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show full configuration details on success",
    )
    args = parser.parse_args()

    print("=== Configuration Validation ===\n")

    relay_ok = validate_relay_config(args.relay, verbose=args.verbose)
    print()
    client_ok = validate_client_config(args.client, verbose=args.verbose)
    print()

    print("=" * 40)
    if relay_ok and client_ok:
        print("✅ All configurations valid")
        return 0

    print("❌ Configuration validation failed")
    for path, ok in ((args.relay, relay_ok), (args.client, client_ok)):
        if not ok:
            print(f"  - {path}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
