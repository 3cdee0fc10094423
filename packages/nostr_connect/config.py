"""Configuration for nostr-connect sessions and signers."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError


@dataclass
class ConnectConfig:
    """Configuration shared by applications and signers."""
    relay_url: str
    private_key_path: Path

    # Timeouts (None disables the call deadline)
    call_timeout: Optional[float] = 30.0
    connection_timeout: float = 10.0

    # Emit the unpaired event before the disconnect notification is sent
    notify_before_disconnect: bool = True


def _parse_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}", missing_key=name)


def _parse_bool(name: str, default: str) -> bool:
    raw = os.getenv(name, default).strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be true or false, got {raw!r}", missing_key=name)


def get_config(env_file: Optional[Path] = None) -> ConnectConfig:
    """Load configuration from environment.

    Required environment variables:
        NOSTR_CONNECT_RELAY: Relay websocket URL
        NOSTR_CONNECT_PRIVATE_KEY_PATH: Path to the local Ed25519 private key

    Optional environment variables:
        NOSTR_CONNECT_CALL_TIMEOUT: Call deadline in seconds, 0 or "none" to wait forever (default: 30.0)
        NOSTR_CONNECT_CONNECTION_TIMEOUT: Relay connect timeout in seconds (default: 10.0)
        NOSTR_CONNECT_NOTIFY_BEFORE_DISCONNECT: true/false (default: true)

    Returns:
        ConnectConfig with loaded values

    Raises:
        ConfigurationError: If required environment variables are missing or invalid
    """
    # Load .env file if it exists
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    relay_url = os.getenv("NOSTR_CONNECT_RELAY")
    if not relay_url:
        raise ConfigurationError(
            "NOSTR_CONNECT_RELAY environment variable is required. "
            "This should be the websocket URL of the relay, e.g. wss://relay.example.com",
            missing_key="NOSTR_CONNECT_RELAY"
        )

    private_key_path = os.getenv("NOSTR_CONNECT_PRIVATE_KEY_PATH")
    if not private_key_path:
        raise ConfigurationError(
            "NOSTR_CONNECT_PRIVATE_KEY_PATH environment variable is required. "
            "Generate keys with: nostr-connect-keygen",
            missing_key="NOSTR_CONNECT_PRIVATE_KEY_PATH"
        )

    raw_timeout = os.getenv("NOSTR_CONNECT_CALL_TIMEOUT", "30.0").strip().lower()
    if raw_timeout in ("", "none"):
        call_timeout = None
    else:
        call_timeout = _parse_float("NOSTR_CONNECT_CALL_TIMEOUT", "30.0") or None

    return ConnectConfig(
        relay_url=relay_url,
        private_key_path=Path(private_key_path).expanduser(),
        call_timeout=call_timeout,
        connection_timeout=_parse_float("NOSTR_CONNECT_CONNECTION_TIMEOUT", "10.0"),
        notify_before_disconnect=_parse_bool("NOSTR_CONNECT_NOTIFY_BEFORE_DISCONNECT", "true"),
    )


def validate_config(config: ConnectConfig) -> None:
    """Validate configuration paths exist.

    Raises:
        ConfigurationError: If the private key file doesn't exist
    """
    if not config.private_key_path.exists():
        raise ConfigurationError(
            f"Private key not found at {config.private_key_path}. "
            "Generate keys with: nostr-connect-keygen",
            missing_key="NOSTR_CONNECT_PRIVATE_KEY_PATH"
        )
