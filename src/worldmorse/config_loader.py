#!/usr/bin/env python3
"""
Centralized configuration for WorldMorse.

Provides dataclass-based configuration with defaults and validation.
Supports environment variable overrides for deployment flexibility.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .logging_setup import get_logger

logger = get_logger(__name__)

# ── Protocol constants ─────────────────────────────────────────────────

RECENT_LIMIT_DEFAULT = 100             # /v1/messages/recent without a limit
RECENT_LIMIT_MAX = 500                 # Hard cap on one pull
DEFAULT_CONFIG_PATH = "/etc/worldmorse/config.json"
DEV_CONFIG_PATH = "/etc/worldmorse/config.dev.json"


@dataclass
class RelayConfig:
    """Relay server configuration."""

    host: str = "127.0.0.1"
    port: int = 3000
    presence_timeout_s: float = 60.0   # station pruned after this much silence
    max_messages_per_channel: int = 1000  # 0 = unbounded
    subscriber_queue_size: int = 256   # pending push events before a subscriber is dropped
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class ClientConfig:
    """Client sync configuration."""

    server_url: str = "http://127.0.0.1:3000"
    poll_interval_s: float = 3.0
    request_timeout_s: float = 5.0
    recent_limit: int = 200
    heartbeat_interval_s: float = 20.0


@dataclass
class KeyerConfig:
    """Straight-key timing configuration."""

    dot_ms: float = 100.0


@dataclass
class Config:
    """Main WorldMorse configuration."""

    # Identity
    call_sign: str = ""

    relay: RelayConfig = field(default_factory=RelayConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    keyer: KeyerConfig = field(default_factory=KeyerConfig)

    # Raw config for keys this version does not know
    _raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "Config":
        """
        Load configuration from file.

        Args:
            path: Path to config file. If None, uses environment-based default.

        Returns:
            Config instance with loaded values.
        """
        if path is None:
            path = cls._get_default_path()

        path = Path(path)

        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", path)
            return cls._from_dict({})

        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        logger.info("Loaded config from %s", path)
        return cls._from_dict(data)

    @staticmethod
    def _get_default_path() -> Path:
        """Get default config path based on environment."""
        explicit = os.getenv("WORLDMORSE_CONFIG")
        if explicit:
            return Path(explicit)
        if os.getenv("WORLDMORSE_ENV") == "dev":
            logger.debug("DEV environment detected")
            return Path(DEV_CONFIG_PATH)
        return Path(DEFAULT_CONFIG_PATH)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary (JSON data), applying env overrides."""
        origins = data.get("CORS_ORIGINS", "*")
        if isinstance(origins, str):
            origins = [o.strip() for o in origins.split(",") if o.strip()]

        relay = RelayConfig(
            host=os.getenv("WORLDMORSE_HOST", data.get("HOST", "127.0.0.1")),
            port=int(os.getenv("WORLDMORSE_PORT", data.get("PORT", 3000))),
            presence_timeout_s=float(data.get("PRESENCE_TIMEOUT_S", 60.0)),
            max_messages_per_channel=int(data.get("MAX_MESSAGES_PER_CHANNEL", 1000)),
            subscriber_queue_size=int(data.get("SUBSCRIBER_QUEUE_SIZE", 256)),
            cors_origins=origins or ["*"],
        )

        client = ClientConfig(
            server_url=os.getenv(
                "WORLDMORSE_SERVER_URL",
                data.get("SERVER_URL", "http://127.0.0.1:3000"),
            ),
            poll_interval_s=float(data.get("POLL_INTERVAL_S", 3.0)),
            request_timeout_s=float(data.get("REQUEST_TIMEOUT_S", 5.0)),
            recent_limit=int(data.get("RECENT_LIMIT", 200)),
            heartbeat_interval_s=float(data.get("HEARTBEAT_INTERVAL_S", 20.0)),
        )

        keyer = KeyerConfig(dot_ms=float(data.get("DOT_MS", 100.0)))

        return cls(
            call_sign=os.getenv("WORLDMORSE_CALL_SIGN", data.get("CALL_SIGN", "")),
            relay=relay,
            client=client,
            keyer=keyer,
            _raw=data,
        )

    def to_dict(self) -> dict[str, Any]:
        """Export config to dictionary for saving."""
        return {
            "CALL_SIGN": self.call_sign,
            "HOST": self.relay.host,
            "PORT": self.relay.port,
            "PRESENCE_TIMEOUT_S": self.relay.presence_timeout_s,
            "MAX_MESSAGES_PER_CHANNEL": self.relay.max_messages_per_channel,
            "SUBSCRIBER_QUEUE_SIZE": self.relay.subscriber_queue_size,
            "CORS_ORIGINS": ",".join(self.relay.cors_origins),
            "SERVER_URL": self.client.server_url,
            "POLL_INTERVAL_S": self.client.poll_interval_s,
            "REQUEST_TIMEOUT_S": self.client.request_timeout_s,
            "RECENT_LIMIT": self.client.recent_limit,
            "HEARTBEAT_INTERVAL_S": self.client.heartbeat_interval_s,
            "DOT_MS": self.keyer.dot_ms,
        }

    def save(self, path: str | Path) -> None:
        """Save config to file."""
        path = Path(path)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info("Saved config to %s", path)
