"""
Board Sync Configuration Management

Loads configuration from YAML file with environment variable overrides.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from boardsync.errors import ConfigError


def default_data_dir() -> Path:
    """Return the default data directory."""
    return Path.home() / ".boardsync"


@dataclass
class SessionConfig:
    """Connection, reconnection and delivery settings for a client."""

    relay_url: str = "ws://127.0.0.1:9910"
    reconnect_attempts: int = 5
    backoff_base: float = 0.5  # seconds, doubled per attempt
    backoff_max: float = 8.0
    ack_timeout: float = 1.0  # seconds before a durable action is re-sent
    ack_retries: int = 5
    drag_interval: float = 0.0  # 0 sends every drag update immediately

    def __post_init__(self):
        self.relay_url = os.environ.get("BOARDSYNC_RELAY_URL", self.relay_url)
        if env_attempts := os.environ.get("BOARDSYNC_RECONNECT_ATTEMPTS"):
            self.reconnect_attempts = int(env_attempts)
        if env_timeout := os.environ.get("BOARDSYNC_ACK_TIMEOUT"):
            self.ack_timeout = float(env_timeout)
        if env_retries := os.environ.get("BOARDSYNC_ACK_RETRIES"):
            self.ack_retries = int(env_retries)
        if env_drag := os.environ.get("BOARDSYNC_DRAG_INTERVAL"):
            self.drag_interval = float(env_drag)
        self.validate()

    def validate(self) -> None:
        """Reject values the session manager cannot work with."""
        if self.reconnect_attempts < 0:
            raise ConfigError("reconnect_attempts must be >= 0")
        if self.backoff_base <= 0 or self.backoff_max < self.backoff_base:
            raise ConfigError("backoff_base must be > 0 and <= backoff_max")
        if self.ack_timeout <= 0:
            raise ConfigError("ack_timeout must be > 0")
        if self.ack_retries < 0:
            raise ConfigError("ack_retries must be >= 0")
        if self.drag_interval < 0:
            raise ConfigError("drag_interval must be >= 0")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number ``attempt`` (0-based)."""
        return min(self.backoff_base * (2**attempt), self.backoff_max)


@dataclass
class RelayConfig:
    """Configuration for the relay server."""

    host: str = "127.0.0.1"
    port: int = 9910

    def __post_init__(self):
        self.host = os.environ.get("BOARDSYNC_RELAY_HOST", self.host)
        if env_port := os.environ.get("BOARDSYNC_RELAY_PORT"):
            self.port = int(env_port)


@dataclass
class PlayerConfig:
    """Local player settings."""

    name: str = ""

    def __post_init__(self):
        self.name = os.environ.get("BOARDSYNC_PLAYER_NAME", self.name)


@dataclass
class BoardSyncConfig:
    """Main configuration for boardsync."""

    data_dir: Path = field(default_factory=default_data_dir)
    log_level: str = "INFO"
    log_to_file: bool = True
    session: SessionConfig = field(default_factory=SessionConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    player: PlayerConfig = field(default_factory=PlayerConfig)

    def __post_init__(self):
        if isinstance(self.data_dir, str):
            self.data_dir = Path(self.data_dir)

        self.data_dir = self.data_dir.expanduser()

        if env_data_dir := os.environ.get("BOARDSYNC_DATA_DIR"):
            self.data_dir = Path(env_data_dir).expanduser()
        self.log_level = os.environ.get("BOARDSYNC_LOG_LEVEL", self.log_level)

    @property
    def config_file(self) -> Path:
        return self.data_dir / "config.yaml"

    @property
    def log_file(self) -> Path:
        return self.data_dir / "boardsync.log"

    def ensure_dirs(self) -> None:
        """Create necessary directories."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> dict:
        """Convert config to dictionary for serialization."""
        return {
            "data_dir": str(self.data_dir),
            "log_level": self.log_level,
            "log_to_file": self.log_to_file,
            "session": {
                "relay_url": self.session.relay_url,
                "reconnect_attempts": self.session.reconnect_attempts,
                "backoff_base": self.session.backoff_base,
                "backoff_max": self.session.backoff_max,
                "ack_timeout": self.session.ack_timeout,
                "ack_retries": self.session.ack_retries,
                "drag_interval": self.session.drag_interval,
            },
            "relay": {
                "host": self.relay.host,
                "port": self.relay.port,
            },
            "player": {
                "name": self.player.name,
            },
        }

    def save(self) -> None:
        """Save configuration to YAML file."""
        self.ensure_dirs()
        with open(self.config_file, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls, config_path: Path | None = None) -> "BoardSyncConfig":
        """
        Load configuration from file.

        Precedence (highest to lowest):
        1. Environment variables
        2. Config file values
        3. Default values
        """
        config = cls()

        if config_path is None:
            config_path = config.config_file

        if config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}

            if "data_dir" in data:
                config.data_dir = Path(data["data_dir"]).expanduser()
            if "log_level" in data:
                config.log_level = data["log_level"]
            if "log_to_file" in data:
                config.log_to_file = data["log_to_file"]

            if session_data := data.get("session"):
                for key in (
                    "relay_url",
                    "reconnect_attempts",
                    "backoff_base",
                    "backoff_max",
                    "ack_timeout",
                    "ack_retries",
                    "drag_interval",
                ):
                    if key in session_data:
                        setattr(config.session, key, session_data[key])

            if relay_data := data.get("relay"):
                if "host" in relay_data:
                    config.relay.host = relay_data["host"]
                if "port" in relay_data:
                    config.relay.port = relay_data["port"]

            if player_data := data.get("player"):
                if "name" in player_data:
                    config.player.name = player_data["name"]

            # Re-apply environment overrides
            config.__post_init__()
            config.session.__post_init__()
            config.relay.__post_init__()
            config.player.__post_init__()

        return config


def get_config() -> BoardSyncConfig:
    """Get the configuration, loading from the default location."""
    return BoardSyncConfig.load()
