"""Configuration management for devlink."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml


# Last-known-good protocol version, used when the version fetch times out
DEFAULT_PROTOCOL_VERSION = [2, 3000, 1015901307]
DEFAULT_VERSION_URL = (
    "https://raw.githubusercontent.com/WhiskeySockets/Baileys/master/"
    "src/Defaults/baileys-version.json"
)
DEFAULT_BROWSER = ["Mac OS", "Safari", "14.4.1"]
DEFAULT_BUNDLE_CAPTION = "Your session file (creds.json)"


@dataclass
class LinkingConfig:
    """Linking session timing and delivery configuration."""

    window_seconds: float = 120.0  # Linking window
    settle_seconds: float = 2.0  # Wait after link before delivering
    post_delivery_seconds: float = 2.0  # Wait after delivery before teardown
    delivery_timeout: float = 30.0
    code_group_size: int = 4
    identity_domain: str = "s.whatsapp.net"
    bundle_file_name: str = "creds.json"
    bundle_caption: str = DEFAULT_BUNDLE_CAPTION


@dataclass
class ProtocolConfig:
    """Messaging protocol client configuration."""

    client_factory: str | None = None  # "package.module:factory"
    version_url: str = DEFAULT_VERSION_URL
    version_timeout: float = 5.0  # seconds
    fallback_version: list[int] = field(
        default_factory=lambda: DEFAULT_PROTOCOL_VERSION.copy()
    )
    browser: list[str] = field(default_factory=lambda: DEFAULT_BROWSER.copy())


@dataclass
class BroadcastConfig:
    """Pairing artifact broadcast configuration."""

    heartbeat_seconds: float = 15.0
    queue_size: int = 16  # Per-subscriber buffered updates


@dataclass
class Config:
    """Service configuration."""

    port: int = 3000
    bind_address: str = "0.0.0.0"
    log_level: str = "INFO"
    log_file: str | None = None
    auth_dir: str = str(Path.home() / ".local" / "share" / "devlink" / "temp")
    linking: LinkingConfig = field(default_factory=LinkingConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "devlink" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        return yaml.safe_load(content)
    except yaml.YAMLError:
        return None


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if not isinstance(data, dict):
        return Config()

    linking_data = data.get("linking") or {}
    linking_config = LinkingConfig(
        window_seconds=linking_data.get(
            "window_seconds", LinkingConfig.window_seconds
        ),
        settle_seconds=linking_data.get(
            "settle_seconds", LinkingConfig.settle_seconds
        ),
        post_delivery_seconds=linking_data.get(
            "post_delivery_seconds", LinkingConfig.post_delivery_seconds
        ),
        delivery_timeout=linking_data.get(
            "delivery_timeout", LinkingConfig.delivery_timeout
        ),
        code_group_size=linking_data.get(
            "code_group_size", LinkingConfig.code_group_size
        ),
        identity_domain=linking_data.get(
            "identity_domain", LinkingConfig.identity_domain
        ),
        bundle_file_name=linking_data.get(
            "bundle_file_name", LinkingConfig.bundle_file_name
        ),
        bundle_caption=linking_data.get(
            "bundle_caption", LinkingConfig.bundle_caption
        ),
    )

    protocol_data = data.get("protocol") or {}
    protocol_config = ProtocolConfig(
        client_factory=protocol_data.get("client_factory"),
        version_url=protocol_data.get("version_url", ProtocolConfig.version_url),
        version_timeout=protocol_data.get(
            "version_timeout", ProtocolConfig.version_timeout
        ),
        fallback_version=protocol_data.get(
            "fallback_version", DEFAULT_PROTOCOL_VERSION.copy()
        ),
        browser=protocol_data.get("browser", DEFAULT_BROWSER.copy()),
    )

    broadcast_data = data.get("broadcast") or {}
    broadcast_config = BroadcastConfig(
        heartbeat_seconds=broadcast_data.get(
            "heartbeat_seconds", BroadcastConfig.heartbeat_seconds
        ),
        queue_size=broadcast_data.get("queue_size", BroadcastConfig.queue_size),
    )

    return Config(
        port=data.get("port", Config.port),
        bind_address=data.get("bind_address", Config.bind_address),
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        auth_dir=data.get("auth_dir", Config.auth_dir),
        linking=linking_config,
        protocol=protocol_config,
        broadcast=broadcast_config,
    )
