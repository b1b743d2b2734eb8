"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Strategies available for app-shell requests.
# network-first avoids serving an old JS bundle after a deployment.
STRATEGY_NETWORK_FIRST = "network-first"
STRATEGY_CACHE_FIRST = "cache-first"
APP_SHELL_STRATEGIES = (STRATEGY_NETWORK_FIRST, STRATEGY_CACHE_FIRST)

DEFAULT_STATIC_ASSETS = (
    "/",
    "/manifest.json?v=6",
    "/favicon.svg",
    "/icons/icon-192x192.png",
    "/icons/icon-512x512.png",
)
DEFAULT_FALLBACK_ASSETS = ("/", "/manifest.json?v=6")


def _is_http_origin(value: str) -> bool:
    parts = urlsplit(value)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


@dataclass(frozen=True)
class WorkerConfig:
    """Configuration for the offline cache worker.

    The cache name is the deployment version stamp: bumping it is the only way
    to invalidate every previously cached asset.
    """

    cache_name: str
    origin: str
    static_assets: tuple[str, ...] = DEFAULT_STATIC_ASSETS
    fallback_assets: tuple[str, ...] = DEFAULT_FALLBACK_ASSETS
    api_prefix: str = "/api/"
    app_shell_strategy: str = STRATEGY_NETWORK_FIRST
    max_workers: int = 4

    def __post_init__(self) -> None:
        if not self.cache_name:
            raise ConfigError("Cache name cannot be empty")
        if not _is_http_origin(self.origin):
            raise ConfigError(f"Origin must be an http:// or https:// URL (got '{self.origin}')")
        if urlsplit(self.origin).path not in ("", "/"):
            raise ConfigError(f"Origin must not contain a path (got '{self.origin}')")
        if not self.static_assets:
            raise ConfigError("Static asset list cannot be empty")
        if not self.fallback_assets:
            raise ConfigError("Fallback asset list cannot be empty")
        for asset in (*self.static_assets, *self.fallback_assets):
            if not asset.startswith("/"):
                raise ConfigError(f"Asset paths must be absolute (got '{asset}')")
        if not self.api_prefix.startswith("/"):
            raise ConfigError(f"API prefix must start with '/' (got '{self.api_prefix}')")
        if self.app_shell_strategy not in APP_SHELL_STRATEGIES:
            raise ConfigError(
                f"Unknown app shell strategy '{self.app_shell_strategy}' "
                f"(expected one of: {', '.join(APP_SHELL_STRATEGIES)})"
            )
        if self.max_workers < 1:
            raise ConfigError(f"Max workers must be at least 1 (got {self.max_workers})")

    @property
    def normalized_origin(self) -> str:
        return self.origin.rstrip("/")


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for requests sent to the live application."""

    upstream: str | None = None  # defaults to the worker origin
    timeout: float = 10.0  # seconds; bounds how long a hung network delays the cache fallback
    user_agent: str = "wardshell/0.1"

    def __post_init__(self) -> None:
        if self.upstream is not None and not _is_http_origin(self.upstream):
            raise ConfigError(f"Upstream must be an http:// or https:// URL (got '{self.upstream}')")
        if self.timeout <= 0:
            raise ConfigError(f"Network timeout must be positive (got {self.timeout})")
        if not self.user_agent:
            raise ConfigError("User-Agent cannot be empty")


def _get_default_storage_path() -> str:
    """Get default cache database path.

    Uses $XDG_DATA_HOME/wardshell/cache.db if XDG_DATA_HOME is set,
    otherwise falls back to ./data/cache.db for local development.
    """
    xdg_data_home = os.environ.get("XDG_DATA_HOME")
    if xdg_data_home:
        return str(Path(xdg_data_home) / "wardshell" / "cache.db")
    return "./data/cache.db"


DEFAULT_STORAGE_PATH = _get_default_storage_path()


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the cache store database."""

    path: str = DEFAULT_STORAGE_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Storage path cannot be empty")


@dataclass(frozen=True)
class NotificationConfig:
    """Defaults applied to push payloads when building notifications."""

    title: str = "Liahonaap"
    tag: str = "liahonaap-notification"
    icon: str = "/icons/icon-192x192.png"
    badge: str = "/icons/icon-192x192.png"
    vibrate: tuple[int, ...] = (200, 100, 200)
    actions: tuple[tuple[str, str], ...] = (("open", "Open"), ("close", "Close"))

    def __post_init__(self) -> None:
        if not self.tag:
            raise ConfigError("Default notification tag cannot be empty")
        if any(v < 0 for v in self.vibrate):
            raise ConfigError("Vibration pattern values must be non-negative")


@dataclass(frozen=True)
class ProxyConfig:
    """Configuration for the caching reverse proxy."""

    enabled: bool = True
    port: int = 8080
    control_token: str | None = None  # Required for /__worker/ endpoints when set

    def __post_init__(self) -> None:
        if not (1 <= self.port <= 65535):
            raise ConfigError(f"Proxy port must be between 1 and 65535 (got {self.port})")
        if self.control_token is not None and not self.control_token:
            raise ConfigError("Proxy control token cannot be empty")


@dataclass(frozen=True)
class Config:
    """Root configuration object."""

    worker: WorkerConfig
    network: NetworkConfig = field(default_factory=NetworkConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)

    @property
    def upstream(self) -> str:
        """Where network requests are actually sent."""
        return (self.network.upstream or self.worker.origin).rstrip("/")


def _parse_path_list(data: object, name: str) -> tuple[str, ...]:
    if not isinstance(data, list):
        raise ConfigError(f"'worker.{name}' must be a list")
    return tuple(str(item) for item in data)


def _parse_worker_config(data: dict | None) -> WorkerConfig:
    """Parse worker configuration section."""
    if data is None:
        raise ConfigError("Configuration must contain a 'worker' section")
    if not isinstance(data, dict):
        raise ConfigError("'worker' section must be a dictionary")

    cache_name = data.get("cache_name")
    origin = data.get("origin")
    if cache_name is None:
        raise ConfigError("'worker' section is missing 'cache_name' field")
    if origin is None:
        raise ConfigError("'worker' section is missing 'origin' field")

    static_assets = data.get("static_assets")
    fallback_assets = data.get("fallback_assets")

    return WorkerConfig(
        cache_name=str(cache_name),
        origin=str(origin),
        static_assets=(
            _parse_path_list(static_assets, "static_assets") if static_assets is not None else DEFAULT_STATIC_ASSETS
        ),
        fallback_assets=(
            _parse_path_list(fallback_assets, "fallback_assets")
            if fallback_assets is not None
            else DEFAULT_FALLBACK_ASSETS
        ),
        api_prefix=str(data.get("api_prefix", "/api/")),
        app_shell_strategy=str(data.get("app_shell_strategy", STRATEGY_NETWORK_FIRST)),
        max_workers=int(data.get("max_workers", 4)),
    )


def _parse_network_config(data: dict | None) -> NetworkConfig:
    """Parse network configuration section."""
    if data is None:
        return NetworkConfig()
    if not isinstance(data, dict):
        raise ConfigError("'network' section must be a dictionary")

    upstream = data.get("upstream")

    return NetworkConfig(
        upstream=str(upstream) if upstream is not None else None,
        timeout=float(data.get("timeout", 10.0)),
        user_agent=str(data.get("user_agent", "wardshell/0.1")),
    )


def _parse_storage_config(data: dict | None) -> StorageConfig:
    """Parse storage configuration section."""
    if data is None:
        return StorageConfig()
    if not isinstance(data, dict):
        raise ConfigError("'storage' section must be a dictionary")

    return StorageConfig(path=str(data.get("path", DEFAULT_STORAGE_PATH)))


def _parse_actions(data: object) -> tuple[tuple[str, str], ...]:
    if not isinstance(data, list):
        raise ConfigError("'notifications.actions' must be a list")

    actions = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict) or "action" not in entry:
            raise ConfigError(f"Notification action {index} must be a dictionary with an 'action' field")
        action = str(entry["action"])
        actions.append((action, str(entry.get("title", action))))
    return tuple(actions)


def _parse_notification_config(data: dict | None) -> NotificationConfig:
    """Parse notifications configuration section."""
    if data is None:
        return NotificationConfig()
    if not isinstance(data, dict):
        raise ConfigError("'notifications' section must be a dictionary")

    defaults = NotificationConfig()
    vibrate = data.get("vibrate")
    if vibrate is not None and not isinstance(vibrate, list):
        raise ConfigError("'notifications.vibrate' must be a list")
    actions = data.get("actions")

    return NotificationConfig(
        title=str(data.get("title", defaults.title)),
        tag=str(data.get("tag", defaults.tag)),
        icon=str(data.get("icon", defaults.icon)),
        badge=str(data.get("badge", defaults.badge)),
        vibrate=tuple(int(v) for v in vibrate) if vibrate is not None else defaults.vibrate,
        actions=_parse_actions(actions) if actions is not None else defaults.actions,
    )


def _parse_proxy_config(data: dict | None) -> ProxyConfig:
    """Parse proxy configuration section."""
    if data is None:
        return ProxyConfig()
    if not isinstance(data, dict):
        raise ConfigError("'proxy' section must be a dictionary")

    control_token = data.get("control_token")
    if control_token is not None:
        control_token = str(control_token)

    return ProxyConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 8080)),
        control_token=control_token,
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    The cache name is deliberately not overridable: it is fixed per deployment.

    Supported overrides:
    - WARDSHELL_PROXY_PORT: Override proxy.port
    - WARDSHELL_PROXY_ENABLED: Override proxy.enabled (true/false)
    - WARDSHELL_PROXY_CONTROL_TOKEN: Override proxy.control_token
    - WARDSHELL_STORAGE_PATH: Override storage.path
    - WARDSHELL_UPSTREAM: Override network.upstream
    - WARDSHELL_NETWORK_TIMEOUT: Override network.timeout
    """
    for section in ("proxy", "storage", "network"):
        if config_data.get(section) is None:
            config_data[section] = {}

    proxy_port = os.environ.get("WARDSHELL_PROXY_PORT")
    if proxy_port is not None:
        config_data["proxy"]["port"] = int(proxy_port)

    proxy_enabled = os.environ.get("WARDSHELL_PROXY_ENABLED")
    if proxy_enabled is not None:
        config_data["proxy"]["enabled"] = proxy_enabled.lower() in ("true", "1", "yes")

    control_token = os.environ.get("WARDSHELL_PROXY_CONTROL_TOKEN")
    if control_token is not None:
        config_data["proxy"]["control_token"] = control_token

    storage_path = os.environ.get("WARDSHELL_STORAGE_PATH")
    if storage_path is not None:
        config_data["storage"]["path"] = storage_path

    upstream = os.environ.get("WARDSHELL_UPSTREAM")
    if upstream is not None:
        config_data["network"]["upstream"] = upstream

    timeout = os.environ.get("WARDSHELL_NETWORK_TIMEOUT")
    if timeout is not None:
        config_data["network"]["timeout"] = float(timeout)

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    try:
        data = _apply_env_overrides(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid environment override: {e}")

    try:
        return Config(
            worker=_parse_worker_config(data.get("worker")),
            network=_parse_network_config(data.get("network")),
            storage=_parse_storage_config(data.get("storage")),
            notifications=_parse_notification_config(data.get("notifications")),
            proxy=_parse_proxy_config(data.get("proxy")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
