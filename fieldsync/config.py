"""Configuration loading for fieldsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class StoreConfig:
    """Configuration for the canonical record store."""

    db_path: str = "~/.fieldsync/observations.db"
    collection: str = "observations"


@dataclass
class CacheConfig:
    """Configuration for the offline worker's cache generations."""

    generation: str = "tramway-terrain-v1"
    origin: str = "http://localhost:8080"
    bootstrap_manifest: list[str] = field(
        default_factory=lambda: ["./", "./index.html", "./manifest.json"]
    )
    offline_document: str = "./index.html"
    api_markers: list[str] = field(default_factory=lambda: ["/api/"])
    skip_waiting: bool = True  # Activate as soon as install finishes


@dataclass
class SyncConfig:
    """Configuration for the client-side sync agent."""

    enabled: bool = True
    tag: str = "sync-observations"
    remote_url: str = ""  # Base URL of the reconciliation server
    batch_size: int = 100
    retry_max_attempts: int = 3
    timeout_seconds: float = 30.0
    sync_interval_minutes: int = 5
    outbox_db_path: str = "~/.fieldsync/outbox.db"


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with FIELDSYNC_ prefix."""
    return os.environ.get(f"FIELDSYNC_{key}", default)


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)

    # Store overrides
    if db_path := _get_env("STORE_DB_PATH"):
        config.store.db_path = db_path

    # Cache overrides
    if generation := _get_env("CACHE_GENERATION"):
        config.cache.generation = generation
    if origin := _get_env("CACHE_ORIGIN"):
        config.cache.origin = origin

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _parse_bool(sync_enabled)
    if remote_url := _get_env("SYNC_REMOTE_URL"):
        config.sync.remote_url = remote_url
    if batch_size := _get_env("SYNC_BATCH_SIZE"):
        config.sync.batch_size = int(batch_size)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                )

            # Parse store config
            if "store" in data:
                store_data = data["store"]
                config.store = StoreConfig(
                    db_path=store_data.get("db_path", config.store.db_path),
                    collection=store_data.get("collection", config.store.collection),
                )

            # Parse cache config
            if "cache" in data:
                cache_data = data["cache"]
                config.cache = CacheConfig(
                    generation=cache_data.get("generation", config.cache.generation),
                    origin=cache_data.get("origin", config.cache.origin),
                    bootstrap_manifest=cache_data.get(
                        "bootstrap_manifest", config.cache.bootstrap_manifest
                    ),
                    offline_document=cache_data.get(
                        "offline_document", config.cache.offline_document
                    ),
                    api_markers=cache_data.get("api_markers", config.cache.api_markers),
                    skip_waiting=cache_data.get("skip_waiting", config.cache.skip_waiting),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    tag=sync_data.get("tag", config.sync.tag),
                    remote_url=sync_data.get("remote_url", config.sync.remote_url),
                    batch_size=sync_data.get("batch_size", config.sync.batch_size),
                    retry_max_attempts=sync_data.get(
                        "retry_max_attempts", config.sync.retry_max_attempts
                    ),
                    timeout_seconds=sync_data.get(
                        "timeout_seconds", config.sync.timeout_seconds
                    ),
                    sync_interval_minutes=sync_data.get(
                        "sync_interval_minutes", config.sync.sync_interval_minutes
                    ),
                    outbox_db_path=sync_data.get(
                        "outbox_db_path", config.sync.outbox_db_path
                    ),
                )

    return _apply_env_overrides(config)
