"""
Configuration module for the calendar cache sync service.

Loads configuration from environment variables.
Backends read their own settings; BACKEND_CONFIGS can override them.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _split_list(value: str) -> List[str]:
    return [p.strip() for p in value.split(",") if p.strip()]


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "calendar_cache"
    user: str = "calsync"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 2
    max_pool_size: int = 10

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "calendar_cache"),
            user=os.getenv("DB_USER", "calsync"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "2")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass
class SyncConfig:
    """Sync loop configuration."""

    sync_interval: int = 3600  # seconds
    max_concurrent_backends: int = 1
    purge_orphaned_backends: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            sync_interval=int(os.getenv("SYNC_INTERVAL", "3600")),
            max_concurrent_backends=int(os.getenv("MAX_CONCURRENT_BACKENDS", "1")),
            purge_orphaned_backends=(
                os.getenv("PURGE_ORPHANED_BACKENDS", "false").lower() == "true"
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class BackendConfig:
    """Backend selection and per-backend configuration."""

    # Empty = use every registered backend of that kind
    enabled_resource_backends: List[str] = field(default_factory=list)
    enabled_room_backends: List[str] = field(default_factory=list)

    # Backend-specific overrides keyed by backend identifier
    backend_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend_configs = {}
        if os.getenv("BACKEND_CONFIGS"):
            try:
                backend_configs = json.loads(os.getenv("BACKEND_CONFIGS"))
            except json.JSONDecodeError:
                logger.warning("BACKEND_CONFIGS is not valid JSON, ignoring it")
            if not isinstance(backend_configs, dict):
                logger.warning("BACKEND_CONFIGS is not a JSON object, ignoring it")
                backend_configs = {}
            for backend_id, overrides in list(backend_configs.items()):
                if not isinstance(overrides, dict):
                    logger.warning(
                        f"BACKEND_CONFIGS entry '{backend_id}' is not a JSON object, "
                        "ignoring it"
                    )
                    del backend_configs[backend_id]

        return cls(
            enabled_resource_backends=_split_list(
                os.getenv("ENABLED_RESOURCE_BACKENDS", "")
            ),
            enabled_room_backends=_split_list(os.getenv("ENABLED_ROOM_BACKENDS", "")),
            backend_configs=backend_configs,
        )

    def get_backend_config(self, backend_id: str) -> Dict[str, Any]:
        """Get configuration overrides for a specific backend."""
        return self.backend_configs.get(backend_id, {})


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    sync: SyncConfig
    backends: BackendConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            sync=SyncConfig.from_env(),
            backends=BackendConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            sync=SyncConfig(),
            backends=BackendConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
