"""Configuration management for storage pool operations."""

import os
import json
import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass, asdict, fields


logger = logging.getLogger(__name__)


@dataclass
class PoolSettings:
    """Storage pool settings."""
    mount_base: str = "/mnt/disks"
    pool_mount_point: str = "/mnt/storage"
    parity_mount_base: str = "/mnt"
    volume_mount_base: str = "/mnt"
    snapraid_config_path: str = "/etc/snapraid.conf"
    fstab_path: str = "/etc/fstab"
    samba_group: str = "sambashare"
    cache_min_free_space: str = "200G"
    staging_dir: str = "/tmp/storage-pool"
    test_mount_base: str = "/mnt/.pool-test"
    state_file: str = "/var/lib/storage-pool/state.json"
    log_level: str = "INFO"
    max_command_timeout: int = 300
    operation_wait_timeout: int = 600
    operation_stale_seconds: int = 3600
    sync_stale_seconds: int = 6 * 60 * 60
    use_sudo: bool = True


class ConfigManager:
    """Loads settings from defaults, an optional JSON file and the environment."""

    # Environment variable mappings
    ENV_MAPPINGS = {
        'STORAGE_MOUNT_BASE': 'mount_base',
        'POOL_MOUNT_POINT': 'pool_mount_point',
        'PARITY_MOUNT_BASE': 'parity_mount_base',
        'VOLUME_MOUNT_BASE': 'volume_mount_base',
        'SNAPRAID_CONFIG_PATH': 'snapraid_config_path',
        'FSTAB_PATH': 'fstab_path',
        'SAMBA_GROUP': 'samba_group',
        'CACHE_MIN_FREE_SPACE': 'cache_min_free_space',
        'STAGING_DIR': 'staging_dir',
        'TEST_MOUNT_BASE': 'test_mount_base',
        'STATE_FILE': 'state_file',
        'LOG_LEVEL': 'log_level',
        'MAX_COMMAND_TIMEOUT': 'max_command_timeout',
        'OPERATION_WAIT_TIMEOUT': 'operation_wait_timeout',
        'OPERATION_STALE_SECONDS': 'operation_stale_seconds',
        'SYNC_STALE_SECONDS': 'sync_stale_seconds',
        'USE_SUDO': 'use_sudo',
    }

    INTEGER_KEYS = {
        'MAX_COMMAND_TIMEOUT', 'OPERATION_WAIT_TIMEOUT',
        'OPERATION_STALE_SECONDS', 'SYNC_STALE_SECONDS',
    }

    PATH_FIELDS = (
        'mount_base', 'pool_mount_point', 'parity_mount_base', 'volume_mount_base',
        'snapraid_config_path', 'fstab_path', 'staging_dir',
        'test_mount_base', 'state_file',
    )

    def __init__(self, config_file_path: Optional[str] = None):
        """
        Initialize the ConfigManager.

        Args:
            config_file_path: Optional path to a JSON settings file
        """
        self.config_file_path = config_file_path
        self._config: Optional[PoolSettings] = None

    def load_config(self) -> PoolSettings:
        """
        Load settings from the config file and environment variables.

        Returns:
            PoolSettings object with loaded configuration

        Raises:
            ValueError: If the resulting settings are invalid
        """
        if self._config:
            return self._config

        config_dict = asdict(PoolSettings())

        if self.config_file_path and os.path.exists(self.config_file_path):
            config_dict.update(self._load_config_file(self.config_file_path))

        config_dict.update(self._load_from_environment())

        self._config = PoolSettings(**config_dict)
        self._validate_config(self._config)

        logger.info("Configuration loaded successfully")
        return self._config

    def reload_config(self) -> PoolSettings:
        """Force reload configuration from sources."""
        self._config = None
        return self.load_config()

    def _load_config_file(self, file_path: str) -> Dict[str, Any]:
        known = {f.name for f in fields(PoolSettings)}
        try:
            with open(file_path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config file {file_path}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.error(f"Config file {file_path} does not contain an object")
            return {}

        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown settings in {file_path}: {sorted(unknown)}")
        return {k: v for k, v in data.items() if k in known}

    def _load_from_environment(self) -> Dict[str, Any]:
        config = {}
        for env_key, config_key in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_key)
            if env_value is not None:
                config[config_key] = self._parse_env_value(env_key, env_value)
        return config

    def _parse_env_value(self, env_key: str, value: str) -> Any:
        """
        Parse environment variable value to appropriate type.

        Args:
            env_key: Environment variable key
            value: String value from environment

        Returns:
            Parsed value in appropriate type
        """
        if env_key == 'USE_SUDO':
            return value.lower() in {'true', '1', 'yes', 'on'}

        if env_key in self.INTEGER_KEYS:
            try:
                return int(value)
            except ValueError:
                logger.warning(f"Invalid integer for {env_key}, using default")
                return getattr(PoolSettings(), self.ENV_MAPPINGS[env_key])

        return value

    def _validate_config(self, config: PoolSettings) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
        """
        for name in ('max_command_timeout', 'operation_wait_timeout',
                     'operation_stale_seconds', 'sync_stale_seconds'):
            if getattr(config, name) <= 0:
                raise ValueError(f"{name} must be positive")

        valid_log_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if config.log_level.upper() not in valid_log_levels:
            raise ValueError(f"Invalid log level: {config.log_level}")

        for name in self.PATH_FIELDS:
            value = getattr(config, name)
            if not isinstance(value, str) or not os.path.isabs(value):
                raise ValueError(f"{name} must be an absolute path: {value!r}")

        if config.pool_mount_point.rstrip('/').startswith(config.mount_base.rstrip('/') + '/'):
            raise ValueError("pool_mount_point must not be inside mount_base")
