"""Configuration management for drivelift CLI."""

import json
import os
import shutil
from pathlib import Path
from typing import Any, Optional

from common.constants import DEFAULT_FINALIZE_ACTION, DEFAULT_INIT_ACTION, MIB, WATCHDOG_STALL_SECONDS
from common.logging_config import get_logger
from common.types import DeviceClass

logger = get_logger(__name__)

MODES = ("endpoint", "drive")
DEVICE_CLASS_CHOICES = ("auto", "desktop", "mobile")
SECRET_KEYS = ("access_token",)


class Config:
    """Manages CLI configuration stored in JSON file."""

    DEFAULT_CONFIG = {
        "mode": os.environ.get("DRIVELIFT_MODE", "endpoint"),
        "endpoint_url": os.environ.get("DRIVELIFT_ENDPOINT_URL", "http://localhost:8080/wp-admin/admin-ajax.php"),
        "init_action": DEFAULT_INIT_ACTION,
        "finalize_action": DEFAULT_FINALIZE_ACTION,
        "drive_folder_id": "",
        "access_token": "",
        "device_class": os.environ.get("DRIVELIFT_DEVICE_CLASS", "auto"),
        "chunk_size_mb": 70,
        "timeout": 30,
        "max_retries": 3,
        "retry_backoff_multiplier": 2,
        "watchdog_stall_seconds": WATCHDOG_STALL_SECONDS,
    }

    def __init__(self, config_path: Path):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to config JSON file (typically ~/.drivelift/config.json)
        """
        self.config_path = config_path
        self.data = self._load()

    def _load(self) -> dict:
        """
        Load configuration from file, creating defaults if necessary.

        Returns:
            Configuration dictionary
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            import tempfile
            self.config_path = Path(tempfile.gettempdir()) / '.drivelift' / 'config.json'
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

        if self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    data = json.load(f)
                config = self.DEFAULT_CONFIG.copy()
                config.update(data)
                return config
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(f"Config file {self.config_path} is unreadable ({e}), using defaults")
                backup_path = self.config_path.with_suffix('.json.bak')
                try:
                    shutil.copy(self.config_path, backup_path)
                except OSError:
                    logger.warning(f"Could not back up config to {backup_path}")
                return self.DEFAULT_CONFIG.copy()
        else:
            config = self.DEFAULT_CONFIG.copy()
            try:
                with open(self.config_path, 'w') as f:
                    json.dump(config, f, indent=2)
            except IOError:
                logger.warning(f"Could not write default config to {self.config_path}")
            return config

    def save(self) -> None:
        """Save current configuration to file."""
        try:
            with open(self.config_path, 'w') as f:
                json.dump(self.data, f, indent=2)
        except IOError as e:
            logger.error(f"Failed to save config to {self.config_path}: {e}")

    def set_value(self, key: str, raw_value: str) -> Any:
        """
        Validate, convert and persist one setting.

        Args:
            key: Configuration key
            raw_value: Value as typed by the user

        Returns:
            The stored value, converted to the key's type

        Raises:
            KeyError: If the key is unknown
            ValueError: If the value is invalid for the key
        """
        if key not in self.DEFAULT_CONFIG:
            raise KeyError(key)

        default = self.DEFAULT_CONFIG[key]
        if isinstance(default, bool):
            value: Any = raw_value.lower() in ('1', 'true', 'yes', 'on')
        elif isinstance(default, int):
            value = int(raw_value)
        elif isinstance(default, float):
            value = float(raw_value)
        else:
            value = raw_value

        if key == 'mode' and value not in MODES:
            raise ValueError(f"mode must be one of: {', '.join(MODES)}")
        if key == 'device_class' and value not in DEVICE_CLASS_CHOICES:
            raise ValueError(f"device_class must be one of: {', '.join(DEVICE_CLASS_CHOICES)}")
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value < 0:
            raise ValueError(f"{key} must not be negative")
        if key == 'chunk_size_mb' and value <= 0:
            raise ValueError("chunk_size_mb must be positive")

        self.data[key] = value
        self.save()
        return value

    def masked(self) -> dict:
        """
        Get the configuration with secrets hidden, for display.

        Returns:
            Copy of the configuration dictionary
        """
        shown = dict(self.data)
        for key in SECRET_KEYS:
            if shown.get(key):
                shown[key] = '***MASKED***'
        return shown

    def get_mode(self) -> str:
        return self.data.get('mode', 'endpoint')

    def get_endpoint_url(self) -> str:
        return self.data.get('endpoint_url', '')

    def get_access_token(self) -> Optional[str]:
        """
        Get stored access token.

        Returns:
            Token string or None if not set
        """
        return self.data.get('access_token') or None

    def get_device_class(self) -> Optional[DeviceClass]:
        """
        Get the forced device class.

        Returns:
            DeviceClass, or None when set to auto-detect
        """
        value = self.data.get('device_class', 'auto')
        if value == 'auto':
            return None
        return DeviceClass(value)

    def get_chunk_size(self) -> int:
        """
        Get configured chunk size.

        Returns:
            Chunk size in bytes
        """
        return int(self.data.get('chunk_size_mb', 70) * MIB)

    def get_timeout(self) -> int:
        """
        Get request timeout in seconds.

        Returns:
            Timeout value in seconds
        """
        return self.data.get('timeout', 30)

    def get_retry_config(self) -> dict:
        """
        Get retry configuration.

        Returns:
            Dictionary with 'max_retries' and 'retry_backoff_multiplier'
        """
        return {
            'max_retries': self.data.get('max_retries', 3),
            'retry_backoff_multiplier': self.data.get('retry_backoff_multiplier', 2),
        }
