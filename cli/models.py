"""Command request data types for CLI."""

from dataclasses import dataclass
from typing import Literal, Optional

from common.types import DeviceClass


@dataclass(frozen=True)
class UploadCommand:
    """Upload one video file."""

    file_path: str
    device_class: Optional[DeviceClass] = None
    chunk_size_mb: Optional[int] = None
    command: Literal["upload"] = "upload"


@dataclass(frozen=True)
class ConfigCommand:
    """Show current configuration."""

    command: Literal["config"] = "config"


@dataclass(frozen=True)
class SetCommand:
    """Change one configuration value."""

    key: str
    value: str
    command: Literal["set"] = "set"


CommandRequest = UploadCommand | ConfigCommand | SetCommand
