"""Shared pytest fixtures for all tests."""

import pytest
from pathlib import Path

from cli.config import Config
from common.types import DeviceClass, FileMetadata
from uploader.file_handle import FileHandle
from uploader.policy import DeviceProfile, get_profile


class SleepRecorder:
    """Awaitable stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def temp_config_dir(tmp_path):
    """
    Create temporary config directory.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to temporary .drivelift directory
    """
    config_dir = tmp_path / '.drivelift'
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def temp_config(temp_config_dir):
    """
    Create temporary config instance.

    Args:
        temp_config_dir: Temporary config directory fixture

    Returns:
        Config instance with temp config file
    """
    return Config(temp_config_dir / 'config.json')


@pytest.fixture
def sleeper():
    """Sleep recorder injected wherever the engine waits."""
    return SleepRecorder()


@pytest.fixture
def desktop_profile() -> DeviceProfile:
    return get_profile(DeviceClass.DESKTOP)


@pytest.fixture
def mobile_profile() -> DeviceProfile:
    return get_profile(DeviceClass.MOBILE)


@pytest.fixture
def sample_video(tmp_path) -> Path:
    """
    Create a small MP4-named file for upload tests.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to a 1000-byte .mp4 file
    """
    file_path = tmp_path / 'clip.mp4'
    file_path.write_bytes(bytes(range(250)) * 4)
    return file_path


@pytest.fixture
def sample_handle() -> FileHandle:
    """1000-byte in-memory file handle."""
    return FileHandle.from_bytes(bytes(range(250)) * 4, name='clip.mp4')


@pytest.fixture
def sample_metadata() -> FileMetadata:
    return FileMetadata(name='clip.mp4', size=1000, mime_type='video/mp4')
