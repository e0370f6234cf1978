"""Seekable read-only view over the bytes being uploaded."""

import io
import os
from pathlib import Path
from typing import BinaryIO, Union

from common.types import TransferWindow


class FileHandle:
    """Seekable source of upload bytes with a fixed total size."""

    def __init__(self, stream: BinaryIO, total_size: int, name: str = ""):
        """
        Initialize the file handle.

        Args:
            stream: Seekable binary stream positioned anywhere
            total_size: Number of bytes to upload from the start of the stream
            name: Display name for logs
        """
        if total_size <= 0:
            raise ValueError(f"total_size must be positive, got {total_size}")
        self._stream = stream
        self.total_size = total_size
        self.name = name

    @classmethod
    def open(cls, path: Union[str, Path]) -> 'FileHandle':
        """Open a local file for reading."""
        path = Path(path)
        size = os.path.getsize(path)
        return cls(open(path, 'rb'), size, name=path.name)

    @classmethod
    def from_bytes(cls, data: bytes, name: str = "") -> 'FileHandle':
        return cls(io.BytesIO(data), len(data), name=name)

    def read_window(self, window: TransferWindow) -> bytes:
        """
        Read exactly the bytes covered by a window.

        Args:
            window: Closed byte range within this file

        Returns:
            window.size bytes

        Raises:
            ValueError: If the window belongs to a file of another size
            IOError: If the stream ends before the window does
        """
        if window.total_size != self.total_size:
            raise ValueError(
                f"Window total {window.total_size} does not match file size {self.total_size}"
            )
        self._stream.seek(window.start_byte)
        data = self._stream.read(window.size)
        if len(data) != window.size:
            raise IOError(
                f"Short read at byte {window.start_byte}: expected {window.size}, got {len(data)}"
            )
        return data

    def close(self) -> None:
        """Close the underlying stream."""
        if self._stream:
            self._stream.close()

    def __enter__(self) -> 'FileHandle':
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager and ensure the stream is closed."""
        self.close()
