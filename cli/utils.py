"""Utility functions for CLI operations."""

import sys
from typing import Optional, TextIO

from cli.constants import GREEN, RESET, YELLOW
from common.types import SequencerState
from uploader.progress import ProgressSnapshot, progress_percent


class ProgressPrinter:
    """Progress sink that redraws a single status line on stdout."""

    def __init__(self, filename: str, stream: Optional[TextIO] = None):
        """
        Initialize the progress printer.

        Args:
            filename: Display name for the file
            stream: Output stream, stdout by default
        """
        self.filename = filename
        self.stream = stream or sys.stdout
        self._last_line = ""
        self._finished = False

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        """Render one snapshot."""
        if self._finished:
            return

        sent = snapshot.sent_bytes
        percent = progress_percent(sent, snapshot.total_size)
        color = YELLOW if snapshot.state in (SequencerState.VERIFYING, SequencerState.RETRYING) else GREEN
        line = (
            f"\rUploading {self.filename}: {format_file_size(sent)} / {format_file_size(snapshot.total_size)} "
            f"({color}{percent}%{RESET}) {snapshot.status}"
        )
        if line == self._last_line:
            return

        # Pad to wipe leftovers of a longer previous line
        padding = max(len(self._last_line) - len(line), 0)
        self.stream.write(line + " " * padding)
        self.stream.flush()
        self._last_line = line

        if snapshot.state in (SequencerState.COMPLETE, SequencerState.FAILED, SequencerState.CANCELLED):
            self.finish()

    def finish(self) -> None:
        """Finalize progress display with newline."""
        if self._finished:
            return
        self._finished = True
        if self._last_line:
            self.stream.write('\n')
            self.stream.flush()


def format_file_size(size_bytes: int) -> str:
    """
    Format file size in bytes to human-readable format with appropriate unit.

    Uses binary units (1024-based) and automatically selects the most
    appropriate unit (B, KiB, MiB, GiB, TiB).

    Args:
        size_bytes: File size in bytes

    Returns:
        Formatted string with size and unit (e.g., "1.50 MiB", "512 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"

    units = ['KiB', 'MiB', 'GiB', 'TiB']
    size = size_bytes / 1024.0

    for unit in units:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0

    return f"{size:.2f} PiB"
