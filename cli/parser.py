"""Command parser for CLI input."""

import shlex
from typing import Optional

from cli.constants import CONFIG_KEYS
from cli.models import CommandRequest, ConfigCommand, SetCommand, UploadCommand
from common.types import DeviceClass


class ParseError(Exception):
    """Raised when command parsing fails."""

    pass


def parse_command(input_line: str) -> CommandRequest:
    """Parse user input into a CommandRequest object.

    Args:
        input_line: Raw user input from REPL

    Returns:
        CommandRequest object (one of Upload/Config/Set)

    Raises:
        ParseError: If command syntax is invalid
    """
    if not input_line.strip():
        raise ParseError("Empty command")

    try:
        tokens = shlex.split(input_line)
    except ValueError as e:
        raise ParseError(f"Invalid syntax: {e}")

    if not tokens:
        raise ParseError("Empty command")

    command_name = tokens[0]

    if command_name == "upload":
        return _parse_upload(tokens[1:])
    elif command_name == "config":
        return _parse_config(tokens[1:])
    elif command_name == "set":
        return _parse_set(tokens[1:])
    else:
        raise ParseError(f"Unknown command: {command_name}")


def _parse_upload(args: list[str]) -> UploadCommand:
    """Parse 'upload <file> [--mobile|--desktop] [--chunk-mb N]' command."""
    file_path: Optional[str] = None
    device_class: Optional[DeviceClass] = None
    chunk_size_mb: Optional[int] = None

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("--mobile", "--desktop"):
            selected = DeviceClass.MOBILE if arg == "--mobile" else DeviceClass.DESKTOP
            if device_class is not None and device_class != selected:
                raise ParseError("upload accepts only one of --mobile and --desktop")
            device_class = selected
        elif arg == "--chunk-mb":
            if i + 1 >= len(args):
                raise ParseError("--chunk-mb requires a value")
            try:
                chunk_size_mb = int(args[i + 1])
            except ValueError:
                raise ParseError(f"--chunk-mb must be an integer, got '{args[i + 1]}'")
            if chunk_size_mb <= 0:
                raise ParseError("--chunk-mb must be positive")
            i += 1
        elif arg.startswith("--"):
            raise ParseError(f"Unknown option for upload: {arg}")
        elif file_path is None:
            file_path = arg
        else:
            raise ParseError("upload accepts exactly one file")
        i += 1

    if file_path is None:
        raise ParseError("upload requires a file: upload <file> [--mobile|--desktop] [--chunk-mb N]")

    return UploadCommand(file_path=file_path, device_class=device_class, chunk_size_mb=chunk_size_mb)


def _parse_config(args: list[str]) -> ConfigCommand:
    """Parse 'config' command."""
    if args:
        raise ParseError("config takes no arguments")
    return ConfigCommand()


def _parse_set(args: list[str]) -> SetCommand:
    """Parse 'set <key> <value>' command."""
    if len(args) != 2:
        raise ParseError("set requires exactly 2 arguments: <key> <value>")

    key, value = args
    if key not in CONFIG_KEYS:
        raise ParseError(f"Unknown config key: {key}. Valid keys: {', '.join(CONFIG_KEYS)}")
    return SetCommand(key=key, value=value)
