"""REPL with prompt_toolkit for user interaction."""

import os
import sys
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.history import InMemoryHistory

from cli.commands import handle_config, handle_set, handle_upload
from cli.completer import DriveliftCompleter
from cli.constants import (
    HELP_TEXT,
    LOGO,
    PROMPT_TEXT,
    STYLE,
    WELCOME_HELP,
    WELCOME_TITLE,
)
from cli.models import CommandRequest, ConfigCommand, SetCommand, UploadCommand
from cli.parser import ParseError, parse_command

EXIT_OK = 0
EXIT_COMMAND_FAILED = 1
EXIT_USAGE = 2


def clear_screen() -> None:
    """Clear the terminal screen (cross-platform)."""
    os.system("cls" if sys.platform == "win32" else "clear")


def show_welcome() -> None:
    """Display drivelift logo and the welcome banner."""
    print(LOGO)
    print(WELCOME_TITLE)
    print(WELCOME_HELP)


def dispatch_command(cmd_obj: CommandRequest) -> str:
    """Dispatch parsed command to appropriate handler."""
    if isinstance(cmd_obj, UploadCommand):
        return handle_upload(cmd_obj)
    elif isinstance(cmd_obj, ConfigCommand):
        return handle_config(cmd_obj)
    elif isinstance(cmd_obj, SetCommand):
        return handle_set(cmd_obj)
    else:
        return f"Unknown command type: {type(cmd_obj)}"


def execute(user_input: str) -> int:
    """
    Parse, dispatch and print one command line.

    Built-ins that only make sense at the prompt (exit, clear) are handled
    by the REPL itself and never reach this function.

    Args:
        user_input: Command line, e.g. "upload clip.mp4 --mobile"

    Returns:
        EXIT_OK, EXIT_COMMAND_FAILED for handler errors, EXIT_USAGE for parse errors
    """
    if user_input.strip() == "help":
        print(HELP_TEXT)
        return EXIT_OK

    try:
        cmd_obj = parse_command(user_input)
    except ParseError as e:
        print(f"Error: {e}")
        return EXIT_USAGE

    result = dispatch_command(cmd_obj)
    print(result)
    return EXIT_COMMAND_FAILED if result.startswith("Error:") else EXIT_OK


def run_once(user_input: str) -> int:
    """Run a single command without the interactive prompt; returns the exit code."""
    return execute(user_input)


def repl_loop(session: Optional[PromptSession] = None) -> None:
    """Start interactive REPL with prompt_toolkit."""
    if session is None:
        session = PromptSession(
            completer=DriveliftCompleter(), history=InMemoryHistory(), style=STYLE
        )

    clear_screen()
    show_welcome()

    while True:
        try:
            user_input = session.prompt([("class:prompt", PROMPT_TEXT)]).strip()
        except KeyboardInterrupt:
            continue
        except EOFError:
            print("\nGoodbye!")
            break

        if not user_input:
            continue
        if user_input == "exit":
            print("Goodbye!")
            break
        if user_input == "clear":
            clear_screen()
            show_welcome()
            continue

        execute(user_input)
