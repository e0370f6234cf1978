"""CLI constants and configuration."""

from prompt_toolkit.styles import Style

COMMANDS = ["upload", "config", "set", "clear", "exit", "help"]

CONFIG_KEYS = [
    "mode",
    "endpoint_url",
    "init_action",
    "finalize_action",
    "drive_folder_id",
    "access_token",
    "device_class",
    "chunk_size_mb",
    "timeout",
    "max_retries",
    "retry_backoff_multiplier",
    "watchdog_stall_seconds",
]

STYLE = Style.from_dict(
    {
        "prompt": "#3DA35D bold",
        "command": "#0088ff bold",
    }
)

DRIVE_GREEN = "\033[38;2;61;163;93m"
GREEN = "\033[32m"
RED = "\033[31m"
YELLOW = "\033[33m"
RESET = "\033[0m"

LOGO = f"""{DRIVE_GREEN}
 ██████╗ ██████╗ ██╗██╗   ██╗███████╗██╗     ██╗███████╗████████╗
 ██╔══██╗██╔══██╗██║██║   ██║██╔════╝██║     ██║██╔════╝╚══██╔══╝
 ██║  ██║██████╔╝██║██║   ██║█████╗  ██║     ██║█████╗     ██║
 ██║  ██║██╔══██╗██║╚██╗ ██╔╝██╔══╝  ██║     ██║██╔══╝     ██║
 ██████╔╝██║  ██║██║ ╚████╔╝ ███████╗███████╗██║██║        ██║
 ╚═════╝ ╚═╝  ╚═╝╚═╝  ╚═══╝  ╚══════╝╚══════╝╚═╝╚═╝        ╚═╝
{RESET}"""

WELCOME_TITLE = "drivelift - resumable video uploads"
WELCOME_HELP = "Type 'help' for commands or 'exit' to quit.\n"

PROMPT_TEXT = "drivelift> "

HELP_TEXT = """Available commands:
  upload <file> [--mobile|--desktop] [--chunk-mb N]
                                      Upload an MP4 or MOV file in resumable chunks
  config                              Show current configuration (secrets masked)
  set <key> <value>                   Change a configuration value
  clear                               Clear screen and redisplay welcome message
  help                                Show this help
  exit                                Exit REPL

Press Ctrl-C during an upload to cancel it.
Examples:
  upload footage/match.mp4
  upload clip.mov --mobile
  upload footage/match.mp4 --chunk-mb 32
  set mode drive
  set access_token ya29.example
  set drive_folder_id 1AbCdEf"""

SUPPORTED_FILE_EXTENSIONS = (".mp4", ".m4v", ".mov", ".qt")
