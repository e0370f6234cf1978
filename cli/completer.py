"""Custom completer for drivelift CLI with video file autocompletion."""

from pathlib import Path
from typing import Iterable

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from cli.constants import COMMANDS, CONFIG_KEYS, SUPPORTED_FILE_EXTENSIONS

UPLOAD_OPTIONS = ["--mobile", "--desktop", "--chunk-mb"]


class DriveliftCompleter(Completer):
    """
    Custom completer that provides:
    - Command name completion for the first token
    - Video file and option completion for the 'upload' command
    - Key completion for the 'set' command
    """

    def get_completions(
        self, document: Document, complete_event
    ) -> Iterable[Completion]:
        """
        Generate completions based on cursor position and context.

        For the first token, completes command names.
        For 'upload' arguments, completes video files relative to the current
        directory and the upload options.
        """
        text = document.text_before_cursor
        tokens = text.split()

        is_typing_new_token = text.endswith(" ") or not tokens

        if not tokens or (len(tokens) == 1 and not is_typing_new_token):
            yield from self._complete_commands(tokens[0] if tokens else "")
            return

        command = tokens[0].lower()
        current_word = "" if is_typing_new_token else tokens[-1]
        position = len(tokens) if is_typing_new_token else len(tokens) - 1

        if command == "set" and position == 1:
            yield from self._complete_words(CONFIG_KEYS, current_word)
        elif command == "upload":
            if current_word.startswith("-"):
                yield from self._complete_words(UPLOAD_OPTIONS, current_word)
            else:
                yield from self._complete_video_files(current_word)

    def _complete_commands(self, partial: str) -> Iterable[Completion]:
        """Complete command names matching the partial input."""
        yield from self._complete_words(COMMANDS, partial.lower())

    def _complete_words(self, words: list[str], partial: str) -> Iterable[Completion]:
        for word in words:
            if word.startswith(partial):
                yield Completion(word, start_position=-len(partial))

    def _complete_video_files(self, partial: str) -> Iterable[Completion]:
        """
        Complete paths to directories and supported video files.

        Directories are offered with a trailing slash so completion can
        descend into them.
        """
        partial_path = Path(partial) if partial else Path(".")
        if partial and not partial.endswith("/"):
            directory, prefix = partial_path.parent, partial_path.name
        else:
            directory, prefix = partial_path, ""

        base = Path.cwd() / directory
        if not base.is_dir():
            return

        try:
            entries = sorted(base.iterdir())
        except OSError:
            return

        for item in entries:
            if item.name.startswith(".") or not item.name.lower().startswith(prefix.lower()):
                continue
            candidate = item.name if str(directory) == "." and not partial.startswith("./") else f"{directory}/{item.name}"
            if item.is_dir():
                yield Completion(f"{candidate}/", start_position=-len(partial))
            elif item.name.lower().endswith(SUPPORTED_FILE_EXTENSIONS):
                yield Completion(candidate, start_position=-len(partial))
