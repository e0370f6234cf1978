"""Command handler functions for CLI operations."""

import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import httpx

from cli.config import Config
from cli.constants import RESET, YELLOW
from cli.models import ConfigCommand, SetCommand, UploadCommand
from cli.utils import ProgressPrinter, format_file_size
from common.constants import MIB
from common.logging_config import get_logger
from uploader.credentials import StaticTokenProvider
from uploader.exceptions import UploadCancelledError, UploadError
from uploader.orchestrator import UploadOrchestrator, UploadResult, describe_failure
from uploader.policy import DeviceProfile, detect_device_class, get_profile
from uploader.progress import ProgressSnapshot
from uploader.sessions import (
    DriveSessionInitiator,
    EndpointClient,
    EndpointFinalizeNotifier,
    EndpointSessionInitiator,
    LoggingFinalizeNotifier,
)

logger = get_logger(__name__)


_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get or create global Config instance.

    Returns:
        Config instance
    """
    global _config
    if _config is None:
        logger.debug("Loading CLI configuration")
        _config = Config(Path.home() / '.drivelift' / 'config.json')
    return _config


def build_orchestrator(
    config: Config,
    client: httpx.AsyncClient,
    progress_sink=None,
) -> UploadOrchestrator:
    """
    Wire the collaborators selected by the configured mode.

    Args:
        config: CLI configuration
        client: HTTP client shared by every request of the upload
        progress_sink: Receives progress snapshots

    Returns:
        UploadOrchestrator ready to upload

    Raises:
        ValueError: If the configuration is incomplete for the mode
    """
    stall_seconds = config.data.get('watchdog_stall_seconds', 60)

    if config.get_mode() == 'drive':
        token = config.get_access_token()
        if not token:
            raise ValueError("Drive mode requires an access token. Use: set access_token <token>")
        token_provider = StaticTokenProvider(token)
        initiator = DriveSessionInitiator(
            client,
            token_provider,
            folder_id=config.data.get('drive_folder_id') or None,
            timeout=config.get_timeout(),
        )
        return UploadOrchestrator(
            initiator,
            LoggingFinalizeNotifier(),
            client=client,
            token_provider=token_provider,
            progress_sink=progress_sink,
            watchdog_stall_seconds=stall_seconds,
            on_stall=_report_stall,
        )

    endpoint_url = config.get_endpoint_url()
    if not endpoint_url:
        raise ValueError("Endpoint mode requires an endpoint URL. Use: set endpoint_url <url>")
    retry_config = config.get_retry_config()
    endpoint = EndpointClient(
        client,
        endpoint_url,
        max_retries=retry_config['max_retries'],
        backoff_multiplier=retry_config['retry_backoff_multiplier'],
        timeout=config.get_timeout(),
    )
    return UploadOrchestrator(
        EndpointSessionInitiator(endpoint, action=config.data.get('init_action')),
        EndpointFinalizeNotifier(endpoint, action=config.data.get('finalize_action')),
        client=client,
        progress_sink=progress_sink,
        watchdog_stall_seconds=stall_seconds,
        on_stall=_report_stall,
    )


def resolve_profile(cmd: UploadCommand, config: Config) -> DeviceProfile:
    """
    Pick the device profile for an upload.

    Command flags win over configuration; with neither, the environment is
    classified by detect_device_class().

    Args:
        cmd: UploadCommand with optional overrides
        config: CLI configuration

    Returns:
        DeviceProfile for the upload
    """
    device_class = cmd.device_class or config.get_device_class() or detect_device_class()
    chunk_size = cmd.chunk_size_mb * MIB if cmd.chunk_size_mb else config.get_chunk_size()
    return get_profile(device_class, chunk_size)


def handle_upload(
    cmd: UploadCommand,
    config: Optional[Config] = None,
    orchestrator: Optional[UploadOrchestrator] = None,
) -> str:
    """
    Handle 'upload' command.

    Args:
        cmd: UploadCommand with file path and overrides
        config: Optional Config for dependency injection (testing)
        orchestrator: Optional UploadOrchestrator for dependency injection (testing)

    Returns:
        Success or error message
    """
    if config is None:
        config = get_config()

    path = Path(cmd.file_path).expanduser()
    if not path.is_file():
        return f"Error: File not found: {cmd.file_path}"

    profile = resolve_profile(cmd, config)
    logger.info(
        f"Executing upload command: file={path} size={path.stat().st_size} "
        f"device={profile.device_class.value} chunk={profile.chunk_size}"
    )
    printer = ProgressPrinter(path.name)

    try:
        result = asyncio.run(_run_upload(path, profile, config, printer, orchestrator))
    except KeyboardInterrupt:
        return "Upload cancelled."
    except UploadCancelledError as e:
        return describe_failure(e)
    except UploadError as e:
        return f"Error: {describe_failure(e)}"
    except ValueError as e:
        return f"Error: {e}"
    finally:
        printer.finish()

    return _format_result(result)


async def _run_upload(
    path: Path,
    profile: DeviceProfile,
    config: Config,
    printer: ProgressPrinter,
    orchestrator: Optional[UploadOrchestrator],
) -> UploadResult:
    """Run one upload with Ctrl-C wired to cancellation."""
    if orchestrator is not None:
        return await _with_cancel_signal(orchestrator, orchestrator.upload_path(path, profile))

    async with httpx.AsyncClient(timeout=config.get_timeout()) as client:
        orchestrator = build_orchestrator(config, client, progress_sink=printer)
        return await _with_cancel_signal(orchestrator, orchestrator.upload_path(path, profile))


async def _with_cancel_signal(orchestrator: UploadOrchestrator, upload) -> UploadResult:
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
        installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        logger.debug("SIGINT handler unavailable, Ctrl-C will interrupt the event loop")
    try:
        return await upload
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _report_stall(snapshot: ProgressSnapshot, idle_seconds: float) -> None:
    print(f"\n{YELLOW}No progress for {idle_seconds:.0f}s ({snapshot.status}), still waiting...{RESET}")


def _format_result(result: UploadResult) -> str:
    lines = [
        result.message,
        f"  Uploaded: {format_file_size(result.confirmed_bytes)}",
        f"  Session:  {result.session_id}",
    ]
    if result.remote_file_id:
        lines.append(f"  File ID:  {result.remote_file_id}")
    if result.trusted:
        lines.append("  Note: the final chunk was accepted without server confirmation")
    return "\n".join(lines)


def handle_config(cmd: ConfigCommand, config: Optional[Config] = None) -> str:
    """
    Handle 'config' command.

    Args:
        cmd: ConfigCommand
        config: Optional Config for dependency injection (testing)

    Returns:
        Current configuration as formatted JSON
    """
    if config is None:
        config = get_config()
    return f"Config file: {config.config_path}\n{json.dumps(config.masked(), indent=2)}"


def handle_set(cmd: SetCommand, config: Optional[Config] = None) -> str:
    """
    Handle 'set' command.

    Args:
        cmd: SetCommand with key and value
        config: Optional Config for dependency injection (testing)

    Returns:
        Success or error message
    """
    if config is None:
        config = get_config()
    try:
        value = config.set_value(cmd.key, cmd.value)
    except KeyError:
        return f"Error: Unknown config key: {cmd.key}"
    except ValueError as e:
        return f"Error: Invalid value for {cmd.key}: {e}"

    logger.info(f"Config updated: {cmd.key}")
    shown = '***MASKED***' if cmd.key == 'access_token' else value
    return f"Set {cmd.key} = {shown}"
