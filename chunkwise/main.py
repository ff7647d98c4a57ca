"""
Main entry point for chunkwise.

This module provides the command-line interface for uploading, resuming and
inspecting chunked uploads.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

import typer

from .application.startup import ApplicationStartup
from .core.domain.events import Event, UploadEvents
from .core.domain.upload import UploadSnapshot, UploadStatus, total_chunks
from .infrastructure.config.loader import ConfigLoader
from .infrastructure.config.models import ApplicationConfig
from .infrastructure.logging.setup import setup_logging
from .infrastructure.sources import FileSource

cli = typer.Typer(
    name="chunkwise",
    help="Resumable chunked file uploads over HTTP"
)

logger = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_CANCELED = 130


def _load_config(
    config_file: Optional[str],
    base_url: Optional[str] = None,
    chunk_size: Optional[int] = None,
    log_level: Optional[str] = None,
    debug: bool = False
) -> ApplicationConfig:
    try:
        config = ConfigLoader().load_config(config_file)
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    if base_url:
        config.backend.base_url = base_url
    if chunk_size:
        config.upload.chunk_size = chunk_size
    if log_level:
        config.logging.level = log_level.upper()
    if debug:
        config.debug = True
        config.logging.level = "DEBUG"

    setup_logging(config.logging)
    return config


def _echo_event(event: Event) -> None:
    data = event.data or {}
    if event.name == UploadEvents.PROGRESS:
        typer.echo(
            f"{data['progress'] * 100:6.2f}%  "
            f"{data['uploaded_bytes']}/{data['total_bytes']} bytes")
    elif event.name == UploadEvents.CHUNK_RETRY:
        typer.echo(
            f"chunk {data['chunk_index']} failed ({data['error']}), "
            f"retry {data['retry']} in {data['delay_ms']}ms", err=True)
    elif event.name == UploadEvents.RESUME_MISMATCH:
        typer.echo(
            f"Stored record for {data['session_id']} does not match the upload "
            f"({data['recorded_size']} bytes in chunks of {data['recorded_chunk_size']}, "
            f"now {data['actual_size']} bytes in chunks of {data['chunk_size']}); "
            f"sending every chunk", err=True)


async def run_upload(
    config: ApplicationConfig,
    file_path: str,
    resume_session_id: Optional[str] = None,
    use_last: bool = False
) -> UploadSnapshot:
    """
    Upload ``file_path`` with the given configuration.

    Ctrl-C cancels the transfer cooperatively; the durable record is kept so
    the upload can be resumed.
    """
    source = FileSource(file_path)

    async with ApplicationStartup(config) as app:
        if use_last:
            resume_session_id = await app.record_store.last_session_id()
            if resume_session_id is None:
                raise ValueError("No previous upload session recorded")

        chunk_size = config.upload.chunk_size
        if resume_session_id:
            # A session keeps the chunk size it was created with.
            record = await app.record_store.load(resume_session_id)
            if record is not None and record.chunk_size and record.chunk_size != chunk_size:
                logger.info(
                    f"Session {resume_session_id} was created with chunk size "
                    f"{record.chunk_size}, using it instead of {chunk_size}")
                chunk_size = record.chunk_size

        await app.event_bus.subscribe("upload.*", _echo_event)
        session = app.create_session(chunk_size=chunk_size)
        logger.info(
            f"Uploading {source.name} ({source.size} bytes) to {config.backend.base_url}"
            + (f", resuming session {resume_session_id}" if resume_session_id else ""))

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, session.cancel)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            handler_installed = False

        try:
            return await session.start(source, resume_session_id)
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)


def _report(snapshot: UploadSnapshot, file_path: str) -> None:
    """Print the outcome and exit with a matching status code."""
    if snapshot.status == UploadStatus.DONE:
        typer.echo(f"Upload complete: session {snapshot.session_id} ({snapshot.total_bytes} bytes)")
        return

    resume_hint = ""
    if snapshot.session_id:
        resume_hint = f"Resume with: chunkwise resume {file_path} --session-id {snapshot.session_id}"

    if snapshot.status == UploadStatus.CANCELED:
        typer.echo("Upload canceled.", err=True)
        if resume_hint:
            typer.echo(resume_hint, err=True)
        sys.exit(EXIT_CANCELED)

    typer.echo(f"Upload failed: {snapshot.error}", err=True)
    if resume_hint:
        typer.echo(resume_hint, err=True)
    sys.exit(EXIT_ERROR)


def _execute(config: ApplicationConfig, file_path: str,
             resume_session_id: Optional[str] = None, use_last: bool = False) -> None:
    try:
        snapshot = asyncio.run(run_upload(config, file_path, resume_session_id, use_last))
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)
    _report(snapshot, file_path)


@cli.command()
def upload(
    file: str = typer.Argument(..., help="File to upload"),
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file path"
    ),
    base_url: Optional[str] = typer.Option(
        None, "--url", "-u", help="Upload server base URL"
    ),
    chunk_size: Optional[int] = typer.Option(
        None, "--chunk-size", help="Chunk size in bytes"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level"
    ),
    debug: bool = typer.Option(
        False, "--debug", help="Enable debug mode"
    )
) -> None:
    """Upload a file as a new session."""
    config = _load_config(config_file, base_url, chunk_size, log_level, debug)
    _execute(config, file)


@cli.command()
def resume(
    file: str = typer.Argument(..., help="File to upload"),
    session_id: Optional[str] = typer.Option(
        None, "--session-id", "-s", help="Session to resume"
    ),
    last: bool = typer.Option(
        False, "--last", help="Resume the most recently started session"
    ),
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file path"
    ),
    base_url: Optional[str] = typer.Option(
        None, "--url", "-u", help="Upload server base URL"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level"
    ),
    debug: bool = typer.Option(
        False, "--debug", help="Enable debug mode"
    )
) -> None:
    """Resume an interrupted upload, skipping chunks already delivered."""
    if bool(session_id) == last:
        typer.echo("Specify exactly one of --session-id or --last", err=True)
        sys.exit(EXIT_ERROR)

    config = _load_config(config_file, base_url, None, log_level, debug)
    _execute(config, file, session_id, last)


@cli.command()
def status(
    session_id: Optional[str] = typer.Argument(None, help="Session to show"),
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file path"
    )
) -> None:
    """Show durable upload records."""
    config = _load_config(config_file)
    app = ApplicationStartup(config)

    async def collect() -> tuple:
        store = app.record_store
        if session_id:
            record = await store.load(session_id)
            records = [record] if record is not None else []
        else:
            records = await store.list_records()
        return records, await store.last_session_id()

    records, last_session = asyncio.run(collect())

    if session_id and not records:
        typer.echo(f"No record for session {session_id}", err=True)
        sys.exit(EXIT_ERROR)
    if not records:
        typer.echo("No resumable uploads recorded")
        return

    for record in records:
        total = total_chunks(record.file_size, record.chunk_size or config.upload.chunk_size)
        marker = " (last)" if record.session_id == last_session else ""
        typer.echo(
            f"{record.session_id}{marker}: {len(record.uploaded_chunk_indices)}/{total} "
            f"chunk(s) of {record.file_size} bytes delivered")


@cli.command()
def forget(
    session_id: str = typer.Argument(..., help="Session whose record to delete"),
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file path"
    )
) -> None:
    """Delete the durable record of a session."""
    config = _load_config(config_file)
    app = ApplicationStartup(config)
    asyncio.run(app.record_store.clear(session_id))
    typer.echo(f"Cleared record for session {session_id}")


@cli.command()
def init_config(
    output: str = typer.Option(
        "chunkwise.yaml", "--output", "-o", help="Output configuration file"
    ),
    format: str = typer.Option(
        "yaml", "--format", "-f", help="Configuration format (yaml/json)"
    )
) -> None:
    """Generate a default configuration file."""
    try:
        ConfigLoader().save_config(ApplicationConfig(), output, format)
        typer.echo(f"Default configuration saved to {output}")
    except ValueError as e:
        typer.echo(f"Error saving configuration: {e}", err=True)
        sys.exit(EXIT_ERROR)


@cli.command()
def validate_config(
    config_file: str = typer.Argument(..., help="Configuration file to validate")
) -> None:
    """Validate a configuration file."""
    try:
        config = ConfigLoader().load_config(config_file)
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"Configuration validation failed: {e}", err=True)
        sys.exit(EXIT_ERROR)

    typer.echo(f"Configuration file {config_file} is valid")
    typer.echo(f"Backend: {config.backend.base_url}")
    typer.echo(f"Chunk size: {config.upload.chunk_size} bytes")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
