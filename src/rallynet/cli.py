"""RallyNet CLI Entry Point.

Thin command-line driver over the core: upload a video, ask about it,
inspect the effective configuration. All retry and resume behavior lives
in the core; this module only wires settings, logging and output.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional

import structlog
import typer
import yaml

from rallynet.chat.session import ChatSessionManager, InMemoryHistoryStore
from rallynet.core.config import Settings, get_settings
from rallynet.core.exceptions import ConfigurationError, RallyNetError, is_exhausted
from rallynet.core.log import configure_logging
from rallynet.core.models import RemoteFile, RemoteFileState
from rallynet.gemini.credentials import SettingsCredentialProvider
from rallynet.gemini.transport import GeminiTransport
from rallynet.resilience.executor import RetryExecutor
from rallynet.upload.client import ResumableUploadClient

log = structlog.get_logger()

app = typer.Typer(
    name="rallynet",
    help="RallyNet - resilient video upload and analysis with Gemini",
    no_args_is_help=True,
)


def load_config_callback(config: Optional[Path]) -> Optional[Path]:
    """Load configuration file if provided and configure logging."""
    if config and not config.exists():
        typer.echo(f"Error: Config file '{config}' not found", err=True)
        raise typer.Exit(code=1)

    try:
        settings = get_settings(force_reload=True, config_path=config)
    except ConfigurationError as e:
        typer.echo(f"Error loading config: {e}", err=True)
        raise typer.Exit(code=1)

    configure_logging(settings.logging)
    if config:
        log.info("config_loaded", path=str(config))
    return config


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c",
        callback=load_config_callback,
        is_eager=True,
        help="Path to configuration file",
    ),
) -> None:
    """RallyNet CLI."""


def _print_progress(fraction: float) -> None:
    typer.echo(f"\rUploading... {fraction:6.1%}", nl=False, err=True)
    if fraction >= 1.0:
        typer.echo("", err=True)


def _fail(error: RallyNetError) -> typer.Exit:
    if is_exhausted(error):
        typer.echo(f"Error: {error} (gave up after {error.attempts} attempts)", err=True)
    else:
        typer.echo(f"Error: {error}", err=True)
    return typer.Exit(code=1)


def _build_clients(settings: Settings) -> tuple[GeminiTransport, ResumableUploadClient, ChatSessionManager]:
    transport = GeminiTransport(settings.api, SettingsCredentialProvider(settings))
    executor = RetryExecutor()
    uploader = ResumableUploadClient(
        transport,
        settings.upload,
        executor=executor,
        policy=settings.retry.to_policy(),
    )
    chat = ChatSessionManager.from_settings(transport, settings, executor=executor)
    return transport, uploader, chat


@app.command()
def upload(
    path: Path = typer.Argument(..., help="Video file to upload"),
    display_name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
) -> None:
    """Upload a video and wait until it is ready for analysis."""
    settings = get_settings()

    async def run() -> RemoteFile:
        transport, uploader, _ = _build_clients(settings)
        async with transport:
            return await uploader.upload(path, display_name=display_name, progress=_print_progress)

    try:
        remote = asyncio.run(run())
    except RallyNetError as e:
        raise _fail(e)
    typer.echo(f"{remote.name}\t{remote.uri}")


@app.command()
def ask(
    video: str = typer.Argument(..., help="Local video path or an uploaded file URI"),
    question: List[str] = typer.Option([], "--question", "-q", help="Follow-up question (repeatable)"),
    mime_type: str = typer.Option("video/mp4", "--mime-type", help="MIME type of an uploaded file URI"),
) -> None:
    """Analyze a video, then ask follow-up questions about it."""
    settings = get_settings()

    async def run() -> None:
        transport, uploader, chat = _build_clients(settings)
        history = InMemoryHistoryStore()
        async with transport:
            if video.startswith(("http://", "https://")):
                remote = RemoteFile(
                    name="files/" + video.rsplit("/files/", 1)[-1],
                    uri=video,
                    mime_type=mime_type,
                    state=RemoteFileState.ACTIVE,
                )
            else:
                remote = await uploader.upload(video, progress=_print_progress)

            async for chunk in chat.analyze(remote, history=history):
                typer.echo(chunk.text_delta, nl=False)
            typer.echo("")

            for text in question:
                typer.echo(f"\n> {text}\n")
                async for chunk in chat.stream_reply(remote, history, text):
                    typer.echo(chunk.text_delta, nl=False)
                typer.echo("")

    try:
        asyncio.run(run())
    except RallyNetError as e:
        raise _fail(e)
    except KeyboardInterrupt:
        typer.echo("\nCancelled", err=True)
        raise typer.Exit(code=130)


@app.command("config")
def show_config() -> None:
    """Print the effective configuration (secrets masked)."""
    settings = get_settings()
    data = settings.model_dump(mode="json", by_alias=True)
    typer.echo(yaml.safe_dump(data, sort_keys=False))


if __name__ == "__main__":  # pragma: no cover
    app()
