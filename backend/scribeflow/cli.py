"""Command line interface for ScribeFlow."""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from scribeflow.core.config import Settings, get_settings
from scribeflow.core.exceptions import TranscriptionCancelledError, TranscriptionError, describe_error
from scribeflow.core.logging import setup_logging
from scribeflow.schemas.transcription import TranscriptionOptions
from scribeflow.services.audio_source import FileAudioSource
from scribeflow.services.transcription_service import TranscriptionService

app = typer.Typer(help="Transcribe long audio files against a remote transcription service.")


def _print_progress(percent: int, status: str) -> None:
    typer.echo(f"[{percent:3d}%] {status}", err=True)


async def _run(path: Path, options: TranscriptionOptions, config: Settings) -> str:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
    except NotImplementedError:
        # Windows event loops have no signal handlers
        logger.debug("SIGINT handler unavailable; Ctrl-C will interrupt immediately")

    source = FileAudioSource(path, config=config)
    async with TranscriptionService(config) as service:
        return await service.transcribe(source, options, on_progress=_print_progress, cancel=cancel)


@app.command()
def transcribe(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Audio file to transcribe"),
    timestamped: bool = typer.Option(False, "--timestamped", help="Return SRT subtitles instead of plain text"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the transcript here instead of stdout"),
    remote_jobs: Optional[bool] = typer.Option(
        None,
        "--remote-jobs/--local",
        help="Use the remote job protocol, or force direct/locally chunked uploads",
    ),
):
    """Transcribe PATH and print the transcript."""
    config = get_settings()
    if remote_jobs is not None:
        config = config.model_copy(update={"REMOTE_JOBS_ENABLED": remote_jobs})
    setup_logging(config)

    try:
        text = asyncio.run(_run(path, TranscriptionOptions(timestamped=timestamped), config))
    except (TranscriptionCancelledError, KeyboardInterrupt):
        typer.echo("Transcription cancelled", err=True)
        raise typer.Exit(code=130)
    except TranscriptionError as e:
        typer.echo(describe_error(e, config.ERROR_MESSAGE_MAX_LENGTH), err=True)
        raise typer.Exit(code=1)

    if output:
        output.write_text(text + "\n", encoding="utf-8")
        logger.info(f"Transcript written to {output}")
    else:
        sys.stdout.write(text + "\n")


@app.command()
def version():
    """Print the version."""
    config = get_settings()
    typer.echo(f"{config.PROJECT_NAME} {config.VERSION}")


if __name__ == "__main__":
    app()
