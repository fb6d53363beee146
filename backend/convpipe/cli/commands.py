"""CLI commands for convpipe using Typer and Rich.

Implements the operator commands:
- serve: Run the worker (pipeline API) in this process
- shell: Run the worker under the shell supervisor until SIGINT/SIGTERM
- process: Run one Job against local files without HTTP
- impulse-responses: List the impulse response library
- outputs: List generated artifacts
- audio-files: List sample input audio
"""

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from convpipe import validate_dependencies
from convpipe.config import settings
from convpipe.errors import PipelineError
from convpipe.orchestrator.pipeline import PipelineCoordinator
from convpipe.schemas.job import MixSettings, UploadedBlob
from convpipe.shell.supervisor import ShellSupervisor, run_shell

app = typer.Typer(name="convpipe", help="Impulse-response convolution pipeline")
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Configure logging for every command."""
    level = logging.DEBUG if verbose else settings.logging.level
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Listening port"),
):
    """Run the pipeline API worker in the foreground."""
    uvicorn.run(
        "convpipe.api.app:app",
        host=host or settings.server.host,
        port=port or settings.server.port,
        reload=False,
    )


@app.command()
def shell(
    readiness: Optional[str] = typer.Option(
        None, "--readiness", "-r", help="Readiness strategy: health, marker or delay"
    ),
    graceful_timeout: Optional[float] = typer.Option(
        None, "--graceful-timeout", help="Seconds between SIGTERM and SIGKILL"
    ),
):
    """Start the worker under supervision and stop it on SIGINT/SIGTERM."""
    config = settings
    overrides = {}
    if readiness:
        if readiness not in ("health", "marker", "delay"):
            console.print(f"[red]Error:[/red] Unknown readiness strategy: {readiness}")
            raise typer.Exit(code=2)
        overrides["readiness"] = readiness
    if graceful_timeout is not None:
        overrides["graceful_timeout"] = graceful_timeout
    if overrides:
        config = settings.model_copy(
            update={"supervisor": settings.supervisor.model_copy(update=overrides)}
        )

    supervisor = ShellSupervisor.from_settings(config)
    console.print(
        Panel(
            f"Worker: {' '.join(supervisor.command)}\n"
            f"Readiness: {supervisor.readiness!r}\n"
            f"Health: {config.health_url}",
            title="convpipe shell",
        )
    )
    code = asyncio.run(run_shell(supervisor))
    if code == 0:
        console.print("[green]✓[/green] Worker stopped")
    else:
        console.print("[red]✗ Worker stopped unexpectedly or failed to start[/red]")
    raise typer.Exit(code=code)


@app.command()
def process(
    audio: Path = typer.Argument(..., exists=True, dir_okay=False, help="Input audio file"),
    impulse: Path = typer.Argument(..., exists=True, dir_okay=False, help="Impulse response file"),
    settings_json: Optional[str] = typer.Option(
        None, "--settings", "-s", help='Mix settings JSON, e.g. \'{"dryWet": 50}\''
    ),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Copy the playback-ready result here"
    ),
):
    """Process AUDIO against IMPULSE and write a playback-ready artifact."""
    validate_dependencies(settings.tools.transcoder_command[0])

    try:
        mix = MixSettings.model_validate(json.loads(settings_json)) if settings_json else MixSettings()
    except ValueError as e:
        console.print(f"[red]Error:[/red] Invalid settings: {str(e)}")
        raise typer.Exit(code=2)

    coordinator = PipelineCoordinator.from_settings(settings)
    coordinator.store.ensure_roots()

    try:
        with console.status("[bold green]Processing audio..."):
            job = asyncio.run(
                coordinator.submit_job(
                    UploadedBlob(filename=audio.name, data=audio.read_bytes()),
                    UploadedBlob(filename=impulse.name, data=impulse.read_bytes()),
                    mix,
                )
            )
    except PipelineError as e:
        console.print(f"[red]✗ Audio processing failed:[/red] {e.message}")
        if e.details and e.details != e.message:
            console.print(f"[yellow]Details:[/yellow] {e.details}")
        raise typer.Exit(code=1)

    console.print("[green]✓[/green] Audio processing and conversion complete!")
    console.print(f"[green]Output:[/green] {job.converted_path}")
    if output is not None:
        shutil.copy2(job.converted_path, output)
        console.print(f"[green]Saved:[/green] {output}")


@app.command("impulse-responses")
def impulse_responses():
    """List the impulse response library by category."""
    coordinator = PipelineCoordinator.from_settings(settings)
    entries = coordinator.list_impulse_responses()
    if not entries:
        console.print(f"[yellow]No impulse responses found under {coordinator.store.library_dir}[/yellow]")
        return

    table = Table(title="Impulse Responses")
    table.add_column("Category", style="cyan")
    table.add_column("Name")
    table.add_column("Path", style="dim")
    for entry in entries:
        table.add_row(entry.category, entry.name, entry.path)
    console.print(table)


@app.command()
def outputs():
    """List generated artifacts with their sizes."""
    coordinator = PipelineCoordinator.from_settings(settings)
    records = coordinator.list_outputs()
    if not records:
        console.print("[yellow]No output files yet.[/yellow]")
        return

    table = Table(title="Output Files")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Path", style="dim")
    for record in records:
        table.add_row(record.name, _format_size(record.size), record.path)
    console.print(table)


@app.command("audio-files")
def audio_files():
    """List sample input audio files."""
    coordinator = PipelineCoordinator.from_settings(settings)
    entries = coordinator.list_audio_files()
    if not entries:
        console.print(f"[yellow]No audio files found under {coordinator.store.audio_dir}[/yellow]")
        return

    table = Table(title="Audio Files")
    table.add_column("Name", style="cyan")
    table.add_column("Path", style="dim")
    for entry in entries:
        table.add_row(entry.name, entry.path)
    console.print(table)


def _format_size(size: int) -> str:
    """Human readable byte count."""
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"
