"""Storyloom CLI - typer application entry point."""

from __future__ import annotations

import asyncio
import atexit
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from storyloom.observability import close_file_logging, configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

app = typer.Typer(
    name="storyloom",
    help="Storyloom: illustrated bedtime story generation.",
    no_args_is_help=True,
)
console = Console()
log = get_logger(__name__)

_verbose: int = 0
_log_enabled: bool = False
_config_path: Path | None = None


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log_to_file: Annotated[
        bool,
        typer.Option(
            "--log",
            help="Enable file logging to {data_dir}/logs/debug.jsonl.",
        ),
    ] = False,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to storyloom.yaml (default: ./storyloom.yaml if present).",
            envvar="STORYLOOM_CONFIG",
        ),
    ] = None,
) -> None:
    """Storyloom: illustrated bedtime story generation."""
    global _verbose, _log_enabled, _config_path
    _verbose = verbose
    _log_enabled = log_to_file
    _config_path = config

    configure_logging(verbosity=verbose)


def _load_config() -> Any:
    from storyloom.pipeline.config import PipelineConfigError, load_pipeline_config

    try:
        config = load_pipeline_config(_config_path)
    except PipelineConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if _log_enabled:
        configure_logging(verbosity=_verbose, log_to_file=True, data_dir=config.data_dir)
        atexit.register(close_file_logging)
    return config


def _read_yaml(path: Path) -> dict[str, Any]:
    from ruamel.yaml import YAML

    if not path.exists():
        console.print(f"[red]Error:[/red] File not found: {path}")
        raise typer.Exit(1)
    with path.open("r", encoding="utf-8") as f:
        data = YAML(typ="safe").load(f)
    if not isinstance(data, dict):
        console.print(f"[red]Error:[/red] Expected a mapping in {path}")
        raise typer.Exit(1)
    return data


def _print_record(record: Any) -> None:
    phase_color = {
        "all_complete": "green",
        "failed": "red",
    }.get(str(record.phase), "yellow")
    console.print(f"[bold]{record.title}[/bold]  ({record.id})")
    console.print(
        f"Phase: [{phase_color}]{record.phase}[/{phase_color}]  "
        f"Images: {record.images_generated}/{record.total_images}"
    )
    if record.cover_image_url:
        console.print(f"Cover: {record.cover_image_url}")
    if record.error_message:
        console.print(f"[red]{record.failure_kind}:[/red] {record.error_message}")

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Text")
    table.add_column("Image")
    table.add_column("Model")
    for page in record.pages:
        provenance = record.metadata.pages.get(str(page.index))
        model = ""
        if provenance is not None:
            model = provenance.model + (" (fallback)" if provenance.used_fallback else "")
        table.add_row(str(page.index + 1), page.text, page.image_url or "-", model)
    console.print(table)


@app.command()
def generate(
    request_file: Annotated[Path, typer.Argument(help="YAML file describing the story request")],
) -> None:
    """Generate a story locally and wait for all illustrations.

    The request file holds GenerationRequest fields plus an optional
    ``profiles`` list of character profiles for the owner.
    """
    from storyloom.models.request import CharacterProfile, GenerationRequest
    from storyloom.pipeline.errors import OrchestratorError
    from storyloom.pipeline.runtime import StoryPipeline
    from storyloom.storage.profiles import InMemoryProfileDirectory

    config = _load_config()
    data = _read_yaml(request_file)
    raw_profiles = data.pop("profiles", None) or []

    defaults = {
        "text_model": config.models.text,
        "cover_image_model": config.models.cover,
        "page_image_model": config.models.page,
    }
    try:
        request = GenerationRequest.model_validate({**defaults, **data})
        profiles = [CharacterProfile.model_validate(p) for p in raw_profiles]
    except ValidationError as e:
        console.print(f"[red]Invalid request:[/red]\n{e}")
        raise typer.Exit(1) from e

    directory = InMemoryProfileDirectory({request.owner_id: profiles})

    async def _run() -> Any:
        pipeline = StoryPipeline.local(config, profiles=directory)
        try:
            return await pipeline.generate(request)
        finally:
            await pipeline.aclose()

    try:
        with console.status("Generating story..."):
            record = asyncio.run(_run())
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e.user_message}")
        log.debug("generate_failed", error=str(e.__cause__))
        raise typer.Exit(1) from e

    _print_record(record)
    if str(record.phase) == "failed":
        raise typer.Exit(1)


@app.command()
def status(
    story_id: Annotated[str, typer.Argument(help="Story id printed by 'generate'")],
) -> None:
    """Show the current state of a stored story."""
    from storyloom.models.story import StoryRecord
    from storyloom.storage.documents import SqliteDocumentStore

    config = _load_config()
    if not config.database_path.exists():
        console.print(f"[red]Error:[/red] No story database at {config.database_path}")
        raise typer.Exit(1)

    store = SqliteDocumentStore(config.database_path)
    try:
        data = store.get(story_id)
    finally:
        store.close()
    if data is None:
        console.print(f"[red]Error:[/red] Story '{story_id}' not found")
        raise typer.Exit(1)
    _print_record(StoryRecord.from_document(data))


@app.command()
def models() -> None:
    """List known models, defaults and fallbacks."""
    from storyloom.providers import models as catalog

    config = _load_config()
    table = Table(show_header=True, header_style="bold")
    table.add_column("Model")
    table.add_column("Kind")
    table.add_column("Fallback")
    table.add_column("Default for")
    for model in sorted(catalog.TEXT_MODELS):
        role = "text" if model == config.models.text else ""
        table.add_row(model, "text", catalog.TEXT_FALLBACKS.get(model, "-"), role)
    for model in sorted(catalog.IMAGE_MODELS):
        roles = ", ".join(
            role
            for role, selected in (("cover", config.models.cover), ("page", config.models.page))
            if selected == model
        )
        table.add_row(model, "image", catalog.IMAGE_FALLBACKS.get(model, "-"), roles)
    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    from storyloom import __version__

    console.print(f"Storyloom v{__version__}")
