"""CLI client for the harvester.

Provides the workflow trigger: `harvest CHANNEL` runs one harvest and prints
the result, which always reports `completed: false`.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from slack_harvester.exceptions import ConfigurationError
from slack_harvester.models.config import ConfigLoader, HarvesterConfig
from slack_harvester.models.records import HarvestResult
from slack_harvester.pipeline.orchestrator import HarvestPipeline

# Configure logging to stay quiet by default, will be adjusted by verbose flag
logging.basicConfig(
    level=logging.WARNING, format="%(message)s", datefmt="[%X]", handlers=[RichHandler(rich_tracebacks=True)]
)

app = typer.Typer(help="Slack channel history harvester")
console = Console()


class State:
    """Application state container."""

    def __init__(self) -> None:
        self.config_path: str = "config/harvester.yaml"
        self.verbose: bool = False


state = State()


@app.callback()  # type: ignore[misc]
def main(
    config: str = typer.Option("config/harvester.yaml", "--config", help="Path to configuration file"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose logging (DEBUG level)"),
) -> None:
    """Slack channel history harvester."""
    state.config_path = config
    state.verbose = verbose
    level = logging.DEBUG if verbose else logging.INFO
    logging.getLogger().setLevel(level)
    logging.getLogger("slack_harvester").setLevel(level)


def _load_config(overrides: Optional[Dict[str, Any]] = None) -> HarvesterConfig:
    try:
        return ConfigLoader.load(state.config_path, overrides=overrides)
    except ConfigurationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=2)


async def _run(config: HarvesterConfig, channel: str) -> HarvestResult:
    pipeline = HarvestPipeline.from_config(config)
    try:
        return await pipeline.run(channel)
    finally:
        await pipeline.aclose()


def _print_summary(result: HarvestResult) -> None:
    table = Table(title=f"Harvest of {result.channel}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Pages", str(result.pages))
    table.add_row("Records", str(result.records))
    table.add_row("Batches", str(result.batches))
    table.add_row("Datastore batches", str(result.datastore_batches))
    table.add_row("Embedding batches", str(result.embedding_batches))
    table.add_row("Failures", str(len(result.failures)), style="red" if result.failures else None)
    console.print(table)
    for failure in result.failures:
        console.print(f"[yellow]{failure.operation}[/yellow] {failure.unit}: {failure.error}")


@app.command()  # type: ignore[misc]
def harvest(
    channel: str = typer.Argument(..., help="Slack channel ID to harvest"),
    no_datastore: bool = typer.Option(False, "--no-datastore", help="Skip datastore writes"),
    no_embeddings: bool = typer.Option(False, "--no-embeddings", help="Skip embedding requests"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON only"),
) -> None:
    """Harvest a channel's history (with threads) into the configured sinks."""
    overrides: Dict[str, Any] = {}
    if no_datastore:
        overrides["datastore"] = {"enabled": False}
    if no_embeddings:
        overrides["embedding"] = {"enabled": False}
    config = _load_config(overrides)
    try:
        result = asyncio.run(_run(config, channel))
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=2)

    if not as_json:
        _print_summary(result)
    console.print_json(json.dumps(result.to_dict()))


@app.command("show-config")  # type: ignore[misc]
def show_config() -> None:
    """Print the effective configuration (secrets masked)."""
    config = _load_config()
    data = config.model_dump()
    if data["embedding"].get("access_token"):
        data["embedding"]["access_token"] = "***"
    console.print_json(json.dumps(data))


if __name__ == "__main__":
    app()
