"""Command-line interface for modelfinder."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .calibration import EXPERIMENTS, CalibrationRunner, HarnessConfig
from .classifiers import ClassificationMethod, TaskClassificationService
from .config import settings
from .embeddings import ProgressEvent
from .errors import ModelFinderError
from .taxonomy import build_reference_seeds, category_stats, load_taxonomy

# Set up logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# CLI app
app = typer.Typer(
    name="modelfinder",
    help="modelfinder: classify task descriptions and calibrate the classifier",
    add_completion=False,
)
console = Console()


def _taxonomy_path() -> Optional[Path]:
    return settings.resolve_path(settings.taxonomy_path) if settings.taxonomy_path else None


@app.command()
def classify(
    text: str = typer.Argument(..., help="Task description to classify"),
    no_fallback: bool = typer.Option(
        False, "--no-fallback", help="Return the embedding result even below the threshold",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result as JSON"),
):
    """Classify a task description."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Preparing classifier...", total=100)

        def on_progress(event: ProgressEvent) -> None:
            progress.update(task, description=event.message or event.status)
            if event.progress is not None:
                progress.update(task, completed=event.progress)

        try:
            service = TaskClassificationService.from_settings(settings, on_progress=on_progress)
        except (ModelFinderError, ValueError) as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)
        result = asyncio.run(service.classify(text, allow_fallback=not no_fallback))

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
        return

    table = Table(title="Predictions")
    table.add_column("Category", style="cyan")
    table.add_column("Score", justify="right", style="green")
    for p in result.predictions:
        table.add_row(p.label, f"{p.score:.3f}")
    console.print(table)

    if result.subcategory_predictions:
        sub = result.subcategory_predictions[0]
        console.print(f"Subcategory: [bold]{sub.label}[/bold] ({sub.score:.2f})")

    level_style = {"high": "green", "medium": "yellow", "low": "red"}[result.confidence_level.value]
    console.print(
        f"Confidence: [{level_style}]{result.confidence:.3f} "
        f"({result.confidence_level.value})[/{level_style}]  "
        f"Method: [bold]{result.method.value}[/bold]  "
        f"Time: {result.processing_time_ms:.0f}ms"
    )
    if result.error:
        console.print(f"[yellow]Embedding tier unavailable: {result.error}[/yellow]")

    if result.similar_examples:
        console.print("\n[bold]Similar examples:[/bold]")
        for m in result.similar_examples:
            console.print(f"  [dim]{m.similarity:.3f}[/dim] {m.text} ({m.label})")

    if result.method != ClassificationMethod.EMBEDDING_SIMILARITY or result.confidence_level.value == "low":
        for suggestion in service.suggest_improvements(result):
            console.print(f"[dim]• {suggestion}[/dim]")


@app.command()
def calibrate(
    experiment: str = typer.Argument(
        "all", help=f"Experiment to run: {', '.join(EXPERIMENTS)} or all",
    ),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model to calibrate"),
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", "-o", help="Directory for result files",
    ),
):
    """Run calibration experiments and write JSON results."""
    if experiment != "all" and experiment not in EXPERIMENTS:
        console.print(
            f"[red]Unknown experiment '{experiment}'. "
            f"Choose from: {', '.join(EXPERIMENTS)}, all[/red]"
        )
        raise typer.Exit(1)

    try:
        taxonomy = load_taxonomy(_taxonomy_path())
    except ModelFinderError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    results_dir = output_dir or settings.resolve_path(settings.results_dir)
    cache_dir = settings.resolve_path(settings.model_cache_dir) if settings.model_cache_dir else None
    config = HarnessConfig(results_dir=results_dir, cache_dir=cache_dir)
    runner = CalibrationRunner(config, taxonomy)

    console.print(Panel(f"Calibration: {experiment}", style="bold blue"))
    if experiment == "all":
        combined = asyncio.run(runner.run_all(model))
        console.print(f"Selected model: [bold]{combined['selected_model']}[/bold]")
        for name, error in combined["errors"].items():
            console.print(f"[red]{name} failed: {error}[/red]")
        for conflict in combined["conflicts"]:
            console.print(f"[yellow]Conflict: {conflict}[/yellow]")
        console.print(f"[green]Recommended configuration written to {results_dir}[/green]")
        return

    try:
        asyncio.run(runner.run_experiment(experiment, model))
    except ModelFinderError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def taxonomy():
    """Show taxonomy and reference corpus coverage."""
    try:
        tax = load_taxonomy(_taxonomy_path())
    except ModelFinderError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    seeds = build_reference_seeds(tax)
    stats = category_stats(seeds)

    table = Table(title=f"Task Taxonomy (version {tax.version or 'unknown'})")
    table.add_column("Category", style="cyan")
    table.add_column("Subcategories", justify="right")
    table.add_column("Examples", justify="right", style="green")
    for category in tax.declared_categories:
        spec = tax.categories.get(category)
        count = stats.get(category.value, {}).get("total", 0)
        table.add_row(
            spec.label if spec else category.value,
            str(len(spec.subcategories)) if spec else "0",
            str(count) if count else "[red]0[/red]",
        )
    console.print(table)
    console.print(f"Total reference examples: {len(seeds)}")

    missing = [c.value for c in tax.declared_categories if c.value not in stats]
    if missing or tax.gaps:
        console.print("[bold red]Unreachable by the embedding classifier:[/bold red]")
        for name in missing:
            console.print(f"  [red]• {name}[/red]")
        for gap in tax.gaps:
            console.print(f"  [red]• {gap.category.value}.{gap.subcategory}[/red]")


@app.command()
def config():
    """Show current configuration (for debugging)."""
    console.print(Panel("Current Configuration", style="bold blue"))

    table = Table(title="Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("EMBEDDING_MODEL", settings.embedding_model)
    table.add_row("TOP_K", str(settings.top_k))
    table.add_row("VOTING_METHOD", settings.voting_method)
    table.add_row("CONFIDENCE_THRESHOLD", f"{settings.confidence_threshold:.2f}")
    table.add_row("MODEL_CACHE_DIR", str(settings.model_cache_dir or "(huggingface default)"))
    table.add_row("INIT_TIMEOUT_SECONDS", f"{settings.init_timeout_seconds:g}")
    table.add_row("TAXONOMY_PATH", str(settings.taxonomy_path or "(packaged tasks.yaml)"))
    table.add_row("CALIBRATION_FILE", str(settings.calibration_file or "(not set)"))
    table.add_row("RESULTS_DIR", str(settings.results_dir))
    table.add_row("LOG_LEVEL", settings.log_level)

    console.print(table)


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
