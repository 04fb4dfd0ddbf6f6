"""Experiment reports: JSON files in the results directory plus rich tables."""

import json
import logging
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import numpy as np
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import SuccessCriteria

logger = logging.getLogger(__name__)


def _json_default(value: Any):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if is_dataclass(value):
        return asdict(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_jsonable(value: Any) -> Any:
    """Round-trip through JSON so reports contain only plain types."""
    return json.loads(json.dumps(value, default=_json_default))


def _pct(value: Optional[float]) -> str:
    return "-" if value is None else f"{value * 100:.1f}%"


class ReportWriter:
    """Writes ``<experiment>-<timestamp>.json`` and prints console summaries."""

    def __init__(
        self,
        results_dir: Path,
        success_criteria: Optional[SuccessCriteria] = None,
        console: Optional[Console] = None,
    ):
        self.results_dir = Path(results_dir)
        self.success_criteria = success_criteria or SuccessCriteria()
        self.console = console or Console()

    def write(self, experiment: str, report: Any) -> Path:
        """Persist one experiment report and print its console view."""
        now = datetime.now(timezone.utc)
        results = to_jsonable(report)
        summary = report.summary() if hasattr(report, "summary") else {}
        payload = {
            "experiment": experiment,
            "timestamp": now.isoformat(),
            "success_criteria": asdict(self.success_criteria),
            "results": results,
            "summary": to_jsonable(summary),
            "recommendation": getattr(report, "recommendation", None),
        }

        self.results_dir.mkdir(parents=True, exist_ok=True)
        stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        path = self.results_dir / f"{experiment}-{stamp}.json"
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        logger.info("Wrote %s report to %s", experiment, path)

        self.print_report(experiment, report)
        self.console.print(f"[dim]Report saved to {path}[/dim]")
        return path

    # ------------------------------------------------------------------
    # Console views
    # ------------------------------------------------------------------

    def print_report(self, experiment: str, report: Any) -> None:
        printer = getattr(self, f"_print_{experiment}", None)
        if printer is not None:
            printer(report)
        recommendation = getattr(report, "recommendation", None)
        if recommendation:
            self.console.print(Panel(recommendation, title="Recommendation", style="bold blue"))

    def _print_benchmark(self, report) -> None:
        table = Table(title="Embedding Model Benchmark")
        table.add_column("Model", style="cyan")
        table.add_column("Accuracy", justify="right")
        table.add_column("Top-3", justify="right")
        table.add_column("Size", justify="right")
        table.add_column("Inference", justify="right")
        table.add_column("Load", justify="right")
        table.add_column("Status")
        for m in report.models:
            if m.error:
                status = f"[red]ERROR: {m.error[:40]}[/red]"
            elif m.meets_success_criteria:
                status = "[green]PASS[/green]"
            else:
                status = "[yellow]FAIL[/yellow]"
            name = f"{m.name} *" if m.is_best else m.name
            table.add_row(
                name, _pct(m.accuracy), _pct(m.top3_accuracy), f"{m.size_mb}MB",
                f"{m.avg_inference_ms:.0f}ms", f"{m.load_time_ms}ms", status,
            )
        self.console.print(table)

    def _print_threshold(self, report) -> None:
        table = Table(title=f"Threshold Analysis ({report.model_name})")
        for column in ("Threshold", "Accuracy", "Coverage", "Precision", "Recall", "F1"):
            table.add_column(column, justify="right")
        for row in report.thresholds:
            style = "bold green" if row.threshold == report.recommended_threshold else None
            table.add_row(
                f"{row.threshold:.2f}", _pct(row.accuracy), _pct(row.coverage),
                _pct(row.precision), _pct(row.recall), f"{row.f1:.3f}",
                style=style,
            )
        self.console.print(table)

    def _print_coverage(self, report) -> None:
        table = Table(title=f"Coverage Analysis ({report.model_name})")
        table.add_column("Examples/category", justify="right")
        table.add_column("References", justify="right")
        table.add_column("Held out", justify="right")
        table.add_column("Accuracy", justify="right")
        table.add_column("Edge cases", justify="right")
        for p in report.coverage_points:
            table.add_row(
                str(p.examples_per_category), str(p.total_examples),
                str(p.test_set_size), _pct(p.accuracy), _pct(p.edge_case_accuracy),
            )
        self.console.print(table)

        categories = Table(title="Per-Category Accuracy (leave-one-out)")
        categories.add_column("Category", style="cyan")
        categories.add_column("Accuracy", justify="right")
        categories.add_column("Confidence", justify="right")
        categories.add_column("Most confused with")
        for c in sorted(report.category_analysis, key=lambda c: c.accuracy):
            confused = c.confused_with[0]["category"] if c.confused_with else "-"
            marker = "[yellow]![/yellow] " if c.accuracy < report.weak_category_floor else ""
            categories.add_row(
                f"{marker}{c.category}", _pct(c.accuracy), _pct(c.avg_confidence), confused,
            )
        self.console.print(categories)

        cv = report.cross_validation
        if cv is not None:
            self.console.print(
                f"{cv.folds}-fold cross validation: {_pct(cv.accuracy)} "
                f"(± {cv.std * 100:.1f} pts across folds)"
            )

        if report.uncovered_categories or report.uncovered_subcategories:
            self.console.print("[bold red]No reference examples:[/bold red]")
            for name in report.uncovered_categories + report.uncovered_subcategories:
                self.console.print(f"  [red]• {name}[/red]")

    def _print_performance(self, report) -> None:
        criteria = self.success_criteria
        table = Table(title=f"Performance ({report.model_name})")
        table.add_column("Measurement", style="cyan")
        table.add_column("Value", justify="right")
        table.add_column("Target", justify="right")
        table.add_row(
            "Cold start (avg)", f"{report.cold_start.avg_ms:.0f}ms",
            f"{criteria.desktop_load_time_ms}ms / {criteria.mobile_load_time_ms}ms",
        )
        table.add_row("Warm start (avg)", f"{report.warm_start.avg_ms:.0f}ms", "")
        table.add_row(
            "Inference (avg)", f"{report.inference.avg_ms:.1f}ms",
            f"{criteria.desktop_inference_ms}ms / {criteria.mobile_inference_ms}ms",
        )
        table.add_row(
            "Inference p50/p95/p99",
            f"{report.inference.p50_ms:.1f}/{report.inference.p95_ms:.1f}/"
            f"{report.inference.p99_ms:.1f}ms",
            "",
        )
        table.add_row("Lazy loading viable", "yes" if report.lazy_loading.viable else "no", "")
        table.add_row("Memory estimate", f"~{report.memory.total_estimate_mb}MB", "")
        table.add_row(
            "Desktop target", "[green]met[/green]" if report.meets_desktop_target else "[red]missed[/red]", "",
        )
        table.add_row(
            "Mobile target", "[green]met[/green]" if report.meets_mobile_target else "[red]missed[/red]", "",
        )
        self.console.print(table)
        for rec in report.recommendations:
            self.console.print(f"  • {rec}")
