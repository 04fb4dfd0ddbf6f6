"""Calibration runner: one experiment, or all four in sequence.

``run_all`` benchmarks the candidates first and uses the best model for the
remaining experiments. A failing experiment is logged and recorded; the
others still run. Disagreements between experiments are reported, not
resolved.
"""

import json
import logging
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional

from ..classifiers import CalibrationConfig
from ..embeddings import ModelLoader, cached_loader, load_sentence_transformer
from ..taxonomy import Taxonomy, build_reference_seeds
from .benchmark import ModelBenchmark
from .config import HarnessConfig
from .coverage import CoverageAnalyzer
from .evaluation import EvaluationSet
from .performance import PerformanceTester
from .report import ReportWriter, to_jsonable
from .threshold import ThresholdCalibrator

logger = logging.getLogger(__name__)

EXPERIMENTS = ("benchmark", "threshold", "coverage", "performance")
RECOMMENDED_CONFIG_FILE = "recommended_config.json"


def default_loader_factory(cache_dir: Optional[Path] = None) -> Callable[[], ModelLoader]:
    """Fresh sentence-transformers loaders bound to ``cache_dir``."""
    return lambda: partial(load_sentence_transformer, cache_dir=cache_dir)


class CalibrationRunner:
    """Runs calibration experiments against one taxonomy.

    Args:
        config: Harness configuration.
        taxonomy: Taxonomy the reference corpus is built from.
        loader_factory: Returns a fresh model loader; defaults to
            sentence-transformers with ``config.cache_dir``.
        writer: Report writer; defaults to one over ``config.results_dir``.
    """

    def __init__(
        self,
        config: HarnessConfig,
        taxonomy: Taxonomy,
        loader_factory: Optional[Callable[[], ModelLoader]] = None,
        writer: Optional[ReportWriter] = None,
    ):
        self.config = config
        self.taxonomy = taxonomy
        self.seeds = build_reference_seeds(taxonomy)
        self.loader_factory = loader_factory or default_loader_factory(config.cache_dir)
        self.loader = cached_loader(self.loader_factory())
        self.writer = writer or ReportWriter(config.results_dir, config.success_criteria)
        self._evaluations: dict[str, EvaluationSet] = {}

    async def evaluation(self, model_name: str) -> EvaluationSet:
        """Evaluation set for ``model_name``, built once per runner."""
        if model_name not in self._evaluations:
            self._evaluations[model_name] = await EvaluationSet.build(
                model_name, self.seeds, self.loader, self.config,
            )
        return self._evaluations[model_name]

    def _default_model(self, model_name: Optional[str]) -> str:
        return model_name or self.config.models[0].name

    async def run_experiment(self, name: str, model_name: Optional[str] = None) -> Any:
        """Run one experiment and write its report.

        Raises:
            ValueError: unknown experiment name.
        """
        model_name = self._default_model(model_name)
        if name == "benchmark":
            report = await ModelBenchmark(
                self.config, self.seeds, self.loader, evaluation_factory=self.evaluation,
            ).run()
        elif name == "threshold":
            report = await ThresholdCalibrator(
                self.config, self.seeds, model_name, self.loader,
                evaluation_factory=self.evaluation,
            ).run()
        elif name == "coverage":
            report = await CoverageAnalyzer(
                self.config, self.taxonomy, self.seeds, model_name, self.loader,
                evaluation_factory=self.evaluation,
            ).run()
        elif name == "performance":
            report = await PerformanceTester(
                self.config, self.taxonomy, self.seeds, model_name, self.loader_factory,
            ).run()
        else:
            raise ValueError(f"Unknown experiment '{name}'. Choose from: {', '.join(EXPERIMENTS)}")

        self.writer.write(name, report)
        return report

    async def run_all(self, model_name: Optional[str] = None) -> dict:
        """Benchmark, then the other experiments on the best model. Best effort."""
        started = datetime.now(timezone.utc)
        reports: dict[str, Any] = {}
        errors: dict[str, str] = {}

        async def attempt(name: str, model: Optional[str]) -> None:
            try:
                reports[name] = await self.run_experiment(name, model)
            except Exception as e:
                logger.exception("Experiment %s failed", name)
                errors[name] = str(e) or type(e).__name__

        await attempt("benchmark", None)
        benchmark = reports.get("benchmark")
        selected = (benchmark.best_model if benchmark else None) or self._default_model(model_name)
        logger.info("Using %s for the remaining experiments", selected)

        for name in EXPERIMENTS[1:]:
            await attempt(name, selected)

        recommended = self.recommended_config(selected, reports.get("threshold"))
        config_path = recommended.to_file(self.config.results_dir / RECOMMENDED_CONFIG_FILE)
        logger.info("Recommended configuration written to %s", config_path)

        combined = {
            "started_at": started.isoformat(),
            "finished_at": datetime.now(timezone.utc).isoformat(),
            "selected_model": selected,
            "experiments": {name: to_jsonable(report) for name, report in reports.items()},
            "errors": errors,
            "conflicts": self.conflicts(reports),
            "recommended_config": recommended.to_dict(),
        }
        self._write_combined(combined)
        return combined

    def recommended_config(self, model_name: str, threshold_report=None) -> CalibrationConfig:
        if threshold_report is None:
            config = CalibrationConfig(model_name=model_name)
        else:
            config = CalibrationConfig(
                model_name=model_name,
                top_k=threshold_report.recommended_k,
                voting_method=threshold_report.recommended_voting_method,
                confidence_threshold=threshold_report.recommended_threshold,
            )
        config.validate_for_corpus(len(self.seeds))
        return config

    def conflicts(self, reports: dict[str, Any]) -> list[str]:
        """Cases where experiments disagree; left for a human to resolve."""
        found = []
        criteria = self.config.success_criteria
        benchmark = reports.get("benchmark")
        performance = reports.get("performance")
        threshold = reports.get("threshold")
        coverage = reports.get("coverage")

        if benchmark and benchmark.best_model and performance:
            if not performance.meets_desktop_target:
                found.append(
                    f"Benchmark prefers {benchmark.best_model} but it misses the "
                    f"desktop performance target"
                )
        if threshold and threshold.recommended_threshold < criteria.min_confidence_threshold:
            found.append(
                f"Calibrated threshold {threshold.recommended_threshold:.2f} is below the "
                f"{criteria.min_confidence_threshold:.2f} confidence criterion"
            )
        if coverage and coverage.weak_categories and benchmark and benchmark.best_model:
            found.append(
                "Benchmark accuracy passes but coverage flags weak categories: "
                + ", ".join(w.category for w in coverage.weak_categories)
            )
        return found

    def _write_combined(self, combined: dict) -> Path:
        self.config.results_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        path = self.config.results_dir / f"all-{stamp}.json"
        path.write_text(json.dumps(combined, indent=2), encoding="utf-8")
        logger.info("Combined results saved to %s", path)
        return path
