"""Model benchmark: accuracy-to-size comparison of candidate embedding models."""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from ..embeddings import ModelLoader
from ..taxonomy import ReferenceSeed
from .config import CandidateModel, HarnessConfig
from .evaluation import EvaluationSet, accuracy

logger = logging.getLogger(__name__)


@dataclass
class ModelResult:
    name: str
    description: str
    size_mb: int
    accuracy: float = 0.0
    top3_accuracy: float = 0.0
    avg_inference_ms: float = 0.0
    avg_confidence_correct: float = 0.0
    load_time_ms: int = 0
    evaluated: int = 0
    confusion_by_category: dict = field(default_factory=dict)
    edge_cases_handled: int = 0
    edge_cases_total: int = 0
    edge_case_details: list = field(default_factory=list)
    meets_success_criteria: bool = False
    is_best: bool = False
    error: Optional[str] = None


@dataclass
class BenchmarkReport:
    models: list[ModelResult]
    total_examples: int
    edge_cases: int
    categories: int
    best_model: Optional[str] = None
    recommendation: str = ""

    def summary(self) -> dict:
        passing = [m for m in self.models if m.meets_success_criteria]
        return {
            "total_models": len(self.models),
            "passing_models": len(passing),
            "best_model": self.best_model,
            "meets_success_criteria": bool(passing),
        }


def rank_models(results: list[ModelResult]) -> list[ModelResult]:
    """Passing models first, then by accuracy; marks the best passing model."""
    ranked = sorted(
        results, key=lambda m: (not m.meets_success_criteria, -m.accuracy),
    )
    for m in ranked:
        m.is_best = False
    if ranked and ranked[0].meets_success_criteria and ranked[0].error is None:
        ranked[0].is_best = True
    return ranked


class ModelBenchmark:
    """Benchmark every candidate model on the same corpus and edge cases.

    Args:
        config: Harness configuration (candidates and criteria).
        seeds: Reference corpus.
        loader: Model loader shared by all candidates.
        evaluation_factory: Optional ``async (model_name) -> EvaluationSet``,
            letting a runner reuse evaluation sets across experiments.
    """

    def __init__(
        self,
        config: HarnessConfig,
        seeds: Sequence[ReferenceSeed],
        loader: ModelLoader,
        evaluation_factory: Optional[Callable] = None,
    ):
        self.config = config
        self.seeds = list(seeds)
        self.loader = loader
        self._evaluation_factory = evaluation_factory

    async def _evaluation(self, model_name: str) -> EvaluationSet:
        if self._evaluation_factory is not None:
            return await self._evaluation_factory(model_name)
        return await EvaluationSet.build(model_name, self.seeds, self.loader, self.config)

    async def run(self) -> BenchmarkReport:
        logger.info(
            "Benchmarking %d models on %d examples", len(self.config.models), len(self.seeds),
        )
        results = []
        for candidate in self.config.models:
            try:
                result = await self.benchmark_model(candidate)
                logger.info(
                    "%s: accuracy=%.3f top3=%.3f inference=%.0fms load=%dms",
                    candidate.name, result.accuracy, result.top3_accuracy,
                    result.avg_inference_ms, result.load_time_ms,
                )
            except Exception as e:
                logger.exception("Benchmark failed for %s", candidate.name)
                result = ModelResult(
                    name=candidate.name,
                    description=candidate.description,
                    size_mb=candidate.expected_size_mb,
                    error=str(e) or type(e).__name__,
                )
            results.append(result)

        ranked = rank_models(results)
        best = next((m for m in ranked if m.is_best), None)
        report = BenchmarkReport(
            models=ranked,
            total_examples=len(self.seeds),
            edge_cases=len(self.config.edge_cases),
            categories=len({s.category for s in self.seeds}),
            best_model=best.name if best else None,
        )
        report.recommendation = self._recommendation(report)
        return report

    async def benchmark_model(self, candidate: CandidateModel) -> ModelResult:
        criteria = self.config.success_criteria
        evaluation = await self._evaluation(candidate.name)

        cases = evaluation.leave_one_out(
            sample_size=self.config.sample_size, seed=self.config.seed,
        )
        correct = [c for c in cases if c.is_correct]

        confusion: dict[str, dict] = {}
        for case in cases:
            entry = confusion.setdefault(
                case.expected.value, {"correct": 0, "total": 0, "predictions": {}},
            )
            entry["total"] += 1
            entry["correct"] += int(case.is_correct)
            predicted = case.predicted.value if case.predicted else "unknown"
            entry["predictions"][predicted] = entry["predictions"].get(predicted, 0) + 1

        details = []
        handled = 0
        for case, edge in zip(evaluation.edge(), evaluation.edge_cases):
            ok = evaluation.edge_case_handled(case, criteria.min_confidence_threshold)
            handled += int(ok)
            details.append({
                "input": edge.text,
                "expected": edge.expected_category.value if edge.expected_category else None,
                "predicted": case.predicted.value if case.predicted else None,
                "confidence": round(case.confidence, 4),
                "handled": ok,
                "description": edge.description,
            })

        timings = await evaluation.timed_inference([e.text for e in evaluation.edge_cases])

        acc = accuracy(cases) or 0.0
        return ModelResult(
            name=candidate.name,
            description=candidate.description,
            size_mb=candidate.expected_size_mb,
            accuracy=acc,
            top3_accuracy=sum(1 for c in cases if c.in_top3) / len(cases) if cases else 0.0,
            avg_inference_ms=sum(timings) / len(timings) if timings else 0.0,
            avg_confidence_correct=(
                sum(c.confidence for c in correct) / len(correct) if correct else 0.0
            ),
            load_time_ms=evaluation.load_time_ms,
            evaluated=len(cases),
            confusion_by_category=confusion,
            edge_cases_handled=handled,
            edge_cases_total=len(details),
            edge_case_details=details,
            meets_success_criteria=(
                acc >= criteria.min_accuracy
                and candidate.expected_size_mb <= criteria.max_model_size_mb
            ),
        )

    @staticmethod
    def _recommendation(report: BenchmarkReport) -> str:
        passing = [m for m in report.models if m.meets_success_criteria]
        if passing:
            m = passing[0]
            return f"Use {m.name} ({m.accuracy * 100:.1f}% accuracy, {m.size_mb}MB)"
        return (
            "No model meets success criteria. Consider relaxing requirements "
            "or adding more examples."
        )
