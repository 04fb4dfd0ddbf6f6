"""Coverage analysis: how many reference examples each category needs."""

import logging
import statistics
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from ..embeddings import ModelLoader
from ..taxonomy import (
    ReferenceSeed,
    Taxonomy,
    category_stats,
    kfold_splits,
    sample_per_category,
)
from .config import HarnessConfig
from .evaluation import EvaluationSet, accuracy

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_DIM = 384
BYTES_PER_FLOAT = 4
METADATA_BYTES_PER_EXAMPLE = 100
TOP_CONFUSIONS = 3
TARGET_ACCURACY = 0.85


@dataclass
class CoveragePoint:
    examples_per_category: int
    total_examples: int
    test_set_size: int
    accuracy: Optional[float]
    per_category_accuracy: dict[str, dict] = field(default_factory=dict)
    edge_case_accuracy: Optional[float] = None
    edge_cases_correct: int = 0
    edge_cases_total: int = 0


@dataclass
class CategoryAnalysis:
    category: str
    accuracy: float
    avg_confidence: float
    sample_size: int
    total_examples: int
    confused_with: list[dict] = field(default_factory=list)


@dataclass
class WeakCategory:
    category: str
    accuracy: float
    avg_confidence: float
    confused_with: list[dict]
    recommendation: str


@dataclass
class DiminishingReturns:
    examples_per_category: int
    accuracy: float
    next_level_improvement: Optional[float]


@dataclass
class CrossValidation:
    folds: int
    accuracy: Optional[float]
    fold_accuracies: list[float]
    std: float


@dataclass
class StorageEstimate:
    examples_per_category: int
    total_examples: int
    embeddings_kb: int
    total_kb: int
    accuracy: Optional[float]


@dataclass
class CoverageReport:
    model_name: str
    category_stats: dict
    coverage_points: list[CoveragePoint]
    category_analysis: list[CategoryAnalysis]
    diminishing_returns_at: Optional[DiminishingReturns]
    weak_categories: list[WeakCategory]
    uncovered_categories: list[str]
    uncovered_subcategories: list[str]
    storage_estimates: list[StorageEstimate]
    cross_validation: Optional[CrossValidation] = None
    weak_category_floor: float = 0.80
    recommendation: str = ""

    def summary(self) -> dict:
        return {
            "optimal_examples_per_category": (
                self.diminishing_returns_at.examples_per_category
                if self.diminishing_returns_at else None
            ),
            "cross_validation_accuracy": (
                self.cross_validation.accuracy if self.cross_validation else None
            ),
            "weak_categories": [w.category for w in self.weak_categories],
            "uncovered_categories": self.uncovered_categories,
            "uncovered_subcategories": self.uncovered_subcategories,
        }


def find_diminishing_returns(
    points: Sequence[CoveragePoint], min_gain: float = 0.02,
) -> Optional[DiminishingReturns]:
    """The last level before an increment gains less than ``min_gain``."""
    measured = [p for p in points if p.accuracy is not None]
    if not measured:
        return None
    for previous, current in zip(measured, measured[1:]):
        gain = current.accuracy - previous.accuracy
        if gain < min_gain:
            return DiminishingReturns(previous.examples_per_category, previous.accuracy, gain)
    last = measured[-1]
    return DiminishingReturns(last.examples_per_category, last.accuracy, None)


def estimate_storage(
    points: Sequence[CoveragePoint], dimensions: int = DEFAULT_EMBEDDING_DIM,
) -> list[StorageEstimate]:
    estimates = []
    for p in points:
        embeddings_bytes = p.total_examples * dimensions * BYTES_PER_FLOAT
        metadata_bytes = p.total_examples * METADATA_BYTES_PER_EXAMPLE
        estimates.append(StorageEstimate(
            examples_per_category=p.examples_per_category,
            total_examples=p.total_examples,
            embeddings_kb=round(embeddings_bytes / 1024),
            total_kb=round((embeddings_bytes + metadata_bytes) / 1024),
            accuracy=p.accuracy,
        ))
    return estimates


def uncovered(taxonomy: Taxonomy, seeds: Sequence[ReferenceSeed]) -> tuple[list[str], list[str]]:
    """Declared categories and subcategories with no reference example."""
    seeded = {s.category for s in seeds}
    seeded_subs = {(s.category, s.subcategory) for s in seeds}
    categories = [c.value for c in taxonomy.declared_categories if c not in seeded]
    subcategories = [
        f"{c.value}.{sub}" for c, sub in taxonomy.declared_subcategories
        if (c, sub) not in seeded_subs
    ]
    return categories, subcategories


class CoverageAnalyzer:
    """Accuracy as a function of examples per category, plus corpus gaps."""

    def __init__(
        self,
        config: HarnessConfig,
        taxonomy: Taxonomy,
        seeds: Sequence[ReferenceSeed],
        model_name: str,
        loader: ModelLoader,
        evaluation_factory: Optional[Callable] = None,
    ):
        self.config = config
        self.taxonomy = taxonomy
        self.seeds = list(seeds)
        self.model_name = model_name
        self.loader = loader
        self._evaluation_factory = evaluation_factory

    async def run(self) -> CoverageReport:
        if self._evaluation_factory is not None:
            evaluation = await self._evaluation_factory(self.model_name)
        else:
            evaluation = await EvaluationSet.build(
                self.model_name, self.seeds, self.loader, self.config,
            )
        return self.analyze(evaluation)

    def coverage_levels(self, seeds: Sequence[ReferenceSeed]) -> list[int]:
        """Levels that still hold out examples from every seeded category.

        Configured levels at or above the smallest category size are skipped.
        When fewer than two remain, levels are derived from that size.
        """
        sizes = Counter(s.category for s in seeds)
        if not sizes:
            return []
        smallest = min(sizes.values())
        levels = [n for n in self.config.example_counts if n < smallest]
        skipped = [n for n in self.config.example_counts if n >= smallest]
        if skipped:
            logger.warning(
                "Skipping coverage levels %s: smallest category has %d examples",
                skipped, smallest,
            )
        if len(levels) < 2:
            derived = {max(1, smallest // 4), max(1, smallest // 2), smallest - 1}
            levels = sorted(set(levels) | {n for n in derived if 1 <= n < smallest})
            logger.info("Using derived coverage levels %s", levels)
        return levels

    def cross_validate(self, evaluation: EvaluationSet, folds: int) -> Optional[CrossValidation]:
        """k-fold accuracy over the full corpus, using each fold as the held-out set."""
        if len(evaluation.seeds) < folds:
            logger.warning(
                "Skipping %d-fold cross validation: only %d examples",
                folds, len(evaluation.seeds),
            )
            return None
        positions = {id(s): i for i, s in enumerate(evaluation.seeds)}
        fold_accuracies = []
        all_cases = []
        for train, test in kfold_splits(evaluation.seeds, k=folds, seed=self.config.seed):
            if not test:
                continue
            cases, _ = evaluation.holdout(
                sorted(positions[id(s)] for s in train),
                sorted(positions[id(s)] for s in test),
            )
            fold_accuracies.append(accuracy(cases))
            all_cases.extend(cases)
        return CrossValidation(
            folds=folds,
            accuracy=accuracy(all_cases),
            fold_accuracies=fold_accuracies,
            std=statistics.pstdev(fold_accuracies) if len(fold_accuracies) > 1 else 0.0,
        )

    def coverage_level(self, evaluation: EvaluationSet, count: int) -> CoveragePoint:
        """Reference set of ``count`` examples per category; the rest is held out."""
        criteria = self.config.success_criteria
        positions = {id(s): i for i, s in enumerate(evaluation.seeds)}
        train = sample_per_category(evaluation.seeds, count, seed=self.config.seed)
        train_indices = sorted(positions[id(s)] for s in train)
        held_out = set(range(len(evaluation.seeds))) - set(train_indices)

        cases, train_index = evaluation.holdout(train_indices, sorted(held_out))

        by_category: dict[str, dict] = {}
        for case in cases:
            entry = by_category.setdefault(case.expected.value, {"correct": 0, "total": 0})
            entry["total"] += 1
            entry["correct"] += int(case.is_correct)
        for entry in by_category.values():
            entry["accuracy"] = entry["correct"] / entry["total"]

        edge_cases = evaluation.edge(index=train_index)
        handled = sum(
            1 for c in edge_cases
            if evaluation.edge_case_handled(c, criteria.min_confidence_threshold)
        )
        return CoveragePoint(
            examples_per_category=count,
            total_examples=len(train_indices),
            test_set_size=len(cases),
            accuracy=accuracy(cases),
            per_category_accuracy=by_category,
            edge_case_accuracy=handled / len(edge_cases) if edge_cases else None,
            edge_cases_correct=handled,
            edge_cases_total=len(edge_cases),
        )

    def per_category(self, evaluation: EvaluationSet) -> list[CategoryAnalysis]:
        """Leave-one-out accuracy per category over the full corpus."""
        cases = evaluation.leave_one_out()
        totals = category_stats(evaluation.seeds)
        grouped: dict[str, list] = {}
        for case in cases:
            grouped.setdefault(case.expected.value, []).append(case)

        analysis = []
        for category, items in grouped.items():
            confusions = Counter(
                c.predicted.value for c in items if not c.is_correct and c.predicted
            )
            analysis.append(CategoryAnalysis(
                category=category,
                accuracy=accuracy(items) or 0.0,
                avg_confidence=statistics.fmean(c.confidence for c in items),
                sample_size=len(items),
                total_examples=totals.get(category, {}).get("total", len(items)),
                confused_with=[
                    {"category": name, "count": n}
                    for name, n in confusions.most_common(TOP_CONFUSIONS)
                ],
            ))
        return analysis

    def weak_categories(self, analysis: Sequence[CategoryAnalysis]) -> list[WeakCategory]:
        floor = self.config.weak_category_floor
        weak = [
            WeakCategory(
                category=a.category,
                accuracy=a.accuracy,
                avg_confidence=a.avg_confidence,
                confused_with=a.confused_with,
                recommendation=(
                    f"Add more examples distinguishing {a.category} from "
                    f"{a.confused_with[0]['category'] if a.confused_with else 'other categories'}"
                ),
            )
            for a in analysis if a.accuracy < floor
        ]
        return sorted(weak, key=lambda w: w.accuracy)

    def analyze(self, evaluation: EvaluationSet) -> CoverageReport:
        """Run every coverage measurement against a ready evaluation set."""
        points = []
        for count in self.coverage_levels(evaluation.seeds):
            point = self.coverage_level(evaluation, count)
            logger.info(
                "Coverage %d/category: %d references, %d held out, accuracy=%s",
                count, point.total_examples, point.test_set_size,
                f"{point.accuracy:.3f}" if point.accuracy is not None else "n/a",
            )
            points.append(point)

        analysis = self.per_category(evaluation)
        weak = self.weak_categories(analysis)
        diminishing = find_diminishing_returns(points, self.config.diminishing_returns_gain)
        cross_validation = self.cross_validate(evaluation, self.config.cv_folds)
        missing_categories, missing_subcategories = uncovered(self.taxonomy, evaluation.seeds)
        if missing_categories or missing_subcategories:
            logger.warning(
                "Corpus gaps: categories=%s subcategories=%s",
                missing_categories, missing_subcategories,
            )

        report = CoverageReport(
            model_name=evaluation.model_name,
            category_stats=category_stats(evaluation.seeds),
            coverage_points=points,
            category_analysis=analysis,
            diminishing_returns_at=diminishing,
            weak_categories=weak,
            uncovered_categories=missing_categories,
            uncovered_subcategories=missing_subcategories,
            storage_estimates=estimate_storage(
                points, evaluation.index.dimensions or DEFAULT_EMBEDDING_DIM,
            ),
            cross_validation=cross_validation,
            weak_category_floor=self.config.weak_category_floor,
        )
        report.recommendation = self._recommendation(report)
        return report

    @staticmethod
    def _recommendation(report: CoverageReport) -> str:
        parts = []
        if report.diminishing_returns_at:
            d = report.diminishing_returns_at
            parts.append(
                f"Use {d.examples_per_category} examples per category "
                f"({d.accuracy * 100:.1f}% accuracy)."
            )
        if report.weak_categories:
            parts.append(
                "Focus on improving: " + ", ".join(w.category for w in report.weak_categories) + "."
            )
        if report.uncovered_categories or report.uncovered_subcategories:
            parts.append(
                "Add reference examples for: "
                + ", ".join(report.uncovered_categories + report.uncovered_subcategories) + "."
            )
        measured = [p.accuracy for p in report.coverage_points if p.accuracy is not None]
        if measured and max(measured) < TARGET_ACCURACY:
            parts.append("Consider adding more diverse examples to reach 85% target.")
        return " ".join(parts)
