"""Threshold calibration: where to put the embedding confidence gate.

Every reference example (leave-one-out) and every edge case is classified
once; each grid threshold then only re-partitions those results:

  accepted & correct            → true positive
  accepted & wrong              → false positive
  rejected & (vague or wrong)   → true negative
  rejected & correct            → false negative
"""

import logging
import statistics
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from ..embeddings import ModelLoader
from ..taxonomy import ReferenceSeed
from .config import HarnessConfig
from .evaluation import EvaluatedCase, EvaluationSet, accuracy

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.70
DEFAULT_K = 5
DEFAULT_VOTING = "weighted"


@dataclass
class ThresholdRow:
    threshold: float
    accuracy: float
    precision: float
    recall: float
    f1: float
    coverage: float
    true_positives: int
    false_positives: int
    true_negatives: int
    false_negatives: int
    accepted: int


@dataclass
class KRow:
    k: int
    accuracy: float
    avg_confidence: float
    sample_size: int


@dataclass
class VotingRow:
    method: str
    accuracy: float
    avg_confidence: float
    sample_size: int


@dataclass
class ScoreStats:
    count: int = 0
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    median: float = 0.0

    @classmethod
    def of(cls, values: Sequence[float]) -> "ScoreStats":
        if not values:
            return cls()
        return cls(
            count=len(values),
            min=min(values),
            max=max(values),
            mean=statistics.fmean(values),
            median=statistics.median(values),
        )


@dataclass
class ThresholdReport:
    model_name: str
    total_cases: int
    thresholds: list[ThresholdRow]
    k_analysis: list[KRow]
    voting_analysis: list[VotingRow]
    recommended_threshold: float
    recommended_k: int
    recommended_voting_method: str
    threshold_for_target_accuracy: Optional[float]
    score_distribution: dict[str, ScoreStats] = field(default_factory=dict)
    recommendation: str = ""

    def summary(self) -> dict:
        return {
            "recommended_threshold": self.recommended_threshold,
            "recommended_k": self.recommended_k,
            "voting_method": self.recommended_voting_method,
            "threshold_for_target_accuracy": self.threshold_for_target_accuracy,
        }


def analyze_thresholds(
    cases: Sequence[EvaluatedCase], thresholds: Sequence[float],
) -> list[ThresholdRow]:
    """Confusion counts and derived metrics at each threshold."""
    rows = []
    total = len(cases)
    for threshold in thresholds:
        tp = fp = tn = fn = 0
        for c in cases:
            if c.confidence >= threshold:
                if c.is_correct:
                    tp += 1
                else:
                    fp += 1
            elif c.is_vague or not c.is_correct:
                tn += 1
            else:
                fn += 1

        accepted = tp + fp
        precision = tp / accepted if accepted else 0.0
        recall = tp / (tp + fn) if tp + fn else 0.0
        f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0
        rows.append(ThresholdRow(
            threshold=threshold,
            accuracy=precision,
            precision=precision,
            recall=recall,
            f1=f1,
            coverage=accepted / total if total else 0.0,
            true_positives=tp,
            false_positives=fp,
            true_negatives=tn,
            false_negatives=fn,
            accepted=accepted,
        ))
    return rows


def lowest_threshold(
    rows: Sequence[ThresholdRow], target_accuracy: float, min_coverage: float = 0.0,
) -> Optional[float]:
    """Lowest grid value meeting both the accuracy target and coverage floor."""
    passing = [
        r.threshold for r in rows
        if r.accuracy >= target_accuracy and r.coverage >= min_coverage
    ]
    return min(passing) if passing else None


def best_k(rows: Sequence[KRow]) -> int:
    """Most accurate k; ties go to the smaller k."""
    if not rows:
        return DEFAULT_K
    return min(rows, key=lambda r: (-r.accuracy, r.k)).k


class ThresholdCalibrator:
    """Sweep thresholds, k and voting rule for one model."""

    def __init__(
        self,
        config: HarnessConfig,
        seeds: Sequence[ReferenceSeed],
        model_name: str,
        loader: ModelLoader,
        evaluation_factory: Optional[Callable] = None,
    ):
        self.config = config
        self.seeds = list(seeds)
        self.model_name = model_name
        self.loader = loader
        self._evaluation_factory = evaluation_factory

    async def run(self) -> ThresholdReport:
        if self._evaluation_factory is not None:
            evaluation = await self._evaluation_factory(self.model_name)
        else:
            evaluation = await EvaluationSet.build(
                self.model_name, self.seeds, self.loader, self.config,
            )
        return self.calibrate(evaluation)

    def _sample(self, evaluation: EvaluationSet, top_k=None, voting_method=None):
        return evaluation.leave_one_out(
            top_k=top_k, voting_method=voting_method,
            sample_size=self.config.sample_size, seed=self.config.seed,
        )

    def calibrate(self, evaluation: EvaluationSet) -> ThresholdReport:
        """Run every sweep against a ready evaluation set (synchronous)."""
        cfg = self.config
        references = self._sample(evaluation)
        cases = references + evaluation.edge()
        logger.info("Threshold calibration over %d cases", len(cases))

        rows = analyze_thresholds(cases, cfg.thresholds)
        recommended = lowest_threshold(rows, cfg.target_accuracy, cfg.min_coverage)

        k_rows = []
        for k in cfg.k_values:
            if k >= len(evaluation.seeds):
                logger.warning("Skipping k=%d: corpus has only %d examples", k, len(evaluation.seeds))
                continue
            sample = self._sample(evaluation, top_k=k, voting_method="weighted")
            k_rows.append(KRow(
                k=k,
                accuracy=accuracy(sample) or 0.0,
                avg_confidence=statistics.fmean(c.confidence for c in sample) if sample else 0.0,
                sample_size=len(sample),
            ))

        voting_rows = []
        for method in cfg.voting_methods:
            sample = self._sample(evaluation, top_k=DEFAULT_K, voting_method=method)
            voting_rows.append(VotingRow(
                method=method,
                accuracy=accuracy(sample) or 0.0,
                avg_confidence=statistics.fmean(c.confidence for c in sample) if sample else 0.0,
                sample_size=len(sample),
            ))
        best_voting = (
            max(voting_rows, key=lambda r: r.accuracy).method if voting_rows else DEFAULT_VOTING
        )

        distribution = {
            "correct": ScoreStats.of([c.confidence for c in cases if c.is_correct]),
            "incorrect": ScoreStats.of(
                [c.confidence for c in cases if not c.is_correct and not c.is_vague]
            ),
            "vague": ScoreStats.of([c.confidence for c in cases if c.is_vague]),
        }

        report = ThresholdReport(
            model_name=evaluation.model_name,
            total_cases=len(cases),
            thresholds=rows,
            k_analysis=k_rows,
            voting_analysis=voting_rows,
            recommended_threshold=recommended if recommended is not None else DEFAULT_THRESHOLD,
            recommended_k=best_k(k_rows),
            recommended_voting_method=best_voting,
            threshold_for_target_accuracy=lowest_threshold(rows, cfg.target_accuracy),
            score_distribution=distribution,
        )
        if recommended is None:
            logger.warning(
                "No threshold reaches %.0f%% accuracy at %.0f%% coverage; using %.2f",
                cfg.target_accuracy * 100, cfg.min_coverage * 100, DEFAULT_THRESHOLD,
            )
        report.recommendation = (
            f"Use threshold {report.recommended_threshold:.2f} with "
            f"k={report.recommended_k} ({report.recommended_voting_method} voting)"
        )
        return report
