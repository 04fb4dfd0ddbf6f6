"""Embedding-based task classifier.

Classifies a task description by k-nearest-neighbour voting over the
reference corpus: embed the query, take the k most similar reference
examples, and let them vote for their categories.

Voting:
  simple: every retained neighbour adds 1
  weighted: every retained neighbour adds its similarity (negatives add 0)

Scores are normalized by the total contribution, so category scores sum to
1 and the winner's score is the confidence. Equal scores are ordered by
which category holds the single most similar neighbour.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

import numpy as np

from ..embeddings import EmbeddingEngine, NeighborMatch, ReferenceIndex
from ..errors import EmbeddingUnavailableError, EmptyInputError
from ..taxonomy import TaskCategory
from .models import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    DEFAULT_TOP_K,
    DEFAULT_VOTING_METHOD,
    CategoryPrediction,
    ClassificationMethod,
    ClassificationResult,
    ConfidenceLevel,
    SubcategoryPrediction,
    VotingMethod,
    confidence_level,
)

logger = logging.getLogger(__name__)

SIMILAR_EXAMPLES_SHOWN = 3

# Decimal places compared when ranking scores; closer scores tie
_TIE_PRECISION = 9


@dataclass
class VoteOutcome:
    """Aggregated neighbour votes."""
    predictions: list[CategoryPrediction] = field(default_factory=list)
    subcategory_predictions: list[SubcategoryPrediction] = field(default_factory=list)
    votes_for_winner: int = 0
    total_votes: int = 0

    @property
    def confidence(self) -> float:
        return self.predictions[0].score if self.predictions else 0.0


def _contributions(matches: Sequence[NeighborMatch], voting_method: VotingMethod) -> list[float]:
    if voting_method == "simple":
        return [1.0] * len(matches)
    if voting_method != "weighted":
        raise ValueError(f"Unknown voting method: {voting_method}")
    weights = [max(m.similarity, 0.0) for m in matches]
    if sum(weights) <= 0.0:
        # No positive similarity anywhere: count heads instead
        return [1.0] * len(matches)
    return weights


def vote(
    matches: Sequence[NeighborMatch],
    voting_method: VotingMethod = DEFAULT_VOTING_METHOD,
) -> VoteOutcome:
    """Aggregate neighbour votes into ranked category and subcategory scores."""
    if not matches:
        return VoteOutcome()

    ordered = sorted(matches, key=lambda m: -m.similarity)
    weights = _contributions(ordered, voting_method)
    total = sum(weights)

    totals: dict[TaskCategory, float] = {}
    best_rank: dict[TaskCategory, int] = {}
    labels: dict[TaskCategory, str] = {}
    for rank, (match, weight) in enumerate(zip(ordered, weights)):
        totals[match.category] = totals.get(match.category, 0.0) + weight
        best_rank.setdefault(match.category, rank)
        labels.setdefault(match.category, match.category_label or match.category.value)

    scores = {c: t / total for c, t in totals.items()}
    ranked = sorted(scores, key=lambda c: (-round(scores[c], _TIE_PRECISION), best_rank[c]))
    predictions = [
        CategoryPrediction(category=c, label=labels[c], score=scores[c]) for c in ranked
    ]

    winner = ranked[0]
    winner_pairs = [(m, w) for m, w in zip(ordered, weights) if m.category == winner]
    winner_total = sum(w for _, w in winner_pairs)

    sub_totals: dict[str, float] = {}
    sub_best: dict[str, int] = {}
    sub_labels: dict[str, str] = {}
    for rank, (match, weight) in enumerate(winner_pairs):
        sub_totals[match.subcategory] = sub_totals.get(match.subcategory, 0.0) + weight
        sub_best.setdefault(match.subcategory, rank)
        sub_labels.setdefault(match.subcategory, match.label)

    sub_scores = {
        s: (t / winner_total if winner_total > 0 else 1.0 / len(sub_totals))
        for s, t in sub_totals.items()
    }
    sub_ranked = sorted(
        sub_scores, key=lambda s: (-round(sub_scores[s], _TIE_PRECISION), sub_best[s]),
    )
    subcategory_predictions = [
        SubcategoryPrediction(
            category=winner, subcategory=s, label=sub_labels[s], score=sub_scores[s],
        )
        for s in sub_ranked
    ]

    return VoteOutcome(
        predictions=predictions,
        subcategory_predictions=subcategory_predictions,
        votes_for_winner=len(winner_pairs),
        total_votes=len(ordered),
    )


class SimilarityVotingClassifier:
    """k-NN task classifier over an ``EmbeddingEngine``'s reference index.

    Args:
        engine: Embedding engine; initialized lazily on first classify.
        top_k: Neighbours retained per query.
        voting_method: ``"weighted"`` or ``"simple"``.
        confidence_threshold: Lower bound of the medium confidence band.
    """

    def __init__(
        self,
        engine: EmbeddingEngine,
        top_k: int = DEFAULT_TOP_K,
        voting_method: VotingMethod = DEFAULT_VOTING_METHOD,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ):
        if top_k < 1:
            raise ValueError("top_k must be at least 1")
        if not 0.0 <= confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be within [0, 1]")
        self.engine = engine
        self.top_k = top_k
        self.voting_method = voting_method
        self.confidence_threshold = confidence_threshold
        self.classification_count = 0

    def confidence_level(self, confidence: float) -> ConfidenceLevel:
        return confidence_level(confidence, self.confidence_threshold)

    def meets_confidence_threshold(self, confidence: float) -> bool:
        return confidence >= self.confidence_threshold

    async def classify(
        self,
        text: str,
        top_k: Optional[int] = None,
        voting_method: Optional[VotingMethod] = None,
    ) -> ClassificationResult:
        """Classify a task description.

        Raises:
            EmptyInputError: ``text`` is empty or whitespace.
            EmbeddingUnavailableError: the engine failed to initialize.
        """
        if not text or not text.strip():
            raise EmptyInputError("Cannot classify empty input")

        t0 = time.perf_counter()
        init = await self.engine.initialize()
        if not init.success:
            raise EmbeddingUnavailableError(f"Embedding engine unavailable: {init.error}")

        query = await self.engine.embed(text)
        result = self.classify_embedding(
            query,
            self.engine.index,
            text=text,
            top_k=top_k,
            voting_method=voting_method,
        )
        result.processing_time_ms = (time.perf_counter() - t0) * 1000
        self.classification_count += 1

        logger.info(
            "CLASSIFY_TRACE method=embedding category=%s conf=%.2f level=%s "
            "votes=%d/%d top3=%s",
            result.top_category.value if result.top_category else None,
            result.confidence, result.confidence_level.value,
            result.votes_for_winner, result.total_votes,
            [(p.category.value, round(p.score, 2)) for p in result.predictions[:3]],
        )
        return result

    def classify_embedding(
        self,
        query: np.ndarray,
        index: ReferenceIndex,
        text: str = "",
        top_k: Optional[int] = None,
        voting_method: Optional[VotingMethod] = None,
        exclude: Optional[Iterable[int]] = None,
    ) -> ClassificationResult:
        """Score an already-embedded query against ``index`` (synchronous)."""
        matches = index.nearest(query, top_k or self.top_k, exclude=exclude)
        outcome = vote(matches, voting_method or self.voting_method)
        confidence = outcome.confidence

        return ClassificationResult(
            input=text,
            predictions=outcome.predictions,
            subcategory_predictions=outcome.subcategory_predictions,
            confidence=confidence,
            confidence_level=self.confidence_level(confidence),
            method=ClassificationMethod.EMBEDDING_SIMILARITY,
            votes_for_winner=outcome.votes_for_winner,
            total_votes=outcome.total_votes,
            similar_examples=matches[:SIMILAR_EXAMPLES_SHOWN],
        )
