"""
Tests for k-NN similarity voting.

Acceptance criteria:
- Weighted voting over [0.92 A, 0.88 A, 0.85 B, 0.80 A, 0.78 B] -> A, 0.615, 3/5 votes
- Category scores sum to 1 whenever a neighbour voted
- Equal scores are broken by the best-ranked neighbour
- A query identical to a reference example wins its own category

Usage:
    pytest tests/test_embedding_classifier.py -v
"""

import pytest

from modelfinder.classifiers import (
    ClassificationMethod,
    ConfidenceLevel,
    SimilarityVotingClassifier,
    confidence_level,
    vote,
)
from modelfinder.embeddings import EmbeddingEngine, NeighborMatch
from modelfinder.errors import EmbeddingUnavailableError, EmptyInputError
from modelfinder.taxonomy import TaskCategory

from conftest import FakeLoader

A = TaskCategory.COMPUTER_VISION
B = TaskCategory.NATURAL_LANGUAGE_PROCESSING
C = TaskCategory.SPEECH_PROCESSING


def _match(category, similarity, subcategory="sub"):
    return NeighborMatch(
        text=f"{category.value} {similarity}",
        category=category,
        subcategory=subcategory,
        label=subcategory.title(),
        similarity=similarity,
        category_label=category.value,
    )


class TestVoting:
    """Test vote aggregation on hand-built neighbour lists."""

    def test_weighted_worked_example(self):
        matches = [_match(A, 0.92), _match(A, 0.88), _match(B, 0.85), _match(A, 0.80), _match(B, 0.78)]
        outcome = vote(matches, "weighted")

        assert outcome.predictions[0].category == A
        assert outcome.confidence == pytest.approx(0.615, abs=0.001)
        assert outcome.votes_for_winner == 3
        assert outcome.total_votes == 5

    def test_simple_voting_counts_heads(self):
        matches = [_match(A, 0.92), _match(A, 0.88), _match(B, 0.85), _match(A, 0.80), _match(B, 0.78)]
        outcome = vote(matches, "simple")
        assert outcome.confidence == pytest.approx(0.6)

    def test_scores_sum_to_one(self):
        matches = [_match(A, 0.7), _match(B, 0.6), _match(C, 0.5), _match(B, 0.4)]
        for method in ("simple", "weighted"):
            outcome = vote(matches, method)
            assert sum(p.score for p in outcome.predictions) == pytest.approx(1.0, abs=1e-6)

    def test_predictions_sorted_descending(self):
        outcome = vote([_match(C, 0.9), _match(A, 0.8), _match(A, 0.7), _match(B, 0.1)], "weighted")
        scores = [p.score for p in outcome.predictions]
        assert scores == sorted(scores, reverse=True)
        assert outcome.predictions[0].category == A

    def test_tie_broken_by_best_neighbour(self):
        """Equal scores: the category holding the most similar neighbour wins."""
        outcome = vote([_match(B, 0.9), _match(A, 0.8), _match(A, 0.7), _match(B, 0.6)], "simple")
        assert outcome.predictions[0].score == outcome.predictions[1].score
        assert outcome.predictions[0].category == B

    def test_negative_similarities_add_nothing(self):
        outcome = vote([_match(A, 0.5), _match(B, -0.3)], "weighted")
        assert outcome.predictions[0].category == A
        assert outcome.confidence == pytest.approx(1.0)
        assert outcome.predictions[1].score == pytest.approx(0.0)

    def test_all_non_positive_falls_back_to_counting(self):
        outcome = vote([_match(A, -0.1), _match(B, -0.2), _match(B, -0.5)], "weighted")
        assert outcome.predictions[0].category == B
        assert outcome.confidence == pytest.approx(2 / 3)

    def test_no_neighbours(self):
        outcome = vote([], "weighted")
        assert outcome.predictions == []
        assert outcome.confidence == 0.0

    def test_subcategories_normalized_within_winner(self):
        matches = [
            _match(A, 0.9, "detection"), _match(A, 0.6, "classification"),
            _match(A, 0.3, "detection"), _match(B, 0.8, "spam"),
        ]
        outcome = vote(matches, "weighted")
        subs = outcome.subcategory_predictions
        assert [s.subcategory for s in subs] == ["detection", "classification"]
        assert all(s.category == A for s in subs)
        assert sum(s.score for s in subs) == pytest.approx(1.0)
        assert subs[0].score == pytest.approx(1.2 / 1.8)

    def test_unknown_voting_method(self):
        with pytest.raises(ValueError):
            vote([_match(A, 0.5)], "plurality")


class TestConfidenceLevel:
    def test_bands(self):
        assert confidence_level(0.9, 0.7) == ConfidenceLevel.HIGH
        assert confidence_level(0.85, 0.7) == ConfidenceLevel.HIGH
        assert confidence_level(0.7, 0.7) == ConfidenceLevel.MEDIUM
        assert confidence_level(0.69, 0.7) == ConfidenceLevel.LOW


class TestSimilarityVotingClassifier:
    """Test classification through a ready engine."""

    @pytest.fixture
    def engine(self, seeds):
        return EmbeddingEngine("fake/model", seeds, loader=FakeLoader())

    @pytest.mark.asyncio
    async def test_reference_text_wins_its_category(self, engine, seeds):
        classifier = SimilarityVotingClassifier(engine)
        for seed in seeds:
            result = await classifier.classify(seed.text)
            assert result.top_category == seed.category
            assert result.confidence >= 0.95
            assert result.method == ClassificationMethod.EMBEDDING_SIMILARITY

    @pytest.mark.asyncio
    async def test_clear_request(self, engine):
        classifier = SimilarityVotingClassifier(engine)
        result = await classifier.classify("classify dog photos")

        assert result.top_category == A
        assert result.top_subcategory == "image_classification"
        assert result.confidence_level == ConfidenceLevel.HIGH
        assert len(result.similar_examples) == 3
        assert result.similar_examples[0].text == "classify dog breeds in photos"

    @pytest.mark.asyncio
    async def test_deterministic(self, engine):
        classifier = SimilarityVotingClassifier(engine)
        first = await classifier.classify("transcribe spoken audio")
        second = await classifier.classify("transcribe spoken audio")
        assert first.to_dict()["predictions"] == second.to_dict()["predictions"]
        assert first.confidence == second.confidence

    @pytest.mark.asyncio
    async def test_unrelated_request_is_not_confident(self, engine):
        classifier = SimilarityVotingClassifier(engine)
        result = await classifier.classify("analyze data")
        assert 0.0 <= result.confidence < 0.70
        assert result.confidence_level == ConfidenceLevel.LOW

    @pytest.mark.asyncio
    async def test_empty_input_raises(self, engine):
        classifier = SimilarityVotingClassifier(engine)
        with pytest.raises(EmptyInputError):
            await classifier.classify("   ")

    @pytest.mark.asyncio
    async def test_failed_engine_raises(self, seeds):
        engine = EmbeddingEngine("fake/model", seeds, loader=FakeLoader(fail=True))
        classifier = SimilarityVotingClassifier(engine)
        with pytest.raises(EmbeddingUnavailableError):
            await classifier.classify("detect spam emails")

    @pytest.mark.asyncio
    async def test_threshold_monotonicity(self, engine):
        """Accepted at a higher threshold implies accepted at every lower one."""
        texts = ["classify dog photos", "analyze data", "filter spam", "caption lectures"]
        results = [await SimilarityVotingClassifier(engine).classify(t) for t in texts]
        thresholds = [0.5, 0.6, 0.7, 0.8, 0.9]
        for result in results:
            accepted = [
                SimilarityVotingClassifier(engine, confidence_threshold=t)
                .meets_confidence_threshold(result.confidence)
                for t in thresholds
            ]
            # Once rejected, never accepted again at a higher threshold
            assert accepted == sorted(accepted, reverse=True)

    def test_invalid_parameters(self, engine):
        with pytest.raises(ValueError):
            SimilarityVotingClassifier(engine, top_k=0)
        with pytest.raises(ValueError):
            SimilarityVotingClassifier(engine, confidence_threshold=1.5)
