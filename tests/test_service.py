"""
Tests for the classification service: confidence gate and fallback chain.

Acceptance criteria:
- Confident embedding results are returned from the embedding tier
- Low-confidence results escalate past the embedding tier
- Embedding failures degrade to the keyword tiers and never raise
- A category without reference examples is never predicted by embeddings

Usage:
    pytest tests/test_service.py -v
"""

import asyncio
import json
import time

import pytest

from conftest import FakeLoader
from modelfinder.classifiers import (
    CalibrationConfig,
    ClassificationMethod,
    ConfidenceLevel,
    TaskClassificationService,
)
from modelfinder.config import Settings
from modelfinder.embeddings import EmbeddingEngine
from modelfinder.errors import ModelFinderError
from modelfinder.observability import metrics
from modelfinder.taxonomy import TaskCategory


@pytest.fixture
def service(taxonomy, seeds):
    engine = EmbeddingEngine("fake/model", seeds, loader=FakeLoader())
    return TaskClassificationService(engine, taxonomy)


@pytest.fixture
def broken_service(taxonomy, seeds):
    engine = EmbeddingEngine("fake/model", seeds, loader=FakeLoader(fail=True))
    return TaskClassificationService(engine, taxonomy)


class TestFallbackChain:
    """Test tier selection."""

    @pytest.mark.asyncio
    async def test_confident_embedding_result(self, service):
        result = await service.classify("classify dog photos")
        assert result.method == ClassificationMethod.EMBEDDING_SIMILARITY
        assert result.top_category == TaskCategory.COMPUTER_VISION
        assert result.confidence >= 0.70
        assert result.tiers_attempted == ["embedding_similarity"]
        assert result.error is None

    @pytest.mark.asyncio
    async def test_vague_request_escalates(self, service):
        result = await service.classify("analyze data")
        assert result.method != ClassificationMethod.EMBEDDING_SIMILARITY
        assert result.tiers_attempted[0] == "embedding_similarity"
        assert len(result.tiers_attempted) > 1
        assert metrics.counter("classification_fallback_total").get(
            {"reason": "low_confidence"}
        ) == 1

    @pytest.mark.asyncio
    async def test_no_fallback_returns_low_embedding_result(self, service):
        result = await service.classify("analyze data", allow_fallback=False)
        assert result.method == ClassificationMethod.EMBEDDING_SIMILARITY
        assert result.confidence < 0.70
        assert result.confidence_level == ConfidenceLevel.LOW

    @pytest.mark.asyncio
    async def test_semantic_tier_answers_when_embedding_unsure(self, service):
        result = await service.classify("forecast sales")
        assert result.method == ClassificationMethod.SEMANTIC
        assert result.top_category == TaskCategory.TIME_SERIES

    @pytest.mark.asyncio
    async def test_nothing_matches_uses_priority_fallback(self, service):
        result = await service.classify("xyzzy plugh")
        assert result.method == ClassificationMethod.PRIORITY_FALLBACK
        assert result.tiers_attempted == [
            "embedding_similarity", "semantic", "keyword", "priority_fallback",
        ]
        assert result.confidence == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_empty_input_skips_embedding(self, service):
        result = await service.classify("")
        assert result.method == ClassificationMethod.PRIORITY_FALLBACK
        assert "embedding_similarity" not in result.tiers_attempted


class TestDegradation:
    """Test that embedding failures never escape classify()."""

    @pytest.mark.asyncio
    async def test_failed_engine_uses_keyword_tiers(self, broken_service):
        result = await broken_service.classify("transcribe audio recordings")
        assert result.method in (ClassificationMethod.SEMANTIC, ClassificationMethod.KEYWORD)
        assert result.top_category == TaskCategory.SPEECH_PROCESSING
        assert "weights unreachable" in result.error
        assert metrics.counter("classification_fallback_total").get(
            {"reason": "embedding_unavailable"}
        ) == 1

    @pytest.mark.asyncio
    async def test_failed_engine_ignores_no_fallback(self, broken_service):
        result = await broken_service.classify("transcribe audio recordings", allow_fallback=False)
        assert result.method != ClassificationMethod.EMBEDDING_SIMILARITY
        assert result.error

    @pytest.mark.asyncio
    async def test_embedding_error_is_contained(self, service, monkeypatch):
        async def explode(text):
            raise RuntimeError("encoder crashed")

        monkeypatch.setattr(service, "classify_with_embeddings", explode)
        result = await service.classify("transcribe audio recordings")
        assert result.method != ClassificationMethod.EMBEDDING_SIMILARITY
        assert "encoder crashed" in result.error

    def test_stalled_model_load_returns_promptly(self, taxonomy, seeds):
        engine = EmbeddingEngine(
            "fake/model", seeds, loader=FakeLoader(delay=4.0), init_timeout=0.2,
        )
        service = TaskClassificationService(engine, taxonomy)

        t0 = time.monotonic()
        result = asyncio.run(service.classify("detect spam emails"))
        elapsed = time.monotonic() - t0

        assert result.method != ClassificationMethod.EMBEDDING_SIMILARITY
        assert result.top_category == TaskCategory.NATURAL_LANGUAGE_PROCESSING
        assert "timed out" in result.error
        assert elapsed < 2.0

    @pytest.mark.asyncio
    async def test_reset_during_classify_is_contained(self, taxonomy, seeds):
        engine = EmbeddingEngine("fake/model", seeds, loader=FakeLoader(delay=0.3))
        service = TaskClassificationService(engine, taxonomy)

        pending = asyncio.ensure_future(service.classify("detect spam emails"))
        await asyncio.sleep(0.05)
        engine.reset()
        result = await pending

        assert result.method != ClassificationMethod.EMBEDDING_SIMILARITY
        assert "reset" in result.error

    @pytest.mark.asyncio
    async def test_keyword_error_falls_to_priority(self, broken_service, monkeypatch):
        def explode(text):
            raise RuntimeError("index corrupted")

        monkeypatch.setattr(broken_service, "classify_semantic", explode)
        result = await broken_service.classify("transcribe audio")
        assert result.method == ClassificationMethod.PRIORITY_FALLBACK


class TestCorpusGaps:
    """A category with zero reference examples."""

    @pytest.mark.asyncio
    async def test_gap_category_never_predicted_by_embeddings(self, service, seeds):
        queries = [s.text for s in seeds] + ["forecast sales", "predict prices", "analyze data"]
        for text in queries:
            result = await service.embedding_classifier.classify(text)
            assert TaskCategory.TIME_SERIES not in [p.category for p in result.predictions]


class TestStatsAndConfig:
    @pytest.mark.asyncio
    async def test_get_stats(self, service):
        await service.warm_up()
        await service.classify("classify dog photos")
        await service.classify("xyzzy")

        stats = service.get_stats()
        assert stats["initialized"] is True
        assert stats["classification_count"] == 2
        assert stats["reference_count"] == 9
        assert stats["confidence_threshold"] == 0.70
        assert stats["method_usage"]["embedding_similarity"] == 1
        assert stats["method_usage"]["priority_fallback"] == 1
        assert stats["metrics"]["counters"]["classification_total"] == 2

    def test_meets_confidence_threshold(self, service):
        assert service.meets_confidence_threshold(0.70)
        assert not service.meets_confidence_threshold(0.6999)

    def test_from_settings_with_calibration_file(self, tmp_path, taxonomy_file):
        calibration = tmp_path / "recommended_config.json"
        calibration.write_text(json.dumps({
            "model_name": "fake/calibrated",
            "top_k": 3,
            "voting_method": "simple",
            "confidence_threshold": 0.65,
        }), encoding="utf-8")
        settings = Settings(taxonomy_path=taxonomy_file, calibration_file=calibration)

        service = TaskClassificationService.from_settings(settings, loader=FakeLoader())

        assert service.engine.model_name == "fake/calibrated"
        assert service.embedding_classifier.top_k == 3
        assert service.embedding_classifier.voting_method == "simple"
        assert service.meets_confidence_threshold(0.65)

    def test_from_settings_rejects_oversized_k(self, taxonomy_file):
        settings = Settings(taxonomy_path=taxonomy_file, top_k=50)
        with pytest.raises(ValueError, match="exceeds"):
            TaskClassificationService.from_settings(settings, loader=FakeLoader())

    def test_unreadable_calibration_file(self, tmp_path, taxonomy_file):
        bad = tmp_path / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        settings = Settings(taxonomy_path=taxonomy_file, calibration_file=bad)
        with pytest.raises(ModelFinderError):
            TaskClassificationService.from_settings(settings, loader=FakeLoader())


class TestCalibrationConfig:
    def test_validation(self):
        with pytest.raises(ValueError):
            CalibrationConfig(confidence_threshold=1.2)
        with pytest.raises(ValueError):
            CalibrationConfig(top_k=0)
        with pytest.raises(ValueError):
            CalibrationConfig(voting_method="plurality")

    def test_file_round_trip(self, tmp_path):
        config = CalibrationConfig(model_name="fake/x", top_k=7, confidence_threshold=0.75)
        path = config.to_file(tmp_path / "nested" / "config.json")
        assert CalibrationConfig.from_file(path) == config
