"""
Task classification service.

The runtime entry point. Runs the tiers in a fixed order and returns the
first acceptable answer:

  1. embedding_similarity: accepted at or above the confidence threshold
  2. semantic: accepted above 0.5
  3. keyword: accepted when any keyword matched
  4. priority_fallback: always answers

``classify`` never raises. Embedding failures (initialization, timeout,
embedding errors) skip tier 1 and are reported in ``result.error``.
"""

import logging
import time
from pathlib import Path
from typing import Optional

from ..embeddings import EmbeddingEngine, ModelLoader, ProgressCallback
from ..errors import EmbeddingUnavailableError
from ..observability import metrics
from ..taxonomy import Taxonomy, build_reference_seeds, load_taxonomy
from .embedding_classifier import SimilarityVotingClassifier
from .keyword_classifier import KeywordTaskClassifier
from .models import (
    CalibrationConfig,
    ClassificationMethod,
    ClassificationResult,
    confidence_level,
)

logger = logging.getLogger(__name__)

SEMANTIC_ACCEPT_CONFIDENCE = 0.5


class TaskClassificationService:
    """Embedding classifier behind a confidence gate with keyword fallbacks.

    Args:
        engine: Embedding engine holding the reference corpus.
        taxonomy: Taxonomy used by the keyword tiers.
        config: Classifier parameters; defaults use the engine's model.
    """

    def __init__(
        self,
        engine: EmbeddingEngine,
        taxonomy: Taxonomy,
        config: Optional[CalibrationConfig] = None,
    ):
        self.config = config or CalibrationConfig(model_name=engine.model_name)
        self.engine = engine
        self.taxonomy = taxonomy
        self.embedding_classifier = SimilarityVotingClassifier(
            engine,
            top_k=self.config.top_k,
            voting_method=self.config.voting_method,
            confidence_threshold=self.config.confidence_threshold,
        )
        self.keyword_classifier = KeywordTaskClassifier(
            taxonomy, confidence_threshold=self.config.confidence_threshold,
        )
        self.classification_count = 0
        self.method_usage = {m.value: 0 for m in ClassificationMethod}

    @classmethod
    def from_settings(
        cls,
        settings,
        on_progress: Optional[ProgressCallback] = None,
        loader: Optional[ModelLoader] = None,
    ) -> "TaskClassificationService":
        """Build the service from ``Settings`` (optionally a calibration file)."""
        taxonomy_path = settings.resolve_path(settings.taxonomy_path) if settings.taxonomy_path else None
        taxonomy = load_taxonomy(taxonomy_path)

        if settings.calibration_file:
            config = CalibrationConfig.from_file(settings.resolve_path(settings.calibration_file))
        else:
            config = CalibrationConfig(
                model_name=settings.embedding_model,
                top_k=settings.top_k,
                voting_method=settings.voting_method,
                confidence_threshold=settings.confidence_threshold,
            )

        seeds = build_reference_seeds(taxonomy)
        config.validate_for_corpus(len(seeds))

        cache_dir: Optional[Path] = None
        if settings.model_cache_dir:
            cache_dir = settings.resolve_path(settings.model_cache_dir)

        engine = EmbeddingEngine(
            config.model_name,
            seeds,
            loader=loader,
            on_progress=on_progress,
            init_timeout=settings.init_timeout_seconds,
            cache_dir=cache_dir,
        )
        return cls(engine, taxonomy, config)

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    async def classify_with_embeddings(self, text: str) -> ClassificationResult:
        """Embedding tier alone. Raises like ``SimilarityVotingClassifier.classify``."""
        return await self.embedding_classifier.classify(text)

    def classify_semantic(self, text: str) -> ClassificationResult:
        return self.keyword_classifier.classify_semantic(text)

    def classify_keywords(self, text: str) -> ClassificationResult:
        return self.keyword_classifier.classify_keywords(text)

    def priority_fallback(self, text: str = "") -> ClassificationResult:
        return self.keyword_classifier.priority_fallback(text)

    def meets_confidence_threshold(self, confidence: float) -> bool:
        return confidence >= self.config.confidence_threshold

    def suggest_improvements(self, result: ClassificationResult) -> list[str]:
        return self.keyword_classifier.suggest_improvements(result)

    async def warm_up(self) -> bool:
        """Start engine initialization eagerly; True when the engine is ready."""
        result = await self.engine.initialize()
        return result.success

    # ------------------------------------------------------------------
    # Fallback chain
    # ------------------------------------------------------------------

    async def classify(self, text: str, allow_fallback: bool = True) -> ClassificationResult:
        """Classify ``text`` through the tier chain. Never raises.

        With ``allow_fallback=False`` a below-threshold embedding result is
        returned as-is (``confidence_level="low"``). When the embedding tier
        produced nothing the keyword tiers still answer.
        """
        t0 = time.perf_counter()
        text = text or ""
        tiers: list[str] = []
        error: Optional[str] = None

        try:
            if text.strip():
                tiers.append(ClassificationMethod.EMBEDDING_SIMILARITY.value)
                try:
                    result = await self.classify_with_embeddings(text)
                except EmbeddingUnavailableError as e:
                    error = str(e)
                    reason = "embedding_unavailable"
                except Exception as e:
                    logger.exception("Embedding tier failed")
                    error = f"Embedding tier failed: {e}"
                    reason = "embedding_error"
                else:
                    if self.meets_confidence_threshold(result.confidence):
                        return self._finish(result, tiers, error, t0)
                    if not allow_fallback:
                        return self._finish(result, tiers, error, t0)
                    reason = "low_confidence"
            else:
                reason = "empty_input"
            metrics.increment("classification_fallback_total", labels={"reason": reason})

            tiers.append(ClassificationMethod.SEMANTIC.value)
            result = self.classify_semantic(text)
            if result.confidence > SEMANTIC_ACCEPT_CONFIDENCE:
                return self._finish(result, tiers, error, t0)

            tiers.append(ClassificationMethod.KEYWORD.value)
            result = self.classify_keywords(text)
            if result.total_votes > 0:
                return self._finish(result, tiers, error, t0)
        except Exception as e:
            logger.exception("Classification failed, using priority fallback")
            error = error or str(e)

        tiers.append(ClassificationMethod.PRIORITY_FALLBACK.value)
        return self._finish(self.priority_fallback(text), tiers, error, t0)

    def _finish(
        self,
        result: ClassificationResult,
        tiers: list[str],
        error: Optional[str],
        t0: float,
    ) -> ClassificationResult:
        result.tiers_attempted = list(tiers)
        result.error = error
        result.confidence_level = confidence_level(
            result.confidence, self.config.confidence_threshold,
        )
        result.processing_time_ms = (time.perf_counter() - t0) * 1000

        self.classification_count += 1
        self.method_usage[result.method.value] += 1
        metrics.increment("classification_total", labels={"method": result.method.value})
        metrics.observe("classification_duration_seconds", result.processing_time_ms / 1000)

        logger.info(
            "CLASSIFY_TRACE method=%s category=%s conf=%.2f level=%s tiers=%s error=%s",
            result.method.value,
            result.top_category.value if result.top_category else None,
            result.confidence, result.confidence_level.value,
            ",".join(tiers), error,
        )
        return result

    def get_stats(self) -> dict:
        return {
            "model_name": self.engine.model_name,
            "reference_count": self.engine.reference_count,
            "classification_count": self.classification_count,
            "load_time_ms": self.engine.load_time_ms,
            "confidence_threshold": self.config.confidence_threshold,
            "initialized": self.engine.is_ready,
            "from_cache": self.engine.from_cache,
            "method_usage": dict(self.method_usage),
            "metrics": metrics.snapshot(),
        }
