"""Cold start, warm start and inference latency measurements."""

import logging
import statistics
import time
from dataclasses import dataclass, field
from typing import Callable, Sequence

from ..classifiers import KeywordTaskClassifier, SimilarityVotingClassifier
from ..embeddings import EmbeddingEngine, ModelLoader, cached_loader
from ..errors import CalibrationError
from ..observability import Histogram
from ..taxonomy import ReferenceSeed, Taxonomy
from .config import HarnessConfig

logger = logging.getLogger(__name__)

INFERENCE_WARMUP_RUNS = 3
LAZY_KEYWORD_SAMPLE = 10
# Share of queries assumed answerable by the keyword tier alone
KEYWORD_SHARE = 0.70
LAZY_VIABLE_RATIO = 0.8
RUNTIME_OVERHEAD_RATIO = 0.3


@dataclass
class TimingStats:
    iterations: int
    min_ms: float
    max_ms: float
    avg_ms: float
    median_ms: float
    times: list[float] = field(default_factory=list)

    @classmethod
    def of(cls, times: Sequence[float], keep: int = 10) -> "TimingStats":
        return cls(
            iterations=len(times),
            min_ms=min(times),
            max_ms=max(times),
            avg_ms=statistics.fmean(times),
            median_ms=statistics.median(times),
            times=[round(t, 2) for t in times[:keep]],
        )


@dataclass
class InferenceStats(TimingStats):
    p50_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0


@dataclass
class LazyLoadingAnalysis:
    keyword_match_ms: float
    embedding_load_ms: float
    total_with_lazy_ms: float
    total_without_lazy_ms: float
    improvement: float
    viable: bool


@dataclass
class MemoryEstimate:
    model_size_mb: float
    embedding_storage_mb: float
    runtime_overhead_mb: float
    total_estimate_mb: float
    example_count: int


@dataclass
class PerformanceReport:
    model_name: str
    cold_start: TimingStats
    warm_start: TimingStats
    inference: InferenceStats
    lazy_loading: LazyLoadingAnalysis
    memory: MemoryEstimate
    meets_desktop_target: bool
    meets_mobile_target: bool
    recommendations: list[str] = field(default_factory=list)
    recommendation: str = ""

    def summary(self) -> dict:
        return {
            "cold_load_ms": self.cold_start.avg_ms,
            "warm_load_ms": self.warm_start.avg_ms,
            "inference_ms": self.inference.avg_ms,
            "meets_desktop_target": self.meets_desktop_target,
            "meets_mobile_target": self.meets_mobile_target,
            "lazy_loading_viable": self.lazy_loading.viable,
        }


def lazy_loading_analysis(keyword_ms: float, embedding_load_ms: float) -> LazyLoadingAnalysis:
    """Compare loading the model up front against keyword-first lazy loading."""
    with_lazy = (
        keyword_ms * KEYWORD_SHARE
        + (embedding_load_ms + keyword_ms) * (1 - KEYWORD_SHARE)
    )
    without_lazy = embedding_load_ms
    return LazyLoadingAnalysis(
        keyword_match_ms=keyword_ms,
        embedding_load_ms=embedding_load_ms,
        total_with_lazy_ms=with_lazy,
        total_without_lazy_ms=without_lazy,
        improvement=1 - with_lazy / without_lazy if without_lazy > 0 else 0.0,
        viable=with_lazy < without_lazy * LAZY_VIABLE_RATIO,
    )


def estimate_memory(model_size_mb: float, example_count: int, dimensions: int) -> MemoryEstimate:
    embedding_mb = example_count * dimensions * 4 / (1024 * 1024)
    overhead_mb = model_size_mb * RUNTIME_OVERHEAD_RATIO
    return MemoryEstimate(
        model_size_mb=model_size_mb,
        embedding_storage_mb=round(embedding_mb, 2),
        runtime_overhead_mb=round(overhead_mb, 2),
        total_estimate_mb=round(model_size_mb + embedding_mb + overhead_mb, 2),
        example_count=example_count,
    )


class PerformanceTester:
    """Latency measurements for one model.

    Args:
        config: Harness configuration (iterations, criteria, inputs).
        taxonomy: Taxonomy for the keyword-tier timing.
        seeds: Reference corpus embedded on every load.
        model_name: Model under test.
        loader_factory: Returns a fresh, unmemoized loader. Each cold start
            gets its own; warm starts share one memoized loader.
    """

    def __init__(
        self,
        config: HarnessConfig,
        taxonomy: Taxonomy,
        seeds: Sequence[ReferenceSeed],
        model_name: str,
        loader_factory: Callable[[], ModelLoader],
    ):
        self.config = config
        self.taxonomy = taxonomy
        self.seeds = list(seeds)
        self.model_name = model_name
        self.loader_factory = loader_factory

    async def _timed_init(self, loader: ModelLoader) -> tuple[EmbeddingEngine, float]:
        engine = EmbeddingEngine(self.model_name, self.seeds, loader=loader)
        t0 = time.perf_counter()
        result = await engine.initialize()
        elapsed = (time.perf_counter() - t0) * 1000
        if not result.success:
            raise CalibrationError(f"Failed to initialize {self.model_name}: {result.error}")
        return engine, elapsed

    async def cold_start(self) -> TimingStats:
        times = []
        for i in range(self.config.cold_start_iterations):
            engine, elapsed = await self._timed_init(self.loader_factory())
            logger.debug("Cold start %d: %.0fms", i + 1, elapsed)
            times.append(elapsed)
            engine.reset()
        return TimingStats.of(times)

    async def warm_start(self, loader: ModelLoader) -> TimingStats:
        await self._timed_init(loader)
        times = []
        for _ in range(self.config.warm_start_iterations):
            _, elapsed = await self._timed_init(loader)
            times.append(elapsed)
        return TimingStats.of(times, keep=5)

    async def inference(self, loader: ModelLoader) -> tuple[InferenceStats, EmbeddingEngine]:
        engine, _ = await self._timed_init(loader)
        classifier = SimilarityVotingClassifier(
            engine, top_k=self.config.top_k, voting_method=self.config.voting_method,
        )
        inputs = self.config.performance_inputs
        for i in range(INFERENCE_WARMUP_RUNS):
            await classifier.classify(inputs[i % len(inputs)])

        histogram = Histogram(name="inference_ms", help_text="Inference latency (ms)")
        for i in range(self.config.inference_iterations):
            t0 = time.perf_counter()
            await classifier.classify(inputs[i % len(inputs)])
            histogram.observe((time.perf_counter() - t0) * 1000)

        base = TimingStats.of(histogram.values, keep=0)
        stats = InferenceStats(
            iterations=base.iterations,
            min_ms=base.min_ms,
            max_ms=base.max_ms,
            avg_ms=base.avg_ms,
            median_ms=base.median_ms,
            p50_ms=histogram.percentile(0.50),
            p95_ms=histogram.percentile(0.95),
            p99_ms=histogram.percentile(0.99),
        )
        return stats, engine

    def keyword_match_ms(self) -> float:
        classifier = KeywordTaskClassifier(self.taxonomy)
        times = []
        for text in self.config.performance_inputs[:LAZY_KEYWORD_SAMPLE]:
            t0 = time.perf_counter()
            classifier.classify_keywords(text)
            times.append((time.perf_counter() - t0) * 1000)
        return statistics.fmean(times) if times else 0.0

    async def run(self) -> PerformanceReport:
        cfg = self.config
        criteria = cfg.success_criteria
        if cfg.cold_start_iterations < 1 or cfg.warm_start_iterations < 1 or cfg.inference_iterations < 1:
            raise CalibrationError("Performance iterations must be at least 1")
        if not cfg.performance_inputs:
            raise CalibrationError("No performance inputs configured")

        logger.info("Measuring cold start for %s", self.model_name)
        cold = await self.cold_start()

        warm_loader = cached_loader(self.loader_factory())
        logger.info("Measuring warm start for %s", self.model_name)
        warm = await self.warm_start(warm_loader)

        logger.info("Measuring inference for %s", self.model_name)
        inference, engine = await self.inference(warm_loader)

        lazy = lazy_loading_analysis(self.keyword_match_ms(), cold.avg_ms)
        memory = estimate_memory(
            cfg.model(self.model_name).expected_size_mb, len(self.seeds), engine.dimensions,
        )

        meets_desktop = (
            cold.avg_ms <= criteria.desktop_load_time_ms
            and inference.avg_ms <= criteria.desktop_inference_ms
        )
        meets_mobile = (
            cold.avg_ms <= criteria.mobile_load_time_ms
            and inference.avg_ms <= criteria.mobile_inference_ms
        )
        recommendations = self._recommendations(cold, inference, lazy)
        return PerformanceReport(
            model_name=self.model_name,
            cold_start=cold,
            warm_start=warm,
            inference=inference,
            lazy_loading=lazy,
            memory=memory,
            meets_desktop_target=meets_desktop,
            meets_mobile_target=meets_mobile,
            recommendations=recommendations,
            recommendation=" ".join(recommendations),
        )

    def _recommendations(
        self, cold: TimingStats, inference: InferenceStats, lazy: LazyLoadingAnalysis,
    ) -> list[str]:
        criteria = self.config.success_criteria
        recs = []
        if cold.avg_ms > criteria.desktop_load_time_ms:
            if lazy.viable:
                recs.append("Use lazy loading: answer from the keyword tiers until the model is ready.")
            recs.append("Start engine initialization in the background at startup.")
            recs.append("Report initialization progress to the user.")
        if inference.avg_ms > criteria.desktop_inference_ms:
            recs.append("Reduce top_k to speed up similarity search.")
            recs.append("Consider using a smaller embedding model.")
        if cold.avg_ms > criteria.mobile_load_time_ms:
            recs.append("Pre-populate the model cache so first use never downloads weights.")
        if not recs:
            recs.append("Performance targets met. Proceed with implementation.")
        return recs
