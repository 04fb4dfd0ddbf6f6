"""Shared evaluation data: the corpus embedded once per model.

Leave-one-out is exact and cheap: every reference vector is already in the
index, so holding an example out means excluding its own position from the
neighbour search.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

import numpy as np

from ..classifiers import SimilarityVotingClassifier
from ..embeddings import EmbeddingEngine, ModelLoader, ReferenceIndex
from ..errors import CalibrationError
from ..taxonomy import ReferenceSeed, TaskCategory, leave_one_out_indices
from .config import EdgeCase, HarnessConfig

logger = logging.getLogger(__name__)


@dataclass
class EvaluatedCase:
    """One prediction compared against its expected category."""
    text: str
    expected: Optional[TaskCategory]
    predicted: Optional[TaskCategory]
    confidence: float
    top_categories: list[TaskCategory] = field(default_factory=list)
    is_edge_case: bool = False

    @property
    def is_vague(self) -> bool:
        return self.expected is None

    @property
    def is_correct(self) -> bool:
        return self.expected is not None and self.predicted == self.expected

    @property
    def in_top3(self) -> bool:
        return self.expected is not None and self.expected in self.top_categories[:3]


def _normalized(text: str) -> str:
    return " ".join(text.lower().split())


def accuracy(cases: Sequence[EvaluatedCase]) -> Optional[float]:
    """Top-1 accuracy, or None for an empty set."""
    if not cases:
        return None
    return sum(1 for c in cases if c.is_correct) / len(cases)


class EvaluationSet:
    """A ready engine plus pre-computed edge-case vectors for one model.

    Build with ``await EvaluationSet.build(...)``.
    """

    def __init__(
        self,
        engine: EmbeddingEngine,
        seeds: Sequence[ReferenceSeed],
        edge_cases: Sequence[EdgeCase],
        edge_vectors: np.ndarray,
        classifier: SimilarityVotingClassifier,
        load_time_ms: int = 0,
    ):
        self.engine = engine
        self.seeds = list(seeds)
        self.edge_cases = list(edge_cases)
        self.edge_vectors = edge_vectors
        self.classifier = classifier
        self.load_time_ms = load_time_ms

    @classmethod
    async def build(
        cls,
        model_name: str,
        seeds: Sequence[ReferenceSeed],
        loader: ModelLoader,
        config: HarnessConfig,
    ) -> "EvaluationSet":
        """Load ``model_name`` and embed the corpus and edge cases.

        Raises:
            CalibrationError: the model could not be initialized.
        """
        engine = EmbeddingEngine(model_name, seeds, loader=loader)
        init = await engine.initialize()
        if not init.success:
            raise CalibrationError(f"Failed to initialize {model_name}: {init.error}")

        edge_vectors = await engine.embed_batch([e.text for e in config.edge_cases])
        classifier = SimilarityVotingClassifier(
            engine, top_k=config.top_k, voting_method=config.voting_method,
        )
        logger.info(
            "Evaluation set for %s: %d references, %d edge cases (load %dms)",
            model_name, len(seeds), len(config.edge_cases), init.load_time_ms,
        )
        return cls(
            engine, seeds, config.edge_cases, edge_vectors, classifier,
            load_time_ms=init.load_time_ms,
        )

    @property
    def model_name(self) -> str:
        return self.engine.model_name

    @property
    def index(self) -> ReferenceIndex:
        return self.engine.index

    def _case(
        self,
        vector: np.ndarray,
        index: ReferenceIndex,
        text: str,
        expected: Optional[TaskCategory],
        top_k: Optional[int],
        voting_method: Optional[str],
        exclude: Optional[Iterable[int]] = None,
        is_edge_case: bool = False,
    ) -> EvaluatedCase:
        result = self.classifier.classify_embedding(
            vector, index, text=text, top_k=top_k,
            voting_method=voting_method, exclude=exclude,
        )
        return EvaluatedCase(
            text=text,
            expected=expected,
            predicted=result.top_category,
            confidence=result.confidence,
            top_categories=[p.category for p in result.predictions],
            is_edge_case=is_edge_case,
        )

    def leave_one_out(
        self,
        top_k: Optional[int] = None,
        voting_method: Optional[str] = None,
        sample_size: Optional[int] = None,
        seed: int = 42,
    ) -> list[EvaluatedCase]:
        """Classify each sampled reference against all the others."""
        index = self.index
        cases = []
        for i in leave_one_out_indices(self.seeds, sample_size=sample_size, seed=seed):
            example = index.examples[i]
            cases.append(self._case(
                index.matrix[i], index, example.text, example.category,
                top_k, voting_method, exclude=(i,),
            ))
        return cases

    def holdout(
        self,
        train_indices: Sequence[int],
        test_indices: Sequence[int],
        top_k: Optional[int] = None,
        voting_method: Optional[str] = None,
    ) -> tuple[list[EvaluatedCase], ReferenceIndex]:
        """Classify ``test_indices`` against a reference set of ``train_indices``."""
        index = self.index
        train = index.subset(train_indices)
        cases = [
            self._case(
                index.matrix[i], train, index.examples[i].text,
                index.examples[i].category, top_k, voting_method,
            )
            for i in test_indices
        ]
        return cases, train

    def edge(
        self,
        index: Optional[ReferenceIndex] = None,
        top_k: Optional[int] = None,
        voting_method: Optional[str] = None,
    ) -> list[EvaluatedCase]:
        """Classify the edge cases. A reference with the same text is held out."""
        index = index if index is not None else self.index
        positions: dict[str, list[int]] = {}
        for i, example in enumerate(index.examples):
            positions.setdefault(_normalized(example.text), []).append(i)
        return [
            self._case(
                self.edge_vectors[j], index, edge.text, edge.expected_category,
                top_k, voting_method,
                exclude=positions.get(_normalized(edge.text), ()),
                is_edge_case=True,
            )
            for j, edge in enumerate(self.edge_cases)
        ]

    def edge_case_handled(self, case: EvaluatedCase, min_confidence: float) -> bool:
        """Vague inputs must stay below ``min_confidence``; clear ones must be right."""
        if case.is_vague:
            return case.confidence < min_confidence
        return case.is_correct

    async def timed_inference(self, texts: Sequence[str]) -> list[float]:
        """End-to-end latency (embed + vote) per text, in ms."""
        timings = []
        for text in texts:
            t0 = time.perf_counter()
            await self.classifier.classify(text)
            timings.append((time.perf_counter() - t0) * 1000)
        return timings
