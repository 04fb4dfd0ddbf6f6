"""Classification result schema and classifier configuration."""

import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal, Optional

from ..embeddings import NeighborMatch
from ..errors import ModelFinderError
from ..taxonomy import TaskCategory

logger = logging.getLogger(__name__)

VotingMethod = Literal["simple", "weighted"]

# =============================================================================
# Defaults. The embedding gate accepts at or above the threshold
# =============================================================================
DEFAULT_MODEL_NAME = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_TOP_K = 5
DEFAULT_VOTING_METHOD: VotingMethod = "weighted"
DEFAULT_CONFIDENCE_THRESHOLD = 0.70
HIGH_CONFIDENCE = 0.85


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ClassificationMethod(str, Enum):
    """Which tier produced a result."""
    EMBEDDING_SIMILARITY = "embedding_similarity"
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    PRIORITY_FALLBACK = "priority_fallback"


def confidence_level(
    confidence: float, threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
) -> ConfidenceLevel:
    """Band a confidence: high >= 0.85, medium >= threshold, else low."""
    if confidence >= HIGH_CONFIDENCE:
        return ConfidenceLevel.HIGH
    if confidence >= threshold:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


@dataclass
class CategoryPrediction:
    category: TaskCategory
    label: str
    score: float

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "label": self.label,
            "score": round(self.score, 4),
        }


@dataclass
class SubcategoryPrediction:
    category: TaskCategory
    subcategory: str
    label: str
    score: float

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "subcategory": self.subcategory,
            "label": self.label,
            "score": round(self.score, 4),
        }


@dataclass
class ClassificationResult:
    """Outcome of one classification request.

    ``predictions`` is ranked best first; the top score is the confidence.
    """
    input: str
    predictions: list[CategoryPrediction]
    confidence: float
    confidence_level: ConfidenceLevel
    method: ClassificationMethod
    subcategory_predictions: list[SubcategoryPrediction] = field(default_factory=list)
    votes_for_winner: int = 0
    total_votes: int = 0
    processing_time_ms: float = 0.0
    similar_examples: list[NeighborMatch] = field(default_factory=list)
    tiers_attempted: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def top_category(self) -> Optional[TaskCategory]:
        return self.predictions[0].category if self.predictions else None

    @property
    def top_subcategory(self) -> Optional[str]:
        return self.subcategory_predictions[0].subcategory if self.subcategory_predictions else None

    def to_dict(self) -> dict:
        return {
            "input": self.input,
            "predictions": [p.to_dict() for p in self.predictions],
            "subcategory_predictions": [p.to_dict() for p in self.subcategory_predictions],
            "confidence": round(self.confidence, 4),
            "confidence_level": self.confidence_level.value,
            "method": self.method.value,
            "votes_for_winner": self.votes_for_winner,
            "total_votes": self.total_votes,
            "processing_time_ms": round(self.processing_time_ms, 2),
            "similar_examples": [m.to_dict() for m in self.similar_examples],
            "tiers_attempted": list(self.tiers_attempted),
            "error": self.error,
        }


@dataclass
class CalibrationConfig:
    """Classifier parameters chosen by calibration."""
    model_name: str = DEFAULT_MODEL_NAME
    top_k: int = DEFAULT_TOP_K
    voting_method: VotingMethod = DEFAULT_VOTING_METHOD
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD

    def __post_init__(self):
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError(
                f"confidence_threshold must be within [0, 1], got {self.confidence_threshold}"
            )
        if self.top_k < 1:
            raise ValueError(f"top_k must be at least 1, got {self.top_k}")
        if self.voting_method not in ("simple", "weighted"):
            raise ValueError(f"Unknown voting method: {self.voting_method}")

    def validate_for_corpus(self, corpus_size: int) -> None:
        """Raise if ``top_k`` exceeds the number of reference examples."""
        if self.top_k > corpus_size:
            raise ValueError(
                f"top_k={self.top_k} exceeds the reference corpus size ({corpus_size})"
            )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CalibrationConfig":
        known = {k: data[k] for k in ("model_name", "top_k", "voting_method",
                                      "confidence_threshold") if k in data}
        return cls(**known)

    @classmethod
    def from_file(cls, path: Path) -> "CalibrationConfig":
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ModelFinderError(f"Cannot read calibration file {path}: {e}") from e
        logger.info("Loaded calibration config from %s", path)
        return cls.from_dict(data)

    def to_file(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return path
