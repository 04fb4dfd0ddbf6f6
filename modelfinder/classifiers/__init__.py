"""Task classifiers: k-NN embedding voting, keyword fallbacks and the service."""

from .embedding_classifier import SimilarityVotingClassifier, VoteOutcome, vote
from .keyword_classifier import KeywordTaskClassifier
from .models import (
    CalibrationConfig,
    CategoryPrediction,
    ClassificationMethod,
    ClassificationResult,
    ConfidenceLevel,
    SubcategoryPrediction,
    confidence_level,
)
from .service import TaskClassificationService

__all__ = [
    "CalibrationConfig",
    "CategoryPrediction",
    "ClassificationMethod",
    "ClassificationResult",
    "ConfidenceLevel",
    "KeywordTaskClassifier",
    "SimilarityVotingClassifier",
    "SubcategoryPrediction",
    "TaskClassificationService",
    "VoteOutcome",
    "confidence_level",
    "vote",
]
