"""Embedding backends, the reference index and the embedding engine."""

from .backends import (
    EmbeddingBackend,
    LoadedModel,
    ModelLoader,
    SentenceTransformerBackend,
    cached_loader,
    l2_normalize,
    load_sentence_transformer,
)
from .engine import EmbeddingEngine, InitializationResult
from .index import NeighborMatch, ReferenceExample, ReferenceIndex
from .progress import ProgressCallback, ProgressEvent

__all__ = [
    "EmbeddingBackend",
    "EmbeddingEngine",
    "InitializationResult",
    "LoadedModel",
    "ModelLoader",
    "NeighborMatch",
    "ProgressCallback",
    "ProgressEvent",
    "ReferenceExample",
    "ReferenceIndex",
    "SentenceTransformerBackend",
    "cached_loader",
    "l2_normalize",
    "load_sentence_transformer",
]
