"""
Embedding backends and model acquisition.

A backend turns text into L2-normalized vectors. The default backend wraps a
sentence-transformers model whose weights are fetched from the Hugging Face
Hub once and served from the local cache afterwards.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

import numpy as np
from tqdm import tqdm

from ..errors import InitializationError
from .progress import ProgressCallback, ProgressEvent

logger = logging.getLogger(__name__)

# Models that expect an instruction prefix on every input
_INPUT_PREFIXES = {
    "intfloat/e5-small-v2": "query: ",
}


def l2_normalize(vectors: np.ndarray) -> np.ndarray:
    """L2-normalize a vector or the rows of a matrix. Zero rows stay zero."""
    vectors = np.asarray(vectors, dtype=np.float32)
    if vectors.ndim == 1:
        norm = float(np.linalg.norm(vectors))
        return vectors if norm < 1e-12 else vectors / norm
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms < 1e-12] = 1.0
    return vectors / norms


class EmbeddingBackend(ABC):
    """Abstract base class for embedding backends."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Return the dimension of embeddings produced by this backend."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name/identifier."""

    @abstractmethod
    def encode(self, texts: Sequence[str]) -> np.ndarray:
        """
        Embed texts and return a ``(len(texts), dimensions)`` array.

        Rows must be L2-normalized.
        """


class SentenceTransformerBackend(EmbeddingBackend):
    """Local embedding backend using sentence-transformers."""

    def __init__(self, model_instance, model_name: str):
        self.model_instance = model_instance
        self.model = model_name
        self._prefix = _INPUT_PREFIXES.get(model_name, "")
        self._dimensions = model_instance.get_sentence_embedding_dimension()

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return self.model

    def encode(self, texts: Sequence[str]) -> np.ndarray:
        """Embed texts with mean pooling and normalization."""
        if not texts:
            return np.zeros((0, self._dimensions), dtype=np.float32)

        texts = [f"{self._prefix}{t}" if t.strip() else " " for t in texts]

        try:
            embeddings = self.model_instance.encode(
                texts, normalize_embeddings=True, convert_to_numpy=True,
            )
        except Exception as e:
            logger.error(f"Local embedding failed: {e}")
            raise
        return l2_normalize(embeddings)


@dataclass
class LoadedModel:
    """A ready backend plus how its weights were obtained."""
    backend: EmbeddingBackend
    from_cache: bool


ModelLoader = Callable[..., LoadedModel]


def _raise_if_cancelled(model_name: str, cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise InitializationError(f"Loading {model_name} was cancelled")


def _download_progress_bar(
    model_name: str,
    on_progress: ProgressCallback,
    cancel_event: Optional[threading.Event] = None,
) -> type:
    """A tqdm class that forwards download progress as ``downloading`` events.

    Aborts the download once ``cancel_event`` is set.
    """

    class _ProgressBar(tqdm):
        def update(self, n=1):
            _raise_if_cancelled(model_name, cancel_event)
            displayed = super().update(n)
            if self.total:
                percent = round(self.n / self.total * 100)
                on_progress(ProgressEvent(
                    status="downloading",
                    progress=percent,
                    message=f"Downloading {model_name}: {percent}%",
                ))
            return displayed

    return _ProgressBar


def load_sentence_transformer(
    model_name: str,
    on_progress: ProgressCallback,
    cache_dir: Optional[Path] = None,
    device: str = "cpu",
    cancel_event: Optional[threading.Event] = None,
) -> LoadedModel:
    """Acquire weights (cache first, then the Hub) and load the model.

    Raises whatever huggingface_hub / sentence-transformers raise; the engine
    turns that into a failed initialization. Raises ``InitializationError``
    when ``cancel_event`` is set while the weights are still being fetched.
    """
    from huggingface_hub import snapshot_download
    from huggingface_hub.errors import LocalEntryNotFoundError
    from sentence_transformers import SentenceTransformer

    cache = str(cache_dir) if cache_dir else None
    try:
        local_path = snapshot_download(
            repo_id=model_name, cache_dir=cache, local_files_only=True,
        )
        from_cache = True
        logger.info("Using cached weights for %s", model_name)
    except LocalEntryNotFoundError:
        logger.info("Weights for %s not cached, downloading", model_name)
        local_path = snapshot_download(
            repo_id=model_name,
            cache_dir=cache,
            tqdm_class=_download_progress_bar(model_name, on_progress, cancel_event),
        )
        from_cache = False

    _raise_if_cancelled(model_name, cancel_event)
    model_instance = SentenceTransformer(local_path, device=device)
    return LoadedModel(
        backend=SentenceTransformerBackend(model_instance, model_name),
        from_cache=from_cache,
    )


def cached_loader(loader: ModelLoader) -> ModelLoader:
    """Memoize a loader per model name.

    Repeat loads reuse the already-constructed backend and report
    ``from_cache=True`` (warm start).
    """
    backends: dict[str, EmbeddingBackend] = {}
    lock = threading.Lock()

    def _load(model_name: str, on_progress: ProgressCallback, **kwargs) -> LoadedModel:
        with lock:
            if model_name in backends:
                return LoadedModel(backend=backends[model_name], from_cache=True)
        loaded = loader(model_name, on_progress, **kwargs)
        with lock:
            backends.setdefault(model_name, loaded.backend)
        return loaded

    return _load
