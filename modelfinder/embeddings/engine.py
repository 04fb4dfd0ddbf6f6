"""
Embedding engine.

Owns the embedding model and the reference index. Initialization is
single-flight: the first ``initialize()`` starts one shared task and every
other caller awaits that same task. The outcome, success or failure, is kept
until ``reset()``.
"""

import asyncio
import logging
import threading
import time
from dataclasses import asdict, dataclass
from functools import partial
from pathlib import Path
from typing import Optional, Sequence

import numpy as np

from ..errors import EmbeddingUnavailableError
from ..observability import metrics
from ..taxonomy import ReferenceSeed
from .backends import (
    EmbeddingBackend,
    ModelLoader,
    l2_normalize,
    load_sentence_transformer,
)
from .index import ReferenceExample, ReferenceIndex
from .progress import ProgressCallback, ProgressEvent, notify

logger = logging.getLogger(__name__)


async def _in_daemon_thread(func, *args, **kwargs):
    """Run blocking ``func`` on a daemon thread and await its result.

    Unlike ``asyncio.to_thread`` the thread is not owned by the loop's default
    executor, so an abandoned load never holds up ``asyncio.run`` shutdown or
    interpreter exit.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def settle(setter, value) -> None:
        if not future.done():
            setter(value)

    def run() -> None:
        try:
            outcome = (future.set_result, func(*args, **kwargs))
        except Exception as e:
            outcome = (future.set_exception, e)
        try:
            loop.call_soon_threadsafe(settle, *outcome)
        except RuntimeError:
            logger.debug("Event loop closed before %s finished", getattr(func, "__name__", func))

    threading.Thread(target=run, name="modelfinder-embedding", daemon=True).start()
    return await future


@dataclass
class InitializationResult:
    """Outcome of engine initialization."""
    success: bool
    load_time_ms: int = 0
    reference_count: int = 0
    from_cache: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class EmbeddingEngine:
    """Embedding model plus the reference vectors computed from the corpus.

    Args:
        model_name: Hugging Face model id.
        seeds: Reference seeds embedded once during initialization.
        loader: ``loader(model_name, on_progress, cancel_event=...) ->
            LoadedModel``. Runs on a daemon thread and should stop once
            ``cancel_event`` is set. Defaults to the sentence-transformers
            loader with ``cache_dir``.
        on_progress: Optional observer for ``ProgressEvent`` updates.
        init_timeout: Seconds before initialization is abandoned.
        cache_dir: Model weight cache directory for the default loader.
    """

    def __init__(
        self,
        model_name: str,
        seeds: Sequence[ReferenceSeed] = (),
        loader: Optional[ModelLoader] = None,
        on_progress: Optional[ProgressCallback] = None,
        init_timeout: Optional[float] = None,
        cache_dir: Optional[Path] = None,
    ):
        self._model_name = model_name
        self._seeds = tuple(seeds)
        self._loader = loader or partial(load_sentence_transformer, cache_dir=cache_dir)
        self._on_progress = on_progress
        self._init_timeout = init_timeout

        self._init_task: Optional[asyncio.Task] = None
        self._cancel_event = threading.Event()
        self._backend: Optional[EmbeddingBackend] = None
        self._index: Optional[ReferenceIndex] = None
        self._result: Optional[InitializationResult] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def is_ready(self) -> bool:
        return self._backend is not None and self._index is not None

    @property
    def index(self) -> ReferenceIndex:
        if self._index is None:
            raise EmbeddingUnavailableError("Embedding engine is not initialized")
        return self._index

    @property
    def dimensions(self) -> int:
        return self._backend.dimensions if self._backend else 0

    @property
    def reference_count(self) -> int:
        return len(self._index) if self._index is not None else 0

    @property
    def load_time_ms(self) -> int:
        return self._result.load_time_ms if self._result else 0

    @property
    def from_cache(self) -> bool:
        return bool(self._result and self._result.from_cache)

    @property
    def last_result(self) -> Optional[InitializationResult]:
        return self._result

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(self) -> InitializationResult:
        """Load the model and embed the reference corpus, once.

        Concurrent callers share a single in-flight task. Never raises: any
        failure is reported through ``InitializationResult.error``.
        """
        if self._init_task is None:
            self._cancel_event = threading.Event()
            self._init_task = asyncio.get_running_loop().create_task(
                self._run_initialization(self._cancel_event)
            )
        task = self._init_task
        if task.done() and not task.cancelled():
            return task.result()
        try:
            # A cancelled caller must not cancel the shared task
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            # The shared task was abandoned by reset()
            return InitializationResult(success=False, error="Initialization cancelled by reset")

    async def _run_initialization(self, cancel_event: threading.Event) -> InitializationResult:
        t0 = time.monotonic()
        try:
            if self._init_timeout:
                from_cache = await asyncio.wait_for(
                    self._load(cancel_event), timeout=self._init_timeout,
                )
            else:
                from_cache = await self._load(cancel_event)
        except asyncio.TimeoutError:
            cancel_event.set()
            error = f"Initialization timed out after {self._init_timeout:g}s"
            return self._fail(error, t0)
        except Exception as e:
            logger.exception("Embedding engine initialization failed for %s", self._model_name)
            return self._fail(str(e) or type(e).__name__, t0)

        load_time_ms = int((time.monotonic() - t0) * 1000)
        self._result = InitializationResult(
            success=True,
            load_time_ms=load_time_ms,
            reference_count=len(self._index),
            from_cache=from_cache,
        )
        metrics.increment("embedding_init_total", labels={"outcome": "success"})
        metrics.observe("embedding_init_duration_seconds", load_time_ms / 1000)
        logger.info(
            "INIT_TRACE model=%s references=%d dims=%d load_ms=%d from_cache=%s",
            self._model_name, len(self._index), self.dimensions, load_time_ms, from_cache,
        )
        self._emit(ProgressEvent(
            status="ready",
            message=f"Ready: {len(self._index)} reference examples",
            load_time_ms=load_time_ms,
            from_cache=from_cache,
        ))
        return self._result

    async def _load(self, cancel_event: threading.Event) -> bool:
        loop = asyncio.get_running_loop()

        def emit_from_worker(event: ProgressEvent) -> None:
            if cancel_event.is_set():
                return
            try:
                loop.call_soon_threadsafe(self._emit, event)
            except RuntimeError:
                # Event loop already closed
                pass

        self._emit(ProgressEvent(status="loading", message=f"Loading {self._model_name}..."))
        loaded = await _in_daemon_thread(
            self._loader, self._model_name, emit_from_worker, cancel_event=cancel_event,
        )
        backend = loaded.backend

        self._emit(ProgressEvent(
            status="processing",
            message=f"Embedding {len(self._seeds)} reference examples...",
        ))
        texts = [s.text for s in self._seeds]
        vectors = await _in_daemon_thread(backend.encode, texts) if texts else None

        examples = [
            ReferenceExample.from_seed(seed, l2_normalize(vectors[i]))
            for i, seed in enumerate(self._seeds)
        ]
        self._index = ReferenceIndex(examples, dimensions=backend.dimensions)
        self._backend = backend
        return loaded.from_cache

    def _fail(self, error: str, t0: float) -> InitializationResult:
        self._backend = None
        self._index = None
        self._result = InitializationResult(
            success=False,
            load_time_ms=int((time.monotonic() - t0) * 1000),
            error=error,
        )
        metrics.increment("embedding_init_total", labels={"outcome": "failure"})
        logger.error("Embedding engine unavailable: %s", error)
        self._emit(ProgressEvent(status="error", message=error))
        return self._result

    def _emit(self, event: ProgressEvent) -> None:
        notify(self._on_progress, event)

    def reset(self) -> None:
        """Drop the model, index and cached outcome so the next call reloads."""
        if self._init_task is not None and not self._init_task.done():
            self._cancel_event.set()
            self._init_task.cancel()
        self._init_task = None
        self._backend = None
        self._index = None
        self._result = None

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def _require_backend(self) -> EmbeddingBackend:
        if self._backend is None:
            error = self._result.error if self._result else "not initialized"
            raise EmbeddingUnavailableError(f"Embedding engine unavailable: {error}")
        return self._backend

    async def embed(self, text: str) -> np.ndarray:
        """Unit-norm embedding for one text."""
        backend = self._require_backend()
        vectors = await asyncio.to_thread(backend.encode, [text])
        return l2_normalize(vectors[0])

    async def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        """Unit-norm embeddings, one row per text."""
        backend = self._require_backend()
        if not texts:
            return np.zeros((0, backend.dimensions), dtype=np.float32)
        vectors = await asyncio.to_thread(backend.encode, list(texts))
        return l2_normalize(vectors)

    async def add_references(self, seeds: Sequence[ReferenceSeed]) -> int:
        """Embed new seeds and swap in an extended index.

        Returns the new reference count.
        """
        if not seeds:
            return self.reference_count
        vectors = await self.embed_batch([s.text for s in seeds])
        examples = [
            ReferenceExample.from_seed(seed, vectors[i]) for i, seed in enumerate(seeds)
        ]
        self._index = self.index.extend(examples)
        self._seeds = self._seeds + tuple(seeds)
        metrics.increment("reference_append_total", value=len(examples))
        logger.info("Appended %d reference examples (total %d)", len(examples), len(self._index))
        return len(self._index)
