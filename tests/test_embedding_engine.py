"""
Tests for the embedding engine, model loaders and the reference index.

Usage:
    pytest tests/test_embedding_engine.py -v
"""

import asyncio
import io
import threading
import time

import numpy as np
import pytest

from conftest import BagOfWordsBackend, FakeLoader
from modelfinder.embeddings import (
    EmbeddingEngine,
    LoadedModel,
    ProgressEvent,
    ReferenceExample,
    ReferenceIndex,
    cached_loader,
    l2_normalize,
)
from modelfinder.embeddings.backends import _download_progress_bar
from modelfinder.errors import EmbeddingUnavailableError, InitializationError
from modelfinder.observability import metrics
from modelfinder.taxonomy import TaskCategory


class TestInitialization:
    """Test single-flight initialization and its cached outcome."""

    @pytest.mark.asyncio
    async def test_initialize_embeds_corpus(self, seeds, fake_loader):
        engine = EmbeddingEngine("fake/model", seeds, loader=fake_loader)
        result = await engine.initialize()

        assert result.success
        assert result.reference_count == len(seeds)
        assert engine.is_ready
        assert engine.reference_count == len(seeds)
        assert engine.dimensions == fake_loader.backends[0].dimensions
        assert metrics.counter("embedding_init_total").get({"outcome": "success"}) == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_load(self, seeds):
        loader = FakeLoader(delay=0.05)
        engine = EmbeddingEngine("fake/model", seeds, loader=loader)

        results = await asyncio.gather(*(engine.initialize() for _ in range(5)))

        assert loader.calls == 1
        assert all(r is results[0] for r in results)
        assert results[0].success

    @pytest.mark.asyncio
    async def test_repeat_initialize_returns_cached_result(self, seeds, fake_loader):
        engine = EmbeddingEngine("fake/model", seeds, loader=fake_loader)
        first = await engine.initialize()
        second = await engine.initialize()
        assert first is second
        assert fake_loader.calls == 1

    @pytest.mark.asyncio
    async def test_failure_is_cached_until_reset(self, seeds):
        loader = FakeLoader(fail=True)
        engine = EmbeddingEngine("fake/model", seeds, loader=loader)

        first = await engine.initialize()
        second = await engine.initialize()
        assert not first.success
        assert "weights unreachable" in first.error
        assert second is first
        assert loader.calls == 1
        assert not engine.is_ready

        loader.fail = False
        engine.reset()
        third = await engine.initialize()
        assert third.success
        assert loader.calls == 2

    @pytest.mark.asyncio
    async def test_timeout_reports_failure(self, seeds):
        engine = EmbeddingEngine(
            "fake/model", seeds, loader=FakeLoader(delay=0.5), init_timeout=0.05,
        )
        result = await engine.initialize()
        assert not result.success
        assert "timed out" in result.error
        assert not engine.is_ready

    @pytest.mark.asyncio
    async def test_timeout_signals_loader_to_stop(self, seeds):
        loader = FakeLoader(delay=0.5)
        engine = EmbeddingEngine("fake/model", seeds, loader=loader, init_timeout=0.05)
        await engine.initialize()
        assert loader.cancel_events[0].is_set()

    def test_stalled_load_does_not_block_event_loop_shutdown(self, seeds):
        loader = FakeLoader(delay=3.0)
        engine = EmbeddingEngine("fake/model", seeds, loader=loader, init_timeout=0.1)

        t0 = time.monotonic()
        result = asyncio.run(engine.initialize())
        elapsed = time.monotonic() - t0

        assert not result.success
        assert elapsed < 1.5

    @pytest.mark.asyncio
    async def test_reset_during_load_returns_failure(self, seeds):
        loader = FakeLoader(delay=0.3)
        engine = EmbeddingEngine("fake/model", seeds, loader=loader)

        pending = asyncio.ensure_future(engine.initialize())
        await asyncio.sleep(0.05)
        engine.reset()
        result = await pending

        assert not result.success
        assert "reset" in result.error
        assert loader.cancel_events[0].is_set()
        assert not engine.is_ready

    @pytest.mark.asyncio
    async def test_initialize_after_reset_reloads(self, seeds):
        loader = FakeLoader(delay=0.2)
        engine = EmbeddingEngine("fake/model", seeds, loader=loader)

        pending = asyncio.ensure_future(engine.initialize())
        await asyncio.sleep(0.05)
        engine.reset()
        loader.delay = 0.0
        await pending

        result = await engine.initialize()
        assert result.success
        assert loader.calls == 2

    @pytest.mark.asyncio
    async def test_from_cache_reported(self, seeds):
        engine = EmbeddingEngine("fake/model", seeds, loader=FakeLoader(from_cache=True))
        result = await engine.initialize()
        assert result.from_cache
        assert engine.from_cache

    @pytest.mark.asyncio
    async def test_empty_corpus(self):
        engine = EmbeddingEngine("fake/model", [], loader=FakeLoader())
        result = await engine.initialize()
        assert result.success
        assert engine.reference_count == 0


class TestProgressEvents:
    """Test progress reporting to observers."""

    @pytest.mark.asyncio
    async def test_event_sequence(self, seeds):
        events: list[ProgressEvent] = []
        engine = EmbeddingEngine(
            "fake/model", seeds, loader=FakeLoader(emit_download=True), on_progress=events.append,
        )
        await engine.initialize()

        statuses = [e.status for e in events]
        assert statuses[0] == "loading"
        assert statuses.count("loading") == 1
        assert "downloading" in statuses
        assert "processing" in statuses
        assert statuses[-1] == "ready"
        assert events[-1].load_time_ms is not None
        assert events[-1].from_cache is False

    @pytest.mark.asyncio
    async def test_error_event_on_failure(self, seeds):
        events: list[ProgressEvent] = []
        engine = EmbeddingEngine(
            "fake/model", seeds, loader=FakeLoader(fail=True), on_progress=events.append,
        )
        await engine.initialize()
        assert events[-1].status == "error"
        assert "weights unreachable" in events[-1].message

    @pytest.mark.asyncio
    async def test_observer_exceptions_are_ignored(self, seeds):
        def broken(event):
            raise RuntimeError("ui went away")

        engine = EmbeddingEngine("fake/model", seeds, loader=FakeLoader(), on_progress=broken)
        result = await engine.initialize()
        assert result.success

    def test_event_to_dict_drops_unset_fields(self):
        event = ProgressEvent(status="downloading", progress=40)
        assert event.to_dict() == {"status": "downloading", "message": "", "progress": 40}


class TestEmbedding:
    """Test embedding calls on a ready engine."""

    @pytest.mark.asyncio
    async def test_embed_before_ready_raises(self, seeds, fake_loader):
        engine = EmbeddingEngine("fake/model", seeds, loader=fake_loader)
        with pytest.raises(EmbeddingUnavailableError):
            await engine.embed("detect spam emails")
        with pytest.raises(EmbeddingUnavailableError):
            _ = engine.index

    @pytest.mark.asyncio
    async def test_embeddings_are_unit_norm(self, seeds, fake_loader):
        engine = EmbeddingEngine("fake/model", seeds, loader=fake_loader)
        await engine.initialize()

        vector = await engine.embed("detect spam emails quickly")
        assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-5)

        norms = np.linalg.norm(engine.index.matrix, axis=1)
        assert np.allclose(norms, 1.0, atol=1e-5)

        batch = await engine.embed_batch([])
        assert batch.shape == (0, engine.dimensions)

    @pytest.mark.asyncio
    async def test_add_references_swaps_index(self, seeds, taxonomy, fake_loader):
        from modelfinder.taxonomy import ReferenceSeed

        engine = EmbeddingEngine("fake/model", seeds, loader=fake_loader)
        await engine.initialize()
        old_index = engine.index

        new_seed = ReferenceSeed(
            text="forecast energy demand",
            category=TaskCategory.TIME_SERIES,
            subcategory="forecasting",
            category_label="Time Series",
            subcategory_label="Forecasting",
        )
        count = await engine.add_references([new_seed])

        assert count == len(seeds) + 1
        assert len(old_index) == len(seeds)
        assert engine.index is not old_index
        assert TaskCategory.TIME_SERIES in engine.index.categories
        assert metrics.counter("reference_append_total").total() == 1


class TestCachedLoader:
    """Test memoization of model loaders."""

    def test_second_load_is_warm(self):
        loader = FakeLoader()
        cached = cached_loader(loader)

        first = cached("fake/model", lambda e: None)
        second = cached("fake/model", lambda e: None)

        assert loader.calls == 1
        assert first.from_cache is False
        assert second.from_cache is True
        assert second.backend is first.backend

    def test_models_cached_separately(self):
        loader = FakeLoader()
        cached = cached_loader(loader)
        cached("fake/a", lambda e: None)
        cached("fake/b", lambda e: None)
        assert loader.calls == 2


def _example(text, category, vector):
    return ReferenceExample(
        text=text,
        category=category,
        subcategory="sub",
        category_label=category.value,
        subcategory_label="Sub",
        source="example",
        embedding=l2_normalize(np.asarray(vector, dtype=np.float32)),
    )


class TestReferenceIndex:
    """Test nearest-neighbour search over the reference matrix."""

    @pytest.fixture
    def index(self):
        return ReferenceIndex([
            _example("a", TaskCategory.COMPUTER_VISION, [1, 0, 0]),
            _example("b", TaskCategory.COMPUTER_VISION, [1, 1, 0]),
            _example("c", TaskCategory.TIME_SERIES, [0, 1, 0]),
            _example("d", TaskCategory.TIME_SERIES, [0, 0, 1]),
        ])

    def test_nearest_orders_by_similarity(self, index):
        matches = index.nearest(np.array([1, 0, 0], dtype=np.float32), top_k=3)
        assert [m.text for m in matches] == ["a", "b", "c"]
        assert matches[0].similarity == pytest.approx(1.0)
        assert matches[0].index == 0

    def test_equal_similarities_keep_corpus_order(self, index):
        matches = index.nearest(np.array([0, 0, 0], dtype=np.float32), top_k=4)
        assert [m.text for m in matches] == ["a", "b", "c", "d"]

    def test_exclude_skips_positions(self, index):
        matches = index.nearest(np.array([1, 0, 0], dtype=np.float32), top_k=2, exclude=[0])
        assert [m.text for m in matches] == ["b", "c"]

    def test_top_k_larger_than_index(self, index):
        assert len(index.nearest(np.array([1, 0, 0], dtype=np.float32), top_k=10)) == 4

    def test_top_k_must_be_positive(self, index):
        with pytest.raises(ValueError):
            index.nearest(np.array([1, 0, 0], dtype=np.float32), top_k=0)

    def test_matrix_is_read_only(self, index):
        with pytest.raises(ValueError):
            index.matrix[0, 0] = 5.0

    def test_subset_and_extend_return_new_indexes(self, index):
        sub = index.subset([2, 3])
        assert [e.text for e in sub.examples] == ["c", "d"]
        bigger = index.extend([_example("e", TaskCategory.COMPUTER_VISION, [0, 1, 1])])
        assert len(bigger) == 5
        assert len(index) == 4

    def test_empty_index(self):
        index = ReferenceIndex([], dimensions=3)
        assert index.dimensions == 3
        assert index.nearest(np.array([1, 0, 0], dtype=np.float32), top_k=3) == []


class TestBackendHelpers:
    def test_l2_normalize_keeps_zero_rows(self):
        out = l2_normalize(np.array([[3, 4], [0, 0]], dtype=np.float32))
        assert out[0].tolist() == pytest.approx([0.6, 0.8])
        assert out[1].tolist() == [0.0, 0.0]

    def test_loaded_model_holds_backend(self):
        backend = BagOfWordsBackend()
        loaded = LoadedModel(backend=backend, from_cache=True)
        assert loaded.backend.model_name == "fake/bag-of-words"

    def test_download_progress_forwarded(self):
        events: list[ProgressEvent] = []
        bar_class = _download_progress_bar("fake/model", events.append, threading.Event())
        bar = bar_class(total=10, file=io.StringIO())
        bar.update(5)
        bar.close()
        assert events[-1].status == "downloading"
        assert events[-1].progress == 50

    def test_download_aborts_once_cancelled(self):
        cancel = threading.Event()
        cancel.set()
        bar_class = _download_progress_bar("fake/model", lambda event: None, cancel)
        bar = bar_class(total=10, file=io.StringIO())
        with pytest.raises(InitializationError, match="cancelled"):
            bar.update(1)
        bar.close()

    def test_cached_loader_forwards_cancel_event(self):
        loader = FakeLoader()
        cancel = threading.Event()
        cached_loader(loader)("fake/model", lambda event: None, cancel_event=cancel)
        assert loader.cancel_events == [cancel]
