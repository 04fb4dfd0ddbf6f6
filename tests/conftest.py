"""
Pytest configuration and fixtures for modelfinder tests.

This conftest.py provides:
- A deterministic bag-of-words embedding backend (no model download)
- Fake model loaders that count calls and can fail or stall
- A small taxonomy whose categories share no vocabulary
- Metrics reset between tests
"""

import re
import threading
import time
from pathlib import Path

import numpy as np
import pytest

from modelfinder.embeddings import EmbeddingBackend, LoadedModel, ProgressEvent
from modelfinder.observability import metrics
from modelfinder.taxonomy import Taxonomy, build_reference_seeds

FAKE_DIMENSIONS = 512
STOPWORDS = frozenset({"a", "an", "the", "in", "of", "to", "for", "my", "i", "and", "on"})

TAXONOMY_DATA = {
    "_meta": {"version": "test"},
    "task_taxonomy": {
        "computer_vision": {
            "label": "Computer Vision",
            "subcategories": {
                "image_classification": {
                    "label": "Image Classification",
                    "examples": [
                        "classify dog breeds in photos",
                        "sort pictures of cats",
                        "label photos of birds",
                    ],
                    "keywords": ["image classification", "photo", "picture"],
                },
            },
        },
        "natural_language_processing": {
            "label": "Natural Language Processing",
            "subcategories": {
                "text_classification": {
                    "label": "Text Classification",
                    "examples": [
                        "detect spam emails",
                        "filter junk messages",
                        "flag abusive comments",
                    ],
                    "keywords": ["spam", "text classification", "email"],
                },
            },
        },
        "speech_processing": {
            "label": "Speech Processing",
            "subcategories": {
                "speech_recognition": {
                    "label": "Speech Recognition",
                    "examples": [
                        "transcribe audio recordings",
                        "convert speech to text",
                        "caption spoken lectures",
                    ],
                    "keywords": ["speech recognition", "audio", "transcribe"],
                },
            },
        },
        "time_series": {
            "label": "Time Series",
            "subcategories": {
                "forecasting": {
                    "label": "Forecasting",
                    "examples": [],
                    "keywords": ["forecast", "predict prices"],
                },
            },
        },
    },
    "mapping_rules": {
        "priority_order": [
            "natural_language_processing",
            "computer_vision",
            "speech_processing",
            "time_series",
        ],
    },
}


class BagOfWordsBackend(EmbeddingBackend):
    """One dimension per distinct word, assigned on first sight."""

    def __init__(self, model_name: str = "fake/bag-of-words", dimensions: int = FAKE_DIMENSIONS):
        self._model_name = model_name
        self._dimensions = dimensions
        self._vocabulary: dict[str, int] = {}
        self._lock = threading.Lock()
        self.encode_calls = 0

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return self._model_name

    def _slot(self, word: str) -> int:
        with self._lock:
            if word not in self._vocabulary:
                if len(self._vocabulary) >= self._dimensions:
                    raise RuntimeError("Fake vocabulary exhausted")
                self._vocabulary[word] = len(self._vocabulary)
            return self._vocabulary[word]

    def encode(self, texts):
        self.encode_calls += 1
        vectors = np.zeros((len(texts), self._dimensions), dtype=np.float32)
        for row, text in enumerate(texts):
            for word in re.findall(r"[a-z0-9]+", text.lower()):
                if word not in STOPWORDS:
                    vectors[row, self._slot(word)] += 1.0
            norm = np.linalg.norm(vectors[row])
            if norm > 0:
                vectors[row] /= norm
        return vectors


class FakeLoader:
    """Model loader double: counts calls, optionally stalls or fails.

    A stall ignores ``cancel_event``, like a blocked download.
    """

    def __init__(self, delay: float = 0.0, fail: bool = False, from_cache: bool = False,
                 emit_download: bool = False):
        self.delay = delay
        self.fail = fail
        self.from_cache = from_cache
        self.emit_download = emit_download
        self.calls = 0
        self.backends: list[BagOfWordsBackend] = []
        self.cancel_events: list[threading.Event] = []

    def __call__(self, model_name, on_progress, cancel_event=None, **kwargs):
        self.calls += 1
        if cancel_event is not None:
            self.cancel_events.append(cancel_event)
        if self.emit_download:
            on_progress(ProgressEvent(status="downloading", progress=50, message="half way"))
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise OSError("weights unreachable")
        backend = BagOfWordsBackend(model_name)
        self.backends.append(backend)
        return LoadedModel(backend=backend, from_cache=self.from_cache)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Reset the global metrics registry around every test."""
    metrics.reset_all()
    yield
    metrics.reset_all()


@pytest.fixture
def taxonomy_data():
    """Raw taxonomy mapping (deep-copied per test)."""
    import copy
    return copy.deepcopy(TAXONOMY_DATA)


@pytest.fixture
def taxonomy(taxonomy_data) -> Taxonomy:
    return Taxonomy.from_dict(taxonomy_data)


@pytest.fixture
def seeds(taxonomy):
    return build_reference_seeds(taxonomy)


@pytest.fixture
def fake_loader():
    return FakeLoader()


@pytest.fixture
def taxonomy_file(tmp_path, taxonomy_data) -> Path:
    import yaml
    path = tmp_path / "tasks.yaml"
    path.write_text(yaml.safe_dump(taxonomy_data), encoding="utf-8")
    return path
