"""
End-to-end classification with a real sentence-transformers model.

These tests download model weights on first run. They are skipped unless
RUN_MODEL_TESTS=1 is set.

Usage:
    RUN_MODEL_TESTS=1 pytest tests/test_integration.py -v
"""

import os

import pytest
import pytest_asyncio

from modelfinder.classifiers import ClassificationMethod, TaskClassificationService
from modelfinder.embeddings import EmbeddingEngine
from modelfinder.taxonomy import TaskCategory, build_reference_seeds, load_taxonomy

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        not os.environ.get("RUN_MODEL_TESTS"),
        reason="needs model weights (set RUN_MODEL_TESTS=1)",
    ),
]


@pytest_asyncio.fixture
async def service():
    taxonomy = load_taxonomy()
    engine = EmbeddingEngine(
        "sentence-transformers/all-MiniLM-L6-v2", build_reference_seeds(taxonomy),
    )
    service = TaskClassificationService(engine, taxonomy)
    assert await service.warm_up()
    return service


@pytest.mark.asyncio
@pytest.mark.parametrize("text,expected", [
    ("classify dog breeds in photos", TaskCategory.COMPUTER_VISION),
    ("detect spam emails", TaskCategory.NATURAL_LANGUAGE_PROCESSING),
])
async def test_clear_requests_use_embeddings(service, text, expected):
    result = await service.classify(text)
    assert result.method == ClassificationMethod.EMBEDDING_SIMILARITY
    assert result.top_category == expected
    assert result.confidence > 0.70


@pytest.mark.asyncio
async def test_vague_request_escalates(service):
    result = await service.classify("analyze data")
    assert result.method != ClassificationMethod.EMBEDDING_SIMILARITY
