"""
Shared pytest fixtures for delta_index tests.

Provides a deterministic embedding backend, an in-memory vector index, a
controllable clock and a temporary project directory.
"""

import os

# Keep test runs from writing debug_trace.log into the working directory
os.environ.setdefault("DELTA_INDEX_DEBUG_LOG", "")

from typing import List

import pytest

from delta_index.logging_config import suppress_stderr_logging
from delta_index.models import Chunk, IndexRecord
from delta_index.services.config_loader import reset_config_loader
from delta_index.services.embedding_cache import CachePolicy, EmbeddingCache
from delta_index.services.embedding_service import (
    EmbeddingService,
    LightweightBackend,
    reset_embedding_service_singleton,
)
from delta_index.services.retry import RetryPolicy
from delta_index.services.vector_store import InMemoryVectorIndex

suppress_stderr_logging()

TEST_DIM = 32


class FakeClock:
    """Manually advanced clock for cache TTL tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingBackend(LightweightBackend):
    """Lightweight backend that records every embed() call."""

    def __init__(self, embedding_dim: int = TEST_DIM):
        super().__init__(embedding_dim=embedding_dim)
        self.calls: List[List[str]] = []

    def embed(self, texts):
        self.calls.append(list(texts))
        return super().embed(texts)

    @property
    def texts_embedded(self) -> int:
        return sum(len(c) for c in self.calls)


def no_sleep(_seconds: float) -> None:
    pass


@pytest.fixture(autouse=True)
def reset_singletons():
    """Fresh config loader and embedding service singletons for every test."""
    reset_config_loader()
    reset_embedding_service_singleton()
    yield
    reset_config_loader()
    reset_embedding_service_singleton()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return CountingBackend()


@pytest.fixture
def cache(clock):
    """Embedding cache without persistence or sweeper thread."""
    return EmbeddingCache(policy=CachePolicy(), clock=clock)


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05, sleep=no_sleep)


@pytest.fixture
def embedding_service(backend, cache, fast_retry):
    return EmbeddingService(backend=backend, cache=cache, retry_policy=fast_retry, batch_size=10)


@pytest.fixture
def memory_index():
    return InMemoryVectorIndex()


@pytest.fixture
def temp_project(tmp_path):
    """
    Temporary project with a few source files.

    Yields:
        Path to the project root
    """
    src = tmp_path / "src"
    src.mkdir()
    (src / "alpha.py").write_text(make_source("alpha", 3), encoding="utf-8")
    (src / "beta.py").write_text(make_source("beta", 2), encoding="utf-8")
    (tmp_path / "README.md").write_text("# Project\n\nSome notes.\n", encoding="utf-8")
    yield tmp_path


def make_source(prefix: str, blocks: int, lines_per_block: int = 5) -> str:
    """Source text made of distinct blocks of `lines_per_block` lines each."""
    lines = []
    for b in range(blocks):
        lines.append(f"def {prefix}_func_{b}():")
        for i in range(lines_per_block - 1):
            lines.append(f"    value_{b}_{i} = {b * 100 + i}")
    return "\n".join(lines) + "\n"


def make_chunk(file_path: str, content: str, start: int, end: int, **kwargs) -> Chunk:
    return Chunk(file_path=file_path, content=content, start_line=start, end_line=end, **kwargs)


def make_record(
    file_path: str,
    content: str,
    start: int,
    end: int,
    vector=None,
    **kwargs
) -> IndexRecord:
    chunk = make_chunk(file_path, content, start, end)
    backend = LightweightBackend(embedding_dim=TEST_DIM)
    vector = vector if vector is not None else backend.embed([content])[0]
    return IndexRecord.from_chunk(chunk, vector, **kwargs)
