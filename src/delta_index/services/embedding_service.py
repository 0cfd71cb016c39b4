"""
Embedding generation service.

Turns chunk bodies into vectors through a pluggable backend:
- Local: sentence-transformers (default, no API key needed)
- Ollama: embedding endpoint of a local or remote Ollama server (httpx)
- Lightweight: deterministic hash-based vectors for tests

The EmbeddingCache is consulted first, keyed by content digest; misses are
deduplicated and sent to the backend in batches of `batch_size` under the
shared retry policy.
"""

import hashlib
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
import numpy as np

from ..content_hasher import hash_content
from ..index_exceptions import EmbeddingBackendError
from ..logging_config import configure_logger_for_debug_trace
from .embedding_cache import EmbeddingCache
from .retry import RetryPolicy

logger = configure_logger_for_debug_trace(__name__)


# ============================================================================
# Backends
# ============================================================================

class EmbeddingBackend(ABC):
    """
    Produces vectors for a list of texts. Must be idempotent.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a adapter.

    Attributes:
        model_name: Identifier recorded with every cached vector
        embedding_dim: Dimension of produced vectors
    """

    model_name: str = ""
    embedding_dim: int = 0

    @abstractmethod
    def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed texts, returning one vector per text in input order."""
        pass


class SentenceTransformerBackend(EmbeddingBackend):
    """
    Local sentence-transformers model, loaded on first use.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a adapter.
    ::: This is stateful.
    """

    # Known dimensions so callers can size indexes before the model loads
    MODEL_DIMS: Dict[str, int] = {
        "sentence-transformers/all-mpnet-base-v2": 768,
        "sentence-transformers/all-MiniLM-L6-v2": 384,
        "all-mpnet-base-v2": 768,
        "all-MiniLM-L6-v2": 384,
    }

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2"):
        self.model_name = model_name
        self.embedding_dim = self.MODEL_DIMS.get(model_name, 384)
        self._model = None

    def _load(self) -> None:
        if self._model is not None:
            return

        from sentence_transformers import SentenceTransformer

        st_model_name = self.model_name
        if st_model_name.startswith("sentence-transformers/"):
            st_model_name = st_model_name.replace("sentence-transformers/", "")

        cache_dir = os.environ.get('TRANSFORMERS_CACHE', None)
        if cache_dir:
            os.makedirs(cache_dir, exist_ok=True)

        logger.info(f"[Embedding] Loading model '{st_model_name}'...")
        start = time.time()
        self._model = SentenceTransformer(st_model_name, cache_folder=cache_dir)
        test_emb = self._model.encode("test", convert_to_numpy=True)
        self.embedding_dim = len(test_emb)
        logger.info(
            f"[Embedding] Model loaded in {time.time() - start:.2f}s, dim={self.embedding_dim}"
        )

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        self._load()
        embeddings = self._model.encode(
            texts,
            convert_to_numpy=True,
            batch_size=len(texts),
            show_progress_bar=False,
            normalize_embeddings=True
        )
        return embeddings.astype(np.float32).tolist()


class OllamaBackend(EmbeddingBackend):
    """
    Ollama embedding endpoint (POST /api/embed).

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a adapter.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model_name: str = "nomic-embed-text",
        timeout: float = 30.0,
        embedding_dim: int = 768,
        client: Optional[httpx.Client] = None,
    ):
        """
        Args:
            base_url: Ollama server URL
            model_name: Embedding model pulled on the server
            timeout: Per-request timeout in seconds
            embedding_dim: Expected vector dimension
            client: Optional preconfigured httpx.Client
        """
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.embedding_dim = embedding_dim
        self._timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        try:
            response = self._client.post(
                f"{self.base_url}/api/embed",
                json={"model": self.model_name, "input": texts},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise EmbeddingBackendError(f"Ollama request failed: {e}") from e

        payload = response.json()
        data = payload.get("embeddings") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise EmbeddingBackendError("Invalid embeddings payload: missing embeddings")

        vectors: List[List[float]] = []
        for item in data:
            if not isinstance(item, list) or not item:
                raise EmbeddingBackendError("Invalid embeddings payload: empty vector")
            vectors.append([float(v) for v in item])

        if len(vectors) != len(texts):
            raise EmbeddingBackendError(
                f"Invalid embeddings payload: expected {len(texts)} vectors, got {len(vectors)}"
            )
        return vectors

    def close(self) -> None:
        self._client.close()


class LightweightBackend(EmbeddingBackend):
    """
    Hash-based embeddings for testing without heavy dependencies.

    Same text gives the same vector, but vectors carry no semantics and are
    NOT suitable for production search.
    """

    def __init__(self, embedding_dim: int = 384):
        self.model_name = "lightweight-test"
        self.embedding_dim = embedding_dim

    def _embed_one(self, text: str) -> List[float]:
        text_hash = hashlib.sha256(text.encode('utf-8')).digest()
        values = [float(b) / 255.0 for b in text_hash]

        while len(values) < self.embedding_dim:
            extended_hash = hashlib.sha256(
                text_hash + len(values).to_bytes(4, 'little')
            ).digest()
            values.extend([float(b) / 255.0 for b in extended_hash])

        embedding = np.array(values[:self.embedding_dim], dtype=np.float32)
        norm = np.linalg.norm(embedding)
        if norm > 0:
            embedding = embedding / norm
        return embedding.tolist()

    def embed(self, texts: List[str]) -> List[List[float]]:
        return [self._embed_one(text) for text in texts]


# ============================================================================
# Service
# ============================================================================

class EmbeddingService:
    """
    Cache-aware embedding generation.

    ::: This is-in-layer Service-Layer.
    ::: This is a service.
    ::: This is stateful.

    A cached vector is only reused when it was produced by the backend's
    current model; entries from another model count as misses.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        cache: Optional[EmbeddingCache] = None,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = 10,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.backend = backend
        self.cache = cache
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size
        self.backend_calls = 0

    @property
    def model_name(self) -> str:
        return self.backend.model_name

    @property
    def embedding_dim(self) -> int:
        return self.backend.embedding_dim

    def _cached_vector(self, key: str) -> Optional[List[float]]:
        if self.cache is None:
            return None
        entry = self.cache.get(key, model=self.backend.model_name)
        if entry is None:
            return None
        return entry.vector

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.backend_calls += 1
        vectors = self.retry_policy.call(
            self.backend.embed, texts,
            error_cls=EmbeddingBackendError,
            operation=f"embed[{self.backend.model_name}]"
        )
        if len(vectors) != len(texts):
            raise EmbeddingBackendError(
                f"Backend returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors

    def embed_texts(
        self,
        texts: List[str],
        batch_size: Optional[int] = None
    ) -> List[List[float]]:
        """
        Embed texts, serving cache hits and batching the misses.

        Args:
            texts: Bodies to embed
            batch_size: Misses per backend call (defaults to the service setting)

        Returns:
            One vector per input text, in input order

        Raises:
            EmbeddingBackendError: If the backend fails after all retries
        """
        size = batch_size or self.batch_size
        results: List[Optional[List[float]]] = [None] * len(texts)
        pending: Dict[str, List[int]] = {}

        for i, text in enumerate(texts):
            key = hash_content(text)
            if key in pending:
                pending[key].append(i)
                continue
            cached = self._cached_vector(key)
            if cached is not None:
                results[i] = cached
            else:
                pending[key] = [i]

        if pending:
            keys = list(pending.keys())
            logger.debug(
                f"[Embedding] {len(texts) - sum(len(v) for v in pending.values())} cache hits, "
                f"{len(keys)} misses"
            )
            for start in range(0, len(keys), size):
                batch_keys = keys[start:start + size]
                batch_texts = [texts[pending[k][0]] for k in batch_keys]
                vectors = self._embed_batch(batch_texts)
                for key, vector in zip(batch_keys, vectors):
                    if self.cache is not None:
                        self.cache.put(key, vector, self.backend.model_name)
                    for i in pending[key]:
                        results[i] = vector

        return results  # type: ignore[return-value]

    def embed_query(self, text: str) -> List[float]:
        """Embed a single query text."""
        return self.embed_texts([text])[0]

    def get_info(self) -> Dict[str, Any]:
        """Get service information."""
        info: Dict[str, Any] = {
            "model_name": self.backend.model_name,
            "embedding_dim": self.backend.embedding_dim,
            "batch_size": self.batch_size,
            "backend_calls": self.backend_calls,
        }
        if self.cache is not None:
            stats = self.cache.stats()
            info["cache_entries"] = stats.count
            info["cache_hit_rate"] = stats.hit_rate
        return info


def create_embedding_backend(config: Optional[Dict[str, Any]] = None) -> EmbeddingBackend:
    """
    Build the backend named by ConfigLoader.get_embedding_config() output.

    Args:
        config: Embedding config section, or None for defaults
    """
    config = config or {}
    provider = config.get("embedding_provider", "local")
    model_name = config.get("embedding_model", "sentence-transformers/all-MiniLM-L6-v2")

    if provider == "lightweight":
        logger.warning("[Embedding] Using lightweight embedding backend (testing only)")
        return LightweightBackend(embedding_dim=int(config.get("vector_dimension", 384)))
    if provider == "ollama":
        return OllamaBackend(
            base_url=config.get("ollama_url", "http://localhost:11434"),
            model_name=model_name,
            timeout=float(config.get("embedding_timeout", 30.0)),
            embedding_dim=int(config.get("vector_dimension", 768)),
        )
    if provider == "local":
        return SentenceTransformerBackend(model_name)
    raise ValueError(f"Unknown embedding provider: {provider}")


# Global singleton - avoids reloading the model on every run
_embedding_service_singleton: Optional[EmbeddingService] = None


def get_embedding_service(
    config: Optional[Dict[str, Any]] = None,
    cache: Optional[EmbeddingCache] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> EmbeddingService:
    """
    Factory function returning the shared EmbeddingService.

    Args:
        config: Embedding config section or None for defaults
        cache: Cache to attach on first construction
        retry_policy: Retry policy to use on first construction

    Returns:
        Configured EmbeddingService instance (singleton)
    """
    global _embedding_service_singleton

    if _embedding_service_singleton is None:
        config = config or {}
        _embedding_service_singleton = EmbeddingService(
            backend=create_embedding_backend(config),
            cache=cache,
            retry_policy=retry_policy,
            batch_size=int(config.get("indexing_batch_size", 10)),
        )
    return _embedding_service_singleton


def reset_embedding_service_singleton() -> None:
    """Reset the embedding service singleton (for testing only)."""
    global _embedding_service_singleton
    _embedding_service_singleton = None
