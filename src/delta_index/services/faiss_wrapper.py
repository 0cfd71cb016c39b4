"""
FAISS Wrapper for the in-process vector index.

Provides a high-level interface for FAISS operations with support for:
- Vector addition with custom IDs (using IndexIDMap2)
- Vector removal by ID
- k-NN search with cosine scores
"""

import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

# Suppress SWIG deprecation warnings from FAISS (Python 3.12+ compatibility issue)
# These warnings occur during module load, so must be set globally before import
warnings.filterwarnings("ignore", message="builtin type Swig", category=DeprecationWarning)
warnings.filterwarnings("ignore", message="builtin type swig", category=DeprecationWarning)

import faiss  # noqa: E402

from ..logging_config import configure_logger_for_debug_trace  # noqa: E402

logger = configure_logger_for_debug_trace(__name__)


@dataclass
class SearchResult:
    """Result from a FAISS search operation."""
    vector_id: int
    score: float  # Cosine similarity of the normalized vectors


class FAISSWrapper:
    """
    Low-level wrapper for FAISS operations.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a wrapper.
    ::: This is stateful.

    Uses an exact inner-product index over L2-normalized vectors, so scores
    are cosine similarities. IndexIDMap2 supports deletion by ID,
    which incremental updates need.
    """

    def __init__(self, dimension: int):
        """
        Args:
            dimension: Vector dimension (must match embedding model)
        """
        if dimension < 1:
            raise ValueError("dimension must be >= 1")
        self._dimension = dimension
        self._index: Optional[faiss.IndexIDMap2] = None

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def total_vectors(self) -> int:
        if self._index is None:
            return 0
        return self._index.ntotal

    def create_index(self) -> None:
        """Create a new, empty flat inner-product index wrapped for custom IDs."""
        self._index = faiss.IndexIDMap2(faiss.IndexFlatIP(self._dimension))
        logger.debug(f"[FAISS] Created flat IP index, dim={self._dimension}")

    def _ensure_index(self) -> None:
        if self._index is None:
            self.create_index()

    @staticmethod
    def normalize(vectors: np.ndarray) -> np.ndarray:
        """L2-normalize rows; zero rows are left as zeros."""
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return vectors / norms

    def _prepare(self, vectors: np.ndarray) -> np.ndarray:
        if vectors.ndim == 1:
            vectors = vectors.reshape(1, -1)
        if vectors.ndim != 2:
            raise ValueError(f"Expected 2D array, got shape {vectors.shape}")
        if vectors.shape[1] != self._dimension:
            raise ValueError(
                f"Vector dimension mismatch: expected {self._dimension}, "
                f"got {vectors.shape[1]}"
            )
        vectors = np.ascontiguousarray(vectors, dtype=np.float32)
        return np.ascontiguousarray(self.normalize(vectors), dtype=np.float32)

    def add_vectors(self, vectors: np.ndarray, ids: np.ndarray) -> None:
        """
        Add vectors under the given int64 IDs.

        Args:
            vectors: Array of shape (n, dimension)
            ids: Array of n int64 IDs

        Raises:
            ValueError: If vectors have wrong dimension or ids length differs
        """
        self._ensure_index()
        vectors = self._prepare(vectors)
        ids = np.asarray(ids, dtype=np.int64)
        if len(ids) != vectors.shape[0]:
            raise ValueError(f"IDs length {len(ids)} != vectors count {vectors.shape[0]}")
        self._index.add_with_ids(vectors, ids)
        logger.debug(f"[FAISS] Added {len(ids)} vectors, total now: {self._index.ntotal}")

    def remove_vectors(self, ids: List[int]) -> int:
        """
        Remove vectors by ID.

        Returns:
            Number of vectors actually removed
        """
        if self._index is None or len(ids) == 0:
            return 0
        id_array = np.asarray(ids, dtype=np.int64)
        selector = faiss.IDSelectorArray(len(id_array), faiss.swig_ptr(id_array))
        return int(self._index.remove_ids(selector))

    def search(self, query_vector: np.ndarray, top_k: int = 10) -> List[SearchResult]:
        """
        Search for nearest neighbors of a single query vector.

        Returns:
            SearchResult list sorted by score (highest first)
        """
        if self._index is None or self._index.ntotal == 0 or top_k <= 0:
            return []

        query = self._prepare(np.asarray(query_vector, dtype=np.float32))
        k = min(top_k, self._index.ntotal)
        scores, ids = self._index.search(query, k)

        results = []
        for score, vector_id in zip(scores[0], ids[0]):
            if vector_id == -1:
                continue
            results.append(SearchResult(vector_id=int(vector_id), score=float(score)))
        return results

    def clear(self) -> None:
        if self._index is not None:
            self.create_index()

    def get_info(self) -> Dict[str, Any]:
        return {
            "dimension": self._dimension,
            "total_vectors": self.total_vectors,
            "metric": "ip",
        }

