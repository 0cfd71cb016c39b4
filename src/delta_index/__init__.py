"""
delta_index - incremental code-chunk indexing and hybrid retrieval

Keeps a vector index of source-code chunks in step with repository changes
using content-addressed reconciliation and a bounded embedding cache, and
serves ranked, token-budgeted retrieval over it.
"""

# Suppress SWIG deprecation warnings from FAISS before any imports
# (FAISS uses SWIG bindings that trigger Python 3.12+ deprecation warnings)
import warnings
warnings.filterwarnings("ignore", message="builtin type Swig", category=DeprecationWarning)
warnings.filterwarnings("ignore", message="builtin type swig", category=DeprecationWarning)

__version__ = "0.1.0"

from .content_hasher import hash_content
from .index_exceptions import (
    DeltaIndexError,
    FileReadError,
    ExtractionError,
    EmbeddingBackendError,
    VectorBackendError,
    CacheCorruptionError,
    BatchAbortedError,
    BudgetWarning,
)
from .models import (
    Chunk,
    IndexRecord,
    ReconciliationResult,
    ChangeStatus,
    FileChange,
    BatchOptions,
    BatchResult,
    FileOutcome,
    IndexingError,
    CacheEntry,
    CacheStats,
    CommitRange,
    RetrievalFilters,
    RetrievalQuery,
    RetrievalResult,
    ScoredChunk,
    TokenBudget,
)
from .services import (
    CachePolicy,
    EmbeddingCache,
    EmbeddingService,
    DeltaIndexer,
    HybridRanker,
    RankerConfig,
    ScoringWeights,
    RetrievalService,
    VectorIndex,
    create_vector_index,
    reconcile,
)

__all__ = [
    "hash_content",
    "DeltaIndexError",
    "FileReadError",
    "ExtractionError",
    "EmbeddingBackendError",
    "VectorBackendError",
    "CacheCorruptionError",
    "BatchAbortedError",
    "BudgetWarning",
    "Chunk",
    "IndexRecord",
    "ReconciliationResult",
    "ChangeStatus",
    "FileChange",
    "BatchOptions",
    "BatchResult",
    "FileOutcome",
    "IndexingError",
    "CacheEntry",
    "CacheStats",
    "CommitRange",
    "RetrievalFilters",
    "RetrievalQuery",
    "RetrievalResult",
    "ScoredChunk",
    "TokenBudget",
    "CachePolicy",
    "EmbeddingCache",
    "EmbeddingService",
    "DeltaIndexer",
    "HybridRanker",
    "RankerConfig",
    "ScoringWeights",
    "RetrievalService",
    "VectorIndex",
    "create_vector_index",
    "reconcile",
]
