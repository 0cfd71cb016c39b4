"""
Service Classes for delta_index

Each service has a single, well-defined responsibility: embedding cache,
embedding generation, chunk extraction and reconciliation, batch
orchestration, hybrid ranking, vector storage and retrieval.
"""

from .config_loader import ConfigLoader, load_config, get_config_loader
from .retry import RetryPolicy, with_retry
from .embedding_cache import (
    CachePolicy,
    EmbeddingCache,
    EvictionStrategy,
    LeastRecentlyAccessedStrategy,
)
from .embedding_service import (
    EmbeddingBackend,
    EmbeddingService,
    LightweightBackend,
    OllamaBackend,
    SentenceTransformerBackend,
    create_embedding_backend,
    get_embedding_service,
)
from .chunk_extractor import ChunkExtractor, LineWindowExtractor, detect_language
from .chunk_reconciler import reconcile
from .vector_store import (
    VectorIndex,
    InMemoryVectorIndex,
    QdrantVectorIndex,
    create_vector_index,
)
from .batch_orchestrator import DeltaIndexer
from .hybrid_ranker import HybridRanker, RankerConfig, ScoringWeights
from .token_budget import estimate_tokens, trim_to_budget
from .retrieval_service import RetrievalService


__all__ = [
    "ConfigLoader",
    "load_config",
    "get_config_loader",
    "RetryPolicy",
    "with_retry",
    "CachePolicy",
    "EmbeddingCache",
    "EvictionStrategy",
    "LeastRecentlyAccessedStrategy",
    "EmbeddingBackend",
    "EmbeddingService",
    "LightweightBackend",
    "OllamaBackend",
    "SentenceTransformerBackend",
    "create_embedding_backend",
    "get_embedding_service",
    "ChunkExtractor",
    "LineWindowExtractor",
    "detect_language",
    "reconcile",
    "VectorIndex",
    "InMemoryVectorIndex",
    "QdrantVectorIndex",
    "create_vector_index",
    "DeltaIndexer",
    "HybridRanker",
    "RankerConfig",
    "ScoringWeights",
    "estimate_tokens",
    "trim_to_budget",
    "RetrievalService",
]
