"""
Engine wiring.

Builds the cache, embedding service, vector index, indexer and retrieval
service from delta_index.json / DELTA_INDEX_* settings.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .logging_config import configure_logger_for_debug_trace
from .models import BatchOptions, TokenBudget
from .services.batch_orchestrator import DeltaIndexer
from .services.chunk_extractor import LineWindowExtractor
from .services.config_loader import ConfigLoader, get_config_loader
from .services.embedding_cache import CachePolicy, EmbeddingCache
from .services.embedding_service import EmbeddingService, create_embedding_backend
from .services.hybrid_ranker import HybridRanker, RankerConfig
from .services.retrieval_service import RetrievalService
from .services.retry import RetryPolicy
from .services.vector_store import VectorIndex, create_vector_index

logger = configure_logger_for_debug_trace(__name__)


@dataclass
class Engine:
    """
    Fully wired indexing and retrieval components.

    ::: This is-in-layer Service-Layer.
    ::: This is a container.
    ::: This is stateful.
    """
    cache: EmbeddingCache
    embedding_service: EmbeddingService
    vector_index: VectorIndex
    indexer: DeltaIndexer
    retrieval: RetrievalService
    batch_options: BatchOptions

    def close(self) -> None:
        """Stop the cache sweeper and persist the cache."""
        self.cache.shutdown()


def create_engine(
    project_root: Optional[Union[str, Path]] = None,
    config_loader: Optional[ConfigLoader] = None,
    vector_index: Optional[VectorIndex] = None,
    start_sweeper: bool = True,
) -> Engine:
    """
    Build an Engine from configuration.

    Args:
        project_root: Repository root (defaults to DELTA_INDEX_PROJECT_ROOT or CWD)
        config_loader: Loader to use (defaults to the global singleton)
        vector_index: Pre-built index, skipping backend selection
        start_sweeper: Start the cache expiry thread

    Returns:
        Engine with the cache initialized
    """
    loader = config_loader or get_config_loader()
    loader.load(Path(project_root) if project_root else None)

    retry_policy = RetryPolicy.from_config(loader.get_retry_config())

    cache_config = loader.get_cache_config()
    cache = EmbeddingCache(
        policy=CachePolicy.from_config(cache_config),
        snapshot_path=cache_config.get("cache_path") or EmbeddingCache.default_snapshot_path(),
    )
    cache.initialize(start_sweeper=start_sweeper)

    indexing_config = loader.get_indexing_config()
    embedding_config = dict(loader.get_embedding_config())
    embedding_config["vector_dimension"] = loader.get_vector_config()["vector_dimension"]
    embedding_service = EmbeddingService(
        backend=create_embedding_backend(embedding_config),
        cache=cache,
        retry_policy=retry_policy,
        batch_size=int(indexing_config["indexing_batch_size"]),
    )

    if vector_index is None:
        vector_index = create_vector_index(loader.get_vector_config(), retry_policy=retry_policy)

    indexer = DeltaIndexer(
        vector_index=vector_index,
        embedding_service=embedding_service,
        extractor=LineWindowExtractor(int(indexing_config["indexing_chunk_size"])),
        project_root=project_root,
    )

    retrieval_config = loader.get_retrieval_config()
    retrieval = RetrievalService(
        vector_index=vector_index,
        embedding_service=embedding_service,
        ranker=HybridRanker(RankerConfig.from_config(retrieval_config)),
        default_budget=TokenBudget(max_tokens=int(retrieval_config["retrieval_max_tokens"])),
    )

    batch_options = BatchOptions(
        max_concurrent_files=int(indexing_config["indexing_max_concurrent_files"]),
        batch_size=int(indexing_config["indexing_batch_size"]),
    )
    logger.info(f"[Engine] Ready ({type(vector_index).__name__}, model={embedding_service.model_name})")
    return Engine(
        cache=cache,
        embedding_service=embedding_service,
        vector_index=vector_index,
        indexer=indexer,
        retrieval=retrieval,
        batch_options=batch_options,
    )
