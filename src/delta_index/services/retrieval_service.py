"""
Retrieval Service

Query text -> embedding -> vector index candidates -> hybrid ranking ->
budget trimming. A vector backend failure on the read path degrades to an
empty result flagged `degraded` instead of failing the caller.
"""

from dataclasses import asdict
from typing import Any, Dict, Optional

from ..index_exceptions import VectorBackendError
from ..logging_config import configure_logger_for_debug_trace
from ..models import (
    CommitRange,
    RetrievalFilters,
    RetrievalQuery,
    RetrievalResult,
    TokenBudget,
)
from .embedding_service import EmbeddingService
from .hybrid_ranker import HybridRanker
from .vector_store import VectorIndex

logger = configure_logger_for_debug_trace(__name__)


class RetrievalService:
    """
    Ranked, budget-constrained retrieval over the chunk index.

    ::: This is-in-layer Service-Layer.
    ::: This is a service.
    ::: This is stateless.
    """

    def __init__(
        self,
        vector_index: VectorIndex,
        embedding_service: EmbeddingService,
        ranker: Optional[HybridRanker] = None,
        default_budget: Optional[TokenBudget] = None,
    ):
        """
        Args:
            vector_index: Facade to search
            embedding_service: Embeds query text
            ranker: Ranking pipeline (defaults to HybridRanker())
            default_budget: Budget used when retrieve() gets none
        """
        self.vector_index = vector_index
        self.embedding_service = embedding_service
        self.ranker = ranker or HybridRanker()
        self.default_budget = default_budget

    def retrieve(
        self,
        query: RetrievalQuery,
        budget: Optional[TokenBudget] = None
    ) -> RetrievalResult:
        """
        Answer a query.

        Args:
            query: Validated retrieval query
            budget: Token budget (defaults to the service's default budget)

        Returns:
            RetrievalResult; `degraded` is set when the vector backend failed

        Raises:
            EmbeddingBackendError: If the query cannot be embedded
        """
        budget = budget or self.default_budget
        vector = self.embedding_service.embed_query(query.text)
        limit = self.ranker.candidate_count(query.top_k)

        try:
            candidates = self.vector_index.search(
                vector,
                limit=limit,
                min_score=query.min_score,
                filters=query.filters,
            )
        except VectorBackendError as e:
            logger.warning(f"[Retrieval] Vector search failed, returning degraded result: {e}")
            return RetrievalResult(
                chunks=[],
                estimated_tokens=0,
                budget=budget,
                warnings=[f"Vector backend unavailable: {e}"],
                degraded=True,
            )

        return self.ranker.rank(query, candidates, budget)

    def retrieve_file_chunks(
        self,
        file_path: str,
        text: str,
        top_k: int = 10,
        budget: Optional[TokenBudget] = None
    ) -> RetrievalResult:
        """Retrieve within a single file."""
        query = RetrievalQuery(text=text, top_k=top_k, filters=RetrievalFilters(files=[file_path]))
        return self.retrieve(query, budget)

    def retrieve_directory_chunks(
        self,
        directory: str,
        text: str,
        top_k: int = 10,
        budget: Optional[TokenBudget] = None
    ) -> RetrievalResult:
        """Retrieve within a directory (path prefix)."""
        prefix = directory.rstrip("/") + "/"
        query = RetrievalQuery(text=text, top_k=top_k, filters=RetrievalFilters(path_prefixes=[prefix]))
        return self.retrieve(query, budget)

    def retrieve_language_chunks(
        self,
        language: str,
        text: str,
        top_k: int = 10,
        budget: Optional[TokenBudget] = None
    ) -> RetrievalResult:
        """Retrieve chunks of one language."""
        query = RetrievalQuery(text=text, top_k=top_k, filters=RetrievalFilters(languages=[language]))
        return self.retrieve(query, budget)

    def retrieve_commit_chunks(
        self,
        commit: str,
        text: str,
        top_k: int = 10,
        budget: Optional[TokenBudget] = None
    ) -> RetrievalResult:
        """Retrieve chunks written at one commit."""
        commit_range = CommitRange(from_commit=commit, to_commit=commit)
        query = RetrievalQuery(text=text, top_k=top_k, filters=RetrievalFilters(commit_range=commit_range))
        return self.retrieve(query, budget)

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """
        Report index size, backend health and embedding/cache counters.

        Returns:
            Dict with vector_index, healthy, total_chunks (None when the
            backend is unhealthy or the count failed), embedding and cache
        """
        healthy = self.vector_index.health()
        total_chunks: Optional[int] = None
        if healthy:
            try:
                total_chunks = self.vector_index.count()
            except VectorBackendError as e:
                logger.warning(f"[Retrieval] Count failed: {e}")
                healthy = False

        cache = self.embedding_service.cache
        return {
            "vector_index": type(self.vector_index).__name__,
            "healthy": healthy,
            "total_chunks": total_chunks,
            "embedding": self.embedding_service.get_info(),
            "cache": asdict(cache.stats()) if cache is not None else None,
        }
