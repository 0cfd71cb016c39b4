"""
Hybrid Retrieval Ranker

Scores, reranks, filters, deduplicates and budget-trims retrieval candidates.

Pipeline:
1. Hybrid score = semantic_weight * semantic + keyword_weight * keyword overlap
2. Optional reciprocal rank fusion over the semantic and keyword rankings,
   followed by a per-file diversity penalty
3. Request filters, hybrid score threshold, per-file cap, near-duplicate
   removal, top_k
4. Token budget trimming
"""

import re
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..index_exceptions import BudgetWarning
from ..logging_config import configure_logger_for_debug_trace
from ..models import (
    IndexRecord,
    RetrievalFilters,
    RetrievalQuery,
    RetrievalResult,
    ScoredChunk,
    TokenBudget,
)
from .token_budget import apply_budget, estimate_tokens

logger = configure_logger_for_debug_trace(__name__)


_WORD_PATTERN = re.compile(r"[A-Za-z0-9_]+")
_CAMEL_PATTERN = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|[0-9]+")


def tokenize(text: str) -> Set[str]:
    """
    Lowercase word and identifier tokens.

    Identifiers contribute themselves plus their camelCase and snake_case
    parts: "parseHttpRequest" -> {"parsehttprequest", "parse", "http", "request"}.
    """
    tokens: Set[str] = set()
    for word in _WORD_PATTERN.findall(text):
        tokens.add(word.lower())
        for part in word.split("_"):
            if not part:
                continue
            tokens.add(part.lower())
            for piece in _CAMEL_PATTERN.findall(part):
                tokens.add(piece.lower())
    return tokens


def keyword_overlap_score(query_tokens: Set[str], content: str, file_path: str = "") -> float:
    """Fraction of distinct query tokens present in the content or path tokens."""
    if not query_tokens:
        return 0.0
    haystack = tokenize(content) | tokenize(file_path)
    return len(query_tokens & haystack) / len(query_tokens)


def jaccard_similarity(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


class ScoringWeights(BaseModel):
    """
    Weights of the hybrid score.

    The weights must add up to expected_total; a mismatch is a configuration
    error and is never silently renormalized.
    """
    model_config = ConfigDict(frozen=True)

    semantic_weight: float = Field(0.7, ge=0.0)
    keyword_weight: float = Field(0.3, ge=0.0)
    expected_total: float = 1.0

    @model_validator(mode="after")
    def _check_total(self) -> "ScoringWeights":
        total = self.semantic_weight + self.keyword_weight
        if abs(total - self.expected_total) > 1e-6:
            raise ValueError(
                f"Scoring weights sum to {total}, expected {self.expected_total}"
            )
        return self


@dataclass
class RankerConfig:
    """
    Ranking knobs.

    Attributes:
        weights: Hybrid score weights
        enable_reranking: Apply RRF plus diversity penalty
        rrf_k: RRF constant
        diversity_factor: Per-earlier-same-file penalty in [0, 1]
        min_score_threshold: Minimum hybrid score kept
        max_results_per_source: Cap per file, 0 for unlimited
        deduplication_threshold: Jaccard similarity above which a lower
            scored result is dropped; None disables deduplication
        candidate_multiplier: Candidates fetched per requested result
    """
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    enable_reranking: bool = False
    rrf_k: int = 60
    diversity_factor: float = 0.0
    min_score_threshold: float = 0.0
    max_results_per_source: int = 0
    deduplication_threshold: Optional[float] = 0.9
    candidate_multiplier: int = 3

    def __post_init__(self):
        if not 0.0 <= self.diversity_factor <= 1.0:
            raise ValueError("diversity_factor must be in [0, 1]")
        if self.rrf_k < 1:
            raise ValueError("rrf_k must be >= 1")
        if self.candidate_multiplier < 1:
            raise ValueError("candidate_multiplier must be >= 1")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RankerConfig":
        """Build from ConfigLoader.get_retrieval_config() output."""
        dedup = config.get("retrieval_deduplication_threshold", 0.9)
        return cls(
            weights=ScoringWeights(
                semantic_weight=float(config.get("retrieval_semantic_weight", 0.7)),
                keyword_weight=float(config.get("retrieval_keyword_weight", 0.3)),
                expected_total=float(config.get("retrieval_expected_weight_total", 1.0)),
            ),
            enable_reranking=bool(config.get("retrieval_enable_reranking", False)),
            rrf_k=int(config.get("retrieval_rrf_k", 60)),
            diversity_factor=float(config.get("retrieval_diversity_factor", 0.0)),
            min_score_threshold=float(config.get("retrieval_min_score_threshold", 0.0)),
            max_results_per_source=int(config.get("retrieval_max_results_per_source", 0)),
            deduplication_threshold=float(dedup) if dedup is not None else None,
            candidate_multiplier=int(config.get("retrieval_candidate_multiplier", 3)),
        )


class HybridRanker:
    """
    Ranks vector-search candidates for a query.

    ::: This is-in-layer Service-Layer.
    ::: This is a ranker.
    ::: This is stateless.
    """

    def __init__(self, config: Optional[RankerConfig] = None):
        self.config = config or RankerConfig()

    def candidate_count(self, top_k: int) -> int:
        return top_k * self.config.candidate_multiplier

    # =========================================================================
    # Scoring
    # =========================================================================

    def score(self, query_text: str, candidates: List[Tuple[IndexRecord, float]]) -> List[ScoredChunk]:
        """Hybrid-score candidates, best first."""
        weights = self.config.weights
        query_tokens = tokenize(query_text)
        scored = []
        for record, semantic in candidates:
            keyword = keyword_overlap_score(query_tokens, record.content, record.file_path)
            scored.append(ScoredChunk(
                record=record,
                semantic_score=semantic,
                keyword_score=keyword,
                hybrid_score=weights.semantic_weight * semantic + weights.keyword_weight * keyword,
            ))
        scored.sort(key=lambda c: (-c.hybrid_score, c.id))
        return scored

    def rerank(self, scored: List[ScoredChunk]) -> List[ScoredChunk]:
        """
        Reciprocal rank fusion of the semantic and keyword rankings.

        rrf = 1/(k + semantic_rank) + 1/(k + keyword_rank) with 1-based ranks,
        then each result is multiplied by (1 - diversity_factor)^n where n is
        the number of higher-ranked results from the same file.
        """
        k = self.config.rrf_k
        by_semantic = sorted(scored, key=lambda c: (-c.semantic_score, c.id))
        by_keyword = sorted(scored, key=lambda c: (-c.keyword_score, c.id))
        semantic_rank = {c.id: rank for rank, c in enumerate(by_semantic, start=1)}
        keyword_rank = {c.id: rank for rank, c in enumerate(by_keyword, start=1)}

        for chunk in scored:
            chunk.rerank_score = (
                1.0 / (k + semantic_rank[chunk.id]) + 1.0 / (k + keyword_rank[chunk.id])
            )
        ranked = sorted(scored, key=lambda c: (-c.rerank_score, c.id))

        factor = self.config.diversity_factor
        if factor > 0:
            seen: Dict[str, int] = {}
            for chunk in ranked:
                n = seen.get(chunk.file_path, 0)
                chunk.rerank_score *= (1.0 - factor) ** n
                seen[chunk.file_path] = n + 1
            ranked.sort(key=lambda c: (-c.rerank_score, c.id))
        return ranked

    # =========================================================================
    # Filtering
    # =========================================================================

    def filter(
        self,
        ranked: List[ScoredChunk],
        filters: Optional[RetrievalFilters],
        top_k: int
    ) -> List[ScoredChunk]:
        """Apply request filters, thresholds, per-file cap, dedup and top_k in order."""
        cfg = self.config
        per_source: Dict[str, int] = {}
        kept: List[ScoredChunk] = []
        kept_tokens: List[FrozenSet[str]] = []

        for chunk in ranked:
            if filters is not None and not filters.matches(chunk.record):
                continue
            if chunk.hybrid_score < cfg.min_score_threshold:
                continue
            if cfg.max_results_per_source and per_source.get(chunk.file_path, 0) >= cfg.max_results_per_source:
                continue
            if cfg.deduplication_threshold is not None:
                tokens = frozenset(tokenize(chunk.content))
                if any(jaccard_similarity(tokens, other) > cfg.deduplication_threshold
                       for other in kept_tokens):
                    continue
                kept_tokens.append(tokens)
            kept.append(chunk)
            per_source[chunk.file_path] = per_source.get(chunk.file_path, 0) + 1
            if len(kept) >= top_k:
                break
        return kept

    # =========================================================================
    # Pipeline
    # =========================================================================

    def rank(
        self,
        query: RetrievalQuery,
        candidates: List[Tuple[IndexRecord, float]],
        budget: Optional[TokenBudget] = None
    ) -> RetrievalResult:
        """
        Run the full ranking pipeline.

        Args:
            query: Validated query
            candidates: (record, semantic score) pairs from the vector index
            budget: Optional token budget

        Returns:
            RetrievalResult in final order
        """
        ranked = self.score(query.text, candidates)
        if self.config.enable_reranking and ranked:
            ranked = self.rerank(ranked)

        selected = self.filter(ranked, query.filters, query.top_k)

        warning_messages: List[str] = []
        truncated = False
        if budget is not None:
            kept, total, truncated = apply_budget(selected, budget)
            if truncated:
                message = (
                    f"Trimmed {len(selected) - len(kept)} of {len(selected)} results "
                    f"to fit {budget.max_tokens} tokens"
                )
                warning_messages.append(message)
                warnings.warn(message, BudgetWarning, stacklevel=2)
                logger.info(f"[Ranker] {message}")
            selected = kept
        else:
            total = sum(estimate_tokens(c.content) for c in selected)

        logger.debug(
            f"[Ranker] {len(candidates)} candidates -> {len(selected)} results, ~{total} tokens"
        )
        return RetrievalResult(
            chunks=selected,
            estimated_tokens=total,
            budget=budget,
            truncated=truncated,
            total_candidates=len(candidates),
            warnings=warning_messages,
        )
