"""
Tests for hybrid scoring, reranking, filtering and token budget trimming.
"""

import math
import warnings

import pytest
from pydantic import ValidationError

from delta_index.index_exceptions import BudgetWarning
from delta_index.models import RetrievalFilters, RetrievalQuery, TokenBudget
from delta_index.services.config_loader import ConfigLoader
from delta_index.services.hybrid_ranker import (
    HybridRanker,
    RankerConfig,
    ScoringWeights,
    jaccard_similarity,
    keyword_overlap_score,
    tokenize,
)
from delta_index.services.token_budget import (
    apply_budget,
    estimate_tokens,
    trim_to_budget,
)

from conftest import make_record


def candidates(*entries):
    """entries: (file_path, content, semantic_score[, start_line])"""
    result = []
    for i, entry in enumerate(entries):
        file_path, content, score = entry[:3]
        start = entry[3] if len(entry) > 3 else i + 1
        result.append((make_record(file_path, content, start, start), score))
    return result


class TestTokenize:
    """Test query/content tokenization."""

    def test_camel_and_snake_split(self):
        tokens = tokenize("parseHttpRequest load_config_file")
        assert {"parsehttprequest", "parse", "http", "request"} <= tokens
        assert {"load_config_file", "load", "config", "file"} <= tokens

    def test_lowercase_words(self):
        assert tokenize("Hello, WORLD!") == {"hello", "world"}

    def test_acronyms(self):
        assert {"xml", "parser"} <= tokenize("XMLParser")


class TestKeywordOverlap:
    def test_fraction_of_query_tokens(self):
        query = tokenize("load config")
        assert keyword_overlap_score(query, "def load(): pass") == 0.5
        assert keyword_overlap_score(query, "def load_config(): pass") == 1.0

    def test_path_tokens_count(self):
        query = tokenize("retry policy")
        assert keyword_overlap_score(query, "x = 1", "services/retry.py") == 0.5

    def test_empty_query(self):
        assert keyword_overlap_score(set(), "anything") == 0.0

    def test_jaccard(self):
        assert jaccard_similarity(frozenset("ab"), frozenset("ab")) == 1.0
        assert jaccard_similarity(frozenset("ab"), frozenset("bc")) == pytest.approx(1 / 3)
        assert jaccard_similarity(frozenset(), frozenset()) == 1.0


class TestScoringWeights:
    """Test weight validation."""

    def test_defaults(self):
        weights = ScoringWeights()
        assert weights.semantic_weight == 0.7
        assert weights.keyword_weight == 0.3

    def test_mismatch_rejected(self):
        """Weights that do not add up are an error, never renormalized."""
        with pytest.raises(ValueError):
            ScoringWeights(semantic_weight=0.8, keyword_weight=0.3)

    def test_custom_total(self):
        weights = ScoringWeights(semantic_weight=1.5, keyword_weight=0.5, expected_total=2.0)
        assert weights.semantic_weight == 1.5

    def test_negative_rejected(self):
        with pytest.raises(ValidationError):
            ScoringWeights(semantic_weight=1.2, keyword_weight=-0.2)


class TestHybridScoring:
    def test_hybrid_formula(self):
        ranker = HybridRanker()
        scored = ranker.score("load config", candidates(("a.py", "def load_config(): pass", 0.5)))
        chunk = scored[0]
        assert chunk.keyword_score == 1.0
        assert chunk.hybrid_score == pytest.approx(0.7 * 0.5 + 0.3 * 1.0)

    def test_keyword_match_can_outrank(self):
        """A strong lexical match beats a slightly better vector match."""
        ranker = HybridRanker()
        scored = ranker.score("token budget", candidates(
            ("a.py", "unrelated text here", 0.80),
            ("b.py", "trim to the token budget", 0.75),
        ))
        assert [c.file_path for c in scored] == ["b.py", "a.py"]

    def test_candidate_count(self):
        assert HybridRanker().candidate_count(10) == 30
        assert HybridRanker(RankerConfig(candidate_multiplier=5)).candidate_count(4) == 20


class TestRerank:
    """Test reciprocal rank fusion and the diversity penalty."""

    def test_rrf_scores(self):
        """rrf = 1/(k + semantic_rank) + 1/(k + keyword_rank), 1-based."""
        ranker = HybridRanker(RankerConfig(enable_reranking=True, deduplication_threshold=None))
        scored = ranker.score("alpha", candidates(
            ("a.py", "beta gamma", 0.9),
            ("b.py", "alpha", 0.5),
        ))
        reranked = ranker.rerank(scored)

        by_file = {c.file_path: c for c in reranked}
        assert by_file["a.py"].rerank_score == pytest.approx(1 / 61 + 1 / 62)
        assert by_file["b.py"].rerank_score == pytest.approx(1 / 62 + 1 / 61)

    def test_rrf_order(self):
        ranker = HybridRanker(RankerConfig(enable_reranking=True))
        scored = ranker.score("alpha", candidates(
            ("a.py", "alpha one", 0.9),
            ("b.py", "nothing", 0.8),
            ("c.py", "alpha two", 0.1),
        ))
        reranked = ranker.rerank(scored)
        assert reranked[0].file_path == "a.py"
        assert reranked[0].final_score == reranked[0].rerank_score

    def test_diversity_penalty(self):
        """Each earlier result from the same file multiplies by (1 - d)."""
        config = RankerConfig(enable_reranking=True, diversity_factor=0.5)
        ranker = HybridRanker(config)
        scored = ranker.score("q", candidates(
            ("same.py", "one", 0.9, 1),
            ("same.py", "two", 0.8, 2),
            ("same.py", "three", 0.7, 3),
            ("other.py", "four", 0.6, 4),
        ))
        reranked = ranker.rerank(scored)
        by_content = {c.content: c for c in reranked}

        plain = HybridRanker(RankerConfig(enable_reranking=True)).rerank(
            HybridRanker().score("q", candidates(
                ("same.py", "one", 0.9, 1),
                ("same.py", "two", 0.8, 2),
                ("same.py", "three", 0.7, 3),
                ("other.py", "four", 0.6, 4),
            ))
        )
        base = {c.content: c.rerank_score for c in plain}

        assert by_content["one"].rerank_score == pytest.approx(base["one"])
        assert by_content["two"].rerank_score == pytest.approx(base["two"] * 0.5)
        assert by_content["three"].rerank_score == pytest.approx(base["three"] * 0.25)
        assert by_content["four"].rerank_score == pytest.approx(base["four"])
        assert [c.content for c in reranked][:2] == ["one", "four"]

    def test_invalid_diversity(self):
        with pytest.raises(ValueError):
            RankerConfig(diversity_factor=1.5)


class TestFilter:
    """Test filters, caps, dedup and top_k."""

    def test_request_filters(self):
        ranker = HybridRanker()
        scored = ranker.score("q", candidates(
            ("src/a.py", "one", 0.9),
            ("lib/b.py", "two", 0.8),
        ))
        kept = ranker.filter(scored, RetrievalFilters(path_prefixes=["lib/"]), top_k=10)
        assert [c.file_path for c in kept] == ["lib/b.py"]

    def test_min_score_threshold(self):
        ranker = HybridRanker(RankerConfig(min_score_threshold=0.5))
        scored = ranker.score("q", candidates(("a.py", "one", 0.9), ("b.py", "two", 0.5)))
        kept = ranker.filter(scored, None, top_k=10)
        assert [c.file_path for c in kept] == ["a.py"]

    def test_max_results_per_source(self):
        ranker = HybridRanker(RankerConfig(max_results_per_source=1))
        scored = ranker.score("q", candidates(
            ("a.py", "one", 0.9, 1), ("a.py", "two", 0.8, 2), ("b.py", "three", 0.7, 3),
        ))
        kept = ranker.filter(scored, None, top_k=10)
        assert [c.content for c in kept] == ["one", "three"]

    def test_near_duplicates_removed(self):
        """The higher scoring of two near-identical chunks is kept."""
        body = "def load_config(path): return json.load(open(path))"
        ranker = HybridRanker(RankerConfig(deduplication_threshold=0.8))
        scored = ranker.score("q", candidates(
            ("a.py", body, 0.9),
            ("b.py", body + " ", 0.95),
            ("c.py", "completely different content", 0.5),
        ))
        kept = ranker.filter(scored, None, top_k=10)
        assert [c.file_path for c in kept] == ["b.py", "c.py"]

    def test_dedup_disabled(self):
        ranker = HybridRanker(RankerConfig(deduplication_threshold=None))
        scored = ranker.score("q", candidates(("a.py", "same", 0.9), ("b.py", "same", 0.8)))
        assert len(ranker.filter(scored, None, top_k=10)) == 2

    def test_top_k(self):
        ranker = HybridRanker()
        scored = ranker.score("q", candidates(*[(f"f{i}.py", f"body{i}", 0.9 - i / 100) for i in range(8)]))
        assert len(ranker.filter(scored, None, top_k=3)) == 3


class TestTokenBudget:
    """Test estimation and maximal-prefix trimming."""

    def test_estimate(self):
        assert estimate_tokens("a" * 40) == 11
        assert estimate_tokens("a" * 41) == math.ceil(41 / 4 * 1.1)
        assert estimate_tokens("") == 0
        assert estimate_tokens("a" * 40, buffer_factor=1.0) == 10

    def test_trim_is_maximal_prefix(self):
        """Kept prefix fits; adding the next item would not."""
        costs = [5, 3, 8, 1, 4]
        items = list("abcde")
        for budget in range(0, 25):
            kept, total = trim_to_budget(items, costs, budget)
            assert total <= budget
            assert total == sum(costs[:len(kept)])
            if len(kept) < len(items):
                assert total + costs[len(kept)] > budget
            assert kept == items[:len(kept)]

    def test_trim_zero_budget(self):
        assert trim_to_budget(["a"], [1], 0) == ([], 0)

    def test_apply_budget(self):
        ranker = HybridRanker()
        scored = ranker.score("q", candidates(
            ("a.py", "a" * 40, 0.9), ("b.py", "b" * 40, 0.8), ("c.py", "c" * 40, 0.7),
        ))
        kept, total, truncated = apply_budget(scored, TokenBudget(max_tokens=25))
        assert len(kept) == 2
        assert total == 22
        assert truncated


class TestRankPipeline:
    """Test the full rank() pipeline."""

    def test_result_fields(self):
        ranker = HybridRanker()
        result = ranker.rank(
            RetrievalQuery(text="load config", top_k=2),
            candidates(("a.py", "load config", 0.9), ("b.py", "other", 0.8), ("c.py", "x", 0.1)),
        )
        assert len(result.chunks) == 2
        assert result.total_candidates == 3
        assert not result.truncated
        assert result.warnings == []
        assert result.estimated_tokens == sum(estimate_tokens(c.content) for c in result.chunks)

    def test_budget_warning(self):
        """Trimming records and emits a BudgetWarning."""
        ranker = HybridRanker()
        with pytest.warns(BudgetWarning):
            result = ranker.rank(
                RetrievalQuery(text="q"),
                candidates(("a.py", "a" * 400, 0.9), ("b.py", "b" * 400, 0.8)),
                TokenBudget(max_tokens=150),
            )
        assert result.truncated
        assert len(result.chunks) == 1
        assert result.estimated_tokens <= 150
        assert len(result.warnings) == 1

    def test_no_warning_when_fits(self):
        ranker = HybridRanker()
        with warnings.catch_warnings():
            warnings.simplefilter("error", BudgetWarning)
            result = ranker.rank(
                RetrievalQuery(text="q"),
                candidates(("a.py", "short", 0.9)),
                TokenBudget(max_tokens=1000),
            )
        assert not result.truncated

    def test_empty_candidates(self):
        result = HybridRanker(RankerConfig(enable_reranking=True)).rank(RetrievalQuery(text="q"), [])
        assert result.chunks == []
        assert result.estimated_tokens == 0

    def test_from_config(self):
        config = RankerConfig.from_config({
            "retrieval_semantic_weight": 0.6,
            "retrieval_keyword_weight": 0.4,
            "retrieval_enable_reranking": True,
            "retrieval_diversity_factor": 0.2,
            "retrieval_max_results_per_source": 2,
            "retrieval_deduplication_threshold": 0.95,
            "retrieval_candidate_multiplier": 4,
        })
        assert config.weights.keyword_weight == 0.4
        assert config.enable_reranking
        assert config.candidate_multiplier == 4

    def test_from_config_threshold_rrf_and_weight_total(self):
        config = RankerConfig.from_config({
            "retrieval_semantic_weight": 1.5,
            "retrieval_keyword_weight": 0.5,
            "retrieval_expected_weight_total": 2.0,
            "retrieval_rrf_k": 10,
            "retrieval_min_score_threshold": 0.25,
        })
        assert config.weights.expected_total == 2.0
        assert config.rrf_k == 10
        assert config.min_score_threshold == 0.25

    def test_from_config_loader_defaults(self):
        config = RankerConfig.from_config(ConfigLoader().get_retrieval_config())
        assert config == RankerConfig()
