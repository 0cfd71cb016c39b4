"""
Token estimation and budget trimming.

Estimates are ceil(chars / 4 * buffer); the buffer (1.1 by default) covers
tokenizer variance. Trimming keeps the longest prefix of an ordered result
list whose cumulative estimate fits the budget.
"""

import math
from bisect import bisect_right
from itertools import accumulate
from typing import List, Sequence, Tuple, TypeVar

from ..models import ScoredChunk, TokenBudget

T = TypeVar('T')

CHARS_PER_TOKEN = 4
DEFAULT_BUFFER_FACTOR = 1.1


def estimate_tokens(text: str, buffer_factor: float = DEFAULT_BUFFER_FACTOR) -> int:
    # Rounded first so 40 chars * 1.1 gives 11, not 12
    return math.ceil(round(len(text) / CHARS_PER_TOKEN * buffer_factor, 9))


def trim_to_budget(
    items: Sequence[T],
    costs: Sequence[int],
    max_tokens: int
) -> Tuple[List[T], int]:
    """
    Longest prefix of items whose summed costs do not exceed max_tokens.

    Args:
        items: Ordered items
        costs: Token cost of each item
        max_tokens: Budget

    Returns:
        (kept prefix, its total cost)
    """
    prefix = list(accumulate(costs))
    keep = bisect_right(prefix, max_tokens)
    return list(items[:keep]), prefix[keep - 1] if keep else 0


def apply_budget(
    chunks: List[ScoredChunk],
    budget: TokenBudget
) -> Tuple[List[ScoredChunk], int, bool]:
    """
    Trim ranked chunks to a TokenBudget.

    Returns:
        (kept chunks, estimated tokens of the kept chunks, whether anything was dropped)
    """
    costs = [estimate_tokens(c.content, budget.estimation_buffer_factor) for c in chunks]
    kept, total = trim_to_budget(chunks, costs, budget.max_tokens)
    return kept, total, len(kept) < len(chunks)
