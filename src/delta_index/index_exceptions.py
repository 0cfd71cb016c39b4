"""
delta_index Exception Hierarchy

Contains all exception and warning classes raised by the indexing and
retrieval services.
"""

from typing import Optional


class DeltaIndexError(Exception):
    """
    Base exception for all delta_index operations.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is stateless.
    """

    def __init__(self, message: str, file_path: Optional[str] = None):
        super().__init__(message)
        self.file_path = file_path


class FileReadError(DeltaIndexError):
    """
    Raised when a changed file cannot be read from disk.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    """
    pass


class ExtractionError(DeltaIndexError):
    """
    Raised when the chunk extractor fails on a file's content.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    """
    pass


class EmbeddingBackendError(DeltaIndexError):
    """
    Raised when the embedding backend fails after all retry attempts.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    """
    pass


class VectorBackendError(DeltaIndexError):
    """
    Raised when the vector index backend fails after all retry attempts.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.

    Fatal for indexing writes. Retrieval reads catch it and degrade to an
    empty result instead of failing.
    """
    pass


class CacheCorruptionError(DeltaIndexError):
    """
    Raised while loading a malformed embedding cache snapshot entry.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.

    Never escapes EmbeddingCache.initialize(); affected keys become misses.
    """
    pass


class BatchAbortedError(DeltaIndexError):
    """
    Raised in strict mode when a file fails and the whole batch is aborted.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.

    The originating error is available as __cause__.
    """
    pass


class BudgetWarning(UserWarning):
    """
    Informational warning emitted when results were trimmed to a token budget.

    ::: This is-in-layer Utility-Layer.
    ::: This is a warning.
    """
    pass


__all__ = [
    "DeltaIndexError",
    "FileReadError",
    "ExtractionError",
    "EmbeddingBackendError",
    "VectorBackendError",
    "CacheCorruptionError",
    "BatchAbortedError",
    "BudgetWarning",
]
