"""
Content hashing for chunk identity and embedding cache keys.
"""

import hashlib


def hash_content(content: str) -> str:
    """
    Digest a chunk body.

    The digest covers the exact UTF-8 bytes of the body with no whitespace
    normalization, so it is stable across runs and platforms.

    Args:
        content: Chunk body as produced by the extractor

    Returns:
        Lowercase hex sha256 digest
    """
    return hashlib.sha256(content.encode('utf-8')).hexdigest()
