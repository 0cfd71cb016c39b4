"""
Chunk extraction.

ChunkExtractor is the seam for language-aware extractors. The default
LineWindowExtractor splits a file into fixed, non-overlapping line windows.
"""

import re
from abc import ABC, abstractmethod
from pathlib import PurePosixPath
from typing import List

from ..models import Chunk

# File extension -> language name
EXTENSION_LANGUAGES = {
    "py": "python",
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "dart": "dart",
    "java": "java",
    "cpp": "cpp",
    "cc": "cpp",
    "cxx": "cpp",
    "c": "c",
    "h": "c",
    "cs": "csharp",
    "go": "go",
    "rs": "rust",
    "php": "php",
    "rb": "ruby",
    "swift": "swift",
    "kt": "kotlin",
    "scala": "scala",
    "md": "markdown",
}

_BRANCH_PATTERN = re.compile(r"\b(if|elif|else|for|while|case|catch|except|switch)\b|&&|\|\|")


def detect_language(file_path: str) -> str:
    """Language name for a path's extension, 'text' when unknown."""
    suffix = PurePosixPath(file_path.replace("\\", "/")).suffix.lower().lstrip(".")
    return EXTENSION_LANGUAGES.get(suffix, "text")


def estimate_complexity(lines: List[str]) -> float:
    """Branch-count complexity: 1 plus one per branching token."""
    return float(1 + sum(len(_BRANCH_PATTERN.findall(line)) for line in lines))


class ChunkExtractor(ABC):
    """
    Splits a file's content into chunks.

    ::: This is-in-layer Service-Layer.
    ::: This is a extractor.
    ::: This is stateless.
    """

    @abstractmethod
    def extract(self, file_path: str, content: str) -> List[Chunk]:
        """Chunks of the file in source order."""
        pass


class LineWindowExtractor(ChunkExtractor):
    """
    Fixed-size, non-overlapping line windows of type "block".

    ::: This is-in-layer Service-Layer.
    ::: This is a extractor.
    ::: This is stateless.

    Windows containing only whitespace are skipped. Line numbers are 1-based
    and inclusive.
    """

    def __init__(self, chunk_size: int = 50):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.chunk_size = chunk_size

    def extract(self, file_path: str, content: str) -> List[Chunk]:
        language = detect_language(file_path)
        lines = content.split("\n")
        if lines and lines[-1] == "":
            lines.pop()

        chunks = []
        for start in range(0, len(lines), self.chunk_size):
            window = lines[start:start + self.chunk_size]
            body = "\n".join(window)
            if not body.strip():
                continue
            chunks.append(Chunk(
                file_path=file_path,
                content=body,
                start_line=start + 1,
                end_line=start + len(window),
                language=language,
                chunk_type="block",
                complexity_score=estimate_complexity(window),
            ))
        return chunks
