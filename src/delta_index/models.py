"""
Data models for delta_index.

Dataclasses for chunks, index records and batch bookkeeping; pydantic models
for caller-supplied retrieval queries.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .content_hasher import hash_content
from .index_exceptions import CacheCorruptionError


# ============================================================================
# Chunks and index records
# ============================================================================

def make_chunk_id(file_path: str, start_line: int, end_line: int) -> str:
    """Positional chunk id used for storage addressing."""
    return f"{file_path}:{start_line}-{end_line}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Chunk:
    """
    A contiguous, typed fragment of source code.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.

    `id` addresses the chunk in storage, `content_hash` decides equality.
    Both are filled in when not supplied.
    """
    file_path: str
    content: str
    start_line: int
    end_line: int
    language: str = "text"
    chunk_type: str = "block"
    id: str = ""
    content_hash: str = ""
    dependencies: Optional[List[str]] = None
    complexity_score: Optional[float] = None

    def __post_init__(self):
        if self.start_line > self.end_line:
            raise ValueError(
                f"Invalid line range for {self.file_path}: "
                f"{self.start_line} > {self.end_line}"
            )
        if not self.id:
            self.id = make_chunk_id(self.file_path, self.start_line, self.end_line)
        if not self.content_hash:
            self.content_hash = hash_content(self.content)


@dataclass
class IndexRecord:
    """
    Persisted counterpart of a Chunk: the chunk, its vector and storage metadata.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    id: str
    file_path: str
    content: str
    start_line: int
    end_line: int
    vector: List[float] = field(default_factory=list)
    language: str = "text"
    chunk_type: str = "block"
    content_hash: str = ""
    processed_at: str = field(default_factory=utc_now_iso)
    commit: Optional[str] = None

    @classmethod
    def from_chunk(
        cls,
        chunk: Chunk,
        vector: List[float],
        record_id: Optional[str] = None,
        commit: Optional[str] = None
    ) -> "IndexRecord":
        """
        Build a record for a chunk.

        Args:
            chunk: Freshly extracted chunk
            vector: Embedding of the chunk content
            record_id: Existing id to reuse (updates keep their id)
            commit: Optional commit the content was indexed at
        """
        return cls(
            id=record_id or chunk.id,
            file_path=chunk.file_path,
            content=chunk.content,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            vector=list(vector),
            language=chunk.language,
            chunk_type=chunk.chunk_type,
            content_hash=chunk.content_hash,
            commit=commit,
        )

    def effective_hash(self) -> str:
        """Stored digest, recomputed from content for records written without one."""
        return self.content_hash or hash_content(self.content)

    def to_chunk(self) -> Chunk:
        return Chunk(
            file_path=self.file_path,
            content=self.content,
            start_line=self.start_line,
            end_line=self.end_line,
            language=self.language,
            chunk_type=self.chunk_type,
            id=self.id,
            content_hash=self.effective_hash(),
        )

    def to_payload(self) -> Dict[str, Any]:
        """Payload stored next to the vector in the vector backend."""
        return {
            "chunk_id": self.id,
            "file_path": self.file_path,
            "language": self.language,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "chunk_type": self.chunk_type,
            "content": self.content,
            "content_hash": self.content_hash,
            "processed_at": self.processed_at,
            "commit": self.commit,
        }

    @classmethod
    def from_payload(
        cls,
        payload: Dict[str, Any],
        vector: Optional[List[float]] = None
    ) -> "IndexRecord":
        return cls(
            id=payload["chunk_id"],
            file_path=payload.get("file_path", ""),
            content=payload.get("content", ""),
            start_line=int(payload.get("start_line", 1)),
            end_line=int(payload.get("end_line", 1)),
            vector=list(vector) if vector is not None else [],
            language=payload.get("language") or "text",
            chunk_type=payload.get("chunk_type") or "block",
            content_hash=payload.get("content_hash") or "",
            processed_at=payload.get("processed_at") or utc_now_iso(),
            commit=payload.get("commit"),
        )


@dataclass
class ReconciliationResult:
    """
    Minimal mutation plan for one file.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.

    Created fresh per file per reconciliation pass; never persisted.
    """
    file_path: str
    to_add: List[Chunk] = field(default_factory=list)
    to_update: List[Tuple[str, Chunk]] = field(default_factory=list)
    to_delete: List[str] = field(default_factory=list)
    unchanged_count: int = 0

    @property
    def mutation_count(self) -> int:
        return len(self.to_add) + len(self.to_update) + len(self.to_delete)

    @property
    def is_noop(self) -> bool:
        return self.mutation_count == 0


# ============================================================================
# Change sets and batch results
# ============================================================================

class ChangeStatus(str, Enum):
    """Status of a changed file as reported by the change detector"""
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass
class FileChange:
    """A changed file. Renames carry the previous path in `old_path`."""
    path: str
    status: ChangeStatus
    old_path: Optional[str] = None

    def __post_init__(self):
        self.status = ChangeStatus(self.status)


@dataclass
class BatchOptions:
    """
    Options for DeltaIndexer.process().

    Attributes:
        max_concurrent_files: Files reconciled concurrently per group
        batch_size: Cache misses sent to the embedding backend per call
        skip_embedding_regeneration: Reuse stored vectors for updates whose
            content is unchanged instead of re-embedding them
        dry_run: Compute the same counts without mutating the index
        strict: Abort the whole batch on the first per-file error
    """
    max_concurrent_files: int = 5
    batch_size: int = 10
    skip_embedding_regeneration: bool = False
    dry_run: bool = False
    strict: bool = False

    def __post_init__(self):
        if self.max_concurrent_files < 1:
            raise ValueError("max_concurrent_files must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")


@dataclass
class IndexingError:
    """A per-file failure captured during lenient batch processing."""
    file_path: str
    error_type: str
    message: str

    @classmethod
    def from_exception(cls, file_path: str, exc: BaseException) -> "IndexingError":
        return cls(file_path=file_path, error_type=type(exc).__name__, message=str(exc))


@dataclass
class FileOutcome:
    """
    Per-file counts; summing outcomes is associative and commutative.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    files_processed: int = 0
    chunks_added: int = 0
    chunks_updated: int = 0
    chunks_deleted: int = 0
    chunks_unchanged: int = 0
    files_skipped: int = 0
    errors: List[IndexingError] = field(default_factory=list)

    def __add__(self, other: "FileOutcome") -> "FileOutcome":
        return FileOutcome(
            files_processed=self.files_processed + other.files_processed,
            chunks_added=self.chunks_added + other.chunks_added,
            chunks_updated=self.chunks_updated + other.chunks_updated,
            chunks_deleted=self.chunks_deleted + other.chunks_deleted,
            chunks_unchanged=self.chunks_unchanged + other.chunks_unchanged,
            files_skipped=self.files_skipped + other.files_skipped,
            errors=self.errors + other.errors,
        )


@dataclass
class BatchResult:
    """
    Aggregate result of a DeltaIndexer run.

    Always reports partial counts and the full error list; per-file failures
    never surface as bare exceptions in lenient mode.
    """
    files_processed: int = 0
    chunks_added: int = 0
    chunks_updated: int = 0
    chunks_deleted: int = 0
    chunks_unchanged: int = 0
    files_skipped: int = 0
    errors: List[IndexingError] = field(default_factory=list)
    cancelled: bool = False
    dry_run: bool = False
    summary: Dict[str, int] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors and not self.cancelled

    @classmethod
    def from_outcome(cls, outcome: FileOutcome, **kwargs: Any) -> "BatchResult":
        return cls(
            files_processed=outcome.files_processed,
            chunks_added=outcome.chunks_added,
            chunks_updated=outcome.chunks_updated,
            chunks_deleted=outcome.chunks_deleted,
            chunks_unchanged=outcome.chunks_unchanged,
            files_skipped=outcome.files_skipped,
            errors=list(outcome.errors),
            **kwargs,
        )


# ============================================================================
# Embedding cache
# ============================================================================

@dataclass
class CacheEntry:
    """
    One cached embedding, keyed by the content digest it was computed for.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    key: str
    vector: List[float]
    model: str
    generated_at: float
    access_count: int = 0
    last_accessed_at: float = 0.0
    approx_byte_size: int = 0
    access_seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "vector": self.vector,
            "model": self.model,
            "generated_at": self.generated_at,
            "access_count": self.access_count,
            "last_accessed_at": self.last_accessed_at,
        }

    @classmethod
    def from_dict(cls, key: str, data: Any) -> "CacheEntry":
        """
        Rebuild an entry from a snapshot.

        Raises:
            CacheCorruptionError: If the serialized entry is malformed
        """
        try:
            vector = [float(v) for v in data["vector"]]
            entry = cls(
                key=key,
                vector=vector,
                model=str(data["model"]),
                generated_at=float(data["generated_at"]),
                access_count=int(data.get("access_count", 0)),
                last_accessed_at=float(data.get("last_accessed_at", data["generated_at"])),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CacheCorruptionError(f"Malformed cache entry {key}: {e}") from e
        if data.get("key", key) != key or not vector:
            raise CacheCorruptionError(f"Malformed cache entry {key}: key or vector mismatch")
        return entry


@dataclass
class CacheStats:
    """Snapshot of embedding cache counters."""
    count: int
    total_bytes: int
    hit_rate: float
    hits: int
    requests: int
    evictions: int
    expirations: int


# ============================================================================
# Retrieval
# ============================================================================

class CommitRange(BaseModel):
    """
    Commit range filter.

    `commits` holds the hashes inside the range as resolved by the caller's
    change detector; records match when their commit is one of the bounds or
    listed in `commits`.
    """
    model_config = ConfigDict(frozen=True)

    from_commit: str
    to_commit: str
    commits: List[str] = Field(default_factory=list)

    def contains(self, commit: Optional[str]) -> bool:
        if not commit:
            return False
        return commit in (self.from_commit, self.to_commit) or commit in self.commits


class RetrievalFilters(BaseModel):
    """Optional restrictions applied to retrieval candidates"""
    model_config = ConfigDict(frozen=True)

    files: Optional[List[str]] = None
    path_prefixes: Optional[List[str]] = None
    languages: Optional[List[str]] = None
    chunk_types: Optional[List[str]] = None
    commit_range: Optional[CommitRange] = None

    def is_empty(self) -> bool:
        return not any([
            self.files, self.path_prefixes, self.languages,
            self.chunk_types, self.commit_range,
        ])

    def matches(self, record: IndexRecord) -> bool:
        """Check a record against every configured filter."""
        if self.files and record.file_path not in self.files:
            return False
        if self.path_prefixes and not any(
            record.file_path.startswith(prefix) for prefix in self.path_prefixes
        ):
            return False
        if self.languages and record.language.lower() not in {
            lang.lower() for lang in self.languages
        }:
            return False
        if self.chunk_types and record.chunk_type not in self.chunk_types:
            return False
        if self.commit_range and not self.commit_range.contains(record.commit):
            return False
        return True


class RetrievalQuery(BaseModel):
    """Caller-supplied retrieval request"""
    text: str = Field(..., min_length=1)
    filters: RetrievalFilters = Field(default_factory=RetrievalFilters)
    top_k: int = Field(10, ge=1, le=100)
    min_score: float = Field(0.0, ge=0.0, le=1.0)

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query text must not be blank")
        return value


@dataclass
class TokenBudget:
    """
    Session-scoped cap on estimated LLM-input size.

    Attributes:
        max_tokens: Maximum total estimated tokens of returned results
        estimation_buffer_factor: Multiplier applied to the chars/4 estimate
    """
    max_tokens: int
    estimation_buffer_factor: float = 1.1

    def __post_init__(self):
        if self.max_tokens < 0:
            raise ValueError("max_tokens must be >= 0")
        if self.estimation_buffer_factor <= 0:
            raise ValueError("estimation_buffer_factor must be > 0")


@dataclass
class ScoredChunk:
    """
    A retrieval candidate annotated with its scores.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    record: IndexRecord
    semantic_score: float
    keyword_score: float = 0.0
    hybrid_score: float = 0.0
    rerank_score: Optional[float] = None

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def file_path(self) -> str:
        return self.record.file_path

    @property
    def content(self) -> str:
        return self.record.content

    @property
    def final_score(self) -> float:
        return self.rerank_score if self.rerank_score is not None else self.hybrid_score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "file": self.file_path,
            "start_line": self.record.start_line,
            "end_line": self.record.end_line,
            "chunk_type": self.record.chunk_type,
            "language": self.record.language,
            "semantic_score": round(self.semantic_score, 4),
            "keyword_score": round(self.keyword_score, 4),
            "hybrid_score": round(self.hybrid_score, 4),
            "rerank_score": round(self.rerank_score, 6) if self.rerank_score is not None else None,
            "content": self.content,
        }


@dataclass
class RetrievalResult:
    """Ordered, budgeted answer set for one query."""
    chunks: List[ScoredChunk]
    estimated_tokens: int
    budget: Optional[TokenBudget]
    truncated: bool = False
    total_candidates: int = 0
    warnings: List[str] = field(default_factory=list)
    degraded: bool = False
