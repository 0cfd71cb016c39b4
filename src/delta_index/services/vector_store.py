"""
Vector Index Facade

Uniform interface over the vector backend used for chunk records:
- QdrantVectorIndex: remote Qdrant collection (qdrant-client)
- InMemoryVectorIndex: in-process FAISS index, used when Qdrant is unreachable

The implementation is chosen once by create_vector_index(); callers never
branch on which one they got.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchAny,
    MatchValue,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from ..index_exceptions import VectorBackendError
from ..logging_config import configure_logger_for_debug_trace
from ..models import IndexRecord, RetrievalFilters
from .faiss_wrapper import FAISSWrapper
from .retry import RetryPolicy

logger = configure_logger_for_debug_trace(__name__)


# Namespace for deterministic Qdrant point ids derived from positional chunk ids
POINT_ID_NAMESPACE = uuid.UUID("6f1c2b9e-3d4a-5e8f-9a0b-1c2d3e4f5a6b")

# Extra candidates requested when some filters can only be applied after fetch
POST_FILTER_OVERFETCH = 4

SCROLL_PAGE_SIZE = 256


def point_id_for(chunk_id: str) -> str:
    """Stable Qdrant point id for a positional chunk id."""
    return str(uuid.uuid5(POINT_ID_NAMESPACE, chunk_id))


class VectorIndex(ABC):
    """
    Storage and nearest-neighbour search of IndexRecords.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a repository.
    """

    @abstractmethod
    def upsert(self, records: List[IndexRecord]) -> None:
        """Insert or replace records by id."""
        pass

    @abstractmethod
    def delete(self, ids: List[str]) -> None:
        """Delete records by positional chunk id. Unknown ids are ignored."""
        pass

    @abstractmethod
    def delete_by_file(self, file_path: str) -> int:
        """Delete every record of a file. Returns the number removed."""
        pass

    @abstractmethod
    def get_by_file(self, file_path: str) -> List[IndexRecord]:
        """All stored records of a file, vectors included."""
        pass

    @abstractmethod
    def search(
        self,
        vector: List[float],
        limit: int,
        min_score: float = 0.0,
        filters: Optional[RetrievalFilters] = None
    ) -> List[Tuple[IndexRecord, float]]:
        """Nearest records by cosine similarity, best first."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def health(self) -> bool:
        pass


# ============================================================================
# In-process FAISS index
# ============================================================================

class InMemoryVectorIndex(VectorIndex):
    """
    Record map plus a FAISS inner-product index over normalized vectors.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a repository.
    ::: This is stateful.

    Worker threads write concurrently, so the maps and the FAISS index are
    guarded by one lock. The FAISS index is sized on the first upsert.
    """

    def __init__(self, dimension: Optional[int] = None):
        self._lock = threading.RLock()
        self._records: Dict[str, IndexRecord] = {}
        self._faiss_ids: Dict[str, int] = {}
        self._chunk_ids: Dict[int, str] = {}
        self._next_id = 0
        self._faiss: Optional[FAISSWrapper] = FAISSWrapper(dimension) if dimension else None

    def _remove_locked(self, chunk_id: str) -> bool:
        record = self._records.pop(chunk_id, None)
        if record is None:
            return False
        faiss_id = self._faiss_ids.pop(chunk_id, None)
        if faiss_id is not None:
            self._chunk_ids.pop(faiss_id, None)
            if self._faiss is not None:
                self._faiss.remove_vectors([faiss_id])
        return True

    def upsert(self, records: List[IndexRecord]) -> None:
        if not records:
            return
        with self._lock:
            if self._faiss is None:
                self._faiss = FAISSWrapper(len(records[0].vector))
            for record in records:
                if len(record.vector) != self._faiss.dimension:
                    raise VectorBackendError(
                        f"Vector dimension mismatch for {record.id}: expected "
                        f"{self._faiss.dimension}, got {len(record.vector)}",
                        file_path=record.file_path
                    )
            ids = []
            for record in records:
                self._remove_locked(record.id)
                faiss_id = self._next_id
                self._next_id += 1
                self._records[record.id] = record
                self._faiss_ids[record.id] = faiss_id
                self._chunk_ids[faiss_id] = record.id
                ids.append(faiss_id)
            vectors = np.array([r.vector for r in records], dtype=np.float32)
            self._faiss.add_vectors(vectors, np.array(ids, dtype=np.int64))

    def delete(self, ids: List[str]) -> None:
        with self._lock:
            for chunk_id in ids:
                self._remove_locked(chunk_id)

    def delete_by_file(self, file_path: str) -> int:
        with self._lock:
            doomed = [cid for cid, r in self._records.items() if r.file_path == file_path]
            for chunk_id in doomed:
                self._remove_locked(chunk_id)
            return len(doomed)

    def get_by_file(self, file_path: str) -> List[IndexRecord]:
        with self._lock:
            records = [r for r in self._records.values() if r.file_path == file_path]
        return sorted(records, key=lambda r: r.start_line)

    def search(
        self,
        vector: List[float],
        limit: int,
        min_score: float = 0.0,
        filters: Optional[RetrievalFilters] = None
    ) -> List[Tuple[IndexRecord, float]]:
        with self._lock:
            if self._faiss is None or not self._records or limit <= 0:
                return []
            # Filters are applied to the ranked list, so scan everything when present
            k = len(self._records) if filters and not filters.is_empty() else limit
            hits = self._faiss.search(np.asarray(vector, dtype=np.float32), k)
            results = []
            for hit in hits:
                chunk_id = self._chunk_ids.get(hit.vector_id)
                if chunk_id is None or hit.score < min_score:
                    continue
                record = self._records[chunk_id]
                if filters and not filters.matches(record):
                    continue
                results.append((record, hit.score))
                if len(results) >= limit:
                    break
            return results

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def health(self) -> bool:
        return True


# ============================================================================
# Qdrant
# ============================================================================

class QdrantVectorIndex(VectorIndex):
    """
    Chunk records in a Qdrant collection.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a repository.

    Point ids are uuid5 of the positional chunk id. Every call runs under the
    retry policy; exhausted retries raise VectorBackendError.
    """

    def __init__(
        self,
        url: str = "http://localhost:6333",
        collection_name: str = "code_chunks",
        dimension: int = 384,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[QdrantClient] = None,
    ):
        self.url = url
        self.collection_name = collection_name
        self.dimension = dimension
        self.retry_policy = retry_policy or RetryPolicy()
        self._client = client or QdrantClient(
            url=url, api_key=api_key or None, timeout=int(timeout)
        )
        self._collection_ready = False

    def _call(self, operation: str, func, *args, **kwargs) -> Any:
        return self.retry_policy.call(
            func, *args,
            error_cls=VectorBackendError,
            operation=f"qdrant {operation}",
            **kwargs
        )

    def health(self) -> bool:
        """Single check, no retries."""
        try:
            self._client.get_collections()
            return True
        except Exception as e:
            logger.warning(f"[Qdrant] Health check failed for {self.url}: {e}")
            return False

    def ensure_collection(self) -> None:
        """Create the collection (cosine distance) and its payload indexes on demand."""
        if self._collection_ready:
            return

        def _ensure():
            if not self._client.collection_exists(self.collection_name):
                self._client.create_collection(
                    collection_name=self.collection_name,
                    vectors_config=VectorParams(size=self.dimension, distance=Distance.COSINE),
                )
                for field_name in ("file_path", "language", "chunk_type"):
                    self._client.create_payload_index(
                        collection_name=self.collection_name,
                        field_name=field_name,
                        field_schema=PayloadSchemaType.KEYWORD,
                    )
                logger.info(
                    f"[Qdrant] Created collection {self.collection_name} (dim={self.dimension})"
                )

        self._call("ensure_collection", _ensure)
        self._collection_ready = True

    @staticmethod
    def _file_filter(file_path: str) -> Filter:
        return Filter(must=[FieldCondition(key="file_path", match=MatchValue(value=file_path))])

    @staticmethod
    def build_filter(filters: Optional[RetrievalFilters]) -> Optional[Filter]:
        """Translate the filters Qdrant can evaluate server-side."""
        if filters is None:
            return None
        must = []
        if filters.files:
            must.append(FieldCondition(key="file_path", match=MatchAny(any=list(filters.files))))
        if filters.languages:
            must.append(FieldCondition(
                key="language", match=MatchAny(any=[lang.lower() for lang in filters.languages])
            ))
        if filters.chunk_types:
            must.append(FieldCondition(key="chunk_type", match=MatchAny(any=list(filters.chunk_types))))
        return Filter(must=must) if must else None

    def upsert(self, records: List[IndexRecord]) -> None:
        if not records:
            return
        self.ensure_collection()
        points = [
            PointStruct(id=point_id_for(r.id), vector=list(r.vector), payload=r.to_payload())
            for r in records
        ]
        self._call(
            "upsert", self._client.upsert,
            collection_name=self.collection_name, points=points, wait=True
        )
        logger.debug(f"[Qdrant] Upserted {len(points)} points")

    def delete(self, ids: List[str]) -> None:
        if not ids:
            return
        self.ensure_collection()
        self._call(
            "delete", self._client.delete,
            collection_name=self.collection_name,
            points_selector=PointIdsList(points=[point_id_for(cid) for cid in ids]),
            wait=True,
        )

    def delete_by_file(self, file_path: str) -> int:
        self.ensure_collection()
        flt = self._file_filter(file_path)
        existing = self._call(
            "count", self._client.count,
            collection_name=self.collection_name, count_filter=flt, exact=True
        ).count
        if existing:
            self._call(
                "delete_by_file", self._client.delete,
                collection_name=self.collection_name,
                points_selector=FilterSelector(filter=flt),
                wait=True,
            )
        return existing

    def get_by_file(self, file_path: str) -> List[IndexRecord]:
        self.ensure_collection()
        flt = self._file_filter(file_path)
        records: List[IndexRecord] = []
        offset = None
        while True:
            points, offset = self._call(
                "scroll", self._client.scroll,
                collection_name=self.collection_name,
                scroll_filter=flt,
                limit=SCROLL_PAGE_SIZE,
                offset=offset,
                with_payload=True,
                with_vectors=True,
            )
            for point in points:
                records.append(IndexRecord.from_payload(point.payload or {}, point.vector))
            if offset is None:
                break
        return sorted(records, key=lambda r: r.start_line)

    def search(
        self,
        vector: List[float],
        limit: int,
        min_score: float = 0.0,
        filters: Optional[RetrievalFilters] = None
    ) -> List[Tuple[IndexRecord, float]]:
        if limit <= 0:
            return []
        self.ensure_collection()
        post_filter = bool(filters and (filters.path_prefixes or filters.commit_range))
        fetch_limit = limit * POST_FILTER_OVERFETCH if post_filter else limit

        response = self._call(
            "query", self._client.query_points,
            collection_name=self.collection_name,
            query=list(vector),
            limit=fetch_limit,
            score_threshold=min_score,
            query_filter=self.build_filter(filters),
            with_payload=True,
        )

        results = []
        for point in response.points:
            record = IndexRecord.from_payload(point.payload or {})
            if post_filter and not filters.matches(record):
                continue
            results.append((record, float(point.score)))
            if len(results) >= limit:
                break
        return results

    def count(self) -> int:
        self.ensure_collection()
        return self._call(
            "count", self._client.count,
            collection_name=self.collection_name, exact=True
        ).count


def create_vector_index(
    config: Optional[Dict[str, Any]] = None,
    retry_policy: Optional[RetryPolicy] = None,
    client: Optional[QdrantClient] = None,
) -> VectorIndex:
    """
    Select the vector backend once: Qdrant when reachable, else in-memory FAISS.

    Args:
        config: ConfigLoader.get_vector_config() output, or None for defaults
        retry_policy: Policy applied to every Qdrant call
        client: Optional preconfigured QdrantClient

    Returns:
        A ready VectorIndex
    """
    config = config or {}
    dimension = int(config.get("vector_dimension", 384))
    qdrant = QdrantVectorIndex(
        url=config.get("qdrant_url", "http://localhost:6333"),
        collection_name=config.get("qdrant_collection", "code_chunks"),
        dimension=dimension,
        api_key=config.get("qdrant_api_key") or None,
        timeout=float(config.get("qdrant_timeout", 10.0)),
        retry_policy=retry_policy,
        client=client,
    )
    if qdrant.health():
        logger.info(f"[VectorIndex] Using Qdrant at {qdrant.url}")
        return qdrant

    logger.warning("[VectorIndex] Qdrant unreachable, falling back to in-memory FAISS index")
    return InMemoryVectorIndex(dimension=dimension)


__all__ = [
    "VectorIndex",
    "InMemoryVectorIndex",
    "QdrantVectorIndex",
    "create_vector_index",
    "point_id_for",
]
