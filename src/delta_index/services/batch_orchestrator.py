"""
Batch Orchestrator

Drives reconciliation, embedding and index mutation across a change set.

Deletions run first and sequentially, so positional ids freed by a deleted
file can be reused by added files without collisions. Added and modified
files then run in fixed-size concurrent groups; each group finishes before
the next one starts and the cancellation token is checked between groups.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from ..index_exceptions import (
    BatchAbortedError,
    DeltaIndexError,
    ExtractionError,
    FileReadError,
    VectorBackendError,
)
from ..logging_config import configure_logger_for_debug_trace
from ..models import (
    BatchOptions,
    BatchResult,
    ChangeStatus,
    FileChange,
    FileOutcome,
    IndexingError,
    IndexRecord,
)
from .chunk_extractor import ChunkExtractor, LineWindowExtractor
from .chunk_reconciler import reconcile
from .embedding_service import EmbeddingService
from .vector_store import VectorIndex

logger = configure_logger_for_debug_trace(__name__)


class DeltaIndexer:
    """
    Incremental indexer for a set of changed files.

    ::: This is-in-layer Service-Layer.
    ::: This is a orchestrator.
    ::: This is stateless.

    Per-file failures are collected as IndexingError entries (lenient mode)
    or abort the batch with BatchAbortedError (strict mode). Vector backend
    write failures always abort the run.
    """

    def __init__(
        self,
        vector_index: VectorIndex,
        embedding_service: EmbeddingService,
        extractor: Optional[ChunkExtractor] = None,
        project_root: Optional[Union[str, Path]] = None,
        read_file: Optional[Callable[[str], str]] = None,
        commit: Optional[str] = None,
    ):
        """
        Args:
            vector_index: Facade receiving the mutations
            embedding_service: Cache-aware embedding generation
            extractor: Chunk extractor (defaults to 50-line windows)
            project_root: Root that change paths are relative to (defaults to CWD)
            read_file: Optional reader replacing filesystem access
            commit: Commit recorded on every written record
        """
        self.vector_index = vector_index
        self.embedding_service = embedding_service
        self.extractor = extractor or LineWindowExtractor()
        self.project_root = Path(project_root) if project_root else Path.cwd()
        self._read_file = read_file or self._read_from_disk
        self.commit = commit

    def _read_from_disk(self, path: str) -> str:
        with open(self.project_root / path, 'r', encoding='utf-8') as f:
            return f.read()

    def _read(self, path: str) -> Optional[str]:
        """File content, or None when the file no longer exists."""
        try:
            return self._read_file(path)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise FileReadError(f"Cannot read {path}: {e}", file_path=path) from e

    def _extract(self, path: str, content: str):
        try:
            return self.extractor.extract(path, content)
        except DeltaIndexError:
            raise
        except Exception as e:
            raise ExtractionError(f"Extraction failed for {path}: {e}", file_path=path) from e

    # =========================================================================
    # Per-file work
    # =========================================================================

    def process_file(self, path: str, options: BatchOptions) -> FileOutcome:
        """
        Reconcile one added or modified file and apply the mutations.

        Returns:
            FileOutcome with this file's counts

        Raises:
            FileReadError, ExtractionError, EmbeddingBackendError: per-file failures
            VectorBackendError: index read/write failure
        """
        content = self._read(path)
        if content is None:
            logger.debug(f"[DeltaIndexer] Skipping missing file {path}")
            return FileOutcome(files_skipped=1)

        chunks = self._extract(path, content)
        existing = self.vector_index.get_by_file(path)
        plan = reconcile(path, chunks, existing)

        outcome = FileOutcome(
            files_processed=1,
            chunks_added=len(plan.to_add),
            chunks_updated=len(plan.to_update),
            chunks_deleted=len(plan.to_delete),
            chunks_unchanged=plan.unchanged_count,
        )
        if plan.is_noop or options.dry_run:
            return outcome

        existing_by_id: Dict[str, IndexRecord] = {r.id: r for r in existing}
        reused: Dict[str, List[float]] = {}
        if options.skip_embedding_regeneration:
            for existing_id, chunk in plan.to_update:
                stored = existing_by_id.get(existing_id)
                if stored is not None and stored.vector and stored.content == chunk.content:
                    reused[existing_id] = stored.vector

        texts = [c.content for c in plan.to_add]
        texts.extend(c.content for eid, c in plan.to_update if eid not in reused)
        vectors = self.embedding_service.embed_texts(texts, batch_size=options.batch_size)
        fresh = iter(vectors)

        records = [
            IndexRecord.from_chunk(chunk, next(fresh), commit=self.commit)
            for chunk in plan.to_add
        ]
        for existing_id, chunk in plan.to_update:
            vector = reused[existing_id] if existing_id in reused else next(fresh)
            records.append(
                IndexRecord.from_chunk(chunk, vector, record_id=existing_id, commit=self.commit)
            )

        if plan.to_delete:
            self.vector_index.delete(plan.to_delete)
        self.vector_index.upsert(records)
        return outcome

    def _delete_file(self, path: str, options: BatchOptions) -> FileOutcome:
        if options.dry_run:
            removed = len(self.vector_index.get_by_file(path))
        else:
            removed = self.vector_index.delete_by_file(path)
        return FileOutcome(files_processed=1, chunks_deleted=removed)

    # =========================================================================
    # Batch
    # =========================================================================

    @staticmethod
    def _plan(changes: List[FileChange]):
        deletions: List[str] = []
        upserts: List[str] = []
        for change in changes:
            if change.status == ChangeStatus.DELETED:
                deletions.append(change.path)
            elif change.status == ChangeStatus.RENAMED:
                if change.old_path and change.old_path != change.path:
                    deletions.append(change.old_path)
                upserts.append(change.path)
            else:
                upserts.append(change.path)
        # A rename source may be re-added in the same change set; deletions run first
        deleted = {c.path for c in changes if c.status == ChangeStatus.DELETED}
        deletions = list(dict.fromkeys(deletions))
        upserts = [p for p in dict.fromkeys(upserts) if p not in deleted]
        return deletions, upserts

    def _handle_failure(
        self,
        path: str,
        error: Exception,
        options: BatchOptions
    ) -> FileOutcome:
        if isinstance(error, VectorBackendError):
            logger.error(f"[DeltaIndexer] Vector backend failure on {path}: {error}")
            raise error
        if options.strict:
            logger.error(f"[DeltaIndexer] Aborting batch (strict mode) on {path}: {error}")
            raise BatchAbortedError(
                f"Batch aborted on {path}: {error}", file_path=path
            ) from error
        logger.warning(f"[DeltaIndexer] Error processing {path}: {error}")
        return FileOutcome(files_skipped=1, errors=[IndexingError.from_exception(path, error)])

    def process(
        self,
        changes: List[FileChange],
        options: Optional[BatchOptions] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> BatchResult:
        """
        Apply a change set to the index.

        Args:
            changes: Changed files with status
            options: Batch options (defaults to BatchOptions())
            cancel_event: Set to stop before the next group starts

        Returns:
            BatchResult with summed per-file counts and all collected errors

        Raises:
            BatchAbortedError: strict mode, on the first per-file error
            VectorBackendError: on any vector backend failure
        """
        options = options or BatchOptions()
        start = time.time()
        deletions, upserts = self._plan(changes)

        summary: Dict[str, int] = {status.value: 0 for status in ChangeStatus}
        for change in changes:
            summary[change.status.value] += 1

        logger.info(
            f"[DeltaIndexer] Processing {len(deletions)} deletions, {len(upserts)} files"
            f"{' (dry run)' if options.dry_run else ''}"
        )

        outcome = FileOutcome()
        cancelled = False

        for path in deletions:
            try:
                outcome = outcome + self._delete_file(path, options)
            except Exception as e:
                outcome = outcome + self._handle_failure(path, e, options)

        group_size = options.max_concurrent_files
        with ThreadPoolExecutor(max_workers=group_size, thread_name_prefix="DeltaIndexer") as pool:
            for group_start in range(0, len(upserts), group_size):
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    logger.info(
                        f"[DeltaIndexer] Cancelled with {len(upserts) - group_start} files pending"
                    )
                    break

                group = upserts[group_start:group_start + group_size]
                futures = [(path, pool.submit(self.process_file, path, options)) for path in group]
                failures = []
                for path, future in futures:
                    try:
                        outcome = outcome + future.result()
                    except Exception as e:
                        failures.append((path, e))
                for path, error in failures:
                    outcome = outcome + self._handle_failure(path, error, options)

        result = BatchResult.from_outcome(
            outcome,
            cancelled=cancelled,
            dry_run=options.dry_run,
            summary=summary,
            duration=time.time() - start,
        )
        logger.info(
            f"[DeltaIndexer] Done in {result.duration:.2f}s: {result.files_processed} files, "
            f"+{result.chunks_added} ~{result.chunks_updated} -{result.chunks_deleted}, "
            f"{len(result.errors)} errors"
        )
        return result
