"""
Chunk Reconciler

Turns a file's freshly extracted chunks and its stored records into the
minimal set of index mutations. Identity is decided by content digest, never
by position: a function that moved down twenty lines is still unchanged.
"""

from typing import Dict, List, Set

from ..logging_config import configure_logger_for_debug_trace
from ..models import Chunk, IndexRecord, ReconciliationResult

logger = configure_logger_for_debug_trace(__name__)


def _release_claimed_ids(
    to_add: List[Chunk],
    unchanged: Dict[str, Chunk],
    updates: Dict[str, Chunk]
) -> None:
    """
    Re-add kept records whose stored id is taken by an added chunk.

    An added chunk is written under its positional id. When that id still
    belongs to a record kept as unchanged or updated (its content moved), the
    write would overwrite it, so the kept chunk is re-added at its own new
    position instead. Re-added chunks can claim further ids; repeat until
    stable.
    """
    claimed = {chunk.id for chunk in to_add}
    pending = [chunk.id for chunk in to_add]
    while pending:
        chunk_id = pending.pop()
        for kept in (unchanged, updates):
            moved = kept.pop(chunk_id, None)
            if moved is None:
                continue
            to_add.append(moved)
            if moved.id not in claimed:
                claimed.add(moved.id)
                pending.append(moved.id)


def reconcile(
    file_path: str,
    new_chunks: List[Chunk],
    existing_records: List[IndexRecord]
) -> ReconciliationResult:
    """
    Plan add/update/delete mutations for one file.

    For each new chunk, in extraction order:
    1. its digest matches an unmatched stored record -> unchanged
    2. an unmatched stored record has exactly equal content -> update,
       reusing the stored id
    3. otherwise -> add

    Stored records left unmatched are deleted. Stored records sharing a
    digest are consumed in stored order, so duplicate bodies pair
    first-match-wins and an unchanged file still yields an empty plan.

    Args:
        file_path: File being reconciled
        new_chunks: Chunks extracted from the file's current content
        existing_records: Records currently stored for the file

    Returns:
        ReconciliationResult; applying it makes the stored set match new_chunks
    """
    result = ReconciliationResult(file_path=file_path)

    by_digest: Dict[str, List[IndexRecord]] = {}
    for record in existing_records:
        by_digest.setdefault(record.effective_hash(), []).append(record)

    matched: Set[str] = set()
    unchanged: Dict[str, Chunk] = {}
    updates: Dict[str, Chunk] = {}

    for chunk in new_chunks:
        candidate = next(
            (r for r in by_digest.get(chunk.content_hash, ()) if r.id not in matched),
            None
        )
        if candidate is not None:
            matched.add(candidate.id)
            unchanged[candidate.id] = chunk
            continue

        same_content = next(
            (r for r in existing_records
             if r.id not in matched and r.content == chunk.content),
            None
        )
        if same_content is not None:
            matched.add(same_content.id)
            updates[same_content.id] = chunk
            continue

        result.to_add.append(chunk)

    _release_claimed_ids(result.to_add, unchanged, updates)

    result.unchanged_count = len(unchanged)
    result.to_update = list(updates.items())
    result.to_delete = [r.id for r in existing_records if r.id not in matched]

    logger.debug(
        f"[Reconciler] {file_path}: +{len(result.to_add)} ~{len(result.to_update)} "
        f"-{len(result.to_delete)} ={result.unchanged_count}"
    )
    return result
