"""
Tests for chunk reconciliation and the default line-window extractor.
"""

import pytest

from delta_index.content_hasher import hash_content
from delta_index.services.chunk_extractor import (
    LineWindowExtractor,
    detect_language,
    estimate_complexity,
)
from delta_index.services.chunk_reconciler import reconcile

from conftest import make_chunk, make_record, make_source


def records_for(chunks):
    return [make_record(c.file_path, c.content, c.start_line, c.end_line) for c in chunks]


def apply_plan(old, result):
    """Stored id -> content after applying a plan: deletes, then updates, then adds."""
    stored = {r.id: r.content for r in old}
    for chunk_id in result.to_delete:
        del stored[chunk_id]
    for existing_id, chunk in result.to_update:
        stored[existing_id] = chunk.content
    for chunk in result.to_add:
        stored[chunk.id] = chunk.content
    return stored


class TestReconcile:
    """Test add/update/delete/unchanged planning."""

    def test_identity_stability(self):
        """Unchanged content gives an empty plan with every chunk unchanged."""
        extractor = LineWindowExtractor(chunk_size=5)
        chunks = extractor.extract("src/a.py", make_source("a", 4))
        result = reconcile("src/a.py", chunks, records_for(chunks))

        assert result.to_add == []
        assert result.to_update == []
        assert result.to_delete == []
        assert result.unchanged_count == len(chunks) == 4
        assert result.is_noop

    def test_reference_example(self):
        """Old [a, b], new [a, c] -> delete f:6-10, add c, one unchanged."""
        old = [
            make_record("f", "a", 1, 5),
            make_record("f", "b", 6, 10),
        ]
        new = [make_chunk("f", "a", 1, 5), make_chunk("f", "c", 6, 10)]

        result = reconcile("f", new, old)

        assert result.to_delete == ["f:6-10"]
        assert [c.content_hash for c in result.to_add] == [hash_content("c")]
        assert result.to_update == []
        assert result.unchanged_count == 1
        assert result.mutation_count == 2

    def test_minimal_diff_single_edit(self):
        """Editing one block of M touches at most one add and one delete."""
        extractor = LineWindowExtractor(chunk_size=5)
        original = make_source("m", 6)
        old_chunks = extractor.extract("m.py", original)

        lines = original.split("\n")
        lines[11] = "    value_2_1 = 999999"
        new_chunks = extractor.extract("m.py", "\n".join(lines))

        result = reconcile("m.py", new_chunks, records_for(old_chunks))

        assert len(result.to_delete) <= 1
        assert len(result.to_add) <= 1
        assert result.unchanged_count == len(old_chunks) - 1

    def test_moved_chunk_is_unchanged(self):
        """Position changes alone do not cause mutations."""
        old = [make_record("f", "alpha", 1, 3), make_record("f", "beta", 4, 6)]
        new = [make_chunk("f", "beta", 1, 3), make_chunk("f", "alpha", 4, 6)]
        result = reconcile("f", new, old)
        assert result.is_noop
        assert result.unchanged_count == 2

    def test_new_file(self):
        new = [make_chunk("f", "x", 1, 1), make_chunk("f", "y", 2, 2)]
        result = reconcile("f", new, [])
        assert len(result.to_add) == 2
        assert result.to_delete == []

    def test_emptied_file(self):
        old = [make_record("f", "x", 1, 1), make_record("f", "y", 2, 2)]
        result = reconcile("f", [], old)
        assert sorted(result.to_delete) == ["f:1-1", "f:2-2"]
        assert result.unchanged_count == 0

    def test_record_without_digest_matches_by_content(self):
        """Legacy records with no stored digest are still recognized."""
        legacy = make_record("f", "body", 1, 1)
        legacy.content_hash = ""
        result = reconcile("f", [make_chunk("f", "body", 1, 1)], [legacy])
        assert result.unchanged_count == 1
        assert result.is_noop

    def test_apply_plan_yields_new_chunk_set(self):
        """Applying the plan leaves exactly the new bodies stored."""
        old_chunks = [make_chunk("f", body, i, i) for i, body in enumerate("abcd", start=1)]
        old = records_for(old_chunks)
        new = [make_chunk("f", body, i, i) for i, body in enumerate("axcdy", start=1)]

        result = reconcile("f", new, old)

        assert sorted(apply_plan(old, result).values()) == sorted("axcdy")

    def test_added_chunk_never_overwrites_kept_record(self):
        """A body that moved onto a new chunk's position is re-added, not lost."""
        old = [make_record("f", "a", 1, 1), make_record("f", "b", 2, 2)]
        new = [make_chunk("f", "c", 1, 1), make_chunk("f", "a", 2, 2)]

        result = reconcile("f", new, old)

        assert result.unchanged_count == 0
        assert [c.id for c in result.to_add] == ["f:1-1", "f:2-2"]
        assert result.to_delete == ["f:2-2"]
        assert apply_plan(old, result) == {"f:1-1": "c", "f:2-2": "a"}


class TestDuplicateBodies:
    """
    Duplicate bodies within one file pair first-match-wins.

    Identical blocks may swap identities when one of them is removed. The
    tests pin the behavior so a change to it is deliberate.
    """

    def test_unchanged_duplicates_are_noop(self):
        """Every stored duplicate is eligible for a digest match."""
        old = [make_record("f", "dup", 1, 1), make_record("f", "dup", 5, 5)]
        new = [make_chunk("f", "dup", 1, 1), make_chunk("f", "dup", 5, 5)]

        result = reconcile("f", new, old)

        assert result.unchanged_count == 2
        assert result.is_noop

    def test_three_duplicates_one_changed(self):
        """A kept duplicate whose stored id is taken by an add is re-added."""
        old = [make_record("f", "dup", i, i) for i in (1, 2, 3)]
        new = [make_chunk("f", "dup", 1, 1), make_chunk("f", "new", 2, 2),
               make_chunk("f", "dup", 3, 3)]

        result = reconcile("f", new, old)

        assert result.unchanged_count == 1
        assert [c.id for c in result.to_add] == ["f:2-2", "f:3-3"]
        assert result.to_delete == ["f:3-3"]
        assert apply_plan(old, result) == {"f:1-1": "dup", "f:2-2": "new", "f:3-3": "dup"}

    def test_removed_duplicate_keeps_first_id(self):
        """Dropping the first duplicate deletes the second record's id."""
        old = [make_record("f", "dup", 1, 1), make_record("f", "dup", 5, 5)]
        new = [make_chunk("f", "dup", 5, 5)]

        result = reconcile("f", new, old)

        assert result.unchanged_count == 1
        assert result.to_delete == ["f:5-5"]

    def test_extra_duplicate_is_added(self):
        old = [make_record("f", "dup", 1, 1)]
        new = [make_chunk("f", "dup", 1, 1), make_chunk("f", "dup", 2, 2)]
        result = reconcile("f", new, old)
        assert result.unchanged_count == 1
        assert [c.id for c in result.to_add] == ["f:2-2"]


class TestStaleDigest:
    """Records whose stored digest no longer matches their content."""

    def test_equal_content_becomes_update(self):
        """Content equality catches what the digest misses, reusing the id."""
        stale = make_record("f", "body", 1, 1)
        stale.content_hash = "0" * 64
        chunk = make_chunk("f", "body", 3, 3)

        result = reconcile("f", [chunk], [stale])

        assert result.unchanged_count == 0
        assert result.to_update == [("f:1-1", chunk)]
        assert result.to_add == []
        assert result.to_delete == []


class TestLineWindowExtractor:
    """Test the default extractor."""

    def test_windows(self):
        content = "\n".join(f"line {i}" for i in range(1, 121)) + "\n"
        chunks = LineWindowExtractor().extract("src/big.py", content)

        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 50), (51, 100), (101, 120)]
        assert all(c.chunk_type == "block" for c in chunks)
        assert all(c.language == "python" for c in chunks)
        assert chunks[0].id == "src/big.py:1-50"

    def test_blank_windows_skipped(self):
        content = "x = 1\n" + "\n" * 10 + "y = 2\n"
        chunks = LineWindowExtractor(chunk_size=3).extract("a.txt", content)
        assert [c.content.strip() for c in chunks] == ["x = 1", "y = 2"]

    def test_empty_file(self):
        assert LineWindowExtractor().extract("a.py", "") == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            LineWindowExtractor(chunk_size=0)

    @pytest.mark.parametrize("path,language", [
        ("a.py", "python"),
        ("web/app.TSX", "typescript"),
        ("lib/main.dart", "dart"),
        ("Makefile", "text"),
        ("notes.unknownext", "text"),
        ("dir\\win.go", "go"),
    ])
    def test_detect_language(self, path, language):
        assert detect_language(path) == language

    def test_complexity(self):
        assert estimate_complexity(["x = 1"]) == 1.0
        assert estimate_complexity(["if a and b:", "for x in y:", "    while z:"]) == 4.0
