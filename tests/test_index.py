"""
Tests for the in-memory vector index.
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from ragvault.rag.errors import DimensionMismatchError, InvalidArgument
from ragvault.rag.index import VectorIndex
from ragvault.rag.models import SearchFilter, SourceType

from conftest import make_record


class TestIndexMutations:
    """Tests for insert / delete / replace."""

    def setup_method(self):
        self.index = VectorIndex(dimension=4, initial_capacity=2)

    def test_insert_marks_dirty(self):
        record = make_record(embedding=[1, 0, 0, 0])
        self.index.insert(record)

        assert len(self.index) == 1
        assert record.id in self.index
        assert record.dirty is True

    def test_reinsert_touches_record(self):
        record = make_record(embedding=[1, 0, 0, 0])
        self.index.insert(record)
        record.dirty = False
        before = record.updated_at

        self.index.insert(record)

        assert len(self.index) == 1
        assert record.dirty is True
        assert record.updated_at >= before

    def test_dimension_mismatch_leaves_index_unchanged(self):
        self.index.insert(make_record(embedding=[1, 0, 0, 0]))

        with pytest.raises(DimensionMismatchError):
            self.index.insert(make_record(embedding=[1, 0, 0]))

        assert len(self.index) == 1

    def test_grows_past_initial_capacity(self):
        records = [make_record(source_path=f"p{i}", embedding=[i + 1, 1, 0, 0]) for i in range(5)]
        for record in records:
            self.index.insert(record)

        assert len(self.index) == 5
        assert self.index.capacity >= 5
        for record in records:
            assert self.index.get(record.id) is record

    def test_delete_keeps_other_rows_searchable(self):
        a = make_record(source_path="a", embedding=[1, 0, 0, 0])
        b = make_record(source_path="b", embedding=[0, 1, 0, 0])
        c = make_record(source_path="c", embedding=[0, 0, 1, 0])
        for record in (a, b, c):
            self.index.insert(record)

        assert self.index.delete(a.id) is True
        assert self.index.delete(a.id) is False

        results = self.index.search(np.array([0, 0, 1, 0]), k=1)
        assert results[0][0] is c
        assert results[0][1] == pytest.approx(1.0)

    def test_replace_source(self):
        old = [make_record(source_path="doc", embedding=[1, 0, 0, 0]) for _ in range(3)]
        other = make_record(source_path="other", embedding=[0, 1, 0, 0])
        for record in old + [other]:
            self.index.insert(record)

        new = [make_record(source_path="doc", embedding=[0, 0, 1, 0])]
        removed = self.index.replace_source("doc", new)

        assert sorted(removed) == sorted(r.id for r in old)
        assert self.index.records_for_source("doc") == new
        assert other.id in self.index

    def test_replace_source_rejects_foreign_records(self):
        with pytest.raises(InvalidArgument):
            self.index.replace_source("doc", [make_record(source_path="elsewhere")])

    def test_delete_where(self):
        keep = make_record(source_path="keep", tags=["x"])
        drop = make_record(source_path="drop", tags=["y"])
        self.index.insert(keep)
        self.index.insert(drop)

        removed = self.index.delete_where(lambda r: "y" in r.metadata.tags)

        assert removed == [drop.id]
        assert len(self.index) == 1

    def test_load_replaces_contents_with_clean_records(self):
        self.index.insert(make_record(source_path="stale"))
        loaded = [make_record(source_path=f"s{i}") for i in range(3)]

        assert self.index.load(loaded) == 3
        assert len(self.index) == 3
        assert all(not r.dirty for r in self.index.all_records())

    def test_stats(self):
        self.index.insert(make_record(source_path="a", source_type=SourceType.NOTE))
        self.index.insert(make_record(source_path="a", source_type=SourceType.NOTE))
        self.index.insert(make_record(source_path="b", source_type=SourceType.WEB))

        stats = self.index.stats()
        assert stats["total_entries"] == 3
        assert stats["entries_by_type"] == {"note": 2, "web": 1}
        assert stats["sources"] == 2
        assert stats["dirty_entries"] == 3


class TestIndexSearch:
    """Tests for cosine top-k search."""

    def setup_method(self):
        self.index = VectorIndex(dimension=4)

    def test_empty_index(self):
        assert self.index.search(np.ones(4), k=5) == []

    def test_invalid_k(self):
        self.index.insert(make_record())
        for k in (0, -1, 1.5, True):
            with pytest.raises(InvalidArgument):
                self.index.search(np.ones(4), k=k)

    def test_query_dimension_mismatch(self):
        self.index.insert(make_record())
        with pytest.raises(DimensionMismatchError):
            self.index.search(np.ones(3), k=1)

    def test_orders_by_cosine_similarity(self):
        near = make_record(source_path="near", embedding=[1, 0.1, 0, 0])
        mid = make_record(source_path="mid", embedding=[1, 1, 0, 0])
        far = make_record(source_path="far", embedding=[0, 0, 1, 0])
        for record in (far, mid, near):
            self.index.insert(record)

        results = self.index.search(np.array([1, 0, 0, 0]), k=3)

        assert [r.source_path for r, _ in results] == ["near", "mid", "far"]
        scores = [s for _, s in results]
        assert scores == sorted(scores, reverse=True)
        assert scores[-1] == pytest.approx(0.0)

    def test_fewer_results_than_k(self):
        self.index.insert(make_record())
        assert len(self.index.search(np.ones(4), k=10)) == 1

    def test_scale_invariant(self):
        record = make_record(embedding=[2, 0, 0, 0])
        self.index.insert(record)
        _, score = self.index.search(np.array([100, 0, 0, 0]), k=1)[0]
        assert score == pytest.approx(1.0)

    def test_zero_vector_scores_zero(self):
        self.index.insert(make_record(embedding=[0, 0, 0, 0]))
        _, score = self.index.search(np.ones(4), k=1)[0]
        assert score == 0.0

    def test_ties_break_by_newest_then_id(self):
        now = datetime.now(timezone.utc)
        older = make_record(source_path="older", id="b", updated_at=now - timedelta(hours=1))
        newer = make_record(source_path="newer", id="c", updated_at=now)
        same_time = make_record(source_path="same", id="a", updated_at=now)
        # load() keeps timestamps (insert would not touch new ids either)
        self.index.load([older, newer, same_time])

        results = self.index.search(np.ones(4), k=3)

        assert [r.id for r, _ in results] == ["a", "c", "b"]

    def test_ties_survive_partial_selection(self):
        now = datetime.now(timezone.utc)
        records = [make_record(source_path=f"s{i}", id=f"id{i}", updated_at=now) for i in range(6)]
        self.index.load(records)

        assert [r.id for r, _ in self.index.search(np.ones(4), k=2)] == ["id0", "id1"]

    def test_deterministic(self):
        for i in range(10):
            self.index.insert(make_record(source_path=f"s{i}", embedding=[1, i % 3, 0, 1]))
        query = np.array([1, 1, 0, 0])
        first = [(r.id, s) for r, s in self.index.search(query, k=5)]
        second = [(r.id, s) for r, s in self.index.search(query, k=5)]
        assert first == second

    def test_filter_by_source_type(self):
        note = make_record(source_path="n", source_type=SourceType.NOTE)
        web = make_record(source_path="w", source_type=SourceType.WEB)
        self.index.insert(note)
        self.index.insert(web)

        results = self.index.search(np.ones(4), k=5, search_filter=SearchFilter.build([SourceType.WEB]))

        assert [r for r, _ in results] == [web]

    def test_filter_by_any_tag(self):
        a = make_record(source_path="a", tags=["python", "async"])
        b = make_record(source_path="b", tags=["rust"])
        c = make_record(source_path="c")
        for record in (a, b, c):
            self.index.insert(record)

        results = self.index.search(np.ones(4), k=5, search_filter=SearchFilter.build(tags=["async", "rust"]))

        assert {r.source_path for r, _ in results} == {"a", "b"}

    def test_filter_with_no_match(self):
        self.index.insert(make_record())
        results = self.index.search(np.ones(4), k=5, search_filter=SearchFilter.build(tags=["missing"]))
        assert results == []
