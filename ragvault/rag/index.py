"""
Vector Index
============

In-memory exact cosine search over every record in the store.

Rows of a preallocated float32 matrix hold unit-normalised embeddings, so a
query is one matrix-vector product. The matrix doubles when full and rows are
swap-removed on delete. All public methods hold a re-entrant lock, so every
search sees one consistent snapshot and multi-record mutations
(``replace_source``, ``delete_where``) are applied atomically.
"""

import logging
import threading
from collections import Counter
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np

from .errors import DimensionMismatchError, InvalidArgument
from .models import SearchFilter, VectorRecord

logger = logging.getLogger(__name__)


def _normalize(vector: np.ndarray) -> np.ndarray:
    """Unit vector, or zeros for a zero-norm input (scores 0 against anything)."""
    norm = float(np.linalg.norm(vector))
    if norm == 0.0 or not np.isfinite(norm):
        return np.zeros_like(vector, dtype=np.float32)
    return (vector / norm).astype(np.float32)


class VectorIndex:
    """Brute-force cosine index with metadata filtering."""

    def __init__(self, dimension: int, initial_capacity: int = 1024):
        if dimension <= 0:
            raise InvalidArgument("dimension must be positive")
        self.dimension = dimension
        self._matrix = np.zeros((max(initial_capacity, 1), dimension), dtype=np.float32)
        self._records: List[VectorRecord] = []
        self._rows: Dict[str, int] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, record_id: str) -> bool:
        with self._lock:
            return record_id in self._rows

    @property
    def capacity(self) -> int:
        return self._matrix.shape[0]

    def _check_dimension(self, vector: np.ndarray, context: str):
        actual = int(np.asarray(vector).reshape(-1).shape[0])
        if actual != self.dimension:
            raise DimensionMismatchError(self.dimension, actual, context=context)

    def _grow(self):
        grown = np.zeros((self.capacity * 2, self.dimension), dtype=np.float32)
        grown[: len(self._records)] = self._matrix[: len(self._records)]
        self._matrix = grown
        logger.debug(f"Vector index grown to capacity {self.capacity}")

    def _put(self, record: VectorRecord):
        row = self._rows.get(record.id)
        if row is None:
            if len(self._records) >= self.capacity:
                self._grow()
            row = len(self._records)
            self._records.append(record)
            self._rows[record.id] = row
        else:
            self._records[row] = record
        self._matrix[row] = _normalize(record.embedding)

    def _remove(self, record_id: str) -> bool:
        row = self._rows.pop(record_id, None)
        if row is None:
            return False
        last = len(self._records) - 1
        if row != last:
            moved = self._records[last]
            self._records[row] = moved
            self._matrix[row] = self._matrix[last]
            self._rows[moved.id] = row
        self._records.pop()
        self._matrix[last] = 0.0
        return True

    def insert(self, record: VectorRecord) -> VectorRecord:
        """
        Insert or overwrite a record by id and mark it dirty.

        Raises:
            DimensionMismatchError: embedding length differs (index unchanged)
        """
        self._check_dimension(record.embedding, "record embedding")
        with self._lock:
            if record.id in self._rows:
                record.touch()
            else:
                record.dirty = True
            self._put(record)
        return record

    def delete(self, record_id: str) -> bool:
        """Remove a record. Returns False when the id is unknown."""
        with self._lock:
            return self._remove(record_id)

    def get(self, record_id: str) -> Optional[VectorRecord]:
        with self._lock:
            row = self._rows.get(record_id)
            return self._records[row] if row is not None else None

    def records_for_source(self, source_path: str) -> List[VectorRecord]:
        with self._lock:
            return [r for r in self._records if r.metadata.source_path == source_path]

    def replace_source(self, source_path: str, records: Iterable[VectorRecord]) -> List[str]:
        """
        Replace every record of ``source_path`` with ``records`` atomically.

        Returns:
            Ids of the removed records
        """
        records = list(records)
        for record in records:
            self._check_dimension(record.embedding, "record embedding")
            if record.metadata.source_path != source_path:
                raise InvalidArgument(
                    f"record {record.id} belongs to {record.metadata.source_path}, not {source_path}"
                )

        with self._lock:
            removed = [r.id for r in self._records if r.metadata.source_path == source_path]
            for record_id in removed:
                self._remove(record_id)
            for record in records:
                record.dirty = True
                self._put(record)
        return removed

    def delete_where(self, predicate: Callable[[VectorRecord], bool]) -> List[str]:
        """Remove every record matching predicate. Returns removed ids."""
        with self._lock:
            removed = [r.id for r in self._records if predicate(r)]
            for record_id in removed:
                self._remove(record_id)
        return removed

    def load(self, records: Iterable[VectorRecord]) -> int:
        """Replace the whole index with persisted (clean) records."""
        records = list(records)
        for record in records:
            self._check_dimension(record.embedding, f"stored record {record.id}")

        with self._lock:
            self.clear()
            for record in records:
                record.dirty = False
                self._put(record)
            return len(self._records)

    def clear(self):
        with self._lock:
            self._records = []
            self._rows = {}
            self._matrix[:] = 0.0

    def all_records(self) -> List[VectorRecord]:
        with self._lock:
            return list(self._records)

    def search(
        self,
        query_vector: np.ndarray,
        k: int,
        search_filter: Optional[SearchFilter] = None,
    ) -> List[Tuple[VectorRecord, float]]:
        """
        Top-k records by cosine similarity.

        Ties are broken by newest ``updated_at`` first, then ascending id, so
        identical calls on an unchanged index return identical lists.

        Args:
            query_vector: Query embedding
            k: Maximum number of results (> 0)
            search_filter: Optional predicate applied during the scan

        Returns:
            (record, score) pairs, best first; fewer than k when fewer match

        Raises:
            InvalidArgument: k <= 0
            DimensionMismatchError: query length differs from the index
        """
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k <= 0:
            raise InvalidArgument(f"k must be a positive integer, got {k!r}")

        query = np.asarray(query_vector, dtype=np.float32).reshape(-1)
        self._check_dimension(query, "query")
        query = _normalize(query)

        with self._lock:
            n = len(self._records)
            if n == 0:
                return []

            scores = np.clip(self._matrix[:n] @ query, -1.0, 1.0)

            if search_filter is not None:
                mask = np.fromiter(
                    (search_filter.matches(r) for r in self._records),
                    dtype=bool,
                    count=n,
                )
                eligible = np.nonzero(mask)[0]
            else:
                eligible = np.arange(n)

            if eligible.size == 0:
                return []

            candidates = eligible
            if k < eligible.size:
                # Keep everything tied with the k-th best score for the tie-break
                kth_score = np.partition(scores[eligible], eligible.size - k)[eligible.size - k]
                candidates = eligible[scores[eligible] >= kth_score]

            ranked = sorted(
                (int(i) for i in candidates),
                key=lambda i: (
                    -float(scores[i]),
                    -self._records[i].updated_at.timestamp(),
                    self._records[i].id,
                ),
            )
            return [(self._records[i], float(scores[i])) for i in ranked[:k]]

    def stats(self) -> Dict:
        with self._lock:
            by_type = Counter(r.source_type.value for r in self._records)
            return {
                "total_entries": len(self._records),
                "dimension": self.dimension,
                "capacity": self.capacity,
                "dirty_entries": sum(1 for r in self._records if r.dirty),
                "entries_by_type": dict(by_type),
                "sources": len({r.metadata.source_path for r in self._records}),
            }
