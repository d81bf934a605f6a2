"""
Sync Manager
============

Keeps the in-memory VectorIndex and the durable PersistenceStore consistent.

- Startup: open/migrate the store, verify embedding metadata, load every
  record into the index, then open the readiness gate.
- Mutations hit the index synchronously and are recorded as pending
  operations (one per record id, latest wins).
- Pending operations are flushed to the store in a single transaction when
  the dirty threshold is reached, on a periodic timer, on explicit flush()
  and on shutdown().
- A failed flush re-queues its operations and is retried on the next tick.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..core.config import SyncConfig
from .errors import NotReadyError, StorageError
from .index import VectorIndex
from .models import VectorRecord
from .store import PersistenceStore

logger = logging.getLogger(__name__)


class SyncOp(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


PendingOp = Tuple[SyncOp, Optional[VectorRecord]]


class SyncManager:
    """
    Write-behind synchronization between index and store.

    Every record is either persisted (no pending op) or pending (an op in
    ``_pending``, and ``dirty`` set on the in-memory record). Flushes are
    single-flight: at most one store transaction is in progress.
    """

    def __init__(
        self,
        index: VectorIndex,
        store: PersistenceStore,
        config: Optional[SyncConfig] = None,
        embedding_model: str = "",
    ):
        self.index = index
        self.store = store
        self.config = config or SyncConfig()
        self.embedding_model = embedding_model

        self._pending: Dict[str, PendingOp] = {}
        self._ready = asyncio.Event()
        self._closed = False
        self._flush_lock = asyncio.Lock()
        self._timer_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None

        self.last_sync_at: Optional[datetime] = None
        self.flush_count = 0
        self.failed_flush_count = 0
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set() and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def start(self):
        """
        Load the index from the store and start the periodic flush timer.

        A manager that was shut down can be started again; the index is
        reloaded from the store.

        Raises:
            StorageError / MigrationError / ConfigurationError: fatal startup failures
        """
        if self.is_ready:
            return
        if self._closed:
            self._closed = False
            self._ready.clear()

        loaded = await asyncio.to_thread(self._open_and_load)
        self.last_sync_at = datetime.now(timezone.utc)
        self._ready.set()
        self._timer_task = asyncio.create_task(self._periodic_flush())
        logger.info(f"Sync manager ready: {loaded} records loaded", extra={"record_count": loaded})

    def _open_and_load(self) -> int:
        self.store.open()
        self.store.ensure_embedding_meta(self.embedding_model)
        records = self.store.load_all()
        return self.index.load(records)

    async def wait_ready(self, timeout: Optional[float] = None):
        """
        Block until the index has been loaded from the store.

        Raises:
            NotReadyError: The manager has been shut down
        """
        if not self._closed:
            if timeout is None:
                await self._ready.wait()
            else:
                await asyncio.wait_for(self._ready.wait(), timeout)
        if self._closed:
            raise NotReadyError("Vector store has been shut down")

    def _require_ready(self):
        if not self.is_ready:
            raise NotReadyError("Vector store is not ready (index still loading or shut down)")

    async def shutdown(self) -> bool:
        """
        Stop the timer, flush everything pending and close the store.

        Returns:
            True when every pending operation was persisted
        """
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        synced = True
        try:
            await asyncio.wait_for(self.flush(), self.config.shutdown_timeout_sec)
        except asyncio.TimeoutError:
            synced = False
            logger.warning(
                f"Shutdown flush timed out after {self.config.shutdown_timeout_sec}s; "
                f"{len(self._pending)} pending operations not persisted",
                extra={"pending": len(self._pending)},
            )
        except StorageError as e:
            synced = False
            logger.error(f"Shutdown flush failed, {len(self._pending)} operations not persisted: {e}")
        finally:
            # Release waiters; they observe the closed flag and fail fast
            self._closed = True
            self._ready.set()
            await asyncio.to_thread(self.store.close)

        logger.info("Sync manager stopped")
        return synced

    # ------------------------------------------------------------------
    # Mutations (synchronous on the event loop)
    # ------------------------------------------------------------------

    def upsert(self, records: Iterable[VectorRecord]) -> List[str]:
        self._require_ready()
        ids = []
        for record in records:
            self.index.insert(record)
            self._pending[record.id] = (SyncOp.UPSERT, record)
            ids.append(record.id)
        self._maybe_schedule_flush()
        return ids

    def replace_source(self, source_path: str, records: Iterable[VectorRecord]) -> List[str]:
        """
        Swap every record of a source for ``records`` in one index mutation.

        Returns:
            Ids of removed records
        """
        self._require_ready()
        records = list(records)
        removed = self.index.replace_source(source_path, records)
        for record_id in removed:
            self._pending[record_id] = (SyncOp.DELETE, None)
        for record in records:
            self._pending[record.id] = (SyncOp.UPSERT, record)
        self._maybe_schedule_flush()
        return removed

    def delete_ids(self, record_ids: Iterable[str]) -> List[str]:
        self._require_ready()
        removed = []
        for record_id in record_ids:
            if self.index.delete(record_id):
                self._pending[record_id] = (SyncOp.DELETE, None)
                removed.append(record_id)
        self._maybe_schedule_flush()
        return removed

    def delete_where(self, predicate: Callable[[VectorRecord], bool]) -> List[str]:
        self._require_ready()
        removed = self.index.delete_where(predicate)
        for record_id in removed:
            self._pending[record_id] = (SyncOp.DELETE, None)
        self._maybe_schedule_flush()
        return removed

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _maybe_schedule_flush(self):
        if len(self._pending) < self.config.flush_threshold:
            return
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called outside the event loop; the timer picks it up
            return
        self._flush_task = loop.create_task(self._background_flush())

    async def _background_flush(self):
        try:
            await self.flush()
        except StorageError:
            logger.warning("Threshold flush failed; operations re-queued for the next tick")

    async def _periodic_flush(self):
        while True:
            await asyncio.sleep(self.config.flush_interval_sec)
            try:
                await self.flush()
            except StorageError:
                logger.warning("Periodic flush failed; operations re-queued for the next tick")

    async def flush(self) -> int:
        """
        Persist a snapshot of the pending operations in one transaction.

        Returns:
            Number of operations written

        Raises:
            StorageError: The write failed; operations were re-queued
        """
        async with self._flush_lock:
            if not self._pending:
                return 0

            snapshot = self._pending
            self._pending = {}

            upserts = [record for op, record in snapshot.values() if op is SyncOp.UPSERT]
            deletes = [record_id for record_id, (op, _) in snapshot.items() if op is SyncOp.DELETE]

            try:
                await asyncio.to_thread(self.store.apply_changes, upserts, deletes)
            except asyncio.CancelledError:
                # Outcome unknown; keep the operations pending (upserts are idempotent)
                for record_id, op in snapshot.items():
                    self._pending.setdefault(record_id, op)
                raise
            except Exception as e:
                # Operations recorded during the write are newer and win
                for record_id, op in snapshot.items():
                    self._pending.setdefault(record_id, op)
                self.failed_flush_count += 1
                self.last_error = str(e)
                logger.error(
                    f"Flush of {len(snapshot)} operations failed: {e}",
                    extra={"pending": len(self._pending)},
                )
                if isinstance(e, StorageError):
                    raise
                raise StorageError(f"Flush failed: {e}") from e

            for record in upserts:
                if record.id not in self._pending:
                    record.dirty = False

            self.flush_count += 1
            self.last_error = None
            self.last_sync_at = datetime.now(timezone.utc)
            logger.info(
                f"Flushed {len(upserts)} upserts and {len(deletes)} deletes",
                extra={"record_count": len(snapshot)},
            )
            return len(snapshot)

    def stats(self) -> Dict:
        return {
            "ready": self.is_ready,
            "pending_count": len(self._pending),
            "is_synced": not self._pending,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "flush_count": self.flush_count,
            "failed_flush_count": self.failed_flush_count,
            "last_error": self.last_error,
        }
