"""
Persistence Store
=================

Durable source of truth for vector records, behind one interface:

- SQLiteStore: default local file (WAL journal), stdlib sqlite3
- PostgresStore: shared server, psycopg2 (BYTEA embeddings, JSONB metadata)

Schema changes are numbered, forward-only migrations, each applied in its own
transaction and recorded in ``schema_version``. Embeddings are stored as
fixed-width little-endian float32 blobs.

Store methods are blocking; async callers run them via asyncio.to_thread.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError, MigrationError, StorageError
from .models import SourceType, VectorMetadata, VectorRecord

logger = logging.getLogger(__name__)


EMBEDDING_DTYPE = np.dtype("<f4")

META_DIMENSION = "embedding_dimension"
META_MODEL = "embedding_model"


def encode_embedding(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype=EMBEDDING_DTYPE).tobytes()


def decode_embedding(blob: bytes, dimension: int, record_id: str) -> np.ndarray:
    blob = bytes(blob)
    expected = dimension * EMBEDDING_DTYPE.itemsize
    if len(blob) != expected:
        raise StorageError(
            f"Corrupt embedding for record {record_id}: {len(blob)} bytes, expected {expected}"
        )
    return np.frombuffer(blob, dtype=EMBEDDING_DTYPE).astype(np.float32)


def _parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class PersistenceStore(ABC):
    """
    Durable record store.

    Subclasses provide the connection, the migration list and the SQL; the
    migration runner and embedding metadata checks are shared.
    """

    # (version, description, statements)
    MIGRATIONS: Sequence[Tuple[int, str, Sequence[str]]] = ()

    def __init__(self, dimension: int):
        self.dimension = dimension

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self):
        """Connect and bring the schema up to date."""
        self._connect()
        self.migrate()

    @abstractmethod
    def _connect(self):
        """Open the underlying connection."""

    @abstractmethod
    def close(self):
        """Close the underlying connection."""

    @abstractmethod
    def _apply_migration(self, version: int, statements: Sequence[str]):
        """Run one migration's statements and record its version, atomically."""

    def migrate(self) -> int:
        """
        Apply pending migrations in order.

        Returns:
            Schema version after migration

        Raises:
            MigrationError: A migration failed (its transaction is rolled back)
        """
        current = self.get_version()
        latest = self.MIGRATIONS[-1][0] if self.MIGRATIONS else 0
        if current > latest:
            raise MigrationError(
                f"Store schema version {current} is newer than supported version {latest}",
                version=current,
            )

        for version, description, statements in self.MIGRATIONS:
            if version <= current:
                continue
            logger.info(f"Applying store migration {version}: {description}")
            try:
                self._apply_migration(version, statements)
            except Exception as e:
                raise MigrationError(f"Migration {version} ({description}) failed: {e}", version) from e
            current = version

        return current

    # ------------------------------------------------------------------
    # Schema version and metadata
    # ------------------------------------------------------------------

    @abstractmethod
    def get_version(self) -> int:
        """Current schema version (0 for an empty store)."""

    @abstractmethod
    def set_version(self, version: int):
        """Record a schema version as applied."""

    @abstractmethod
    def get_meta(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set_meta(self, key: str, value: str):
        pass

    def ensure_embedding_meta(self, model: str):
        """
        Record the embedding dimension and model on first use and verify them
        afterwards.

        Raises:
            ConfigurationError: The store was built with another dimension or model
        """
        stored_dimension = self.get_meta(META_DIMENSION)
        stored_model = self.get_meta(META_MODEL)

        if stored_dimension is None:
            self.set_meta(META_DIMENSION, str(self.dimension))
            self.set_meta(META_MODEL, model)
            logger.info(f"Store initialised for {model} ({self.dimension} dimensions)")
            return

        if int(stored_dimension) != self.dimension:
            raise ConfigurationError(
                f"Store holds {stored_dimension}-dimension embeddings, "
                f"configured dimension is {self.dimension}"
            )
        if stored_model and stored_model != model:
            raise ConfigurationError(
                f"Store was built with embedding model '{stored_model}', configured model is '{model}'"
            )

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    @abstractmethod
    def apply_changes(self, upserts: Sequence[VectorRecord], deletes: Sequence[str]):
        """Write upserts and deletes in a single transaction."""

    def upsert(self, records: Sequence[VectorRecord]):
        self.apply_changes(records, [])

    def delete(self, record_ids: Sequence[str]):
        self.apply_changes([], record_ids)

    @abstractmethod
    def load_all(self) -> List[VectorRecord]:
        """Every persisted record, clean (not dirty)."""

    @abstractmethod
    def count(self) -> int:
        pass

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    def _record_values(self, record: VectorRecord) -> Tuple:
        if record.dimension != self.dimension:
            raise StorageError(
                f"Record {record.id} has dimension {record.dimension}, store expects {self.dimension}"
            )
        try:
            # Values JSON cannot encode (datetime, numpy scalars) are stored as strings
            metadata = json.dumps(record.metadata.to_dict(), ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cannot serialize metadata of record {record.id}: {e}") from e
        return (
            record.id,
            record.source_type.value,
            record.content,
            encode_embedding(record.embedding),
            metadata,
            record.created_at.isoformat(),
            record.updated_at.isoformat(),
        )

    def _row_to_record(self, row) -> VectorRecord:
        record_id, source_type, content, blob, metadata, created_at, updated_at = row
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        try:
            return VectorRecord(
                id=record_id,
                source_type=SourceType(source_type),
                content=content,
                embedding=decode_embedding(blob, self.dimension, record_id),
                metadata=VectorMetadata.from_dict(metadata),
                created_at=_parse_ts(created_at),
                updated_at=_parse_ts(updated_at),
                dirty=False,
            )
        except StorageError:
            raise
        except (ValueError, TypeError, KeyError) as e:
            raise StorageError(f"Corrupt record {record_id}: {e}") from e

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class SQLiteStore(PersistenceStore):
    """Local single-file store."""

    MIGRATIONS = (
        (1, "create vector_records", (
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS vector_records (
                id TEXT PRIMARY KEY,
                source_type TEXT NOT NULL,
                content TEXT NOT NULL,
                embedding BLOB NOT NULL,
                metadata TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_vector_records_source_type ON vector_records(source_type)",
        )),
        (2, "create store_meta", (
            """
            CREATE TABLE IF NOT EXISTS store_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """,
        )),
    )

    _UPSERT_SQL = """
        INSERT INTO vector_records (id, source_type, content, embedding, metadata, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            source_type = excluded.source_type,
            content = excluded.content,
            embedding = excluded.embedding,
            metadata = excluded.metadata,
            updated_at = excluded.updated_at
    """

    def __init__(self, path: str, dimension: int):
        super().__init__(dimension)
        self.path = path
        self._conn = None
        self._lock = threading.Lock()

    @property
    def conn(self):
        if self._conn is None:
            raise StorageError("Store is not open")
        return self._conn

    def _connect(self):
        import sqlite3

        if self._conn is not None:
            return
        if self.path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        try:
            # Autocommit mode; transactions are explicit BEGIN/COMMIT
            self._conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open SQLite store at {self.path}: {e}") from e
        logger.info(f"SQLite store opened: {self.path}")

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info(f"SQLite store closed: {self.path}")

    def _transaction(self, work):
        import sqlite3

        with self._lock:
            conn = self.conn
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = work(conn)
                conn.execute("COMMIT")
                return result
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StorageError(f"SQLite write failed: {e}") from e
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    def _query(self, sql: str, params: Tuple = ()) -> List[Tuple]:
        import sqlite3

        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"SQLite read failed: {e}") from e

    def _apply_migration(self, version: int, statements: Sequence[str]):
        def work(conn):
            for statement in statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat()),
            )
        self._transaction(work)

    def get_version(self) -> int:
        exists = self._query(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
        )
        if not exists:
            return 0
        rows = self._query("SELECT MAX(version) FROM schema_version")
        return rows[0][0] or 0

    def set_version(self, version: int):
        self._transaction(lambda conn: conn.execute(
            "INSERT OR REPLACE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, datetime.now(timezone.utc).isoformat()),
        ))

    def get_meta(self, key: str) -> Optional[str]:
        rows = self._query("SELECT value FROM store_meta WHERE key = ?", (key,))
        return rows[0][0] if rows else None

    def set_meta(self, key: str, value: str):
        self._transaction(lambda conn: conn.execute(
            "INSERT INTO store_meta (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        ))

    def apply_changes(self, upserts: Sequence[VectorRecord], deletes: Sequence[str]):
        rows = [self._record_values(r) for r in upserts]
        delete_rows = [(record_id,) for record_id in deletes]

        def work(conn):
            if delete_rows:
                conn.executemany("DELETE FROM vector_records WHERE id = ?", delete_rows)
            if rows:
                conn.executemany(self._UPSERT_SQL, rows)

        self._transaction(work)

    def load_all(self) -> List[VectorRecord]:
        rows = self._query(
            "SELECT id, source_type, content, embedding, metadata, created_at, updated_at "
            "FROM vector_records ORDER BY created_at, id"
        )
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        return self._query("SELECT COUNT(*) FROM vector_records")[0][0]


class PostgresStore(PersistenceStore):
    """PostgreSQL-backed store."""

    MIGRATIONS = (
        (1, "create vector_records", (
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS vector_records (
                id TEXT PRIMARY KEY,
                source_type TEXT NOT NULL,
                content TEXT NOT NULL,
                embedding BYTEA NOT NULL,
                metadata JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_vector_records_source_type ON vector_records(source_type)",
        )),
        (2, "create store_meta", (
            """
            CREATE TABLE IF NOT EXISTS store_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """,
        )),
    )

    _UPSERT_SQL = """
        INSERT INTO vector_records (id, source_type, content, embedding, metadata, created_at, updated_at)
        VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s)
        ON CONFLICT (id) DO UPDATE SET
            source_type = EXCLUDED.source_type,
            content = EXCLUDED.content,
            embedding = EXCLUDED.embedding,
            metadata = EXCLUDED.metadata,
            updated_at = EXCLUDED.updated_at
    """

    def __init__(self, database_url: str, dimension: int):
        super().__init__(dimension)
        self.database_url = database_url
        self._conn = None
        self._lock = threading.Lock()

    def _connect(self):
        import psycopg2

        if self._conn is not None:
            return
        try:
            self._conn = psycopg2.connect(self.database_url)
        except psycopg2.Error as e:
            raise StorageError(f"Cannot connect to PostgreSQL: {e}") from e
        logger.info("PostgreSQL store connected")

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("PostgreSQL store closed")

    def _run(self, work, write: bool = True):
        import psycopg2

        with self._lock:
            if self._conn is None:
                raise StorageError("Store is not open")
            try:
                # Connection context manager commits on success, rolls back on error
                with self._conn:
                    with self._conn.cursor() as cur:
                        return work(cur)
            except psycopg2.Error as e:
                action = "write" if write else "read"
                raise StorageError(f"PostgreSQL {action} failed: {e}") from e

    def _apply_migration(self, version: int, statements: Sequence[str]):
        def work(cur):
            for statement in statements:
                cur.execute(statement)
            cur.execute("INSERT INTO schema_version (version) VALUES (%s)", (version,))
        self._run(work)

    def get_version(self) -> int:
        def work(cur):
            cur.execute("SELECT to_regclass('schema_version')")
            if cur.fetchone()[0] is None:
                return 0
            cur.execute("SELECT MAX(version) FROM schema_version")
            return cur.fetchone()[0] or 0
        return self._run(work, write=False)

    def set_version(self, version: int):
        self._run(lambda cur: cur.execute(
            "INSERT INTO schema_version (version) VALUES (%s) ON CONFLICT (version) DO NOTHING",
            (version,),
        ))

    def get_meta(self, key: str) -> Optional[str]:
        def work(cur):
            cur.execute("SELECT value FROM store_meta WHERE key = %s", (key,))
            row = cur.fetchone()
            return row[0] if row else None
        return self._run(work, write=False)

    def set_meta(self, key: str, value: str):
        self._run(lambda cur: cur.execute(
            "INSERT INTO store_meta (key, value) VALUES (%s, %s) "
            "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value",
            (key, value),
        ))

    def apply_changes(self, upserts: Sequence[VectorRecord], deletes: Sequence[str]):
        import psycopg2

        rows = []
        for record in upserts:
            values = list(self._record_values(record))
            values[3] = psycopg2.Binary(values[3])
            rows.append(tuple(values))

        def work(cur):
            if deletes:
                cur.execute("DELETE FROM vector_records WHERE id = ANY(%s)", (list(deletes),))
            if rows:
                cur.executemany(self._UPSERT_SQL, rows)

        self._run(work)

    def load_all(self) -> List[VectorRecord]:
        def work(cur):
            cur.execute(
                "SELECT id, source_type, content, embedding, metadata, created_at, updated_at "
                "FROM vector_records ORDER BY created_at, id"
            )
            return cur.fetchall()
        return [self._row_to_record(row) for row in self._run(work, write=False)]

    def count(self) -> int:
        def work(cur):
            cur.execute("SELECT COUNT(*) FROM vector_records")
            return cur.fetchone()[0]
        return self._run(work, write=False)


def build_store(storage, dimension: int) -> PersistenceStore:
    """
    Create the store selected by a StorageConfig.

    Raises:
        ConfigurationError: Unknown backend
    """
    if storage.backend == "sqlite":
        return SQLiteStore(storage.sqlite_path, dimension)
    if storage.backend == "postgres":
        return PostgresStore(storage.database_url, dimension)
    raise ConfigurationError(f"Unknown storage backend: {storage.backend}")


def describe_store(store: PersistenceStore) -> Dict:
    """Small status dict for stats endpoints."""
    return {
        "backend": "sqlite" if isinstance(store, SQLiteStore) else "postgres",
        "schema_version": store.get_version(),
        "persisted_entries": store.count(),
    }
