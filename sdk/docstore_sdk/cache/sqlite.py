"""
SQLite cache backend.

Persists cached documents and listen resume tokens in a single database
file so a restarted process can resume its change feeds instead of
reloading every collection.

Invariants:
    - One connection per operation; WAL mode allows concurrent readers
    - Documents are stored as serialized protobuf Document messages
    - Each operation runs in its own transaction

How to change safely:
    - Add new columns with defaults; existing cache files must keep opening

Table schema:
    documents:
        - path TEXT PRIMARY KEY
        - collection_path TEXT (indexed)
        - document_pb BLOB
        - update_time TEXT
    resume_tokens:
        - target_id INTEGER PRIMARY KEY
        - token BLOB
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .. import _wire
from ..errors import CacheError
from ..protocol import Document
from ..value import format_timestamp
from .backend import collection_of

logger = logging.getLogger(__name__)


class SqliteCacheBackend:
    """Cache backend stored in a SQLite file.

    Args:
        db_path: Database file path
        wal_mode: Enable SQLite WAL mode
        busy_timeout_ms: SQLite busy timeout

    Example:
        >>> backend = SqliteCacheBackend("/var/cache/app/docstore.db")
        >>> await backend.put(document.name, document)
        >>> await backend.scan("projects/p/databases/(default)/documents/users")
    """

    def __init__(self, db_path: str | Path, wal_mode: bool = True, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            self._ensure_schema(conn)

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Yields:
            SQLite connection

        Raises:
            CacheError: If SQLite reports an error
        """
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise CacheError(f"Cannot open cache database: {e}", backend="sqlite") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        except sqlite3.Error as e:
            raise CacheError(f"Cache database error: {e}", backend="sqlite") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                path TEXT PRIMARY KEY,
                collection_path TEXT NOT NULL,
                document_pb BLOB NOT NULL,
                update_time TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection_path, path);

            CREATE TABLE IF NOT EXISTS resume_tokens (
                target_id INTEGER PRIMARY KEY,
                token BLOB NOT NULL
            );
        """)

    @staticmethod
    def _to_document(row: sqlite3.Row) -> Document:
        return _wire.decode_document(row["document_pb"])

    async def get(self, document_path: str) -> Document | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT document_pb FROM documents WHERE path = ?", (document_path,)
            ).fetchone()
        return self._to_document(row) if row else None

    async def put(self, document_path: str, document: Document) -> None:
        payload = _wire.encode_document(document)
        update_time = format_timestamp(document.update_time) if document.update_time else None
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO documents (path, collection_path, document_pb, update_time)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    document_pb = excluded.document_pb,
                    update_time = excluded.update_time
                """,
                (document_path, collection_of(document_path), payload, update_time),
            )

    async def remove(self, document_path: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM documents WHERE path = ?", (document_path,))

    async def scan(self, collection_path: str) -> list[Document]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT document_pb FROM documents WHERE collection_path = ? ORDER BY path",
                (collection_path,),
            ).fetchall()
        return [self._to_document(row) for row in rows]

    async def remove_collection(self, collection_path: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection_path = ?", (collection_path,)
            )
            removed = cursor.rowcount
        logger.debug(
            "Dropped cached collection",
            extra={"collection_path": collection_path, "documents": removed},
        )
        return removed

    async def read_resume_token(self, target_id: int) -> bytes | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT token FROM resume_tokens WHERE target_id = ?", (target_id,)
            ).fetchone()
        return bytes(row["token"]) if row else None

    async def update_resume_token(self, target_id: int, token: bytes | None) -> None:
        with self._transaction() as conn:
            if token is None:
                conn.execute("DELETE FROM resume_tokens WHERE target_id = ?", (target_id,))
            else:
                conn.execute(
                    """
                    INSERT INTO resume_tokens (target_id, token) VALUES (?, ?)
                    ON CONFLICT(target_id) DO UPDATE SET token = excluded.token
                    """,
                    (target_id, token),
                )

    async def close(self) -> None:
        # Connections are per operation; nothing is held open
        logger.debug("Closed SQLite cache backend", extra={"db_path": str(self.db_path)})
