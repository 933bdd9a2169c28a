"""
Local Durable Store

Per-device SQLite store backing the sync client:
- documents: collection -> documents keyed by id (the offline source of truth)
- pending_changes: FIFO outbox of mutations not yet sent to the hub
- kv_store: small persisted values (sync config, device id, device info)

Each call opens its own connection and commits before returning, so a
write is durable by the time the caller continues.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from telesync.db import get_sqlite_connection

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


@dataclass
class PendingChange:
    """A mutation queued while the channel was unavailable"""
    seq: int
    change_type: str  # DATA_UPDATE / DATA_DELETE
    collection: str
    document_id: str
    payload: Dict[str, Any]  # wire data for the message
    created_at: int  # epoch millis


class LocalStore:
    """SQLite-backed document store and outbox"""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator:
        conn = get_sqlite_connection(self.db_path)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize local store schema"""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    last_modified INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (collection, doc_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS pending_changes (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    change_type TEXT NOT NULL,
                    collection TEXT NOT NULL,
                    document_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

        logger.debug(f"Local store ready: {self.db_path}")

    # ========== Documents ==========

    def get_collection(self, collection: str) -> List[Document]:
        """All documents of a collection in insertion order"""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload FROM documents WHERE collection = ? ORDER BY rowid",
                (collection,)
            ).fetchall()
        return [json.loads(row["payload"]) for row in rows]

    def get_document(self, collection: str, document_id: str) -> Optional[Document]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, document_id)
            ).fetchone()
        return json.loads(row["payload"]) if row else None

    def put_document(self, collection: str, document: Document) -> None:
        """Insert or replace a document, keeping its original position"""
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO documents (collection, doc_id, payload, last_modified)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(collection, doc_id) DO UPDATE SET
                    payload = excluded.payload,
                    last_modified = excluded.last_modified
            """, (
                collection,
                str(document["id"]),
                json.dumps(document),
                int(document.get("lastModified") or 0),
            ))

    def remove_document(self, collection: str, document_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, document_id)
            )
            return cursor.rowcount > 0

    def replace_collection(self, collection: str, documents: List[Document]) -> None:
        """Atomically swap a collection's contents"""
        with self._connect() as conn:
            conn.execute("DELETE FROM documents WHERE collection = ?", (collection,))
            conn.executemany("""
                INSERT OR REPLACE INTO documents (collection, doc_id, payload, last_modified)
                VALUES (?, ?, ?, ?)
            """, [
                (
                    collection,
                    str(document["id"]),
                    json.dumps(document),
                    int(document.get("lastModified") or 0),
                )
                for document in documents
                if isinstance(document, dict) and "id" in document
            ])

    def collections(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT collection FROM documents ORDER BY collection"
            ).fetchall()
        return [row["collection"] for row in rows]

    # ========== Pending changes ==========

    def enqueue_change(
        self,
        change_type: str,
        collection: str,
        document_id: str,
        payload: Dict[str, Any],
        created_at: int
    ) -> int:
        """Append to the outbox, returns the sequence number"""
        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT INTO pending_changes
                (change_type, collection, document_id, payload, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (change_type, collection, str(document_id), json.dumps(payload), created_at))
            seq = cursor.lastrowid

        logger.debug(f"📦 Queued {change_type} on {collection}:{document_id} (seq {seq})")
        return seq

    def pending_changes(self, collection: Optional[str] = None) -> List[PendingChange]:
        """Queued changes, oldest first"""
        query = """
            SELECT seq, change_type, collection, document_id, payload, created_at
            FROM pending_changes
        """
        params: list = []
        if collection is not None:
            query += " WHERE collection = ?"
            params.append(collection)
        query += " ORDER BY seq ASC"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            PendingChange(
                seq=row["seq"],
                change_type=row["change_type"],
                collection=row["collection"],
                document_id=row["document_id"],
                payload=json.loads(row["payload"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def remove_change(self, seq: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM pending_changes WHERE seq = ?", (seq,))

    def pending_count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM pending_changes").fetchone()
        return row["n"]

    def clear_pending(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM pending_changes")

    # ========== Key/value ==========

    def get_value(self, key: str, default: Any = None) -> Any:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        return json.loads(row["value"]) if row else default

    def set_value(self, key: str, value: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                (key, json.dumps(value))
            )

    def delete_values(self, *keys: str) -> None:
        if not keys:
            return
        placeholders = ",".join("?" for _ in keys)
        with self._connect() as conn:
            conn.execute(f"DELETE FROM kv_store WHERE key IN ({placeholders})", keys)

    def clear_all(self) -> None:
        """Drop every document, queued change and stored value"""
        with self._connect() as conn:
            conn.execute("DELETE FROM documents")
            conn.execute("DELETE FROM pending_changes")
            conn.execute("DELETE FROM kv_store")
        logger.info(f"🗑️ Local store cleared: {self.db_path}")
