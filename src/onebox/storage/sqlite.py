"""SQLite-backed document sink."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from pathlib import Path
from types import TracebackType
from typing import Any

from ..core.config import StorageSettings
from ..core.datetime_utils import serialize_datetime, utc_now
from ..core.errors import SinkError
from ..core.interfaces import DocumentStore
from ..core.models import ClassificationResult, DocumentPage, NormalizedMessage
from .documents import message_to_document

LOGGER = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    composite_id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    subject TEXT NOT NULL,
    sender TEXT NOT NULL,
    to_recipients TEXT NOT NULL,
    cc_recipients TEXT,
    bcc_recipients TEXT,
    sent_at TEXT,
    body_text TEXT NOT NULL,
    body_html TEXT,
    attachments TEXT NOT NULL,
    sequence_number INTEGER NOT NULL,
    folder TEXT NOT NULL,
    indexed_at TEXT NOT NULL,
    ai_category TEXT,
    ai_confidence REAL,
    ai_reasoning TEXT,
    classified_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_documents_account_sent
    ON documents(account_id, sent_at DESC);
"""

_SEARCH_COLUMNS = ("subject", "body_text", "sender", "to_recipients")


class SqliteDocumentSink(DocumentStore):
    """Persist documents to SQLite, upserting by composite id."""

    def __init__(self, settings: StorageSettings) -> None:
        """Open the database and make sure the schema exists."""
        self._settings = settings
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._closed = False
        self._connection = sqlite3.connect(db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        with self._connection:
            self._connection.executescript(_SCHEMA)

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteDocumentSink:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # DocumentSink API --------------------------------------------------------
    async def submit(self, message: NormalizedMessage) -> None:
        await asyncio.to_thread(self.persist_document, message)

    async def update_classification(
        self, composite_id: str, result: ClassificationResult
    ) -> None:
        await asyncio.to_thread(self.persist_classification, composite_id, result)

    # Blocking operations -----------------------------------------------------
    def persist_document(self, message: NormalizedMessage) -> None:
        """Insert or update the stored document for ``message``."""
        LOGGER.debug("Persisting document %s", message.composite_id)
        document = message_to_document(message)
        try:
            with self._lock, self._connection:
                self._connection.execute(
                    """
                    INSERT INTO documents (
                        composite_id,
                        account_id,
                        message_id,
                        subject,
                        sender,
                        to_recipients,
                        cc_recipients,
                        bcc_recipients,
                        sent_at,
                        body_text,
                        body_html,
                        attachments,
                        sequence_number,
                        folder,
                        indexed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(composite_id) DO UPDATE SET
                        message_id=excluded.message_id,
                        subject=excluded.subject,
                        sender=excluded.sender,
                        to_recipients=excluded.to_recipients,
                        cc_recipients=excluded.cc_recipients,
                        bcc_recipients=excluded.bcc_recipients,
                        sent_at=excluded.sent_at,
                        body_text=excluded.body_text,
                        body_html=excluded.body_html,
                        attachments=excluded.attachments,
                        sequence_number=excluded.sequence_number,
                        folder=excluded.folder,
                        indexed_at=excluded.indexed_at
                    """,
                    (
                        document["id"],
                        document["account_id"],
                        document["message_id"],
                        document["subject"],
                        document["from"],
                        json.dumps(document["to"]),
                        _dump_optional(document.get("cc")),
                        _dump_optional(document.get("bcc")),
                        document["date"],
                        document["body"],
                        document["html_body"],
                        json.dumps(document["attachments"]),
                        document["sequence_number"],
                        document["folder"],
                        document["indexed_at"],
                    ),
                )
        except sqlite3.Error as exc:
            raise SinkError(f"Failed to persist {message.composite_id}") from exc

    def persist_classification(
        self, composite_id: str, result: ClassificationResult
    ) -> None:
        """Record the classification outcome for an indexed document."""
        try:
            with self._lock, self._connection:
                cursor = self._connection.execute(
                    """
                    UPDATE documents
                    SET ai_category = ?, ai_confidence = ?, ai_reasoning = ?,
                        classified_at = ?
                    WHERE composite_id = ?
                    """,
                    (
                        result.category,
                        result.confidence,
                        result.reasoning,
                        serialize_datetime(utc_now()),
                        composite_id,
                    ),
                )
        except sqlite3.Error as exc:
            raise SinkError(f"Failed to classify {composite_id}") from exc
        if cursor.rowcount == 0:
            raise SinkError(f"Document {composite_id} has not been indexed")

    def get_document(self, composite_id: str) -> dict[str, Any] | None:
        """Return the stored document for ``composite_id`` if present."""
        with self._lock:
            row = self._connection.execute(
                "SELECT * FROM documents WHERE composite_id = ?", (composite_id,)
            ).fetchone()
        return _row_to_document(row) if row is not None else None

    # pylint: disable=too-many-arguments
    def search_documents(
        self,
        *,
        query: str | None = None,
        account_id: str | None = None,
        category: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> DocumentPage:
        """Return a page of documents matching every supplied filter."""
        conditions: list[str] = []
        params: list[Any] = []
        if account_id is not None:
            conditions.append("account_id = ?")
            params.append(account_id)
        if category is not None:
            conditions.append("ai_category = ?")
            params.append(category)
        if query and query.strip():
            pattern = f"%{_escape_like(query.strip().lower())}%"
            like_clauses = [
                f"lower({column}) LIKE ? ESCAPE '\\'" for column in _SEARCH_COLUMNS
            ]
            conditions.append(f"({' OR '.join(like_clauses)})")
            params.extend([pattern] * len(_SEARCH_COLUMNS))

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._lock:
            total_row = self._connection.execute(
                f"SELECT COUNT(*) FROM documents {where_clause}", params
            ).fetchone()
            rows = self._connection.execute(
                f"""
                SELECT * FROM documents
                {where_clause}
                ORDER BY sent_at DESC
                LIMIT ? OFFSET ?
                """,
                [*params, limit, offset],
            ).fetchall()
        total = int(total_row[0]) if total_row else 0
        return DocumentPage(hits=[_row_to_document(row) for row in rows], total=total)

    
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._closed:
            return
        self._closed = True
        self._connection.close()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _dump_optional(values: list[str] | None) -> str | None:
    return json.dumps(values) if values is not None else None


def _row_to_document(row: sqlite3.Row) -> dict[str, Any]:
    document: dict[str, Any] = {
        "id": row["composite_id"],
        "account_id": row["account_id"],
        "message_id": row["message_id"],
        "subject": row["subject"],
        "from": row["sender"],
        "to": json.loads(row["to_recipients"]),
        "date": row["sent_at"],
        "body": row["body_text"],
        "html_body": row["body_html"],
        "attachments": json.loads(row["attachments"]),
        "sequence_number": row["sequence_number"],
        "folder": row["folder"],
        "indexed_at": row["indexed_at"],
    }
    if row["cc_recipients"] is not None:
        document["cc"] = json.loads(row["cc_recipients"])
    if row["bcc_recipients"] is not None:
        document["bcc"] = json.loads(row["bcc_recipients"])
    if row["ai_category"] is not None:
        document.update(
            ai_category=row["ai_category"],
            ai_confidence=row["ai_confidence"],
            ai_reasoning=row["ai_reasoning"],
            classified_at=row["classified_at"],
        )
    return document


__all__ = ["SqliteDocumentSink"]
