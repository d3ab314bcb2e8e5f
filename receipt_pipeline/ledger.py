from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from schemas.expense_schema import ExpenseCandidate
from schemas.queue_schema import QueueError, QueueItem


class LedgerError(RuntimeError):
    code = "ledger_io"


class QueueLedger:
    """Durable record of queue items, keyed by item id."""

    def __init__(self, db_path: str | Path = "data/queue.db") -> None:
        self._db_path = str(db_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    def _ensure_schema(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS queue_items (
                        id TEXT PRIMARY KEY,
                        image_uri TEXT NOT NULL,
                        provider TEXT NOT NULL,
                        priority TEXT NOT NULL,
                        status TEXT NOT NULL,
                        result_json TEXT,
                        error_json TEXT,
                        attempts INTEGER NOT NULL DEFAULT 0,
                        created_at_utc TEXT NOT NULL,
                        updated_at_utc TEXT NOT NULL
                    )
                    """
                )
        except sqlite3.Error as exc:
            raise LedgerError(f"Could not open queue ledger at {self._db_path}: {exc}") from exc

    def load_all(self) -> list[QueueItem]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, image_uri, provider, priority, status, result_json,
                           error_json, attempts, created_at_utc, updated_at_utc
                    FROM queue_items
                    ORDER BY created_at_utc ASC, rowid ASC
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise LedgerError(f"Could not read queue ledger: {exc}") from exc
        return [_row_to_item(row) for row in rows]

    def upsert(self, item: QueueItem) -> None:
        result_json = item.result.model_dump_json() if item.result is not None else None
        error_json = item.error.model_dump_json() if item.error is not None else None
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO queue_items
                    (id, image_uri, provider, priority, status, result_json, error_json,
                     attempts, created_at_utc, updated_at_utc)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        result_json = excluded.result_json,
                        error_json = excluded.error_json,
                        attempts = excluded.attempts,
                        updated_at_utc = excluded.updated_at_utc
                    """,
                    (
                        item.id,
                        item.image_uri,
                        item.provider,
                        item.priority,
                        item.status,
                        result_json,
                        error_json,
                        item.attempts,
                        item.created_at.isoformat(),
                        item.updated_at.isoformat(),
                    ),
                )
        except sqlite3.Error as exc:
            raise LedgerError(f"Could not write queue item {item.id}: {exc}") from exc

    def delete(self, item_id: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM queue_items WHERE id = ?", (item_id,))
        except sqlite3.Error as exc:
            raise LedgerError(f"Could not delete queue item {item_id}: {exc}") from exc
        return cursor.rowcount == 1


def _row_to_item(row: tuple) -> QueueItem:
    item_id, image_uri, provider, priority, status, result_json, error_json, attempts, created, updated = row
    try:
        return QueueItem(
            id=item_id,
            image_uri=image_uri,
            provider=provider,
            priority=priority,
            status=status,
            result=ExpenseCandidate.model_validate(json.loads(result_json)) if result_json else None,
            error=QueueError.model_validate(json.loads(error_json)) if error_json else None,
            attempts=attempts,
            created_at=datetime.fromisoformat(created),
            updated_at=datetime.fromisoformat(updated),
        )
    except (ValidationError, ValueError) as exc:
        raise LedgerError(f"Corrupt queue ledger row {item_id}: {exc}") from exc
