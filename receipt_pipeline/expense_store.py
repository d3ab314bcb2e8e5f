from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from schemas.expense_schema import ExpenseRecord
from schemas.queue_schema import QueueItem


class ExpenseStoreError(RuntimeError):
    pass


class ExpenseRepository(Protocol):
    def create_expense(self, expense: ExpenseRecord, *, source_item_id: str | None = None) -> str:
        """Persist an expense and return its id.

        Saving again with the same source_item_id returns the existing id
        instead of storing a second copy.
        """

    def get_expense(self, expense_id: str) -> ExpenseRecord | None:
        ...

    def list_expenses(self) -> list[ExpenseRecord]:
        ...


def candidate_to_expense(item: QueueItem, overrides: dict[str, Any] | None = None) -> ExpenseRecord:
    """Build the expense a user confirmed from a completed item's candidate.

    Overrides carry the user's edits and win over extracted values. A missing
    date falls back to the capture date.
    """
    if item.result is None:
        raise ValueError(f"Queue item {item.id} has no extraction result")
    data = item.result.model_dump(exclude={"confidence", "flags"})
    data.update(overrides or {})
    if not data.get("date"):
        data["date"] = item.created_at.date().isoformat()
    if not data.get("category"):
        data["category"] = "other"
    data.update(
        receipt_uri=item.image_uri,
        capture_method="ai_service",
        ai_service_used=item.provider,
        confidence=item.result.confidence,
    )
    return ExpenseRecord.model_validate(data)


class SqliteExpenseRepository:
    def __init__(self, db_path: str | Path = "data/expenses.db") -> None:
        self._db_path = str(db_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS expenses (
                    id TEXT PRIMARY KEY,
                    merchant TEXT NOT NULL,
                    amount_cents INTEGER NOT NULL,
                    expense_date TEXT NOT NULL,
                    category TEXT NOT NULL,
                    record_json TEXT NOT NULL,
                    source_item_id TEXT UNIQUE,
                    created_at_utc TEXT NOT NULL
                )
                """
            )

    def create_expense(self, expense: ExpenseRecord, *, source_item_id: str | None = None) -> str:
        expense_id = uuid4().hex
        now = datetime.now(timezone.utc).isoformat()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO expenses
                    (id, merchant, amount_cents, expense_date, category, record_json, source_item_id, created_at_utc)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(source_item_id) DO NOTHING
                    """,
                    (
                        expense_id,
                        expense.merchant,
                        expense.amount,
                        expense.date,
                        expense.category,
                        expense.model_dump_json(),
                        source_item_id,
                        now,
                    ),
                )
                if source_item_id is not None:
                    row = conn.execute(
                        "SELECT id FROM expenses WHERE source_item_id = ?", (source_item_id,)
                    ).fetchone()
                    expense_id = row[0]
        except sqlite3.Error as exc:
            raise ExpenseStoreError(f"Could not save expense: {exc}") from exc
        return expense_id

    def get_expense(self, expense_id: str) -> ExpenseRecord | None:
        with self._connect() as conn:
            row = conn.execute("SELECT record_json FROM expenses WHERE id = ?", (expense_id,)).fetchone()
        if not row:
            return None
        return ExpenseRecord.model_validate_json(row[0])

    def list_expenses(self) -> list[ExpenseRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT record_json FROM expenses ORDER BY expense_date DESC, created_at_utc DESC"
            ).fetchall()
        return [ExpenseRecord.model_validate_json(row[0]) for row in rows]
