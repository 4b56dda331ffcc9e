"""
Data models and database operations for loan-sync.
"""

import asyncio
import json
import secrets
import sqlite3
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .dates import normalize_date_string
from .metadata import BookInfo


class SyncStatus(str, Enum):
    """Outcome of reconciling one loan or history entry."""

    ADDED = "added"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    RETURNED = "returned"


class RunStatus(str, Enum):
    """Status of a sync run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Loan:
    """A current loan ("charge") as reported by the library."""

    charge_id: int
    biblio_id: int
    title: str
    isbn: str
    charge_date: str
    due_date: str
    renew_count: int = 0
    branch: str | None = None
    discharge_date: str | None = None

    def with_renewal(self, due_date: str, renew_count: int) -> "Loan":
        """Return a copy reflecting a successful renewal."""
        return replace(self, due_date=due_date, renew_count=renew_count)


@dataclass(frozen=True)
class LoanHistoryEntry:
    """A completed loan cycle from the library's loan history."""

    charge_id: int
    biblio_id: int
    title: str
    isbn: str
    charge_date: str
    due_date: str
    discharge_date: str | None
    renew_count: int | None = None
    branch: str | None = None


@dataclass
class BookRecord:
    """A persisted book row, keyed by the library's charge id."""

    charge_id: str
    title: str
    charge_date: str
    due_date: str
    isbn: str = ""
    isbn13: str | None = None
    author: str = ""
    publisher: str | None = None
    cover_url: str | None = None
    description: str | None = None
    pub_date: str | None = None
    discharge_date: str | None = None
    renew_count: int = 0
    is_read: int = 0
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_loan(
        cls,
        loan: Loan | LoanHistoryEntry,
        book_info: BookInfo | None = None,
    ) -> "BookRecord":
        """Build a record from upstream loan data plus optional metadata."""
        return cls(
            charge_id=str(loan.charge_id),
            isbn=loan.isbn or (book_info.isbn if book_info else "") or "",
            isbn13=book_info.isbn13 if book_info else None,
            title=(book_info.title if book_info else None) or loan.title,
            author=(book_info.author if book_info else None) or "",
            publisher=book_info.publisher if book_info else None,
            cover_url=book_info.cover_url if book_info else None,
            description=book_info.description if book_info else None,
            pub_date=book_info.pub_date if book_info else None,
            charge_date=normalize_date_string(loan.charge_date) or loan.charge_date,
            due_date=normalize_date_string(loan.due_date) or loan.due_date,
            discharge_date=normalize_date_string(loan.discharge_date),
            renew_count=loan.renew_count or 0,
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "BookRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: row[k] for k in row.keys() if k in known})


@dataclass
class SyncSummary:
    """Counts produced by one reconciliation run."""

    total_charges: int = 0
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    returned: int = 0
    failed: int = field(default=0, compare=False)

    def record(self, status: SyncStatus) -> None:
        setattr(self, status.value, getattr(self, status.value) + 1)

    def to_dict(self) -> dict[str, int]:
        return {
            "total_charges": self.total_charges,
            "added": self.added,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "returned": self.returned,
        }


@dataclass(frozen=True)
class RenewalResult:
    """Outcome of one renewal attempt."""

    charge_id: int
    title: str
    success: bool
    new_due_date: str | None = None
    new_renew_count: int | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ActionLogEntry:
    """An append-only audit entry."""

    charge_id: str
    action: str
    status: str
    message: str | None = None
    created_at: str | None = None


@dataclass
class SyncRun:
    """A single execution of the sync engine."""

    run_id: str
    started_ts: str
    status: str = "running"
    completed_ts: str | None = None
    summary_json: str | None = None
    error_message: str | None = None

    @property
    def summary(self) -> dict | None:
        """Parse summary_json."""
        if self.summary_json:
            return json.loads(self.summary_json)
        return None


class _SQLiteStore:
    """Shared connection handling. Each operation uses its own connection."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    async def _read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return await asyncio.to_thread(self._query, sql, params)

    async def _write(self, sql: str, params: tuple = ()) -> int:
        return await asyncio.to_thread(self._execute, sql, params)


UPSERT_BOOK_SQL = """
INSERT INTO books (
    charge_id, isbn, isbn13, title, author, publisher, cover_url,
    description, pub_date, charge_date, due_date, discharge_date,
    renew_count, is_read, created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(charge_id) DO UPDATE SET
    due_date = excluded.due_date,
    renew_count = excluded.renew_count,
    discharge_date = COALESCE(books.discharge_date, excluded.discharge_date),
    isbn = COALESCE(NULLIF(excluded.isbn, ''), books.isbn),
    isbn13 = COALESCE(excluded.isbn13, books.isbn13),
    title = COALESCE(NULLIF(excluded.title, ''), books.title),
    author = COALESCE(NULLIF(excluded.author, ''), books.author),
    publisher = COALESCE(excluded.publisher, books.publisher),
    cover_url = COALESCE(excluded.cover_url, books.cover_url),
    description = COALESCE(excluded.description, books.description),
    pub_date = COALESCE(excluded.pub_date, books.pub_date),
    updated_at = excluded.updated_at
"""


class BookDatabase(_SQLiteStore):
    """Record store for books and the action log."""

    async def find_by_charge_id(self, charge_id: str | int) -> BookRecord | None:
        """Find a book record by the library's charge id."""
        rows = await self._read("SELECT * FROM books WHERE charge_id = ?", (str(charge_id),))
        return BookRecord.from_row(rows[0]) if rows else None

    async def find_by_isbn(self, isbn: str, limit: int = 10) -> list[BookRecord]:
        """Find records for an ISBN, most recent charge date first."""
        rows = await self._read(
            "SELECT * FROM books WHERE isbn = ? ORDER BY charge_date DESC LIMIT ?",
            (isbn, limit),
        )
        return [BookRecord.from_row(row) for row in rows]

    async def find_by_isbn_and_charge_date(
        self, isbn: str, charge_date: str
    ) -> BookRecord | None:
        """Exact match on ISBN and charge date (one specific loan cycle)."""
        rows = await self._read(
            """
            SELECT * FROM books
            WHERE isbn = ? AND charge_date = ?
            ORDER BY id ASC
            LIMIT 1
            """,
            (isbn, normalize_date_string(charge_date) or charge_date),
        )
        return BookRecord.from_row(rows[0]) if rows else None

    async def find_all(self) -> list[BookRecord]:
        rows = await self._read("SELECT * FROM books ORDER BY charge_date DESC")
        return [BookRecord.from_row(row) for row in rows]

    async def upsert(self, record: BookRecord) -> None:
        """
        Insert a record, or merge it into the existing row for its charge id.

        Due date and renew count always take the new value. The discharge date
        is only filled while it is still empty. Metadata keeps the stored value
        unless the new record carries one.
        """
        now = datetime.now(UTC).isoformat()
        await self._write(
            UPSERT_BOOK_SQL,
            (
                record.charge_id,
                record.isbn or "",
                record.isbn13,
                record.title,
                record.author or "",
                record.publisher,
                record.cover_url,
                record.description,
                record.pub_date,
                record.charge_date,
                record.due_date,
                record.discharge_date,
                record.renew_count,
                record.is_read,
                now,
                now,
            ),
        )

    # -------------------------------------------------------------------------
    # Action log
    # -------------------------------------------------------------------------

    async def append_action_log(self, entry: ActionLogEntry) -> None:
        """Append an entry to the action log."""
        await self._write(
            """
            INSERT INTO action_log (charge_id, action, status, message, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                entry.charge_id,
                entry.action,
                entry.status,
                entry.message,
                entry.created_at or datetime.now(UTC).isoformat(),
            ),
        )

    async def get_action_logs(self, charge_id: str) -> list[ActionLogEntry]:
        """Get log entries for a charge, newest first."""
        rows = await self._read(
            """
            SELECT charge_id, action, status, message, created_at
            FROM action_log WHERE charge_id = ?
            ORDER BY created_at DESC, id DESC
            """,
            (charge_id,),
        )
        return [ActionLogEntry(**dict(row)) for row in rows]

    # -------------------------------------------------------------------------
    # Sync runs
    # -------------------------------------------------------------------------

    def create_run(self) -> SyncRun:
        """Create a new sync run record."""
        run = SyncRun(
            run_id=secrets.token_hex(16),
            started_ts=datetime.now(UTC).isoformat(),
        )
        self._execute(
            "INSERT INTO sync_runs (run_id, started_ts, status) VALUES (?, ?, ?)",
            (run.run_id, run.started_ts, run.status),
        )
        return run

    def complete_run(
        self,
        run_id: str,
        status: RunStatus,
        summary: SyncSummary | None = None,
        error_message: str | None = None,
    ) -> None:
        """Mark a sync run as finished."""
        self._execute(
            """
            UPDATE sync_runs SET
                completed_ts = ?,
                status = ?,
                summary_json = ?,
                error_message = ?
            WHERE run_id = ?
            """,
            (
                datetime.now(UTC).isoformat(),
                status.value,
                json.dumps(summary.to_dict()) if summary else None,
                error_message,
                run_id,
            ),
        )

    def get_run(self, run_id: str) -> SyncRun | None:
        rows = self._query("SELECT * FROM sync_runs WHERE run_id = ?", (run_id,))
        return SyncRun(**dict(rows[0])) if rows else None


class PlannedLoanStore(_SQLiteStore):
    """Borrow-later list. Entries are cleared once the title is on loan."""

    async def add(
        self,
        biblio_id: int,
        title: str,
        author: str = "",
        source: str = "library",
        **extra: Any,
    ) -> None:
        now = datetime.now(UTC).isoformat()
        await self._write(
            """
            INSERT INTO planned_loans
                (library_biblio_id, source, title, author, publisher, year,
                 isbn, cover_url, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                biblio_id,
                source,
                title,
                author,
                extra.get("publisher"),
                extra.get("year"),
                extra.get("isbn"),
                extra.get("cover_url"),
                now,
                now,
            ),
        )

    async def find_by_biblio_id(self, biblio_id: int) -> dict | None:
        rows = await self._read(
            "SELECT * FROM planned_loans WHERE library_biblio_id = ?", (biblio_id,)
        )
        return dict(rows[0]) if rows else None

    async def delete_by_biblio_id(self, biblio_id: int) -> bool:
        """Delete the planned entry for one bibliographic id."""
        changed = await self._write(
            "DELETE FROM planned_loans WHERE library_biblio_id = ?", (biblio_id,)
        )
        return changed > 0

    async def delete_by_biblio_ids(self, biblio_ids: list[int]) -> int:
        """
        Delete planned entries for several bibliographic ids at once.

        Part of the store's public interface for bulk callers; the sync run
        itself deletes per id so each failure is isolated.
        """
        if not biblio_ids:
            return 0
        placeholders = ", ".join("?" for _ in biblio_ids)
        return await self._write(
            f"DELETE FROM planned_loans WHERE library_biblio_id IN ({placeholders})",
            tuple(biblio_ids),
        )
