"""
Reconciliation of library loans against the local record store.

Each current loan is classified added, updated or unchanged; each returned
history entry is classified returned or unchanged. Metadata enrichment runs
in fixed-size batches so the metadata API never sees more than `concurrency`
requests at once.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from .dates import normalize_date_string
from .library import LibraryClient
from .metadata import BookInfo, MetadataClient
from .models import (
    BookDatabase,
    BookRecord,
    Loan,
    LoanHistoryEntry,
    PlannedLoanStore,
    SyncStatus,
    SyncSummary,
)

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10


@dataclass(frozen=True)
class Credentials:
    """Library login credentials."""

    login_id: str
    password: str = field(repr=False)


async def fetch_book_info(
    isbn: str | None, metadata: MetadataClient, context: str
) -> BookInfo | None:
    """Look up metadata, treating any failure as a miss."""
    if not isbn:
        return None
    try:
        logger.debug(f"Looking up ISBN {isbn} ({context})")
        return await metadata.lookup(isbn)
    except Exception as e:
        logger.warning(f"Metadata lookup failed for {isbn}: {e}")
        return None


async def process_loan(
    loan: Loan, books: BookDatabase, metadata: MetadataClient
) -> SyncStatus:
    """Reconcile one current loan against its stored record."""
    existing = await books.find_by_charge_id(loan.charge_id)

    if existing is None:
        book_info = await fetch_book_info(loan.isbn, metadata, "new loan")
        await books.upsert(BookRecord.from_loan(loan, book_info))
        logger.debug(f"Added loan {loan.charge_id}: {loan.title}")
        return SyncStatus.ADDED

    # Recovery is keyed on the cover only; other empty fields do not trigger it.
    needs_metadata_recovery = existing.cover_url is None
    book_info = None
    if needs_metadata_recovery:
        book_info = await fetch_book_info(loan.isbn, metadata, "metadata recovery")
    metadata_recovered = book_info is not None and bool(book_info.cover_url)

    record = BookRecord.from_loan(loan, book_info)
    needs_update = (
        metadata_recovered
        or existing.due_date != record.due_date
        or existing.renew_count != record.renew_count
    )
    if not needs_update:
        return SyncStatus.UNCHANGED

    if book_info is None:
        record = replace(
            record,
            title=existing.title,
            author=existing.author,
            isbn13=existing.isbn13,
            publisher=existing.publisher,
            cover_url=existing.cover_url,
            description=existing.description,
            pub_date=existing.pub_date,
        )
    await books.upsert(record)
    logger.debug(f"Updated loan {loan.charge_id}: {loan.title}")
    return SyncStatus.UPDATED


async def cleanup_planned_loans(
    loans: Iterable[Loan], planned_loans: PlannedLoanStore
) -> None:
    """Drop borrow-later entries for titles now on loan, once per biblio id."""
    biblio_ids = sorted({loan.biblio_id for loan in loans})
    if not biblio_ids:
        return

    results = await asyncio.gather(
        *(planned_loans.delete_by_biblio_id(biblio_id) for biblio_id in biblio_ids),
        return_exceptions=True,
    )
    for biblio_id, result in zip(biblio_ids, results, strict=True):
        if isinstance(result, BaseException):
            logger.error(f"Planned loan cleanup failed for biblio {biblio_id}: {result}")


async def process_loans_with_cleanup(
    loans: list[Loan],
    books: BookDatabase,
    metadata: MetadataClient,
    planned_loans: PlannedLoanStore | None = None,
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
) -> SyncSummary:
    """
    Reconcile current loans in batches, then clean up planned loans.

    Loans inside a batch run concurrently; batches run one after another.
    A failing loan is logged and counted in `failed` only.
    """
    batch_size = max(1, concurrency)
    summary = SyncSummary(total_charges=len(loans))

    for start in range(0, len(loans), batch_size):
        batch = loans[start : start + batch_size]
        results = await asyncio.gather(
            *(process_loan(loan, books, metadata) for loan in batch),
            return_exceptions=True,
        )
        for loan, result in zip(batch, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    f"Failed to process loan {loan.charge_id}: {result}",
                    exc_info=result,
                )
                summary.failed += 1
            else:
                summary.record(result)

    if planned_loans is not None:
        await cleanup_planned_loans(loans, planned_loans)

    return summary


async def process_history_entry(entry: LoanHistoryEntry, books: BookDatabase) -> SyncStatus:
    """Mark the stored record for a history entry as returned, if needed."""
    if not entry.discharge_date:
        return SyncStatus.UNCHANGED

    existing = await books.find_by_charge_id(entry.charge_id)
    if existing is None and entry.isbn:
        # Same title, different loan cycle must not match: charge date is required.
        existing = await books.find_by_isbn_and_charge_date(entry.isbn, entry.charge_date)

    if existing is None or existing.discharge_date:
        return SyncStatus.UNCHANGED

    record = replace(
        existing,
        due_date=normalize_date_string(entry.due_date) or existing.due_date,
        discharge_date=normalize_date_string(entry.discharge_date),
    )
    try:
        await books.upsert(record)
    except Exception:
        logger.exception(f"Failed to mark {existing.charge_id} as returned")
        return SyncStatus.UNCHANGED

    logger.debug(f"Marked {existing.charge_id} returned on {record.discharge_date}")
    return SyncStatus.RETURNED


async def reconcile_returns(entries: list[LoanHistoryEntry], books: BookDatabase) -> int:
    """Process all history entries concurrently; return the number returned."""
    results = await asyncio.gather(
        *(process_history_entry(entry, books) for entry in entries),
        return_exceptions=True,
    )
    returned = 0
    for entry, result in zip(entries, results, strict=True):
        if isinstance(result, BaseException):
            logger.error(f"Failed to process history entry {entry.charge_id}: {result}")
        elif result is SyncStatus.RETURNED:
            returned += 1
    return returned


class Reconciler:
    """Runs a full sync: loans, planned-loan cleanup, then returns."""

    def __init__(
        self,
        library: LibraryClient,
        metadata: MetadataClient,
        books: BookDatabase,
        planned_loans: PlannedLoanStore | None = None,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        credentials: Credentials,
    ):
        self.library = library
        self.metadata = metadata
        self.books = books
        self.planned_loans = planned_loans
        self.concurrency = max(1, concurrency)
        self.credentials = credentials

    async def reconcile(self) -> SyncSummary:
        """
        Run one sync.

        Raises whatever login or the top-level fetches raise; per-loan and
        per-entry failures are logged and never abort the run.
        """
        await self.library.login(self.credentials.login_id, self.credentials.password)

        loans = await self.library.get_charges()
        if not loans:
            logger.info("No current loans")

        summary = await process_loans_with_cleanup(
            loans,
            self.books,
            self.metadata,
            self.planned_loans,
            concurrency=self.concurrency,
        )

        history = await self.library.get_charge_histories()
        summary.returned = await reconcile_returns(history, self.books)
        if summary.returned:
            logger.info(f"Marked {summary.returned} book(s) as returned")

        logger.info(
            f"Sync complete: {summary.total_charges} loans, {summary.added} added, "
            f"{summary.updated} updated, {summary.unchanged} unchanged, "
            f"{summary.returned} returned, {summary.failed} failed"
        )
        return summary
