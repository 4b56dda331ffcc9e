"""Unit tests for loan reconciliation."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from loan_sync.errors import AuthError
from loan_sync.metadata import BookInfo
from loan_sync.models import BookRecord, Loan, LoanHistoryEntry, SyncStatus
from loan_sync.reconcile import (
    Credentials,
    Reconciler,
    process_history_entry,
    process_loan,
    process_loans_with_cleanup,
    reconcile_returns,
)

INFO = BookInfo(
    isbn="0000000001",
    isbn13="9780000000001",
    title="Aladin Title",
    author="Author",
    publisher="Pub",
    description="Desc",
    cover_url="https://example.org/cover.jpg",
)


def make_loan(charge_id: int = 1, **overrides) -> Loan:
    data = {
        "charge_id": charge_id,
        "biblio_id": 10,
        "title": f"Book {charge_id}",
        "isbn": "9780000000001",
        "charge_date": "2025-01-01",
        "due_date": "2025-01-15",
        "renew_count": 0,
    }
    data.update(overrides)
    return Loan(**data)


def make_entry(charge_id: int = 1, **overrides) -> LoanHistoryEntry:
    data = {
        "charge_id": charge_id,
        "biblio_id": 10,
        "title": f"Book {charge_id}",
        "isbn": "9780000000001",
        "charge_date": "2025-01-01",
        "due_date": "2025-01-15",
        "discharge_date": "2025-01-12",
    }
    data.update(overrides)
    return LoanHistoryEntry(**data)


@pytest.fixture
def metadata():
    client = AsyncMock()
    client.lookup.return_value = INFO
    return client


@pytest.fixture
def planned():
    store = AsyncMock()
    store.delete_by_biblio_id.return_value = True
    return store


class FakeLibrary:
    """In-memory stand-in for LibraryClient."""

    def __init__(self, loans=None, history=None, login_error=None):
        self.loans = list(loans or [])
        self.history = list(history or [])
        self.login_error = login_error
        self.logins = 0

    async def login(self, login_id, password):
        self.logins += 1
        if self.login_error:
            raise self.login_error

    async def get_charges(self):
        return list(self.loans)

    async def get_charge_histories(self):
        return list(self.history)


def make_reconciler(library, metadata, books, planned=None, concurrency=10) -> Reconciler:
    return Reconciler(
        library,
        metadata,
        books,
        planned,
        concurrency=concurrency,
        credentials=Credentials("user", "pw"),
    )


class TestProcessLoan:
    async def test_new_loan_is_added_with_metadata(self, books, metadata):
        status = await process_loan(make_loan(), books, metadata)

        assert status is SyncStatus.ADDED
        metadata.lookup.assert_awaited_once_with("9780000000001")
        stored = await books.find_by_charge_id(1)
        assert stored.cover_url == INFO.cover_url
        assert stored.title == "Aladin Title"

    async def test_new_loan_without_isbn_skips_lookup(self, books, metadata):
        status = await process_loan(make_loan(isbn=""), books, metadata)

        assert status is SyncStatus.ADDED
        metadata.lookup.assert_not_awaited()
        stored = await books.find_by_charge_id(1)
        assert stored.cover_url is None
        assert stored.title == "Book 1"

    async def test_due_date_change_with_cover_present_skips_lookup(self, books, metadata):
        existing = BookRecord.from_loan(make_loan(due_date="2025-01-08"), INFO)
        await books.upsert(existing)

        status = await process_loan(
            make_loan(due_date="2025-01-15", renew_count=0), books, metadata
        )

        assert status is SyncStatus.UPDATED
        metadata.lookup.assert_not_awaited()
        stored = await books.find_by_charge_id(1)
        assert stored.due_date == "2025-01-15"
        assert stored.cover_url == INFO.cover_url
        assert stored.title == "Aladin Title"

    async def test_renew_count_change_is_update(self, books, metadata):
        await books.upsert(BookRecord.from_loan(make_loan(), INFO))

        status = await process_loan(make_loan(renew_count=1), books, metadata)

        assert status is SyncStatus.UPDATED
        assert (await books.find_by_charge_id(1)).renew_count == 1

    async def test_no_change_is_unchanged(self, books, metadata):
        await books.upsert(BookRecord.from_loan(make_loan(), INFO))

        status = await process_loan(make_loan(), books, metadata)

        assert status is SyncStatus.UNCHANGED
        metadata.lookup.assert_not_awaited()

    async def test_missing_cover_is_recovered(self, books, metadata):
        await books.upsert(BookRecord.from_loan(make_loan(), None))

        status = await process_loan(make_loan(), books, metadata)

        assert status is SyncStatus.UPDATED
        stored = await books.find_by_charge_id(1)
        assert stored.cover_url == INFO.cover_url
        assert stored.publisher == "Pub"

    async def test_recovery_without_cover_is_unchanged(self, books, metadata):
        await books.upsert(BookRecord.from_loan(make_loan(), None))
        metadata.lookup.return_value = BookInfo(isbn="1", title="No Cover")

        status = await process_loan(make_loan(), books, metadata)

        assert status is SyncStatus.UNCHANGED
        metadata.lookup.assert_awaited_once()

    async def test_other_missing_fields_do_not_trigger_lookup(self, books, metadata):
        record = BookRecord.from_loan(make_loan(), None)
        record.cover_url = "https://example.org/existing.jpg"
        await books.upsert(record)

        status = await process_loan(make_loan(), books, metadata)

        assert status is SyncStatus.UNCHANGED
        metadata.lookup.assert_not_awaited()

    async def test_lookup_error_still_adds(self, books, metadata):
        metadata.lookup.side_effect = RuntimeError("metadata API down")

        status = await process_loan(make_loan(), books, metadata)

        assert status is SyncStatus.ADDED
        assert (await books.find_by_charge_id(1)).cover_url is None

    async def test_lookup_timeout_on_existing_is_unchanged(self, books, metadata):
        await books.upsert(BookRecord.from_loan(make_loan(), None))
        metadata.lookup.side_effect = TimeoutError()

        status = await process_loan(make_loan(), books, metadata)

        assert status is SyncStatus.UNCHANGED

    async def test_update_without_metadata_preserves_fields(self, books, metadata):
        record = BookRecord.from_loan(make_loan(), INFO)
        await books.upsert(record)
        # Fresh lookups would now return nothing
        metadata.lookup.return_value = None

        await process_loan(make_loan(due_date="2025-02-01"), books, metadata)

        stored = await books.find_by_charge_id(1)
        assert stored.publisher == "Pub"
        assert stored.description == "Desc"
        assert stored.isbn13 == "9780000000001"
        assert stored.author == "Author"


class TestProcessLoansWithCleanup:
    async def test_cleanup_once_per_distinct_biblio(self, books, metadata, planned):
        loans = [
            make_loan(1, biblio_id=99),
            make_loan(2, biblio_id=99),
            make_loan(3, biblio_id=99),
            make_loan(4, biblio_id=100),
        ]

        await process_loans_with_cleanup(loans, books, metadata, planned)

        assert planned.delete_by_biblio_id.await_count == 2
        deleted = {call.args[0] for call in planned.delete_by_biblio_id.await_args_list}
        assert deleted == {99, 100}

    async def test_cleanup_runs_after_all_batches(self, books, metadata, planned):
        order = []

        async def lookup(isbn):
            order.append("lookup")
            return None

        async def delete(biblio_id):
            order.append("delete")
            return True

        metadata.lookup.side_effect = lookup
        planned.delete_by_biblio_id.side_effect = delete
        loans = [make_loan(i, biblio_id=i) for i in range(1, 6)]

        await process_loans_with_cleanup(loans, books, metadata, planned, concurrency=2)

        assert order == ["lookup"] * 5 + ["delete"] * 5

    async def test_batches_bound_concurrency(self, books, metadata):
        in_flight = 0
        peak = 0

        async def lookup(isbn):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return None

        metadata.lookup.side_effect = lookup
        loans = [make_loan(i) for i in range(1, 8)]

        summary = await process_loans_with_cleanup(loans, books, metadata, concurrency=3)

        assert peak <= 3
        assert summary.added == 7

    async def test_failed_loan_is_counted_separately(self, books, metadata, monkeypatch):
        original_upsert = books.upsert

        async def flaky_upsert(record):
            if record.charge_id == "2":
                raise RuntimeError("disk full")
            await original_upsert(record)

        monkeypatch.setattr(books, "upsert", flaky_upsert)
        loans = [make_loan(1), make_loan(2), make_loan(3)]

        summary = await process_loans_with_cleanup(loans, books, metadata)

        assert summary.total_charges == 3
        assert summary.added == 2
        assert summary.failed == 1
        assert "failed" not in summary.to_dict()

    async def test_cleanup_failure_is_not_fatal(self, books, metadata, planned):
        planned.delete_by_biblio_id.side_effect = RuntimeError("locked")

        summary = await process_loans_with_cleanup([make_loan()], books, metadata, planned)

        assert summary.added == 1

    async def test_empty_loans(self, books, metadata, planned):
        summary = await process_loans_with_cleanup([], books, metadata, planned)

        assert summary.to_dict() == {
            "total_charges": 0,
            "added": 0,
            "updated": 0,
            "unchanged": 0,
            "returned": 0,
        }
        planned.delete_by_biblio_id.assert_not_awaited()


class TestProcessHistoryEntry:
    async def test_marks_matching_record_returned(self, books):
        await books.upsert(BookRecord.from_loan(make_loan(due_date="2025-01-20"), None))

        status = await process_history_entry(make_entry(due_date="2025-01-15"), books)

        assert status is SyncStatus.RETURNED
        stored = await books.find_by_charge_id(1)
        assert stored.discharge_date == "2025-01-12"
        assert stored.due_date == "2025-01-15"

    async def test_without_discharge_is_unchanged(self, books):
        await books.upsert(BookRecord.from_loan(make_loan(), None))

        status = await process_history_entry(make_entry(discharge_date=None), books)

        assert status is SyncStatus.UNCHANGED
        assert (await books.find_by_charge_id(1)).discharge_date is None

    async def test_falls_back_to_isbn_and_charge_date(self, books):
        await books.upsert(BookRecord.from_loan(make_loan(1, charge_date="2025-01-01"), None))

        status = await process_history_entry(
            make_entry(777, charge_date="2025-01-01T10:30:00"), books
        )

        assert status is SyncStatus.RETURNED
        assert (await books.find_by_charge_id(1)).discharge_date == "2025-01-12"

    async def test_isbn_match_with_different_charge_date_is_unchanged(self, books):
        await books.upsert(BookRecord.from_loan(make_loan(1, charge_date="2025-01-01"), None))

        status = await process_history_entry(
            make_entry(777, charge_date="2024-06-01"), books
        )

        assert status is SyncStatus.UNCHANGED
        assert (await books.find_by_charge_id(1)).discharge_date is None

    async def test_unknown_entry_is_unchanged(self, books):
        status = await process_history_entry(make_entry(404, isbn=""), books)
        assert status is SyncStatus.UNCHANGED

    async def test_already_discharged_is_unchanged(self, books):
        record = BookRecord.from_loan(make_loan(), None)
        record.discharge_date = "2025-01-05"
        await books.upsert(record)

        status = await process_history_entry(make_entry(discharge_date="2025-01-12"), books)

        assert status is SyncStatus.UNCHANGED
        assert (await books.find_by_charge_id(1)).discharge_date == "2025-01-05"

    async def test_persist_failure_is_unchanged(self, books, monkeypatch):
        await books.upsert(BookRecord.from_loan(make_loan(), None))
        monkeypatch.setattr(books, "upsert", AsyncMock(side_effect=RuntimeError("locked")))

        status = await process_history_entry(make_entry(), books)

        assert status is SyncStatus.UNCHANGED

    async def test_reconcile_returns_counts(self, books):
        await books.upsert(BookRecord.from_loan(make_loan(1), None))
        await books.upsert(BookRecord.from_loan(make_loan(2), None))

        returned = await reconcile_returns(
            [make_entry(1), make_entry(2), make_entry(3, isbn=""), make_entry(4, discharge_date=None)],
            books,
        )

        assert returned == 2
        assert (await books.find_by_charge_id(1)).discharge_date == "2025-01-12"


class TestReconciler:
    async def test_full_run(self, books, metadata, planned):
        await books.upsert(BookRecord.from_loan(make_loan(50), INFO))
        library = FakeLibrary(
            loans=[make_loan(1, biblio_id=99), make_loan(2, biblio_id=99)],
            history=[make_entry(50)],
        )

        summary = await make_reconciler(library, metadata, books, planned).reconcile()

        assert summary.to_dict() == {
            "total_charges": 2,
            "added": 2,
            "updated": 0,
            "unchanged": 0,
            "returned": 1,
        }
        assert library.logins == 1
        planned.delete_by_biblio_id.assert_awaited_once_with(99)

    async def test_second_run_is_idempotent(self, books, metadata, planned):
        library = FakeLibrary(loans=[make_loan(1), make_loan(2, isbn=""), make_loan(3)])
        reconciler = make_reconciler(library, metadata, books, planned)

        await reconciler.reconcile()
        second = await reconciler.reconcile()

        assert second.added == 0
        assert second.updated == 0
        assert second.unchanged == second.total_charges == 3

    async def test_discharge_survives_later_runs(self, books, metadata):
        library = FakeLibrary(loans=[make_loan(1)])
        reconciler = make_reconciler(library, metadata, books)
        await reconciler.reconcile()

        library.loans = []
        library.history = [make_entry(1, discharge_date="2025-01-12")]
        await reconciler.reconcile()

        library.history = [make_entry(1, discharge_date="2025-03-03")]
        await reconciler.reconcile()

        assert (await books.find_by_charge_id(1)).discharge_date == "2025-01-12"

    async def test_no_loans_still_processes_history_and_cleanup(self, books, metadata, planned):
        await books.upsert(BookRecord.from_loan(make_loan(1), None))
        library = FakeLibrary(loans=[], history=[make_entry(1)])

        summary = await make_reconciler(library, metadata, books, planned).reconcile()

        assert summary.total_charges == 0
        assert summary.returned == 1

    async def test_auth_failure_propagates(self, books, metadata):
        library = FakeLibrary(login_error=AuthError("Login failed", 401))

        with pytest.raises(AuthError):
            await make_reconciler(library, metadata, books).reconcile()

    async def test_fetch_failure_propagates(self, books, metadata):
        library = FakeLibrary()
        library.get_charges = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await make_reconciler(library, metadata, books).reconcile()


def test_credentials_repr_hides_password():
    assert "pw" not in repr(Credentials("user", "pw"))
