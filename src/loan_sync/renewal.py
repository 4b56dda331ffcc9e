"""
Automatic loan renewal.

Loans close to their due date that have not been renewed too often are
renewed one at a time. A single renewal never raises: each attempt becomes a
RenewalResult and an action-log entry.
"""

import logging

from .config import RenewalConfig
from .dates import KST_OFFSET_MINUTES, is_within_days
from .errors import LoanSyncError
from .library import LibraryClient
from .metadata import MetadataClient
from .models import (
    ActionLogEntry,
    BookDatabase,
    Loan,
    PlannedLoanStore,
    RenewalResult,
    SyncSummary,
)
from .reconcile import (
    DEFAULT_CONCURRENCY,
    Credentials,
    process_loans_with_cleanup,
    reconcile_returns,
)

logger = logging.getLogger(__name__)

RENEWAL_ACTION = "renewal_attempt"
WORKFLOW_ERROR_ACTION = "workflow_error"
SYSTEM_CHARGE_ID = "SYSTEM"


def identify_renewal_candidates(
    loans: list[Loan],
    max_renew_count: int = 0,
    days_before_due: int = 2,
    utc_offset_minutes: int = KST_OFFSET_MINUTES,
) -> list[Loan]:
    """Loans due within `days_before_due` days that may still be renewed."""
    candidates = [
        loan
        for loan in loans
        if 0 <= loan.renew_count <= max_renew_count
        and is_within_days(loan.due_date, days_before_due, utc_offset_minutes)
    ]
    logger.info(f"Identified {len(candidates)} renewal candidate(s)")
    return candidates


async def renew_loans(
    client: LibraryClient, candidates: list[Loan]
) -> tuple[list[RenewalResult], list[Loan]]:
    """
    Renew candidates sequentially.

    Returns the per-loan results and the candidates with due date and renew
    count replaced for every successful renewal.
    """
    results: list[RenewalResult] = []
    updated: list[Loan] = []

    for loan in candidates:
        try:
            response = await client.renew_charge(loan.charge_id)
        except LoanSyncError as e:
            error_message = str(e) or "Unknown error"
        except Exception:
            logger.exception(f"Unexpected error renewing {loan.charge_id}")
            error_message = "Unknown error"
        else:
            updated.append(loan.with_renewal(response.due_date, response.renew_count))
            results.append(
                RenewalResult(
                    charge_id=loan.charge_id,
                    title=loan.title,
                    success=True,
                    new_due_date=response.due_date,
                    new_renew_count=response.renew_count,
                )
            )
            logger.info(f"Renewed '{loan.title}' until {response.due_date}")
            continue

        updated.append(loan)
        results.append(
            RenewalResult(
                charge_id=loan.charge_id,
                title=loan.title,
                success=False,
                error_message=error_message,
            )
        )
        logger.warning(f"Failed to renew '{loan.title}': {error_message}")

    succeeded = sum(1 for r in results if r.success)
    logger.info(f"Renewals complete: {succeeded} succeeded, {len(results) - succeeded} failed")
    return results, updated


async def log_renewal_results(books: BookDatabase, results: list[RenewalResult]) -> None:
    """Append one action-log entry per renewal attempt."""
    for result in results:
        await books.append_action_log(
            ActionLogEntry(
                charge_id=str(result.charge_id),
                action=RENEWAL_ACTION,
                status="success" if result.success else "failure",
                message=(
                    f"Renewed until {result.new_due_date}"
                    if result.success
                    else result.error_message or "Unknown error"
                ),
            )
        )


async def log_workflow_error(books: BookDatabase, error: BaseException) -> None:
    """Record a failed renewal workflow under the SYSTEM charge id."""
    try:
        await books.append_action_log(
            ActionLogEntry(
                charge_id=SYSTEM_CHARGE_ID,
                action=WORKFLOW_ERROR_ACTION,
                status="failure",
                message=str(error) or "Unknown error",
            )
        )
    except Exception:
        logger.exception("Failed to record renewal workflow error")


async def run_renewal_workflow(
    library: LibraryClient,
    metadata: MetadataClient,
    books: BookDatabase,
    planned_loans: PlannedLoanStore | None = None,
    *,
    credentials: Credentials,
    config: RenewalConfig | None = None,
    concurrency: int = DEFAULT_CONCURRENCY,
) -> tuple[list[RenewalResult], SyncSummary]:
    """
    Log in, renew eligible loans, sync all current loans, then mark returns.

    The sync sees the renewed due dates because renewed loans are threaded
    back into the loan list rather than refetched. A fatal failure is
    recorded as a workflow_error action and re-raised.
    """
    config = config or RenewalConfig()

    try:
        await library.login(credentials.login_id, credentials.password)
        loans = await library.get_charges()

        candidates = identify_renewal_candidates(
            loans,
            max_renew_count=config.max_renew_count,
            days_before_due=config.days_before_due,
            utc_offset_minutes=config.utc_offset_minutes,
        )
        results, renewed = await renew_loans(library, candidates)
        if results:
            await log_renewal_results(books, results)

        by_charge_id = {loan.charge_id: loan for loan in renewed}
        current = [by_charge_id.get(loan.charge_id, loan) for loan in loans]

        summary = await process_loans_with_cleanup(
            current, books, metadata, planned_loans, concurrency=concurrency
        )

        history = await library.get_charge_histories()
        summary.returned = await reconcile_returns(history, books)
        if summary.returned:
            logger.info(f"Marked {summary.returned} book(s) as returned")
    except Exception as e:
        logger.error(f"Renewal workflow failed: {e}")
        await log_workflow_error(books, e)
        raise

    return results, summary
