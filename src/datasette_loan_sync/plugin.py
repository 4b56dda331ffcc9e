"""
Datasette plugin for library loan sync.

Routes:
- POST /-/loan-sync/sync    run one reconciliation, return its summary
- POST /-/loan-sync/renew   renew loans due soon, then sync
- GET  /-/loan-sync/health  liveness check
"""

import logging
from datetime import UTC, datetime
from pathlib import Path

from datasette import Response, hookimpl
from datasette.utils.asgi import Request

from loan_sync.config import PLUGIN_NAME, SyncConfig
from loan_sync.errors import classify_error
from loan_sync.service import renew_books, sync_books

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Plugin Configuration
# -----------------------------------------------------------------------------


def get_sync_config(datasette) -> SyncConfig:
    """Get plugin configuration from datasette.yaml."""
    return SyncConfig.from_dict(datasette.plugin_config(PLUGIN_NAME) or {})


def ensure_db_exists(db_path: Path) -> None:
    """Create or upgrade the loan-sync database. Idempotent."""
    from datasette_loan_sync.migrations import run_migrations

    run_migrations(db_path, verbose=False)


def error_response(error: BaseException) -> Response:
    failure = classify_error(error)
    return Response.json(failure.to_dict(), status=failure.status_code)


def method_not_allowed() -> Response:
    return Response.json(
        {"error": "METHOD_NOT_ALLOWED", "message": "Use POST"},
        status=405,
    )


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


async def loan_sync_trigger(request: Request, datasette) -> Response:
    """Run one sync and return the summary."""
    if request.method != "POST":
        return method_not_allowed()

    config = get_sync_config(datasette)
    try:
        summary = await sync_books(config)
    except Exception as e:
        logger.exception("Sync failed")
        return error_response(e)

    message = (
        "Sync completed - no books to sync"
        if summary.total_charges == 0
        else "Sync completed successfully"
    )
    logger.info(f"Sync completed with summary: {summary.to_dict()}")
    return Response.json({"message": message, "summary": summary.to_dict()})


async def loan_sync_renew(request: Request, datasette) -> Response:
    """Renew eligible loans, sync, and return both outcomes."""
    if request.method != "POST":
        return method_not_allowed()

    config = get_sync_config(datasette)
    try:
        results, summary = await renew_books(config)
    except Exception as e:
        logger.exception("Renewal failed")
        return error_response(e)

    renewed = sum(1 for r in results if r.success)
    return Response.json(
        {
            "message": f"Renewed {renewed} of {len(results)} eligible loan(s)",
            "renewals": [
                {
                    "charge_id": r.charge_id,
                    "title": r.title,
                    "success": r.success,
                    "new_due_date": r.new_due_date,
                    "error_message": r.error_message,
                }
                for r in results
            ],
            "summary": summary.to_dict(),
        }
    )


async def loan_sync_health(request: Request, datasette) -> Response:
    return Response.json({"status": "ok", "timestamp": datetime.now(UTC).isoformat()})


# -----------------------------------------------------------------------------
# Hooks
# -----------------------------------------------------------------------------


@hookimpl
def register_routes():
    """Register plugin routes with Datasette."""
    return [
        (r"^/-/loan-sync/sync$", loan_sync_trigger),
        (r"^/-/loan-sync/renew$", loan_sync_renew),
        (r"^/-/loan-sync/health$", loan_sync_health),
    ]


@hookimpl
def skip_csrf(datasette, scope):
    """API-style JSON routes are called by schedulers and scripts, not forms."""
    if scope.get("path", "").startswith("/-/loan-sync/"):
        return True
    return None


@hookimpl
def startup(datasette):
    """Make sure the database schema is current."""
    ensure_db_exists(get_sync_config(datasette).db_path)
