"""Datasette plugin exposing the loan-sync engine over HTTP."""

from datasette_loan_sync.plugin import (
    register_routes,
    skip_csrf,
    startup,
)

__all__ = [
    "register_routes",
    "skip_csrf",
    "startup",
]
