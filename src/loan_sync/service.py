"""
Wiring: build a ready-to-run sync engine from SyncConfig.

Used by both the CLI runner and the Datasette plugin.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .config import SyncConfig
from .errors import AuthError
from .library import LibraryClient
from .metadata import MetadataClient
from .models import BookDatabase, PlannedLoanStore, RenewalResult, SyncSummary
from .reconcile import Credentials, Reconciler
from .renewal import run_renewal_workflow
from .transport import RetryPolicy


def get_credentials(config: SyncConfig) -> Credentials:
    """Resolve library credentials, or raise AuthError if either is missing."""
    login_id = config.library.get_login_id()
    password = config.library.get_password()
    if not login_id or not password:
        raise AuthError("Library credentials are not configured", 401)
    return Credentials(login_id=login_id, password=password)


def retry_policy(config: SyncConfig) -> RetryPolicy:
    return RetryPolicy(
        timeout_seconds=config.library.timeout_seconds,
        max_retries=config.library.max_retries,
        backoff_base_seconds=config.library.backoff_base_seconds,
    )


@asynccontextmanager
async def open_clients(config: SyncConfig) -> AsyncIterator[tuple[LibraryClient, MetadataClient]]:
    """Open a fresh library client and metadata client for one run."""
    library = LibraryClient(
        config.library.api_base,
        policy=retry_policy(config),
        page_size=config.library.page_size,
    )
    metadata = MetadataClient(
        config.metadata.get_ttb_key() if config.metadata.enabled else None,
        base_url=config.metadata.api_base,
        cache_ttl_seconds=config.metadata.cache_ttl_seconds,
        timeout_seconds=config.metadata.timeout_seconds,
    )
    async with library, metadata:
        yield library, metadata


async def sync_books(config: SyncConfig) -> SyncSummary:
    """Run one full reconciliation with a freshly authenticated client."""
    credentials = get_credentials(config)
    async with open_clients(config) as (library, metadata):
        reconciler = Reconciler(
            library,
            metadata,
            BookDatabase(config.db_path),
            PlannedLoanStore(config.db_path),
            concurrency=config.concurrency,
            credentials=credentials,
        )
        return await reconciler.reconcile()


async def renew_books(config: SyncConfig) -> tuple[list[RenewalResult], SyncSummary]:
    """Renew eligible loans, then sync current loans with the new due dates."""
    credentials = get_credentials(config)
    async with open_clients(config) as (library, metadata):
        return await run_renewal_workflow(
            library,
            metadata,
            BookDatabase(config.db_path),
            PlannedLoanStore(config.db_path),
            credentials=credentials,
            config=config.renewal,
            concurrency=config.concurrency,
        )
