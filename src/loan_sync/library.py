"""
Library circulation (Pyxis) API client for loan-sync.

Logs in once per run, then pages through current loans and loan history
and issues renewal requests. All calls go through ResilientTransport.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any

import httpx

from .errors import AuthError, LibraryApiError
from .models import Loan, LoanHistoryEntry
from .transport import DEFAULT_POLICY, ResilientTransport, RetryPolicy

logger = logging.getLogger(__name__)

LIBRARY_API_BASE = "https://lib.knue.ac.kr/pyxis-api"
CIRCULATION_METHOD_CODE = "PYXIS"


@dataclass(frozen=True)
class Session:
    """Authenticated session: access token plus session cookies."""

    access_token: str
    cookies: str


@dataclass(frozen=True)
class RenewalResponse:
    """New due date and renew count after a successful renewal."""

    charge_id: int
    due_date: str
    renew_count: int


def extract_cookies(response: httpx.Response) -> str:
    """Join the name=value part of every Set-Cookie header with '; '."""
    parts = []
    for header in response.headers.get_list("set-cookie"):
        pair = header.split(";", 1)[0].strip()
        if pair:
            parts.append(pair)
    return "; ".join(parts)


def _body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def parse_loan(data: dict[str, Any]) -> Loan:
    """Parse a charge record from the library API."""
    biblio = data.get("biblio") or {}
    branch = data.get("branch") or {}
    return Loan(
        charge_id=data["id"],
        biblio_id=biblio.get("id", 0),
        title=biblio.get("titleStatement", ""),
        isbn=biblio.get("isbn") or "",
        branch=branch.get("name"),
        charge_date=data.get("chargeDate", ""),
        due_date=data.get("dueDate", ""),
        renew_count=data.get("renewCnt") or 0,
        discharge_date=data.get("dischargeDate"),
    )


def parse_history_entry(data: dict[str, Any]) -> LoanHistoryEntry:
    """Parse a charge-history record from the library API."""
    biblio = data.get("biblio") or {}
    branch = data.get("branch") or {}
    return LoanHistoryEntry(
        charge_id=data["id"],
        biblio_id=biblio.get("id", 0),
        title=biblio.get("titleStatement", ""),
        isbn=biblio.get("isbn") or "",
        charge_date=data.get("chargeDate", ""),
        due_date=data.get("dueDate", ""),
        discharge_date=data.get("dischargeDate") or None,
        renew_count=data.get("renewCnt"),
        branch=branch.get("name"),
    )


class LibraryClient:
    """
    Client for the library's circulation API.

    Unauthenticated until login() succeeds. The session is private to this
    instance; each sync run builds its own client.
    """

    def __init__(
        self,
        base_url: str = LIBRARY_API_BASE,
        transport: ResilientTransport | None = None,
        *,
        policy: RetryPolicy = DEFAULT_POLICY,
        page_size: int = 20,
    ):
        self.base_url = base_url.rstrip("/")
        self.transport = transport or ResilientTransport()
        self._owns_transport = transport is None
        self.policy = policy
        self.page_size = page_size
        self._session: Session | None = None

    async def __aenter__(self) -> "LibraryClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_transport:
            await self.transport.aclose()

    def is_authenticated(self) -> bool:
        return self._session is not None

    def clear_session(self) -> None:
        self._session = None

    def _auth_headers(self) -> dict[str, str]:
        if self._session is None:
            raise AuthError("Not authenticated. Call login() first.", 401)
        return {
            "Cookie": self._session.cookies,
            "pyxis-auth-token": self._session.access_token,
        }

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    async def login(self, login_id: str, password: str) -> Session:
        """
        Authenticate with the library and store the session.

        Raises:
            AuthError: upstream refused the login. The status is the
                upstream's own for any non-2xx response (redirects
                included), 401 for a
                {"success": false} body.
        """
        self._session = None
        response = await self.transport.request(
            "POST",
            f"{self.base_url}/api/login",
            policy=replace(self.policy, max_retries=1),
            json={"loginId": login_id, "password": password},
        )

        if not response.is_success:
            raise AuthError(f"Login failed: HTTP {response.status_code}", response.status_code)

        data = _body(response)
        if not data.get("success"):
            raise AuthError(
                f"Login failed: {data.get('message') or 'rejected'}",
                401,
                api_code=data.get("code"),
            )

        access_token = (data.get("data") or {}).get("accessToken")
        if not access_token:
            raise AuthError("Login failed: no access token in response", 401)

        self._session = Session(access_token=access_token, cookies=extract_cookies(response))
        logger.info("Logged in to library API")
        return self._session

    # -------------------------------------------------------------------------
    # Loans
    # -------------------------------------------------------------------------

    async def get_charges(self) -> list[Loan]:
        """Fetch all current loans."""
        records = await self._fetch_all_pages("/8/api/charges")
        loans = [parse_loan(r) for r in records]
        logger.info(f"Fetched {len(loans)} current loan(s)")
        return loans

    async def get_charge_histories(self) -> list[LoanHistoryEntry]:
        """Fetch the full loan history."""
        records = await self._fetch_all_pages("/8/api/charge-histories")
        entries = [parse_history_entry(r) for r in records]
        logger.info(f"Fetched {len(entries)} loan history entries")
        return entries

    async def _fetch_all_pages(self, path: str) -> list[dict[str, Any]]:
        """Page until an empty page or the server-reported total is reached."""
        headers = self._auth_headers()
        records: list[dict[str, Any]] = []
        offset = 0

        while True:
            response = await self.transport.request(
                "GET",
                f"{self.base_url}{path}",
                policy=self.policy,
                params={"max": self.page_size, "offset": offset},
                headers=headers,
            )
            if response.is_error:
                raise LibraryApiError(
                    f"GET {path} failed: HTTP {response.status_code}", response.status_code
                )

            data = _body(response)
            if not data.get("success"):
                raise LibraryApiError(
                    f"GET {path} failed: {data.get('message') or 'rejected'}",
                    400,
                    api_code=data.get("code"),
                )

            page = (data.get("data") or {}).get("list") or []
            total = (data.get("data") or {}).get("totalCount")
            records.extend(page)
            logger.debug(f"{path}: page at offset {offset} returned {len(page)} of {total}")

            # Without a reported total only an empty page ends paging.
            if not page or (total is not None and len(records) >= total):
                return records
            offset += self.page_size

    # -------------------------------------------------------------------------
    # Renewal
    # -------------------------------------------------------------------------

    async def renew_charge(self, charge_id: int) -> RenewalResponse:
        """
        Renew a loan.

        Raises:
            LibraryApiError: renewal was rejected (e.g. the item is reserved
                by another patron); the message is the upstream's.
        """
        response = await self.transport.request(
            "POST",
            f"{self.base_url}/8/api/renew-charges/{charge_id}",
            policy=self.policy,
            json={"circulationMethodCode": CIRCULATION_METHOD_CODE},
            headers=self._auth_headers(),
        )

        data = _body(response)
        if response.is_error or not data.get("success"):
            message = data.get("message") or f"HTTP {response.status_code}"
            raise LibraryApiError(
                message,
                response.status_code if response.is_error else 400,
                api_code=data.get("code"),
            )

        renewed = data.get("data") or {}
        return RenewalResponse(
            charge_id=renewed.get("id", charge_id),
            due_date=renewed["dueDate"],
            renew_count=renewed["renewCnt"],
        )
