#!/usr/bin/env python3
"""
Fake library (Pyxis) and Aladin API server for local development.

Implements just enough of both upstreams to run a full sync:
- Login (loginId + password, session cookie + access token)
- Current loans and loan history, paginated with max/offset
- Loan renewal
- Aladin ItemLookUp by ISBN

Run with: python scripts/fake_library.py --port 9010
Then configure:
    library.api_base:  http://127.0.0.1:9010/pyxis-api
    metadata.api_base: http://127.0.0.1:9010/ttb/api
"""

import argparse
import json
import secrets
from datetime import date, timedelta
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

PYXIS_PREFIX = "/pyxis-api"

FAKE_USERS = {
    # loginId: password
    "20240001": "secret",
}

# Active sessions: access token -> session cookie value
SESSIONS: dict[str, str] = {}


def _days_from_today(days: int) -> str:
    return (date.today() + timedelta(days=days)).isoformat()


FAKE_CHARGES = [
    {
        "id": 5001,
        "biblio": {"id": 99, "titleStatement": "Project Hail Mary", "isbn": "9780593135204"},
        "branch": {"id": 1, "name": "Main Library"},
        "chargeDate": _days_from_today(-12),
        "dueDate": _days_from_today(1),
        "renewCnt": 0,
    },
    {
        "id": 5002,
        "biblio": {"id": 100, "titleStatement": "The Midnight Library", "isbn": "978-0525559474"},
        "branch": {"id": 1, "name": "Main Library"},
        "chargeDate": _days_from_today(-3),
        "dueDate": _days_from_today(11),
        "renewCnt": 1,
    },
    {
        "id": 5003,
        "biblio": {"id": 101, "titleStatement": "Untitled Thesis", "isbn": ""},
        "branch": {"id": 2, "name": "Science Library"},
        "chargeDate": _days_from_today(-1),
        "dueDate": _days_from_today(13),
        "renewCnt": 0,
    },
]

FAKE_HISTORY = [
    {
        "id": 4001,
        "biblio": {"id": 98, "titleStatement": "Handbook of Mathematical Functions", "isbn": "0306406152"},
        "chargeDate": _days_from_today(-40),
        "dueDate": _days_from_today(-26),
        "dischargeDate": _days_from_today(-27),
        "renewCnt": 0,
    },
]

FAKE_ALADIN = {
    "9780593135204": {
        "isbn": "0593135202",
        "isbn13": "9780593135204",
        "title": "Project Hail Mary",
        "author": "Andy Weir",
        "publisher": "Ballantine Books",
        "pubDate": "2021-05-04",
        "description": "A lone astronaut must save the earth from disaster.",
        "cover": "https://image.aladin.co.kr/product/fake/9780593135204.jpg",
    },
    "9780525559474": {
        "isbn": "0525559477",
        "isbn13": "9780525559474",
        "title": "The Midnight Library",
        "author": "Matt Haig",
        "publisher": "Viking",
        "pubDate": "2020-09-29",
        "description": "Between life and death there is a library.",
        "cover": "https://image.aladin.co.kr/product/fake/9780525559474.jpg",
    },
}


class FakeLibraryHandler(BaseHTTPRequestHandler):
    """HTTP handler implementing fake Pyxis and Aladin endpoints."""

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        print(f"[FakeLibrary] {args[0]}")

    def send_json(self, data: dict, status: int = 200, cookie: str | None = None) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        if cookie:
            self.send_header("Set-Cookie", f"{cookie}; Path=/; HttpOnly")
        self.end_headers()
        self.wfile.write(json.dumps(data).encode())

    def send_envelope(self, data, success: bool = True, message: str = "", status: int = 200) -> None:
        """Send a Pyxis-style {success, code, message, data} response."""
        self.send_json(
            {
                "success": success,
                "code": "success.retrieved" if success else "error.failed",
                "message": message,
                "data": data,
            },
            status=status,
        )

    def do_POST(self) -> None:
        path = urlparse(self.path).path
        content_length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(content_length).decode() if content_length > 0 else ""

        if path == f"{PYXIS_PREFIX}/api/login":
            self.handle_login(body)
        elif path.startswith(f"{PYXIS_PREFIX}/8/api/renew-charges/"):
            if not self.verify_session():
                return
            try:
                self.handle_renew(int(path.rsplit("/", 1)[-1]))
            except ValueError:
                self.send_envelope(None, success=False, message="Invalid charge id", status=400)
        else:
            self.send_json({"message": f"Unknown endpoint: {path}"}, status=404)

    def do_GET(self) -> None:
        parsed = urlparse(self.path)
        params = parse_qs(parsed.query)

        if parsed.path == f"{PYXIS_PREFIX}/8/api/charges":
            if self.verify_session():
                self.handle_page(FAKE_CHARGES, params)
        elif parsed.path == f"{PYXIS_PREFIX}/8/api/charge-histories":
            if self.verify_session():
                self.handle_page(FAKE_HISTORY, params)
        elif parsed.path == "/ttb/api/ItemLookUp.aspx":
            self.handle_item_lookup(params)
        else:
            self.send_json({"message": f"Unknown endpoint: {parsed.path}"}, status=404)

    def handle_login(self, body: str) -> None:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            self.send_envelope(None, success=False, message="Malformed body", status=400)
            return

        login_id = data.get("loginId", "")
        if FAKE_USERS.get(login_id) != data.get("password"):
            self.send_envelope(None, success=False, message="Invalid login id or password")
            return

        token = secrets.token_hex(16)
        session_id = secrets.token_hex(8)
        SESSIONS[token] = session_id
        self.send_json(
            {
                "success": True,
                "code": "success.loggedIn",
                "message": "",
                "data": {"accessToken": token, "id": login_id, "name": "Test Patron"},
            },
            cookie=f"JSESSIONID={session_id}",
        )

    def verify_session(self) -> bool:
        token = self.headers.get("pyxis-auth-token", "")
        cookie = self.headers.get("Cookie", "")
        session_id = SESSIONS.get(token)
        if session_id is None or f"JSESSIONID={session_id}" not in cookie:
            self.send_json({"message": "Unauthorized"}, status=401)
            return False
        return True

    def handle_page(self, records: list[dict], params: dict) -> None:
        size = int(params.get("max", ["20"])[0])
        offset = int(params.get("offset", ["0"])[0])
        self.send_envelope({"list": records[offset : offset + size], "totalCount": len(records)})

    def handle_renew(self, charge_id: int) -> None:
        charge = next((c for c in FAKE_CHARGES if c["id"] == charge_id), None)
        if charge is None:
            self.send_envelope(None, success=False, message="Charge not found", status=404)
            return
        if charge["renewCnt"] >= 1:
            self.send_envelope(None, success=False, message="Renewal limit reached")
            return

        charge["renewCnt"] += 1
        charge["dueDate"] = (date.fromisoformat(charge["dueDate"]) + timedelta(days=14)).isoformat()
        self.send_envelope(
            {"id": charge_id, "renewCnt": charge["renewCnt"], "dueDate": charge["dueDate"]}
        )

    def handle_item_lookup(self, params: dict) -> None:
        if not params.get("ttbkey", [""])[0]:
            self.send_json({"errorCode": 100, "errorMessage": "Missing ttbkey"})
            return

        isbn = params.get("ItemId", [""])[0].replace("-", "")
        item = FAKE_ALADIN.get(isbn)
        self.send_json({"version": "20131101", "item": [item] if item else []})


def main() -> None:
    parser = argparse.ArgumentParser(description="Run fake library and Aladin API server")
    parser.add_argument(
        "--port",
        type=int,
        default=9010,
        help="Port to listen on (default: 9010)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    args = parser.parse_args()

    server = HTTPServer((args.host, args.port), FakeLibraryHandler)
    print(f"Fake library API running at http://{args.host}:{args.port}{PYXIS_PREFIX}")
    print(f"Fake Aladin API running at http://{args.host}:{args.port}/ttb/api")
    print("Test users:")
    for login_id, password in FAKE_USERS.items():
        print(f"  loginId: {login_id}, password: {password}")
    print()

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down...")
        server.shutdown()


if __name__ == "__main__":
    main()
