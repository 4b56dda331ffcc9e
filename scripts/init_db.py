#!/usr/bin/env python3
"""Create or upgrade the loan-sync database."""

import argparse
import sqlite3
from pathlib import Path

from datasette_loan_sync.migrations import run_migrations


def init_db(db_path: Path) -> None:
    """Apply all pending migrations and print the resulting schema state."""
    print(f"Initializing database: {db_path}")
    applied = run_migrations(db_path, verbose=True)
    if applied:
        print(f"Applied {len(applied)} migration(s).")

    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.execute(
            "SELECT version, name, applied_ts FROM schema_migrations ORDER BY version"
        )
        print("\nSchema versions:")
        for row in cursor:
            print(f"  v{row[0]} ({row[1]}) applied at {row[2]}")

        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        )
        tables = [row[0] for row in cursor if not row[0].startswith("sqlite_")]
        print(f"\nTables: {', '.join(tables)}")
    finally:
        conn.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Initialize loan-sync database")
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("loan_sync.db"),
        help="Path to the SQLite database file (default: loan_sync.db)",
    )
    args = parser.parse_args()

    init_db(args.db)


if __name__ == "__main__":
    main()
