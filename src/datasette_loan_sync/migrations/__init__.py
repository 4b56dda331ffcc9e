"""
Schema migrations for the loan-sync database.

Each migration is a numbered SQL file in this directory (e.g.
0002_action_log.sql), applied once, in numeric order, and recorded in
schema_migrations.
"""

import re
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

MIGRATIONS_DIR = Path(__file__).parent
MIGRATION_NAME = re.compile(r"^(\d+)_\w+\.sql$")


def get_migration_files() -> list[tuple[int, Path]]:
    """All migration files as (version, path), lowest version first."""
    migrations = []
    for path in MIGRATIONS_DIR.glob("*.sql"):
        match = MIGRATION_NAME.match(path.name)
        if match:
            migrations.append((int(match.group(1)), path))
    return sorted(migrations)


def get_applied_versions(conn: sqlite3.Connection) -> set[int]:
    try:
        return {row[0] for row in conn.execute("SELECT version FROM schema_migrations")}
    except sqlite3.OperationalError:
        # No schema_migrations table yet
        return set()


def apply_migration(conn: sqlite3.Connection, version: int, path: Path) -> None:
    """Run one migration script and record it."""
    conn.executescript(path.read_text())
    conn.execute(
        "INSERT INTO schema_migrations (version, name, applied_ts) VALUES (?, ?, ?)",
        (version, path.name, datetime.now(UTC).isoformat()),
    )
    conn.commit()


def run_migrations(db_path: Path, verbose: bool = True) -> list[int]:
    """
    Bring the database at db_path up to the latest schema.

    Creates the file if needed. Safe to call on every startup.
    Returns the versions applied by this call.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    applied = []
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_ts TEXT NOT NULL
            )
        """)
        conn.commit()

        done = get_applied_versions(conn)
        for version, path in get_migration_files():
            if version in done:
                continue
            if verbose:
                print(f"  Applying migration {version}: {path.name}")
            apply_migration(conn, version, path)
            applied.append(version)

        if verbose and not applied:
            print("  Schema is up to date.")
    finally:
        conn.close()

    return applied


def get_current_version(db_path: Path) -> int:
    """Highest applied migration version, or 0 for a missing/empty database."""
    if not Path(db_path).exists():
        return 0

    conn = sqlite3.connect(db_path)
    try:
        return max(get_applied_versions(conn), default=0)
    finally:
        conn.close()
