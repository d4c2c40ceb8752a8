#!/usr/bin/env python3
"""Apply the SQL files under sql/ to the configured Postgres database.

Usage:
    DATABASE_URL=postgresql://localhost:5432/sessionauth python scripts/migrate.py

Each file runs in its own transaction, in filename order. The schema files
use IF NOT EXISTS, so re-running is safe.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

import psycopg

ROOT = Path(__file__).resolve().parent.parent
SQL_DIR = ROOT / "sql"


def migration_files(sql_dir: Path = SQL_DIR) -> list[Path]:
    return sorted(path for path in sql_dir.glob("*.sql") if path.is_file())


def apply_migrations(dsn: str, files: list[Path]) -> int:
    applied = 0
    with psycopg.connect(dsn) as conn:
        for path in files:
            with conn.transaction():
                conn.execute(path.read_text(encoding="utf-8"))
            print(f"applied {path.name}")
            applied += 1
    return applied


def main():
    parser = argparse.ArgumentParser(description="Install the SessionAuth Postgres schema")
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="Postgres DSN (or set DATABASE_URL env var)",
    )
    args = parser.parse_args()

    if not args.database_url:
        print("Error: --database-url or DATABASE_URL environment variable required")
        sys.exit(1)

    files = migration_files()
    if not files:
        print(f"No migration files found in {SQL_DIR}")
        sys.exit(1)

    try:
        count = apply_migrations(args.database_url, files)
    except psycopg.Error as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"\n{count} migration file(s) applied.")


if __name__ == "__main__":
    main()
