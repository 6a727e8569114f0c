#!/usr/bin/env python3
"""Read existing table and column names from a PostgreSQL information_schema.

Every function takes an explicit DB-API connection. Nothing here writes to the
database; driver errors are left to propagate to the caller unchanged.

Usage:
    python read_catalog.py [--dsn DSN] [--db-schema public]
"""

from __future__ import annotations

import argparse
import dataclasses
import os
import sys
from typing import Any, Iterable

import psycopg2

# Catalog failures are the driver's own errors, re-exported under the name callers look for.
CatalogUnavailable = psycopg2.Error

DEFAULT_DB_SCHEMA = "public"


@dataclasses.dataclass(frozen=True)
class CatalogSnapshot:
    existing_tables: frozenset[str]
    existing_columns: dict[str, frozenset[str]]

    def has_table(self, name: str) -> bool:
        return name in self.existing_tables

    def columns_of(self, name: str) -> frozenset[str]:
        return self.existing_columns.get(name, frozenset())


def query_rows(conn: Any, sql: str, params: tuple = ()) -> list[tuple]:
    with conn.cursor() as cur:
        cur.execute(sql, params)
        return list(cur.fetchall())


def list_tables(conn: Any, schema: str = DEFAULT_DB_SCHEMA) -> set[str]:
    sql = (
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = %s "
        "AND table_type = 'BASE TABLE'"
    )
    return {str(row[0]) for row in query_rows(conn, sql, (schema,)) if row[0]}


def list_columns(conn: Any, table_names: Iterable[str], schema: str = DEFAULT_DB_SCHEMA) -> dict[str, set[str]]:
    names = sorted(set(table_names))
    if not names:
        return {}
    sql = (
        "SELECT table_name, column_name FROM information_schema.columns "
        "WHERE table_schema = %s "
        "AND table_name = ANY(%s) "
        "ORDER BY table_name, ordinal_position"
    )
    columns: dict[str, set[str]] = {}
    for table_name, column_name in query_rows(conn, sql, (schema, names)):
        columns.setdefault(str(table_name), set()).add(str(column_name))
    return columns


def read_snapshot(conn: Any, desired_tables: Iterable[str], schema: str = DEFAULT_DB_SCHEMA) -> CatalogSnapshot:
    """Capture tables, then columns of the desired tables that already exist.

    At most two queries are issued. Callers running concurrent schema changes
    between this read and applying the generated migration race with it.
    """
    tables = list_tables(conn, schema)
    wanted = [name for name in desired_tables if name in tables]
    columns = list_columns(conn, wanted, schema)
    return CatalogSnapshot(
        existing_tables=frozenset(tables),
        existing_columns={name: frozenset(cols) for name, cols in columns.items()},
    )


def connect(dsn: str) -> Any:
    conn = psycopg2.connect(dsn)
    conn.set_session(readonly=True, autocommit=True)
    return conn


def main() -> int:
    parser = argparse.ArgumentParser(description="List tables and columns from information_schema")
    parser.add_argument("--dsn", default=os.environ.get("DATABASE_URL", ""), help="libpq connection string (default: $DATABASE_URL)")
    parser.add_argument("--db-schema", default=DEFAULT_DB_SCHEMA, help="Database schema to inspect (default: public)")
    args = parser.parse_args()

    if not args.dsn:
        print("No connection string: pass --dsn or set DATABASE_URL", file=sys.stderr)
        return 1

    try:
        conn = connect(args.dsn)
    except CatalogUnavailable as e:
        print(f"Error connecting to PostgreSQL: {e}", file=sys.stderr)
        return 1

    try:
        tables = sorted(list_tables(conn, args.db_schema))
        columns = list_columns(conn, tables, args.db_schema)
    finally:
        conn.close()

    if not tables:
        print(f"  {args.db_schema}: no tables found")
        return 0

    for i, table in enumerate(tables, 1):
        cols = ", ".join(sorted(columns.get(table, set())))
        print(f"  {args.db_schema}: [{i}/{len(tables)}] {table}: {cols}")

    print(f"\nTotal: {len(tables)} tables in {args.db_schema}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
