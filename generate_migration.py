#!/usr/bin/env python3
"""Generate a reversible SQL migration from a declarative schema description and the live catalog."""

from __future__ import annotations

import argparse
import dataclasses
import datetime as dt
import os
import sys
from pathlib import Path
from typing import Any, Union

from read_catalog import DEFAULT_DB_SCHEMA, CatalogSnapshot, CatalogUnavailable, connect, read_snapshot
from schema_description import (
    FieldDefinition,
    SchemaDescription,
    SchemaDescriptionError,
    TableDefinition,
    column_name,
    load_schema_description,
)

PRIMARY_KEY_FIELD = "id"
MIGRATIONS_DIR = Path("db/migrations")
MIGRATION_SUFFIX = "_auth_schema.sql"

MODE_FRESH = "fresh"
MODE_PROVISIONED = "provisioned"

NOOP_CODE = "-- Schema is already in sync with the database. No changes needed.\n"
MANUAL_ROLLBACK = "-- No automatic rollback for incremental changes; run manually if needed."

STORAGE_TYPES: dict[str, str] = {
    "string": "varchar(255)",
    "text": "text",
    "integer": "integer",
    "bigint": "bigint",
    "boolean": "boolean",
    "timestamp": "timestamp with time zone",
    "jsonb": "jsonb",
}


# ---------- column definitions ----------


@dataclasses.dataclass(frozen=True)
class ColumnReference:
    table: str
    column: str
    on_delete: str
    resolved: bool = True


@dataclasses.dataclass(frozen=True)
class ColumnSpec:
    name: str
    storage_type: str
    primary_key: bool = False
    nullable: bool = False
    unique: bool = False
    indexed: bool = False
    references: ColumnReference | None = None

    @property
    def sql_type(self) -> str:
        return STORAGE_TYPES[self.storage_type]


def storage_type(field: FieldDefinition) -> str:
    if field.semantic_type == "text":
        return "string" if field.sortable else "text"
    if field.semantic_type == "numeric":
        return "bigint" if field.bigint else "integer"
    if field.semantic_type == "boolean":
        return "boolean"
    if field.semantic_type == "timestamp":
        return "timestamp"
    if field.semantic_type == "json":
        return "jsonb"
    # text_array / numeric_array are stored serialized
    return "text"


def map_field(key: str, field: FieldDefinition, description: SchemaDescription) -> ColumnSpec:
    references = None
    if field.foreign_key:
        fk = field.foreign_key
        target = description.resolve_model_name(fk.model)
        references = ColumnReference(
            table=target or fk.model,
            column=fk.field,
            on_delete=fk.on_delete_sql(),
            resolved=target is not None,
        )

    return ColumnSpec(
        name=column_name(key, field),
        storage_type=storage_type(field),
        primary_key=key == PRIMARY_KEY_FIELD,
        nullable=field.required is False,
        unique=field.unique,
        # The foreign key constraint stands in for a separate index.
        indexed=field.indexed and references is None,
        references=references,
    )


def ordered_fields(table: TableDefinition) -> list[tuple[str, FieldDefinition]]:
    """``id`` first, then the remaining fields in declaration order."""
    out: list[tuple[str, FieldDefinition]] = []
    if PRIMARY_KEY_FIELD in table.fields:
        out.append((PRIMARY_KEY_FIELD, table.fields[PRIMARY_KEY_FIELD]))
    out.extend((k, f) for k, f in table.fields.items() if k != PRIMARY_KEY_FIELD)
    return out


def build_table(table: TableDefinition, description: SchemaDescription) -> CreateTable:
    columns = [map_field(key, field, description) for key, field in ordered_fields(table)]
    return CreateTable(table=table.model_name, columns=columns)


# ---------- statements ----------


@dataclasses.dataclass(frozen=True)
class CreateTable:
    table: str
    columns: list[ColumnSpec]


@dataclasses.dataclass(frozen=True)
class AddColumns:
    table: str
    columns: list[ColumnSpec]


@dataclasses.dataclass(frozen=True)
class DropTable:
    table: str


@dataclasses.dataclass(frozen=True)
class DropColumns:
    table: str
    columns: list[str]


@dataclasses.dataclass(frozen=True)
class ColumnWarning:
    table: str
    column: str


@dataclasses.dataclass(frozen=True)
class TableWarning:
    table: str


Statement = Union[CreateTable, AddColumns, DropTable, DropColumns]
SchemaWarning = Union[ColumnWarning, TableWarning]


@dataclasses.dataclass(frozen=True)
class UnresolvedReference:
    table: str
    column: str
    target: str


@dataclasses.dataclass
class MigrationPlan:
    mode: str
    up: list[Statement] = dataclasses.field(default_factory=list)
    down: list[Statement] = dataclasses.field(default_factory=list)
    warnings: list[SchemaWarning] = dataclasses.field(default_factory=list)
    unresolved: list[UnresolvedReference] = dataclasses.field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.up and not self.warnings


@dataclasses.dataclass(frozen=True)
class MigrationArtifact:
    code: str
    path: str
    # Generated migrations never replace an existing file.
    overwrite: bool = dataclasses.field(default=False, init=False)


# ---------- diff engine ----------


def classify(description: SchemaDescription, snapshot: CatalogSnapshot) -> str:
    return MODE_PROVISIONED if snapshot.has_table(description.sentinel_table) else MODE_FRESH


def sentinel_is_active(description: SchemaDescription) -> bool:
    return any(t.model_name == description.sentinel_table for t in description.active_tables())


def collect_unresolved(statements: list[Statement]) -> list[UnresolvedReference]:
    out: list[UnresolvedReference] = []
    for stmt in statements:
        if not isinstance(stmt, (CreateTable, AddColumns)):
            continue
        for col in stmt.columns:
            if col.references and not col.references.resolved:
                out.append(UnresolvedReference(table=stmt.table, column=col.name, target=col.references.table))
    return out


def plan_fresh(description: SchemaDescription, plan: MigrationPlan) -> None:
    active = description.active_tables()
    plan.up.extend(build_table(t, description) for t in active)
    plan.down.extend(DropTable(table=t.model_name) for t in reversed(active))


def plan_provisioned(description: SchemaDescription, snapshot: CatalogSnapshot, plan: MigrationPlan) -> None:
    active = description.active_tables()

    for table in active:
        name = table.model_name
        if not snapshot.has_table(name):
            plan.up.append(build_table(table, description))
            # New tables are dropped first on rollback.
            plan.down.insert(0, DropTable(table=name))
            continue

        current = snapshot.columns_of(name)
        missing = [
            map_field(key, field, description)
            for key, field in table.fields.items()
            if key != PRIMARY_KEY_FIELD and column_name(key, field) not in current
        ]
        if missing:
            plan.up.append(AddColumns(table=name, columns=missing))
            plan.down.append(DropColumns(table=name, columns=[c.name for c in missing]))

        desired = {column_name(key, field) for key, field in table.fields.items()}
        for existing in sorted(current):
            if existing == PRIMARY_KEY_FIELD:
                continue
            if existing not in desired:
                plan.warnings.append(ColumnWarning(table=name, column=existing))

    desired_tables = {t.model_name for t in active}
    disabled_tables = {t.model_name for t in description.tables.values() if t.disable_migrations}
    retired = set(description.retired_tables) - disabled_tables
    for existing in sorted(snapshot.existing_tables):
        if existing not in desired_tables and existing in retired:
            plan.warnings.append(TableWarning(table=existing))


def plan_migration(description: SchemaDescription, snapshot: CatalogSnapshot) -> MigrationPlan:
    plan = MigrationPlan(mode=classify(description, snapshot))
    if plan.mode == MODE_FRESH:
        plan_fresh(description, plan)
    else:
        plan_provisioned(description, snapshot, plan)
    plan.unresolved = collect_unresolved(plan.up)
    return plan


# ---------- rendering ----------


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def index_name(table: str, column: str) -> str:
    return f"{table}_{column}_index"


def render_column(col: ColumnSpec) -> str:
    parts = [quote_ident(col.name), col.sql_type]
    if col.primary_key:
        parts.append("PRIMARY KEY")
    parts.append("NULL" if col.nullable else "NOT NULL")
    if col.unique:
        parts.append("UNIQUE")
    if col.references:
        ref = col.references
        parts.append(f"REFERENCES {quote_ident(ref.table)} ({quote_ident(ref.column)}) ON DELETE {ref.on_delete}")
    return " ".join(parts)


def render_indexes(table: str, columns: list[ColumnSpec]) -> list[str]:
    return [
        f"CREATE INDEX IF NOT EXISTS {quote_ident(index_name(table, c.name))} "
        f"ON {quote_ident(table)} ({quote_ident(c.name)});"
        for c in columns
        if c.indexed
    ]


def render_create_table(stmt: CreateTable) -> str:
    lines: list[str] = [f"CREATE TABLE {quote_ident(stmt.table)} ("]
    for idx, col in enumerate(stmt.columns):
        trailing = "," if idx < len(stmt.columns) - 1 else ""
        lines.append(f"    {render_column(col)}{trailing}")
    lines.append(");")
    lines.extend(render_indexes(stmt.table, stmt.columns))
    return "\n".join(lines)


def render_add_columns(stmt: AddColumns) -> str:
    lines: list[str] = [f"ALTER TABLE {quote_ident(stmt.table)}"]
    for idx, col in enumerate(stmt.columns):
        trailing = "," if idx < len(stmt.columns) - 1 else ";"
        lines.append(f"    ADD COLUMN {render_column(col)}{trailing}")
    lines.extend(render_indexes(stmt.table, stmt.columns))
    return "\n".join(lines)


def render_drop_columns(stmt: DropColumns) -> str:
    lines: list[str] = [f"ALTER TABLE {quote_ident(stmt.table)}"]
    for idx, name in enumerate(stmt.columns):
        trailing = "," if idx < len(stmt.columns) - 1 else ";"
        lines.append(f"    DROP COLUMN {quote_ident(name)}{trailing}")
    return "\n".join(lines)


def render_statement(stmt: Statement) -> str:
    if isinstance(stmt, CreateTable):
        return render_create_table(stmt)
    if isinstance(stmt, AddColumns):
        return render_add_columns(stmt)
    if isinstance(stmt, DropColumns):
        return render_drop_columns(stmt)
    if isinstance(stmt, DropTable):
        return f"DROP TABLE IF EXISTS {quote_ident(stmt.table)};"
    raise TypeError(f"Unsupported statement: {stmt!r}")


def comment_safe(name: str) -> str:
    """Escape catalog text so it cannot end the comment line it is written into."""
    return name.encode("unicode_escape").decode("ascii")


def render_warning(warning: SchemaWarning) -> str:
    if isinstance(warning, ColumnWarning):
        return (
            f"-- WARNING: column '{comment_safe(warning.table)}.{comment_safe(warning.column)}' exists in the database "
            "but is no longer in the schema description.\n"
            "-- Remove it manually if desired."
        )
    return (
        f"-- WARNING: table '{comment_safe(warning.table)}' exists in the database "
        "but is no longer in the schema description.\n"
        "-- Remove it manually if desired."
    )


def wrap(up_body: str, down_body: str) -> str:
    return "\n".join(
        [
            "-- migrate:up",
            up_body,
            "",
            "-- migrate:down",
            down_body,
            "",
        ]
    )


def render_migration(plan: MigrationPlan) -> str:
    if plan.is_empty():
        return NOOP_CODE

    blocks = [render_statement(stmt) for stmt in plan.up]
    blocks.extend(render_warning(w) for w in plan.warnings)
    up_body = "\n\n".join(blocks)

    if plan.down:
        down_body = "\n\n".join(render_statement(stmt) for stmt in plan.down)
    else:
        down_body = MANUAL_ROLLBACK

    return wrap(up_body, down_body)


# ---------- entry points ----------


def default_migration_path(now: dt.datetime | None = None) -> str:
    now = now or dt.datetime.now()
    return str(MIGRATIONS_DIR / f"{now:%Y%m%d%H%M%S}{MIGRATION_SUFFIX}")


def generate_outputs(
    conn: Any,
    description: SchemaDescription,
    path: str | None = None,
    schema: str = DEFAULT_DB_SCHEMA,
    now: dt.datetime | None = None,
) -> tuple[MigrationArtifact, MigrationPlan]:
    desired = [t.model_name for t in description.active_tables()]
    snapshot = read_snapshot(conn, desired, schema)
    plan = plan_migration(description, snapshot)
    artifact = MigrationArtifact(code=render_migration(plan), path=path or default_migration_path(now))
    return artifact, plan


def generate_migration(
    conn: Any,
    description: SchemaDescription,
    path: str | None = None,
    schema: str = DEFAULT_DB_SCHEMA,
    now: dt.datetime | None = None,
) -> MigrationArtifact:
    artifact, _ = generate_outputs(conn, description, path, schema, now)
    return artifact


def write_new_text(path: Path, content: str) -> None:
    """Create ``path`` with ``content``; raises FileExistsError if it is already there."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "x", encoding="utf-8") as f:
        f.write(content)


def report_plan(plan: MigrationPlan, description: SchemaDescription) -> None:
    print(f"[generate] mode: {plan.mode}", file=sys.stderr)
    if not sentinel_is_active(description):
        print(
            f"[generate] warning: sentinel table '{description.sentinel_table}' is not an active table; "
            "fresh/provisioned classification may be wrong",
            file=sys.stderr,
        )
    for ref in plan.unresolved:
        print(
            f"[generate] warning: {ref.table}.{ref.column} references unknown table key "
            f"'{ref.target}'; using it as the table name",
            file=sys.stderr,
        )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a SQL migration from a schema description + live database")
    parser.add_argument("--schema", default="auth_schema.yaml", help="Declarative YAML schema description")
    parser.add_argument("--dsn", default=os.environ.get("DATABASE_URL", ""), help="libpq connection string (default: $DATABASE_URL)")
    parser.add_argument("--db-schema", default=DEFAULT_DB_SCHEMA, help="Database schema to inspect (default: public)")
    parser.add_argument("--out", default=None, help="Output migration file (default: db/migrations/<timestamp>_auth_schema.sql)")
    parser.add_argument("--stdout", action="store_true", help="Print the migration instead of writing it")
    parser.add_argument("--check", action="store_true", help="Exit non-zero when the database is out of sync, without writing")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        description = load_schema_description(Path(args.schema))
    except (OSError, SchemaDescriptionError) as e:
        print(f"Invalid schema description {args.schema}: {e}", file=sys.stderr)
        return 2

    if not args.dsn:
        print("No connection string: pass --dsn or set DATABASE_URL", file=sys.stderr)
        return 2

    try:
        conn = connect(args.dsn)
        try:
            artifact, plan = generate_outputs(conn, description, args.out, args.db_schema)
        finally:
            conn.close()
    except CatalogUnavailable as e:
        print(f"Error reading catalog: {e}", file=sys.stderr)
        return 1

    report_plan(plan, description)

    if args.check:
        if plan.is_empty():
            return 0
        print(f"[check] database is out of sync with {args.schema}", file=sys.stderr)
        print(artifact.code, file=sys.stderr)
        return 1

    if args.stdout:
        print(artifact.code, end="")
        return 0

    out_path = Path(artifact.path)
    try:
        write_new_text(out_path, artifact.code)
    except FileExistsError:
        print(f"Refusing to overwrite existing file: {out_path}", file=sys.stderr)
        return 1
    print(f"Generated {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
