"""Load and validate the declarative table/column description used for migration generation."""

from __future__ import annotations

import dataclasses
import re
from pathlib import Path
from typing import Any

import yaml


class SchemaDescriptionError(ValueError):
    pass


SEMANTIC_TYPES = ("text", "numeric", "boolean", "timestamp", "json", "text_array", "numeric_array")

TYPE_ALIASES: dict[str, str] = {
    "string": "text",
    "number": "numeric",
    "date": "timestamp",
    "string[]": "text_array",
    "number[]": "numeric_array",
    "textArray": "text_array",
    "numericArray": "numeric_array",
}

ON_DELETE_ACTIONS: dict[str, str] = {
    "cascade": "CASCADE",
    "set null": "SET NULL",
    "restrict": "RESTRICT",
    "no action": "NO ACTION",
    "set default": "SET DEFAULT",
}

DEFAULT_ORDER = 999
DEFAULT_SENTINEL_TABLE = "user"

FIELD_KEYS = {"type", "required", "unique", "sortable", "bigint", "index", "field_name", "references"}
REFERENCE_KEYS = {"model", "field", "on_delete"}
TABLE_KEYS = {"model_name", "order", "disable_migrations", "fields"}
TOP_LEVEL_KEYS = {"tables", "sentinel_table", "retired_tables"}


@dataclasses.dataclass(frozen=True)
class ForeignKey:
    model: str
    field: str = "id"
    on_delete: str = "cascade"

    def __post_init__(self) -> None:
        object.__setattr__(self, "on_delete", normalize_on_delete("references.on_delete", self.on_delete))

    def on_delete_sql(self) -> str:
        return ON_DELETE_ACTIONS[self.on_delete]


@dataclasses.dataclass(frozen=True)
class FieldDefinition:
    semantic_type: str
    required: bool = True
    unique: bool = False
    sortable: bool = False
    bigint: bool = False
    indexed: bool = False
    column_name_override: str | None = None
    foreign_key: ForeignKey | None = None


@dataclasses.dataclass(frozen=True)
class TableDefinition:
    model_name: str
    fields: dict[str, FieldDefinition]
    order: int = DEFAULT_ORDER
    disable_migrations: bool = False


@dataclasses.dataclass(frozen=True)
class SchemaDescription:
    tables: dict[str, TableDefinition]
    sentinel_table: str = DEFAULT_SENTINEL_TABLE
    retired_tables: tuple[str, ...] = ()

    def active_tables(self) -> list[TableDefinition]:
        """Tables taking part in generation, ascending by ``order``; ties keep declaration order."""
        active = [t for t in self.tables.values() if not t.disable_migrations]
        return sorted(active, key=lambda t: t.order)

    def resolve_model_name(self, table_key: str) -> str | None:
        table = self.tables.get(table_key)
        return table.model_name if table else None


def camel_to_snake(key: str) -> str:
    return re.sub(r"([A-Z])", r"_\1", key).lower()


def column_name(key: str, field: FieldDefinition) -> str:
    return field.column_name_override or camel_to_snake(key)


def _check_keys(where: str, raw: dict, allowed: set[str]) -> None:
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise SchemaDescriptionError(f"{where}: unknown key(s) {unknown}")


def _flag(where: str, raw: dict, key: str, default: bool) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise SchemaDescriptionError(f"{where}.{key}: expected true/false, got {value!r}")
    return value


def normalize_on_delete(where: str, value: Any) -> str:
    if not isinstance(value, str):
        raise SchemaDescriptionError(f"{where}: on_delete must be a string, got {value!r}")
    key = value.strip().lower().replace("-", " ").replace("_", " ")
    if key not in ON_DELETE_ACTIONS:
        raise SchemaDescriptionError(
            f"{where}: unknown on_delete action {value!r} (expected one of {sorted(ON_DELETE_ACTIONS)})"
        )
    return key


def parse_foreign_key(where: str, raw: Any) -> ForeignKey:
    if not isinstance(raw, dict):
        raise SchemaDescriptionError(f"{where}: references must be a mapping")
    _check_keys(where, raw, REFERENCE_KEYS)
    model = raw.get("model")
    if not isinstance(model, str) or not model:
        raise SchemaDescriptionError(f"{where}.model: expected a table key")
    field = raw.get("field", "id")
    if not isinstance(field, str) or not field:
        raise SchemaDescriptionError(f"{where}.field: expected a column name")
    on_delete = normalize_on_delete(f"{where}.on_delete", raw.get("on_delete", "cascade"))
    return ForeignKey(model=model, field=field, on_delete=on_delete)


def parse_field(where: str, raw: Any) -> FieldDefinition:
    if isinstance(raw, str):
        raw = {"type": raw}
    if not isinstance(raw, dict):
        raise SchemaDescriptionError(f"{where}: field must be a mapping or a type name")
    _check_keys(where, raw, FIELD_KEYS)

    type_name = raw.get("type")
    if not isinstance(type_name, str):
        raise SchemaDescriptionError(f"{where}.type: missing field type")
    semantic_type = TYPE_ALIASES.get(type_name, type_name)
    if semantic_type not in SEMANTIC_TYPES:
        raise SchemaDescriptionError(f"{where}.type: unknown field type {type_name!r}")

    override = raw.get("field_name")
    if override is not None and (not isinstance(override, str) or not override):
        raise SchemaDescriptionError(f"{where}.field_name: expected a column name")

    references = raw.get("references")
    foreign_key = parse_foreign_key(f"{where}.references", references) if references is not None else None

    return FieldDefinition(
        semantic_type=semantic_type,
        required=_flag(where, raw, "required", True),
        unique=_flag(where, raw, "unique", False),
        sortable=_flag(where, raw, "sortable", False),
        bigint=_flag(where, raw, "bigint", False),
        indexed=_flag(where, raw, "index", False),
        column_name_override=override,
        foreign_key=foreign_key,
    )


def parse_table(table_key: str, raw: Any) -> TableDefinition:
    if not isinstance(raw, dict):
        raise SchemaDescriptionError(f"{table_key}: table must be a mapping")
    _check_keys(table_key, raw, TABLE_KEYS)

    model_name = raw.get("model_name", table_key)
    if not isinstance(model_name, str) or not model_name:
        raise SchemaDescriptionError(f"{table_key}.model_name: expected a table name")

    order = raw.get("order", DEFAULT_ORDER)
    if isinstance(order, bool) or not isinstance(order, int):
        raise SchemaDescriptionError(f"{table_key}.order: expected an integer, got {order!r}")

    raw_fields = raw.get("fields") or {}
    if not isinstance(raw_fields, dict):
        raise SchemaDescriptionError(f"{table_key}.fields: expected a mapping")

    fields: dict[str, FieldDefinition] = {}
    for key, field_raw in raw_fields.items():
        fields[str(key)] = parse_field(f"{table_key}.{key}", field_raw)

    seen: dict[str, str] = {}
    for key, field in fields.items():
        name = column_name(key, field)
        if name in seen:
            raise SchemaDescriptionError(
                f"{table_key}: fields {seen[name]!r} and {key!r} both map to column {name!r}"
            )
        seen[name] = key

    return TableDefinition(
        model_name=model_name,
        fields=fields,
        order=order,
        disable_migrations=_flag(table_key, raw, "disable_migrations", False),
    )


def parse_schema_description(raw: Any) -> SchemaDescription:
    if not isinstance(raw, dict):
        raise SchemaDescriptionError("schema description must be a mapping with a 'tables' key")
    _check_keys("<root>", raw, TOP_LEVEL_KEYS)

    raw_tables = raw.get("tables")
    if not isinstance(raw_tables, dict):
        raise SchemaDescriptionError("tables: expected a mapping of table key to definition")

    tables = {str(key): parse_table(str(key), table_raw) for key, table_raw in raw_tables.items()}

    sentinel = raw.get("sentinel_table", DEFAULT_SENTINEL_TABLE)
    if not isinstance(sentinel, str) or not sentinel:
        raise SchemaDescriptionError("sentinel_table: expected a table name")

    retired = raw.get("retired_tables") or []
    if not isinstance(retired, list) or not all(isinstance(name, str) for name in retired):
        raise SchemaDescriptionError("retired_tables: expected a list of table names")

    return SchemaDescription(tables=tables, sentinel_table=sentinel, retired_tables=tuple(retired))


def load_schema_description(path: Path) -> SchemaDescription:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    return parse_schema_description(raw)
