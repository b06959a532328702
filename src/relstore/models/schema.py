"""Declarative table schemas and index specifications.

A schema is an ordered mapping of column name to a column type spec string
(passed to the SQL dialect untouched) plus a list of index spec strings such
as ``"PRIMARY KEY (id)"`` or ``"UNIQUE KEY slug (slug(191))"``. Index specs
are parsed into ``IndexSpec`` values by a dedicated parser so no other code
needs to look at their text.
"""

import re
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import Field, field_validator, model_validator

from relstore.errors import SchemaParseError
from relstore.models.base import FrozenModel, column_base_type, ensure_identifier, ensure_non_empty_text
from relstore.models.enums import IndexKind

_INDEX_RE = re.compile(
    r"^"
    r"(?P<kind>PRIMARY\s+KEY|(?:UNIQUE|FULLTEXT|SPATIAL)\s+(?:KEY|INDEX)|KEY|INDEX)"
    r"\s*"
    r"(?:`?(?P<name>[\w$-]+)`?\s*)?"
    r"\((?P<columns>.+)\)"
    r"$",
    re.IGNORECASE | re.DOTALL,
)

PREFIX_LENGTH_RE = re.compile(r"\(\s*\d+\s*\)")
ORDER_RE = re.compile(r"\s+(ASC|DESC)$", re.IGNORECASE)

PRIMARY_INDEX_NAME = "PRIMARY"

DATE_TYPES = frozenset({"date", "datetime", "timestamp"})


class IndexSpec(FrozenModel):
    """Structured form of an index declaration."""

    kind: IndexKind
    name: str
    columns: tuple[str, ...] = Field(min_length=1)

    @property
    def is_primary(self) -> bool:
        return self.kind is IndexKind.PRIMARY

    @property
    def column_names(self) -> tuple[str, ...]:
        """Column names without prefix lengths or sort orders."""
        names = []
        for column in self.columns:
            name = PREFIX_LENGTH_RE.sub("", column)
            name = ORDER_RE.sub("", name)
            names.append(name.strip().strip("`"))
        return tuple(names)


def _split_columns(text: str) -> tuple[str, ...]:
    columns: list[str] = []
    depth = 0
    current = ""
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            columns.append(current)
            current = ""
            continue
        current += char
    columns.append(current)
    return tuple(column.strip().replace("`", "") for column in columns if column.strip())


def parse_index(spec: str) -> IndexSpec | None:
    """Parse an index specification string.

    Args:
        spec: Declaration such as ``"KEY author (author_id)"``.

    Returns:
        The parsed IndexSpec, or None if the text is not a valid declaration.
    """
    match = _INDEX_RE.match(spec.strip())
    if match is None:
        return None

    raw_kind = re.sub(r"\s+", " ", match.group("kind").strip()).upper()
    # INDEX is a synonym for KEY.
    kind = IndexKind(raw_kind.replace("INDEX", "KEY"))

    columns = _split_columns(match.group("columns"))
    if not columns:
        return None

    name = match.group("name")
    if kind is IndexKind.PRIMARY:
        name = PRIMARY_INDEX_NAME
    elif not name:
        name = ", ".join(columns)

    return IndexSpec(kind=kind, name=name, columns=columns)


def parse_index_strict(spec: str) -> IndexSpec:
    """Parse an index specification, raising SchemaParseError on malformed input."""
    parsed = parse_index(spec)
    if parsed is None:
        raise SchemaParseError(f"Could not parse index: {spec}", spec=spec)
    return parsed


def get_primary_column(schema: "TableSchema | Mapping[str, Any]") -> tuple[str, ...] | None:
    """Get the column list of the PRIMARY KEY index.

    Args:
        schema: A TableSchema or a raw ``{"fields": ..., "indexes": ...}`` mapping.

    Returns:
        The primary key column names, or None if no primary key is declared.

    Raises:
        SchemaParseError: If an index cannot be parsed or more than one
            primary key is declared.
    """
    indexes: Iterable[str]
    if isinstance(schema, TableSchema):
        indexes = schema.indexes
    else:
        indexes = schema.get("indexes", ())

    primary: IndexSpec | None = None
    for spec in indexes:
        parsed = parse_index_strict(spec)
        if not parsed.is_primary:
            continue
        if primary is not None:
            raise SchemaParseError("Schema declares more than one PRIMARY KEY", spec=spec)
        primary = parsed

    if primary is None:
        return None
    return primary.column_names


class TableSchema(FrozenModel):
    """Declared structure of one table."""

    fields: dict[str, str] = Field(min_length=1)
    indexes: tuple[str, ...] = ()

    @field_validator("fields")
    @classmethod
    def _validate_fields(cls, value: dict[str, str]) -> dict[str, str]:
        for name, type_spec in value.items():
            ensure_identifier(name, "column name")
            ensure_non_empty_text(type_spec, f"type of column {name!r}")
        return value

    @model_validator(mode="after")
    def _validate_primary_key(self) -> "TableSchema":
        primary = get_primary_column(self)
        if primary is None:
            raise SchemaParseError("Schema must declare exactly one PRIMARY KEY")
        for spec in self.parsed_indexes:
            missing = [name for name in spec.column_names if name not in self.fields]
            if missing:
                raise SchemaParseError(
                    f"Index {spec.name!r} references undeclared columns: {', '.join(missing)}",
                    spec=spec.name,
                )
        return self

    @property
    def parsed_indexes(self) -> tuple[IndexSpec, ...]:
        return tuple(parse_index_strict(spec) for spec in self.indexes)

    @property
    def primary_columns(self) -> tuple[str, ...]:
        primary = get_primary_column(self)
        assert primary is not None
        return primary

    def has_field(self, name: str) -> bool:
        return name in self.fields

    def base_type(self, name: str) -> str:
        return column_base_type(self.fields[name])

    def is_date_field(self, name: str) -> bool:
        return self.base_type(name) in DATE_TYPES


class TableDescription(FrozenModel):
    """Live structure of a table as reported by the database."""

    name: str
    columns: tuple[str, ...]
    indexes: tuple[str, ...]


class ReconcileResult(FrozenModel):
    """Outcome of creating or conforming one table."""

    table: str
    created: bool = False
    added_columns: tuple[str, ...] = ()
    added_indexes: tuple[str, ...] = ()
    statements: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return self.created or bool(self.added_columns) or bool(self.added_indexes)
