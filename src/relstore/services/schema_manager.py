"""Schema manager: creates tables and additively conforms them to a declared schema.

Migration policy is additive only. Missing columns and indexes are added;
existing structure is never dropped, altered or reordered.
"""

import structlog
from sqlalchemy.exc import SQLAlchemyError

from relstore.errors import SchemaError
from relstore.models.base import quote_identifier
from relstore.models.enums import IndexKind
from relstore.models.schema import (
    ORDER_RE,
    PREFIX_LENGTH_RE,
    PRIMARY_INDEX_NAME,
    IndexSpec,
    ReconcileResult,
    TableDescription,
    TableSchema,
    get_primary_column,
    parse_index,
    parse_index_strict,
)
from relstore.services.database import Database

__all__ = [
    "SchemaManager",
    "get_primary_column",
    "parse_index",
    "parse_index_strict",
]

# SQLite keeps index names in one namespace per database, so secondary
# indexes are stored as "<table>__<name>".
_SQLITE_INDEX_SEPARATOR = "__"


class SchemaManager:
    """Reconciles live tables with declared TableSchemas."""

    def __init__(
        self,
        database: Database,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._database = database
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def _inline_keys(self) -> bool:
        """Whether the dialect declares secondary keys inside CREATE/ALTER TABLE."""
        return self._database.dialect_name in ("mysql", "mariadb")

    def table_exists(self, name: str) -> bool:
        try:
            with self._database.inspector() as inspector:
                return inspector.has_table(name)
        except SQLAlchemyError as exc:
            raise SchemaError(f"Could not check for table {name}: {exc}", table=name) from exc

    def describe_table(self, name: str) -> TableDescription:
        """Read the live column names and logical index names of a table."""
        try:
            with self._database.inspector() as inspector:
                columns = tuple(column["name"] for column in inspector.get_columns(name))
                primary = inspector.get_pk_constraint(name)
                indexes = [PRIMARY_INDEX_NAME] if primary and primary.get("constrained_columns") else []
                for index in inspector.get_indexes(name):
                    if index["name"]:
                        indexes.append(self._logical_index_name(name, index["name"]))
        except SQLAlchemyError as exc:
            raise SchemaError(f"Could not describe table {name}: {exc}", table=name) from exc
        return TableDescription(name=name, columns=columns, indexes=tuple(indexes))

    def ensure_table(self, name: str, schema: TableSchema) -> ReconcileResult:
        """Create the table if it does not exist, otherwise conform it.

        Args:
            name: Table name.
            schema: Declared schema.

        Returns:
            ReconcileResult describing what was created or added.

        Raises:
            SchemaError: If a CREATE or ALTER statement fails.
            SchemaParseError: If an index specification cannot be parsed.
        """
        if not self.table_exists(name):
            return self.create_table(name, schema)
        return self.conform_table(name, schema)

    def create_table(self, name: str, schema: TableSchema) -> ReconcileResult:
        table = quote_identifier(name)
        definitions = [f"{quote_identifier(column)} {spec}" for column, spec in schema.fields.items()]
        trailing: list[str] = []

        for index in schema.parsed_indexes:
            if index.is_primary:
                definitions.append(f"PRIMARY KEY ({self._render_columns(index)})")
            elif self._inline_keys:
                definitions.append(self._render_inline_key(index))
            else:
                trailing.append(self._render_create_index(name, index))

        statements = [f"CREATE TABLE {table} (\n\t" + ",\n\t".join(definitions) + "\n)", *trailing]
        self._run(name, statements)

        self._logger.info("table_created", table=name, columns=len(schema.fields), indexes=len(schema.indexes))
        return ReconcileResult(
            table=name,
            created=True,
            added_columns=tuple(schema.fields),
            added_indexes=tuple(index.name for index in schema.parsed_indexes),
            statements=tuple(statements),
        )

    def conform_table(self, name: str, schema: TableSchema) -> ReconcileResult:
        """Add declared columns and indexes that the live table lacks.

        Does not guarantee column or index order. Does not remove existing
        columns or indexes.

        Returns:
            ReconcileResult whose ``changed`` is False when the table already
            matched the declaration.
        """
        declared_indexes = [parse_index_strict(spec) for spec in schema.indexes]
        live = self.describe_table(name)

        missing_fields = {column: spec for column, spec in schema.fields.items() if column not in live.columns}
        missing_indexes = [index for index in declared_indexes if index.name not in live.indexes]

        if not missing_fields and not missing_indexes:
            self._logger.debug("table_up_to_date", table=name)
            return ReconcileResult(table=name)

        statements = self._alter_statements(name, missing_fields, missing_indexes)
        self._run(name, statements)

        self._logger.info(
            "table_conformed",
            table=name,
            added_columns=list(missing_fields),
            added_indexes=[index.name for index in missing_indexes],
        )
        return ReconcileResult(
            table=name,
            added_columns=tuple(missing_fields),
            added_indexes=tuple(index.name for index in missing_indexes),
            statements=tuple(statements),
        )

    def _alter_statements(
        self,
        name: str,
        missing_fields: dict[str, str],
        missing_indexes: list[IndexSpec],
    ) -> list[str]:
        table = quote_identifier(name)
        if self._inline_keys:
            clauses = [f"ADD COLUMN {quote_identifier(column)} {spec}" for column, spec in missing_fields.items()]
            for index in missing_indexes:
                if index.is_primary:
                    clauses.append(f"ADD PRIMARY KEY ({self._render_columns(index)})")
                else:
                    clauses.append(f"ADD {self._render_inline_key(index)}")
            return [f"ALTER TABLE {table}\n\t" + ",\n\t".join(clauses)]

        statements = [
            f"ALTER TABLE {table} ADD COLUMN {quote_identifier(column)} {spec}"
            for column, spec in missing_fields.items()
        ]
        for index in missing_indexes:
            if index.is_primary:
                # Rejected by SQLite; surfaces as a SchemaError.
                statements.append(f"ALTER TABLE {table} ADD PRIMARY KEY ({self._render_columns(index)})")
            else:
                statements.append(self._render_create_index(name, index))
        return statements

    def _run(self, name: str, statements: list[str]) -> None:
        with self._database.snapshot():
            for statement in statements:
                try:
                    self._database.execute(statement)
                except SQLAlchemyError as exc:
                    self._logger.error("schema_statement_failed", table=name, statement=statement, error=str(exc))
                    raise SchemaError(
                        f"Could not update table {name}: {exc}",
                        table=name,
                        statement=statement,
                    ) from exc

    def _render_columns(self, index: IndexSpec) -> str:
        rendered = []
        for raw, column in zip(index.columns, index.column_names):
            text = quote_identifier(column)
            prefix = PREFIX_LENGTH_RE.search(raw)
            if prefix and self._inline_keys:
                text += prefix.group(0).replace(" ", "")
            order = ORDER_RE.search(raw)
            if order:
                text += f" {order.group(1).upper()}"
            rendered.append(text)
        return ", ".join(rendered)

    def _render_inline_key(self, index: IndexSpec) -> str:
        return f"{index.kind.value} `{index.name}` ({self._render_columns(index)})"

    def _render_create_index(self, table: str, index: IndexSpec) -> str:
        unique = "UNIQUE " if index.kind is IndexKind.UNIQUE else ""
        physical = f"{table}{_SQLITE_INDEX_SEPARATOR}{index.name}"
        return f"CREATE {unique}INDEX `{physical}` ON {quote_identifier(table)} ({self._render_columns(index)})"

    def _logical_index_name(self, table: str, physical: str) -> str:
        prefix = f"{table}{_SQLITE_INDEX_SEPARATOR}"
        if not self._inline_keys and physical.startswith(prefix):
            return physical[len(prefix) :]
        return physical
