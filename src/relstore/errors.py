"""Exception hierarchy for the data-access layer.

Every error carries the context a caller needs to render a diagnostic (table,
attempted fields, identity filter, SQL statement). Messages are meant for
developers and logs, not for end users.
"""

from typing import Any


class RelstoreError(Exception):
    """Base class for all errors raised by relstore."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidFilterExpressionError(RelstoreError):
    """A filter expression has a malformed relation or an unknown field key."""


class InvalidComparisonError(InvalidFilterExpressionError):
    """A field comparison requested an operator outside the allow-list."""

    def __init__(self, field: str, compare: str) -> None:
        super().__init__(f"Invalid comparison operator {compare!r} for field {field!r}", field=field, compare=compare)
        self.field = field
        self.compare = compare


class InvalidRelationError(RelstoreError):
    """An unknown relationship label or an unsupported association kind."""


class SchemaParseError(RelstoreError):
    """An index specification could not be parsed, or the primary key is ambiguous."""

    def __init__(self, message: str, spec: str | None = None) -> None:
        super().__init__(message, spec=spec)
        self.spec = spec


class SchemaError(RelstoreError):
    """Creating or altering a table failed."""

    def __init__(self, message: str, table: str, statement: str | None = None) -> None:
        super().__init__(message, table=table, statement=statement)
        self.table = table
        self.statement = statement


class QueryExecutionError(RelstoreError):
    """The driver reported a failure while running a SELECT."""

    def __init__(self, message: str, sql: str, params: tuple[Any, ...] = ()) -> None:
        super().__init__(message, sql=sql, params=params)
        self.sql = sql
        self.params = params


class SaveError(RelstoreError):
    """An entity could not be inserted or updated."""

    def __init__(
        self,
        message: str,
        table: str,
        fields: dict[str, Any] | None = None,
        where: dict[str, Any] | None = None,
        entity: Any = None,
    ) -> None:
        super().__init__(message, table=table, fields=fields, where=where)
        self.table = table
        self.fields = fields or {}
        self.where = where
        self.entity = entity


class AlreadyDeletedError(SaveError):
    """Save was called on an entity that has been deleted."""


class DeleteError(RelstoreError):
    """An entity could not be deleted."""

    def __init__(self, message: str, table: str, where: dict[str, Any] | None = None) -> None:
        super().__init__(message, table=table, where=where)
        self.table = table
        self.where = where


class ReloadError(RelstoreError):
    """An entity could not be reloaded from the database."""


class CannotReloadDeletedError(ReloadError):
    pass


class CannotReloadNewError(ReloadError):
    pass


class RecordNotFoundError(ReloadError):
    pass


class TransactionError(RelstoreError):
    """Starting, committing or rolling back a transaction failed."""


class InvalidFieldError(RelstoreError):
    """A field name is not declared in the table schema."""

    def __init__(self, message: str, table: str, field: str) -> None:
        super().__init__(message, table=table, field=field)
        self.table = table
        self.field = field


class InvalidFieldValueError(InvalidFieldError):
    """A value could not be normalized for the column's declared type."""
