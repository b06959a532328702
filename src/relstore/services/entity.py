"""Change-tracked entities mapped onto one table each.

An entity keeps the last row it read from the database (``persisted``) and
the writes staged since (``pending``). ``save()`` sends only the pending
fields, so an unchanged entity never touches the database.
"""

from collections.abc import Iterable, Mapping
from typing import Any, ClassVar, Protocol, runtime_checkable

import structlog
from sqlalchemy.exc import SQLAlchemyError

from relstore.errors import (
    AlreadyDeletedError,
    CannotReloadDeletedError,
    CannotReloadNewError,
    DeleteError,
    InvalidFieldError,
    InvalidFieldValueError,
    QueryExecutionError,
    RecordNotFoundError,
    SaveError,
    SchemaError,
    SchemaParseError,
)
from relstore.models.base import quote_identifier
from relstore.models.query import QueryConfig, Relationship
from relstore.models.schema import ReconcileResult, TableSchema
from relstore.services.associations import BoundAssociation, association_for, ensure_relationship_table
from relstore.services.database import Database
from relstore.services.field_types import bind_value, normalize_field_value
from relstore.services.query import Query, RelationalQuery
from relstore.services.schema_manager import SchemaManager

EntityState = tuple[dict[str, Any], dict[str, Any], bool]


@runtime_checkable
class TableDefinition(Protocol):
    """Anything that can name its table and declare its schema."""

    @classmethod
    def get_table_name(cls) -> str: ...

    @classmethod
    def get_table_schema(cls) -> TableSchema: ...


class Entity:
    """Base class for table-backed entities.

    Subclasses declare ``table_name`` and ``table_schema`` (a TableSchema or
    the equivalent ``{"fields": ..., "indexes": ...}`` mapping), and
    optionally ``relationships``::

        class Post(Entity):
            table_name = "posts"
            table_schema = {
                "fields": {"id": "integer NOT NULL", "title": "varchar(255) NOT NULL"},
                "indexes": ["PRIMARY KEY (id)"],
            }
            relationships = {"tags": Relationship(kind=AssociationKind.MANY_TO_MANY, target=Tag)}
    """

    table_name: ClassVar[str]
    table_schema: ClassVar[TableSchema]
    relationships: ClassVar[dict[str, Relationship]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        schema = cls.__dict__.get("table_schema")
        if isinstance(schema, Mapping):
            schema = TableSchema.model_validate(schema)
            cls.table_schema = schema
        if isinstance(schema, TableSchema) and len(schema.primary_columns) != 1:
            raise SchemaParseError(f"{cls.__name__} needs a single-column PRIMARY KEY")

    def __init__(
        self,
        database: Database,
        data: Mapping[str, Any] | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._database = database
        self._persisted: dict[str, Any] = dict(data or {})
        self._pending: dict[str, Any] = {}
        self._deleted = False
        self._relations: dict[str, BoundAssociation] = {}
        self._logger = logger or structlog.get_logger(__name__)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.get_id()!r}, new={self.is_new()}, modified={self.is_modified()})"

    @classmethod
    def get_table_name(cls) -> str:
        return cls.table_name

    @classmethod
    def get_table_schema(cls) -> TableSchema:
        return cls.table_schema

    @classmethod
    def identity_column(cls) -> str:
        return cls.get_table_schema().primary_columns[0]

    @classmethod
    def from_row(cls, database: Database, row: Mapping[str, Any]) -> "Entity":
        return cls(database, row)

    @classmethod
    def create(cls, database: Database, **fields: Any) -> "Entity":
        """Stage ``fields`` on a new entity and save it."""
        entity = cls(database)
        for key, value in fields.items():
            entity.set_field(key, value)
        entity.save()
        return entity

    @classmethod
    def get(cls, database: Database, identity: Any) -> "Entity | None":
        """Fetch one entity by identity. Returns None when no row matches."""
        row = cls._fetch_record(database, identity)
        if row is None:
            return None
        return cls.from_row(database, row)

    @classmethod
    def get_many(cls, database: Database, identities: Iterable[Any]) -> list["Entity"]:
        """Fetch the entities whose identities exist, ordered by identity."""
        values = [bind_value(identity) for identity in identities]
        if not values:
            return []
        table = quote_identifier(cls.get_table_name())
        column = quote_identifier(cls.identity_column())
        placeholders = ", ".join([database.placeholder] * len(values))
        sql = f"SELECT * FROM {table} WHERE {column} IN ({placeholders}) ORDER BY {column}"
        rows = cls._select(database, sql, values)
        return [cls.from_row(database, row) for row in rows]

    @classmethod
    def _fetch_record(cls, database: Database, identity: Any) -> dict[str, Any] | None:
        table = quote_identifier(cls.get_table_name())
        column = quote_identifier(cls.identity_column())
        sql = f"SELECT * FROM {table} WHERE {column} = {database.placeholder}"
        rows = cls._select(database, sql, [bind_value(identity)])
        return rows[0] if rows else None

    @classmethod
    def _select(cls, database: Database, sql: str, params: list[Any]) -> list[dict[str, Any]]:
        try:
            return database.execute(sql, params).rows
        except SQLAlchemyError as exc:
            raise QueryExecutionError(
                f"Could not read {cls.get_table_name()}: {exc}", sql=sql, params=tuple(params)
            ) from exc

    @classmethod
    def query_config(cls) -> QueryConfig:
        return QueryConfig(
            table=cls.get_table_name(),
            table_schema=cls.get_table_schema(),
            entity=cls,
            relationships=dict(cls.relationships),
        )

    @classmethod
    def query(
        cls,
        database: Database,
        where: Mapping[str, Any] | None = None,
        page: int = 1,
        per_page: int | None = None,
    ) -> Query:
        """Build a query over this entity's table.

        Types that declare relationships get a RelationalQuery so the filter
        expression may use the ``relationships`` key.
        """
        query_type = RelationalQuery if cls.relationships else Query
        return query_type(database, cls.query_config(), where, page=page, per_page=per_page)

    @classmethod
    def ensure_table(cls, database: Database, manager: SchemaManager | None = None) -> list[ReconcileResult]:
        """Create or additively conform this type's table and its association table.

        Raises:
            SchemaError: If a CREATE or ALTER statement fails.
        """
        manager = manager or SchemaManager(database)
        results = [manager.ensure_table(cls.get_table_name(), cls.get_table_schema())]
        relationship_result = ensure_relationship_table(database, cls, manager)
        if relationship_result is not None:
            results.append(relationship_result)
        return results

    @property
    def database(self) -> Database:
        return self._database

    def get_id(self) -> Any:
        column = self.identity_column()
        if column in self._persisted:
            return self._persisted[column]
        return self._pending.get(column)

    def is_new(self) -> bool:
        return not self._persisted

    def is_modified(self) -> bool:
        return bool(self._pending)

    def is_deleted(self) -> bool:
        return self._deleted

    def get_field(self, key: str) -> Any:
        """Read a field, preferring the staged value over the persisted one.

        Raises:
            AlreadyDeletedError: If the entity has been deleted.
            InvalidFieldError: If ``key`` is not a column of the table.
        """
        self._require_not_deleted("read")
        self._require_field(key)
        if key in self._pending:
            return self._pending[key]
        return self._persisted.get(key)

    def set_field(self, key: str, value: Any) -> None:
        """Stage a write. Nothing reaches the database until ``save()``.

        Raises:
            AlreadyDeletedError: If the entity has been deleted.
            InvalidFieldError: If ``key`` is not a column of the table.
            InvalidFieldValueError: If ``value`` does not fit the column type.
        """
        self._require_not_deleted("modify")
        self._require_field(key)
        try:
            self._pending[key] = normalize_field_value(self.get_table_schema(), key, value)
        except (TypeError, ValueError) as exc:
            raise InvalidFieldValueError(
                f"Invalid value for {self.get_table_name()}.{key}: {exc}",
                table=self.get_table_name(),
                field=key,
            ) from exc

    def to_dict(self) -> dict[str, Any]:
        return {**self._persisted, **self._pending}

    def save(self) -> bool:
        """Insert or update the pending fields.

        Returns:
            True if a row was written, False if there was nothing to write or
            the statement affected no rows.

        Raises:
            AlreadyDeletedError: If the entity has been deleted.
            SaveError: If the driver rejects the statement.
        """
        if self._deleted:
            raise AlreadyDeletedError(
                f"Cannot save deleted {self.get_table_name()} entity",
                table=self.get_table_name(),
                entity=self,
            )
        if not self._pending:
            return False
        if self.is_new():
            return self._insert()
        return self._update()

    def _insert(self) -> bool:
        table = self.get_table_name()
        fields = dict(self._pending)
        columns = ", ".join(quote_identifier(column) for column in fields)
        placeholders = ", ".join([self._database.placeholder] * len(fields))
        sql = f"INSERT INTO {quote_identifier(table)} ({columns}) VALUES ({placeholders})"

        try:
            result = self._database.execute(sql, [bind_value(value) for value in fields.values()])
        except SQLAlchemyError as exc:
            self._logger.warning("entity_save_failed", table=table, operation="insert", error=str(exc))
            raise SaveError(f"Could not insert into {table}: {exc}", table=table, fields=fields, entity=self) from exc

        if result.rowcount == 0:
            return False

        identity = fields.get(self.identity_column(), result.lastrowid)
        self._persisted = {}
        self._pending = {}
        row = self._fetch_record(self._database, identity)
        if row is None:
            raise SaveError(
                f"Inserted {table} row {identity!r} could not be read back",
                table=table,
                fields=fields,
                entity=self,
            )
        self._persisted = row

        self._logger.debug("entity_saved", table=table, operation="insert", id=identity)
        return True

    def _update(self) -> bool:
        table = self.get_table_name()
        fields = dict(self._pending)
        where = self._identity_where()
        ph = self._database.placeholder
        assignments = ", ".join(f"{quote_identifier(name)} = {ph}" for name in fields)
        column = self.identity_column()
        identity = where[column]
        sql = f"UPDATE {quote_identifier(table)} SET {assignments} WHERE {quote_identifier(column)} = {ph}"

        try:
            result = self._database.execute(sql, [*(bind_value(value) for value in fields.values()), identity])
        except SQLAlchemyError as exc:
            self._logger.warning("entity_save_failed", table=table, operation="update", error=str(exc))
            raise SaveError(
                f"Could not update {table}: {exc}",
                table=table,
                fields=fields,
                where=where,
                entity=self,
            ) from exc

        if result.rowcount == 0:
            return False

        self._persisted.update(fields)
        self._pending = {}
        self._logger.debug("entity_saved", table=table, operation="update", id=identity, fields=list(fields))
        return True

    def delete(self) -> None:
        """Delete the row for this entity.

        Raises:
            DeleteError: If the entity is new or already deleted, the driver
                fails, or the statement does not affect exactly one row.
        """
        table = self.get_table_name()
        if self._deleted:
            raise DeleteError(f"{table} entity is already deleted", table=table)
        if self.is_new():
            raise DeleteError(f"Cannot delete unsaved {table} entity", table=table)

        where = self._identity_where()
        column = self.identity_column()
        identity = where[column]
        sql = f"DELETE FROM {quote_identifier(table)} WHERE {quote_identifier(column)} = {self._database.placeholder}"
        try:
            result = self._database.execute(sql, [identity])
        except SQLAlchemyError as exc:
            raise DeleteError(f"Could not delete from {table}: {exc}", table=table, where=where) from exc

        if result.rowcount != 1:
            raise DeleteError(
                f"Delete from {table} affected {result.rowcount} rows, expected 1",
                table=table,
                where=where,
            )

        self._deleted = True
        self._logger.debug("entity_deleted", table=table, id=identity)

    def reload(self) -> None:
        """Re-read the row from the database, discarding staged writes.

        Raises:
            CannotReloadDeletedError: If the entity has been deleted.
            CannotReloadNewError: If the entity has never been saved.
            RecordNotFoundError: If the row no longer exists.
        """
        table = self.get_table_name()
        if self._deleted:
            raise CannotReloadDeletedError(f"Cannot reload deleted {table} entity", table=table)
        if self.is_new():
            raise CannotReloadNewError(f"Cannot reload unsaved {table} entity", table=table)

        identity = self.get_id()
        row = self._fetch_record(self._database, identity)
        if row is None:
            raise RecordNotFoundError(f"{table} row {identity!r} no longer exists", table=table, id=identity)
        self._persisted = row
        self._pending = {}

    def relation(self, label: str) -> BoundAssociation:
        """Association handle for a declared has-many / many-to-many label.

        Raises:
            InvalidRelationError: If the label is unknown or has no join table.
        """
        if label not in self._relations:
            self._relations[label] = association_for(self, label)
        return self._relations[label]

    def _snapshot_state(self) -> EntityState:
        return dict(self._persisted), dict(self._pending), self._deleted

    def _restore_state(self, state: EntityState) -> None:
        persisted, pending, deleted = state
        self._persisted = dict(persisted)
        self._pending = dict(pending)
        self._deleted = deleted

    def _identity_where(self) -> dict[str, Any]:
        column = self.identity_column()
        return {column: self._persisted[column]}

    def _require_field(self, key: str) -> None:
        if not self.get_table_schema().has_field(key):
            raise InvalidFieldError(
                f"{self.get_table_name()} has no field {key!r}",
                table=self.get_table_name(),
                field=key,
            )

    def _require_not_deleted(self, action: str) -> None:
        if self._deleted:
            raise AlreadyDeletedError(
                f"Cannot {action} deleted {self.get_table_name()} entity",
                table=self.get_table_name(),
                entity=self,
            )


class ReadOnlyEntity(Entity):
    """Entity over a table owned by someone else: readable and queryable only."""

    def save(self) -> bool:
        raise SaveError(f"{self.get_table_name()} is read only", table=self.get_table_name(), entity=self)

    def delete(self) -> None:
        raise DeleteError(f"{self.get_table_name()} is read only", table=self.get_table_name())

    @classmethod
    def ensure_table(cls, database: Database, manager: SchemaManager | None = None) -> list[ReconcileResult]:
        raise SchemaError(f"{cls.get_table_name()} is read only and cannot be migrated", table=cls.get_table_name())
