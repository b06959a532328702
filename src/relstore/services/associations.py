"""Has-many / many-to-many associations stored in a shared join table.

Every entity type that declares at least one join-table relationship gets one
``<table>_relationships`` table. Rows are ``(relationship, left_id, right_id)``
where ``relationship`` is the label the owning type declared, ``left_id`` the
owner's identity and ``right_id`` the related entity's identity.
"""

from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from relstore.errors import InvalidRelationError, QueryExecutionError, SaveError
from relstore.models.base import quote_identifier
from relstore.models.schema import ReconcileResult, TableSchema
from relstore.services.database import Database
from relstore.services.schema_manager import SchemaManager

if TYPE_CHECKING:
    from relstore.services.entity import Entity

RELATIONSHIP_TABLE_SUFFIX = "_relationships"

RELATIONSHIP_TABLE_SCHEMA = TableSchema(
    fields={
        "relationship": "varchar(255) NOT NULL",
        "left_id": "bigint NOT NULL",
        "right_id": "bigint NOT NULL",
    },
    indexes=(
        "PRIMARY KEY (relationship, left_id, right_id)",
        "KEY (relationship, right_id)",
    ),
)


def relationship_table_name(owner_table: str) -> str:
    return f"{owner_table}{RELATIONSHIP_TABLE_SUFFIX}"


def relationship_table_schema() -> TableSchema:
    """Schema shared by every ``<table>_relationships`` table."""
    return RELATIONSHIP_TABLE_SCHEMA


def uses_relationship_table(entity_type: type["Entity"]) -> bool:
    return any(relationship.kind.uses_join_table for relationship in entity_type.relationships.values())


def ensure_relationship_table(
    database: Database,
    entity_type: type["Entity"],
    manager: SchemaManager | None = None,
) -> ReconcileResult | None:
    """Ensure the shared association table for ``entity_type``.

    Belongs-to and has-one relationships live in columns of the owning table,
    so a type declaring only those needs no association table and gets None.
    """
    if not uses_relationship_table(entity_type):
        return None
    manager = manager or SchemaManager(database)
    return manager.ensure_table(relationship_table_name(entity_type.get_table_name()), relationship_table_schema())


class HasManyAssociation:
    """CRUD over one labeled relationship in a join table."""

    def __init__(
        self,
        database: Database,
        table: str,
        label: str,
        left_type: type["Entity"],
        right_type: type["Entity"],
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._database = database
        self._table = table
        self._label = label
        self._left_type = left_type
        self._right_type = right_type
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def label(self) -> str:
        return self._label

    @property
    def table(self) -> str:
        return self._table

    def right_ids(self, owner: "Entity") -> list[int]:
        left_id = self._require_id(owner, self._left_type, "left")
        return self._select_ids("right_id", "left_id", left_id)

    def left_ids(self, item: "Entity") -> list[int]:
        right_id = self._require_id(item, self._right_type, "right")
        return self._select_ids("left_id", "right_id", right_id)

    def items_of(self, owner: "Entity") -> list["Entity"]:
        """All right-side entities related to ``owner`` under this label."""
        return self._right_type.get_many(self._database, self.right_ids(owner))

    def owners_of(self, item: "Entity") -> list["Entity"]:
        """All left-side entities that relate to ``item`` under this label."""
        return self._left_type.get_many(self._database, self.left_ids(item))

    def add(self, owner: "Entity", other: "Entity") -> bool:
        """Relate ``other`` to ``owner``.

        Raises:
            SaveError: If the row cannot be inserted, including when the pair is
                already related and the join table's primary key rejects it.
        """
        fields = {
            "relationship": self._label,
            "left_id": self._require_id(owner, self._left_type, "left"),
            "right_id": self._require_id(other, self._right_type, "right"),
        }
        ph = self._database.placeholder
        sql = (
            f"INSERT INTO {quote_identifier(self._table)} "
            f"(`relationship`, `left_id`, `right_id`) VALUES ({ph}, {ph}, {ph})"
        )
        try:
            result = self._database.execute(sql, list(fields.values()))
        except SQLAlchemyError as exc:
            self._logger.warning("relation_add_failed", table=self._table, error=str(exc), **fields)
            raise SaveError(
                f"Could not add relation {self._label}: {exc}",
                table=self._table,
                fields=fields,
            ) from exc

        self._logger.debug("relation_added", table=self._table, **fields)
        return result.rowcount == 1

    def remove(self, owner: "Entity", other: "Entity") -> bool:
        """Unrelate ``other`` from ``owner``. Returns False if they were not related."""
        where = {
            "relationship": self._label,
            "left_id": self._require_id(owner, self._left_type, "left"),
            "right_id": self._require_id(other, self._right_type, "right"),
        }
        ph = self._database.placeholder
        sql = (
            f"DELETE FROM {quote_identifier(self._table)} "
            f"WHERE `relationship` = {ph} AND `left_id` = {ph} AND `right_id` = {ph}"
        )
        try:
            result = self._database.execute(sql, list(where.values()))
        except SQLAlchemyError as exc:
            raise SaveError(
                f"Could not remove relation {self._label}: {exc}",
                table=self._table,
                where=where,
            ) from exc

        self._logger.debug("relation_removed", table=self._table, removed=result.rowcount, **where)
        return result.rowcount > 0

    def _select_ids(self, column: str, match_column: str, value: int) -> list[int]:
        ph = self._database.placeholder
        sql = (
            f"SELECT `{column}` FROM {quote_identifier(self._table)} "
            f"WHERE `relationship` = {ph} AND `{match_column}` = {ph} ORDER BY `{column}`"
        )
        try:
            result = self._database.execute(sql, [self._label, value])
        except SQLAlchemyError as exc:
            raise QueryExecutionError(f"Could not read relation {self._label}: {exc}", sql=sql) from exc
        return [int(row[column]) for row in result.rows]

    def _require_id(self, entity: Any, expected: type["Entity"], side: str) -> int:
        if not isinstance(entity, expected):
            raise InvalidRelationError(
                f"Relation {self._label!r} expects {expected.__name__} on the {side} side, "
                f"got {type(entity).__name__}"
            )
        identity = entity.get_id()
        if identity is None:
            raise InvalidRelationError(f"Unsaved {expected.__name__} cannot be used in relation {self._label!r}")
        return int(identity)


class BoundAssociation:
    """A HasManyAssociation viewed from one owner."""

    def __init__(self, association: HasManyAssociation, owner: "Entity") -> None:
        self._association = association
        self._owner = owner

    @property
    def association(self) -> HasManyAssociation:
        return self._association

    def items(self) -> list["Entity"]:
        return self._association.items_of(self._owner)

    def ids(self) -> list[int]:
        return self._association.right_ids(self._owner)

    def add(self, other: "Entity") -> bool:
        return self._association.add(self._owner, other)

    def remove(self, other: "Entity") -> bool:
        return self._association.remove(self._owner, other)


def association_for(owner: "Entity", label: str) -> BoundAssociation:
    """Build the association handle for ``label`` as declared by the owner's type.

    Raises:
        InvalidRelationError: If the label is not declared or its kind has no join table.
    """
    owner_type = type(owner)
    relationship = owner_type.relationships.get(label)
    if relationship is None:
        raise InvalidRelationError(f"Invalid relation key: {label}")
    if not relationship.kind.uses_join_table:
        raise InvalidRelationError(f"Invalid relation type for {label!r}: {relationship.kind.value}")

    association = HasManyAssociation(
        owner.database,
        relationship_table_name(owner_type.get_table_name()),
        label,
        owner_type,
        relationship.target,
    )
    return BoundAssociation(association, owner)
