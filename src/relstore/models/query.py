from typing import Any

from pydantic import ConfigDict, Field, field_validator

from relstore.models.base import FrozenModel, ensure_identifier
from relstore.models.enums import AssociationKind
from relstore.models.schema import TableSchema


class Relationship(FrozenModel):
    """A labeled association declared by an entity type."""

    kind: AssociationKind
    target: type

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)


class PageArgs(FrozenModel):
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=10, ge=1)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


class QueryConfig(FrozenModel):
    """What a query needs to know about the table it reads."""

    table: str
    table_schema: TableSchema
    entity: type | None = None
    relationships: dict[str, Relationship] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    @field_validator("table")
    @classmethod
    def _validate_table(cls, value: str) -> str:
        return ensure_identifier(value, "table")


class CompiledQuery(FrozenModel):
    """Parameterized SQL for a page of rows and for the unpaged row count."""

    sql: str
    params: tuple[Any, ...] = ()
    count_sql: str
    count_params: tuple[Any, ...] = ()
