"""Filter expressions: the recursive AND/OR tree a query compiles into WHERE.

Callers usually write expressions as plain mappings::

    {"status": "published", "views": {"compare": ">", "value": 10}}

    {
        "relation": "OR",
        "fields": {
            "author_id": 3,
            0: {"relation": "AND", "fields": {"status": "draft", "views": 0}},
        },
    }

``parse_filter_expression`` turns those into a tagged union of node types so
the compiler never has to guess what a key or value means.
"""

from collections.abc import Mapping
from datetime import date, datetime
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import Field, ValidationError, model_validator

from relstore.errors import InvalidComparisonError, InvalidFilterExpressionError
from relstore.models.base import FrozenModel
from relstore.models.enums import DateCompare, Relation
from relstore.models.schema import TableSchema

DateComponentValue = int | tuple[int, ...]
DateBound = datetime | date | str | dict[str, int]


class FieldComparison(FrozenModel):
    """``field OP value``. The operator is checked against the allow-list at compile time."""

    kind: Literal["field"] = "field"
    field: str
    compare: str = "="
    value: Any = None


class MembershipComparison(FrozenModel):
    """``field [NOT] IN (values)``, written as ``field__in`` / ``field__not_in`` keys."""

    kind: Literal["membership"] = "membership"
    field: str
    values: tuple[Any, ...]
    negate: bool = False


class DateRange(FrozenModel):
    """Date-part components and/or bounds matched against a date column."""

    COMPONENTS: ClassVar[tuple[str, ...]] = (
        "year",
        "month",
        "week",
        "dayofyear",
        "day",
        "dayofweek",
        "hour",
        "minute",
        "second",
    )

    year: DateComponentValue | None = None
    month: DateComponentValue | None = None
    week: DateComponentValue | None = None
    dayofyear: DateComponentValue | None = None
    day: DateComponentValue | None = None
    dayofweek: DateComponentValue | None = None
    hour: DateComponentValue | None = None
    minute: DateComponentValue | None = None
    second: DateComponentValue | None = None
    compare: DateCompare = DateCompare.EQ
    after: DateBound | None = None
    before: DateBound | None = None
    inclusive: bool = False

    @model_validator(mode="after")
    def _validate_shape(self) -> "DateRange":
        components = self.components()
        if not components and self.after is None and self.before is None:
            raise ValueError("date range needs at least one component, 'after' or 'before'")
        for name, value in components:
            if self.compare in (DateCompare.BETWEEN, DateCompare.NOT_BETWEEN):
                if not isinstance(value, tuple) or len(value) != 2:
                    raise ValueError(f"{self.compare} on {name} needs exactly two values")
            elif self.compare in (DateCompare.IN, DateCompare.NOT_IN):
                if not isinstance(value, tuple) or not value:
                    raise ValueError(f"{self.compare} on {name} needs a non-empty list")
            elif isinstance(value, tuple):
                raise ValueError(f"{self.compare} on {name} needs a single value")
        return self

    def components(self) -> list[tuple[str, DateComponentValue]]:
        return [(name, getattr(self, name)) for name in self.COMPONENTS if getattr(self, name) is not None]


class DateComparison(FrozenModel):
    kind: Literal["date"] = "date"
    field: str
    date_range: DateRange


class CompositeExpression(FrozenModel):
    """Children joined by a single relation."""

    kind: Literal["composite"] = "composite"
    relation: Relation = Relation.AND
    children: tuple["FilterNode", ...] = ()


FilterNode = Annotated[
    Union[FieldComparison, MembershipComparison, DateComparison, CompositeExpression],
    Field(discriminator="kind"),
]

CompositeExpression.model_rebuild()

_NODE_TYPES = (FieldComparison, MembershipComparison, DateComparison, CompositeExpression)
_DATE_RANGE_KEYS = frozenset(DateRange.COMPONENTS) | {"after", "before", "inclusive"}
_COMPARISON_KEYS = frozenset({"compare", "value"})


def parse_filter_expression(where: Any, schema: TableSchema) -> CompositeExpression:
    """Parse a raw filter expression into a CompositeExpression tree.

    A bare mapping is an implicit AND of its entries. ``{"relation": ..., "fields": ...}``
    sets the relation explicitly. Inside the entries, string keys are field
    comparisons and positional keys (ints, or list positions) hold nested
    sub-expressions.

    Args:
        where: Raw expression, or an already built CompositeExpression.
        schema: Schema of the queried table, used to validate field names and
            detect date columns.

    Raises:
        InvalidFilterExpressionError: On a malformed relation, entry or unknown field.
        InvalidComparisonError: On a date range with an unsupported operator.
    """
    if isinstance(where, CompositeExpression):
        return where
    if not isinstance(where, Mapping):
        raise InvalidFilterExpressionError(f"Filter expression must be a mapping, got {type(where).__name__}")

    if "relation" in where:
        unexpected = set(where) - {"relation", "fields"}
        if unexpected:
            raise InvalidFilterExpressionError(
                f"Unexpected keys next to 'relation': {', '.join(sorted(map(str, unexpected)))}"
            )
        relation = _parse_relation(where["relation"])
        entries = where.get("fields", {})
    else:
        relation = Relation.AND
        entries = where

    if isinstance(entries, Mapping):
        items = list(entries.items())
    elif isinstance(entries, (list, tuple)):
        items = list(enumerate(entries))
    else:
        raise InvalidFilterExpressionError("'fields' must be a mapping or a list")

    children: list[Any] = []
    for key, value in items:
        if isinstance(key, bool) or not isinstance(key, (int, str)):
            raise InvalidFilterExpressionError(f"Invalid filter key: {key!r}")
        if isinstance(key, int):
            children.append(_parse_positional(key, value, schema))
        else:
            children.append(_parse_field_entry(key, value, schema))

    return CompositeExpression(relation=relation, children=tuple(children))


def _parse_relation(value: Any) -> Relation:
    try:
        return Relation(str(value).strip().upper())
    except ValueError:
        raise InvalidFilterExpressionError(f"Invalid relation: {value!r}") from None


def _parse_positional(key: int, value: Any, schema: TableSchema) -> Any:
    if isinstance(value, _NODE_TYPES):
        return value
    if isinstance(value, Mapping):
        return parse_filter_expression(value, schema)
    if isinstance(value, (list, tuple)):
        return parse_filter_expression({"relation": Relation.AND, "fields": value}, schema)
    raise InvalidFilterExpressionError(f"Positional entry {key} must be a nested expression")


def _parse_field_entry(key: str, value: Any, schema: TableSchema) -> Any:
    if key.endswith("__not_in"):
        return _parse_membership(key[: -len("__not_in")], value, schema, negate=True)
    if key.endswith("__in"):
        return _parse_membership(key[: -len("__in")], value, schema, negate=False)

    _require_field(key, schema)

    if isinstance(value, _NODE_TYPES):
        raise InvalidFilterExpressionError(f"Field {key!r} cannot hold a nested expression")

    if not isinstance(value, Mapping):
        return FieldComparison(field=key, value=value)

    if schema.is_date_field(key) and _DATE_RANGE_KEYS & set(value):
        return DateComparison(field=key, date_range=_parse_date_range(key, value))

    unexpected = set(value) - _COMPARISON_KEYS
    if unexpected or "value" not in value:
        raise InvalidFilterExpressionError(
            f"Comparison for field {key!r} must be a scalar or {{'compare', 'value'}}"
        )
    return FieldComparison(field=key, compare=str(value.get("compare", "=")), value=value["value"])


def _parse_membership(field: str, value: Any, schema: TableSchema, negate: bool) -> MembershipComparison:
    _require_field(field, schema)
    if isinstance(value, (str, bytes, Mapping)) or not hasattr(value, "__iter__"):
        raise InvalidFilterExpressionError(f"Membership filter on {field!r} needs a list of values")
    return MembershipComparison(field=field, values=tuple(value), negate=negate)


def _parse_date_range(field: str, value: Mapping[str, Any]) -> DateRange:
    data = {
        name: tuple(item) if isinstance(item, list) else item
        for name, item in value.items()
    }
    if isinstance(data.get("compare"), str):
        data["compare"] = data["compare"].strip().upper()
    try:
        return DateRange.model_validate(data)
    except ValidationError as exc:
        if any(error["loc"][:1] == ("compare",) for error in exc.errors()):
            raise InvalidComparisonError(field, str(value.get("compare"))) from exc
        raise InvalidFilterExpressionError(f"Invalid date range for field {field!r}: {exc}") from exc


def _require_field(field: str, schema: TableSchema) -> None:
    if not schema.has_field(field):
        raise InvalidFilterExpressionError(f"Unknown field: {field!r}")
