"""Where-clause compiler and paged query execution.

A Query turns a filter expression into one parameterized SELECT for the
requested page. The unpaged total comes back in the same statement through a
window count; only an empty page needs a second COUNT(*) statement, which
runs in the same transaction scope.
"""

from collections.abc import Callable, Mapping
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from relstore.config import get_settings
from relstore.errors import (
    InvalidComparisonError,
    InvalidFilterExpressionError,
    InvalidRelationError,
    QueryExecutionError,
)
from relstore.models.base import ensure_identifier, quote_identifier
from relstore.models.enums import Comparison, Relation
from relstore.models.filters import (
    CompositeExpression,
    DateComparison,
    FieldComparison,
    MembershipComparison,
    parse_filter_expression,
)
from relstore.models.query import CompiledQuery, PageArgs, QueryConfig
from relstore.services.associations import relationship_table_name
from relstore.services.database import Database
from relstore.services.date_query import DateQueryCompiler
from relstore.services.field_types import bind_value
from relstore.services.results import QueryResults, Row

ALLOWED_COMPARISONS = frozenset(item.value for item in Comparison)

TOTAL_AVAILABLE_COLUMN = "__total_available"

RELATIONSHIPS_KEY = "relationships"


class Query:
    """Paged SELECT over one table, filtered by a filter expression."""

    def __init__(
        self,
        database: Database,
        config: QueryConfig,
        where: Mapping[str, Any] | CompositeExpression | None = None,
        page: int = 1,
        per_page: int | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._database = database
        self._config = config
        self._where = where if where is not None else {}
        if per_page is None:
            per_page = get_settings().default_per_page
        self._page_args = PageArgs(page=page, per_page=per_page)
        self._dates = DateQueryCompiler(database.dialect_name, database.placeholder)
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def config(self) -> QueryConfig:
        return self._config

    @property
    def page_args(self) -> PageArgs:
        return self._page_args

    @property
    def _table(self) -> str:
        return quote_identifier(self._config.table)

    def compile_where(self, expression: CompositeExpression) -> tuple[str, list[Any]]:
        """Compile an expression tree into a WHERE body (without the keyword).

        Returns:
            A (sql, params) pair; ``sql`` is empty when the expression has no
            conditions.
        """
        return self._compile_composite(expression)

    def _compile_composite(self, expression: CompositeExpression) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []

        for child in expression.children:
            if isinstance(child, CompositeExpression):
                sql, child_params = self._compile_composite(child)
                if not sql:
                    continue
                clauses.append(f"( {sql} )")
            else:
                sql, child_params = self._compile_comparison(child)
                clauses.append(sql)
            params.extend(child_params)

        return f" {expression.relation.value} ".join(clauses), params

    def _compile_comparison(
        self,
        node: FieldComparison | MembershipComparison | DateComparison,
    ) -> tuple[str, list[Any]]:
        schema = self._config.table_schema
        if not schema.has_field(node.field):
            raise InvalidFilterExpressionError(f"Unknown field: {node.field!r}")
        column = self._column_ref(node.field)
        ph = self._database.placeholder

        if isinstance(node, DateComparison):
            if not schema.is_date_field(node.field):
                raise InvalidFilterExpressionError(f"Field {node.field!r} is not a date field")
            return self._dates.compile(column, node.date_range, date_only=schema.base_type(node.field) == "date")

        if isinstance(node, MembershipComparison):
            if not node.values:
                # Nothing is IN an empty list; everything is NOT IN it.
                return ("1 = 1" if node.negate else "1 = 0"), []
            operator = "NOT IN" if node.negate else "IN"
            placeholders = ", ".join([ph] * len(node.values))
            return f"{column} {operator} ({placeholders})", [bind_value(value) for value in node.values]

        compare = node.compare.strip().upper()
        if compare not in ALLOWED_COMPARISONS:
            raise InvalidComparisonError(node.field, node.compare)

        if node.value is None and compare in (Comparison.EQ, Comparison.NEQ):
            return f"{column} IS {'NOT ' if compare == Comparison.NEQ else ''}NULL", []
        return f"{column} {compare} {ph}", [bind_value(node.value)]

    def _column_ref(self, field: str) -> str:
        return quote_identifier(field)

    def _filter_expression(self) -> CompositeExpression:
        return parse_filter_expression(self._where, self._config.table_schema)

    def _build_clauses(self) -> tuple[str, str, list[Any]]:
        """FROM body, WHERE body and WHERE params for this query."""
        where_sql, params = self.compile_where(self._filter_expression())
        return self._table, where_sql, params

    def _group_by(self) -> str:
        return ""

    def _count_expression(self) -> str:
        return "COUNT(*)"

    def compile(self) -> CompiledQuery:
        """Build the page SELECT and the fallback count SELECT.

        Raises:
            InvalidFilterExpressionError: On a malformed expression or unknown field.
            InvalidComparisonError: On an operator outside the allow-list.
            InvalidRelationError: On an unknown relationship label.
        """
        from_sql, where_sql, params = self._build_clauses()
        where = f" WHERE {where_sql}" if where_sql else ""
        group_by = self._group_by()
        order_by = ", ".join(self._primary_refs())

        sql = (
            f"SELECT COUNT(*) OVER () AS `{TOTAL_AVAILABLE_COLUMN}`, {self._table}.* "
            f"FROM {from_sql}{where}{group_by} ORDER BY {order_by} "
            f"LIMIT {self._page_args.offset}, {self._page_args.per_page}"
        )
        count_sql = f"SELECT {self._count_expression()} AS `{TOTAL_AVAILABLE_COLUMN}` FROM {from_sql}{where}"
        return CompiledQuery(sql=sql, params=tuple(params), count_sql=count_sql, count_params=tuple(params))

    def get_results(self) -> QueryResults[Any]:
        """Execute the query and wrap the page in a QueryResults.

        Returns:
            QueryResults over entities of ``config.entity``, or over plain row
            dicts when the config names no entity type.

        Raises:
            QueryExecutionError: If the driver reports a failure.
        """
        compiled = self.compile()
        sql, params = compiled.sql, compiled.params
        try:
            with self._database.snapshot():
                rows = self._database.execute(sql, params).rows
                if rows:
                    total = int(rows[0][TOTAL_AVAILABLE_COLUMN])
                elif self._page_args.offset == 0:
                    total = 0
                else:
                    sql, params = compiled.count_sql, compiled.count_params
                    total = int(self._database.execute(sql, params).rows[0][TOTAL_AVAILABLE_COLUMN])
        except SQLAlchemyError as exc:
            self._logger.error("query_failed", table=self._config.table, sql=sql, error=str(exc))
            raise QueryExecutionError(f"Could not query {self._config.table}: {exc}", sql=sql, params=params) from exc

        for row in rows:
            row.pop(TOTAL_AVAILABLE_COLUMN, None)

        self._logger.debug(
            "query_executed",
            table=self._config.table,
            page=self._page_args.page,
            per_page=self._page_args.per_page,
            rows=len(rows),
            total_available=total,
        )
        return QueryResults(rows, total, self._materializer())

    def _materializer(self) -> Callable[[Row], Any]:
        entity = self._config.entity
        if entity is None:
            return dict
        database = self._database
        return lambda row: entity.from_row(database, row)

    def _primary_refs(self) -> list[str]:
        return [self._column_ref(column) for column in self._config.table_schema.primary_columns]


class RelationalQuery(Query):
    """Query that can also filter on has-many / many-to-many associations.

    The reserved ``relationships`` key of the filter expression holds a
    sub-expression keyed by relationship label::

        {"status": "published", "relationships": {"tags": tag}}

        {"relationships": {"relation": "OR", "fields": {"tags": [1, 2], "authors": 7}}}
    """

    def __init__(
        self,
        database: Database,
        config: QueryConfig,
        where: Mapping[str, Any] | CompositeExpression | None = None,
        page: int = 1,
        per_page: int | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        main, relationships = _split_relationships(where)
        super().__init__(database, config, main, page=page, per_page=per_page, logger=logger)
        self._relationships = relationships
        self._aliases: dict[str, str] = {}

    def _column_ref(self, field: str) -> str:
        return f"{self._table}.{quote_identifier(field)}"

    def _build_clauses(self) -> tuple[str, str, list[Any]]:
        main_sql, params = self.compile_where(self._filter_expression())

        self._aliases = {}
        join_sql, join_params = ("", [])
        if self._relationships is not None:
            join_sql, join_params = self._build_join_where(self._relationships)

        if main_sql and join_sql:
            where_sql = f"( {main_sql} ) AND ( {join_sql} )"
        else:
            where_sql = main_sql or join_sql

        from_sql = self._table + "".join(self._join_clauses())
        return from_sql, where_sql, params + join_params

    def _group_by(self) -> str:
        if not self._aliases:
            return ""
        return " GROUP BY " + ", ".join(self._primary_refs())

    def _count_expression(self) -> str:
        if not self._aliases:
            return "COUNT(*)"
        return f"COUNT(DISTINCT {', '.join(self._primary_refs())})"

    def _build_join_where(self, expression: Any) -> tuple[str, list[Any]]:
        """Compile the ``relationships`` sub-expression into join predicates."""
        if isinstance(expression, Mapping) and "relation" in expression:
            relation = _parse_relation(expression["relation"])
            entries = expression.get("fields", {})
        else:
            relation = Relation.AND
            entries = expression

        if isinstance(entries, Mapping):
            items = list(entries.items())
        elif isinstance(entries, (list, tuple)):
            items = list(enumerate(entries))
        else:
            raise InvalidFilterExpressionError("'relationships' must be a mapping or a list")

        clauses: list[str] = []
        params: list[Any] = []
        for key, value in items:
            if isinstance(key, int) and not isinstance(key, bool):
                sql, child_params = self._build_join_where(value)
                if not sql:
                    continue
                clauses.append(f"( {sql} )")
            elif isinstance(key, str):
                sql, child_params = self._relationship_predicate(key, value)
                clauses.append(sql)
            else:
                raise InvalidFilterExpressionError(f"Invalid relationships key: {key!r}")
            params.extend(child_params)

        return f" {relation.value} ".join(clauses), params

    def _relationship_predicate(self, label: str, value: Any) -> tuple[str, list[Any]]:
        alias = self._alias_for(label)
        ph = self._database.placeholder

        if isinstance(value, (list, tuple, set, frozenset)):
            ids = [self._related_id(label, item) for item in value]
            if not ids:
                return "1 = 0", []
            placeholders = ", ".join([ph] * len(ids))
            return f"( {alias}.`relationship` = {ph} AND {alias}.`right_id` IN ({placeholders}) )", [label, *ids]

        return f"( {alias}.`relationship` = {ph} AND {alias}.`right_id` = {ph} )", [
            label,
            self._related_id(label, value),
        ]

    def _alias_for(self, label: str) -> str:
        relationship = self._config.relationships.get(label)
        if relationship is None:
            raise InvalidRelationError(f"Invalid relation key: {label}")
        if not relationship.kind.uses_join_table:
            raise InvalidRelationError(f"Invalid relation type for {label!r}: {relationship.kind.value}")
        if label not in self._aliases:
            self._aliases[label] = quote_identifier(f"rel_{ensure_identifier(label, 'relationship label')}")
        return self._aliases[label]

    def _join_clauses(self) -> list[str]:
        join_table = quote_identifier(relationship_table_name(self._config.table))
        pk = self._config.table_schema.primary_columns[0]
        return [
            f" LEFT JOIN {join_table} AS {alias} ON {alias}.`left_id` = {self._column_ref(pk)}"
            for alias in self._aliases.values()
        ]

    def _related_id(self, label: str, value: Any) -> Any:
        identity = bind_value(value)
        if identity is None:
            raise InvalidRelationError(f"Relationship {label!r} filter needs a saved entity or an id")
        return identity


def _split_relationships(where: Any) -> tuple[Any, Any]:
    """Separate the reserved ``relationships`` entry from the rest of an expression."""
    if not isinstance(where, Mapping):
        return where, None

    if "relation" in where and isinstance(where.get("fields"), Mapping) and RELATIONSHIPS_KEY in where["fields"]:
        fields = dict(where["fields"])
        relationships = fields.pop(RELATIONSHIPS_KEY)
        return {**where, "fields": fields}, relationships

    if RELATIONSHIPS_KEY in where:
        main = dict(where)
        relationships = main.pop(RELATIONSHIPS_KEY)
        return main, relationships

    return where, None


def _parse_relation(value: Any) -> Relation:
    try:
        return Relation(str(value).strip().upper())
    except ValueError:
        raise InvalidFilterExpressionError(f"Invalid relation: {value!r}") from None
