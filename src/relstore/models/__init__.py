from relstore.models.enums import AssociationKind, Comparison, DateCompare, IndexKind, Relation, TransactionState
from relstore.models.filters import (
    CompositeExpression,
    DateComparison,
    DateRange,
    FieldComparison,
    MembershipComparison,
    parse_filter_expression,
)
from relstore.models.query import CompiledQuery, PageArgs, QueryConfig, Relationship
from relstore.models.schema import (
    IndexSpec,
    ReconcileResult,
    TableDescription,
    TableSchema,
    get_primary_column,
    parse_index,
    parse_index_strict,
)

__all__ = [
    "AssociationKind",
    "Comparison",
    "CompiledQuery",
    "CompositeExpression",
    "DateCompare",
    "DateComparison",
    "DateRange",
    "FieldComparison",
    "IndexKind",
    "IndexSpec",
    "MembershipComparison",
    "PageArgs",
    "QueryConfig",
    "ReconcileResult",
    "Relation",
    "Relationship",
    "TableDescription",
    "TableSchema",
    "TransactionState",
    "get_primary_column",
    "parse_filter_expression",
    "parse_index",
    "parse_index_strict",
]
