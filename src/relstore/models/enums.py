from enum import StrEnum


class IndexKind(StrEnum):
    PRIMARY = "PRIMARY KEY"
    KEY = "KEY"
    UNIQUE = "UNIQUE KEY"
    FULLTEXT = "FULLTEXT KEY"
    SPATIAL = "SPATIAL KEY"


class Relation(StrEnum):
    AND = "AND"
    OR = "OR"


class Comparison(StrEnum):
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    EQ = "="
    NEQ = "!="
    LIKE = "LIKE"


class DateCompare(StrEnum):
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    EQ = "="
    NEQ = "!="
    IN = "IN"
    NOT_IN = "NOT IN"
    BETWEEN = "BETWEEN"
    NOT_BETWEEN = "NOT BETWEEN"


class AssociationKind(StrEnum):
    HAS_MANY = "has_many"
    MANY_TO_MANY = "many_to_many"
    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"

    @property
    def uses_join_table(self) -> bool:
        return self in (AssociationKind.HAS_MANY, AssociationKind.MANY_TO_MANY)


class TransactionState(StrEnum):
    NONE = "none"
    STARTED = "started"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
