"""Field type strategies: normalize values before they are staged or bound.

Each column's base type keyword ("bigint", "varchar", "datetime", ...) is
looked up in a registry of normalizers. Unknown types pass values through
unchanged, and ``None`` is never normalized so NULL stays NULL.
"""

from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from relstore.models.schema import TableSchema

Normalizer = Callable[[Any], Any]

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"


def normalize_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{value!r} is not a whole number")
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise TypeError(f"expected an integer, got {type(value).__name__}")


def normalize_float(value: Any) -> float:
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    raise TypeError(f"expected a number, got {type(value).__name__}")


def normalize_decimal(value: Any) -> str:
    if isinstance(value, bool):
        raise TypeError("expected a decimal, got bool")
    try:
        return str(Decimal(str(value).strip()))
    except InvalidOperation:
        raise ValueError(f"{value!r} is not a decimal number") from None


def normalize_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, (str, int, float, Decimal)) and not isinstance(value, bool):
        return str(value)
    raise TypeError(f"expected text, got {type(value).__name__}")


def normalize_bool(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int) and value in (0, 1):
        return value
    if isinstance(value, str) and value.strip().lower() in ("0", "1", "true", "false"):
        return 1 if value.strip().lower() in ("1", "true") else 0
    raise ValueError(f"{value!r} is not a boolean")


def normalize_datetime(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime(DATETIME_FORMAT)
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT) + " 00:00:00"
    if isinstance(value, str):
        return datetime.fromisoformat(value.strip()).strftime(DATETIME_FORMAT)
    raise TypeError(f"expected a datetime, got {type(value).__name__}")


def normalize_date(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.strftime(DATE_FORMAT)
    if isinstance(value, str):
        return date.fromisoformat(value.strip()[:10]).strftime(DATE_FORMAT)
    raise TypeError(f"expected a date, got {type(value).__name__}")


FIELD_TYPE_STRATEGIES: dict[str, Normalizer] = {
    "tinyint": normalize_int,
    "smallint": normalize_int,
    "mediumint": normalize_int,
    "int": normalize_int,
    "integer": normalize_int,
    "bigint": normalize_int,
    "float": normalize_float,
    "double": normalize_float,
    "real": normalize_float,
    "decimal": normalize_decimal,
    "numeric": normalize_decimal,
    "char": normalize_text,
    "varchar": normalize_text,
    "tinytext": normalize_text,
    "text": normalize_text,
    "mediumtext": normalize_text,
    "longtext": normalize_text,
    "bool": normalize_bool,
    "boolean": normalize_bool,
    "date": normalize_date,
    "datetime": normalize_datetime,
    "timestamp": normalize_datetime,
}


def get_normalizer(base_type: str) -> Normalizer | None:
    return FIELD_TYPE_STRATEGIES.get(base_type.lower())


def normalize_field_value(schema: TableSchema, field: str, value: Any) -> Any:
    """Normalize a value for the declared type of ``field``.

    Raises:
        ValueError, TypeError: If the value cannot represent the column's type.
    """
    if value is None:
        return None
    normalizer = get_normalizer(schema.base_type(field))
    if normalizer is None:
        return value
    return normalizer(value)


def bind_value(value: Any) -> Any:
    """Convert a Python value into something every driver can bind."""
    if isinstance(value, datetime):
        return value.strftime(DATETIME_FORMAT)
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    get_id = getattr(value, "get_id", None)
    if callable(get_id):
        return get_id()
    return value
