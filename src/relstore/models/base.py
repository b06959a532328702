import re
from typing import Any

from pydantic import BaseModel, ConfigDict

_IDENTIFIER_RE = re.compile(r"^[0-9A-Za-z$_]+$")


class FrozenModel(BaseModel):
    """Base class for immutable value objects."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


def quote_identifier(name: str) -> str:
    """Backtick-quote a table or column name."""
    return f"`{ensure_identifier(name)}`"


def ensure_identifier(value: Any, field_name: str = "identifier") -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    name = value.strip()
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"{field_name} {value!r} is not a valid SQL identifier")
    return name


def ensure_non_empty_text(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    if not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value


def column_base_type(type_spec: str) -> str:
    """Return the lowercased base type keyword of a column type spec.

    "bigint(20) unsigned NOT NULL" -> "bigint", "datetime" -> "datetime".
    """
    match = re.match(r"\s*([A-Za-z_]+)", type_spec)
    if match is None:
        return ""
    return match.group(1).lower()
