"""Date-range sub-compiler for date, datetime and timestamp columns.

Compiles a DateRange into one boolean SQL fragment. Date parts are extracted
with dialect specific expressions; ``after``/``before`` bounds compare the
column against a formatted timestamp.
"""

import calendar
from datetime import date, datetime
from typing import Any

from relstore.errors import InvalidFilterExpressionError
from relstore.models.enums import DateCompare
from relstore.models.filters import DateBound, DateComponentValue, DateRange
from relstore.services.field_types import DATE_FORMAT, DATETIME_FORMAT

SQLITE_DATE_PARTS: dict[str, str] = {
    "year": "CAST(strftime('%Y', {column}) AS INTEGER)",
    "month": "CAST(strftime('%m', {column}) AS INTEGER)",
    "week": "CAST(strftime('%W', {column}) AS INTEGER)",
    "dayofyear": "CAST(strftime('%j', {column}) AS INTEGER)",
    "day": "CAST(strftime('%d', {column}) AS INTEGER)",
    # strftime('%w') counts from Sunday = 0; DAYOFWEEK() counts from Sunday = 1.
    "dayofweek": "(CAST(strftime('%w', {column}) AS INTEGER) + 1)",
    "hour": "CAST(strftime('%H', {column}) AS INTEGER)",
    "minute": "CAST(strftime('%M', {column}) AS INTEGER)",
    "second": "CAST(strftime('%S', {column}) AS INTEGER)",
}

MYSQL_DATE_PARTS: dict[str, str] = {
    "year": "YEAR({column})",
    "month": "MONTH({column})",
    "week": "WEEK({column}, 1)",
    "dayofyear": "DAYOFYEAR({column})",
    "day": "DAYOFMONTH({column})",
    "dayofweek": "DAYOFWEEK({column})",
    "hour": "HOUR({column})",
    "minute": "MINUTE({column})",
    "second": "SECOND({column})",
}

DATE_PART_DIALECTS: dict[str, dict[str, str]] = {
    "sqlite": SQLITE_DATE_PARTS,
    "mysql": MYSQL_DATE_PARTS,
    "mariadb": MYSQL_DATE_PARTS,
}


class DateQueryCompiler:
    """Compiles DateRange values for one SQL dialect."""

    def __init__(self, dialect_name: str, placeholder: str = "?") -> None:
        self._parts = DATE_PART_DIALECTS.get(dialect_name, SQLITE_DATE_PARTS)
        self._placeholder = placeholder

    def compile(self, column: str, date_range: DateRange, date_only: bool = False) -> tuple[str, list[Any]]:
        """Compile a date range against an already quoted column reference.

        Args:
            column: Quoted column reference, e.g. ``"`posts`.`published_at`"``.
            date_range: The range to match.
            date_only: Format bounds as dates (for ``date`` columns) instead of datetimes.

        Returns:
            A (sql, values) pair. Multiple conditions are parenthesized so the
            fragment composes safely under OR.
        """
        clauses: list[str] = []
        values: list[Any] = []

        for name, value in date_range.components():
            sql, component_values = self._compile_component(column, name, date_range.compare, value)
            clauses.append(sql)
            values.extend(component_values)

        if date_range.after is not None:
            if date_range.inclusive:
                clauses.append(f"{column} >= {self._placeholder}")
                values.append(self._format_bound(date_range.after, end=False, date_only=date_only))
            else:
                clauses.append(f"{column} > {self._placeholder}")
                values.append(self._format_bound(date_range.after, end=True, date_only=date_only))

        if date_range.before is not None:
            if date_range.inclusive:
                clauses.append(f"{column} <= {self._placeholder}")
                values.append(self._format_bound(date_range.before, end=True, date_only=date_only))
            else:
                clauses.append(f"{column} < {self._placeholder}")
                values.append(self._format_bound(date_range.before, end=False, date_only=date_only))

        if len(clauses) == 1:
            return clauses[0], values
        return "( " + " AND ".join(clauses) + " )", values

    def _compile_component(
        self,
        column: str,
        name: str,
        compare: DateCompare,
        value: DateComponentValue,
    ) -> tuple[str, list[Any]]:
        expression = self._parts[name].format(column=column)

        if compare in (DateCompare.IN, DateCompare.NOT_IN):
            assert isinstance(value, tuple)
            placeholders = ", ".join([self._placeholder] * len(value))
            return f"{expression} {compare.value} ({placeholders})", list(value)

        if compare in (DateCompare.BETWEEN, DateCompare.NOT_BETWEEN):
            assert isinstance(value, tuple)
            low, high = value
            return f"{expression} {compare.value} {self._placeholder} AND {self._placeholder}", [low, high]

        return f"{expression} {compare.value} {self._placeholder}", [value]

    def _format_bound(self, bound: DateBound, end: bool, date_only: bool) -> str:
        fmt = DATE_FORMAT if date_only else DATETIME_FORMAT

        if isinstance(bound, datetime):
            return bound.strftime(fmt)
        if isinstance(bound, date):
            moment = datetime(bound.year, bound.month, bound.day, 23, 59, 59) if end else datetime(
                bound.year, bound.month, bound.day
            )
            return moment.strftime(fmt)
        if isinstance(bound, str):
            return bound
        return self._resolve_period(bound, end).strftime(fmt)

    def _resolve_period(self, bound: dict[str, int], end: bool) -> datetime:
        """Start or end of the period named by a {year, month?, day?, ...} mapping."""
        if "year" not in bound:
            raise InvalidFilterExpressionError("Date bounds given as a mapping need a 'year'")
        year = bound["year"]
        try:
            if not end:
                return datetime(
                    year,
                    bound.get("month", 1),
                    bound.get("day", 1),
                    bound.get("hour", 0),
                    bound.get("minute", 0),
                    bound.get("second", 0),
                )
            month = bound.get("month", 12)
            day = bound.get("day", calendar.monthrange(year, month)[1])
            return datetime(
                year,
                month,
                day,
                bound.get("hour", 23),
                bound.get("minute", 59),
                bound.get("second", 59),
            )
        except ValueError as exc:
            raise InvalidFilterExpressionError(f"Invalid date bound {bound!r}: {exc}") from exc
