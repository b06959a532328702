"""Lazy, read-only result set returned by queries."""

import math
from collections.abc import Callable, Iterator, Sequence
from typing import Any, Generic, TypeVar, overload

T = TypeVar("T")

Row = dict[str, Any]


class QueryResults(Sequence[T], Generic[T]):
    """Position-based sequence over one page of raw rows.

    Items are materialized on access, one at a time, so iterating a large page
    never holds more than one wrapped entity at once. The raw rows themselves
    are never exposed for mutation; assignment and deletion are no-ops.
    """

    def __init__(
        self,
        rows: list[Row],
        total_available: int,
        materialize: Callable[[Row], T],
    ) -> None:
        self._rows = rows
        self._total_available = total_available
        self._materialize = materialize

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[T]:
        for row in self._rows:
            yield self._materialize(dict(row))

    @overload
    def __getitem__(self, index: int) -> T: ...

    @overload
    def __getitem__(self, index: slice) -> list[T]: ...

    def __getitem__(self, index: int | slice) -> T | list[T]:
        if isinstance(index, slice):
            return [self._materialize(dict(row)) for row in self._rows[index]]
        return self._materialize(dict(self._rows[index]))

    def __setitem__(self, index: int, value: Any) -> None:
        """No op, the result set is immutable."""

    def __delitem__(self, index: int) -> None:
        """No op, the result set is immutable."""

    def __repr__(self) -> str:
        return f"QueryResults(count={len(self._rows)}, total_available={self._total_available})"

    def get(self, index: int) -> T | None:
        """Get the item at ``index``, or None if there is no row at that position."""
        if not 0 <= index < len(self._rows):
            return None
        return self._materialize(dict(self._rows[index]))

    def count(self) -> int:
        """Number of rows in this page."""
        return len(self._rows)

    def total_available(self) -> int:
        """Number of matching rows ignoring paging."""
        return self._total_available

    def total_pages(self, per_page: int) -> int:
        if per_page < 1:
            raise ValueError("per_page must be at least 1")
        return math.ceil(self._total_available / per_page)

    def raw_rows(self) -> list[Row]:
        """Copies of the raw rows, without materializing entities."""
        return [dict(row) for row in self._rows]

    def to_list(self) -> list[T]:
        """Materialize every item in the page.

        Generally the results can be iterated directly; this instantiates all
        items at once and may use more memory.
        """
        return list(self)
