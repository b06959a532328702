"""Database handle owning one live SQLAlchemy connection.

Every service receives a Database explicitly instead of reaching for a global
handle. Statements issued outside an explicit transaction each run in their
own short transaction; between ``begin()`` and ``commit()``/``rollback()``
all statements share the caller's transaction.
"""

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any, NamedTuple

import structlog
from sqlalchemy import Connection, Engine, create_engine, inspect
from sqlalchemy.engine import Inspector, RootTransaction
from sqlalchemy.exc import SQLAlchemyError

from relstore.errors import TransactionError


class StatementResult(NamedTuple):
    rows: list[dict[str, Any]]
    rowcount: int
    lastrowid: int | None


class Database:
    """Explicit, connection-scoped handle used by entities, queries and the schema manager.

    Accepts an Engine via dependency injection to support both persistent
    and in-memory databases for testing.
    """

    def __init__(
        self,
        engine: Engine,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._engine = engine
        self._connection: Connection | None = None
        self._transaction: RootTransaction | None = None
        self._logger = logger or structlog.get_logger(__name__)

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self._engine.dialect.name

    @property
    def placeholder(self) -> str:
        """Positional placeholder understood by the driver."""
        if self._engine.dialect.paramstyle == "qmark":
            return "?"
        return "%s"

    @property
    def connection(self) -> Connection:
        if self._connection is None or self._connection.closed:
            self._connection = self._engine.connect()
        return self._connection

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None and self._transaction.is_active

    @contextmanager
    def _scope(self) -> Iterator[Connection]:
        conn = self.connection
        # Join the caller's transaction, or the one an enclosing snapshot() opened.
        if self.in_transaction or conn.in_transaction():
            yield conn
            return
        with conn.begin():
            yield conn

    def execute(self, sql: str, params: Sequence[Any] = ()) -> StatementResult:
        """Run one statement and fetch everything it returns.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: Whatever the driver reports. Callers
                wrap it in the error type matching their operation.
        """
        with self._scope() as conn:
            result = conn.exec_driver_sql(sql, tuple(params))
            if result.returns_rows:
                rows = [dict(row) for row in result.mappings()]
                rowcount = len(rows)
            else:
                rows = []
                rowcount = result.rowcount
            lastrowid = result.lastrowid if not result.returns_rows else None

        self._logger.debug("statement_executed", sql=sql, param_count=len(params), rowcount=rowcount)
        return StatementResult(rows=rows, rowcount=rowcount, lastrowid=lastrowid)

    @contextmanager
    def snapshot(self) -> Iterator[None]:
        """Run several statements in one transaction scope (the caller's, if one is open)."""
        with self._scope():
            yield

    @contextmanager
    def inspector(self) -> Iterator[Inspector]:
        """Yield a fresh SQLAlchemy Inspector bound to this handle's connection."""
        with self._scope() as conn:
            yield inspect(conn)

    def begin(self) -> None:
        if self.in_transaction:
            raise TransactionError("Could not start transaction: a transaction is already active")
        try:
            self._transaction = self.connection.begin()
        except SQLAlchemyError as exc:
            self._transaction = None
            raise TransactionError(f"Could not start transaction: {exc}") from exc
        self._logger.debug("transaction_started")

    def commit(self) -> None:
        transaction = self._require_transaction("commit")
        try:
            transaction.commit()
        except SQLAlchemyError as exc:
            raise TransactionError(f"Could not commit changes: {exc}") from exc
        finally:
            self._transaction = None
        self._logger.debug("transaction_committed")

    def rollback(self) -> None:
        transaction = self._require_transaction("roll back")
        try:
            transaction.rollback()
        except SQLAlchemyError as exc:
            raise TransactionError(f"Could not rollback transaction: {exc}") from exc
        finally:
            self._transaction = None
        self._logger.debug("transaction_rolled_back")

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Commit on success, roll back on any exception."""
        self.begin()
        try:
            yield self
        except BaseException:
            if self.in_transaction:
                self.rollback()
            raise
        self.commit()

    def close(self) -> None:
        if self.in_transaction:
            self.rollback()
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _require_transaction(self, action: str) -> RootTransaction:
        if not self.in_transaction:
            raise TransactionError(f"Could not {action}: no transaction is active")
        assert self._transaction is not None
        return self._transaction


def create_engine_from_path(db_path: str, echo: bool = False) -> Engine:
    """Create a SQLAlchemy engine for the given SQLite database path.

    Args:
        db_path: Path to SQLite database file, or ":memory:" for in-memory.
        echo: Log every statement through SQLAlchemy's own logger.

    Returns:
        Engine instance configured for pysqlite.
    """
    if db_path == ":memory:":
        url = "sqlite://"
    else:
        url = f"sqlite:///{db_path}"
    return create_engine(url, echo=echo)
