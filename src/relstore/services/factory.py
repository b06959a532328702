"""Factory functions for creating and wiring database services.

Provides production factories that build handles from settings and test
factories that use in-memory SQLite for fast, isolated testing.
"""

import structlog
from sqlalchemy import create_engine

from relstore.config import Settings, get_settings
from relstore.services.database import Database, create_engine_from_path
from relstore.services.schema_manager import SchemaManager


def create_database(
    database_url: str | None = None,
    echo: bool | None = None,
    settings: Settings | None = None,
) -> Database:
    """Create a Database handle for the given URL.

    Args:
        database_url: SQLAlchemy URL. Defaults to ``settings.database_url``.
        echo: Log statements through SQLAlchemy. Defaults to ``settings.echo_sql``.
        settings: Settings to read defaults from. Defaults to ``get_settings()``.

    Returns:
        Database handle; the connection opens on first use.
    """
    settings = settings or get_settings()
    url = database_url or settings.database_url
    engine = create_engine(url, echo=settings.echo_sql if echo is None else echo)

    logger = structlog.get_logger(__name__)
    logger.debug("database_created", dialect=engine.dialect.name)
    return Database(engine=engine, logger=logger)


def create_test_database() -> Database:
    """Create a Database backed by a private in-memory SQLite database.

    Each call creates independent storage, so tests don't interfere.
    """
    return Database(engine=create_engine_from_path(":memory:"))


def create_schema_manager(database: Database | None = None) -> SchemaManager:
    """Create a SchemaManager, building a database from settings if none is given."""
    return SchemaManager(database or create_database())
