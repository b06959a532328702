"""Tests for the service factory module."""

from pathlib import Path

from relstore.config import Settings
from relstore.services.database import Database
from relstore.services.factory import create_database, create_schema_manager, create_test_database
from relstore.services.schema_manager import SchemaManager


class TestCreateDatabase:
    """Tests for create_database factory."""

    def test_uses_explicit_url(self, tmp_path: Path) -> None:
        db_path = tmp_path / "app.db"

        with create_database(f"sqlite:///{db_path}") as database:
            database.execute("CREATE TABLE `t` (`id` integer NOT NULL, PRIMARY KEY (`id`))")

        assert isinstance(database, Database)
        assert db_path.exists()

    def test_defaults_come_from_settings(self, tmp_path: Path) -> None:
        settings = Settings(database_url=f"sqlite:///{tmp_path / 'settings.db'}", echo_sql=True)

        database = create_database(settings=settings)

        assert database.engine.url.database == str(tmp_path / "settings.db")
        assert database.engine.echo is True

    def test_explicit_echo_overrides_settings(self) -> None:
        settings = Settings(database_url="sqlite://", echo_sql=True)

        database = create_database(echo=False, settings=settings)

        assert database.engine.echo is False


class TestCreateTestDatabase:
    """Tests for create_test_database factory."""

    def test_creates_in_memory_sqlite(self) -> None:
        database = create_test_database()

        assert database.dialect_name == "sqlite"
        assert database.engine.url.database is None

    def test_each_call_is_isolated(self) -> None:
        first = create_test_database()
        second = create_test_database()
        first.execute("CREATE TABLE `t` (`id` integer NOT NULL, PRIMARY KEY (`id`))")

        assert SchemaManager(first).table_exists("t")
        assert not SchemaManager(second).table_exists("t")


class TestCreateSchemaManager:
    """Tests for create_schema_manager factory."""

    def test_wraps_given_database(self) -> None:
        database = create_test_database()

        manager = create_schema_manager(database)

        assert isinstance(manager, SchemaManager)
        assert manager._database is database
