"""Unit tests for the Entity base class."""

from datetime import datetime

import pytest

from relstore.errors import (
    AlreadyDeletedError,
    CannotReloadDeletedError,
    CannotReloadNewError,
    DeleteError,
    InvalidFieldError,
    InvalidFieldValueError,
    RecordNotFoundError,
    SaveError,
    SchemaError,
    SchemaParseError,
)
from relstore.models.schema import TableSchema
from relstore.services.database import Database
from relstore.services.entity import Entity, ReadOnlyEntity, TableDefinition
from relstore.services.factory import create_test_database


class Book(Entity):
    table_name = "books"
    table_schema = {
        "fields": {
            "id": "integer NOT NULL",
            "title": "varchar(255) NOT NULL",
            "isbn": "varchar(20) NOT NULL",
            "pages": "int NOT NULL DEFAULT 0",
            "released_at": "datetime NULL",
        },
        "indexes": ["PRIMARY KEY (id)", "UNIQUE KEY isbn (isbn)"],
    }


class Country(Entity):
    """Natural primary key."""

    table_name = "countries"
    table_schema = {
        "fields": {"code": "char(2) NOT NULL", "name": "varchar(100) NOT NULL"},
        "indexes": ["PRIMARY KEY (code)"],
    }


class CatalogBook(ReadOnlyEntity):
    table_name = "books"
    table_schema = Book.table_schema


@pytest.fixture
def database() -> Database:
    database = create_test_database()
    Book.ensure_table(database)
    Country.ensure_table(database)
    return database


def _make_book(database: Database, isbn: str = "978-0", **fields) -> Book:
    book = Book(database)
    book.set_field("title", fields.pop("title", "Dune"))
    book.set_field("isbn", isbn)
    for key, value in fields.items():
        book.set_field(key, value)
    return book


class TestEntityDeclaration:
    """Tests for class-level declarations."""

    def test_mapping_schema_is_validated(self) -> None:
        assert isinstance(Book.table_schema, TableSchema)
        assert Book.identity_column() == "id"

    def test_entities_satisfy_table_definition(self) -> None:
        assert isinstance(Book, TableDefinition)

    def test_composite_primary_key_is_rejected(self) -> None:
        with pytest.raises(SchemaParseError):

            class Pair(Entity):
                table_name = "pairs"
                table_schema = {
                    "fields": {"a": "integer NOT NULL", "b": "integer NOT NULL"},
                    "indexes": ["PRIMARY KEY (a, b)"],
                }


class TestEntityFields:
    """Tests for staging and reading fields."""

    def test_new_entity_state(self, database: Database) -> None:
        book = Book(database)

        assert book.is_new()
        assert not book.is_modified()
        assert book.get_id() is None

    def test_set_field_stages_without_writing(self, database: Database) -> None:
        book = _make_book(database)

        assert book.is_modified()
        assert book.get_field("title") == "Dune"
        assert Book.query(database).get_results().total_available() == 0

    def test_pending_value_shadows_persisted(self, database: Database) -> None:
        book = Book(database, {"id": 1, "title": "Old", "isbn": "1"})
        book.set_field("title", "New")

        assert book.get_field("title") == "New"
        assert book.to_dict() == {"id": 1, "title": "New", "isbn": "1"}

    def test_values_are_normalized(self, database: Database) -> None:
        book = _make_book(database, pages="320", released_at=datetime(2024, 1, 2, 3, 4, 5))

        assert book.get_field("pages") == 320
        assert book.get_field("released_at") == "2024-01-02 03:04:05"

    def test_unknown_field_is_rejected(self, database: Database) -> None:
        book = Book(database)

        with pytest.raises(InvalidFieldError):
            book.set_field("author", "Herbert")
        with pytest.raises(InvalidFieldError):
            book.get_field("author")

    def test_unconvertible_value_is_rejected(self, database: Database) -> None:
        book = Book(database)

        with pytest.raises(InvalidFieldValueError) as excinfo:
            book.set_field("pages", "many")

        assert excinfo.value.field == "pages"
        assert not book.is_modified()


class TestEntitySave:
    """Tests for insert and update."""

    def test_insert_then_get_round_trip(self, database: Database) -> None:
        book = _make_book(database, pages=412)

        assert book.save() is True

        assert not book.is_new()
        assert not book.is_modified()
        assert book.get_id() == 1
        fetched = Book.get(database, book.get_id())
        assert fetched is not None
        assert fetched.to_dict() == book.to_dict()
        assert fetched.get_field("pages") == 412

    def test_insert_picks_up_column_defaults(self, database: Database) -> None:
        book = _make_book(database)
        book.save()

        assert book.get_field("pages") == 0
        assert book.get_field("released_at") is None

    def test_save_without_changes_is_a_no_op(self, database: Database) -> None:
        book = _make_book(database)
        book.save()

        assert book.save() is False

    def test_update_writes_only_pending_fields(self, database: Database) -> None:
        book = _make_book(database)
        book.save()
        other_handle = Book.get(database, book.get_id())
        other_handle.set_field("pages", 99)
        other_handle.save()

        book.set_field("title", "Dune Messiah")
        assert book.save() is True

        fetched = Book.get(database, book.get_id())
        assert fetched.get_field("title") == "Dune Messiah"
        assert fetched.get_field("pages") == 99
        assert book.get_field("title") == "Dune Messiah"
        assert not book.is_modified()

    def test_update_of_vanished_row_returns_false(self, database: Database) -> None:
        book = _make_book(database)
        book.save()
        Book.get(database, book.get_id()).delete()

        book.set_field("title", "Gone")

        assert book.save() is False
        assert book.is_modified()

    def test_natural_key_insert(self, database: Database) -> None:
        country = Country.create(database, code="NL", name="Netherlands")

        assert country.get_id() == "NL"
        assert Country.get(database, "NL").get_field("name") == "Netherlands"

    def test_driver_failure_raises_save_error(self, database: Database) -> None:
        _make_book(database, isbn="dup").save()
        duplicate = _make_book(database, isbn="dup", title="Copy")

        with pytest.raises(SaveError) as excinfo:
            duplicate.save()

        assert excinfo.value.table == "books"
        assert excinfo.value.fields["isbn"] == "dup"
        assert excinfo.value.entity is duplicate
        assert duplicate.is_new()
        assert duplicate.is_modified()

    def test_create_saves_immediately(self, database: Database) -> None:
        book = Book.create(database, title="Emma", isbn="1")

        assert not book.is_new()
        assert Book.get(database, book.get_id()) is not None


class TestEntityLookup:
    """Tests for get and get_many."""

    def test_get_missing_returns_none(self, database: Database) -> None:
        assert Book.get(database, 404) is None

    def test_get_many_returns_existing_in_id_order(self, database: Database) -> None:
        books = [Book.create(database, title=f"Book {n}", isbn=str(n)) for n in range(3)]

        fetched = Book.get_many(database, [books[2].get_id(), 404, books[0].get_id()])

        assert [book.get_field("title") for book in fetched] == ["Book 0", "Book 2"]

    def test_get_many_without_ids(self, database: Database) -> None:
        assert Book.get_many(database, []) == []


class TestEntityDeleteAndReload:
    """Tests for delete and reload."""

    def test_delete_removes_row(self, database: Database) -> None:
        book = Book.create(database, title="Dune", isbn="1")

        book.delete()

        assert book.is_deleted()
        assert Book.get(database, book.get_id()) is None

    def test_deleted_entity_rejects_further_use(self, database: Database) -> None:
        book = Book.create(database, title="Dune", isbn="1")
        book.delete()

        with pytest.raises(AlreadyDeletedError):
            book.save()
        with pytest.raises(AlreadyDeletedError):
            book.set_field("title", "x")
        with pytest.raises(AlreadyDeletedError):
            book.get_field("title")
        with pytest.raises(DeleteError):
            book.delete()
        with pytest.raises(CannotReloadDeletedError):
            book.reload()

    def test_delete_new_entity_raises(self, database: Database) -> None:
        with pytest.raises(DeleteError):
            Book(database).delete()

    def test_delete_of_vanished_row_raises(self, database: Database) -> None:
        book = Book.create(database, title="Dune", isbn="1")
        Book.get(database, book.get_id()).delete()

        with pytest.raises(DeleteError) as excinfo:
            book.delete()

        assert excinfo.value.where == {"id": book.get_id()}
        assert not book.is_deleted()

    def test_reload_discards_pending(self, database: Database) -> None:
        book = Book.create(database, title="Dune", isbn="1")
        book.set_field("title", "Draft title")

        book.reload()

        assert book.get_field("title") == "Dune"
        assert not book.is_modified()

    def test_reload_new_entity_raises(self, database: Database) -> None:
        with pytest.raises(CannotReloadNewError):
            Book(database).reload()

    def test_reload_vanished_row_raises(self, database: Database) -> None:
        book = Book.create(database, title="Dune", isbn="1")
        Book.get(database, book.get_id()).delete()

        with pytest.raises(RecordNotFoundError):
            book.reload()


class TestReadOnlyEntity:
    """Tests for ReadOnlyEntity."""

    def test_can_read(self, database: Database) -> None:
        book = Book.create(database, title="Dune", isbn="1")

        fetched = CatalogBook.get(database, book.get_id())

        assert isinstance(fetched, CatalogBook)
        assert fetched.get_field("title") == "Dune"
        assert CatalogBook.query(database).get_results().count() == 1

    def test_cannot_write(self, database: Database) -> None:
        book = Book.create(database, title="Dune", isbn="1")
        fetched = CatalogBook.get(database, book.get_id())
        fetched.set_field("title", "x")

        with pytest.raises(SaveError):
            fetched.save()
        with pytest.raises(DeleteError):
            fetched.delete()

    def test_cannot_migrate(self, database: Database) -> None:
        with pytest.raises(SchemaError):
            CatalogBook.ensure_table(database)
