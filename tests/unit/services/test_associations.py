"""Unit tests for has-many associations."""

import pytest

from relstore.errors import InvalidRelationError, SaveError
from relstore.models.enums import AssociationKind
from relstore.models.query import Relationship
from relstore.services.associations import (
    HasManyAssociation,
    ensure_relationship_table,
    relationship_table_name,
    relationship_table_schema,
)
from relstore.services.database import Database
from relstore.services.entity import Entity
from relstore.services.factory import create_test_database
from relstore.services.schema_manager import SchemaManager


class Track(Entity):
    table_name = "tracks"
    table_schema = {
        "fields": {"id": "integer NOT NULL", "title": "varchar(255) NOT NULL"},
        "indexes": ["PRIMARY KEY (id)"],
    }


class Playlist(Entity):
    table_name = "playlists"
    table_schema = {
        "fields": {"id": "integer NOT NULL", "name": "varchar(255) NOT NULL", "owner_id": "bigint NULL"},
        "indexes": ["PRIMARY KEY (id)"],
    }
    relationships = {
        "tracks": Relationship(kind=AssociationKind.HAS_MANY, target=Track),
        "owner": Relationship(kind=AssociationKind.BELONGS_TO, target=Track),
    }


class Album(Entity):
    table_name = "albums"
    table_schema = {
        "fields": {"id": "integer NOT NULL", "artist_id": "bigint NULL"},
        "indexes": ["PRIMARY KEY (id)"],
    }
    relationships = {"artist": Relationship(kind=AssociationKind.BELONGS_TO, target=Track)}


@pytest.fixture
def database() -> Database:
    database = create_test_database()
    Track.ensure_table(database)
    Playlist.ensure_table(database)
    return database


def _make_tracks(database: Database, *titles: str) -> list[Track]:
    return [Track.create(database, title=title) for title in titles]


def _make_association(database: Database) -> HasManyAssociation:
    """Build the playlist -> tracks association directly, without an owner."""
    return HasManyAssociation(database, "playlists_relationships", "tracks", Playlist, Track)


class TestRelationshipTable:
    """Tests for the shared association table."""

    def test_table_name_is_derived_from_owner(self) -> None:
        assert relationship_table_name("playlists") == "playlists_relationships"

    def test_schema_has_composite_primary_key_and_reverse_index(self) -> None:
        schema = relationship_table_schema()

        assert list(schema.fields) == ["relationship", "left_id", "right_id"]
        assert schema.primary_columns == ("relationship", "left_id", "right_id")
        assert [index.column_names for index in schema.parsed_indexes][1] == ("relationship", "right_id")

    def test_ensure_is_idempotent(self, database: Database) -> None:
        result = ensure_relationship_table(database, Playlist)

        assert result is not None
        assert not result.changed

    def test_belongs_to_needs_no_table(self, database: Database) -> None:
        results = Album.ensure_table(database)

        assert [result.table for result in results] == ["albums"]
        assert not SchemaManager(database).table_exists("albums_relationships")


class TestHasManyAssociation:
    """Tests for add/remove/items."""

    def test_add_and_list_items(self, database: Database) -> None:
        first, second = _make_tracks(database, "one", "two")
        playlist = Playlist.create(database, name="mix")

        assert playlist.relation("tracks").add(second) is True
        assert playlist.relation("tracks").add(first) is True

        items = playlist.relation("tracks").items()
        assert [track.get_field("title") for track in items] == ["one", "two"]
        assert playlist.relation("tracks").ids() == [first.get_id(), second.get_id()]

    def test_relation_handle_is_cached(self, database: Database) -> None:
        playlist = Playlist.create(database, name="mix")

        assert playlist.relation("tracks") is playlist.relation("tracks")

    def test_items_are_scoped_to_owner(self, database: Database) -> None:
        (track,) = _make_tracks(database, "one")
        mine = Playlist.create(database, name="mine")
        other = Playlist.create(database, name="other")
        mine.relation("tracks").add(track)

        assert other.relation("tracks").items() == []

    def test_duplicate_add_raises_save_error(self, database: Database) -> None:
        (track,) = _make_tracks(database, "one")
        playlist = Playlist.create(database, name="mix")
        playlist.relation("tracks").add(track)

        with pytest.raises(SaveError) as excinfo:
            playlist.relation("tracks").add(track)

        assert excinfo.value.table == "playlists_relationships"
        assert excinfo.value.fields == {
            "relationship": "tracks",
            "left_id": playlist.get_id(),
            "right_id": track.get_id(),
        }

    def test_remove(self, database: Database) -> None:
        (track,) = _make_tracks(database, "one")
        playlist = Playlist.create(database, name="mix")
        playlist.relation("tracks").add(track)

        assert playlist.relation("tracks").remove(track) is True
        assert playlist.relation("tracks").remove(track) is False
        assert playlist.relation("tracks").items() == []

    def test_owners_of_is_reverse_lookup(self, database: Database) -> None:
        (track,) = _make_tracks(database, "one")
        first = Playlist.create(database, name="first")
        second = Playlist.create(database, name="second")
        Playlist.create(database, name="third")
        first.relation("tracks").add(track)
        second.relation("tracks").add(track)

        association = _make_association(database)
        owners = association.owners_of(track)

        assert [owner.get_field("name") for owner in owners] == ["first", "second"]

    def test_wrong_entity_type_is_rejected(self, database: Database) -> None:
        playlist = Playlist.create(database, name="mix")
        other = Playlist.create(database, name="other")

        with pytest.raises(InvalidRelationError):
            playlist.relation("tracks").add(other)

    def test_unsaved_entity_is_rejected(self, database: Database) -> None:
        playlist = Playlist.create(database, name="mix")

        with pytest.raises(InvalidRelationError):
            playlist.relation("tracks").add(Track(database))

    def test_unknown_label_is_rejected(self, database: Database) -> None:
        playlist = Playlist.create(database, name="mix")

        with pytest.raises(InvalidRelationError):
            playlist.relation("albums")

    def test_belongs_to_label_has_no_association(self, database: Database) -> None:
        playlist = Playlist.create(database, name="mix")

        with pytest.raises(InvalidRelationError):
            playlist.relation("owner")
