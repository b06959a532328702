"""Unit tests for index parsing and table schema validation."""

import pytest
from pydantic import ValidationError

from relstore.errors import SchemaParseError
from relstore.models.enums import IndexKind
from relstore.models.schema import (
    IndexSpec,
    ReconcileResult,
    TableSchema,
    get_primary_column,
    parse_index,
    parse_index_strict,
)


def _make_schema_data(**overrides) -> dict:
    data = {
        "fields": {
            "id": "integer NOT NULL",
            "slug": "varchar(191) NOT NULL",
            "published_at": "datetime NULL",
        },
        "indexes": ["PRIMARY KEY (id)", "UNIQUE KEY slug (slug)"],
    }
    data.update(overrides)
    return data


class TestParseIndex:
    """Tests for parse_index."""

    def test_parses_primary_key(self) -> None:
        parsed = parse_index("PRIMARY KEY (id)")

        assert parsed == IndexSpec(kind=IndexKind.PRIMARY, name="PRIMARY", columns=("id",))
        assert parsed.is_primary

    def test_primary_key_name_is_always_primary(self) -> None:
        parsed = parse_index("PRIMARY KEY pk_posts (id)")

        assert parsed is not None
        assert parsed.name == "PRIMARY"

    def test_parses_named_key_with_several_columns(self) -> None:
        parsed = parse_index("KEY author_status (author_id, status)")

        assert parsed is not None
        assert parsed.kind is IndexKind.KEY
        assert parsed.name == "author_status"
        assert parsed.columns == ("author_id", "status")

    def test_unnamed_key_defaults_to_column_list(self) -> None:
        parsed = parse_index("KEY (relationship, right_id)")

        assert parsed is not None
        assert parsed.name == "relationship, right_id"

    def test_index_is_synonym_for_key(self) -> None:
        assert parse_index("INDEX views (views)").kind is IndexKind.KEY
        assert parse_index("UNIQUE INDEX slug (slug)").kind is IndexKind.UNIQUE
        assert parse_index("FULLTEXT INDEX body (body)").kind is IndexKind.FULLTEXT

    def test_is_case_insensitive(self) -> None:
        parsed = parse_index("unique key slug (slug)")

        assert parsed is not None
        assert parsed.kind is IndexKind.UNIQUE

    def test_keeps_prefix_length_and_strips_it_from_column_names(self) -> None:
        parsed = parse_index("UNIQUE KEY `slug` (`slug`(191), created_at DESC)")

        assert parsed is not None
        assert parsed.name == "slug"
        assert parsed.columns == ("slug(191)", "created_at DESC")
        assert parsed.column_names == ("slug", "created_at")

    @pytest.mark.parametrize(
        "spec",
        ["", "KEY", "KEY name", "PRIMARY (id)", "CONSTRAINT fk FOREIGN KEY (x)", "KEY name ()"],
    )
    def test_returns_none_for_malformed_spec(self, spec: str) -> None:
        assert parse_index(spec) is None

    def test_strict_variant_raises(self) -> None:
        with pytest.raises(SchemaParseError) as excinfo:
            parse_index_strict("not an index")

        assert excinfo.value.spec == "not an index"


class TestGetPrimaryColumn:
    """Tests for get_primary_column."""

    def test_returns_primary_columns_from_mapping(self) -> None:
        assert get_primary_column(_make_schema_data()) == ("id",)

    def test_returns_composite_primary_columns(self) -> None:
        schema = {"fields": {}, "indexes": ["KEY x (b)", "PRIMARY KEY (a, b)"]}

        assert get_primary_column(schema) == ("a", "b")

    def test_returns_none_without_primary_key(self) -> None:
        assert get_primary_column({"indexes": ["KEY slug (slug)"]}) is None

    def test_returns_none_without_indexes(self) -> None:
        assert get_primary_column({"fields": {"id": "integer"}}) is None

    def test_accepts_table_schema(self) -> None:
        schema = TableSchema.model_validate(_make_schema_data())

        assert get_primary_column(schema) == ("id",)

    def test_rejects_two_primary_keys(self) -> None:
        with pytest.raises(SchemaParseError):
            get_primary_column({"indexes": ["PRIMARY KEY (a)", "PRIMARY KEY (b)"]})

    def test_rejects_unparseable_index(self) -> None:
        with pytest.raises(SchemaParseError):
            get_primary_column({"indexes": ["PRIMARY KEY (id)", "garbage"]})


class TestTableSchema:
    """Tests for TableSchema validation and helpers."""

    def test_accepts_valid_schema(self) -> None:
        schema = TableSchema.model_validate(_make_schema_data())

        assert list(schema.fields) == ["id", "slug", "published_at"]
        assert schema.primary_columns == ("id",)
        assert [index.name for index in schema.parsed_indexes] == ["PRIMARY", "slug"]

    def test_requires_primary_key(self) -> None:
        with pytest.raises(SchemaParseError):
            TableSchema.model_validate(_make_schema_data(indexes=["KEY slug (slug)"]))

    def test_rejects_index_on_undeclared_column(self) -> None:
        with pytest.raises(SchemaParseError):
            TableSchema.model_validate(_make_schema_data(indexes=["PRIMARY KEY (id)", "KEY missing (nope)"]))

    def test_rejects_invalid_column_name(self) -> None:
        with pytest.raises(ValidationError):
            TableSchema.model_validate(_make_schema_data(fields={"id": "integer", "bad name": "text"}))

    def test_rejects_empty_column_type(self) -> None:
        with pytest.raises(ValidationError):
            TableSchema.model_validate(_make_schema_data(fields={"id": "integer", "slug": "  "}))

    def test_rejects_empty_fields(self) -> None:
        with pytest.raises(ValidationError):
            TableSchema.model_validate({"fields": {}, "indexes": ["PRIMARY KEY (id)"]})

    def test_is_immutable(self) -> None:
        schema = TableSchema.model_validate(_make_schema_data())

        with pytest.raises(ValidationError):
            schema.indexes = ()

    def test_reports_base_types_and_date_fields(self) -> None:
        schema = TableSchema.model_validate(_make_schema_data())

        assert schema.base_type("slug") == "varchar"
        assert schema.is_date_field("published_at")
        assert not schema.is_date_field("slug")
        assert schema.has_field("slug")
        assert not schema.has_field("title")


class TestReconcileResult:
    """Tests for ReconcileResult.changed."""

    def test_unchanged_by_default(self) -> None:
        assert ReconcileResult(table="posts").changed is False

    def test_changed_when_something_was_added(self) -> None:
        assert ReconcileResult(table="posts", added_columns=("views",)).changed is True
        assert ReconcileResult(table="posts", created=True).changed is True
