"""Tests for model schema definitions."""

from __future__ import annotations

import pytest

from syncstore.core.schema import (
    FieldDefinition,
    ModelDefinition,
    Relationship,
    Schema,
    ValidationError,
)


def make_post() -> ModelDefinition:
    return ModelDefinition(
        "Post",
        fields={
            "title": FieldDefinition("title", required=True),
            "rating": FieldDefinition("rating", "Int"),
            "score": FieldDefinition("score", "Float"),
            "published": FieldDefinition("published", "Boolean"),
            "tags": FieldDefinition("tags", is_array=True),
            "createdAt": FieldDefinition("createdAt", "AWSDateTime", read_only=True),
        },
    )


class TestFieldDefinition:
    """Tests for scalar checks."""

    @pytest.mark.parametrize(
        ("field_type", "value", "ok"),
        [
            ("String", "x", True),
            ("String", 1, False),
            ("Int", 3, True),
            ("Int", True, False),
            ("Int", 1.5, False),
            ("Float", 1, True),
            ("Float", 1.5, True),
            ("Boolean", False, True),
            ("Boolean", 0, False),
            ("AWSJSON", {"a": 1}, True),
            ("SomeEnum", 42, True),
        ],
    )
    def test_check_value(self, field_type: str, value: object, ok: bool) -> None:
        """Should check values against the declared scalar."""
        assert FieldDefinition("f", field_type).check_value(value) is ok

    def test_array_values(self) -> None:
        """Arrays check every item and allow null items."""
        field = FieldDefinition("tags", is_array=True)
        assert field.check_value(["a", None, "b"])
        assert not field.check_value("a")
        assert not field.check_value(["a", 1])


class TestModelDefinition:
    """Tests for ModelDefinition."""

    def test_id_added_automatically(self) -> None:
        """A default primary key adds a required id field."""
        model = ModelDefinition("Note")
        assert model.fields["id"].type == "ID"
        assert model.fields["id"].required
        assert model.plural_name == "Notes"
        assert not model.has_custom_primary_key

    def test_undeclared_key_field(self) -> None:
        """Custom key fields must be declared."""
        with pytest.raises(ValueError, match="not declared"):
            ModelDefinition("Order", primary_key=("customerId", "orderId"))

    def test_empty_key(self) -> None:
        """An empty primary key is rejected."""
        with pytest.raises(ValueError, match="empty primary key"):
            ModelDefinition("Order", primary_key=())

    def test_composite_key(self) -> None:
        """Composite keys are joined in declaration order."""
        model = ModelDefinition(
            "Order",
            fields={
                "customerId": FieldDefinition("customerId", "ID", required=True),
                "orderId": FieldDefinition("orderId", "ID", required=True),
            },
            primary_key=("customerId", "orderId"),
        )

        record = {"orderId": "o1", "customerId": "c1"}
        assert model.has_custom_primary_key
        assert model.identifier(record) == ("c1", "o1")
        assert model.key(record) == "c1#o1"
        assert model.key_from_identifier(("c1", "o1")) == "c1#o1"
        assert "id" not in model.fields

    def test_key_from_identifier_forms(self) -> None:
        """Identifiers may be a value, a tuple or a record."""
        model = ModelDefinition("Note")
        assert model.key_from_identifier("n1") == "n1"
        assert model.key_from_identifier(["n1"]) == "n1"
        assert model.key_from_identifier({"id": "n1", "x": 1}) == "n1"

    def test_key_from_identifier_wrong_arity(self) -> None:
        """A tuple of the wrong length is rejected."""
        with pytest.raises(ValidationError, match="needs 1 values"):
            ModelDefinition("Note").key_from_identifier(("a", "b"))

    def test_missing_key_field(self) -> None:
        """Records without their key cannot be keyed."""
        with pytest.raises(ValidationError, match="missing key field"):
            ModelDefinition("Note").key({"title": "x"})

    def test_ensure_identifier(self) -> None:
        """A missing id is generated on a copy."""
        model = ModelDefinition("Note")
        original = {"title": "x"}

        record = model.ensure_identifier(original)

        assert record["id"]
        assert "id" not in original
        assert model.ensure_identifier({"id": "keep"})["id"] == "keep"

    def test_validate_ok(self) -> None:
        """A well-formed record passes."""
        make_post().validate({"id": "1", "title": "Hello", "rating": 5, "tags": ["a"]})

    def test_validate_required(self) -> None:
        """Missing required fields are reported."""
        with pytest.raises(ValidationError, match="'title' is required"):
            make_post().validate({"id": "1"})

    def test_validate_read_only_not_required(self) -> None:
        """Read-only fields are never required from the client."""
        model = ModelDefinition(
            "Note",
            fields={"updatedAt": FieldDefinition("updatedAt", "AWSDateTime", required=True, read_only=True)},
        )
        model.validate({"id": "1"})

    def test_validate_type(self) -> None:
        """Scalar mismatches are reported with the expected type."""
        with pytest.raises(ValidationError, match="must be of type Int"):
            make_post().validate({"id": "1", "title": "x", "rating": "five"})
        with pytest.raises(ValidationError, match=r"must be of type \[String\]"):
            make_post().validate({"id": "1", "title": "x", "tags": "a"})

    def test_selection_set(self) -> None:
        """Selection includes fields, foreign keys and sync fields, not relations."""
        model = ModelDefinition(
            "Comment",
            fields={
                "postId": FieldDefinition("postId", "ID"),
                "post": FieldDefinition("post", "Post"),
                "content": FieldDefinition("content"),
            },
            relationships=(Relationship("post", "Post", "BELONGS_TO", ("postId",)),),
        )

        selected = model.selection_set()

        assert selected == [
            "postId",
            "content",
            "id",
            "_version",
            "_lastChangedAt",
            "_deleted",
        ]
        assert "post" not in selected

    def test_writable_fields(self) -> None:
        """Read-only and relationship fields are stripped."""
        model = ModelDefinition(
            "Comment",
            fields={
                "post": FieldDefinition("post", "Post"),
                "createdAt": FieldDefinition("createdAt", "AWSDateTime", read_only=True),
            },
            relationships=(Relationship("post", "Post"),),
        )

        writable = model.writable_fields(
            {"id": "c1", "post": {"id": "p1"}, "createdAt": "t", "extra": 1}
        )

        assert writable == {"id": "c1", "extra": 1}


class TestSchema:
    """Tests for Schema."""

    def test_lookup(self) -> None:
        """Models are found by name."""
        schema = Schema([ModelDefinition("A"), ModelDefinition("B", syncable=False)])

        assert schema.get("A").name == "A"
        assert "B" in schema
        assert "C" not in schema
        assert [m.name for m in schema] == ["A", "B"]
        assert [m.name for m in schema.syncable_models] == ["A"]

    def test_unknown_model(self) -> None:
        """Unknown models raise ValidationError."""
        with pytest.raises(ValidationError, match="Unknown model: C"):
            Schema([]).get("C")
