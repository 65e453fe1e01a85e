"""
Tests for the Backend Gateway: mapping, writes, lookups and queries.

These tests use the in-memory backend, so allocated ids are predictable.
"""

from __future__ import annotations

from typing import Any

import pytest

from kindstore import (
    CallOptions,
    Entity,
    Gateway,
    InvalidKeyError,
    Key,
    Schema,
    SchemaMismatchError,
)
from kindstore.memory import MemoryBackend
from kindstore.protocols import CommitMode, RawEntity


@pytest.fixture
def schema() -> Schema:
    address = Schema("Address").add_string("city").add_string("country")
    return (
        Schema("Author")
        .add_string("name")
        .add_string("handle")
        .add_key("publisher")
        .add_entity("home", address)
        .add_list("offices", address)
        .add_list("aliases")
        .add_entity("extra")
    )


@pytest.fixture
def gateway(memory: MemoryBackend) -> Gateway:
    return Gateway(memory)


@pytest.fixture
def options(schema: Schema) -> CallOptions:
    return CallOptions(schema)


class TestCallOptions:
    """Test the per-call context."""

    def test_mode_follows_transaction(self, schema: Schema) -> None:
        """A transaction token makes the call transactional."""
        assert CallOptions(schema).mode is CommitMode.NON_TRANSACTIONAL
        assert CallOptions(schema, "token").mode is CommitMode.TRANSACTIONAL


class TestPutMulti:
    """Test writing entities."""

    def test_auto_id_is_written_back(
        self, gateway: Gateway, options: CallOptions, schema: Schema
    ) -> None:
        """Entities without a key get the backend-allocated numeric id."""
        first = Entity(schema).set("name", "Frank Herbert")
        second = Entity(schema).set("name", "Jane Austen")
        result = gateway.put_multi([first, second], options)
        assert (first.key_id, second.key_id) == (1, 2)
        assert result.index_updates == 2

    def test_explicit_key_is_upserted(
        self, gateway: Gateway, options: CallOptions, schema: Schema, memory: MemoryBackend
    ) -> None:
        """Writing the same key twice replaces the record."""
        author = Entity(schema).set_key_name("herbert").set("name", "Frank")
        gateway.put_multi([author], options)
        author.name = "Frank Herbert"
        gateway.put_multi([author], options)
        assert len(memory) == 1
        found = gateway.fetch_by_name("herbert", options)
        assert found is not None
        assert found.name == "Frank Herbert"
        assert found.key_id is None

    def test_key_property_supplies_key_name(
        self, gateway: Gateway, options: CallOptions, schema: Schema
    ) -> None:
        """The Schema's key property becomes the key name."""
        schema.key_property = "handle"
        author = Entity(schema).set("name", "Frank Herbert").set("handle", "fherbert")
        gateway.put_multi([author], options)
        assert author.key_name == "fherbert"
        assert author.key_id is None
        assert gateway.fetch_by_name("fherbert", options) == author

    def test_changed_key_property_is_rejected(
        self, gateway: Gateway, options: CallOptions, schema: Schema, memory: MemoryBackend
    ) -> None:
        """The key name stays fixed once taken from the key property."""
        schema.key_property = "handle"
        author = Entity(schema).set("name", "Frank Herbert").set("handle", "frank")
        gateway.put_multi([author], options)
        author.handle = "fherbert"
        with pytest.raises(InvalidKeyError, match="cannot change"):
            gateway.put_multi([author], options)
        assert author.key_name == "frank"
        assert len(memory) == 1
        assert gateway.fetch_by_name("fherbert", options) is None

    def test_unbound_entity_takes_call_schema(
        self, gateway: Gateway, options: CallOptions
    ) -> None:
        """An Entity without a Schema is written with the call's Schema."""
        author = Entity()
        author.name = "Ursula"
        gateway.put_multi([author], options)
        assert author.schema is options.schema
        assert author.kind == "Author"

    def test_empty_batch(self, gateway: Gateway, options: CallOptions) -> None:
        """An empty batch makes no backend call."""
        assert gateway.put_multi([], options).index_updates == 0

    def test_child_entity_keeps_ancestor(
        self, gateway: Gateway, options: CallOptions, schema: Schema
    ) -> None:
        """A child's key is allocated under its ancestor."""
        parent = Entity(Schema("Publisher")).set_key_name("ace")
        author = Entity(schema).set("name", "Frank").set_ancestry(parent)
        gateway.put_multi([author], options)
        assert author.key_id == 1
        found = gateway.fetch_by_key(Key.from_path("Publisher", "ace", "Author", 1), options)
        assert found is not None
        assert found.ancestry == Key.from_path("Publisher", "ace")


class TestMapping:
    """Test conversion between Entities and backend records."""

    def test_nested_values(self, gateway: Gateway, schema: Schema) -> None:
        """Keys, nested entities, dicts and lists are mapped for the backend."""
        address = Schema("Address").add_string("city")
        publisher = Entity(Schema("Publisher")).set_key_name("ace")
        author = (
            Entity(schema)
            .set_key_id(5)
            .set("publisher", publisher)
            .set("home", Entity(address).set("city", "Tacoma"))
            .set("offices", [{"city": "Seattle"}])
            .set("aliases", ("F.H.",))
        )
        raw = gateway.map_entity(author)
        assert raw.key == Key.from_path("Author", 5)
        assert raw.properties["publisher"] == Key.from_path("Publisher", "ace")
        assert raw.properties["home"] == RawEntity(None, {"city": "Tacoma"})
        assert raw.properties["offices"] == [RawEntity(None, {"city": "Seattle"})]
        assert raw.properties["aliases"] == ["F.H."]

    def test_demap_uses_nested_schemas(self, gateway: Gateway, schema: Schema) -> None:
        """Nested records become Entities where a nested Schema exists."""
        raw = RawEntity(
            Key.from_path("Author", 5),
            {
                "name": "Frank",
                "home": RawEntity(None, {"city": "Tacoma"}),
                "offices": [RawEntity(None, {"city": "Seattle"})],
                "extra": RawEntity(None, {"note": "x"}),
            },
        )
        author = gateway.demap(raw, schema)
        assert author.key_id == 5
        assert isinstance(author.home, Entity)
        assert author.home.kind == "Address"
        assert author.home.city == "Tacoma"
        assert author.offices[0].city == "Seattle"
        assert author.extra == {"note": "x"}

    def test_embedded_values_round_trip(
        self, gateway: Gateway, options: CallOptions, schema: Schema
    ) -> None:
        """Embedded entities come back as written: Entities or dicts."""
        home = Entity(schema.get_nested_schema("home")).set("city", "Reykjavik")
        author = Entity(schema).set("home", home).set("extra", {"note": "x"})
        with pytest.raises(SchemaMismatchError):
            author.extra = Entity(Schema("Address")).set("city", "Reykjavik")
        gateway.put_multi([author], options)
        found = gateway.fetch_by_id(author.key_id, options)  # type: ignore[arg-type]
        assert found is not None
        assert found.get_data() == author.get_data()

    def test_demap_drops_undeclared_properties(
        self, gateway: Gateway, schema: Schema
    ) -> None:
        """A strict Schema ignores stored properties it does not declare."""
        raw = RawEntity(Key.from_path("Author", 5), {"name": "Frank", "legacy": 1})
        author = gateway.demap(raw, schema)
        assert author.get_data() == {"name": "Frank"}

    def test_demap_open_schema_keeps_everything(self, gateway: Gateway) -> None:
        """An open Schema keeps every stored property."""
        raw = RawEntity(Key.from_path("Note", "n1"), {"text": "hi", "count": 2})
        note = gateway.demap(raw, Schema("Note"))
        assert note.key_name == "n1"
        assert note.get_data() == {"text": "hi", "count": 2}

    def test_demap_uses_entity_class(self, gateway: Gateway, schema: Schema) -> None:
        """Entities are built from the Schema's entity class."""

        class Author(Entity):
            pass

        schema.set_entity_class(Author)
        author = gateway.demap(RawEntity(Key.from_path("Author", 5), {}), schema)
        assert type(author) is Author


class TestDelete:
    """Test deleting entities."""

    def test_delete_by_key(
        self, gateway: Gateway, options: CallOptions, schema: Schema, memory: MemoryBackend
    ) -> None:
        """Deleted entities can no longer be fetched."""
        author = Entity(schema).set("name", "Frank")
        gateway.put_multi([author], options)
        gateway.delete_multi([author], options)
        assert len(memory) == 0
        assert gateway.fetch_by_id(1, options) is None

    def test_delete_without_key_raises(
        self, gateway: Gateway, options: CallOptions, schema: Schema
    ) -> None:
        """An Entity that was never written cannot be deleted."""
        with pytest.raises(InvalidKeyError):
            gateway.delete_multi([Entity(schema)], options)


class TestLookups:
    """Test fetching by id, name and key."""

    def test_missing_entities_are_omitted(
        self, gateway: Gateway, options: CallOptions, schema: Schema
    ) -> None:
        """Multi-fetches omit keys that are not found."""
        gateway.put_multi([Entity(schema).set("name", n) for n in ("a", "b")], options)
        found = gateway.fetch_by_ids([1, 99, 2], options)
        assert [a.name for a in found] == ["a", "b"]
        assert gateway.fetch_by_id(99, options) is None
        assert gateway.fetch_by_names(["nobody"], options) == []

    @pytest.mark.parametrize("key_id", [0, -3, "1"])
    def test_malformed_id_raises(
        self, gateway: Gateway, options: CallOptions, key_id: Any
    ) -> None:
        """A malformed id is an error, not an empty result."""
        with pytest.raises(InvalidKeyError):
            gateway.fetch_by_id(key_id, options)

    def test_malformed_name_raises(self, gateway: Gateway, options: CallOptions) -> None:
        """A malformed name is an error, not an empty result."""
        with pytest.raises(InvalidKeyError):
            gateway.fetch_by_name("", options)

    def test_incomplete_key_raises(self, gateway: Gateway, options: CallOptions) -> None:
        """Incomplete keys cannot be looked up."""
        with pytest.raises(InvalidKeyError):
            gateway.fetch_by_keys([Key.from_path("Author")], options)

    def test_lookup_forwards_transaction(self, recording: Any, schema: Schema) -> None:
        """The call's transaction token is passed to the backend."""
        gateway = Gateway(recording)
        token = gateway.begin_transaction()
        gateway.fetch_by_id(1, CallOptions(schema, token))
        assert recording.calls[-1] == ("lookup", token)


class TestGql:
    """Test running queries through the Gateway."""

    def test_end_cursor_is_remembered(
        self, gateway: Gateway, options: CallOptions, schema: Schema
    ) -> None:
        """The cursor after the last result is kept for the next page."""
        gateway.put_multi([Entity(schema).set("name", str(n)) for n in range(3)], options)
        assert gateway.get_end_cursor() is None
        results = gateway.gql("SELECT * FROM `Author` LIMIT 2", None, options)
        assert len(results) == 2
        cursor = gateway.get_end_cursor()
        assert cursor is not None
        rest = gateway.gql("SELECT * FROM `Author` OFFSET @c", {"c": cursor}, options)
        assert [r.properties["name"] for r in rest] == ["2"]
