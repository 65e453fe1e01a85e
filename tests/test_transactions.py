"""
Tests for transaction tokens: one token, one commit.
"""

from __future__ import annotations

from typing import Any

import pytest

from kindstore import BackendError, Entity, Gateway, Key, Schema, Store
from kindstore.protocols import (
    CommitMode,
    DatastoreBackendProtocol,
    Mutation,
    MutationOp,
    RawEntity,
)


@pytest.fixture
def counters(recording: Any) -> Store:
    return Store(Schema("Counter").add_integer("value"), Gateway(recording))


class TestTokenConsumption:
    """Test that exactly one mutating call consumes the pending token."""

    def test_upsert_consumes_token(self, counters: Store, recording: Any) -> None:
        """The first upsert commits the transaction; the next does not."""
        counters.begin_transaction()
        assert counters.has_transaction()
        token = recording.calls[-1][1]

        counters.upsert(counters.create_entity({"value": 1}).set_key_name("a"))
        assert not counters.has_transaction()
        assert recording.calls[-1] == ("commit", token)

        counters.upsert(counters.create_entity({"value": 2}).set_key_name("a"))
        assert recording.calls[-1] == ("commit", None)

    def test_delete_consumes_token(self, counters: Store, recording: Any) -> None:
        """delete() consumes the token like upsert()."""
        counter = counters.create_entity({"value": 1}).set_key_name("a")
        counters.upsert(counter)
        counters.begin_transaction()
        token = recording.calls[-1][1]
        counters.delete(counter)
        assert recording.calls[-1] == ("commit", token)
        assert not counters.has_transaction()

    def test_reads_keep_token(self, counters: Store, recording: Any) -> None:
        """Lookups and queries use the token without consuming it."""
        counters.upsert(counters.create_entity({"value": 1}).set_key_name("a"))
        counters.begin_transaction()
        token = recording.calls[-1][1]

        counter = counters.fetch_by_name("a")
        assert counter is not None
        counters.fetch_by_names(["a"])
        counters.fetch_all("SELECT * FROM `Counter` WHERE __key__ HAS ANCESTOR KEY(Counter, 'a')")
        assert counters.has_transaction()
        assert recording.calls[-3:] == [
            ("lookup", token),
            ("lookup", token),
            ("run_query", token),
        ]

        counter.value += 1
        counters.upsert(counter)
        assert recording.calls[-1] == ("commit", token)
        found = counters.fetch_by_name("a")
        assert found is not None
        assert found.value == 2

    def test_no_transaction_is_non_transactional(self, counters: Store, recording: Any) -> None:
        """Without a pending token, writes commit non-transactionally."""
        counters.upsert(counters.create_entity({"value": 1}))
        assert recording.calls == [("commit", None)]

    def test_token_cannot_be_reused(self, recording: Any) -> None:
        """A committed token is spent."""
        gateway = Gateway(recording)
        token = gateway.begin_transaction()
        counters = Store("Counter", gateway)
        counters.upsert(counters.create_entity({"value": 1}).set_key_name("a"))
        assert recording.calls[-1] == ("commit", None)

        mutation = Mutation(
            MutationOp.UPSERT, entity=RawEntity(Key.from_path("Counter", "b"), {})
        )
        recording.commit([mutation], CommitMode.TRANSACTIONAL, token)
        with pytest.raises(BackendError):
            recording.commit([mutation], CommitMode.TRANSACTIONAL, token)


class TestEntityGroups:
    """Test entity-group limits on transactions."""

    def test_single_group_transaction(self, backend: DatastoreBackendProtocol) -> None:
        """Entities under one root commit together in a transaction."""
        authors = Store(Schema("Author").add_string("name"), Gateway(backend))
        books = Store(Schema("Book").add_string("title"), Gateway(backend))
        herbert = authors.create_entity({"name": "Frank Herbert"}).set_key_name("herbert")
        authors.upsert(herbert)

        batch = [
            books.create_entity({"title": t}).set_key_name(t.lower()).set_ancestry(herbert)
            for t in ("Dune", "Children")
        ]
        books.begin_transaction()
        books.upsert(batch)
        assert sorted(b.title for b in books.fetch_entity_group(herbert)) == ["Children", "Dune"]

    def test_cross_group_transaction(self, backend: DatastoreBackendProtocol) -> None:
        """A cross-group transaction may write to several entity groups."""
        books = Store(Schema("Book").add_string("title"), Gateway(backend))
        batch = [
            books.create_entity({"title": t}).set_key_name(t.lower())
            for t in ("Dune", "Emma", "Ulysses")
        ]
        books.begin_transaction(cross_group=True)
        books.upsert(batch)
        assert len(books.fetch_by_names(["dune", "emma", "ulysses"])) == 3

    def test_single_group_rejects_several_roots(self, memory: Any) -> None:
        """Without cross_group, one transaction covers one entity group."""
        books = Store(Schema("Book").add_string("title"), Gateway(memory))
        batch = [
            books.create_entity({"title": t}).set_key_name(t.lower())
            for t in ("Dune", "Emma")
        ]
        books.begin_transaction()
        with pytest.raises(BackendError):
            books.upsert(batch)
        # The Store clears the token even when the commit fails
        assert not books.has_transaction()
        assert books.fetch_by_names(["dune", "emma"]) == []

    def test_cross_group_limit(self, memory: Any) -> None:
        """A cross-group transaction touches at most 25 entity groups."""
        books = Store(Schema("Book").add_integer("n"), Gateway(memory))
        batch = [books.create_entity({"n": n}).set_key_id(n) for n in range(1, 27)]
        books.begin_transaction(cross_group=True)
        with pytest.raises(BackendError):
            books.upsert(batch)
        books.begin_transaction(cross_group=True)
        books.upsert(batch[:25])
        assert len(memory) == 25


def test_entity_subclass_in_transaction(recording: Any) -> None:
    """Reads in a transaction build the configured entity class."""

    class Counter(Entity):
        def bump(self) -> None:
            self.value += 1

    counters = Store(Schema("Counter").add_integer("value"), Gateway(recording))
    counters.set_entity_class(Counter)
    counters.upsert(counters.create_entity({"value": 1}).set_key_name("a"))
    counters.begin_transaction()
    counter = counters.fetch_by_name("a")
    assert isinstance(counter, Counter)
    counter.bump()
    counters.upsert(counter)
    assert counters.fetch_by_name("a").value == 2  # type: ignore[union-attr]
