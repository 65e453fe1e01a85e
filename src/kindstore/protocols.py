"""
Protocol definitions for Datastore backends.

This module defines the value types exchanged between the Gateway and a
backend, and the interface contract that every backend must implement.
Using a Protocol class enables structural subtyping, so backends don't
need to explicitly inherit from it.

The value types mirror the Datastore v1 entity/key model closely enough
that the Google Cloud backend can translate them one-to-one, while the
in-memory backend can use them directly.
"""

from __future__ import annotations

from typing import (
    Protocol,
    Optional,
    List,
    Dict,
    Any,
    Mapping,
    Sequence,
    Tuple,
    runtime_checkable,
)
from dataclasses import dataclass, field
from enum import Enum


# =============================================================================
# Keys
# =============================================================================


@dataclass(frozen=True)
class PathElement:
    """One (Kind, id-or-name) segment of a key path."""

    kind: str
    id: Optional[int] = None
    name: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.id is not None or self.name is not None

    @property
    def id_or_name(self) -> Optional[Any]:
        return self.id if self.id is not None else self.name


@dataclass(frozen=True)
class Key:
    """The path-based identity of an entity.

    The last path element is the entity's own identity; any earlier
    elements form its ancestor chain.
    """

    path: Tuple[PathElement, ...]

    @classmethod
    def from_path(cls, *flat_path: Any) -> Key:
        """Build a key from alternating kinds and ids/names.

        An odd number of arguments produces an incomplete key, e.g.
        Key.from_path("Author", 7, "Book") is an incomplete Book key
        whose parent is Author 7.
        """
        elements: List[PathElement] = []
        for ix in range(0, len(flat_path), 2):
            kind = flat_path[ix]
            id_or_name = flat_path[ix + 1] if ix + 1 < len(flat_path) else None
            if isinstance(id_or_name, str):
                elements.append(PathElement(kind, name=id_or_name))
            else:
                elements.append(PathElement(kind, id=id_or_name))
        return cls(tuple(elements))

    @property
    def kind(self) -> str:
        return self.path[-1].kind

    @property
    def id(self) -> Optional[int]:
        return self.path[-1].id

    @property
    def name(self) -> Optional[str]:
        return self.path[-1].name

    @property
    def is_complete(self) -> bool:
        return self.path[-1].is_complete

    @property
    def parent(self) -> Optional[Key]:
        if len(self.path) < 2:
            return None
        return Key(self.path[:-1])

    @property
    def root(self) -> Key:
        """The root of this key's entity group."""
        return Key(self.path[:1])

    def flat_path(self) -> Tuple[Any, ...]:
        result: List[Any] = []
        for element in self.path:
            result.append(element.kind)
            if element.is_complete:
                result.append(element.id_or_name)
        return tuple(result)

    def with_id(self, key_id: int) -> Key:
        """Return a copy of this key with the last element completed by an id."""
        last = self.path[-1]
        return Key(self.path[:-1] + (PathElement(last.kind, id=key_id),))

    def is_ancestor_of(self, other: Key) -> bool:
        """True if this key's path is a prefix of (or equal to) the other's."""
        return other.path[: len(self.path)] == self.path

    def __str__(self) -> str:
        return "/".join(str(p) for p in self.flat_path())


# =============================================================================
# Entities, cursors and mutations
# =============================================================================


@dataclass
class RawEntity:
    """An entity as exchanged with a backend.

    Property values are None, bool, int, float, str, bytes, datetime, Key,
    a nested RawEntity (whose key may be None), or a list of these.
    """

    key: Optional[Key]
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Cursor:
    """An opaque cursor string, bound as a cursor rather than a literal."""

    value: str

    def __str__(self) -> str:
        return self.value


class CommitMode(Enum):
    TRANSACTIONAL = "TRANSACTIONAL"
    NON_TRANSACTIONAL = "NON_TRANSACTIONAL"


class MutationOp(Enum):
    # Insert with an incomplete key; the backend allocates a numeric id
    INSERT_AUTO_ID = "insert_auto_id"
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass
class Mutation:
    """A single write in a commit batch."""

    op: MutationOp
    entity: Optional[RawEntity] = None
    key: Optional[Key] = None

    @property
    def target_key(self) -> Key:
        if self.entity is not None and self.entity.key is not None:
            return self.entity.key
        assert self.key is not None
        return self.key


@dataclass
class CommitResult:
    """The outcome of a commit.

    keys has one element per mutation: the allocated key for an
    INSERT_AUTO_ID mutation, otherwise None.
    """

    index_updates: int
    keys: List[Optional[Key]] = field(default_factory=list)


@dataclass
class QueryResult:
    """A batch of query results and the cursor after its last result."""

    results: List[RawEntity]
    end_cursor: Optional[str]


# =============================================================================
# Backend Protocol
# =============================================================================


@runtime_checkable
class DatastoreBackendProtocol(Protocol):
    """Protocol for Datastore backends.

    Every failure is raised as a BackendError. Retry policy, if any,
    belongs to the backend.
    """

    def commit(
        self,
        mutations: Sequence[Mutation],
        mode: CommitMode,
        transaction: Optional[str] = None,
    ) -> CommitResult:
        """Apply all mutations atomically, or none of them."""
        ...

    def lookup(
        self, keys: Sequence[Key], transaction: Optional[str] = None
    ) -> List[RawEntity]:
        """Look up entities by key. Keys not found are absent from the result."""
        ...

    def run_query(
        self,
        gql: str,
        params: Optional[Mapping[str, Any]] = None,
        transaction: Optional[str] = None,
    ) -> QueryResult:
        """Run a GQL query with named parameters."""
        ...

    def begin_transaction(self, cross_group: bool = False) -> str:
        """Begin a transaction and return its opaque token."""
        ...

    def close(self) -> None:
        """Release backend resources."""
        ...
