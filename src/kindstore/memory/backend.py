"""
In-memory Datastore backend.

This module provides MemoryBackend, which implements
DatastoreBackendProtocol with Python dictionaries. It follows Datastore
semantics where the mapper can observe them: numeric id allocation, atomic
commit batches, entity-group limits on transactions, ancestor queries,
list-property matching and cursor-based paging.

It is intended for tests and local development. Queries use the GQL subset
described in kindstore.memory.gql; cursors are positions in the ordered
result set, so they are only stable while the data is unchanged.
"""

from __future__ import annotations

import base64
import copy
import itertools
import logging
import uuid
from datetime import datetime, timezone
from threading import RLock
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)
from dataclasses import dataclass, field

from ..errors import BackendError
from ..protocols import (
    CommitMode,
    CommitResult,
    Cursor,
    Key,
    Mutation,
    MutationOp,
    QueryResult,
    RawEntity,
)
from .gql import Condition, GqlQuery, Param, parse_gql

_log = logging.getLogger(__name__)

UTC = timezone.utc

# The most entity groups a cross-group transaction may touch
MAX_CROSS_GROUP_ENTITY_GROUPS = 25

IdAllocator = Callable[[], int]


@dataclass
class _TransactionState:
    cross_group: bool
    groups: Set[Key] = field(default_factory=set)


# =============================================================================
# Value ordering
# =============================================================================


def _key_order(key: Key) -> Tuple[Any, ...]:
    # Numeric ids sort before names within a kind
    return tuple(
        (e.kind, 0, e.id) if e.id is not None else (e.kind, 1, e.name or "")
        for e in key.path
    )


def sort_key(value: Any) -> Tuple[int, Any]:
    """A total order over property values, ranked by type first."""
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (3, value)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return (2, value.timestamp())
    if isinstance(value, bytes):
        return (4, value)
    if isinstance(value, str):
        return (5, value)
    if isinstance(value, Key):
        return (6, _key_order(value))
    return (7, repr(value))


def _compare(op: str, left: Any, right: Any) -> bool:
    a, b = sort_key(left), sort_key(right)
    if op == "=":
        return a == b
    if op == "!=":
        return a != b
    # Inequalities only match values of the same type rank
    if a[0] != b[0]:
        return False
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    raise BackendError(f"Unsupported operator {op!r}")


_MISSING = object()


def _property_value(entity: RawEntity, prop: str) -> Any:
    """Resolve a (possibly dotted) property name; _MISSING if absent."""
    if prop == "__key__":
        return entity.key
    current: Any = entity
    for part in prop.split("."):
        if isinstance(current, list):
            # A dotted name over a list of entities yields every match
            values = [
                v.properties[part]
                for v in current
                if isinstance(v, RawEntity) and part in v.properties
            ]
            if not values:
                return _MISSING
            current = values
        elif isinstance(current, RawEntity) and part in current.properties:
            current = current.properties[part]
        else:
            return _MISSING
    return current


# =============================================================================
# Cursors
# =============================================================================


def encode_cursor(position: int) -> str:
    return base64.urlsafe_b64encode(f"pos:{position}".encode("ascii")).decode("ascii")


def decode_cursor(cursor: str) -> int:
    try:
        text = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("ascii")
        prefix, _, position = text.partition(":")
        if prefix != "pos":
            raise ValueError(prefix)
        return int(position)
    except ValueError as e:
        raise BackendError(f"Invalid cursor: {cursor!r}") from e


# =============================================================================
# Backend
# =============================================================================


class MemoryBackend:
    """In-memory implementation of DatastoreBackendProtocol.

    Usage:
        from kindstore import Gateway, Store
        from kindstore.memory import MemoryBackend

        store = Store("Book", Gateway(MemoryBackend()))
    """

    def __init__(self, id_allocator: Optional[IdAllocator] = None) -> None:
        """Initialize an empty backend.

        Args:
            id_allocator: Returns the next numeric id for auto-id inserts.
                Defaults to 1, 2, 3, ...
        """
        self._entities: Dict[Key, RawEntity] = {}
        self._transactions: Dict[str, _TransactionState] = {}
        self._lock = RLock()
        self._allocate_id = id_allocator or itertools.count(1).__next__

    def __len__(self) -> int:
        return len(self._entities)

    def __iter__(self) -> Iterator[RawEntity]:
        with self._lock:
            return iter([copy.deepcopy(e) for e in self._entities.values()])

    # Transactions

    def begin_transaction(self, cross_group: bool = False) -> str:
        token = uuid.uuid4().hex
        with self._lock:
            self._transactions[token] = _TransactionState(cross_group)
        _log.debug("Memory transaction %s begun (cross_group=%s)", token, cross_group)
        return token

    def _transaction_state(self, token: str) -> _TransactionState:
        state = self._transactions.get(token)
        if state is None:
            raise BackendError(f"Unknown or expired transaction: {token}")
        return state

    def _enlist(self, state: _TransactionState, keys: Sequence[Key]) -> None:
        roots = [k.root for k in keys]
        groups = state.groups | {r for r in roots if r.is_complete}
        # Each new root entity starts a group of its own
        count = len(groups) + sum(1 for r in roots if not r.is_complete)
        if not state.cross_group and count > 1:
            raise BackendError(
                "Operations within a transaction must be in a single entity group; "
                "begin a cross-group transaction to span several"
            )
        if count > MAX_CROSS_GROUP_ENTITY_GROUPS:
            raise BackendError(
                f"A transaction may touch at most {MAX_CROSS_GROUP_ENTITY_GROUPS} entity groups"
            )
        state.groups = groups

    # Writes

    def commit(
        self,
        mutations: Sequence[Mutation],
        mode: CommitMode,
        transaction: Optional[str] = None,
    ) -> CommitResult:
        with self._lock:
            if mode is CommitMode.TRANSACTIONAL:
                if not transaction:
                    raise BackendError("A transactional commit requires a transaction")
                state = self._transaction_state(transaction)
                # A transaction is spent by its commit, even a failed one
                del self._transactions[transaction]
                self._enlist(state, [m.target_key for m in mutations])
            elif transaction:
                raise BackendError("A non-transactional commit cannot name a transaction")

            # Validate and allocate before applying anything
            staged: List[Tuple[Mutation, Key]] = []
            keys: List[Optional[Key]] = []
            for mutation in mutations:
                key = mutation.target_key
                if mutation.op is MutationOp.INSERT_AUTO_ID:
                    if key.is_complete:
                        raise BackendError(f"Auto-id insert given a complete key: {key}")
                    if key.parent is not None and not key.parent.is_complete:
                        raise BackendError(f"Incomplete ancestor in key: {key}")
                    key = key.with_id(self._allocate_id())
                    keys.append(key)
                else:
                    if not key.is_complete:
                        raise BackendError(f"Mutation requires a complete key: {key}")
                    keys.append(None)
                staged.append((mutation, key))

            index_updates = 0
            for mutation, key in staged:
                if mutation.op is MutationOp.DELETE:
                    if self._entities.pop(key, None) is not None:
                        index_updates += 1
                else:
                    assert mutation.entity is not None
                    stored = copy.deepcopy(mutation.entity)
                    stored.key = key
                    self._entities[key] = stored
                    index_updates += 1
        _log.debug("Memory commit: %d mutation(s), mode %s", len(mutations), mode.value)
        return CommitResult(index_updates=index_updates, keys=keys)

    # Reads

    def lookup(
        self, keys: Sequence[Key], transaction: Optional[str] = None
    ) -> List[RawEntity]:
        with self._lock:
            if transaction:
                self._enlist(self._transaction_state(transaction), keys)
            found: List[RawEntity] = []
            for key in keys:
                entity = self._entities.get(key)
                if entity is not None:
                    found.append(copy.deepcopy(entity))
            return found

    def run_query(
        self,
        gql: str,
        params: Optional[Mapping[str, Any]] = None,
        transaction: Optional[str] = None,
    ) -> QueryResult:
        query = parse_gql(gql)
        params = params or {}
        with self._lock:
            if transaction:
                self._transaction_state(transaction)
            ancestor = self._resolve(query.ancestor, params)
            if ancestor is not None and not isinstance(ancestor, Key):
                raise BackendError("HAS ANCESTOR requires a key")
            conditions = [
                Condition(c.prop, c.op, self._resolve(c.value, params))
                for c in query.conditions
            ]
            matches = [
                entity
                for key, entity in self._entities.items()
                if key.kind == query.kind
                and (ancestor is None or ancestor.is_ancestor_of(key))
                and all(self._matches(entity, c) for c in conditions)
            ]
            matches = self._order(matches, query)
            start, limit = self._window(query, params)
            page = matches[start:] if limit is None else matches[start : start + limit]
            results = [copy.deepcopy(e) for e in page]
        return QueryResult(results=results, end_cursor=encode_cursor(start + len(results)))

    @staticmethod
    def _resolve(operand: Any, params: Mapping[str, Any]) -> Any:
        if isinstance(operand, Param):
            if operand.name not in params:
                raise BackendError(f"Unbound GQL parameter @{operand.name}")
            return params[operand.name]
        if isinstance(operand, list):
            return [MemoryBackend._resolve(v, params) for v in operand]
        return operand

    @staticmethod
    def _matches(entity: RawEntity, condition: Condition) -> bool:
        value = _property_value(entity, condition.prop)
        if value is _MISSING:
            return False
        candidates = value if isinstance(value, list) else [value]
        if condition.op == "IN":
            options = condition.value
            if not isinstance(options, (list, tuple)):
                raise BackendError(f"IN on '{condition.prop}' requires a list")
            return any(_compare("=", c, o) for c in candidates for o in options)
        return any(_compare(condition.op, c, condition.value) for c in candidates)

    @staticmethod
    def _order(entities: List[RawEntity], query: GqlQuery) -> List[RawEntity]:
        result = sorted(entities, key=lambda e: _key_order(e.key) if e.key else ())
        # Stable sorts, least significant order first
        for prop, descending in reversed(query.orders):
            if prop == "__key__":
                result.sort(key=lambda e: _key_order(e.key) if e.key else (), reverse=descending)
                continue
            # Entities without the property are excluded, as in Datastore
            result = [e for e in result if _property_value(e, prop) is not _MISSING]

            def order_value(e: RawEntity, prop: str = prop, descending: bool = descending) -> Any:
                value = _property_value(e, prop)
                if isinstance(value, list) and value:
                    keys = [sort_key(v) for v in value]
                    return max(keys) if descending else min(keys)
                return sort_key(value)

            result.sort(key=order_value, reverse=descending)
        return result

    def _window(
        self, query: GqlQuery, params: Mapping[str, Any]
    ) -> Tuple[int, Optional[int]]:
        limit = self._resolve(query.limit, params)
        if limit is not None and (not isinstance(limit, int) or limit < 0):
            raise BackendError(f"LIMIT must be a non-negative integer, not {limit!r}")
        offset = self._resolve(query.offset, params)
        start = 0
        if isinstance(offset, Cursor):
            start = decode_cursor(offset.value)
        elif isinstance(offset, str):
            start = decode_cursor(offset)
        elif isinstance(offset, int) and not isinstance(offset, bool):
            start = offset
        elif offset is not None:
            raise BackendError(f"OFFSET must be an integer or a cursor, not {offset!r}")
        plus = self._resolve(query.offset_plus, params)
        if plus is not None:
            if not isinstance(plus, int):
                raise BackendError("OFFSET cursor + n requires an integer")
            start += plus
        if start < 0:
            raise BackendError("OFFSET must not be negative")
        return start, limit

    def close(self) -> None:
        with self._lock:
            self._transactions.clear()
