"""
Backend Gateway.

The Gateway maps one mapper-level operation at a time onto a Datastore
backend call: it turns Entities into RawEntity mutations, builds lookup
keys, runs GQL queries and turns the backend's results back into Entities.

Per-call context (the Schema and an optional transaction token) is passed
explicitly as a CallOptions value. The only state the Gateway keeps between
calls is the end cursor of the last query it ran.
"""

from __future__ import annotations

import logging
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
)
from dataclasses import dataclass

from .entity import Entity, validate_key_id, validate_key_name
from .errors import InvalidKeyError
from .protocols import (
    CommitMode,
    CommitResult,
    DatastoreBackendProtocol,
    Key,
    Mutation,
    MutationOp,
    PathElement,
    RawEntity,
)
from .schema import PropertyType, Schema

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallOptions:
    """The context for a single Gateway call."""

    schema: Schema
    # Forwarded to the backend for this call only
    transaction: Optional[str] = None

    @property
    def mode(self) -> CommitMode:
        if self.transaction:
            return CommitMode.TRANSACTIONAL
        return CommitMode.NON_TRANSACTIONAL


class Gateway:
    """Translates Store operations into Datastore backend calls."""

    def __init__(self, backend: DatastoreBackendProtocol) -> None:
        self._backend = backend
        self._end_cursor: Optional[str] = None

    @property
    def backend(self) -> DatastoreBackendProtocol:
        return self._backend

    # =========================================================================
    # Writes
    # =========================================================================

    def put_multi(
        self, entities: Sequence[Entity], options: CallOptions
    ) -> CommitResult:
        """Write entities in a single commit.

        Entities without a key id, key name or key-property value are
        inserted with a backend-allocated numeric id, which is written back
        to the entity. All others are upserted on their exact key. The
        commit applies to the whole batch or fails as a whole.
        """
        mutations: List[Mutation] = []
        for entity in entities:
            self._bind_schema(entity, options.schema)
            self._apply_key_property(entity)
            raw = self.map_entity(entity)
            assert raw.key is not None
            op = MutationOp.UPSERT if raw.key.is_complete else MutationOp.INSERT_AUTO_ID
            mutations.append(Mutation(op, entity=raw))
        if not mutations:
            return CommitResult(index_updates=0)
        _log.debug(
            "Committing %d put(s) for %s (%s)",
            len(mutations),
            options.schema.kind,
            options.mode.value,
        )
        result = self._backend.commit(mutations, options.mode, options.transaction)
        for entity, mutation, key in zip(entities, mutations, result.keys):
            if mutation.op is MutationOp.INSERT_AUTO_ID and key is not None:
                entity.key_id = key.id
        return result

    def delete_multi(
        self, entities: Sequence[Entity], options: CallOptions
    ) -> CommitResult:
        """Delete entities by key in a single commit."""
        mutations: List[Mutation] = []
        for entity in entities:
            self._bind_schema(entity, options.schema)
            key = entity.to_key()
            if not key.is_complete:
                raise InvalidKeyError("Cannot delete an Entity that has no key")
            mutations.append(Mutation(MutationOp.DELETE, key=key))
        if not mutations:
            return CommitResult(index_updates=0)
        _log.debug(
            "Committing %d delete(s) for %s (%s)",
            len(mutations),
            options.schema.kind,
            options.mode.value,
        )
        return self._backend.commit(mutations, options.mode, options.transaction)

    # =========================================================================
    # Lookups
    # =========================================================================

    def fetch_by_id(self, key_id: int, options: CallOptions) -> Optional[Entity]:
        """Fetch a root entity by numeric id; None if not found."""
        found = self.fetch_by_ids([key_id], options)
        return found[0] if found else None

    def fetch_by_ids(
        self, key_ids: Iterable[int], options: CallOptions
    ) -> List[Entity]:
        """Fetch root entities by numeric id, omitting any not found."""
        kind = options.schema.kind
        keys = [Key((PathElement(kind, id=validate_key_id(i)),)) for i in key_ids]
        return self.fetch_by_keys(keys, options)

    def fetch_by_name(self, key_name: str, options: CallOptions) -> Optional[Entity]:
        """Fetch a root entity by key name; None if not found."""
        found = self.fetch_by_names([key_name], options)
        return found[0] if found else None

    def fetch_by_names(
        self, key_names: Iterable[str], options: CallOptions
    ) -> List[Entity]:
        """Fetch root entities by key name, omitting any not found."""
        kind = options.schema.kind
        keys = [
            Key((PathElement(kind, name=validate_key_name(n)),)) for n in key_names
        ]
        return self.fetch_by_keys(keys, options)

    def fetch_by_key(self, key: Key, options: CallOptions) -> Optional[Entity]:
        found = self.fetch_by_keys([key], options)
        return found[0] if found else None

    def fetch_by_keys(
        self, keys: Sequence[Key], options: CallOptions
    ) -> List[Entity]:
        """Fetch entities by full key, including keys with ancestors."""
        for key in keys:
            if not key.is_complete:
                raise InvalidKeyError(f"Cannot look up an incomplete key: {key}")
        if not keys:
            return []
        results = self._backend.lookup(keys, options.transaction)
        return [self.demap(raw, options.schema) for raw in results]

    # =========================================================================
    # Queries and transactions
    # =========================================================================

    def gql(
        self,
        query: str,
        params: Optional[Mapping[str, Any]],
        options: CallOptions,
    ) -> List[RawEntity]:
        """Run a GQL query, remembering the end cursor it reports."""
        _log.debug("GQL: %s, params: %r", query, params)
        result = self._backend.run_query(query, params, options.transaction)
        self._end_cursor = result.end_cursor
        return result.results

    def get_end_cursor(self) -> Optional[str]:
        """The end cursor reported by the last query."""
        return self._end_cursor

    def begin_transaction(self, cross_group: bool = False) -> str:
        token = self._backend.begin_transaction(cross_group)
        _log.debug("Began transaction (cross_group=%s)", cross_group)
        return token

    # =========================================================================
    # Mapping
    # =========================================================================

    @staticmethod
    def _bind_schema(entity: Entity, schema: Schema) -> None:
        if entity.schema is None:
            entity.set_schema(schema)

    @staticmethod
    def _apply_key_property(entity: Entity) -> None:
        """Take the key name from the Schema's key property, if it has one.

        Once written, the key name is fixed; a key property changed
        afterwards no longer matches it and is rejected.
        """
        schema = entity.schema
        if schema is None or schema.key_property is None or entity.key_id is not None:
            return
        value = entity.get(schema.key_property)
        if value is None or value == "":
            return
        if entity.key_name is None:
            entity.key_name = str(value)
        elif entity.key_name != str(value):
            raise InvalidKeyError(
                f"Key property '{schema.key_property}' is {value!r} but the "
                f"key name is {entity.key_name!r}; the key name cannot change"
            )

    def map_entity(self, entity: Entity) -> RawEntity:
        """Convert an Entity to the backend representation."""
        schema = entity.schema
        properties: Dict[str, Any] = {}
        for name, value in entity.get_data().items():
            property_type = schema.get_property_type(name) if schema else None
            properties[name] = self._map_value(value, property_type)
        key = entity.to_key() if schema is not None else None
        return RawEntity(key, properties)

    def _map_value(self, value: Any, property_type: Optional[PropertyType]) -> Any:
        if isinstance(value, Entity):
            if property_type is PropertyType.KEY:
                return value.to_key()
            nested = self.map_entity(value)
            if not value.has_key():
                nested.key = None
            return nested
        if isinstance(value, dict):
            return RawEntity(
                None, {k: self._map_value(v, None) for k, v in value.items()}
            )
        if isinstance(value, (list, tuple)):
            return [self._map_value(v, None) for v in value]
        return value

    def demap(self, raw: RawEntity, schema: Schema) -> Entity:
        """Build an Entity of the Schema's entity class from backend data.

        Values from storage are trusted; properties that a strict Schema
        does not declare are dropped.
        """
        entity = schema.entity_class()
        entity.set_schema(schema)
        if raw.key is not None:
            if raw.key.id is not None:
                entity.key_id = raw.key.id
            elif raw.key.name is not None:
                entity.key_name = raw.key.name
            entity.ancestry = raw.key.parent
        data: Dict[str, Any] = {}
        for name, value in raw.properties.items():
            if schema.is_strict and not schema.has_property(name):
                _log.debug("Dropping undeclared property %s.%s", schema.kind, name)
                continue
            data[name] = self._demap_value(value, schema.get_nested_schema(name))
        entity.load(data)
        return entity

    def _demap_value(self, value: Any, nested: Optional[Schema]) -> Any:
        if isinstance(value, RawEntity):
            if nested is not None:
                return self.demap(value, nested)
            return {k: self._demap_value(v, None) for k, v in value.properties.items()}
        if isinstance(value, list):
            return [self._demap_value(v, nested) for v in value]
        return value
