"""
Kind-specific data store.

A Store is bound to one Kind (given by a Schema or a Kind name). It keeps
the current GQL query, its parameters and the pagination cursor, holds a
pending transaction token, and maps backend results into Entities.

Usage:
    store = Store(Schema("Book").add_string("title").add_string("author"))
    book = store.create_entity({"title": "Dune", "author": "Herbert"})
    store.upsert(book)                 # book.key_id is now set
    store.fetch_by_id(book.key_id)

    store.query("SELECT * FROM `Book` WHERE author = @a", {"a": "Herbert"})
    while True:
        page = store.fetch_page(20)
        if not page:
            break

A Store is not thread-safe: query state, cursor and the pending
transaction token are mutated in place. Concurrent pagers must use
independent Store instances.
"""

from __future__ import annotations

import importlib
import logging
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Type,
    Union,
)

from .entity import Entity
from .errors import ConfigurationError, EntityClassError, InvalidKeyError
from .gateway import CallOptions, Gateway
from .protocols import Cursor, RawEntity
from .schema import Schema

_log = logging.getLogger(__name__)

SchemaFactory = Callable[[], Optional[Union[Schema, str]]]


def prepare_params(params: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    """Convert Entity-valued query parameters to their Keys.

    Query parameters must be scalars, Keys or Cursors; an Entity is
    accepted as a shorthand for its Key. Nothing else is converted.

    Raises:
        InvalidKeyError: if an Entity parameter has no complete key.
    """
    if params is None:
        return None
    prepared: Dict[str, Any] = {}
    for name, value in params.items():
        if isinstance(value, Entity):
            key = value.to_key()
            if not key.is_complete:
                raise InvalidKeyError(
                    f"Parameter '{name}' is an Entity without a complete key"
                )
            value = key
        prepared[name] = value
    return prepared


class Store:
    """A data store for one Entity Kind."""

    def __init__(
        self,
        schema: Optional[Union[Schema, str]] = None,
        gateway: Optional[Gateway] = None,
        schema_factory: Optional[SchemaFactory] = None,
    ) -> None:
        """Bind the Store to a Kind.

        Args:
            schema: A Schema, or a Kind name for an open Schema.
            gateway: The Gateway to use; defaults to one wrapping the
                configured backend (see kindstore.get_backend()).
            schema_factory: Called to build the Schema when none is given.

        Raises:
            ConfigurationError: if no Schema or Kind can be determined.
        """
        self._schema = self._determine_schema(schema, schema_factory)
        if gateway is None:
            from . import get_backend

            gateway = Gateway(get_backend())
        self._gateway = gateway
        self._entity_class: Type[Entity] = self._schema.entity_class
        self._last_query = f"SELECT * FROM `{self._schema.kind}` ORDER BY __key__ ASC"
        self._last_params: Optional[Dict[str, Any]] = None
        self._last_cursor: Optional[str] = None
        self._transaction: Optional[str] = None

    @staticmethod
    def _determine_schema(
        schema: Optional[Union[Schema, str]],
        schema_factory: Optional[SchemaFactory],
    ) -> Schema:
        if schema is None and schema_factory is not None:
            schema = schema_factory()
        if isinstance(schema, Schema):
            return schema
        if isinstance(schema, str) and schema:
            return Schema(schema)
        raise ConfigurationError(
            "You must provide a Schema or Kind, either directly "
            "or through a schema_factory"
        )

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def gateway(self) -> Gateway:
        return self._gateway

    @property
    def last_query(self) -> str:
        return self._last_query

    @property
    def last_params(self) -> Optional[Dict[str, Any]]:
        return self._last_params

    # =========================================================================
    # Writes (consume the pending transaction)
    # =========================================================================

    def upsert(self, entities: Union[Entity, Sequence[Entity]]) -> None:
        """Write one or more new or changed Entities."""
        if isinstance(entities, Entity):
            entities = [entities]
        self._gateway.put_multi(list(entities), self._consuming_options())

    def delete(self, entities: Union[Entity, Sequence[Entity]]) -> None:
        """Delete one or more Entities."""
        if isinstance(entities, Entity):
            entities = [entities]
        self._gateway.delete_multi(list(entities), self._consuming_options())

    # =========================================================================
    # Lookups (use, but do not consume, the pending transaction)
    # =========================================================================

    def fetch_by_id(self, key_id: int) -> Optional[Entity]:
        """Fetch a root Entity by its numeric key id."""
        return self._gateway.fetch_by_id(key_id, self._options())

    def fetch_by_ids(self, key_ids: Iterable[int]) -> List[Entity]:
        """Fetch root Entities by numeric key id; missing ones are omitted."""
        return self._gateway.fetch_by_ids(key_ids, self._options())

    def fetch_by_name(self, key_name: str) -> Optional[Entity]:
        """Fetch a root Entity by its key name."""
        return self._gateway.fetch_by_name(key_name, self._options())

    def fetch_by_names(self, key_names: Iterable[str]) -> List[Entity]:
        """Fetch root Entities by key name; missing ones are omitted."""
        return self._gateway.fetch_by_names(key_names, self._options())

    # =========================================================================
    # Queries
    # =========================================================================

    def query(
        self, query: str, params: Optional[Mapping[str, Any]] = None
    ) -> Store:
        """Set the current GQL query and reset the cursor.

        Returns the Store, so a fetch can be chained:
            store.query("SELECT * FROM `Book` WHERE author = @a", {"a": "Herbert"}).fetch_all()
        """
        self._last_query = query
        self._last_params = prepare_params(params)
        self._last_cursor = None
        return self

    def fetch_one(
        self, query: Optional[str] = None, params: Optional[Mapping[str, Any]] = None
    ) -> Optional[Entity]:
        """Fetch the first Entity matching the (optionally new) query."""
        if query is not None:
            self.query(query, params)
        results = self._gateway.gql(
            self._last_query + " LIMIT 1", self._last_params, self._options()
        )
        return self._map_one_from_results(results)

    def fetch_all(
        self, query: Optional[str] = None, params: Optional[Mapping[str, Any]] = None
    ) -> List[Entity]:
        """Fetch every Entity matching the (optionally new) query."""
        if query is not None:
            self.query(query, params)
        results = self._gateway.gql(
            self._last_query, self._last_params, self._options()
        )
        return self._map_from_results(results)

    def fetch_page(
        self, page_size: int, offset: Optional[Union[int, str]] = None
    ) -> List[Entity]:
        """Fetch a page of the current query.

        Args:
            page_size: The maximum number of Entities to return.
            offset: An int skips that many results; a str is a cursor to
                start from. If omitted, paging continues from the cursor
                left by the previous page, if any.

        Pages are sequential: each call stores the end cursor for the next.
        The current query must not contain its own LIMIT or OFFSET.
        """
        params: Dict[str, Any] = dict(self._last_params or {})
        offset_clause = ""
        if offset is not None:
            if isinstance(offset, int) and not isinstance(offset, bool):
                offset_clause = " OFFSET @intOffset"
                params["intOffset"] = offset
            else:
                offset_clause = " OFFSET @startCursor"
                params["startCursor"] = Cursor(str(offset))
        elif self._last_cursor:
            offset_clause = " OFFSET @startCursor"
            params["startCursor"] = Cursor(self._last_cursor)
        query = f"{self._last_query} LIMIT {int(page_size)}{offset_clause}"
        results = self._gateway.gql(query, params or None, self._options())
        self._last_cursor = self._gateway.get_end_cursor()
        return self._map_from_results(results)

    def fetch_entity_group(self, entity: Entity) -> List[Entity]:
        """Fetch an Entity and all of its descendants of this Kind."""
        query = f"SELECT * FROM `{self._schema.kind}` WHERE __key__ HAS ANCESTOR @ancestorKey"
        results = self._gateway.gql(
            query, prepare_params({"ancestorKey": entity}), self._options()
        )
        self._last_cursor = self._gateway.get_end_cursor()
        return self._map_from_results(results)

    def get_cursor(self) -> Optional[str]:
        """The cursor after the last fetched page."""
        return self._last_cursor

    def set_cursor(self, cursor: Optional[str]) -> Store:
        """Set the cursor to resume paging from, e.g. in a later request."""
        self._last_cursor = cursor
        return self

    # =========================================================================
    # Entities
    # =========================================================================

    def create_entity(self, data: Optional[Mapping[str, Any]] = None) -> Entity:
        """Create a new Entity of the configured class, bound to the Schema."""
        entity = self._entity_class()
        entity.set_schema(self._schema)
        if data is not None:
            for name, value in data.items():
                entity.set(name, value)
        return entity

    def set_entity_class(self, entity_class: Union[Type[Entity], str]) -> Store:
        """Set the class used for new and fetched Entities.

        Args:
            entity_class: Entity or a subclass of it, or its dotted
                import path such as "myapp.models.Book".

        Raises:
            EntityClassError: if the class cannot be found or does not
                extend Entity. The previous class stays in effect.
        """
        resolved = _resolve_class(entity_class)
        if not isinstance(resolved, type) or not issubclass(resolved, Entity):
            raise EntityClassError(
                f"Cannot set an Entity class that does not extend Entity: {entity_class!r}"
            )
        self._entity_class = resolved
        self._schema.set_entity_class(resolved)
        return self

    # =========================================================================
    # Transactions
    # =========================================================================

    def begin_transaction(self, cross_group: bool = False) -> Store:
        """Begin a transaction for the next upsert() or delete().

        Reads before that write run inside the transaction; the write
        commits it. There is no rollback: an unused token simply expires.
        """
        self._transaction = self._gateway.begin_transaction(cross_group)
        return self

    def has_transaction(self) -> bool:
        return self._transaction is not None

    def _consume_transaction(self) -> Optional[str]:
        """Clear and return the pending transaction token."""
        transaction = self._transaction
        self._transaction = None
        return transaction

    def _options(self) -> CallOptions:
        return CallOptions(self._schema, self._transaction)

    def _consuming_options(self) -> CallOptions:
        return CallOptions(self._schema, self._consume_transaction())

    # =========================================================================
    # Result mapping
    # =========================================================================

    def _map_from_results(self, results: Sequence[RawEntity]) -> List[Entity]:
        return [self._gateway.demap(raw, self._schema) for raw in results]

    def _map_one_from_results(self, results: Sequence[RawEntity]) -> Optional[Entity]:
        if not results:
            return None
        return self._gateway.demap(results[0], self._schema)


def _resolve_class(entity_class: Union[Type[Entity], str]) -> Any:
    if not isinstance(entity_class, str):
        return entity_class
    module_name, _, class_name = entity_class.rpartition(".")
    if not module_name:
        raise EntityClassError(f"Cannot set missing Entity class: {entity_class}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise EntityClassError(
            f"Cannot set missing Entity class: {entity_class}"
        ) from e
    resolved = getattr(module, class_name, None)
    if resolved is None:
        raise EntityClassError(f"Cannot set missing Entity class: {entity_class}")
    return resolved
