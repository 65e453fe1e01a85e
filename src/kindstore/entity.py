"""
Entity records bound to a Schema.

An Entity holds property values, an optional key (numeric id or string
name, never both) and an optional ancestor. Properties are read and written
as attributes or by name, and are validated against the Schema:

    book = store.create_entity({"title": "Dune"})
    book.author = "Frank Herbert"
    book["published"] = datetime(1965, 8, 1, tzinfo=UTC)
    book.rating = 5     # SchemaMismatchError if "rating" is not declared

Subclasses may add methods and Python properties; names starting with an
underscore and names defined on the class are never treated as Datastore
properties.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, Mapping, Optional, Union
import re

from .errors import ConfigurationError, InvalidKeyError, SchemaMismatchError
from .protocols import Key, PathElement
from .schema import Schema

# Datastore reserves key names of the form __*__
_RESERVED_NAME = re.compile(r"^__.*__$")


def validate_key_id(key_id: Any) -> int:
    if isinstance(key_id, bool) or not isinstance(key_id, int) or key_id <= 0:
        raise InvalidKeyError(f"Key ids must be positive integers, not {key_id!r}")
    return key_id


def validate_key_name(key_name: Any) -> str:
    if not isinstance(key_name, str) or not key_name:
        raise InvalidKeyError(f"Key names must be non-empty strings, not {key_name!r}")
    if _RESERVED_NAME.match(key_name):
        raise InvalidKeyError(f"Key name {key_name!r} is reserved")
    return key_name


class Entity:
    """A mutable record of one Kind."""

    def __init__(self, schema: Optional[Schema] = None) -> None:
        object.__setattr__(self, "_schema", schema)
        object.__setattr__(self, "_data", {})
        object.__setattr__(self, "_key_id", None)
        object.__setattr__(self, "_key_name", None)
        object.__setattr__(self, "_ancestry", None)

    def __repr__(self) -> str:
        kind = self._schema.kind if self._schema is not None else "?"
        ident = self._key_id if self._key_id is not None else self._key_name
        return f"<{type(self).__name__} {kind}:{ident} {self._data!r}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return NotImplemented
        return (
            self.kind == other.kind
            and self._key_id == other._key_id
            and self._key_name == other._key_name
            and self._ancestry == other._ancestry
            and self._data == other._data
        )

    __hash__ = None  # type: ignore[assignment]

    # Schema binding

    @property
    def schema(self) -> Optional[Schema]:
        return self._schema

    def set_schema(self, schema: Schema) -> Entity:
        object.__setattr__(self, "_schema", schema)
        return self

    @property
    def kind(self) -> Optional[str]:
        return self._schema.kind if self._schema is not None else None

    # Keys

    @property
    def key_id(self) -> Optional[int]:
        return self._key_id

    @key_id.setter
    def key_id(self, key_id: Optional[int]) -> None:
        if key_id is not None:
            validate_key_id(key_id)
            if self._key_name is not None:
                raise InvalidKeyError(
                    "An Entity cannot have both a key id and a key name"
                )
        object.__setattr__(self, "_key_id", key_id)

    @property
    def key_name(self) -> Optional[str]:
        return self._key_name

    @key_name.setter
    def key_name(self, key_name: Optional[str]) -> None:
        if key_name is not None:
            validate_key_name(key_name)
            if self._key_id is not None:
                raise InvalidKeyError(
                    "An Entity cannot have both a key id and a key name"
                )
        object.__setattr__(self, "_key_name", key_name)

    def set_key_id(self, key_id: Optional[int]) -> Entity:
        self.key_id = key_id
        return self

    def set_key_name(self, key_name: Optional[str]) -> Entity:
        self.key_name = key_name
        return self

    def has_key(self) -> bool:
        return self._key_id is not None or self._key_name is not None

    @property
    def ancestry(self) -> Optional[Union[Entity, Key]]:
        return self._ancestry

    @ancestry.setter
    def ancestry(self, parent: Optional[Union[Entity, Key]]) -> None:
        if parent is not None and not isinstance(parent, (Entity, Key)):
            raise InvalidKeyError(
                f"An ancestor must be an Entity or a Key, not {type(parent).__name__}"
            )
        object.__setattr__(self, "_ancestry", parent)

    def set_ancestry(self, parent: Optional[Union[Entity, Key]]) -> Entity:
        self.ancestry = parent
        return self

    def _ancestor_key(self) -> Optional[Key]:
        parent = self._ancestry
        if parent is None:
            return None
        if isinstance(parent, Entity):
            key = parent.to_key()
        else:
            key = parent
        if not key.is_complete:
            raise InvalidKeyError(
                "An ancestor must have a complete key before it can be used"
            )
        return key

    def to_key(self) -> Key:
        """Build this entity's full key, including its ancestor path.

        The key is incomplete if neither a key id nor a key name is set.
        """
        if self._schema is None:
            raise ConfigurationError("An Entity needs a Schema before it has a key")
        element = PathElement(self._schema.kind, id=self._key_id, name=self._key_name)
        parent = self._ancestor_key()
        if parent is None:
            return Key((element,))
        return Key(parent.path + (element,))

    # Properties

    def _check_name(self, name: str) -> None:
        if self._schema is not None and not self._schema.has_property(name):
            raise SchemaMismatchError(self._schema.kind, name)

    def get(self, name: str) -> Any:
        """Return a property value; None if declared but unset."""
        if name not in self._data:
            self._check_name(name)
        return self._data.get(name)

    def set(self, name: str, value: Any) -> Entity:
        """Set a property value after validating it against the Schema."""
        if self._schema is not None:
            self._schema.validate_value(name, value)
        self._data[name] = value
        return self

    def unset(self, name: str) -> Entity:
        self._check_name(name)
        self._data.pop(name, None)
        return self

    def get_data(self) -> Dict[str, Any]:
        """Return a copy of the property values."""
        return dict(self._data)

    def load(self, data: Mapping[str, Any]) -> Entity:
        """Replace property values with trusted data read from storage."""
        object.__setattr__(self, "_data", dict(data))
        return self

    def __getattr__(self, name: str) -> Any:
        # Only called when normal attribute lookup fails
        if name.startswith("_"):
            raise AttributeError(name)
        return self.get(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_") or hasattr(type(self), name):
            object.__setattr__(self, name, value)
        else:
            self.set(name, value)

    def __delattr__(self, name: str) -> None:
        if name.startswith("_") or hasattr(type(self), name):
            object.__delattr__(self, name)
        else:
            self.unset(name)

    def __getitem__(self, name: str) -> Any:
        return self.get(name)

    def __setitem__(self, name: str, value: Any) -> None:
        self.set(name, value)

    def __contains__(self, name: object) -> bool:
        return name in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)
