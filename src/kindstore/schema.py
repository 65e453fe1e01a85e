"""
Schema definitions for Datastore Kinds.

A Schema names a Kind, declares its typed properties, and optionally names
the property that supplies each entity's string key name. A Schema with no
declared properties is open and accepts any property name.

    book_schema = (
        Schema("Book")
        .add_string("title")
        .add_string("author")
        .add_datetime("published")
        .add_string("isbn")
    )
    book_schema.key_property = "isbn"
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Type
from collections import OrderedDict
from datetime import datetime
from enum import Enum

from .errors import SchemaMismatchError, ValidationError
from .protocols import Key

if TYPE_CHECKING:
    from .entity import Entity


class PropertyType(Enum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    KEY = "key"
    ENTITY = "entity"
    LIST = "list"


class Schema:
    """Describes one Kind: its name, typed properties and key property."""

    def __init__(
        self, kind: str, entity_class: Optional[Type["Entity"]] = None
    ) -> None:
        if not isinstance(kind, str) or not kind.strip():
            raise ValidationError("A Schema requires a non-empty Kind name")
        self._kind = kind
        self._properties: "OrderedDict[str, PropertyType]" = OrderedDict()
        self._nested: Dict[str, Schema] = {}
        self._key_property: Optional[str] = None
        self._entity_class = entity_class

    def __repr__(self) -> str:
        return f"Schema({self._kind!r}, properties={list(self._properties)})"

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def properties(self) -> Dict[str, PropertyType]:
        """A copy of the declared properties, in declaration order."""
        return OrderedDict(self._properties)

    @property
    def property_names(self) -> List[str]:
        return list(self._properties)

    @property
    def is_strict(self) -> bool:
        """True once at least one property has been declared."""
        return bool(self._properties)

    @property
    def key_property(self) -> Optional[str]:
        return self._key_property

    @key_property.setter
    def key_property(self, name: Optional[str]) -> None:
        if name is not None and self.is_strict and name not in self._properties:
            raise SchemaMismatchError(self._kind, name, "key property is not declared")
        self._key_property = name

    @property
    def entity_class(self) -> Type["Entity"]:
        if self._entity_class is None:
            from .entity import Entity

            return Entity
        return self._entity_class

    def set_entity_class(self, entity_class: Type["Entity"]) -> Schema:
        """Bind the class used to instantiate entities of this Kind."""
        self._entity_class = entity_class
        return self

    # Property declarations

    def add_property(
        self,
        name: str,
        property_type: PropertyType,
        schema: Optional[Schema] = None,
    ) -> Schema:
        if not name:
            raise ValidationError("Property names must be non-empty")
        self._properties[name] = property_type
        if schema is not None:
            if property_type not in (PropertyType.ENTITY, PropertyType.LIST):
                raise ValidationError(
                    f"Property '{name}': a nested Schema needs an ENTITY or LIST type"
                )
            self._nested[name] = schema
        return self

    def add_string(self, name: str) -> Schema:
        return self.add_property(name, PropertyType.STRING)

    def add_integer(self, name: str) -> Schema:
        return self.add_property(name, PropertyType.INTEGER)

    def add_float(self, name: str) -> Schema:
        return self.add_property(name, PropertyType.FLOAT)

    def add_boolean(self, name: str) -> Schema:
        return self.add_property(name, PropertyType.BOOLEAN)

    def add_datetime(self, name: str) -> Schema:
        return self.add_property(name, PropertyType.DATETIME)

    def add_key(self, name: str) -> Schema:
        return self.add_property(name, PropertyType.KEY)

    def add_entity(self, name: str, schema: Optional[Schema] = None) -> Schema:
        """Declare an embedded entity property.

        With a nested Schema, stored values come back as Entities of that
        Schema. Without one, the property holds plain dicts.
        """
        return self.add_property(name, PropertyType.ENTITY, schema)

    def add_list(self, name: str, schema: Optional[Schema] = None) -> Schema:
        """Declare a list property; a Schema maps nested list items to entities."""
        return self.add_property(name, PropertyType.LIST, schema)

    # Lookups

    def has_property(self, name: str) -> bool:
        return not self.is_strict or name in self._properties

    def get_property_type(self, name: str) -> Optional[PropertyType]:
        return self._properties.get(name)

    def get_nested_schema(self, name: str) -> Optional[Schema]:
        return self._nested.get(name)

    def validate_value(self, name: str, value: Any) -> None:
        """Check a caller-supplied value against the declared property.

        Raises:
            SchemaMismatchError: if the property is undeclared in a strict
                Schema, or the value does not match the declared type.
        """
        if not self.has_property(name):
            raise SchemaMismatchError(self._kind, name)
        property_type = self._properties.get(name)
        if value is None or property_type is None:
            return
        if not _matches(property_type, value):
            raise SchemaMismatchError(
                self._kind,
                name,
                f"expected {property_type.value}, got {type(value).__name__}",
            )
        if (
            property_type is PropertyType.ENTITY
            and name not in self._nested
            and not isinstance(value, dict)
        ):
            raise SchemaMismatchError(
                self._kind, name, "an Entity value needs a nested Schema; use a dict"
            )


def _matches(property_type: PropertyType, value: Any) -> bool:
    from .entity import Entity

    if property_type is PropertyType.STRING:
        return isinstance(value, str)
    if property_type is PropertyType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if property_type is PropertyType.FLOAT:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if property_type is PropertyType.BOOLEAN:
        return isinstance(value, bool)
    if property_type is PropertyType.DATETIME:
        return isinstance(value, datetime)
    if property_type is PropertyType.KEY:
        return isinstance(value, (Key, Entity))
    if property_type is PropertyType.ENTITY:
        return isinstance(value, (Entity, dict))
    if property_type is PropertyType.LIST:
        return isinstance(value, (list, tuple))
    return False
