"""
Exception types raised by the kindstore mapper.

All errors are raised to the immediate caller. Lookups that find nothing
return None or an empty list; they never raise.
"""

from __future__ import annotations

from typing import Optional


class KindstoreError(Exception):
    """Base error for all kindstore errors."""


class ValidationError(KindstoreError):
    """Raised when a Schema is constructed from an invalid definition."""


class ConfigurationError(KindstoreError):
    """Raised when a Store or backend cannot be configured."""


class SchemaMismatchError(KindstoreError):
    """Raised when a property is not declared in the Schema, or a value
    does not match the declared property type."""

    def __init__(self, kind: str, name: str, detail: Optional[str] = None) -> None:
        self.kind = kind
        self.name = name
        message = f"Property '{name}' is not valid for Kind '{kind}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InvalidKeyError(KindstoreError):
    """Raised for malformed keys, and when both a numeric id and a
    key name are assigned to one Entity."""


class EntityClassError(ConfigurationError, SchemaMismatchError):
    """Raised by set_entity_class() for a missing class, or for one
    that does not extend Entity."""

    def __init__(self, message: str) -> None:
        # Skip SchemaMismatchError.__init__, which expects a property name
        ConfigurationError.__init__(self, message)
        self.kind = ""
        self.name = ""


class BackendError(KindstoreError):
    """Raised for any failure reported by the Datastore backend."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        self.message = message
        self.code = code
        super().__init__(message)
