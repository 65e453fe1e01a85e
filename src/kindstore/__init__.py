"""
kindstore - an object-document mapper for Google Cloud Datastore.

This package maps typed, Schema-validated Entities onto a Datastore
backend, runs GQL queries with named parameters, pages through results
with cursors, and consumes transaction tokens one commit at a time.

Usage:
    from kindstore import Schema, Store

    store = Store(Schema("Book").add_string("title").add_string("author"))
    book = store.create_entity({"title": "Dune", "author": "Herbert"})
    store.upsert(book)
    books = store.query(
        "SELECT * FROM `Book` WHERE author = @a", {"a": "Herbert"}
    ).fetch_all()

The backend is chosen by the DATASTORE_BACKEND environment variable
(see kindstore.config), or passed explicitly:
    store = Store("Book", Gateway(MemoryBackend()))
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from .config import DatastoreConfig, get_config, set_config
from .entity import Entity
from .errors import (
    BackendError,
    ConfigurationError,
    EntityClassError,
    InvalidKeyError,
    KindstoreError,
    SchemaMismatchError,
    ValidationError,
)
from .gateway import CallOptions, Gateway
from .protocols import Cursor, Key, PathElement
from .schema import PropertyType, Schema
from .store import Store, prepare_params

if TYPE_CHECKING:
    from .protocols import DatastoreBackendProtocol

# Cache the backend instance
_backend_instance: "Optional[DatastoreBackendProtocol]" = None


def get_backend(force_new: bool = False) -> "DatastoreBackendProtocol":
    """Get the configured Datastore backend.

    The backend is determined by the DATASTORE_BACKEND environment variable:
    - "datastore" (default): Google Cloud Datastore, or its emulator when
      DATASTORE_EMULATOR_HOST is set
    - "memory": an in-process backend, for tests and local development

    Args:
        force_new: If True, create a new instance even if one is cached.

    Returns:
        DatastoreBackendProtocol: The configured backend instance.

    Raises:
        ConfigurationError: if DATASTORE_BACKEND names an unknown backend.
    """
    global _backend_instance

    if _backend_instance is not None and not force_new:
        return _backend_instance

    config = get_config()

    backend: DatastoreBackendProtocol
    if config.backend == "memory":
        from .memory import MemoryBackend

        backend = MemoryBackend()
    elif config.backend == "datastore":
        from .datastore import DatastoreBackend

        backend = DatastoreBackend.from_config(config)
    else:
        raise ConfigurationError(f"Unknown DATASTORE_BACKEND: {config.backend!r}")

    _backend_instance = backend
    return backend


def reset_backend() -> None:
    """Close and forget the cached backend instance.

    Useful for testing when you need to switch backends.
    """
    global _backend_instance
    if _backend_instance is not None:
        _backend_instance.close()
        _backend_instance = None


__all__ = [
    "Schema",
    "PropertyType",
    "Entity",
    "Store",
    "Gateway",
    "CallOptions",
    "Key",
    "PathElement",
    "Cursor",
    "prepare_params",
    # Errors
    "KindstoreError",
    "ValidationError",
    "ConfigurationError",
    "SchemaMismatchError",
    "InvalidKeyError",
    "EntityClassError",
    "BackendError",
    # Configuration
    "DatastoreConfig",
    "get_config",
    "set_config",
    "get_backend",
    "reset_backend",
]
