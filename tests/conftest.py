"""
Pytest configuration and fixtures for kindstore tests.

This module provides fixtures that run the same tests against the in-memory
backend and against Google Cloud Datastore (through its emulator), as well
as a comparison mode that runs operations on both.

Usage:
    # Run tests against the in-memory backend only (the default)
    pytest tests/ --backend=memory

    # Run tests against the Datastore emulator only
    DATASTORE_EMULATOR_HOST=localhost:8081 pytest tests/ --backend=datastore

    # Run tests against both backends
    pytest tests/ --backend=both

    # Run comparison tests (execute on both and compare)
    pytest tests/ --compare

Start the emulator with --consistency=1.0 so that queries see every write.
"""

from __future__ import annotations

import os
import uuid
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pytest

from kindstore import Gateway, Schema, Store, reset_backend, set_config
from kindstore.memory import MemoryBackend
from kindstore.protocols import DatastoreBackendProtocol
from kindstore.testing import sequential_ids

EMULATOR_PROJECT = "kindstore-test"


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add command-line options for backend selection."""
    parser.addoption(
        "--backend",
        action="store",
        default="memory",
        choices=["memory", "datastore", "both"],
        help="Datastore backend to test: memory, datastore, or both",
    )
    parser.addoption(
        "--compare",
        action="store_true",
        default=False,
        help="Run comparison tests (execute on both backends and compare results)",
    )


def get_requested_backends(config: pytest.Config) -> List[str]:
    """Get list of backends to test based on command-line option."""
    backend = config.getoption("--backend")
    if backend == "both":
        return ["memory", "datastore"]
    return [str(backend)]


def _create_datastore_backend() -> DatastoreBackendProtocol:
    """Create a Datastore backend on the emulator, in a fresh namespace."""
    emulator_host = os.environ.get("DATASTORE_EMULATOR_HOST")
    if not emulator_host:
        pytest.skip("Datastore tests require DATASTORE_EMULATOR_HOST")
    # Import here to avoid loading the Google Cloud libraries when not needed
    from kindstore.config import DatastoreConfig
    from kindstore.datastore import DatastoreBackend

    config = DatastoreConfig(
        backend="datastore",
        project_id=os.environ.get("DATASTORE_PROJECT_ID", EMULATOR_PROJECT),
        # The emulator keeps data between tests; isolate each test
        namespace=f"test-{uuid.uuid4().hex[:12]}",
        emulator_host=emulator_host,
        timeout=10.0,
    )
    return DatastoreBackend.from_config(config)


@pytest.fixture(autouse=True)
def _reset_configuration() -> Iterator[None]:
    """Forget cached configuration and backend after each test."""
    yield
    reset_backend()
    set_config(None)


@pytest.fixture(params=["memory", "datastore"])
def backend(request: pytest.FixtureRequest) -> Iterator[DatastoreBackendProtocol]:
    """Fixture that provides each Datastore backend.

    Tests using this fixture run twice: once in memory, once against the
    Datastore emulator. Use --backend option to limit which backends to test.

    Example:
        def test_upsert(backend):
            store = Store("Book", Gateway(backend))
    """
    backend_name: str = request.param
    config = request.config

    requested = get_requested_backends(config)
    if backend_name not in requested:
        pytest.skip(
            f"Skipping {backend_name} backend "
            f"(not in --backend={config.getoption('--backend')})"
        )

    db: DatastoreBackendProtocol
    if backend_name == "memory":
        db = MemoryBackend(id_allocator=sequential_ids())
    else:
        db = _create_datastore_backend()

    yield db

    db.close()


@pytest.fixture
def memory() -> Iterator[MemoryBackend]:
    """Fixture that provides only the in-memory backend.

    Use this for tests of memory-specific behavior, such as id allocation.
    """
    db = MemoryBackend(id_allocator=sequential_ids())
    yield db
    db.close()


class RecordingBackend(MemoryBackend):
    """A MemoryBackend that records each call's name and transaction token."""

    def __init__(self) -> None:
        super().__init__(id_allocator=sequential_ids())
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.last_gql: Optional[str] = None
        self.last_params: Optional[Dict[str, Any]] = None

    def begin_transaction(self, cross_group=False):  # type: ignore[no-untyped-def]
        token = super().begin_transaction(cross_group)
        self.calls.append(("begin_transaction", token))
        return token

    def commit(self, mutations, mode, transaction=None):  # type: ignore[no-untyped-def]
        self.calls.append(("commit", transaction))
        return super().commit(mutations, mode, transaction)

    def lookup(self, keys, transaction=None):  # type: ignore[no-untyped-def]
        self.calls.append(("lookup", transaction))
        return super().lookup(keys, transaction)

    def run_query(self, gql, params=None, transaction=None):  # type: ignore[no-untyped-def]
        self.calls.append(("run_query", transaction))
        self.last_gql = gql
        self.last_params = dict(params) if params is not None else None
        return super().run_query(gql, params, transaction)


@pytest.fixture
def recording() -> Iterator[RecordingBackend]:
    """Fixture that provides an in-memory backend recording its calls."""
    db = RecordingBackend()
    yield db
    db.close()


@pytest.fixture
def both_backends(
    request: pytest.FixtureRequest,
) -> Iterator[Tuple[DatastoreBackendProtocol, DatastoreBackendProtocol]]:
    """Fixture for comparison tests: the emulator and the memory backend.

    This fixture is only available when running with --compare flag.
    """
    if not request.config.getoption("--compare"):
        pytest.skip("Comparison tests require --compare flag")

    datastore = _create_datastore_backend()
    memory = MemoryBackend(id_allocator=sequential_ids())

    yield (datastore, memory)

    datastore.close()
    memory.close()


# =============================================================================
# Schemas and stores
# =============================================================================


@pytest.fixture
def book_schema() -> Schema:
    return (
        Schema("Book")
        .add_string("title")
        .add_string("author")
        .add_integer("year")
        .add_float("rating")
        .add_boolean("in_print")
        .add_list("tags")
    )


@pytest.fixture
def author_schema() -> Schema:
    schema = Schema("Author").add_string("name").add_string("handle")
    schema.key_property = "handle"
    return schema


@pytest.fixture
def books(backend: DatastoreBackendProtocol, book_schema: Schema) -> Store:
    """A Book store on each requested backend."""
    return Store(book_schema, Gateway(backend))


# =============================================================================
# Markers
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "comparison: mark test as requiring both backends for comparison",
    )
