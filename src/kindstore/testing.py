"""
Testing utilities for kindstore backends.

This module provides deterministic id allocation for the in-memory
backend, and utilities for checking that two backends return the same
entities for the same operations.
"""

from __future__ import annotations

from typing import (
    Any,
    Callable,
    Iterator,
    Optional,
    TypeVar,
    List,
    Sequence,
    Tuple,
)
from contextlib import contextmanager
from dataclasses import dataclass, field
import itertools
import random

from .entity import Entity
from .memory import MemoryBackend

T = TypeVar("T")

Comparator = Callable[[Any, Any], Tuple[bool, Optional[str]]]

# Datastore's scattered ids stay below 2**53
MAX_SCATTERED_ID = 2**53 - 1


# =============================================================================
# Id allocation
# =============================================================================


def sequential_ids(start: int = 1) -> Callable[[], int]:
    """An id allocator returning start, start + 1, ...

    Example:
        backend = MemoryBackend(id_allocator=sequential_ids(100))
    """
    return itertools.count(start).__next__


def scattered_ids(seed: int = 42) -> Callable[[], int]:
    """A reproducible id allocator returning large, unordered ids.

    Datastore allocates scattered ids, so code must not rely on new ids
    being ascending. Use this allocator to check that it doesn't.
    """
    rng = random.Random(seed)
    issued: set = set()

    def allocate() -> int:
        while True:
            key_id = rng.randint(1, MAX_SCATTERED_ID)
            if key_id not in issued:
                issued.add(key_id)
                return key_id

    return allocate


@contextmanager
def memory_backend(
    id_allocator: Optional[Callable[[], int]] = None,
) -> Iterator[MemoryBackend]:
    """Context manager yielding a fresh MemoryBackend, closed on exit.

    Example:
        with memory_backend(sequential_ids()) as backend:
            store = Store("Book", Gateway(backend))
    """
    backend = MemoryBackend(id_allocator=id_allocator)
    try:
        yield backend
    finally:
        backend.close()


# =============================================================================
# Entity comparison
# =============================================================================


def describe(entity: Optional[Entity]) -> str:
    """A short label naming an Entity by its key path.

    Example: Author('herbert')/Book(7), or Book(unsaved) for an Entity
    that has not been written.
    """
    if entity is None:
        return "nothing"
    if entity.schema is None:
        return "Entity(unbound)"
    parts = []
    for element in entity.to_key().path:
        ident = element.id if element.id is not None else element.name
        parts.append(f"{element.kind}({'unsaved' if ident is None else repr(ident)})")
    return "/".join(parts)


def compare_entities(
    entity1: Optional[Entity],
    entity2: Optional[Entity],
    fields: Optional[List[str]] = None,
    compare_keys: bool = True,
) -> Tuple[bool, Optional[str]]:
    """Compare two entities property by property.

    Args:
        entity1: First entity (usually from the primary backend).
        entity2: Second entity.
        fields: Property names to compare; all properties of either
            entity if omitted.
        compare_keys: Whether key paths must match. Backends allocate
            different ids, so turn this off for auto-id entities.

    Returns:
        Tuple of (match, difference_description). The description starts
        with the label of the first entity.
    """
    if entity1 is None and entity2 is None:
        return True, None
    if entity1 is None or entity2 is None:
        return False, f"{describe(entity1)} vs {describe(entity2)}"

    if entity1.kind != entity2.kind:
        return False, f"Kind mismatch: {describe(entity1)} vs {describe(entity2)}"
    if compare_keys and describe(entity1) != describe(entity2):
        return False, f"Key mismatch: {describe(entity1)} vs {describe(entity2)}"

    data1, data2 = entity1.get_data(), entity2.get_data()
    names = fields if fields is not None else sorted(set(data1) | set(data2))
    for name in names:
        val1 = data1.get(name)
        val2 = data2.get(name)
        if val1 != val2:
            return False, f"{describe(entity1)}.{name}: {val1!r} vs {val2!r}"

    return True, None


def compare_entity_lists(
    first: Sequence[Entity],
    second: Sequence[Entity],
    fields: Optional[List[str]] = None,
    compare_keys: bool = True,
) -> Tuple[bool, Optional[str]]:
    """Compare two query results, entity by entity, in order.

    With compare_keys, entities present in one result only are named
    before any property difference is reported.
    """
    if compare_keys:
        labels1 = [describe(e) for e in first]
        labels2 = [describe(e) for e in second]
        missing = [label for label in labels1 if label not in labels2]
        if missing:
            return False, f"Missing from second: {', '.join(missing)}"
        extra = [label for label in labels2 if label not in labels1]
        if extra:
            return False, f"Only in second: {', '.join(extra)}"
        if labels1 != labels2:
            return False, f"Order differs: {', '.join(labels1)} vs {', '.join(labels2)}"
    elif len(first) != len(second):
        return False, f"Count mismatch: {len(first)} vs {len(second)} entities"

    for entity1, entity2 in zip(first, second):
        match, difference = compare_entities(entity1, entity2, fields, compare_keys)
        if not match:
            return False, difference
    return True, None


def compare_results(first: Any, second: Any) -> Tuple[bool, Optional[str]]:
    """Compare two operation results of any shape.

    Entities and lists of entities are compared by key and property;
    anything else with ==.
    """
    if isinstance(first, Entity) or isinstance(second, Entity):
        return compare_entities(first, second)
    if (
        isinstance(first, list)
        and isinstance(second, list)
        and all(isinstance(e, Entity) for e in first + second)
        and (first or second)
    ):
        return compare_entity_lists(first, second)
    if first == second:
        return True, None
    return False, f"{first!r} vs {second!r}"


def summarize(result: Any) -> str:
    """A one-line summary of an operation result for reports."""
    if isinstance(result, Entity):
        return describe(result)
    if isinstance(result, list) and result and all(isinstance(e, Entity) for e in result):
        kinds = sorted({e.kind for e in result})
        return f"{len(result)} {'/'.join(kinds)} entities"
    return repr(result)


@dataclass
class ComparisonResult:
    """The outcome of one operation run on both backends."""

    operation: str
    primary_result: Any
    secondary_result: Any
    match: bool
    difference: Optional[str] = None


@dataclass
class ComparisonReport:
    """All operations compared by a DualBackendRunner."""

    results: List[ComparisonResult] = field(default_factory=list)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.match)

    @property
    def failed(self) -> int:
        return len(self.results) - self.passed

    @property
    def all_passed(self) -> bool:
        return self.failed == 0

    def add(self, result: ComparisonResult) -> None:
        self.results.append(result)

    def format(self) -> str:
        """Format the report, one line per operation.

        Failed operations also show what each backend returned and the
        first entity that differs.
        """
        lines = [f"Backend comparison: {self.passed} of {len(self.results)} operations agree"]
        for r in self.results:
            if r.match:
                lines.append(f"[PASS] {r.operation}: {summarize(r.primary_result)}")
                continue
            lines.append(f"[FAIL] {r.operation}")
            lines.append(f"    primary:   {summarize(r.primary_result)}")
            lines.append(f"    secondary: {summarize(r.secondary_result)}")
            if r.difference:
                lines.append(f"    {r.difference}")
        return "\n".join(lines)


class DualBackendRunner:
    """Runs operations on two backends and compares results.

    Typically the primary is a DatastoreBackend talking to the emulator
    and the secondary a MemoryBackend, to check that the in-memory
    backend behaves like the real thing. Entity results are compared by
    key path and properties unless another comparator is given.

    Example:
        runner = DualBackendRunner(datastore_backend, memory_backend)

        runner.run_both(
            "fetch authors",
            lambda b: Store(author_schema, Gateway(b)).fetch_all(),
        )

        if not runner.report.all_passed:
            print(runner.report.format())
    """

    def __init__(self, primary: Any, secondary: Any):
        """Initialize with both backends.

        Args:
            primary: The reference backend.
            secondary: The backend checked against it.
        """
        self.primary = primary
        self.secondary = secondary
        self.report = ComparisonReport()

    def run(
        self,
        operation_name: str,
        primary_op: Callable[[], T],
        secondary_op: Callable[[], T],
        comparator: Optional[Comparator] = None,
    ) -> T:
        """Run an operation on both backends and compare results.

        Args:
            operation_name: Name for the report.
            primary_op: Function to call on the primary backend.
            secondary_op: Function to call on the secondary backend.
            comparator: Comparison function; compare_results if omitted.

        Returns:
            The primary result (used as reference).

        Raises:
            AssertionError: If results don't match.
        """
        primary_result = primary_op()
        secondary_result = secondary_op()
        match, difference = (comparator or compare_results)(
            primary_result, secondary_result
        )

        self.report.add(
            ComparisonResult(
                operation=operation_name,
                primary_result=primary_result,
                secondary_result=secondary_result,
                match=match,
                difference=difference,
            )
        )

        if not match:
            raise AssertionError(
                f"Backend mismatch in '{operation_name}': {difference}"
            )

        return primary_result

    def run_both(
        self,
        operation_name: str,
        operation: Callable[[Any], T],
        comparator: Optional[Comparator] = None,
    ) -> T:
        """Run the same operation, given the backend, on both backends."""
        return self.run(
            operation_name,
            lambda: operation(self.primary),
            lambda: operation(self.secondary),
            comparator,
        )
