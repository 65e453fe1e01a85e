"""
In-memory backend implementation.

This package provides a dictionary-backed Datastore backend with a GQL
subset interpreter, for tests and local development.
"""

from __future__ import annotations

from .backend import MemoryBackend
from .gql import parse_gql

__all__ = ["MemoryBackend", "parse_gql"]
