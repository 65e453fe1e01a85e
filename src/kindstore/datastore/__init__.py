"""
Google Cloud Datastore backend implementation.

This package provides the backend used in production, built on the
google-cloud-datastore client library. Set DATASTORE_EMULATOR_HOST to run
it against the Datastore emulator.
"""

from __future__ import annotations

from .backend import DatastoreBackend

__all__ = ["DatastoreBackend"]
