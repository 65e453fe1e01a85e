"""
Datastore configuration settings.

This module provides configuration for the kindstore backends, reading from
environment variables with sensible defaults.
"""

from __future__ import annotations

import os
from typing import Optional
from dataclasses import dataclass


@dataclass
class DatastoreConfig:
    """Datastore configuration settings."""

    # Backend selection: "datastore" or "memory"
    backend: str

    # Google Cloud project id (falls back to GOOGLE_CLOUD_PROJECT)
    project_id: Optional[str]

    # Namespace applied to every key; None is the default namespace
    namespace: Optional[str]

    # Datastore emulator address, host:port
    emulator_host: Optional[str]

    # Per-RPC timeout in seconds
    timeout: float

    @classmethod
    def from_env(cls) -> DatastoreConfig:
        """Create configuration from environment variables."""
        return cls(
            backend=os.environ.get("DATASTORE_BACKEND", "datastore").lower(),
            project_id=(
                os.environ.get("DATASTORE_PROJECT_ID")
                or os.environ.get("GOOGLE_CLOUD_PROJECT")
            ),
            namespace=os.environ.get("DATASTORE_NAMESPACE") or None,
            emulator_host=os.environ.get("DATASTORE_EMULATOR_HOST") or None,
            timeout=float(os.environ.get("DATASTORE_TIMEOUT", "30")),
        )


# Global configuration instance
_config: Optional[DatastoreConfig] = None


def get_config() -> DatastoreConfig:
    """Get the datastore configuration, initializing from environment if needed."""
    global _config
    if _config is None:
        _config = DatastoreConfig.from_env()
    return _config


def set_config(config: Optional[DatastoreConfig]) -> None:
    """Set the datastore configuration (useful for testing).

    Passing None makes the next get_config() call re-read the environment.
    """
    global _config
    _config = config
