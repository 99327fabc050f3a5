"""Persistence layer: one StorageEngine contract, two interchangeable backends.

- **RelationalBackend**: SQLite through SQLAlchemy, cascades enforced by the engine
- **InMemoryBackend**: process-local emulation with identical observable behavior

The backend is chosen once, by :func:`create_storage_engine`, and never switched.
"""

import os
import logging
from typing import Optional

from services.database_service import DatabaseService

from .base import StorageEngine
from .errors import ConstraintViolation, DuplicateKey, NotInitialized, SerializationError, StorageError
from .memory_backend import InMemoryBackend
from .serialization import decode_quiz_payload, encode_quiz_payload
from .sql_backend import RelationalBackend

logger = logging.getLogger(__name__)

BACKENDS = {
    "sqlite": RelationalBackend,
    "memory": InMemoryBackend,
}


def create_storage_engine(backend: Optional[str] = None, database_url: Optional[str] = None) -> StorageEngine:
    """Build the configured backend (``STORAGE_BACKEND``, default ``sqlite``)."""
    backend = (backend or os.getenv("STORAGE_BACKEND", "sqlite")).strip().lower()
    if backend not in BACKENDS:
        raise ValueError(f"Unknown storage backend '{backend}', expected one of {sorted(BACKENDS)}")

    logger.info(f"Selected '{backend}' storage backend")
    if backend == "sqlite":
        return RelationalBackend(DatabaseService(database_url=database_url))
    return InMemoryBackend()


__all__ = [
    "StorageEngine",
    "RelationalBackend",
    "InMemoryBackend",
    "StorageError",
    "DuplicateKey",
    "NotInitialized",
    "SerializationError",
    "ConstraintViolation",
    "encode_quiz_payload",
    "decode_quiz_payload",
    "create_storage_engine",
]
