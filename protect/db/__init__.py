"""
Persistence Layer for the Protect core

Provides:
- RecordStore abstraction (InMemory for dev, Postgres for prod)
- Query predicates (Eq, Lt, In, NotNull)
- Connection configuration
"""

from .store import (
    Eq,
    In,
    InMemoryRecordStore,
    Lt,
    NotNull,
    PostgresRecordStore,
    RecordNotFoundError,
    RecordStore,
    RecordStoreError,
)
from .config import (
    DatabaseConfig,
    RecordStoreDriver,
    database_configured,
    get_recordstore_driver,
)

__all__ = [
    "Eq",
    "In",
    "InMemoryRecordStore",
    "Lt",
    "NotNull",
    "PostgresRecordStore",
    "RecordNotFoundError",
    "RecordStore",
    "RecordStoreError",
    "DatabaseConfig",
    "RecordStoreDriver",
    "database_configured",
    "get_recordstore_driver",
]
