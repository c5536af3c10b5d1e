"""
Shared runtime wiring.

Builds the record store, ledger client, adjudication client and the
ProtectService from a ProtectConfig. The HTTP app and the CLI both get
their service from here.

Store selection:
- RECORDSTORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: in-memory (development only, nothing survives a restart)
"""

from threading import Lock
from typing import Optional

from .config import ProtectConfig
from .core.adjudication import create_adjudication_client
from .core.ledger import create_ledger_client
from .core.service import ProtectService
from .db.config import RecordStoreDriver
from .db.store import InMemoryRecordStore, RecordStore
from .observability import get_logger

logger = get_logger(__name__)

_service_lock = Lock()
_service: Optional[ProtectService] = None


def create_record_store(config: ProtectConfig) -> RecordStore:
    """
    Returns:
        InMemoryRecordStore for development/testing
        PostgresRecordStore when the psycopg2 driver is selected

    A configured database that cannot be reached is an error, never a
    silent fallback to memory.
    """
    if config.recordstore_driver == RecordStoreDriver.MEMORY:
        logger.info("Using in-memory record store (no persistence)")
        return InMemoryRecordStore()

    import psycopg2
    from .db.store import PostgresRecordStore

    db_config = config.database
    dsn = db_config.to_url()

    def connection_factory():
        return psycopg2.connect(dsn)

    store = PostgresRecordStore(
        connection_factory,
        statement_timeout_ms=db_config.statement_timeout_ms,
    )
    store.ensure_schema()
    logger.info(
        "PostgreSQL record store ready",
        database=db_config.to_url(include_password=False),
    )
    return store


def create_service(config: Optional[ProtectConfig] = None) -> ProtectService:
    config = config or ProtectConfig.from_env()
    return ProtectService(
        store=create_record_store(config),
        ledger=create_ledger_client(config),
        adjudication=create_adjudication_client(config),
        config=config,
    )


def get_service() -> ProtectService:
    """Process-wide service, built on first use."""
    global _service
    with _service_lock:
        if _service is None:
            _service = create_service()
        return _service
