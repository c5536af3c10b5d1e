"""
Record Store Abstraction

This module defines the RecordStore interface the core persists through,
and provides two implementations:
- InMemoryRecordStore: For development and testing
- PostgresRecordStore: For production with durability across instances

The RecordStore is responsible for:
- Assigning ids and created_at/updated_at stamps
- Per-row atomic field updates
- Filtering (equality, less-than on timestamps, membership, not-null)
- Ordering by creation time, newest first

The core retains responsibility for:
- Lifecycle rules and idempotency
- Deciding which fields may change (typed *Update models)

No cross-row transactions are offered or assumed. The core is written to be
idempotent and order-tolerant on top of single-row updates.
"""

import copy
import itertools
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from threading import Lock
from typing import Any, Callable, Iterable, Optional
from uuid import UUID, uuid4


def _json_serial(obj):
    """JSON serializer for objects not serializable by default json code."""
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Decimal):
        return str(obj)  # Preserve precision as string
    if isinstance(obj, Enum):
        return obj.value
    if hasattr(obj, "isoformat"):  # datetime, date
        return obj.isoformat()
    raise TypeError(f"Type {type(obj)} not serializable")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# EXCEPTIONS
# ============================================================

class RecordStoreError(Exception):
    """Base exception for record store errors."""
    pass


class RecordNotFoundError(RecordStoreError):
    """Raised when updating a record that does not exist."""
    pass


# ============================================================
# PREDICATES
# ============================================================

def _plain(value: Any) -> Any:
    """Comparable form of a stored or queried value."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    return value


@dataclass(frozen=True)
class Eq:
    field: str
    value: Any

    def matches(self, record: dict[str, Any]) -> bool:
        return _plain(record.get(self.field)) == _plain(self.value)


@dataclass(frozen=True)
class Lt:
    """Strictly less than. Missing/None fields never match."""
    field: str
    value: Any

    def matches(self, record: dict[str, Any]) -> bool:
        current = record.get(self.field)
        if current is None:
            return False
        return current < self.value


@dataclass(frozen=True)
class In:
    field: str
    values: tuple

    def __init__(self, field: str, values: Iterable[Any]):
        object.__setattr__(self, "field", field)
        object.__setattr__(self, "values", tuple(values))

    def matches(self, record: dict[str, Any]) -> bool:
        return _plain(record.get(self.field)) in {_plain(v) for v in self.values}


@dataclass(frozen=True)
class NotNull:
    field: str

    def matches(self, record: dict[str, Any]) -> bool:
        return record.get(self.field) is not None


Predicate = Eq | Lt | In | NotNull


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class RecordStore(ABC):
    """
    Abstract base class for record storage.

    Records are plain dicts keyed by field name. Every record carries
    `id`, `created_at` and `updated_at`, assigned by the store.

    Implementations must ensure:
    1. update() applies all given fields to one row atomically
    2. find() returns newest-first by created_at
    3. Returned dicts are copies; mutating them never changes the store
    """

    @abstractmethod
    def find(
        self,
        entity_type: str,
        where: Optional[list[Predicate]] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Return records of one entity type matching every predicate,
        ordered by creation time descending.
        """
        pass

    @abstractmethod
    def create(self, entity_type: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Insert a record and return it with id and timestamps filled in."""
        pass

    @abstractmethod
    def update(
        self,
        entity_type: str,
        record_id: UUID,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Set the given fields on one record and return the updated record.

        Raises:
            RecordNotFoundError: If no such record exists
        """
        pass

    def get(self, entity_type: str, record_id: UUID) -> Optional[dict[str, Any]]:
        """Fetch one record by id, or None."""
        rows = self.find(entity_type, [Eq("id", record_id)], limit=1)
        return rows[0] if rows else None

    def ping(self) -> bool:
        """Cheap reachability check for health endpoints."""
        return True


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryRecordStore(RecordStore):
    """
    In-memory implementation of RecordStore.

    Suitable for:
    - Development
    - Testing
    - Single-process deployments without persistence requirements

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._order: dict[str, int] = {}
        self._sequence = itertools.count()
        self._clock = clock or _utcnow
        self._lock = Lock()

    def find(
        self,
        entity_type: str,
        where: Optional[list[Predicate]] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            table = self._tables.get(_plain(entity_type), {})
            rows = [
                r for r in table.values()
                if all(p.matches(r) for p in (where or []))
            ]
            rows.sort(
                key=lambda r: (r["created_at"], self._order[str(r["id"])]),
                reverse=True,
            )
            if limit is not None:
                rows = rows[:limit]
            return copy.deepcopy(rows)

    def create(self, entity_type: str, fields: dict[str, Any]) -> dict[str, Any]:
        now = self._clock()
        record = copy.deepcopy(fields)
        record.setdefault("id", uuid4())
        record.setdefault("created_at", now)
        record["updated_at"] = now

        with self._lock:
            table = self._tables.setdefault(_plain(entity_type), {})
            key = str(record["id"])
            if key in table:
                raise RecordStoreError(f"{entity_type} {key} already exists")
            table[key] = record
            self._order[key] = next(self._sequence)
            return copy.deepcopy(record)

    def update(
        self,
        entity_type: str,
        record_id: UUID,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        with self._lock:
            table = self._tables.get(_plain(entity_type), {})
            record = table.get(str(record_id))
            if record is None:
                raise RecordNotFoundError(f"{entity_type} {record_id} not found")
            record.update(copy.deepcopy(fields))
            record["updated_at"] = self._clock()
            return copy.deepcopy(record)

    def count(self, entity_type: str) -> int:
        with self._lock:
            return len(self._tables.get(_plain(entity_type), {}))


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS protect_records (
    entity_type TEXT NOT NULL,
    id UUID NOT NULL,
    seq BIGSERIAL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    fields JSONB NOT NULL,
    PRIMARY KEY (entity_type, id)
);
CREATE INDEX IF NOT EXISTS protect_records_created_idx
    ON protect_records (entity_type, created_at DESC, seq DESC);
CREATE INDEX IF NOT EXISTS protect_records_fields_idx
    ON protect_records USING GIN (fields jsonb_path_ops);
"""


class PostgresRecordStore(RecordStore):
    """
    PostgreSQL implementation of RecordStore.

    Provides:
    - Durability (records survive restarts)
    - Multi-instance support (shared database)
    - Per-row atomic updates (UPDATE ... SET fields = fields || patch)
    - Statement timeouts to prevent hanging

    One JSONB document table holds every entity type. Timestamps live in
    the document as ISO strings and are compared as timestamptz.

    Usage:
        store = PostgresRecordStore(lambda: psycopg2.connect(dsn))
        store.ensure_schema()
    """

    STATEMENT_TIMEOUT_MS = 10000

    COLUMN_FIELDS = ("id", "created_at", "updated_at")

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._statement_timeout_ms = statement_timeout_ms
        self._clock = clock or _utcnow

    def _json(self, value: dict[str, Any]):
        from psycopg2.extras import Json

        return Json(value, dumps=lambda obj: json.dumps(obj, default=_json_serial))

    def _run(self, sql: str, params: tuple, fetch: bool = True) -> list[tuple]:
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            cursor.execute(
                f"SET statement_timeout = '{self._statement_timeout_ms}ms'"
            )
            cursor.execute(sql, params)
            rows = cursor.fetchall() if fetch else []
            conn.commit()
            return rows
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()
            conn.close()

    def ensure_schema(self) -> None:
        """Create the record table and indexes if missing."""
        self._run(SCHEMA_SQL, (), fetch=False)

    def ping(self) -> bool:
        self._run("SELECT 1", ())
        return True

    def _predicate_sql(self, predicate: Predicate) -> tuple[str, list[Any]]:
        if isinstance(predicate, Eq):
            if predicate.field == "id":
                return "id = %s", [str(predicate.value)]
            return "fields @> %s", [self._json({predicate.field: predicate.value})]

        if isinstance(predicate, In):
            return (
                "fields ->> %s = ANY(%s)",
                [predicate.field, [str(_plain(v)) for v in predicate.values]],
            )

        if isinstance(predicate, NotNull):
            return (
                "(fields ? %s AND fields -> %s <> 'null'::jsonb)",
                [predicate.field, predicate.field],
            )

        if isinstance(predicate, Lt):
            if predicate.field in self.COLUMN_FIELDS:
                return f"{predicate.field} < %s", [predicate.value]
            if isinstance(predicate.value, datetime):
                return "(fields ->> %s)::timestamptz < %s", [predicate.field, predicate.value]
            return "(fields ->> %s)::numeric < %s", [predicate.field, predicate.value]

        raise RecordStoreError(f"Unsupported predicate: {predicate!r}")

    def _row_to_record(self, row: tuple) -> dict[str, Any]:
        record_id, created_at, updated_at, fields = row
        if isinstance(fields, str):
            fields = json.loads(fields)
        record = dict(fields)
        record["id"] = UUID(str(record_id))
        record["created_at"] = created_at
        record["updated_at"] = updated_at
        return record

    def find(
        self,
        entity_type: str,
        where: Optional[list[Predicate]] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        clauses = ["entity_type = %s"]
        params: list[Any] = [_plain(entity_type)]
        for predicate in where or []:
            sql, values = self._predicate_sql(predicate)
            clauses.append(sql)
            params.extend(values)

        sql = f"""
            SELECT id, created_at, updated_at, fields
            FROM protect_records
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at DESC, seq DESC
        """
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)

        return [self._row_to_record(row) for row in self._run(sql, tuple(params))]

    def create(self, entity_type: str, fields: dict[str, Any]) -> dict[str, Any]:
        now = self._clock()
        body = dict(fields)
        record_id = body.pop("id", None) or uuid4()
        created_at = body.pop("created_at", None) or now
        body.pop("updated_at", None)

        rows = self._run(
            """
            INSERT INTO protect_records (entity_type, id, created_at, updated_at, fields)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id, created_at, updated_at, fields
            """,
            (_plain(entity_type), str(record_id), created_at, now, self._json(body)),
        )
        return self._row_to_record(rows[0])

    def update(
        self,
        entity_type: str,
        record_id: UUID,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        patch = {k: v for k, v in fields.items() if k not in self.COLUMN_FIELDS}
        rows = self._run(
            """
            UPDATE protect_records
            SET fields = fields || %s, updated_at = %s
            WHERE entity_type = %s AND id = %s
            RETURNING id, created_at, updated_at, fields
            """,
            (self._json(patch), self._clock(), _plain(entity_type), str(record_id)),
        )
        if not rows:
            raise RecordNotFoundError(f"{entity_type} {record_id} not found")
        return self._row_to_record(rows[0])
