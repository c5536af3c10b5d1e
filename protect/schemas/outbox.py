"""
Outbox Schema

Best-effort side effects (ledger appends, adjudication hand-offs) recorded
after the authoritative domain write, executed and retried independently.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel


class OutboxKind(str, Enum):
    LEDGER_APPEND = "LEDGER_APPEND"
    ADJUDICATION_SUBMIT = "ADJUDICATION_SUBMIT"


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"  # refused by the receiver; retrying will not help


class OutboxTask(BaseModel):
    id: UUID
    kind: OutboxKind
    idempotency_key: str
    payload: dict[str, Any]

    # Entity whose ledger_event_id receives the receipt
    target_type: Optional[str] = None
    target_id: Optional[UUID] = None

    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class OutboxTaskUpdate(BaseModel):
    status: Optional[OutboxStatus] = None
    attempts: Optional[int] = None
    last_error: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    completed_at: Optional[datetime] = None
