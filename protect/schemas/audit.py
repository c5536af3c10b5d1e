"""
Audit Log Schema

Append-only observations of side effects. Never updated, never deleted.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class EntityType(str, Enum):
    """Record store entity names; also the audit resource_type."""
    QUOTE = "quote"
    POLICY = "policy"
    CLAIM = "claim"
    ANCHOR_EVENT = "anchor_event"
    AUDIT_LOG = "audit_log"
    OUTBOX_TASK = "outbox_task"


class AuditAction(str, Enum):
    """
    Action codes written by the core.
    You can add more later, never rename.
    """
    QUOTE_CREATED = "QUOTE_CREATED"
    QUOTE_EXPIRED = "QUOTE_EXPIRED"
    POLICY_BOUND = "POLICY_BOUND"

    CLAIM_SUBMITTED = "CLAIM_SUBMITTED"
    CLAIM_UNDER_REVIEW = "CLAIM_UNDER_REVIEW"
    CLAIM_APPROVED = "CLAIM_APPROVED"
    CLAIM_DENIED = "CLAIM_DENIED"
    CLAIM_PAID = "CLAIM_PAID"
    CLAIM_UPDATED = "CLAIM_UPDATED"

    ANCHOR_BREACH_DETECTED = "ANCHOR_BREACH_DETECTED"
    ANCHOR_SIGNAL_LOSS = "ANCHOR_SIGNAL_LOSS"

    LEDGER_WRITE_FAILED = "LEDGER_WRITE_FAILED"
    ADJUDICATION_SUBMITTED = "ADJUDICATION_SUBMITTED"
    ADJUDICATION_DEFERRED = "ADJUDICATION_DEFERRED"


class AuditLogEntry(BaseModel):
    id: UUID
    action: AuditAction
    resource_type: str
    resource_id: str
    actor_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
