"""
Policy Schema

A Policy is bound coverage created from exactly one PENDING quote.
It is never deleted; anchor_status is driven only by anchor events
and the signal-loss watchdog.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class PolicyStatus(str, Enum):
    """Top-level status. The core only ever creates ACTIVE policies."""
    ACTIVE = "ACTIVE"
    LAPSED = "LAPSED"
    CANCELLED = "CANCELLED"


class AnchorStatus(str, Enum):
    """
    Health of the physical anchor bound to the policy.

    ACTIVE ⇄ SEALED → BREACHED (until re-armed)
    ACTIVE/SEALED → SILENT (watchdog), cleared by the next event
    """
    ACTIVE = "ACTIVE"
    SEALED = "SEALED"
    BREACHED = "BREACHED"
    SILENT = "SILENT"


class BindRequest(BaseModel):
    """Request to bind a quote into a policy."""
    quote_id: UUID
    owner_id: Optional[str] = None
    anchor_id: Optional[str] = Field(default=None, min_length=1)


class Policy(BaseModel):
    """Persisted policy record."""
    id: UUID
    policy_number: str
    quote_id: UUID
    asset_id: str
    coverage_type: str
    premium_micros: int
    currency: str
    effective_date: datetime
    expiration_date: datetime
    status: PolicyStatus = PolicyStatus.ACTIVE
    owner_id: Optional[str] = None

    anchor_id: Optional[str] = None
    anchor_status: AnchorStatus = AnchorStatus.ACTIVE
    # Producer timestamp of the newest anchor event applied; None until one arrives
    last_anchor_event_at: Optional[datetime] = None
    # Silence is measured from here: bind time, then the newest event timestamp
    anchor_watch_since: Optional[datetime] = None

    ledger_event_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PolicyAnchorUpdate(BaseModel):
    """Fields anchor processing and the watchdog may touch."""
    anchor_status: Optional[AnchorStatus] = None
    last_anchor_event_at: Optional[datetime] = None
    anchor_watch_since: Optional[datetime] = None


class LedgerLinkUpdate(BaseModel):
    """Back-reference to the ledger entry recording an entity."""
    ledger_event_id: str
