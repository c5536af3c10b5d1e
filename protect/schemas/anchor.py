"""
Anchor Event Schema

One physical-security telemetry signal (seal state, environment, custody)
received from the anchors service.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, Field


class AnchorEventType(str, Enum):
    """
    Recognized anchor event types.
    Anything else is rejected at validation, never classified.
    """
    ANCHOR_REGISTERED = "ANCHOR_REGISTERED"
    ANCHOR_SEAL_ARMED = "ANCHOR_SEAL_ARMED"
    ANCHOR_SEAL_BROKEN = "ANCHOR_SEAL_BROKEN"
    ANCHOR_ENVIRONMENTAL_ALERT = "ANCHOR_ENVIRONMENTAL_ALERT"
    ANCHOR_CUSTODY_SIGNAL = "ANCHOR_CUSTODY_SIGNAL"


class RiskImpact(str, Enum):
    """Discrete severity of an anchor event."""
    NONE = "NONE"
    MINOR = "MINOR"
    MAJOR = "MAJOR"
    CRITICAL = "CRITICAL"


class AnchorEventIn(BaseModel):
    """Inbound webhook body."""
    anchor_id: str = Field(..., min_length=1)
    event_type: AnchorEventType
    payload: dict[str, Any]
    event_timestamp: AwareDatetime
    ledger_event_id: str = Field(..., min_length=1)


class AnchorEvent(BaseModel):
    """
    Persisted anchor event.

    processed flips false → true exactly once, after every policy update
    and audit entry for the event has been written.
    """
    id: UUID
    anchor_id: str
    event_type: AnchorEventType
    payload: dict[str, Any]
    event_timestamp: datetime
    ledger_event_id: str
    policy_id: Optional[UUID] = None  # first matching ACTIVE policy
    policies_affected: int = 0
    risk_impact: RiskImpact
    processed: bool = False
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class AnchorEventUpdate(BaseModel):
    processed: Optional[bool] = None
    processed_at: Optional[datetime] = None
    policies_affected: Optional[int] = None


class IngestResult(BaseModel):
    """Outcome of one anchor-event delivery."""
    accepted: bool
    anchor_event_id: UUID
    policies_affected: int
    risk_impact: RiskImpact
    duplicate: bool = False
