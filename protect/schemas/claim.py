"""
Claim Schema

A Claim is a request against an ACTIVE policy for an incident inside the
policy term. It moves SUBMITTED → UNDER_REVIEW → APPROVED | DENIED | PAID.
Resolution metadata is stamped once, on entering a terminal state.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator


class ClaimType(str, Enum):
    THEFT = "THEFT"
    DAMAGE = "DAMAGE"
    LOSS = "LOSS"


class ClaimStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    PAID = "PAID"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_CLAIM_STATUSES


TERMINAL_CLAIM_STATUSES = frozenset({
    ClaimStatus.APPROVED,
    ClaimStatus.DENIED,
    ClaimStatus.PAID,
})


class ClaimSubmission(BaseModel):
    """Fields supplied when filing a claim."""
    policy_id: UUID
    claim_type: ClaimType
    description: str = Field(..., min_length=10, max_length=2000)
    incident_date: AwareDatetime
    incident_location: Optional[str] = None
    claimed_amount_micros: int = Field(..., gt=0)
    evidence_ids: list[str] = Field(default_factory=list)
    anchor_event_ids: list[str] = Field(default_factory=list)


class ClaimUpdateRequest(BaseModel):
    """
    Adjudication-side update.

    status may only name UNDER_REVIEW, APPROVED, DENIED or PAID;
    anything else is rejected here, never coerced.
    """
    model_config = ConfigDict(extra="forbid")

    status: Optional[ClaimStatus] = None
    approved_amount_micros: Optional[int] = Field(default=None, ge=0)
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    adjudication_packet_id: Optional[str] = None
    adjudication_score: Optional[Decimal] = Field(default=None, ge=0, le=1)

    @field_validator("status")
    @classmethod
    def status_must_be_reviewable(cls, v: Optional[ClaimStatus]) -> Optional[ClaimStatus]:
        if v == ClaimStatus.SUBMITTED:
            raise ValueError(
                "status must be one of UNDER_REVIEW, APPROVED, DENIED, PAID"
            )
        return v


class Claim(BaseModel):
    """Persisted claim record."""
    id: UUID
    claim_number: str
    policy_id: UUID
    claim_type: ClaimType
    description: str
    incident_date: datetime
    incident_location: Optional[str] = None
    claimed_amount_micros: int
    approved_amount_micros: Optional[int] = None
    currency: str
    status: ClaimStatus = ClaimStatus.SUBMITTED
    evidence_ids: list[str] = Field(default_factory=list)
    anchor_event_ids: list[str] = Field(default_factory=list)

    adjudication_packet_id: Optional[str] = None
    adjudication_score: Optional[Decimal] = None

    resolution_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    ledger_event_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ClaimUpdate(BaseModel):
    """Mutable claim fields, as written to the record store."""
    status: Optional[ClaimStatus] = None
    approved_amount_micros: Optional[int] = None
    resolution_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    adjudication_packet_id: Optional[str] = None
    adjudication_score: Optional[Decimal] = None
