"""
Ledger Event Schema

The envelope sent to the external append-only ledger, the receipt it
returns, and the signed integration payloads relayed onto it.

Each envelope:
- Carries its business payload with the payload's own canonical hash
- Groups causally related events by correlation_id
- Is appended at most once per idempotency_key
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator


class LedgerEventType(str, Enum):
    """
    Event types this service writes.
    You can add more later, never remove.
    """
    PROTECT_QUOTE_CREATED = "PROTECT_QUOTE_CREATED"
    POLICY_BOUND = "POLICY_BOUND"
    CLAIM_SUBMITTED = "CLAIM_SUBMITTED"
    CLAIM_RESOLVED = "CLAIM_RESOLVED"
    SERVICE_RECORDED = "SERVICE_RECORDED"
    TRANSIT_HANDOFF_COMPLETED = "TRANSIT_HANDOFF_COMPLETED"


class LedgerEvent(BaseModel):
    """One append request."""
    type: LedgerEventType
    asset_id: str
    custody_token_id: Optional[str] = None
    payload: dict[str, Any]
    correlation_id: str
    idempotency_key: str = Field(..., min_length=1)
    created_at: datetime
    schema_version: str = "1.0.0"


class LedgerReceipt(BaseModel):
    """What the ledger hands back. The core keeps only this, never ledger internals."""
    ledger_event_id: str
    idempotency_key: str


# ------------------------------------------------------------
# Integration payloads
# Signed by their producers; signatures are stripped before hashing.
# Unknown fields are kept so the hash covers everything that was sent.
# ------------------------------------------------------------

class ServiceRecord(BaseModel):
    """A maintenance/service attestation for an asset."""
    model_config = ConfigDict(extra="allow")

    asset_id: UUID
    service_type: str = Field(..., min_length=1)
    performed_at: AwareDatetime
    provider_id: str = Field(..., min_length=1)
    sig: Optional[str] = None


class HandoffChallenge(BaseModel):
    """Custody hand-off offer signed by the releasing party."""
    model_config = ConfigDict(extra="allow")

    custody_token_id: str = Field(..., min_length=1)
    from_party: str
    to_party: str
    issued_at: AwareDatetime
    nonce: str
    sig: Optional[str] = None


class HandoffAcceptance(BaseModel):
    """Custody hand-off acceptance signed by the receiving party."""
    model_config = ConfigDict(extra="allow")

    custody_token_id: str = Field(..., min_length=1)
    accepted_by: str
    accepted_at: AwareDatetime
    nonce: str
    sig: Optional[str] = None


class TransitHandoffPayload(BaseModel):
    asset_id: UUID
    challenge: HandoffChallenge
    acceptance: HandoffAcceptance

    @model_validator(mode="after")
    def acceptance_matches_challenge(self) -> "TransitHandoffPayload":
        if self.challenge.custody_token_id != self.acceptance.custody_token_id:
            raise ValueError("acceptance.custody_token_id does not match challenge")
        if self.challenge.nonce != self.acceptance.nonce:
            raise ValueError("acceptance.nonce does not match challenge")
        return self


class PolicyBindRelay(BaseModel):
    """A bind performed elsewhere, recorded on the ledger from here."""
    asset_id: UUID
    request: dict[str, Any]


class RelayResult(BaseModel):
    status: str = "ok"
    canonical_hash_hex: str
    receipt: LedgerReceipt
