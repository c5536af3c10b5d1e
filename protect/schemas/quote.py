"""
Quote Schema

A Quote is an underwriting snapshot: a pure, replayable function of its
pricing inputs plus a fixed pricing version. Premium and risk are derived
once and never change afterwards.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SecurityLevel(str, Enum):
    """Physical-security posture of the insured asset."""
    STANDARD = "STANDARD"
    VERIFIED = "VERIFIED"


class QuoteStatus(str, Enum):
    """
    PENDING → BOUND (bind consumed the quote)
    PENDING → EXPIRED (lapsed, or bind attempted too late)
    BOUND and EXPIRED are terminal.
    """
    PENDING = "PENDING"
    BOUND = "BOUND"
    EXPIRED = "EXPIRED"


class PricingContext(BaseModel):
    """
    Underwriting inputs. Hashed in full as the quote's inputs_hash,
    so unknown fields are rejected rather than dropped.
    """
    model_config = ConfigDict(extra="forbid")

    asset_valuation_micros: int = Field(..., ge=0)
    security_level: SecurityLevel
    last_verified_service_days: int = Field(..., ge=0)
    transit_damage_history: bool


class QuoteRequest(BaseModel):
    """What is being insured and for how long."""
    asset_id: str = Field(..., min_length=1)
    coverage_type: str = Field(..., min_length=1)
    term_days: int = Field(..., ge=0)


class PremiumResult(BaseModel):
    """Output of the pricing engine."""
    pricing_version: str
    premium_micros: int
    currency: str
    risk_bps: int
    reasons: list[str]
    inputs_hash: str


class Quote(BaseModel):
    """Persisted quote record."""
    id: UUID
    asset_id: str
    coverage_type: str
    term_days: int

    # Inputs
    asset_valuation_micros: int
    security_level: SecurityLevel
    last_verified_service_days: int
    transit_damage_history: bool

    # Derived, immutable
    premium_micros: int
    currency: str
    risk_bps: int
    reasons: list[str]
    pricing_version: str
    inputs_hash: str

    status: QuoteStatus = QuoteStatus.PENDING
    expires_at: datetime
    ledger_event_id: Optional[str] = None

    created_at: datetime
    updated_at: datetime


class QuoteUpdate(BaseModel):
    """The only mutable field of a quote."""
    status: Optional[QuoteStatus] = None
