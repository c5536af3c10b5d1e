"""
Risk Engine

Pure functions, no I/O:
- calculate_premium: fixed linear risk adjustment over a base rate
- classify_anchor_risk: severity lookup for an anchor event

Money is integer micros end to end. Python ints are arbitrary precision,
so valuation × risk_bps never overflows and never touches a float.
"""

from typing import Any, Mapping

from ..schemas import AnchorEventType, PremiumResult, PricingContext, RiskImpact, SecurityLevel
from .hasher import Hasher

PRICING_VERSION = "1.0.0"
DEFAULT_CURRENCY = "USD"

BASE_RISK_BPS = 1000  # 10.00%
MIN_RISK_BPS = 200
BPS_DENOMINATOR = 10000

RECENT_SERVICE_DAYS = 90

# (reason code, deduction in bps), applied in this order
REASON_RECENT_SERVICE = "VERIFIED_MAINTENANCE_RECENT"
REASON_CLEAN_TRANSIT = "CLEAN_TRANSIT_HISTORY"
REASON_SECURITY_VERIFIED = "SECURITY_VERIFIED"

DEDUCTIONS_BPS = {
    REASON_RECENT_SERVICE: 150,
    REASON_CLEAN_TRANSIT: 50,
    REASON_SECURITY_VERIFIED: 100,
}

CRITICAL_SEAL_TRIGGERS = frozenset({"TAMPER", "FORCE"})


def _applicable_reasons(ctx: PricingContext) -> list[str]:
    reasons = []
    if ctx.last_verified_service_days < RECENT_SERVICE_DAYS:
        reasons.append(REASON_RECENT_SERVICE)
    if not ctx.transit_damage_history:
        reasons.append(REASON_CLEAN_TRANSIT)
    if ctx.security_level == SecurityLevel.VERIFIED:
        reasons.append(REASON_SECURITY_VERIFIED)
    return reasons


def calculate_premium(
    ctx: PricingContext,
    currency: str = DEFAULT_CURRENCY,
) -> PremiumResult:
    """
    Price a pricing context.

    risk_bps = max(1000 - deductions, 200)
    premium_micros = floor(valuation_micros * risk_bps / 10000)

    inputs_hash commits to the whole context, so a stored quote can later
    prove which inputs produced its price.
    """
    reasons = _applicable_reasons(ctx)
    risk_bps = BASE_RISK_BPS - sum(DEDUCTIONS_BPS[r] for r in reasons)
    risk_bps = max(risk_bps, MIN_RISK_BPS)

    premium_micros = (ctx.asset_valuation_micros * risk_bps) // BPS_DENOMINATOR

    return PremiumResult(
        pricing_version=PRICING_VERSION,
        premium_micros=premium_micros,
        currency=currency,
        risk_bps=risk_bps,
        reasons=reasons,
        inputs_hash=Hasher.hash_data(ctx),
    )


def classify_anchor_risk(
    event_type: AnchorEventType,
    payload: Mapping[str, Any],
) -> RiskImpact:
    """
    Severity of one anchor event.

    event_type must already be a validated AnchorEventType; unknown
    types are rejected at the boundary and never reach this table.
    Payload sub-fields that are missing or not understood fall back to
    the milder outcome.
    """
    event_type = AnchorEventType(event_type)

    if event_type == AnchorEventType.ANCHOR_SEAL_BROKEN:
        trigger = payload.get("trigger_type")
        if isinstance(trigger, str) and trigger in CRITICAL_SEAL_TRIGGERS:
            return RiskImpact.CRITICAL
        return RiskImpact.MAJOR

    if event_type == AnchorEventType.ANCHOR_ENVIRONMENTAL_ALERT:
        if payload.get("metric") == "SHOCK":
            return RiskImpact.MAJOR
        return RiskImpact.MINOR

    if event_type == AnchorEventType.ANCHOR_CUSTODY_SIGNAL:
        return RiskImpact.MINOR

    # SEAL_ARMED is a positive signal; REGISTERED carries no risk
    return RiskImpact.NONE
