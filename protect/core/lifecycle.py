"""
Lifecycle State Machine

Quote → Policy → Claim, plus the anchor-health sub-state of a Policy.

Rules (enforced in code):
- Quote: PENDING → BOUND | EXPIRED. BOUND and EXPIRED are terminal.
- Bind: quote PENDING, not past expires_at, term_days > 0
- Claim filing: policy ACTIVE, incident in [effective_date, expiration_date)
- Claim: SUBMITTED → UNDER_REVIEW → APPROVED | DENIED | PAID
- resolved_at / resolved_by are stamped once, on entering a terminal state
- anchor_status changes only through an AnchorTransition

Nothing here performs I/O. Callers load records, ask this module what
the next state is, and write the returned partial update.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from ..schemas import (
    AnchorEventType,
    AnchorStatus,
    AuditAction,
    Claim,
    ClaimStatus,
    ClaimUpdate,
    ClaimUpdateRequest,
    Policy,
    PolicyAnchorUpdate,
    PolicyStatus,
    Quote,
    QuoteStatus,
)
from .errors import StateConflictError


# ============================================================
# ANCHOR STATUS TRANSITIONS
# ============================================================

@dataclass(frozen=True)
class SealArmed:
    """Seal (re-)armed. Clears BREACHED and SILENT."""
    kind = "SEAL_ARMED"

    def apply(self, current: AnchorStatus) -> AnchorStatus:
        return AnchorStatus.SEALED


@dataclass(frozen=True)
class SealBroken:
    kind = "SEAL_BROKEN"

    def apply(self, current: AnchorStatus) -> AnchorStatus:
        return AnchorStatus.BREACHED


@dataclass(frozen=True)
class Heartbeat:
    """Any other event: proves the anchor is alive, implies no seal change."""
    kind = "HEARTBEAT"

    def apply(self, current: AnchorStatus) -> AnchorStatus:
        if current == AnchorStatus.SILENT:
            return AnchorStatus.ACTIVE
        return current


@dataclass(frozen=True)
class SignalLost:
    """Watchdog verdict. Only a live anchor can go silent."""
    kind = "SIGNAL_LOST"

    def apply(self, current: AnchorStatus) -> AnchorStatus:
        if current in (AnchorStatus.ACTIVE, AnchorStatus.SEALED):
            return AnchorStatus.SILENT
        return current


AnchorTransition = Union[SealArmed, SealBroken, Heartbeat, SignalLost]

SILENCEABLE_ANCHOR_STATUSES = (AnchorStatus.ACTIVE, AnchorStatus.SEALED)


def transition_for_event(event_type: AnchorEventType) -> AnchorTransition:
    if event_type == AnchorEventType.ANCHOR_SEAL_ARMED:
        return SealArmed()
    if event_type == AnchorEventType.ANCHOR_SEAL_BROKEN:
        return SealBroken()
    return Heartbeat()


def is_stale_event(policy: Policy, event_timestamp: datetime) -> bool:
    """Older than the newest event already applied to the policy."""
    return (
        policy.last_anchor_event_at is not None
        and event_timestamp < policy.last_anchor_event_at
    )


def plan_anchor_update(
    policy: Policy,
    transition: AnchorTransition,
    event_timestamp: datetime,
) -> Optional[PolicyAnchorUpdate]:
    """
    Partial update for one anchor event, or None to leave the policy alone.

    A stale event only matters to a SILENT policy: it still lifts the
    silence, but leaves both timestamps where they are.
    """
    status = transition.apply(policy.anchor_status)
    if is_stale_event(policy, event_timestamp):
        if policy.anchor_status != AnchorStatus.SILENT:
            return None
        return PolicyAnchorUpdate(anchor_status=status)

    watch_since = policy.anchor_watch_since
    if watch_since is None or event_timestamp > watch_since:
        watch_since = event_timestamp
    return PolicyAnchorUpdate(
        anchor_status=status,
        last_anchor_event_at=event_timestamp,
        anchor_watch_since=watch_since,
    )


# ============================================================
# QUOTE / BIND
# ============================================================

def is_quote_lapsed(quote: Quote, now: datetime) -> bool:
    """PENDING but past its expiry: due to flip to EXPIRED."""
    return quote.status == QuoteStatus.PENDING and quote.expires_at < now


def ensure_quote_bindable(quote: Quote, now: datetime) -> None:
    """
    Raises:
        StateConflictError: naming the first failed precondition
    """
    if quote.status != QuoteStatus.PENDING:
        raise StateConflictError(
            f"Quote {quote.id} is {quote.status.value}, only PENDING quotes can be bound",
            details=[{"field": "quote_id", "message": f"status is {quote.status.value}"}],
        )
    if quote.expires_at < now:
        raise StateConflictError(
            f"Quote {quote.id} expired at {quote.expires_at.isoformat()}",
            details=[{"field": "quote_id", "message": "quote has expired"}],
        )
    if quote.term_days <= 0:
        raise StateConflictError(
            f"Quote {quote.id} has no coverage term",
            details=[{"field": "term_days", "message": "must be greater than 0"}],
        )


def policy_window(quote: Quote, now: datetime) -> tuple[datetime, datetime]:
    """Coverage starts at bind time and runs term_days."""
    return now, now + timedelta(days=quote.term_days)


def new_policy_number(now: datetime) -> str:
    """PRO-YYMM-XXXXXXXX"""
    return f"PRO-{now:%y%m}-{secrets.token_hex(4).upper()}"


def new_claim_number(now: datetime) -> str:
    """CLM-YYMM-XXXXXX"""
    return f"CLM-{now:%y%m}-{secrets.token_hex(3).upper()}"


# ============================================================
# CLAIMS
# ============================================================

def ensure_claimable(policy: Policy, incident_date: datetime) -> None:
    """
    Checked once, at submission. Later policy changes never
    re-validate existing claims.
    """
    if policy.status != PolicyStatus.ACTIVE:
        raise StateConflictError(
            f"Policy {policy.policy_number} is {policy.status.value}",
            details=[{"field": "policy_id", "message": "policy is not ACTIVE"}],
        )
    if not (policy.effective_date <= incident_date < policy.expiration_date):
        raise StateConflictError(
            "Incident date is outside the policy term",
            details=[{
                "field": "incident_date",
                "message": (
                    f"must be within [{policy.effective_date.isoformat()}, "
                    f"{policy.expiration_date.isoformat()})"
                ),
            }],
        )


ALLOWED_CLAIM_TRANSITIONS: dict[ClaimStatus, frozenset] = {
    ClaimStatus.SUBMITTED: frozenset({ClaimStatus.UNDER_REVIEW}),
    ClaimStatus.UNDER_REVIEW: frozenset({
        ClaimStatus.APPROVED,
        ClaimStatus.DENIED,
        ClaimStatus.PAID,
    }),
}


@dataclass
class ClaimChange:
    """What an update request means for a claim."""
    update: ClaimUpdate
    new_status: Optional[ClaimStatus]  # None: status untouched
    resolved: bool  # entered a terminal state with this change

    @property
    def audit_action(self) -> AuditAction:
        if self.new_status is None:
            return AuditAction.CLAIM_UPDATED
        return AuditAction(f"CLAIM_{self.new_status.value}")


def plan_claim_update(
    claim: Claim,
    request: ClaimUpdateRequest,
    now: datetime,
) -> ClaimChange:
    """
    Work out the partial update for `request` against `claim`.

    Requesting the claim's current status is a no-op on status, so a
    retried update is harmless. Resolution metadata is only written on
    the change that enters a terminal state.

    Raises:
        StateConflictError: the status change is not allowed
    """
    fields = request.model_dump(exclude_unset=True, exclude={"status", "resolved_by"})
    new_status = None
    resolved = False

    target = request.status
    if target is not None and target != claim.status:
        allowed = ALLOWED_CLAIM_TRANSITIONS.get(claim.status, frozenset())
        if target not in allowed:
            raise StateConflictError(
                f"Claim {claim.claim_number} cannot move from "
                f"{claim.status.value} to {target.value}",
                details=[{"field": "status", "message": f"current status is {claim.status.value}"}],
            )
        new_status = target
        fields["status"] = target
        if target.is_terminal:
            resolved = True
            fields["resolved_at"] = now
            fields["resolved_by"] = request.resolved_by

    return ClaimChange(
        update=ClaimUpdate(**fields),
        new_status=new_status,
        resolved=resolved,
    )
