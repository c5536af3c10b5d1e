"""
Tests for the lifecycle state machine (pure functions, no store).
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from protect.core import Heartbeat, SealArmed, SealBroken, SignalLost, StateConflictError
from protect.core.lifecycle import (
    ensure_claimable,
    ensure_quote_bindable,
    is_quote_lapsed,
    is_stale_event,
    new_claim_number,
    new_policy_number,
    plan_anchor_update,
    plan_claim_update,
    policy_window,
    transition_for_event,
)
from protect.schemas import (
    AnchorEventType,
    AnchorStatus,
    AuditAction,
    Claim,
    ClaimStatus,
    ClaimUpdateRequest,
    Policy,
    PolicyStatus,
    Quote,
    QuoteStatus,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_quote(**overrides) -> Quote:
    fields = dict(
        id=uuid4(),
        asset_id="asset-1",
        coverage_type="ALL_RISK",
        term_days=30,
        asset_valuation_micros=100_000_000,
        security_level="VERIFIED",
        last_verified_service_days=30,
        transit_damage_history=False,
        premium_micros=7_000_000,
        currency="USD",
        risk_bps=700,
        reasons=[],
        pricing_version="1.0.0",
        inputs_hash="0" * 64,
        status=QuoteStatus.PENDING,
        expires_at=NOW + timedelta(hours=24),
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return Quote(**fields)


def make_policy(**overrides) -> Policy:
    fields = dict(
        id=uuid4(),
        policy_number="PRO-2603-ABCDEF01",
        quote_id=uuid4(),
        asset_id="asset-1",
        coverage_type="ALL_RISK",
        premium_micros=7_000_000,
        currency="USD",
        effective_date=NOW,
        expiration_date=NOW + timedelta(days=30),
        status=PolicyStatus.ACTIVE,
        anchor_id="anchor-1",
        anchor_status=AnchorStatus.ACTIVE,
        last_anchor_event_at=NOW,
        anchor_watch_since=NOW,
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return Policy(**fields)


def make_claim(**overrides) -> Claim:
    fields = dict(
        id=uuid4(),
        claim_number="CLM-2603-ABC123",
        policy_id=uuid4(),
        claim_type="THEFT",
        description="Container opened in transit",
        incident_date=NOW,
        claimed_amount_micros=5_000_000,
        currency="USD",
        status=ClaimStatus.SUBMITTED,
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return Claim(**fields)


class TestAnchorTransitions:

    @pytest.mark.parametrize("current", list(AnchorStatus))
    def test_seal_armed_always_seals(self, current):
        assert SealArmed().apply(current) == AnchorStatus.SEALED

    @pytest.mark.parametrize("current", list(AnchorStatus))
    def test_seal_broken_always_breaches(self, current):
        assert SealBroken().apply(current) == AnchorStatus.BREACHED

    def test_heartbeat_clears_silent(self):
        assert Heartbeat().apply(AnchorStatus.SILENT) == AnchorStatus.ACTIVE

    @pytest.mark.parametrize("current", [
        AnchorStatus.ACTIVE,
        AnchorStatus.SEALED,
        AnchorStatus.BREACHED,
    ])
    def test_heartbeat_keeps_seal_state(self, current):
        assert Heartbeat().apply(current) == current

    @pytest.mark.parametrize("current", [AnchorStatus.ACTIVE, AnchorStatus.SEALED])
    def test_signal_lost_silences_live_anchor(self, current):
        assert SignalLost().apply(current) == AnchorStatus.SILENT

    def test_signal_lost_leaves_breached(self):
        assert SignalLost().apply(AnchorStatus.BREACHED) == AnchorStatus.BREACHED

    def test_transition_for_event(self):
        assert isinstance(transition_for_event(AnchorEventType.ANCHOR_SEAL_ARMED), SealArmed)
        assert isinstance(transition_for_event(AnchorEventType.ANCHOR_SEAL_BROKEN), SealBroken)
        for event_type in (
            AnchorEventType.ANCHOR_REGISTERED,
            AnchorEventType.ANCHOR_ENVIRONMENTAL_ALERT,
            AnchorEventType.ANCHOR_CUSTODY_SIGNAL,
        ):
            assert isinstance(transition_for_event(event_type), Heartbeat)

    def test_stale_event(self):
        policy = make_policy(last_anchor_event_at=NOW)
        assert is_stale_event(policy, NOW - timedelta(seconds=1))
        assert not is_stale_event(policy, NOW)
        assert not is_stale_event(make_policy(last_anchor_event_at=None), NOW)

    def test_transitions_are_tagged(self):
        assert [t.kind for t in (SealArmed(), SealBroken(), Heartbeat(), SignalLost())] == [
            "SEAL_ARMED", "SEAL_BROKEN", "HEARTBEAT", "SIGNAL_LOST",
        ]


class TestPlanAnchorUpdate:

    def test_first_event_applies_even_if_older_than_bind(self):
        policy = make_policy(last_anchor_event_at=None)
        earlier = NOW - timedelta(minutes=1)

        update = plan_anchor_update(policy, SealBroken(), earlier)

        assert update.anchor_status == AnchorStatus.BREACHED
        assert update.last_anchor_event_at == earlier
        # The silence baseline never moves backwards
        assert update.anchor_watch_since == NOW

    def test_newer_event_advances_both_timestamps(self):
        later = NOW + timedelta(hours=1)
        update = plan_anchor_update(make_policy(), SealArmed(), later)

        assert update.anchor_status == AnchorStatus.SEALED
        assert update.last_anchor_event_at == later
        assert update.anchor_watch_since == later

    def test_stale_event_ignored_on_live_policy(self):
        policy = make_policy(anchor_status=AnchorStatus.SEALED)
        assert plan_anchor_update(policy, SealBroken(), NOW - timedelta(seconds=1)) is None

    @pytest.mark.parametrize("transition, expected", [
        (Heartbeat(), AnchorStatus.ACTIVE),
        (SealArmed(), AnchorStatus.SEALED),
        (SealBroken(), AnchorStatus.BREACHED),
    ])
    def test_stale_event_lifts_silence(self, transition, expected):
        policy = make_policy(anchor_status=AnchorStatus.SILENT)

        update = plan_anchor_update(policy, transition, NOW - timedelta(hours=3))

        assert update.model_dump(exclude_unset=True) == {"anchor_status": expected}


class TestQuoteBinding:

    def test_pending_unexpired_quote_is_bindable(self):
        ensure_quote_bindable(make_quote(), NOW)

    @pytest.mark.parametrize("status", [QuoteStatus.BOUND, QuoteStatus.EXPIRED])
    def test_only_pending_bindable(self, status):
        with pytest.raises(StateConflictError, match=status.value):
            ensure_quote_bindable(make_quote(status=status), NOW)

    def test_expired_quote_not_bindable(self):
        quote = make_quote(expires_at=NOW - timedelta(seconds=1))
        with pytest.raises(StateConflictError, match="expired"):
            ensure_quote_bindable(quote, NOW)

    def test_quote_expiring_exactly_now_still_bindable(self):
        ensure_quote_bindable(make_quote(expires_at=NOW), NOW)

    def test_zero_term_not_bindable(self):
        with pytest.raises(StateConflictError) as exc_info:
            ensure_quote_bindable(make_quote(term_days=0), NOW)
        assert exc_info.value.details[0]["field"] == "term_days"

    def test_lapse_detection(self):
        assert is_quote_lapsed(make_quote(expires_at=NOW - timedelta(minutes=1)), NOW)
        assert not is_quote_lapsed(make_quote(), NOW)
        assert not is_quote_lapsed(
            make_quote(status=QuoteStatus.BOUND, expires_at=NOW - timedelta(days=1)),
            NOW,
        )

    def test_policy_window(self):
        effective, expiration = policy_window(make_quote(term_days=30), NOW)
        assert effective == NOW
        assert expiration == NOW + timedelta(days=30)

    def test_numbers(self):
        policy_number = new_policy_number(NOW)
        claim_number = new_claim_number(NOW)

        assert policy_number.startswith("PRO-2603-")
        assert len(policy_number.split("-")[2]) == 8
        assert policy_number.split("-")[2] == policy_number.split("-")[2].upper()
        assert claim_number.startswith("CLM-2603-")
        assert len(claim_number.split("-")[2]) == 6


class TestClaimFiling:

    def test_incident_on_effective_date_is_covered(self):
        policy = make_policy()
        ensure_claimable(policy, policy.effective_date)

    def test_incident_on_expiration_date_not_covered(self):
        policy = make_policy()
        with pytest.raises(StateConflictError, match="outside the policy term"):
            ensure_claimable(policy, policy.expiration_date)

    def test_incident_before_term(self):
        policy = make_policy()
        with pytest.raises(StateConflictError):
            ensure_claimable(policy, policy.effective_date - timedelta(days=1))

    @pytest.mark.parametrize("status", [PolicyStatus.LAPSED, PolicyStatus.CANCELLED])
    def test_inactive_policy(self, status):
        policy = make_policy(status=status)
        with pytest.raises(StateConflictError, match=status.value):
            ensure_claimable(policy, policy.effective_date)


class TestClaimTransitions:

    def test_submitted_to_under_review(self):
        change = plan_claim_update(
            make_claim(),
            ClaimUpdateRequest(status=ClaimStatus.UNDER_REVIEW),
            NOW,
        )
        assert change.new_status == ClaimStatus.UNDER_REVIEW
        assert not change.resolved
        assert change.audit_action == AuditAction.CLAIM_UNDER_REVIEW
        assert change.update.resolved_at is None

    @pytest.mark.parametrize("target", [ClaimStatus.APPROVED, ClaimStatus.DENIED, ClaimStatus.PAID])
    def test_terminal_stamps_resolution(self, target):
        change = plan_claim_update(
            make_claim(status=ClaimStatus.UNDER_REVIEW),
            ClaimUpdateRequest(status=target, resolved_by="adjuster-7"),
            NOW,
        )
        assert change.resolved
        assert change.update.resolved_at == NOW
        assert change.update.resolved_by == "adjuster-7"
        assert change.audit_action == AuditAction(f"CLAIM_{target.value}")

    def test_cannot_skip_review(self):
        with pytest.raises(StateConflictError, match="SUBMITTED to APPROVED"):
            plan_claim_update(
                make_claim(),
                ClaimUpdateRequest(status=ClaimStatus.APPROVED),
                NOW,
            )

    def test_terminal_is_final(self):
        with pytest.raises(StateConflictError):
            plan_claim_update(
                make_claim(status=ClaimStatus.DENIED),
                ClaimUpdateRequest(status=ClaimStatus.UNDER_REVIEW),
                NOW,
            )

    def test_same_status_is_noop(self):
        """A retried update naming the current status changes nothing."""
        change = plan_claim_update(
            make_claim(status=ClaimStatus.APPROVED),
            ClaimUpdateRequest(status=ClaimStatus.APPROVED, resolved_by="someone-else"),
            NOW,
        )
        assert change.new_status is None
        assert not change.resolved
        assert change.update.model_dump(exclude_unset=True) == {}

    def test_field_only_update(self):
        change = plan_claim_update(
            make_claim(status=ClaimStatus.UNDER_REVIEW),
            ClaimUpdateRequest(resolution_notes="awaiting photos"),
            NOW,
        )
        assert change.audit_action == AuditAction.CLAIM_UPDATED
        assert change.update.model_dump(exclude_unset=True) == {
            "resolution_notes": "awaiting photos",
        }

    def test_submitted_rejected_as_target(self):
        from pydantic import ValidationError

        with pytest.raises(ValidationError):
            ClaimUpdateRequest(status=ClaimStatus.SUBMITTED)

    def test_unknown_fields_rejected(self):
        from pydantic import ValidationError

        with pytest.raises(ValidationError):
            ClaimUpdateRequest(claimed_amount_micros=1)
