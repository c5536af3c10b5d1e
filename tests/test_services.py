"""
Tests for the core operations: quote → policy → claim, side effects
through the outbox, and the integration relays.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from protect.core import (
    DownstreamUnavailableError,
    Hasher,
    InMemoryAdjudicationClient,
    LedgerClient,
    LedgerRejectedError,
    LedgerUnavailableError,
    NotFoundError,
    ProtectService,
    StateConflictError,
    ValidationError,
)
from protect.core.audit import AuditTrail
from protect.schemas import (
    AnchorStatus,
    AuditAction,
    ClaimStatus,
    EntityType,
    LedgerEventType,
    OutboxKind,
    OutboxStatus,
    QuoteStatus,
)


class FlakyLedger(LedgerClient):
    """Fails with the given error until `healthy` is set."""

    mode = "flaky"

    def __init__(self, inner, error=LedgerUnavailableError):
        self.inner = inner
        self.error = error
        self.healthy = False
        self.calls = 0

    def append_event(self, event):
        self.calls += 1
        if not self.healthy:
            raise self.error("ledger down")
        return self.inner.append_event(event)


class DownAdjudication(InMemoryAdjudicationClient):
    def __init__(self):
        super().__init__()
        self.down = True

    def submit_claim(self, payload, idempotency_key):
        if self.down:
            raise DownstreamUnavailableError("connection refused")
        return super().submit_claim(payload, idempotency_key)


def claim_body(policy, **overrides):
    body = {
        "policy_id": str(policy.id),
        "claim_type": "THEFT",
        "description": "Seal cut and pallet missing at the depot",
        "incident_date": (policy.effective_date + timedelta(days=1)).isoformat(),
        "incident_location": "Rotterdam",
        "claimed_amount_micros": 5_000_000,
        "evidence_ids": ["ev-1"],
    }
    body.update(overrides)
    return body


def audit_actions(store, resource_id):
    return [e.action for e in AuditTrail(store).entries_for(resource_id)]


class TestRateQuote:

    def test_end_to_end_premium(self, quote, clock):
        """valuation 100_000_000, 30 service days, clean transit, VERIFIED."""
        assert quote.risk_bps == 700
        assert quote.premium_micros == 7_000_000
        assert quote.reasons == [
            "VERIFIED_MAINTENANCE_RECENT",
            "CLEAN_TRANSIT_HISTORY",
            "SECURITY_VERIFIED",
        ]
        assert quote.status == QuoteStatus.PENDING
        assert quote.expires_at == clock.now + timedelta(hours=24)

    def test_ledger_event_written_and_linked(self, quote, ledger):
        entries = ledger.list_events()
        assert len(entries) == 1
        event = entries[0].event

        assert event["type"] == LedgerEventType.PROTECT_QUOTE_CREATED
        assert event["idempotency_key"] == f"quote-created-{quote.id}"
        assert event["correlation_id"] == str(quote.id)
        assert quote.ledger_event_id == entries[0].ledger_event_id

    def test_payload_carries_its_own_hash(self, quote, ledger):
        payload = dict(ledger.list_events()[0].event["payload"])
        claimed = payload.pop("canonical_hash_hex")
        assert Hasher.hash_data(payload) == claimed

    def test_audit_entry(self, quote, store):
        assert audit_actions(store, quote.id) == [AuditAction.QUOTE_CREATED]

    def test_invalid_context_writes_nothing(self, service, store, quote_request):
        with pytest.raises(ValidationError) as exc_info:
            service.rate_quote({"asset_valuation_micros": -1}, quote_request)

        fields = {d["field"] for d in exc_info.value.details}
        assert "asset_valuation_micros" in fields
        assert "security_level" in fields
        assert store.count(EntityType.QUOTE) == 0

    def test_float_valuation_rejected(self, service, pricing_context, quote_request):
        pricing_context["asset_valuation_micros"] = 1.5
        with pytest.raises(ValidationError):
            service.rate_quote(pricing_context, quote_request)

    def test_unknown_context_field_rejected(self, service, pricing_context, quote_request):
        pricing_context["credit_score"] = 700
        with pytest.raises(ValidationError):
            service.rate_quote(pricing_context, quote_request)

    def test_ledger_down_still_creates_quote(
        self, store, ledger, adjudication, config, clock, pricing_context, quote_request
    ):
        flaky = FlakyLedger(ledger)
        service = ProtectService(store, flaky, adjudication, config, clock=clock)

        quote = service.rate_quote(pricing_context, quote_request)

        assert quote.ledger_event_id is None
        assert audit_actions(store, quote.id) == [
            AuditAction.LEDGER_WRITE_FAILED,
            AuditAction.QUOTE_CREATED,
        ]

        flaky.healthy = True
        drained = service.drain_outbox()
        assert drained.completed == 1
        assert service.get_quote(quote.id).ledger_event_id is not None


class TestBindPolicy:

    def test_bind(self, policy, quote, service, clock):
        assert policy.status.value == "ACTIVE"
        assert policy.anchor_status == AnchorStatus.ACTIVE
        assert policy.effective_date == clock.now
        assert policy.expiration_date == clock.now + timedelta(days=365)
        assert policy.premium_micros == quote.premium_micros
        assert policy.policy_number.startswith("PRO-")
        assert policy.last_anchor_event_at is None
        assert policy.anchor_watch_since == policy.effective_date
        assert service.get_quote(quote.id).status == QuoteStatus.BOUND

    def test_bind_ledger_event(self, policy, quote, ledger):
        event = ledger.list_events()[-1].event
        assert event["type"] == LedgerEventType.POLICY_BOUND
        assert event["idempotency_key"] == f"policy-bind-{policy.id}"
        assert event["correlation_id"] == str(quote.id)
        assert event["payload"]["inputs_hash"] == quote.inputs_hash
        assert policy.ledger_event_id is not None

    def test_bind_audit(self, policy, store, quote):
        entries = AuditTrail(store).entries_for(policy.id, AuditAction.POLICY_BOUND)
        assert len(entries) == 1
        assert entries[0].details == {
            "quote_id": str(quote.id),
            "policy_number": policy.policy_number,
        }

    def test_second_bind_conflicts(self, policy, quote, service, store):
        with pytest.raises(StateConflictError, match="BOUND"):
            service.bind_policy({"quote_id": str(quote.id)})
        assert store.count(EntityType.POLICY) == 1

    def test_bind_without_anchor(self, service, quote):
        policy = service.bind_policy({"quote_id": str(quote.id)})
        assert policy.anchor_id is None
        assert policy.anchor_watch_since is None

    def test_expired_quote(self, service, quote, clock, store):
        clock.advance(hours=25)

        with pytest.raises(StateConflictError, match="EXPIRED"):
            service.bind_policy({"quote_id": str(quote.id)})

        assert service.get_quote(quote.id).status == QuoteStatus.EXPIRED
        assert AuditAction.QUOTE_EXPIRED in audit_actions(store, quote.id)
        assert store.count(EntityType.POLICY) == 0

    def test_zero_term(self, service, pricing_context, quote_request):
        quote_request["term_days"] = 0
        quote = service.rate_quote(pricing_context, quote_request)

        with pytest.raises(StateConflictError) as exc_info:
            service.bind_policy({"quote_id": str(quote.id)})
        assert exc_info.value.details[0]["field"] == "term_days"

    def test_unknown_quote(self, service):
        with pytest.raises(NotFoundError):
            service.bind_policy({"quote_id": str(uuid4())})

    def test_malformed_quote_id(self, service):
        with pytest.raises(ValidationError):
            service.bind_policy({"quote_id": "not-a-uuid"})

    def test_get_policy_detail(self, service, policy, quote):
        service.submit_claim(claim_body(policy))
        detail = service.get_policy(policy.id)

        assert detail.policy.id == policy.id
        assert detail.quote.id == quote.id
        assert len(detail.claims) == 1

    def test_get_policy_bad_id(self, service):
        with pytest.raises(NotFoundError):
            service.get_policy("garbage")


class TestExpireQuotes:

    def test_only_lapsed_pending(self, service, pricing_context, quote_request, clock):
        old = service.rate_quote(pricing_context, quote_request)
        bound = service.rate_quote(pricing_context, quote_request)
        service.bind_policy({"quote_id": str(bound.id)})
        clock.advance(hours=12)
        fresh = service.rate_quote(pricing_context, quote_request)
        clock.advance(hours=13)

        expired = service.expire_quotes()

        assert expired == [old.id]
        assert service.get_quote(old.id).status == QuoteStatus.EXPIRED
        assert service.get_quote(bound.id).status == QuoteStatus.BOUND
        assert service.get_quote(fresh.id).status == QuoteStatus.PENDING

    def test_idempotent(self, service, quote, clock):
        clock.advance(days=2)
        assert service.expire_quotes() == [quote.id]
        assert service.expire_quotes() == []


class TestSubmitClaim:

    def test_submit(self, service, policy, adjudication, ledger):
        submitted = service.submit_claim(claim_body(policy))
        claim = submitted.claim

        assert claim.status == ClaimStatus.SUBMITTED
        assert claim.claim_number.startswith("CLM-")
        assert claim.currency == policy.currency
        assert claim.ledger_event_id is not None
        assert submitted.adjudication.status == "RECEIVED"

        event = ledger.list_events()[-1].event
        assert event["type"] == LedgerEventType.CLAIM_SUBMITTED
        assert event["idempotency_key"] == f"claim-submit-{claim.id}"
        assert event["correlation_id"] == str(policy.id)

        payload = adjudication.submissions[f"claim-adjudicate-{claim.id}"]
        assert payload["policy_number"] == policy.policy_number
        assert payload["anchor_status"] == "ACTIVE"

    def test_adjudication_down_queues(
        self, store, ledger, config, clock, policy, service
    ):
        downstream = DownAdjudication()
        svc = ProtectService(store, ledger, downstream, config, clock=clock)

        submitted = svc.submit_claim(claim_body(policy))

        assert submitted.adjudication.adjudication_id == "PENDING_RETRY"
        assert submitted.adjudication.status == "QUEUED"
        assert submitted.claim.status == ClaimStatus.SUBMITTED
        assert AuditAction.ADJUDICATION_DEFERRED in audit_actions(store, submitted.claim.id)

        # A second failed retry does not repeat the deferred audit entry
        svc.drain_outbox()
        deferred = AuditTrail(store).entries_for(
            submitted.claim.id, AuditAction.ADJUDICATION_DEFERRED
        )
        assert len(deferred) == 1

        downstream.down = False
        assert svc.drain_outbox().completed == 1
        assert AuditAction.ADJUDICATION_SUBMITTED in audit_actions(store, submitted.claim.id)

    def test_incident_outside_term(self, service, policy):
        body = claim_body(
            policy,
            incident_date=(policy.expiration_date + timedelta(days=1)).isoformat(),
        )
        with pytest.raises(StateConflictError, match="outside the policy term"):
            service.submit_claim(body)

    def test_unknown_policy(self, service, policy):
        with pytest.raises(NotFoundError):
            service.submit_claim(claim_body(policy, policy_id=str(uuid4())))

    @pytest.mark.parametrize("overrides", [
        {"description": "short"},
        {"claimed_amount_micros": 0},
        {"claim_type": "ACT_OF_GOD"},
        {"incident_date": "2026-03-03T12:00:00"},  # no timezone
    ])
    def test_validation(self, service, policy, store, overrides):
        with pytest.raises(ValidationError):
            service.submit_claim(claim_body(policy, **overrides))
        assert store.count(EntityType.CLAIM) == 0

    def test_list_claims(self, service, policy, clock):
        first = service.submit_claim(claim_body(policy)).claim
        clock.advance(minutes=1)
        second = service.submit_claim(claim_body(policy)).claim
        service.update_claim(second.id, {"status": "UNDER_REVIEW"})

        assert [c.id for c in service.list_claims(policy_id=policy.id)] == [second.id, first.id]
        assert [c.id for c in service.list_claims(status=ClaimStatus.SUBMITTED)] == [first.id]
        assert service.list_claims(policy_id=uuid4()) == []


class TestUpdateClaim:

    @pytest.fixture
    def claim(self, service, policy):
        return service.submit_claim(claim_body(policy)).claim

    def test_review_then_approve(self, service, claim, store, ledger, clock):
        service.update_claim(claim.id, {"status": "UNDER_REVIEW"})
        clock.advance(hours=3)
        approved = service.update_claim(claim.id, {
            "status": "APPROVED",
            "approved_amount_micros": 4_500_000,
            "resolved_by": "adjuster-7",
            "adjudication_score": "0.91",
        })

        assert approved.status == ClaimStatus.APPROVED
        assert approved.resolved_at == clock.now
        assert approved.resolved_by == "adjuster-7"
        assert approved.adjudication_score == Decimal("0.91")

        actions = audit_actions(store, claim.id)
        assert AuditAction.CLAIM_UNDER_REVIEW in actions
        assert AuditAction.CLAIM_APPROVED in actions

        event = ledger.list_events()[-1].event
        assert event["type"] == LedgerEventType.CLAIM_RESOLVED
        assert event["idempotency_key"] == f"claim-resolve-{claim.id}"
        assert event["asset_id"] == "asset-7f3a"
        assert event["payload"]["adjudication_score"] == "0.91"

    def test_claim_keeps_submission_ledger_link(self, service, claim, ledger):
        submitted_entry = ledger.list_events()[-1]
        service.update_claim(claim.id, {"status": "UNDER_REVIEW"})
        service.update_claim(claim.id, {"status": "DENIED", "resolved_by": "adjuster-7"})

        resolved_entry = ledger.list_events()[-1]
        assert resolved_entry.event["idempotency_key"] == f"claim-resolve-{claim.id}"
        assert service.get_claim(claim.id).ledger_event_id == submitted_entry.ledger_event_id

    def test_skip_review_conflicts(self, service, claim):
        with pytest.raises(StateConflictError):
            service.update_claim(claim.id, {"status": "PAID"})
        assert service.get_claim(claim.id).status == ClaimStatus.SUBMITTED

    def test_resolution_not_restamped(self, service, claim, clock):
        service.update_claim(claim.id, {"status": "UNDER_REVIEW"})
        denied = service.update_claim(claim.id, {"status": "DENIED", "resolved_by": "a"})
        clock.advance(days=1)

        again = service.update_claim(claim.id, {"status": "DENIED", "resolved_by": "b"})

        assert again.resolved_at == denied.resolved_at
        assert again.resolved_by == "a"

    def test_notes_on_resolved_claim(self, service, claim, store):
        service.update_claim(claim.id, {"status": "UNDER_REVIEW"})
        service.update_claim(claim.id, {"status": "PAID"})

        updated = service.update_claim(claim.id, {"resolution_notes": "paid by wire"})

        assert updated.status == ClaimStatus.PAID
        assert updated.resolution_notes == "paid by wire"
        assert AuditAction.CLAIM_UPDATED in audit_actions(store, claim.id)

    def test_submitted_status_rejected(self, service, claim):
        with pytest.raises(ValidationError):
            service.update_claim(claim.id, {"status": "SUBMITTED"})

    def test_unknown_claim(self, service):
        with pytest.raises(NotFoundError):
            service.update_claim(uuid4(), {"status": "UNDER_REVIEW"})

    def test_empty_update_is_noop(self, service, claim, store):
        before = store.count(EntityType.AUDIT_LOG)
        assert service.update_claim(claim.id, {}).status == ClaimStatus.SUBMITTED
        assert store.count(EntityType.AUDIT_LOG) == before


class TestOutbox:

    def test_enqueue_is_idempotent(self, service, quote, store):
        tasks = store.find(EntityType.OUTBOX_TASK)
        assert len(tasks) == 1
        event_payload = tasks[0]["payload"]

        from protect.schemas import LedgerEvent

        again = service.outbox.enqueue_ledger_append(
            LedgerEvent.model_validate(event_payload), EntityType.QUOTE, quote.id
        )
        assert str(again.id) == str(tasks[0]["id"])
        assert store.count(EntityType.OUTBOX_TASK) == 1

    def test_done_task_not_rerun(self, service, quote, store, ledger):
        task_id = store.find(EntityType.OUTBOX_TASK)[0]["id"]
        task = service.outbox.dispatch(task_id)

        assert task.status == OutboxStatus.DONE
        assert task.attempts == 1
        assert ledger.event_count == 1

    def test_rejection_marks_failed(
        self, store, ledger, adjudication, config, clock, pricing_context, quote_request
    ):
        rejecting = FlakyLedger(ledger, error=LedgerRejectedError)
        service = ProtectService(store, rejecting, adjudication, config, clock=clock)
        quote = service.rate_quote(pricing_context, quote_request)

        assert service.outbox.dispatch_for(EntityType.QUOTE, quote.id) == []

        row = store.find(EntityType.OUTBOX_TASK)[0]
        assert row["status"] == OutboxStatus.FAILED
        assert row["attempts"] == 1

        result = service.drain_outbox()
        assert result.attempted == 0
        assert rejecting.calls == 1

    def test_deferred_dispatch(self, service, pricing_context, quote_request, store, ledger):
        quote = service.rate_quote(pricing_context, quote_request, dispatch=False)
        assert ledger.event_count == 0

        tasks = service.outbox.dispatch_for(EntityType.QUOTE, quote.id)
        assert [t.kind for t in tasks] == [OutboxKind.LEDGER_APPEND]
        assert ledger.event_count == 1

    def test_drain_oldest_first_with_limit(
        self, service, pricing_context, quote_request, ledger
    ):
        first = service.rate_quote(pricing_context, quote_request, dispatch=False)
        service.rate_quote(pricing_context, quote_request, dispatch=False)

        result = service.drain_outbox(limit=1)

        assert result.attempted == 1
        assert ledger.list_events()[0].event["idempotency_key"] == f"quote-created-{first.id}"


class TestIntegrationRelays:

    def test_service_record_hash_ignores_signature(self, service, ledger):
        body = {
            "asset_id": str(uuid4()),
            "service_type": "SEAL_INSPECTION",
            "performed_at": "2026-03-01T09:00:00+00:00",
            "provider_id": "shop-12",
            "technician": "J. Ortega",
        }
        first = service.record_service_record({**body, "sig": "sig-a"})
        second = service.record_service_record({**body, "sig": "sig-b"})

        assert first.canonical_hash_hex == second.canonical_hash_hex
        assert first.receipt == second.receipt
        assert ledger.event_count == 1

        event = ledger.list_events()[0].event
        assert event["type"] == LedgerEventType.SERVICE_RECORDED
        assert event["idempotency_key"] == first.canonical_hash_hex
        assert event["payload"]["technician"] == "J. Ortega"

    def test_transit_handoff(self, service, ledger):
        handoff = {
            "asset_id": str(uuid4()),
            "challenge": {
                "custody_token_id": "ct-1",
                "from_party": "carrier-a",
                "to_party": "carrier-b",
                "issued_at": "2026-03-01T09:00:00Z",
                "nonce": "n-1",
                "sig": "from-sig",
            },
            "acceptance": {
                "custody_token_id": "ct-1",
                "accepted_by": "carrier-b",
                "accepted_at": "2026-03-01T09:05:00Z",
                "nonce": "n-1",
                "sig": "to-sig",
            },
        }
        result = service.record_transit_handoff(handoff)

        event = ledger.list_events()[0].event
        assert event["type"] == LedgerEventType.TRANSIT_HANDOFF_COMPLETED
        assert event["custody_token_id"] == "ct-1"
        assert event["correlation_id"] == "ct-1"

        resigned = dict(handoff, challenge={**handoff["challenge"], "sig": "other"})
        assert service.record_transit_handoff(resigned).canonical_hash_hex == result.canonical_hash_hex

    def test_transit_handoff_mismatch(self, service):
        with pytest.raises(ValidationError):
            service.record_transit_handoff({
                "asset_id": str(uuid4()),
                "challenge": {
                    "custody_token_id": "ct-1", "from_party": "a", "to_party": "b",
                    "issued_at": "2026-03-01T09:00:00Z", "nonce": "n-1",
                },
                "acceptance": {
                    "custody_token_id": "ct-2", "accepted_by": "b",
                    "accepted_at": "2026-03-01T09:05:00Z", "nonce": "n-1",
                },
            })

    def test_policy_bind_relay(self, service, ledger):
        asset_id = uuid4()
        result = service.relay_policy_bind({
            "asset_id": str(asset_id),
            "request": {"policy_number": "EXT-1", "premium_micros": 10},
        })

        event = ledger.list_events()[0].event
        assert event["type"] == LedgerEventType.POLICY_BOUND
        assert event["payload"]["policy_number"] == "EXT-1"
        assert result.canonical_hash_hex == Hasher.hash_data({
            "asset_id": asset_id,
            "request": {"policy_number": "EXT-1", "premium_micros": 10},
        })

    def test_relay_surfaces_ledger_outage(self, store, ledger, adjudication, config, clock):
        service = ProtectService(store, FlakyLedger(ledger), adjudication, config, clock=clock)
        with pytest.raises(LedgerUnavailableError):
            service.relay_policy_bind({"asset_id": str(uuid4()), "request": {}})
