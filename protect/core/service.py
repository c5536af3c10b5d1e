"""
Protect Service - the operations the core exposes

Quote → Policy → Claim lifecycle, anchor-event ingestion, the watchdog,
and the integration relays, over a RecordStore and a LedgerClient.

Ordering for every domain operation:
1. Validate input (ValidationError, nothing written)
2. Load and check state (NotFoundError / StateConflictError)
3. Write the domain record (authoritative)
4. Record audit entry and enqueue ledger/adjudication side effects
5. Dispatch side effects (inline, or later by the caller)

Ledger and adjudication failures in step 5 never fail the operation.
The integration relays are the exception: the ledger write is all they
do, so LedgerUnavailableError reaches the caller.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..config import ProtectConfig
from ..db.store import Eq, Lt, RecordStore
from ..observability import get_logger
from ..schemas import (
    AnchorStatus,
    AuditAction,
    BindRequest,
    Claim,
    ClaimStatus,
    ClaimSubmission,
    ClaimUpdateRequest,
    EntityType,
    IngestResult,
    LedgerEvent,
    LedgerEventType,
    OutboxTask,
    Policy,
    PolicyBindRelay,
    PolicyStatus,
    PricingContext,
    Quote,
    QuoteRequest,
    QuoteStatus,
    QuoteUpdate,
    RelayResult,
    ServiceRecord,
    TransitHandoffPayload,
)
from .adjudication import AdjudicationClient, AdjudicationResult
from .audit import AuditTrail
from .errors import NotFoundError, parse_model
from .hasher import Hasher
from .ingestion import AnchorEventProcessor
from .ledger import LedgerClient, timed_append
from .lifecycle import (
    ensure_claimable,
    ensure_quote_bindable,
    is_quote_lapsed,
    new_claim_number,
    new_policy_number,
    plan_claim_update,
    policy_window,
)
from .outbox import DrainResult, OutboxDispatcher, adjudication_result
from .pricing import calculate_premium
from .watchdog import AnchorWatchdog, WatchdogResult

logger = get_logger(__name__)

CLAIM_LIST_LIMIT = 100


class SubmittedClaim(BaseModel):
    claim: Claim
    adjudication: AdjudicationResult


class PolicyDetail(BaseModel):
    policy: Policy
    quote: Optional[Quote] = None
    claims: list[Claim] = Field(default_factory=list)


class ProtectService:
    def __init__(
        self,
        store: RecordStore,
        ledger: LedgerClient,
        adjudication: AdjudicationClient,
        config: Optional[ProtectConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.adjudication = adjudication
        self.config = config or ProtectConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.audit = AuditTrail(store)
        self.outbox = OutboxDispatcher(store, ledger, adjudication, clock=self._clock)
        self.ingestion = AnchorEventProcessor(store, clock=self._clock)
        self.watchdog = AnchorWatchdog(
            store,
            silence_threshold=self.config.silence_threshold,
            clock=self._clock,
        )

    # --------------------------------------------------------
    # Helpers
    # --------------------------------------------------------

    def _ledger_event(
        self,
        event_type: LedgerEventType,
        asset_id: str,
        business: dict[str, Any],
        correlation_id: str,
        idempotency_key: str,
        custody_token_id: Optional[str] = None,
    ) -> LedgerEvent:
        """Envelope whose payload embeds the canonical hash of its own content."""
        content = Hasher.normalize(business)
        return LedgerEvent(
            type=event_type,
            asset_id=asset_id,
            custody_token_id=custody_token_id,
            payload={**content, "canonical_hash_hex": Hasher.hash_data(content)},
            correlation_id=correlation_id,
            idempotency_key=idempotency_key,
            created_at=self._clock(),
            schema_version=self.config.schema_version,
        )

    def _dispatch(self, tasks: list[OutboxTask], dispatch: Optional[bool]) -> list[OutboxTask]:
        if dispatch is None:
            dispatch = self.config.inline_side_effects
        if not dispatch:
            return tasks
        return [self.outbox.dispatch(t.id) for t in tasks]

    def _load(self, entity_type: EntityType, model, record_id: Any, label: str):
        try:
            record_id = UUID(str(record_id))
        except ValueError:
            raise NotFoundError(f"{label} {record_id} not found")
        row = self.store.get(entity_type, record_id)
        if row is None:
            raise NotFoundError(f"{label} {record_id} not found")
        return model.model_validate(row)

    # --------------------------------------------------------
    # Quotes
    # --------------------------------------------------------

    def rate_quote(self, context: Any, request: Any, dispatch: Optional[bool] = None) -> Quote:
        ctx = parse_model(PricingContext, context, "Invalid pricing context")
        req = parse_model(QuoteRequest, request, "Invalid quote request")

        priced = calculate_premium(ctx, currency=self.config.currency)
        now = self._clock()

        row = self.store.create(EntityType.QUOTE, {
            **req.model_dump(),
            **ctx.model_dump(),
            "premium_micros": priced.premium_micros,
            "currency": priced.currency,
            "risk_bps": priced.risk_bps,
            "reasons": priced.reasons,
            "pricing_version": priced.pricing_version,
            "inputs_hash": priced.inputs_hash,
            "status": QuoteStatus.PENDING,
            "expires_at": now + self.config.quote_ttl,
        })
        quote = Quote.model_validate(row)

        event = self._ledger_event(
            LedgerEventType.PROTECT_QUOTE_CREATED,
            quote.asset_id,
            {
                "quote_id": quote.id,
                "asset_id": quote.asset_id,
                "coverage_type": quote.coverage_type,
                "term_days": quote.term_days,
                "premium_micros": quote.premium_micros,
                "currency": quote.currency,
                "risk_bps": quote.risk_bps,
                "reasons": quote.reasons,
                "pricing_version": quote.pricing_version,
                "inputs_hash": quote.inputs_hash,
                "expires_at": quote.expires_at,
            },
            correlation_id=str(quote.id),
            idempotency_key=f"quote-created-{quote.id}",
        )
        task = self.outbox.enqueue_ledger_append(event, EntityType.QUOTE, quote.id)
        self.audit.record(
            AuditAction.QUOTE_CREATED,
            EntityType.QUOTE,
            quote.id,
            details={
                "premium_micros": quote.premium_micros,
                "risk_bps": quote.risk_bps,
                "pricing_version": quote.pricing_version,
            },
        )

        self._dispatch([task], dispatch)
        logger.info("Quote rated", quote_id=str(quote.id), risk_bps=quote.risk_bps)
        return self.get_quote(quote.id)

    def get_quote(self, quote_id: Any) -> Quote:
        return self._load(EntityType.QUOTE, Quote, quote_id, "Quote")

    def _expire_quote(self, quote: Quote, reason: str) -> Quote:
        row = self.store.update(
            EntityType.QUOTE,
            quote.id,
            QuoteUpdate(status=QuoteStatus.EXPIRED).model_dump(exclude_unset=True),
        )
        self.audit.record(
            AuditAction.QUOTE_EXPIRED,
            EntityType.QUOTE,
            quote.id,
            details={"expires_at": quote.expires_at.isoformat(), "reason": reason},
        )
        return Quote.model_validate(row)

    def expire_quotes(self) -> list[UUID]:
        """Lapse check: every PENDING quote past expires_at becomes EXPIRED."""
        rows = self.store.find(EntityType.QUOTE, [
            Eq("status", QuoteStatus.PENDING),
            Lt("expires_at", self._clock()),
        ])
        expired = []
        for row in rows:
            quote = Quote.model_validate(row)
            self._expire_quote(quote, "lapsed")
            expired.append(quote.id)
        if expired:
            logger.info("Quotes expired", count=len(expired))
        return expired

    # --------------------------------------------------------
    # Policies
    # --------------------------------------------------------

    def bind_policy(self, data: Any, dispatch: Optional[bool] = None) -> Policy:
        """
        Raises:
            ValidationError, NotFoundError
            StateConflictError: quote not PENDING, expired, or without a term.
                An expired quote is flipped to EXPIRED before this is raised.
        """
        req = parse_model(BindRequest, data, "Invalid bind request")
        quote = self.get_quote(req.quote_id)
        now = self._clock()

        if is_quote_lapsed(quote, now):
            quote = self._expire_quote(quote, "bind attempted after expiry")
        ensure_quote_bindable(quote, now)

        effective_date, expiration_date = policy_window(quote, now)
        row = self.store.create(EntityType.POLICY, {
            "policy_number": new_policy_number(now),
            "quote_id": quote.id,
            "asset_id": quote.asset_id,
            "coverage_type": quote.coverage_type,
            "premium_micros": quote.premium_micros,
            "currency": quote.currency,
            "effective_date": effective_date,
            "expiration_date": expiration_date,
            "status": PolicyStatus.ACTIVE,
            "owner_id": req.owner_id,
            "anchor_id": req.anchor_id,
            "anchor_status": AnchorStatus.ACTIVE,
            "last_anchor_event_at": None,
            # Silence is measured from bind until the anchor first reports
            "anchor_watch_since": effective_date if req.anchor_id else None,
        })
        policy = Policy.model_validate(row)

        self.store.update(
            EntityType.QUOTE,
            quote.id,
            QuoteUpdate(status=QuoteStatus.BOUND).model_dump(exclude_unset=True),
        )

        event = self._ledger_event(
            LedgerEventType.POLICY_BOUND,
            policy.asset_id,
            {
                "policy_id": policy.id,
                "policy_number": policy.policy_number,
                "quote_id": quote.id,
                "asset_id": policy.asset_id,
                "coverage_type": policy.coverage_type,
                "premium_micros": policy.premium_micros,
                "currency": policy.currency,
                "effective_date": policy.effective_date,
                "expiration_date": policy.expiration_date,
                "owner_id": policy.owner_id,
                "anchor_id": policy.anchor_id,
                "inputs_hash": quote.inputs_hash,
            },
            correlation_id=str(quote.id),
            idempotency_key=f"policy-bind-{policy.id}",
        )
        task = self.outbox.enqueue_ledger_append(event, EntityType.POLICY, policy.id)
        self.audit.record(
            AuditAction.POLICY_BOUND,
            EntityType.POLICY,
            policy.id,
            details={"quote_id": str(quote.id), "policy_number": policy.policy_number},
        )

        self._dispatch([task], dispatch)
        logger.info(
            "Policy bound",
            policy_id=str(policy.id),
            policy_number=policy.policy_number,
            quote_id=str(quote.id),
        )
        return self._load(EntityType.POLICY, Policy, policy.id, "Policy")

    def get_policy(self, policy_id: Any) -> PolicyDetail:
        policy = self._load(EntityType.POLICY, Policy, policy_id, "Policy")
        quote_row = self.store.get(EntityType.QUOTE, policy.quote_id)
        return PolicyDetail(
            policy=policy,
            quote=Quote.model_validate(quote_row) if quote_row else None,
            claims=self.list_claims(policy_id=policy.id),
        )

    # --------------------------------------------------------
    # Claims
    # --------------------------------------------------------

    def submit_claim(self, data: Any, dispatch: Optional[bool] = None) -> SubmittedClaim:
        """
        Raises:
            ValidationError, NotFoundError
            StateConflictError: policy not ACTIVE or incident outside its term
        """
        sub = parse_model(ClaimSubmission, data, "Invalid claim submission")
        policy = self._load(EntityType.POLICY, Policy, sub.policy_id, "Policy")
        ensure_claimable(policy, sub.incident_date)

        now = self._clock()
        row = self.store.create(EntityType.CLAIM, {
            **sub.model_dump(),
            "claim_number": new_claim_number(now),
            "currency": policy.currency,
            "status": ClaimStatus.SUBMITTED,
        })
        claim = Claim.model_validate(row)

        claim_facts = {
            "claim_id": claim.id,
            "claim_number": claim.claim_number,
            "policy_id": policy.id,
            "policy_number": policy.policy_number,
            "asset_id": policy.asset_id,
            "claim_type": claim.claim_type,
            "incident_date": claim.incident_date,
            "claimed_amount_micros": claim.claimed_amount_micros,
            "evidence_ids": claim.evidence_ids,
            "anchor_event_ids": claim.anchor_event_ids,
        }
        event = self._ledger_event(
            LedgerEventType.CLAIM_SUBMITTED,
            policy.asset_id,
            claim_facts,
            correlation_id=str(policy.id),
            idempotency_key=f"claim-submit-{claim.id}",
        )
        ledger_task = self.outbox.enqueue_ledger_append(event, EntityType.CLAIM, claim.id)
        self.audit.record(
            AuditAction.CLAIM_SUBMITTED,
            EntityType.CLAIM,
            claim.id,
            details={
                "policy_id": str(policy.id),
                "claim_number": claim.claim_number,
                "claimed_amount_micros": claim.claimed_amount_micros,
            },
        )
        adjudication_task = self.outbox.enqueue_adjudication(
            claim.id,
            Hasher.normalize({
                **claim_facts,
                "description": claim.description,
                "incident_location": claim.incident_location,
                "currency": claim.currency,
                "anchor_status": policy.anchor_status,
            }),
        )

        _, adjudication_task = self._dispatch([ledger_task, adjudication_task], dispatch)
        logger.info(
            "Claim submitted",
            claim_id=str(claim.id),
            claim_number=claim.claim_number,
            policy_id=str(policy.id),
        )
        return SubmittedClaim(
            claim=self.get_claim(claim.id),
            adjudication=adjudication_result(adjudication_task),
        )

    def get_claim(self, claim_id: Any) -> Claim:
        return self._load(EntityType.CLAIM, Claim, claim_id, "Claim")

    def list_claims(
        self,
        policy_id: Optional[Any] = None,
        status: Optional[ClaimStatus] = None,
    ) -> list[Claim]:
        """Newest first, at most 100."""
        where = []
        if policy_id is not None:
            where.append(Eq("policy_id", policy_id))
        if status is not None:
            where.append(Eq("status", ClaimStatus(status)))
        rows = self.store.find(EntityType.CLAIM, where, limit=CLAIM_LIST_LIMIT)
        return [Claim.model_validate(r) for r in rows]

    def update_claim(self, claim_id: Any, data: Any, dispatch: Optional[bool] = None) -> Claim:
        """
        Raises:
            ValidationError, NotFoundError
            StateConflictError: the status change is not a lifecycle edge
        """
        req = parse_model(ClaimUpdateRequest, data, "Invalid claim update")
        claim = self.get_claim(claim_id)
        change = plan_claim_update(claim, req, self._clock())

        fields = change.update.model_dump(exclude_unset=True)
        if not fields:
            return claim

        updated = Claim.model_validate(
            self.store.update(EntityType.CLAIM, claim.id, fields)
        )
        self.audit.record(
            change.audit_action,
            EntityType.CLAIM,
            claim.id,
            actor_id=req.resolved_by,
            details=Hasher.normalize({**fields, "previous_status": claim.status}),
        )

        if change.resolved:
            policy_row = self.store.get(EntityType.POLICY, claim.policy_id)
            event = self._ledger_event(
                LedgerEventType.CLAIM_RESOLVED,
                policy_row["asset_id"] if policy_row else str(claim.policy_id),
                {
                    "claim_id": updated.id,
                    "claim_number": updated.claim_number,
                    "policy_id": updated.policy_id,
                    "status": updated.status,
                    "approved_amount_micros": updated.approved_amount_micros,
                    "adjudication_packet_id": updated.adjudication_packet_id,
                    "adjudication_score": updated.adjudication_score,
                    "resolved_at": updated.resolved_at,
                    "resolved_by": updated.resolved_by,
                },
                correlation_id=str(claim.policy_id),
                idempotency_key=f"claim-resolve-{claim.id}",
            )
            task = self.outbox.enqueue_ledger_append(event, EntityType.CLAIM, claim.id)
            self._dispatch([task], dispatch)
            logger.info(
                "Claim resolved",
                claim_id=str(claim.id),
                status=updated.status.value,
            )

        return self.get_claim(claim.id)

    # --------------------------------------------------------
    # Anchors
    # --------------------------------------------------------

    def ingest_anchor_event(self, data: Any) -> IngestResult:
        return self.ingestion.ingest(data)

    def run_watchdog(self) -> WatchdogResult:
        return self.watchdog.run()

    def drain_outbox(self, limit: Optional[int] = None) -> DrainResult:
        return self.outbox.drain(limit)

    # --------------------------------------------------------
    # Integration relays (ledger write is the whole operation)
    # --------------------------------------------------------

    def _relay(
        self,
        event_type: LedgerEventType,
        asset_id: str,
        hashed: dict[str, Any],
        payload: dict[str, Any],
        correlation_id: str,
        custody_token_id: Optional[str] = None,
    ) -> RelayResult:
        """
        Idempotency key is the content hash, so resending the same signed
        content never appends twice.

        Raises:
            LedgerUnavailableError, LedgerRejectedError
        """
        canonical_hash_hex = Hasher.hash_data(hashed)
        event = LedgerEvent(
            type=event_type,
            asset_id=asset_id,
            custody_token_id=custody_token_id,
            payload={**Hasher.normalize(payload), "canonical_hash_hex": canonical_hash_hex},
            correlation_id=correlation_id,
            idempotency_key=canonical_hash_hex,
            created_at=self._clock(),
            schema_version=self.config.schema_version,
        )
        receipt = timed_append(self.ledger, event)
        logger.info(
            "Integration event relayed",
            event_type=event_type.value,
            ledger_event_id=receipt.ledger_event_id,
        )
        return RelayResult(canonical_hash_hex=canonical_hash_hex, receipt=receipt)

    def record_service_record(self, data: Any) -> RelayResult:
        record = parse_model(ServiceRecord, data, "Invalid service record")
        body = record.model_dump(mode="python")
        return self._relay(
            LedgerEventType.SERVICE_RECORDED,
            str(record.asset_id),
            hashed=Hasher.strip_signatures(body),
            payload=body,
            correlation_id=str(record.asset_id),
        )

    def record_transit_handoff(self, data: Any) -> RelayResult:
        handoff = parse_model(TransitHandoffPayload, data, "Invalid transit handoff")
        custody_token_id = handoff.challenge.custody_token_id
        return self._relay(
            LedgerEventType.TRANSIT_HANDOFF_COMPLETED,
            str(handoff.asset_id),
            hashed={
                "asset_id": handoff.asset_id,
                "challenge": Hasher.strip_signatures(handoff.challenge),
                "acceptance": Hasher.strip_signatures(handoff.acceptance),
            },
            payload=handoff.model_dump(mode="python"),
            correlation_id=custody_token_id,
            custody_token_id=custody_token_id,
        )

    def relay_policy_bind(self, data: Any) -> RelayResult:
        relay = parse_model(PolicyBindRelay, data, "Invalid policy bind relay")
        return self._relay(
            LedgerEventType.POLICY_BOUND,
            str(relay.asset_id),
            hashed={"asset_id": relay.asset_id, "request": relay.request},
            payload=relay.request,
            correlation_id=str(relay.asset_id),
        )
