"""
Anchor Event Ingestion

Per inbound event:
1. Validate (fixed event-type enumeration, required fields)
2. Resolve every ACTIVE policy bound to the anchor
3. Classify risk impact
4. Persist the AnchorEvent with processed=false
5. Per policy: apply the anchor transition (a stale event only lifts SILENT),
   advance the event timestamps, and on CRITICAL write an
   ANCHOR_BREACH_DETECTED audit entry
6. Flip processed=true

A failure in 2-6 leaves the row with processed=false. Redelivery of the
same ledger_event_id resumes that row instead of creating another one;
a redelivery of a processed event is acknowledged with no side effects.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..db.store import Eq, RecordStore
from ..observability import get_logger, get_metrics
from ..schemas import (
    AnchorEvent,
    AnchorEventIn,
    AnchorEventUpdate,
    AuditAction,
    EntityType,
    IngestResult,
    Policy,
    PolicyAnchorUpdate,
    PolicyStatus,
    RiskImpact,
)
from .audit import AuditTrail
from .errors import parse_model
from .lifecycle import plan_anchor_update, transition_for_event
from .pricing import classify_anchor_risk

logger = get_logger(__name__)

BREACH_MESSAGE = "Tamper detected - potential claim trigger"


class AnchorEventProcessor:
    def __init__(
        self,
        store: RecordStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._audit = AuditTrail(store)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _find_existing(self, ledger_event_id: str) -> Optional[AnchorEvent]:
        rows = self._store.find(
            EntityType.ANCHOR_EVENT,
            [Eq("ledger_event_id", ledger_event_id)],
            limit=1,
        )
        return AnchorEvent.model_validate(rows[0]) if rows else None

    def _matching_policies(self, anchor_id: str) -> list[Policy]:
        rows = self._store.find(EntityType.POLICY, [
            Eq("anchor_id", anchor_id),
            Eq("status", PolicyStatus.ACTIVE),
        ])
        # Oldest binding first, so the linked policy is the first one bound
        return [Policy.model_validate(r) for r in reversed(rows)]

    def _breach_already_recorded(self, policy: Policy, ledger_event_id: str) -> bool:
        return any(
            entry.details.get("ledger_event_id") == ledger_event_id
            for entry in self._audit.entries_for(policy.id, AuditAction.ANCHOR_BREACH_DETECTED)
        )

    def ingest(self, data: Any) -> IngestResult:
        """
        Raises:
            ValidationError: before anything is written
        """
        event = parse_model(AnchorEventIn, data, "Invalid anchor event")

        existing = self._find_existing(event.ledger_event_id)
        if existing is not None and existing.processed:
            logger.info(
                "Duplicate anchor event acknowledged",
                ledger_event_id=event.ledger_event_id,
                anchor_event_id=str(existing.id),
            )
            return IngestResult(
                accepted=True,
                anchor_event_id=existing.id,
                policies_affected=existing.policies_affected,
                risk_impact=existing.risk_impact,
                duplicate=True,
            )

        policies = self._matching_policies(event.anchor_id)
        risk_impact = classify_anchor_risk(event.event_type, event.payload)

        if existing is None:
            row = self._store.create(EntityType.ANCHOR_EVENT, {
                "anchor_id": event.anchor_id,
                "event_type": event.event_type,
                "payload": event.payload,
                "event_timestamp": event.event_timestamp,
                "ledger_event_id": event.ledger_event_id,
                "policy_id": policies[0].id if policies else None,
                "policies_affected": len(policies),
                "risk_impact": risk_impact,
                "processed": False,
            })
            anchor_event = AnchorEvent.model_validate(row)
        else:
            logger.info(
                "Resuming unprocessed anchor event",
                ledger_event_id=event.ledger_event_id,
                anchor_event_id=str(existing.id),
            )
            anchor_event = existing

        transition = transition_for_event(event.event_type)
        for policy in policies:
            self._apply_to_policy(policy, event, transition, risk_impact)

        self._store.update(
            EntityType.ANCHOR_EVENT,
            anchor_event.id,
            AnchorEventUpdate(
                processed=True,
                processed_at=self._clock(),
                policies_affected=len(policies),
            ).model_dump(exclude_unset=True),
        )

        critical = risk_impact == RiskImpact.CRITICAL
        get_metrics().record_anchor_event(critical)
        if critical:
            logger.warning(
                "Critical anchor event",
                anchor_id=event.anchor_id,
                event_type=event.event_type.value,
                policies_affected=len(policies),
            )

        return IngestResult(
            accepted=True,
            anchor_event_id=anchor_event.id,
            policies_affected=len(policies),
            risk_impact=risk_impact,
        )

    def _apply_to_policy(self, policy, event, transition, risk_impact) -> None:
        update = plan_anchor_update(policy, transition, event.event_timestamp)
        if update is None:
            logger.info(
                "Stale anchor event left policy unchanged",
                policy_id=str(policy.id),
                transition=transition.kind,
                event_timestamp=event.event_timestamp.isoformat(),
                last_anchor_event_at=policy.last_anchor_event_at.isoformat(),
            )
        else:
            self._store.update(
                EntityType.POLICY,
                policy.id,
                update.model_dump(exclude_unset=True),
            )
            if update.anchor_status != policy.anchor_status:
                logger.info(
                    "Anchor status changed",
                    policy_id=str(policy.id),
                    transition=transition.kind,
                    previous_status=policy.anchor_status.value,
                    anchor_status=update.anchor_status.value,
                )

        if risk_impact == RiskImpact.CRITICAL and not self._breach_already_recorded(
            policy, event.ledger_event_id
        ):
            self._audit.record(
                AuditAction.ANCHOR_BREACH_DETECTED,
                EntityType.POLICY,
                policy.id,
                details={
                    "anchor_id": event.anchor_id,
                    "event_type": event.event_type.value,
                    "risk_impact": risk_impact.value,
                    "ledger_event_id": event.ledger_event_id,
                    "message": BREACH_MESSAGE,
                },
            )
