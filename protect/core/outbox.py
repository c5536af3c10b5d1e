"""
Outbox - best-effort side effects

A domain write (quote, policy, claim) commits first. Anything that talks
to another service afterwards is recorded as an outbox_task and executed
separately:
- LEDGER_APPEND: append to the ledger; the first receipt for an entity is
  copied onto its ledger_event_id
- ADJUDICATION_SUBMIT: hand a claim to the adjudication service

Rules (enforced in code):
- One task per idempotency key; enqueueing twice returns the first task
- dispatch() never raises LedgerUnavailableError / DownstreamUnavailableError;
  the failure is logged, audited and left PENDING for drain()
- A ledger refusal (4xx) marks the task FAILED; it needs a human
- A DONE task is never executed again
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import UUID

from ..db.store import Eq, RecordStore
from ..observability import get_logger, get_metrics
from ..schemas import (
    AuditAction,
    EntityType,
    LedgerEvent,
    LedgerLinkUpdate,
    OutboxKind,
    OutboxStatus,
    OutboxTask,
    OutboxTaskUpdate,
)
from .adjudication import AdjudicationClient, AdjudicationResult
from .audit import AuditTrail
from .errors import DownstreamUnavailableError, LedgerRejectedError, LedgerUnavailableError
from .ledger import LedgerClient, timed_append

logger = get_logger(__name__)


@dataclass
class DrainResult:
    attempted: int
    completed: int
    still_pending: int
    failed: int


class OutboxDispatcher:
    def __init__(
        self,
        store: RecordStore,
        ledger: LedgerClient,
        adjudication: AdjudicationClient,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._adjudication = adjudication
        self._audit = AuditTrail(store)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # --------------------------------------------------------
    # Enqueue
    # --------------------------------------------------------

    def _existing(self, idempotency_key: str) -> Optional[OutboxTask]:
        rows = self._store.find(
            EntityType.OUTBOX_TASK,
            [Eq("idempotency_key", idempotency_key)],
            limit=1,
        )
        return OutboxTask.model_validate(rows[0]) if rows else None

    def _enqueue(
        self,
        kind: OutboxKind,
        idempotency_key: str,
        payload: dict[str, Any],
        target_type: Optional[EntityType],
        target_id: Optional[UUID],
    ) -> OutboxTask:
        existing = self._existing(idempotency_key)
        if existing is not None:
            return existing

        row = self._store.create(EntityType.OUTBOX_TASK, {
            "kind": kind,
            "idempotency_key": idempotency_key,
            "payload": payload,
            "target_type": target_type.value if target_type else None,
            "target_id": target_id,
            "status": OutboxStatus.PENDING,
            "attempts": 0,
        })
        return OutboxTask.model_validate(row)

    def enqueue_ledger_append(
        self,
        event: LedgerEvent,
        target_type: Optional[EntityType] = None,
        target_id: Optional[UUID] = None,
    ) -> OutboxTask:
        return self._enqueue(
            OutboxKind.LEDGER_APPEND,
            event.idempotency_key,
            event.model_dump(mode="json"),
            target_type,
            target_id,
        )

    def enqueue_adjudication(
        self,
        claim_id: UUID,
        payload: dict[str, Any],
    ) -> OutboxTask:
        return self._enqueue(
            OutboxKind.ADJUDICATION_SUBMIT,
            f"claim-adjudicate-{claim_id}",
            payload,
            EntityType.CLAIM,
            claim_id,
        )

    # --------------------------------------------------------
    # Dispatch
    # --------------------------------------------------------

    def _save(self, task: OutboxTask, update: OutboxTaskUpdate) -> OutboxTask:
        row = self._store.update(
            EntityType.OUTBOX_TASK,
            task.id,
            update.model_dump(exclude_unset=True),
        )
        return OutboxTask.model_validate(row)

    def dispatch(self, task_id: UUID) -> OutboxTask:
        """Execute one task if it is still pending. Returns its new state."""
        row = self._store.get(EntityType.OUTBOX_TASK, task_id)
        if row is None:
            raise ValueError(f"Outbox task {task_id} not found")
        task = OutboxTask.model_validate(row)
        if task.status != OutboxStatus.PENDING:
            return task

        if task.kind == OutboxKind.LEDGER_APPEND:
            return self._dispatch_ledger(task)
        return self._dispatch_adjudication(task)

    def _dispatch_ledger(self, task: OutboxTask) -> OutboxTask:
        event = LedgerEvent.model_validate(task.payload)
        attempts = task.attempts + 1

        try:
            receipt = timed_append(self._ledger, event)
        except LedgerUnavailableError as e:
            return self._ledger_failed(task, attempts, e, OutboxStatus.PENDING)
        except LedgerRejectedError as e:
            return self._ledger_failed(task, attempts, e, OutboxStatus.FAILED)

        if task.target_type and task.target_id:
            self._link_target(task, receipt.ledger_event_id)

        return self._save(task, OutboxTaskUpdate(
            status=OutboxStatus.DONE,
            attempts=attempts,
            last_error=None,
            result=receipt.model_dump(),
            completed_at=self._clock(),
        ))

    def _link_target(self, task: OutboxTask, ledger_event_id: str) -> None:
        """
        Point the target at its first ledger entry. Later entries (a claim's
        resolution, say) stay reachable by their idempotency keys.
        """
        row = self._store.get(task.target_type, task.target_id)
        if row is None or row.get("ledger_event_id"):
            return
        self._store.update(
            task.target_type,
            task.target_id,
            LedgerLinkUpdate(ledger_event_id=ledger_event_id).model_dump(),
        )

    def _ledger_failed(
        self,
        task: OutboxTask,
        attempts: int,
        error: Exception,
        status: OutboxStatus,
    ) -> OutboxTask:
        logger.warning(
            "Ledger append failed",
            idempotency_key=task.idempotency_key,
            attempts=attempts,
            error=str(error),
        )
        self._audit.record(
            AuditAction.LEDGER_WRITE_FAILED,
            EntityType(task.target_type) if task.target_type else EntityType.OUTBOX_TASK,
            task.target_id or task.id,
            details={
                "idempotency_key": task.idempotency_key,
                "event_type": task.payload.get("type"),
                "attempts": attempts,
                "error": str(error),
                "retryable": status == OutboxStatus.PENDING,
            },
        )
        return self._save(task, OutboxTaskUpdate(
            status=status,
            attempts=attempts,
            last_error=str(error),
        ))

    def _dispatch_adjudication(self, task: OutboxTask) -> OutboxTask:
        attempts = task.attempts + 1

        try:
            result = self._adjudication.submit_claim(task.payload, task.idempotency_key)
        except DownstreamUnavailableError as e:
            get_metrics().record_adjudication_failure()
            logger.warning(
                "Adjudication hand-off deferred",
                idempotency_key=task.idempotency_key,
                attempts=attempts,
                error=str(e),
            )
            if attempts == 1:
                self._audit.record(
                    AuditAction.ADJUDICATION_DEFERRED,
                    EntityType.CLAIM,
                    task.target_id,
                    details={"idempotency_key": task.idempotency_key, "error": str(e)},
                )
            return self._save(task, OutboxTaskUpdate(attempts=attempts, last_error=str(e)))

        self._audit.record(
            AuditAction.ADJUDICATION_SUBMITTED,
            EntityType.CLAIM,
            task.target_id,
            details={
                "adjudication_id": result.adjudication_id,
                "status": result.status,
            },
        )
        return self._save(task, OutboxTaskUpdate(
            status=OutboxStatus.DONE,
            attempts=attempts,
            last_error=None,
            result=result.model_dump(),
            completed_at=self._clock(),
        ))

    def dispatch_for(self, target_type: EntityType, target_id: UUID) -> list[OutboxTask]:
        """Run every pending task attached to one entity, oldest first."""
        rows = self._store.find(EntityType.OUTBOX_TASK, [
            Eq("target_type", target_type.value),
            Eq("target_id", target_id),
            Eq("status", OutboxStatus.PENDING),
        ])
        return [self.dispatch(row["id"]) for row in reversed(rows)]

    def drain(self, limit: Optional[int] = None) -> DrainResult:
        """Retry pending tasks, oldest first."""
        rows = self._store.find(
            EntityType.OUTBOX_TASK,
            [Eq("status", OutboxStatus.PENDING)],
        )
        rows = list(reversed(rows))
        if limit is not None:
            rows = rows[:limit]

        results = [self.dispatch(row["id"]) for row in rows]
        result = DrainResult(
            attempted=len(results),
            completed=sum(1 for t in results if t.status == OutboxStatus.DONE),
            still_pending=sum(1 for t in results if t.status == OutboxStatus.PENDING),
            failed=sum(1 for t in results if t.status == OutboxStatus.FAILED),
        )
        if result.attempted:
            logger.info(
                "Outbox drained",
                attempted=result.attempted,
                completed=result.completed,
                still_pending=result.still_pending,
                failed=result.failed,
            )
        return result


def adjudication_result(task: OutboxTask) -> AdjudicationResult:
    """What to tell the caller about an adjudication hand-off."""
    if task.status == OutboxStatus.DONE and task.result:
        return AdjudicationResult.model_validate(task.result)
    return AdjudicationResult.queued()
