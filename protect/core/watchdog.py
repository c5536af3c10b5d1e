"""
Anchor Signal-Loss Watchdog

Re-derives anchor health from silence: an ACTIVE policy whose anchor is
ACTIVE or SEALED and has not reported for longer than the threshold is
moved to SILENT, with an ANCHOR_SIGNAL_LOSS audit entry.

Idempotent: an already-SILENT policy no longer matches the selection.

CONFIGURATION (in-process scheduler, optional):
- PROTECT_WATCHDOG_ENABLED: Run the periodic loop (default: false)
- PROTECT_WATCHDOG_INTERVAL_SECONDS: Seconds between runs (default: 900)

USAGE:
    # One run (cron endpoint, CLI)
    result = AnchorWatchdog(store).run()

    # Or keep it running in the background
    scheduler = WatchdogScheduler(service, config)
    scheduler.start()
    scheduler.stop()
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional
from uuid import UUID

from ..db.store import Eq, In, Lt, NotNull, RecordStore
from ..observability import get_logger, get_metrics
from ..schemas import (
    AuditAction,
    EntityType,
    Policy,
    PolicyAnchorUpdate,
    PolicyStatus,
)
from .audit import AuditTrail
from .lifecycle import SILENCEABLE_ANCHOR_STATUSES, SignalLost

if TYPE_CHECKING:
    from ..config import ProtectConfig
    from .service import ProtectService

logger = get_logger(__name__)

DEFAULT_SILENCE_THRESHOLD = timedelta(hours=24)


@dataclass
class WatchdogResult:
    processed_count: int = 0
    silenced_policy_ids: list[UUID] = field(default_factory=list)


class AnchorWatchdog:
    def __init__(
        self,
        store: RecordStore,
        silence_threshold: timedelta = DEFAULT_SILENCE_THRESHOLD,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._audit = AuditTrail(store)
        self._threshold = silence_threshold
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _still_silent(self, policy_id: UUID, cutoff: datetime) -> Optional[Policy]:
        """
        Re-read just before writing. An anchor event that landed after the
        scan carries a fresher timestamp and wins.
        """
        row = self._store.get(EntityType.POLICY, policy_id)
        if row is None:
            return None
        policy = Policy.model_validate(row)
        if policy.anchor_status not in SILENCEABLE_ANCHOR_STATUSES:
            return None
        if policy.anchor_watch_since is None or policy.anchor_watch_since >= cutoff:
            return None
        return policy

    def run(self) -> WatchdogResult:
        cutoff = self._clock() - self._threshold
        threshold_hours = int(self._threshold.total_seconds() // 3600)

        logger.info("Checking for silent anchors", cutoff=cutoff.isoformat())

        rows = self._store.find(EntityType.POLICY, [
            Eq("status", PolicyStatus.ACTIVE),
            NotNull("anchor_id"),
            In("anchor_status", SILENCEABLE_ANCHOR_STATUSES),
            Lt("anchor_watch_since", cutoff),
        ])

        result = WatchdogResult(processed_count=len(rows))
        transition = SignalLost()

        for row in rows:
            policy = self._still_silent(row["id"], cutoff)
            if policy is None:
                continue

            self._store.update(
                EntityType.POLICY,
                policy.id,
                PolicyAnchorUpdate(
                    anchor_status=transition.apply(policy.anchor_status)
                ).model_dump(exclude_unset=True),
            )
            self._audit.record(
                AuditAction.ANCHOR_SIGNAL_LOSS,
                EntityType.POLICY,
                policy.id,
                details={
                    "message": f"No anchor signal received for > {threshold_hours}h",
                    "anchor_id": policy.anchor_id,
                    "transition": transition.kind,
                    "previous_status": policy.anchor_status.value,
                    # None when no anchor event was ever applied
                    "last_seen": (
                        policy.last_anchor_event_at.isoformat()
                        if policy.last_anchor_event_at else None
                    ),
                    "watch_since": policy.anchor_watch_since.isoformat(),
                },
            )
            result.silenced_policy_ids.append(policy.id)

        get_metrics().record_silenced(len(result.silenced_policy_ids))
        logger.info(
            "Watchdog run complete",
            processed_count=result.processed_count,
            silenced=len(result.silenced_policy_ids),
        )
        return result


class WatchdogScheduler:
    """
    Background loop for deployments without an external cron.

    Each tick runs the watchdog, expires lapsed quotes and retries
    pending outbox tasks.
    """

    def __init__(self, service: "ProtectService", config: "ProtectConfig"):
        self._service = service
        self._config = config

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the background scheduler."""
        if not self._config.watchdog_enabled:
            logger.info("Watchdog scheduler disabled (set PROTECT_WATCHDOG_ENABLED=1 to enable)")
            return

        if self._running:
            logger.warning("Watchdog scheduler already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()

        logger.info(
            "Watchdog scheduler started",
            interval_seconds=self._config.watchdog_interval_seconds,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background scheduler."""
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

        self._running = False
        logger.info("Watchdog scheduler stopped")

    def tick(self) -> None:
        self._service.run_watchdog()
        self._service.expire_quotes()
        self._service.drain_outbox()

    def _run_loop(self) -> None:
        """Background thread main loop."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"Error in watchdog tick: {e}")

            self._stop_event.wait(timeout=self._config.watchdog_interval_seconds)
