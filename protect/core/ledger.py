"""
Ledger Client - the boundary to the append-only event log

The ledger is an external, tamper-evident service. This module only
talks to it:
- Appends events
- Gets receipts back
- Never reads ledger internals

Rules (enforced in code):
- One idempotency key → at most one ledger entry
- A repeated key returns the receipt of the first append
- Network/availability failures raise LedgerUnavailableError
- A refusal by the ledger (4xx) raises LedgerRejectedError

Two implementations share the contract:
- InMemoryLedgerClient: hash-chained, non-durable stand-in (tests/offline)
- HttpLedgerClient: the remote ledger service over HTTP

Which one is active is decided by configuration passed to
create_ledger_client(), never by a process-wide flag.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Any, Optional
from uuid import uuid4

import httpx

from ..observability import get_logger, get_metrics
from ..schemas import LedgerEvent, LedgerReceipt
from .errors import LedgerRejectedError, LedgerUnavailableError
from .hasher import Hasher

logger = get_logger(__name__)


class LedgerClient(ABC):
    """Append-only ledger contract."""

    mode = "abstract"

    @abstractmethod
    def append_event(self, event: LedgerEvent) -> LedgerReceipt:
        """
        Append one event.

        Raises:
            LedgerUnavailableError: The ledger could not be reached
            LedgerRejectedError: The ledger refused the event
        """
        pass

    def close(self) -> None:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

@dataclass(frozen=True)
class LedgerEntry:
    """One stored entry of the in-memory ledger."""
    sequence: int
    ledger_event_id: str
    event: dict[str, Any]
    previous_hash: Optional[str]
    event_hash: str


class InMemoryLedgerClient(LedgerClient):
    """
    Non-durable ledger stand-in.

    Entries are hash-chained the same way a real append-only log would be,
    so tests and the CLI can verify nothing was rewritten.
    """

    mode = "memory"

    def __init__(self):
        self._entries: list[LedgerEntry] = []
        self._by_key: dict[str, LedgerReceipt] = {}
        self._lock = Lock()

    def append_event(self, event: LedgerEvent) -> LedgerReceipt:
        with self._lock:
            existing = self._by_key.get(event.idempotency_key)
            if existing is not None:
                logger.debug(
                    "Ledger append deduplicated",
                    idempotency_key=event.idempotency_key,
                    ledger_event_id=existing.ledger_event_id,
                )
                return existing

            body = event.model_dump(mode="python")
            previous_hash = self._entries[-1].event_hash if self._entries else None
            entry = LedgerEntry(
                sequence=len(self._entries),
                ledger_event_id=str(uuid4()),
                event=body,
                previous_hash=previous_hash,
                event_hash=Hasher.hash_event(body, previous_hash),
            )
            self._entries.append(entry)

            receipt = LedgerReceipt(
                ledger_event_id=entry.ledger_event_id,
                idempotency_key=event.idempotency_key,
            )
            self._by_key[event.idempotency_key] = receipt
            return receipt

    def list_events(self) -> list[LedgerEntry]:
        with self._lock:
            return list(self._entries)

    @property
    def event_count(self) -> int:
        return len(self._entries)

    def verify_chain(self) -> bool:
        """Recompute every link. False if any entry was altered or reordered."""
        previous_hash = None
        for entry in self.list_events():
            if entry.previous_hash != previous_hash:
                return False
            if not Hasher.verify_chain(entry.event, entry.event_hash, previous_hash):
                return False
            previous_hash = entry.event_hash
        return True


# ============================================================
# REMOTE IMPLEMENTATION
# ============================================================

class HttpLedgerClient(LedgerClient):
    """
    Remote ledger over HTTP.

    POST {base_url}/v1/events with the event as JSON and the idempotency key
    repeated in the Idempotency-Key header. The remote service performs
    the deduplication; this client never retries on its own.
    """

    mode = "live"

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            base_url: Ledger service root URL
            token: Bearer token, if the ledger requires one
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def append_event(self, event: LedgerEvent) -> LedgerReceipt:
        key = event.idempotency_key
        start = time.perf_counter()

        try:
            response = self._client.post(
                "/v1/events",
                json=event.model_dump(mode="json"),
                headers={"Idempotency-Key": key},
            )
        except httpx.HTTPError as e:
            raise LedgerUnavailableError(f"Ledger unreachable: {e}") from e

        if response.status_code >= 500:
            raise LedgerUnavailableError(
                f"Ledger returned {response.status_code}"
            )
        if response.status_code >= 400:
            raise LedgerRejectedError(
                f"Ledger rejected event {event.type.value}: {response.status_code}",
                details=[{"field": "event", "message": response.text[:500]}],
            )

        try:
            data = response.json()
            receipt = LedgerReceipt(
                ledger_event_id=str(data["ledger_event_id"]),
                idempotency_key=data.get("idempotency_key", key),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise LedgerUnavailableError(f"Malformed ledger receipt: {e}") from e

        logger.debug(
            "Ledger append acknowledged",
            idempotency_key=key,
            ledger_event_id=receipt.ledger_event_id,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return receipt

    def close(self) -> None:
        self._client.close()


def create_ledger_client(config) -> LedgerClient:
    """
    Build the ledger client selected by configuration.

    Args:
        config: ProtectConfig (ledger_mode, ledger_url, ledger_token,
            ledger_timeout_seconds)
    """
    if config.ledger_mode == "live":
        if not config.ledger_url:
            raise ValueError("PROTECT_LEDGER_URL is required when PROTECT_LEDGER_MODE=live")
        logger.info("Using remote ledger", ledger_url=config.ledger_url)
        return HttpLedgerClient(
            base_url=config.ledger_url,
            token=config.ledger_token,
            timeout=config.ledger_timeout_seconds,
        )
    if config.ledger_mode == "memory":
        return InMemoryLedgerClient()
    raise ValueError(
        f"Unknown ledger mode: {config.ledger_mode}. Valid values: memory, live"
    )


def timed_append(ledger: LedgerClient, event: LedgerEvent) -> LedgerReceipt:
    """Append and record latency/failure metrics."""
    metrics = get_metrics()
    start = time.perf_counter()
    try:
        receipt = ledger.append_event(event)
    except (LedgerUnavailableError, LedgerRejectedError):
        metrics.record_ledger_failure()
        raise
    metrics.record_append((time.perf_counter() - start) * 1000)
    return receipt
