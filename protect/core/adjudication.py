"""
Adjudication Service client

Claims are handed to the downstream adjudication service after they are
stored. The hand-off is a best-effort side effect: a failure raises
DownstreamUnavailableError here, and the outbox turns that into a queued
retry instead of a failed claim submission.
"""

from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Optional
from uuid import uuid4

import httpx
from pydantic import BaseModel

from ..observability import get_logger
from .errors import DownstreamUnavailableError

logger = get_logger(__name__)

# Reported to callers while a hand-off is waiting for retry
PENDING_RETRY = "PENDING_RETRY"
QUEUED = "QUEUED"


class AdjudicationResult(BaseModel):
    adjudication_id: str
    status: str

    @classmethod
    def queued(cls) -> "AdjudicationResult":
        return cls(adjudication_id=PENDING_RETRY, status=QUEUED)


class AdjudicationClient(ABC):
    mode = "abstract"

    @abstractmethod
    def submit_claim(
        self,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> AdjudicationResult:
        """
        Raises:
            DownstreamUnavailableError: The service could not accept the claim
        """
        pass

    def close(self) -> None:
        pass


class InMemoryAdjudicationClient(AdjudicationClient):
    """Accepts everything; remembers submissions by idempotency key."""

    mode = "memory"

    def __init__(self):
        self.submissions: dict[str, dict[str, Any]] = {}
        self._results: dict[str, AdjudicationResult] = {}
        self._lock = Lock()

    def submit_claim(self, payload, idempotency_key):
        with self._lock:
            if idempotency_key not in self._results:
                self.submissions[idempotency_key] = payload
                self._results[idempotency_key] = AdjudicationResult(
                    adjudication_id=str(uuid4()),
                    status="RECEIVED",
                )
            return self._results[idempotency_key]


class HttpAdjudicationClient(AdjudicationClient):
    """POST {base_url}/api/v1/claims/ingest"""

    mode = "live"

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
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

    def submit_claim(self, payload, idempotency_key):
        try:
            response = self._client.post(
                "/api/v1/claims/ingest",
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
            response.raise_for_status()
            data = response.json()
            return AdjudicationResult(
                adjudication_id=str(data["adjudication_id"]),
                status=str(data["status"]),
            )
        except httpx.HTTPStatusError as e:
            raise DownstreamUnavailableError(
                f"Adjudication service error: {e.response.status_code} {e.response.text[:500]}"
            ) from e
        except httpx.HTTPError as e:
            raise DownstreamUnavailableError(f"Adjudication service unreachable: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise DownstreamUnavailableError(f"Malformed adjudication response: {e}") from e

    def close(self) -> None:
        self._client.close()


def create_adjudication_client(config) -> AdjudicationClient:
    if config.adjudication_mode == "live":
        logger.info("Using remote adjudication service", url=config.adjudication_url)
        return HttpAdjudicationClient(
            base_url=config.adjudication_url,
            token=config.adjudication_token,
            timeout=config.adjudication_timeout_seconds,
        )
    if config.adjudication_mode == "memory":
        return InMemoryAdjudicationClient()
    raise ValueError(
        f"Unknown adjudication mode: {config.adjudication_mode}. Valid values: memory, live"
    )
