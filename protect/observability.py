"""
Observability - structured logs, request context, counters, health

Configuration:
- PROTECT_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- PROTECT_LOG_FORMAT: json, text (default: json in production)
- PROTECT_PRODUCTION: Enable production mode

Usage:
    from protect.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Policy bound", policy_id=str(policy.id), quote_id=str(quote.id))

Keyword arguments become fields on the log record. The JSON formatter
emits them as top-level keys; the text formatter appends them as k=v.
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Attributes every LogRecord carries; anything else on a record came from the caller
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}

_ADAPTER_KWARGS = ("exc_info", "stack_info", "stacklevel", "extra")


# ============================================================
# SETTINGS
# ============================================================

@dataclass
class LogSettings:
    level: int = logging.INFO
    json_output: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        production = os.environ.get("PROTECT_PRODUCTION", "").lower() in ("1", "true", "yes")
        level = logging.getLevelName(os.environ.get("PROTECT_LOG_LEVEL", "INFO").upper())
        fmt = os.environ.get("PROTECT_LOG_FORMAT", "").lower()
        return cls(
            level=level if isinstance(level, int) else logging.INFO,
            json_output=production if fmt not in ("json", "text") else fmt == "json",
        )


# ============================================================
# FORMATTERS
# ============================================================

def _context_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "WARNING", "logger": "protect.core.outbox",
         "message": "Ledger append failed", "request_id": "3f9a01c2",
         "idempotency_key": "policy-bind-..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if request_id_var.get():
            entry["request_id"] = request_id_var.get()
        entry.update(_context_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        # Non-JSON values (UUIDs, enums, datetimes) fall back to str
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Single-line output for a terminal."""

    def format(self, record: logging.LogRecord) -> str:
        request_id = request_id_var.get()
        parts = [
            _record_time(record).strftime("%Y-%m-%d %H:%M:%S"),
            f"{record.levelname:8}",
            f"[{request_id[:8]}]" if request_id else None,
            f"{record.name}: {record.getMessage()}",
        ]
        line = " ".join(p for p in parts if p)

        fields = _context_fields(record)
        if fields:
            line += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Moves keyword arguments into `extra`.

    A field that would clash with a LogRecord attribute (`name`,
    `message`, ...) is stored as `ctx_<field>` instead of raising.
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in _ADAPTER_KWARGS]:
            value = kwargs.pop(key)
            extra[f"ctx_{key}" if key in _RECORD_ATTRS else key] = value
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(settings: Optional[LogSettings] = None) -> None:
    """
    Install a single stdout handler on the root logger.

    Safe to call more than once; earlier handlers are replaced.
    """
    settings = settings or LogSettings.from_env()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(settings.level)
    handler.setFormatter(StructuredFormatter() if settings.json_output else TextFormatter())

    root = logging.getLogger()
    root.setLevel(settings.level)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id for the duration of the request, logs one line per
    request with its outcome, and echoes the id as X-Request-ID.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        token = request_id_var.set(request_id)
        logger = get_logger("protect.request")
        started = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception:
            logger.exception(
                "Request crashed",
                method=request.method,
                path=request.url.path,
            )
            raise
        finally:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            get_metrics().record_request(duration_ms, status_code < 500)
            logger.log(
                logging.INFO if status_code < 400 else logging.WARNING,
                f"{request.method} {request.url.path} -> {status_code}",
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=duration_ms,
                client_ip=request.client.host if request.client else None,
            )
            request_id_var.reset(token)


# ============================================================
# METRICS
# ============================================================

class LatencyWindow:
    """The most recent `size` samples, in milliseconds."""

    def __init__(self, size: int = 1000):
        self._samples: deque = deque(maxlen=size)

    def add(self, value_ms: float) -> None:
        self._samples.append(value_ms)

    def percentile(self, p: float) -> Optional[float]:
        if not self._samples:
            return None
        ordered = sorted(self._samples)
        return ordered[min(int(len(ordered) * p), len(ordered) - 1)]


@dataclass
class MetricsCollector:
    """
    Process-local counters. Reset on restart; scrape /metrics for trends.
    """

    counters: Dict[str, int] = field(default_factory=lambda: dict.fromkeys((
        "ledger_appends",
        "ledger_failures",
        "anchor_events_ingested",
        "critical_anchor_events",
        "policies_silenced",
        "adjudication_failures",
        "requests_total",
        "requests_failed",
    ), 0))
    append_latency: LatencyWindow = field(default_factory=LatencyWindow)
    request_latency: LatencyWindow = field(default_factory=LatencyWindow)
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def _bump(self, name: str, by: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + by

    def record_append(self, latency_ms: float) -> None:
        with self._lock:
            self._bump("ledger_appends")
            self.append_latency.add(latency_ms)

    def record_ledger_failure(self) -> None:
        with self._lock:
            self._bump("ledger_failures")

    def record_anchor_event(self, critical: bool) -> None:
        with self._lock:
            self._bump("anchor_events_ingested")
            if critical:
                self._bump("critical_anchor_events")

    def record_silenced(self, count: int) -> None:
        with self._lock:
            self._bump("policies_silenced", count)

    def record_adjudication_failure(self) -> None:
        with self._lock:
            self._bump("adjudication_failures")

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self._bump("requests_total")
            if not success:
                self._bump("requests_failed")
            self.request_latency.add(latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            summary: Dict[str, Any] = dict(self.counters)
            for p in (50, 95, 99):
                summary[f"append_latency_p{p}_ms"] = self.append_latency.percentile(p / 100)
            for p in (50, 95):
                summary[f"request_latency_p{p}_ms"] = self.request_latency.percentile(p / 100)
            return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def _probe_store(store) -> Dict[str, Any]:
    try:
        store.ping()
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}
    return {"status": "healthy", "driver": type(store).__name__}


def _probe_ledger(ledger) -> Dict[str, Any]:
    # Reported, never called: an unreachable ledger only delays side effects
    check: Dict[str, Any] = {"status": "healthy", "mode": ledger.mode}
    verify: Optional[Callable[[], bool]] = getattr(ledger, "verify_chain", None)
    if verify is not None:
        check["chain_valid"] = verify()
        if not check["chain_valid"]:
            check["status"] = "unhealthy"
    return check


def check_health(store=None, ledger=None) -> HealthStatus:
    """
    Args:
        store: RecordStore to ping
        ledger: LedgerClient to report; an in-memory ledger also has its
            hash chain re-verified
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    if store is not None:
        checks["record_store"] = _probe_store(store)
    if ledger is not None:
        checks["ledger"] = _probe_ledger(ledger)

    return HealthStatus(
        healthy=all(c["status"] == "healthy" for c in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
