"""
Protect - asset insurance with anchor-driven risk

Main application entry point.

Quotes, policies and claims live in the record store; every business
event is also appended to the external ledger, best-effort, through the
outbox.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .api.routes import router
from .core.errors import InternalError, ProtectError
from .core.service import ProtectService
from .core.watchdog import WatchdogScheduler
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)
from .runtime import get_service

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)

STATUS_BY_CODE = {
    "VALIDATION": 400,
    "ENCODING": 400,
    "NOT_FOUND": 404,
    "STATE_CONFLICT": 409,
    "LEDGER_REJECTED": 502,
    "LEDGER_UNAVAILABLE": 503,
    "DOWNSTREAM_UNAVAILABLE": 503,
    "INTERNAL": 500,
}


async def protect_error_handler(request: Request, exc: ProtectError) -> JSONResponse:
    status_code = STATUS_BY_CODE.get(exc.code, 500)
    if status_code == 500:
        logger.error("Internal error", path=request.url.path, error=exc.message)
        body = InternalError("Internal server error").to_dict()
    else:
        body = exc.to_dict()
    return JSONResponse(status_code=status_code, content=body)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content=InternalError("Internal server error").to_dict(),
    )


def create_app(service: Optional[ProtectService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service: Use this service instead of building one from the
            environment (tests, embedding).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = service or get_service()
        app.state.service = svc

        scheduler = WatchdogScheduler(svc, svc.config)
        app.state.watchdog_scheduler = scheduler
        scheduler.start()  # Starts background thread if enabled

        logger.info(
            "Application startup complete",
            store_type=type(svc.store).__name__,
            ledger_mode=svc.ledger.mode,
            adjudication_mode=svc.adjudication.mode,
            watchdog_enabled=svc.config.watchdog_enabled,
        )

        yield

        scheduler.stop()
        svc.ledger.close()
        svc.adjudication.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Protect",
        description="""
## Asset insurance with anchor-driven risk

### Lifecycle

```
Quote (PENDING) → Policy (ACTIVE) → Claim (SUBMITTED → UNDER_REVIEW → APPROVED | DENIED | PAID)
```

### Anchors

Physical-security telemetry (seal state, shock, custody) moves a policy's
`anchor_status`; a watchdog marks anchors SILENT after 24h without a signal.

### Ledger

Every business event is canonicalized, hashed and appended to the
external ledger with a deterministic idempotency key.
        """,
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(ProtectError, protect_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    if service is not None:
        app.dependency_overrides[get_service] = lambda: service

    app.include_router(router)

    @app.get("/health", tags=["System"])
    def health(svc: ProtectService = Depends(get_service)):
        """
        Detailed health check.

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(store=svc.store, ledger=svc.ledger)
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "service": "protect",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    def metrics():
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    return app


app = create_app()
