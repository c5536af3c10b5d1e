"""
API Routes for the Protect underwriting core

Lifecycle:
- POST  /quote                 - Rate a quote
- POST  /policies/bind         - Bind a PENDING quote into a policy
- GET   /policies/{id}         - Policy with its quote and claims
- POST  /claims                - File a claim
- GET   /claims                - List claims (newest first)
- GET   /claims/{id}           - Claim details
- PATCH /claims/{id}           - Adjudication update

Anchors:
- POST /anchors/events         - Anchor telemetry webhook
- GET  /cron/anchor-watchdog   - Signal-loss scan (Bearer cron secret)

Integration relays (ledger write only):
- POST /integration/service-record
- POST /integration/transit/handoff
- POST /integration/policy/bind

Bodies are taken as plain JSON and validated by the core, so every
validation failure has the same {error, message, details} shape.
"""

from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Header, HTTPException, Query, status

from ..core.service import PolicyDetail, ProtectService, SubmittedClaim
from ..runtime import get_service
from ..schemas import (
    Claim,
    ClaimStatus,
    EntityType,
    IngestResult,
    Policy,
    Quote,
    RelayResult,
)


router = APIRouter()


def _dispatch_later(
    background_tasks: BackgroundTasks,
    service: ProtectService,
    entity_type: EntityType,
    entity_id,
) -> None:
    background_tasks.add_task(service.outbox.dispatch_for, entity_type, entity_id)


# ============================================================
# Quotes and policies
# ============================================================

@router.post(
    "/quote",
    response_model=Quote,
    status_code=status.HTTP_201_CREATED,
    tags=["Lifecycle"],
    summary="Rate a quote",
)
def rate_quote(
    background_tasks: BackgroundTasks,
    body: dict[str, Any] = Body(...),
    service: ProtectService = Depends(get_service),
):
    """
    Body: {"context": PricingContext, "request": QuoteRequest}

    The quote is PENDING and expires 24h after creation.
    """
    quote = service.rate_quote(body.get("context"), body.get("request"), dispatch=False)
    _dispatch_later(background_tasks, service, EntityType.QUOTE, quote.id)
    return quote


@router.post(
    "/policies/bind",
    response_model=Policy,
    status_code=status.HTTP_201_CREATED,
    tags=["Lifecycle"],
    summary="Bind a quote",
)
def bind_policy(
    background_tasks: BackgroundTasks,
    body: dict[str, Any] = Body(...),
    service: ProtectService = Depends(get_service),
):
    """
    Consumes a PENDING, unexpired quote. Binding an expired quote fails
    with 409 and marks the quote EXPIRED.
    """
    policy = service.bind_policy(body, dispatch=False)
    _dispatch_later(background_tasks, service, EntityType.POLICY, policy.id)
    return policy


@router.get(
    "/policies/{policy_id}",
    response_model=PolicyDetail,
    tags=["Lifecycle"],
)
def get_policy(policy_id: str, service: ProtectService = Depends(get_service)):
    return service.get_policy(policy_id)


# ============================================================
# Claims
# ============================================================

@router.post(
    "/claims",
    response_model=SubmittedClaim,
    status_code=status.HTTP_201_CREATED,
    tags=["Claims"],
    summary="File a claim",
)
def submit_claim(
    background_tasks: BackgroundTasks,
    body: dict[str, Any] = Body(...),
    service: ProtectService = Depends(get_service),
):
    """
    The ledger write and the adjudication hand-off happen after the
    response; adjudication is reported as PENDING_RETRY/QUEUED here.
    """
    submitted = service.submit_claim(body, dispatch=False)
    _dispatch_later(background_tasks, service, EntityType.CLAIM, submitted.claim.id)
    return submitted


@router.get("/claims", response_model=list[Claim], tags=["Claims"])
def list_claims(
    policy_id: Optional[str] = None,
    claim_status: Optional[ClaimStatus] = Query(default=None, alias="status"),
    service: ProtectService = Depends(get_service),
):
    return service.list_claims(policy_id=policy_id, status=claim_status)


@router.get("/claims/{claim_id}", response_model=Claim, tags=["Claims"])
def get_claim(claim_id: str, service: ProtectService = Depends(get_service)):
    return service.get_claim(claim_id)


@router.patch("/claims/{claim_id}", response_model=Claim, tags=["Claims"])
def update_claim(
    claim_id: str,
    background_tasks: BackgroundTasks,
    body: dict[str, Any] = Body(...),
    service: ProtectService = Depends(get_service),
):
    claim = service.update_claim(claim_id, body, dispatch=False)
    _dispatch_later(background_tasks, service, EntityType.CLAIM, claim.id)
    return claim


# ============================================================
# Anchors
# ============================================================

@router.post("/anchors/events", response_model=IngestResult, tags=["Anchors"])
def ingest_anchor_event(
    body: dict[str, Any] = Body(...),
    service: ProtectService = Depends(get_service),
):
    return service.ingest_anchor_event(body)


@router.get("/cron/anchor-watchdog", tags=["Anchors"])
def anchor_watchdog(
    authorization: Optional[str] = Header(default=None),
    service: ProtectService = Depends(get_service),
):
    """Triggered by an external scheduler with `Authorization: Bearer <secret>`."""
    if authorization != f"Bearer {service.config.cron_secret}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    result = service.run_watchdog()
    return {
        "success": True,
        "processed": result.processed_count,
        "silenced_policy_ids": [str(pid) for pid in result.silenced_policy_ids],
    }


# ============================================================
# Integration relays
# ============================================================

@router.post("/integration/service-record", response_model=RelayResult, tags=["Integration"])
def service_record(
    body: dict[str, Any] = Body(...),
    service: ProtectService = Depends(get_service),
):
    return service.record_service_record(body)


@router.post("/integration/transit/handoff", response_model=RelayResult, tags=["Integration"])
def transit_handoff(
    body: dict[str, Any] = Body(...),
    service: ProtectService = Depends(get_service),
):
    return service.record_transit_handoff(body)


@router.post("/integration/policy/bind", response_model=RelayResult, tags=["Integration"])
def policy_bind_relay(
    body: dict[str, Any] = Body(...),
    service: ProtectService = Depends(get_service),
):
    return service.relay_policy_bind(body)
