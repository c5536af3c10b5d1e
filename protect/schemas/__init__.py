# Domain schemas for the Protect underwriting core.
# Records are what the store holds; *Update models enumerate what may change.

from .quote import (
    PremiumResult,
    PricingContext,
    Quote,
    QuoteRequest,
    QuoteStatus,
    QuoteUpdate,
    SecurityLevel,
)
from .policy import (
    AnchorStatus,
    BindRequest,
    LedgerLinkUpdate,
    Policy,
    PolicyAnchorUpdate,
    PolicyStatus,
)
from .claim import (
    TERMINAL_CLAIM_STATUSES,
    Claim,
    ClaimStatus,
    ClaimSubmission,
    ClaimType,
    ClaimUpdate,
    ClaimUpdateRequest,
)
from .anchor import (
    AnchorEvent,
    AnchorEventIn,
    AnchorEventType,
    AnchorEventUpdate,
    IngestResult,
    RiskImpact,
)
from .audit import AuditAction, AuditLogEntry, EntityType
from .outbox import OutboxKind, OutboxStatus, OutboxTask, OutboxTaskUpdate
from .events import (
    HandoffAcceptance,
    HandoffChallenge,
    LedgerEvent,
    LedgerEventType,
    LedgerReceipt,
    PolicyBindRelay,
    RelayResult,
    ServiceRecord,
    TransitHandoffPayload,
)

__all__ = [
    # Quote
    "PremiumResult",
    "PricingContext",
    "Quote",
    "QuoteRequest",
    "QuoteStatus",
    "QuoteUpdate",
    "SecurityLevel",
    # Policy
    "AnchorStatus",
    "BindRequest",
    "LedgerLinkUpdate",
    "Policy",
    "PolicyAnchorUpdate",
    "PolicyStatus",
    # Claim
    "TERMINAL_CLAIM_STATUSES",
    "Claim",
    "ClaimStatus",
    "ClaimSubmission",
    "ClaimType",
    "ClaimUpdate",
    "ClaimUpdateRequest",
    # Anchor
    "AnchorEvent",
    "AnchorEventIn",
    "AnchorEventType",
    "AnchorEventUpdate",
    "IngestResult",
    "RiskImpact",
    # Audit
    "AuditAction",
    "AuditLogEntry",
    "EntityType",
    # Outbox
    "OutboxKind",
    "OutboxStatus",
    "OutboxTask",
    "OutboxTaskUpdate",
    # Ledger
    "HandoffAcceptance",
    "HandoffChallenge",
    "LedgerEvent",
    "LedgerEventType",
    "LedgerReceipt",
    "PolicyBindRelay",
    "RelayResult",
    "ServiceRecord",
    "TransitHandoffPayload",
]
