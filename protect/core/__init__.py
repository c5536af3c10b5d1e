# Core underwriting services
from .errors import (
    DownstreamUnavailableError,
    InternalError,
    LedgerRejectedError,
    LedgerUnavailableError,
    NotFoundError,
    ProtectError,
    StateConflictError,
    ValidationError,
)
from .hasher import Hasher, CanonicalSerializationError
from .ledger import (
    HttpLedgerClient,
    InMemoryLedgerClient,
    LedgerClient,
    create_ledger_client,
)
from .adjudication import (
    AdjudicationClient,
    AdjudicationResult,
    HttpAdjudicationClient,
    InMemoryAdjudicationClient,
    create_adjudication_client,
)
from .pricing import calculate_premium, classify_anchor_risk
from .lifecycle import (
    AnchorTransition,
    Heartbeat,
    SealArmed,
    SealBroken,
    SignalLost,
)
from .ingestion import AnchorEventProcessor
from .watchdog import AnchorWatchdog, WatchdogResult, WatchdogScheduler
from .outbox import OutboxDispatcher
from .service import ProtectService

__all__ = [
    "DownstreamUnavailableError",
    "InternalError",
    "LedgerRejectedError",
    "LedgerUnavailableError",
    "NotFoundError",
    "ProtectError",
    "StateConflictError",
    "ValidationError",
    "Hasher",
    "CanonicalSerializationError",
    "HttpLedgerClient",
    "InMemoryLedgerClient",
    "LedgerClient",
    "create_ledger_client",
    "AdjudicationClient",
    "AdjudicationResult",
    "HttpAdjudicationClient",
    "InMemoryAdjudicationClient",
    "create_adjudication_client",
    "calculate_premium",
    "classify_anchor_risk",
    "AnchorTransition",
    "Heartbeat",
    "SealArmed",
    "SealBroken",
    "SignalLost",
    "AnchorEventProcessor",
    "AnchorWatchdog",
    "WatchdogResult",
    "WatchdogScheduler",
    "OutboxDispatcher",
    "ProtectService",
]
