"""Repository transfer lifecycle: models, stores, timeline and engine.

Transfers progress through:
- pending → invitation_sent → [accepted] → transfer_initiated

The engine guards the irreversible ownership transfer with an atomic
claim on the sale row and releases escrow once the review window ends.
"""

from src.handover.transfers.models import (
    VALID_TRANSITIONS,
    EscrowStatus,
    PaymentStatus,
    SaleRecord,
    SkipReason,
    SweepResult,
    TransferMethod,
    TransferOutcome,
    TransferRecord,
    TransferStatus,
    is_valid_transition,
)
from src.handover.transfers.stores import (
    DuplicateTransferError,
    NotificationKind,
    NotificationSink,
    SaleStore,
    TransferStore,
)
from src.handover.transfers.timeline import (
    DEFAULT_STAGES,
    TimelineAction,
    TimelineRole,
    TimelineStage,
    TimelineStageKey,
    TimelineStageStatus,
    build_timeline,
)
from src.handover.transfers.engine import (
    InvalidTransitionError,
    TransferError,
    TransferLifecycleEngine,
    TransferNotFoundError,
    TransferPermissionError,
    TransferValidationError,
)
from src.handover.transfers.repository import (
    DatabaseError,
    PostgresDatabase,
    PostgresSaleStore,
    PostgresTransferStore,
)

__all__ = [
    # Models
    "EscrowStatus",
    "PaymentStatus",
    "SaleRecord",
    "SkipReason",
    "SweepResult",
    "TransferMethod",
    "TransferOutcome",
    "TransferRecord",
    "TransferStatus",
    "VALID_TRANSITIONS",
    "is_valid_transition",
    # Stores
    "DuplicateTransferError",
    "NotificationKind",
    "NotificationSink",
    "SaleStore",
    "TransferStore",
    # Timeline
    "DEFAULT_STAGES",
    "TimelineAction",
    "TimelineRole",
    "TimelineStage",
    "TimelineStageKey",
    "TimelineStageStatus",
    "build_timeline",
    # Engine
    "InvalidTransitionError",
    "TransferError",
    "TransferLifecycleEngine",
    "TransferNotFoundError",
    "TransferPermissionError",
    "TransferValidationError",
    # Repository
    "DatabaseError",
    "PostgresDatabase",
    "PostgresSaleStore",
    "PostgresTransferStore",
]
