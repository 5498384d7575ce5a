"""Repository handover data models.

This module defines the data models for the handover workflow, including:
- PaymentStatus / EscrowStatus: Sale-side states the engine reads and writes
- TransferStatus: States of a repository transfer record
- SaleRecord: A purchase between buyer and seller
- TransferRecord: Handover state for exactly one sale
- VALID_TRANSITIONS: Map defining allowed transfer status transitions
- TransferOutcome / SweepResult: Results of ownership attempts and sweeps

The models use Pydantic for validation, consistent with config.py and
the GitHub models.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    """Payment state of a sale. Only SUCCEEDED sales are ever handed over."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EscrowStatus(str, Enum):
    """Escrow state of a sale's funds.

    Escrow only moves forward: held → released | refunded | disputed.
    TRANSFER_PROCESSING marks held funds that one worker has claimed for
    an ownership attempt; it resolves back to HELD or forward to RELEASED.

    Attributes:
        HELD: Funds held during the review window.
        TRANSFER_PROCESSING: Held funds claimed by an in-flight transfer.
        RELEASED: Funds released to the seller.
        REFUNDED: Funds returned to the buyer.
        DISPUTED: Buyer raised a dispute; funds frozen.
    """

    HELD = "held"
    TRANSFER_PROCESSING = "transfer_processing"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


# Escrow states that accept no further writes
SETTLED_ESCROW_STATUSES = frozenset(
    {EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.DISPUTED}
)


class TransferStatus(str, Enum):
    """States of a repository transfer record.

    Status Flow:
        pending → invitation_sent → [accepted] → transfer_initiated

    Ownership attempts move a record to failed, and failed records are
    retried until the retry limit. Buyer confirmation moves a record to
    completed. A refund before ownership changes hands moves it to revoked.

    Attributes:
        PENDING: Record exists but the buyer's GitHub username is unknown
            or the grant has not succeeded yet.
        INVITATION_SENT: Buyer invited as a collaborator.
        ACCEPTED: Buyer accepted the collaborator invitation.
        COMPLETED: Buyer confirmed receipt of the repository.
        TRANSFER_INITIATED: Ownership transfer requested on GitHub.
        FAILED: Last ownership or grant attempt failed.
        REVOKED: Buyer access removed after a refund.
    """

    PENDING = "pending"
    INVITATION_SENT = "invitation_sent"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    TRANSFER_INITIATED = "transfer_initiated"
    FAILED = "failed"
    REVOKED = "revoked"


class TransferMethod(str, Enum):
    """How the repository changes hands."""

    GITHUB_COLLABORATOR = "github_collaborator"


class SaleRecord(BaseModel):
    """A purchase between a buyer and a seller.

    Attributes:
        id: Sale identifier.
        buyer_id: Buyer's user id.
        seller_id: Seller's user id.
        project_title: Title of the purchased project, used in notices.
        amount_cents: Sale amount.
        payment_status: Payment state.
        escrow_status: Escrow state.
        escrow_release_at: End of the review window.
        released_at: When funds were actually released.
        repository_url: GitHub URL of the sold repository.
        seller_github_token: Seller's encrypted GitHub token.
        seller_github_username: Seller's GitHub login.
        buyer_github_username: Buyer's GitHub login, if already known.
        offer_price_cents: Accepted offer price for negotiated sales.
        offer_accepted_at: When the offer was accepted.
        buyer_review_submitted_at: When the buyer left a trade review.
        claimed_at: When the sale was last claimed for an ownership attempt.
        created_at: When the sale was created.
    """

    id: str = Field(..., min_length=1, description="Sale identifier")
    buyer_id: str = Field(..., min_length=1, description="Buyer's user id")
    seller_id: str = Field(..., min_length=1, description="Seller's user id")

    project_title: str = Field(default="", description="Purchased project title")

    amount_cents: int = Field(default=0, ge=0, description="Sale amount in cents")

    payment_status: PaymentStatus = Field(
        default=PaymentStatus.PENDING,
        description="Payment state of the sale",
    )

    escrow_status: EscrowStatus = Field(
        default=EscrowStatus.HELD,
        description="Escrow state of the sale's funds",
    )

    escrow_release_at: Optional[datetime] = Field(
        default=None,
        description="End of the review window",
    )

    released_at: Optional[datetime] = Field(
        default=None,
        description="When funds were released to the seller",
    )

    repository_url: Optional[str] = Field(
        default=None,
        description="GitHub URL of the sold repository; None means no handover",
    )

    seller_github_token: Optional[str] = Field(
        default=None,
        description="Seller's GitHub token, encrypted at rest",
    )

    seller_github_username: Optional[str] = Field(default=None)
    buyer_github_username: Optional[str] = Field(default=None)

    offer_price_cents: Optional[int] = Field(default=None, ge=0)
    offer_accepted_at: Optional[datetime] = Field(default=None)

    buyer_review_submitted_at: Optional[datetime] = Field(default=None)

    claimed_at: Optional[datetime] = Field(
        default=None,
        description="When escrow was last moved to transfer_processing",
    )

    created_at: datetime = Field(default_factory=utcnow)

    def review_window_ended(self, now: datetime) -> bool:
        """True once the review window end time has been reached."""
        return self.escrow_release_at is not None and now >= self.escrow_release_at


class TransferRecord(BaseModel):
    """Repository handover state for one sale.

    Records are never deleted; they are the audit trail of the handover.
    retry_count only increases.
    """

    id: str = Field(..., min_length=1, description="Transfer record identifier")
    sale_id: str = Field(..., min_length=1, description="Owning sale identifier")

    repository_full_name: str = Field(
        ...,
        min_length=1,
        description='Repository path in format "{owner}/{name}"',
    )

    method: TransferMethod = Field(default=TransferMethod.GITHUB_COLLABORATOR)

    status: TransferStatus = Field(default=TransferStatus.PENDING)

    seller_github_username: Optional[str] = Field(default=None)
    buyer_github_username: Optional[str] = Field(default=None)

    github_invitation_id: Optional[int] = Field(default=None)

    initiated_at: Optional[datetime] = Field(default=None)
    invitation_sent_at: Optional[datetime] = Field(default=None)
    accepted_at: Optional[datetime] = Field(default=None)
    transfer_initiated_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    failed_at: Optional[datetime] = Field(default=None)
    revoked_at: Optional[datetime] = Field(default=None)

    error_message: Optional[str] = Field(
        default=None,
        description="Classified message of the last failure",
    )

    retry_count: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def ownership_transferred(self) -> bool:
        """True once the ownership transfer has been requested on GitHub."""
        return self.transfer_initiated_at is not None


# Fields TransferStore.update_status accepts alongside the new status
UPDATABLE_TRANSFER_FIELDS = frozenset(
    {
        "github_invitation_id",
        "buyer_github_username",
        "invitation_sent_at",
        "accepted_at",
        "transfer_initiated_at",
        "completed_at",
        "failed_at",
        "revoked_at",
        "error_message",
    }
)


# Valid transfer status transitions
#
# - PENDING is only left by a successful grant or a revoke
# - FAILED re-enters FAILED on repeated ownership failures
# - REVOKED is terminal
VALID_TRANSITIONS: Dict[TransferStatus, List[TransferStatus]] = {
    TransferStatus.PENDING: [
        TransferStatus.INVITATION_SENT,
        TransferStatus.REVOKED,
    ],
    TransferStatus.INVITATION_SENT: [
        TransferStatus.ACCEPTED,
        TransferStatus.COMPLETED,
        TransferStatus.TRANSFER_INITIATED,
        TransferStatus.FAILED,
        TransferStatus.REVOKED,
    ],
    TransferStatus.ACCEPTED: [
        TransferStatus.COMPLETED,
        TransferStatus.TRANSFER_INITIATED,
        TransferStatus.FAILED,
        TransferStatus.REVOKED,
    ],
    TransferStatus.COMPLETED: [
        TransferStatus.COMPLETED,
        TransferStatus.TRANSFER_INITIATED,
        TransferStatus.FAILED,
        TransferStatus.REVOKED,
    ],
    # Ownership requested; only buyer confirmation follows
    TransferStatus.TRANSFER_INITIATED: [
        TransferStatus.COMPLETED,
    ],
    TransferStatus.FAILED: [
        TransferStatus.INVITATION_SENT,
        TransferStatus.TRANSFER_INITIATED,
        TransferStatus.FAILED,
        TransferStatus.COMPLETED,
        TransferStatus.REVOKED,
    ],
    TransferStatus.REVOKED: [],
}


def is_valid_transition(from_status: TransferStatus, to_status: TransferStatus) -> bool:
    """Check if a transfer status transition is valid.

    Example:
        >>> is_valid_transition(TransferStatus.PENDING, TransferStatus.INVITATION_SENT)
        True
        >>> is_valid_transition(TransferStatus.PENDING, TransferStatus.TRANSFER_INITIATED)
        False
    """
    return to_status in VALID_TRANSITIONS.get(from_status, [])


class SkipReason(str, Enum):
    """Why an ownership attempt was not performed this time."""

    PAYMENT_NOT_COMPLETED = "Payment not completed"
    NO_TRANSFER_RECORD = "No repository transfer record"
    PENDING_BUYER_USERNAME = "Transfer pending buyer GitHub username"
    BUYER_USERNAME_MISSING = "Buyer GitHub username not set"
    MAX_RETRIES_EXCEEDED = "Max retries exceeded"
    NO_REPOSITORY_URL = "Project has no GitHub URL"
    SELLER_TOKEN_MISSING = "Seller GitHub token not available"
    ALREADY_PROCESSING = "Already being processed by another worker"
    ESCROW_SETTLED = "Escrow already released, refunded or disputed"
    AWAITING_REVIEW_WINDOW = "Ownership already transferred; awaiting review window"
    TRANSFER_REVOKED = "Transfer was revoked"


class TransferOutcome(BaseModel):
    """Result of an ownership transfer attempt.

    Skips and provider failures are values, never exceptions, so batch
    processing can continue past them.

    Attributes:
        success: True when ownership was transferred or escrow released.
        skipped: True when the attempt was not performed.
        reason: Skip reason, when skipped.
        error: Classified failure message, when the attempt failed.
        escrow_released: True when escrow was released in this call.
    """

    success: bool
    skipped: bool = False
    reason: Optional[SkipReason] = None
    error: Optional[str] = None
    escrow_released: bool = False

    @classmethod
    def skip(cls, reason: SkipReason) -> "TransferOutcome":
        return cls(success=False, skipped=True, reason=reason)


class SweepResult(BaseModel):
    """Counters for one batch sweep.

    processed counts successful transfers plus fallback escrow releases.
    """

    examined: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    fallback_released: int = 0
