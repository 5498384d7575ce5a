"""Timeline projection over a sale and its transfer record.

build_timeline is a pure function: it reads two immutable snapshots plus
the requester's role and returns frozen stage objects. It performs no I/O
and is safe to call on every UI poll.

Stages, in default order:
    Offer Accepted → Payment Received → Collaborator Access
    → Project Review → Trade Review → Ownership Transfer

The stage set is configurable; callers pass the keys to render.
"""

import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from src.handover.transfers.models import (
    EscrowStatus,
    PaymentStatus,
    SaleRecord,
    TransferRecord,
    TransferStatus,
)


class TimelineStageKey(str, Enum):
    OFFER_ACCEPTED = "offer_accepted"
    PAYMENT_RECEIVED = "payment_received"
    COLLABORATOR_ACCESS = "collaborator_access"
    PROJECT_REVIEW = "project_review"
    TRADE_REVIEW = "trade_review"
    OWNERSHIP_TRANSFER = "ownership_transfer"


STAGE_NAMES: Dict[TimelineStageKey, str] = {
    TimelineStageKey.OFFER_ACCEPTED: "Offer Accepted",
    TimelineStageKey.PAYMENT_RECEIVED: "Payment Received",
    TimelineStageKey.COLLABORATOR_ACCESS: "Collaborator Access",
    TimelineStageKey.PROJECT_REVIEW: "Project Review",
    TimelineStageKey.TRADE_REVIEW: "Trade Review",
    TimelineStageKey.OWNERSHIP_TRANSFER: "Ownership Transfer",
}

DEFAULT_STAGES: Tuple[TimelineStageKey, ...] = tuple(TimelineStageKey)

# Used when a paid sale has no review window end recorded yet
DEFAULT_REVIEW_DAYS = 7


class TimelineStageStatus(str, Enum):
    COMPLETED = "completed"
    ACTIVE = "active"
    UPCOMING = "upcoming"
    SKIPPED = "skipped"
    FAILED = "failed"


class TimelineRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"


class TimelineActionType(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    LINK = "link"


class TimelineAction(BaseModel):
    """A suggested action shown on a stage.

    Attributes:
        label: Button or link text.
        type: Visual weight of the action.
        url: Page to navigate to, for link-style actions.
        api_endpoint: Endpoint to call, for API actions.
        api_method: HTTP method for api_endpoint.
    """

    model_config = ConfigDict(frozen=True)

    label: str
    type: TimelineActionType
    url: Optional[str] = None
    api_endpoint: Optional[str] = None
    api_method: Optional[str] = None


class TimelineStage(BaseModel):
    """One stage of a handover timeline."""

    model_config = ConfigDict(frozen=True)

    key: TimelineStageKey
    name: str
    status: TimelineStageStatus
    description: str
    completed_at: Optional[datetime] = None
    actions: Tuple[TimelineAction, ...] = ()
    metadata: Dict[str, Any] = Field(default_factory=dict)


class _Context:
    """Facts shared by the stage builders."""

    def __init__(
        self,
        sale: SaleRecord,
        transfer: Optional[TransferRecord],
        role: TimelineRole,
        now: datetime,
    ):
        self.sale = sale
        self.transfer = transfer
        self.role = role
        self.now = now
        self.paid = sale.payment_status == PaymentStatus.SUCCEEDED
        self.review_ended = sale.review_window_ended(now)

    @property
    def transfer_endpoint(self) -> str:
        return f"/transactions/{self.sale.id}/transfer-ownership"

    def stage(
        self,
        key: TimelineStageKey,
        status: TimelineStageStatus,
        description: str,
        completed_at: Optional[datetime] = None,
        actions: Sequence[TimelineAction] = (),
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TimelineStage:
        return TimelineStage(
            key=key,
            name=STAGE_NAMES[key],
            status=status,
            description=description,
            completed_at=completed_at,
            actions=tuple(actions),
            metadata=metadata or {},
        )


def _format_cents(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def _offer_accepted(ctx: _Context) -> TimelineStage:
    sale = ctx.sale
    if sale.offer_price_cents is not None:
        return ctx.stage(
            TimelineStageKey.OFFER_ACCEPTED,
            TimelineStageStatus.COMPLETED,
            f"Offer of {_format_cents(sale.offer_price_cents)} accepted",
            completed_at=sale.offer_accepted_at or sale.created_at,
        )
    return ctx.stage(
        TimelineStageKey.OFFER_ACCEPTED,
        TimelineStageStatus.COMPLETED,
        "Direct purchase at listing price",
        completed_at=sale.created_at,
    )


def _payment_received(ctx: _Context) -> TimelineStage:
    key = TimelineStageKey.PAYMENT_RECEIVED
    if ctx.paid:
        return ctx.stage(
            key,
            TimelineStageStatus.COMPLETED,
            "Payment processed successfully",
            completed_at=ctx.sale.created_at,
        )
    if ctx.sale.payment_status == PaymentStatus.FAILED:
        return ctx.stage(key, TimelineStageStatus.FAILED, "Payment failed")
    return ctx.stage(key, TimelineStageStatus.ACTIVE, "Waiting for payment confirmation")


def _collaborator_access(ctx: _Context) -> TimelineStage:
    key = TimelineStageKey.COLLABORATOR_ACCESS
    sale, transfer = ctx.sale, ctx.transfer

    if not sale.repository_url:
        return ctx.stage(
            key,
            TimelineStageStatus.SKIPPED,
            "No GitHub repository linked to this project",
        )

    connect_actions: List[TimelineAction] = []
    if ctx.role == TimelineRole.BUYER:
        connect_actions.append(
            TimelineAction(
                label="Connect GitHub Account",
                type=TimelineActionType.PRIMARY,
                url=f"/checkout/success?transactionId={sale.id}",
            )
        )

    if transfer is None:
        if not ctx.paid:
            return ctx.stage(
                key,
                TimelineStageStatus.UPCOMING,
                "Will begin after payment is confirmed",
            )
        return ctx.stage(
            key,
            TimelineStageStatus.ACTIVE,
            "Awaiting buyer GitHub username",
            actions=connect_actions,
        )

    granted_at = transfer.invitation_sent_at or transfer.completed_at

    if transfer.status == TransferStatus.REVOKED:
        return ctx.stage(
            key,
            TimelineStageStatus.SKIPPED,
            "Collaborator access revoked after refund",
        )

    if transfer.status == TransferStatus.PENDING:
        return ctx.stage(
            key,
            TimelineStageStatus.ACTIVE,
            "Awaiting buyer GitHub username",
            actions=connect_actions,
        )

    # A failed record that already sent an invitation failed later, at ownership
    if transfer.status == TransferStatus.FAILED and transfer.invitation_sent_at is None:
        return ctx.stage(
            key,
            TimelineStageStatus.FAILED,
            "Collaborator access failed: " + (transfer.error_message or "Unknown error"),
            actions=connect_actions,
        )

    if transfer.status == TransferStatus.ACCEPTED:
        description = "Buyer accepted the collaborator invitation"
    else:
        description = "Collaborator access granted; buyer has been added to the repository"

    return ctx.stage(
        key,
        TimelineStageStatus.COMPLETED,
        description,
        completed_at=granted_at,
        metadata={"buyer_github_username": transfer.buyer_github_username},
    )


def _days_remaining(ctx: _Context) -> int:
    release_at = ctx.sale.escrow_release_at
    if release_at is None:
        return DEFAULT_REVIEW_DAYS
    remaining = (release_at - ctx.now) / timedelta(days=1)
    return max(0, math.ceil(remaining))


def _project_review(ctx: _Context) -> TimelineStage:
    key = TimelineStageKey.PROJECT_REVIEW
    sale = ctx.sale

    if not ctx.paid:
        return ctx.stage(
            key,
            TimelineStageStatus.UPCOMING,
            "Project review begins after payment",
        )

    if sale.escrow_status == EscrowStatus.REFUNDED:
        return ctx.stage(key, TimelineStageStatus.SKIPPED, "Sale was refunded")

    if sale.escrow_status == EscrowStatus.DISPUTED:
        return ctx.stage(
            key,
            TimelineStageStatus.ACTIVE,
            "A dispute is open; funds are on hold while it is reviewed",
            metadata={"escrow_release_at": sale.escrow_release_at, "disputed": True},
        )

    if ctx.review_ended:
        return ctx.stage(
            key,
            TimelineStageStatus.COMPLETED,
            "Project review period has ended",
            completed_at=sale.escrow_release_at,
            metadata={"escrow_release_at": sale.escrow_release_at, "days_remaining": 0},
        )

    days = _days_remaining(ctx)
    plural = "" if days == 1 else "s"
    return ctx.stage(
        key,
        TimelineStageStatus.ACTIVE,
        f"{days} day{plural} remaining to review and raise any disputes",
        metadata={"escrow_release_at": sale.escrow_release_at, "days_remaining": days},
    )


def _trade_review(ctx: _Context) -> TimelineStage:
    key = TimelineStageKey.TRADE_REVIEW
    sale = ctx.sale

    if not ctx.paid:
        return ctx.stage(key, TimelineStageStatus.UPCOMING, "Trade review opens after payment")

    if sale.buyer_review_submitted_at is not None:
        return ctx.stage(
            key,
            TimelineStageStatus.COMPLETED,
            "Buyer left a review for this trade",
            completed_at=sale.buyer_review_submitted_at,
        )

    if ctx.role == TimelineRole.BUYER:
        return ctx.stage(
            key,
            TimelineStageStatus.ACTIVE,
            "Share how the trade went with other buyers",
            actions=[
                TimelineAction(
                    label="Leave Review",
                    type=TimelineActionType.LINK,
                    url=f"/transactions/{sale.id}/review",
                )
            ],
        )
    return ctx.stage(key, TimelineStageStatus.ACTIVE, "Waiting for the buyer's review")


def _ownership_transfer(ctx: _Context) -> TimelineStage:
    key = TimelineStageKey.OWNERSHIP_TRANSFER
    sale, transfer = ctx.sale, ctx.transfer
    is_seller = ctx.role == TimelineRole.SELLER

    if not sale.repository_url:
        return ctx.stage(
            key,
            TimelineStageStatus.SKIPPED,
            "No GitHub repository linked to this project",
        )

    if sale.escrow_status == EscrowStatus.RELEASED:
        return ctx.stage(
            key,
            TimelineStageStatus.COMPLETED,
            "Ownership transferred; funds have been released to the seller",
            completed_at=sale.released_at,
        )

    if sale.escrow_status == EscrowStatus.REFUNDED:
        return ctx.stage(key, TimelineStageStatus.SKIPPED, "Sale was refunded")

    if sale.escrow_status == EscrowStatus.DISPUTED:
        return ctx.stage(
            key,
            TimelineStageStatus.ACTIVE,
            "Ownership transfer is paused while a dispute is reviewed",
            metadata={"paused": True},
        )

    if transfer is not None and transfer.ownership_transferred:
        return ctx.stage(
            key,
            TimelineStageStatus.ACTIVE,
            "Ownership transfer in progress; buyer must accept the GitHub transfer",
            metadata={"transfer_initiated_at": transfer.transfer_initiated_at},
        )

    if (
        transfer is not None
        and transfer.status == TransferStatus.FAILED
        and transfer.invitation_sent_at is not None
    ):
        actions: List[TimelineAction] = []
        if is_seller:
            actions.append(
                TimelineAction(
                    label="Retry Transfer",
                    type=TimelineActionType.PRIMARY,
                    api_endpoint=ctx.transfer_endpoint,
                    api_method="POST",
                )
            )
        return ctx.stage(
            key,
            TimelineStageStatus.FAILED,
            "Ownership transfer failed: " + (transfer.error_message or "Unknown error"),
            actions=actions,
            metadata={"retry_count": transfer.retry_count, "failed_at": transfer.failed_at},
        )

    if ctx.review_ended:
        actions = []
        if is_seller:
            actions.append(
                TimelineAction(
                    label="Transfer Now",
                    type=TimelineActionType.PRIMARY,
                    api_endpoint=ctx.transfer_endpoint,
                    api_method="POST",
                )
            )
        return ctx.stage(
            key,
            TimelineStageStatus.ACTIVE,
            "Review period complete; awaiting ownership transfer",
            actions=actions,
        )

    early_statuses = (
        TransferStatus.INVITATION_SENT,
        TransferStatus.ACCEPTED,
        TransferStatus.COMPLETED,
    )
    actions = []
    if is_seller and transfer is not None and transfer.status in early_statuses:
        actions.append(
            TimelineAction(
                label="Transfer Early",
                type=TimelineActionType.SECONDARY,
                api_endpoint=ctx.transfer_endpoint,
                api_method="POST",
            )
        )
    return ctx.stage(
        key,
        TimelineStageStatus.UPCOMING,
        "Ownership transfer will happen after the review period",
        actions=actions,
    )


_BUILDERS: Dict[TimelineStageKey, Callable[[_Context], TimelineStage]] = {
    TimelineStageKey.OFFER_ACCEPTED: _offer_accepted,
    TimelineStageKey.PAYMENT_RECEIVED: _payment_received,
    TimelineStageKey.COLLABORATOR_ACCESS: _collaborator_access,
    TimelineStageKey.PROJECT_REVIEW: _project_review,
    TimelineStageKey.TRADE_REVIEW: _trade_review,
    TimelineStageKey.OWNERSHIP_TRANSFER: _ownership_transfer,
}


def build_timeline(
    sale: SaleRecord,
    transfer: Optional[TransferRecord],
    role: TimelineRole,
    now: datetime,
    stages: Sequence[TimelineStageKey] = DEFAULT_STAGES,
) -> List[TimelineStage]:
    """Derive the handover timeline for one sale.

    Args:
        sale: Current sale snapshot.
        transfer: Current transfer record, or None if handover has not started.
        role: Whether the requester is the buyer or the seller.
        now: Reference time for review window calculations.
        stages: Stage keys to render, in order.

    Returns:
        One TimelineStage per requested key.

    Example:
        >>> stages = build_timeline(sale, None, TimelineRole.BUYER, now)
        >>> [stage.name for stage in stages][:2]
        ['Offer Accepted', 'Payment Received']
    """
    ctx = _Context(sale, transfer, role, now)
    return [_BUILDERS[TimelineStageKey(key)](ctx) for key in stages]
