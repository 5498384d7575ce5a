"""Persistence and notification interfaces used by the lifecycle engine.

The engine depends only on these protocols. PostgreSQL implementations
live in repository.py.
"""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Protocol, runtime_checkable

from src.handover.transfers.models import (
    EscrowStatus,
    SaleRecord,
    TransferRecord,
    TransferStatus,
)


class DuplicateTransferError(Exception):
    """Raised when a transfer record already exists for a sale.

    Attributes:
        sale_id: The sale that already has a transfer record.
    """

    def __init__(self, sale_id: str):
        self.sale_id = sale_id
        super().__init__(f"Transfer record already exists for sale: {sale_id}")


class NotificationKind(str, Enum):
    """Kinds of user-facing notices emitted during a handover."""

    REPOSITORY_TRANSFER = "repository_transfer"
    TRANSFER_CONFIRMED = "transfer_confirmed"
    OWNERSHIP_TRANSFERRED = "ownership_transferred"
    GITHUB_RECONNECT_REQUIRED = "github_reconnect_required"


@runtime_checkable
class SaleStore(Protocol):
    """Protocol for sale record access.

    Escrow writes are conditional: they apply only while escrow is held
    or claimed for processing, so a released, refunded or disputed sale
    never moves again.
    """

    async def find_by_id(self, sale_id: str) -> Optional[SaleRecord]:
        """Get a sale by id, or None if it does not exist."""
        ...

    async def release_escrow(self, sale_id: str, released_at: datetime) -> bool:
        """Mark escrow released.

        Returns:
            True if the sale was held or claimed and is now released.
        """
        ...

    async def update_escrow_status(self, sale_id: str, status: EscrowStatus) -> bool:
        """Set escrow status on a sale that is held or claimed.

        Returns:
            True if a row was updated.
        """
        ...

    async def find_sales_eligible_for_auto_transfer(
        self,
        as_of: datetime,
        stale_before: datetime,
    ) -> List[SaleRecord]:
        """List paid, repository-linked sales whose review window ended at
        or before as_of and whose escrow is held, or was claimed before
        stale_before and never released."""
        ...

    async def claim_for_processing(
        self,
        sale_id: str,
        claimed_at: datetime,
        stale_before: datetime,
    ) -> int:
        """Atomically claim a sale for an ownership attempt.

        A single conditional update; exactly one concurrent caller sees 1.
        A held sale can be claimed, and so can one whose previous claim is
        older than stale_before.

        Returns:
            Number of rows claimed (0 or 1).
        """
        ...


@runtime_checkable
class TransferStore(Protocol):
    """Protocol for transfer record persistence."""

    async def find_by_sale_id(self, sale_id: str) -> Optional[TransferRecord]:
        """Get the transfer record for a sale, or None."""
        ...

    async def create(self, record: TransferRecord) -> TransferRecord:
        """Insert a new transfer record.

        Raises:
            DuplicateTransferError: If the sale already has a record.
        """
        ...

    async def update_status(
        self,
        transfer_id: str,
        status: TransferStatus,
        **fields: Any,
    ) -> TransferRecord:
        """Set the status plus any of UPDATABLE_TRANSFER_FIELDS."""
        ...

    async def set_buyer_username(self, transfer_id: str, username: str) -> TransferRecord:
        """Persist the buyer's GitHub username."""
        ...

    async def increment_retry_count(self, transfer_id: str) -> int:
        """Atomically increment the retry counter.

        Returns:
            The new retry count.
        """
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Protocol for best-effort user notifications."""

    async def notify(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        message: str,
        action_url: Optional[str] = None,
    ) -> None:
        ...
