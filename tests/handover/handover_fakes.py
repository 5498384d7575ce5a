"""In-memory doubles and factories for handover tests.

Provides in-memory SaleStore and TransferStore implementations, a recording
notification sink and event emitter, and factories for sales, transfer
records and a wired TransferLifecycleEngine.

The in-memory stores yield to the event loop before each operation so
concurrent callers interleave the way they would against a database.
The claim itself is a single check-and-set with no await in between.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

from src.handover.crypto import encrypt_token
from src.handover.events.emitter import EventEmitter
from src.handover.events.models import EventType, TransferEvent
from src.handover.github.client import GitHubClient
from src.handover.github.models import CollaboratorGrant
from src.handover.transfers.engine import TransferLifecycleEngine
from src.handover.transfers.models import (
    EscrowStatus,
    PaymentStatus,
    SaleRecord,
    TransferRecord,
    TransferStatus,
)
from src.handover.transfers.stores import DuplicateTransferError, NotificationKind


TEST_KEY = "0f1e2d3c4b5a69788796a5b4c3d2e1f00112233445566778899aabbccddeeff0"
SELLER_TOKEN = "gho_seller_token"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def run_async(coro):
    return asyncio.run(coro)


# =============================================================================
# In-memory stores
# =============================================================================


class InMemorySaleStore:
    """Dict-backed SaleStore with the same conditional-update semantics."""

    def __init__(self) -> None:
        self.sales: Dict[str, SaleRecord] = {}
        self.claim_calls = 0

    def add(self, sale: SaleRecord) -> SaleRecord:
        self.sales[sale.id] = sale
        return sale

    def _update(self, sale_id: str, **fields: Any) -> None:
        self.sales[sale_id] = self.sales[sale_id].model_copy(update=fields)

    async def find_by_id(self, sale_id: str) -> Optional[SaleRecord]:
        await asyncio.sleep(0)
        return self.sales.get(sale_id)

    async def release_escrow(self, sale_id: str, released_at: datetime) -> bool:
        await asyncio.sleep(0)
        sale = self.sales.get(sale_id)
        if sale is None or sale.escrow_status not in (
            EscrowStatus.HELD,
            EscrowStatus.TRANSFER_PROCESSING,
        ):
            return False
        self._update(sale_id, escrow_status=EscrowStatus.RELEASED, released_at=released_at)
        return True

    async def update_escrow_status(self, sale_id: str, status: EscrowStatus) -> bool:
        await asyncio.sleep(0)
        sale = self.sales.get(sale_id)
        if sale is None or sale.escrow_status not in (
            EscrowStatus.HELD,
            EscrowStatus.TRANSFER_PROCESSING,
        ):
            return False
        self._update(sale_id, escrow_status=status)
        return True

    def _claimable(self, sale: SaleRecord, stale_before: datetime) -> bool:
        if sale.escrow_status == EscrowStatus.HELD:
            return True
        return (
            sale.escrow_status == EscrowStatus.TRANSFER_PROCESSING
            and sale.claimed_at is not None
            and sale.claimed_at < stale_before
        )

    async def find_sales_eligible_for_auto_transfer(
        self,
        as_of: datetime,
        stale_before: datetime,
    ) -> List[SaleRecord]:
        await asyncio.sleep(0)
        return [
            sale
            for sale in self.sales.values()
            if self._claimable(sale, stale_before)
            and sale.payment_status == PaymentStatus.SUCCEEDED
            and sale.repository_url is not None
            and sale.escrow_release_at is not None
            and sale.escrow_release_at <= as_of
        ]

    async def claim_for_processing(
        self,
        sale_id: str,
        claimed_at: datetime,
        stale_before: datetime,
    ) -> int:
        await asyncio.sleep(0)
        self.claim_calls += 1
        sale = self.sales.get(sale_id)
        if (
            sale is None
            or not self._claimable(sale, stale_before)
            or sale.payment_status != PaymentStatus.SUCCEEDED
        ):
            return 0
        self._update(
            sale_id,
            escrow_status=EscrowStatus.TRANSFER_PROCESSING,
            claimed_at=claimed_at,
        )
        return 1


class InMemoryTransferStore:
    """Dict-backed TransferStore keyed by sale id."""

    def __init__(self) -> None:
        self.records: Dict[str, TransferRecord] = {}

    def add(self, record: TransferRecord) -> TransferRecord:
        self.records[record.sale_id] = record
        return record

    def get(self, sale_id: str) -> Optional[TransferRecord]:
        return self.records.get(sale_id)

    def _by_id(self, transfer_id: str) -> TransferRecord:
        for record in self.records.values():
            if record.id == transfer_id:
                return record
        raise KeyError(transfer_id)

    def _replace(self, record: TransferRecord, **fields: Any) -> TransferRecord:
        updated = record.model_copy(update={**fields, "updated_at": NOW})
        self.records[record.sale_id] = updated
        return updated

    async def find_by_sale_id(self, sale_id: str) -> Optional[TransferRecord]:
        await asyncio.sleep(0)
        return self.records.get(sale_id)

    async def create(self, record: TransferRecord) -> TransferRecord:
        await asyncio.sleep(0)
        if record.sale_id in self.records:
            raise DuplicateTransferError(record.sale_id)
        self.records[record.sale_id] = record
        return record

    async def update_status(
        self,
        transfer_id: str,
        status: TransferStatus,
        **fields: Any,
    ) -> TransferRecord:
        await asyncio.sleep(0)
        return self._replace(self._by_id(transfer_id), status=status, **fields)

    async def set_buyer_username(self, transfer_id: str, username: str) -> TransferRecord:
        await asyncio.sleep(0)
        return self._replace(self._by_id(transfer_id), buyer_github_username=username)

    async def increment_retry_count(self, transfer_id: str) -> int:
        await asyncio.sleep(0)
        record = self._by_id(transfer_id)
        updated = self._replace(record, retry_count=record.retry_count + 1)
        return updated.retry_count


class RecordingNotificationSink:
    """Collects notifications; optionally fails every delivery."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []

    async def notify(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        message: str,
        action_url: Optional[str] = None,
    ) -> None:
        if self.fail:
            raise RuntimeError("notification backend down")
        self.sent.append(
            {
                "user_id": user_id,
                "kind": kind,
                "title": title,
                "message": message,
                "action_url": action_url,
            }
        )

    def kinds_for(self, user_id: str) -> List[NotificationKind]:
        return [n["kind"] for n in self.sent if n["user_id"] == user_id]


class RecordingEventEmitter(EventEmitter):
    """Keeps every emitted event for assertions."""

    def __init__(self) -> None:
        self.events: List[TransferEvent] = []

    async def emit(self, event: TransferEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[TransferEvent]:
        return [e for e in self.events if e.event_type == event_type]


# =============================================================================
# Factories
# =============================================================================


def make_sale(
    sale_id: str = "sale-1",
    payment_status: PaymentStatus = PaymentStatus.SUCCEEDED,
    escrow_status: EscrowStatus = EscrowStatus.HELD,
    review_ends_in: Optional[timedelta] = timedelta(days=-1),
    repository_url: Optional[str] = "https://github.com/seller/widgets",
    seller_token: Optional[str] = SELLER_TOKEN,
    buyer_github_username: Optional[str] = None,
    created_at: datetime = NOW - timedelta(days=8),
    **overrides: Any,
) -> SaleRecord:
    """Build a paid sale whose review window ended a day ago by default."""
    return SaleRecord(
        id=sale_id,
        buyer_id="buyer-1",
        seller_id="seller-1",
        project_title="Widgets",
        amount_cents=50_000,
        payment_status=payment_status,
        escrow_status=escrow_status,
        escrow_release_at=NOW + review_ends_in if review_ends_in is not None else None,
        repository_url=repository_url,
        seller_github_token=encrypt_token(seller_token, TEST_KEY) if seller_token else None,
        seller_github_username="seller",
        buyer_github_username=buyer_github_username,
        created_at=created_at,
        **overrides,
    )


def make_transfer(
    sale_id: str = "sale-1",
    status: TransferStatus = TransferStatus.INVITATION_SENT,
    buyer_github_username: Optional[str] = "buyer",
    retry_count: int = 0,
    **overrides: Any,
) -> TransferRecord:
    fields: Dict[str, Any] = {
        "id": f"transfer-{sale_id}",
        "sale_id": sale_id,
        "repository_full_name": "seller/widgets",
        "status": status,
        "seller_github_username": "seller",
        "buyer_github_username": buyer_github_username,
        "retry_count": retry_count,
        "initiated_at": NOW - timedelta(days=7),
        "created_at": NOW - timedelta(days=7),
        "updated_at": NOW - timedelta(days=7),
    }
    if status != TransferStatus.PENDING:
        fields["invitation_sent_at"] = NOW - timedelta(days=7)
    fields.update(overrides)
    return TransferRecord(**fields)


def make_github() -> AsyncMock:
    github = AsyncMock(spec=GitHubClient)
    github.add_collaborator.return_value = CollaboratorGrant(invitation_id=1001)
    github.check_collaborator_access.return_value = True
    github.remove_collaborator.return_value = None
    github.transfer_ownership.return_value = None
    return github


class HandoverEnv:
    """An engine wired to fresh in-memory collaborators."""

    def __init__(self, notification_fail: bool = False, max_retries: int = 3):
        self.sales = InMemorySaleStore()
        self.transfers = InMemoryTransferStore()
        self.github = make_github()
        self.notifications = RecordingNotificationSink(fail=notification_fail)
        self.events = RecordingEventEmitter()
        self.engine = TransferLifecycleEngine(
            sale_store=self.sales,
            transfer_store=self.transfers,
            github_client=self.github,
            notification_sink=self.notifications,
            token_encryption_key=TEST_KEY,
            event_emitter=self.events,
            max_retries=max_retries,
            fallback_release_days=14,
            claim_timeout_seconds=900,
            app_base_url="https://market.example",
            clock=lambda: NOW,
        )

    def sale(self, sale_id: str = "sale-1") -> SaleRecord:
        return self.sales.sales[sale_id]

    def transfer(self, sale_id: str = "sale-1") -> Optional[TransferRecord]:
        return self.transfers.get(sale_id)
