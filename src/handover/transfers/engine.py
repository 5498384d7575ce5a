"""Repository transfer lifecycle engine.

Drives a sale's repository from seller to buyer:
initiate → collaborator grant → review window → ownership transfer
→ escrow release.

Every operation re-reads the sale and transfer record from the stores.
Mutual exclusion for the irreversible ownership transfer comes only from
SaleStore.claim_for_processing, a single conditional update, so manual
requests and the batch sweep can run concurrently across processes. No
lock is held across a GitHub call.

Notifications are detached tasks; their failures are logged and never
reach the caller.

Source:
- src/handover/transfers/stores.py (SaleStore, TransferStore, NotificationSink)
- src/handover/transfers/models.py (records, VALID_TRANSITIONS, outcomes)
- src/handover/transfers/timeline.py (build_timeline)
- src/handover/github/client.py (GitHubClient, GitHubAPIError)
- src/handover/events/emitter.py (EventEmitter)
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Sequence, Set

from src.handover.crypto import CredentialError, decrypt_token
from src.handover.events.emitter import EventEmitter, NullEventEmitter
from src.handover.events.models import EventType, TransferEvent
from src.handover.github.client import GitHubAPIError, GitHubClient, GitHubErrorKind
from src.handover.github.models import (
    CollaboratorGrant,
    RepositoryRef,
    parse_repository_url,
)
from src.handover.transfers.models import (
    EscrowStatus,
    PaymentStatus,
    SaleRecord,
    SkipReason,
    SweepResult,
    TransferOutcome,
    TransferRecord,
    TransferStatus,
    is_valid_transition,
    utcnow,
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
    TimelineRole,
    TimelineStage,
    TimelineStageKey,
    build_timeline,
)


logger = logging.getLogger(__name__)

# Escrow states an ownership attempt can no longer change
_SETTLED_ESCROW = (EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.DISPUTED)


class TransferError(Exception):
    """Base class for errors surfaced to interactive callers."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TransferNotFoundError(TransferError):
    """The referenced sale or transfer record does not exist."""


class TransferPermissionError(TransferError):
    """The caller is not the buyer or seller the operation requires."""


class TransferValidationError(TransferError):
    """A precondition of the operation is not met."""


class InvalidTransitionError(TransferValidationError):
    """Raised when a transfer status transition is not allowed.

    Attributes:
        from_status: The current status.
        to_status: The attempted target status.
    """

    def __init__(self, from_status: TransferStatus, to_status: TransferStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition from {from_status.value} to {to_status.value}"
        )


class TransferLifecycleEngine:
    """Orchestrates repository handover for marketplace sales.

    Accepts all collaborators via constructor injection.

    Attributes:
        sale_store: Sale record access, including the claim primitive.
        transfer_store: Transfer record persistence.
        github_client: GitHub repository access provider.
        notification_sink: Best-effort user notifications.
        event_emitter: Emits handover events for observability.
        max_retries: Ownership attempts stop once retry_count exceeds this.
        fallback_release_days: Age after which the sweep releases escrow
            for sales whose retries are exhausted.
        claim_timeout_seconds: Age after which a processing claim left by
            a crashed worker may be taken over.

    Example:
        >>> engine = TransferLifecycleEngine(
        ...     sale_store=sales,
        ...     transfer_store=transfers,
        ...     github_client=GitHubClient(),
        ...     notification_sink=LoggingNotificationSink(),
        ...     token_encryption_key=settings.token_encryption_key,
        ... )
        >>> outcome = await engine.transfer_ownership("sale-1")
    """

    def __init__(
        self,
        sale_store: SaleStore,
        transfer_store: TransferStore,
        github_client: GitHubClient,
        notification_sink: NotificationSink,
        token_encryption_key: str,
        event_emitter: Optional[EventEmitter] = None,
        max_retries: int = 3,
        fallback_release_days: int = 14,
        claim_timeout_seconds: int = 900,
        timeline_stages: Sequence[TimelineStageKey] = DEFAULT_STAGES,
        app_base_url: str = "",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sale_store = sale_store
        self.transfer_store = transfer_store
        self.github_client = github_client
        self.notification_sink = notification_sink
        self.event_emitter = event_emitter or NullEventEmitter()
        self.max_retries = max_retries
        self.fallback_release_days = fallback_release_days
        self.claim_timeout_seconds = claim_timeout_seconds
        self.timeline_stages = tuple(TimelineStageKey(key) for key in timeline_stages)
        self.app_base_url = app_base_url.rstrip("/")
        self._token_encryption_key = token_encryption_key
        self._clock = clock
        self._notification_tasks: Set["asyncio.Task[None]"] = set()

    # -------------------------------------------------------------------------
    # Lifecycle operations
    # -------------------------------------------------------------------------

    async def initiate_transfer(self, seller_id: str, sale_id: str) -> TransferRecord:
        """Start the handover for a paid sale.

        Grants collaborator access right away when the buyer's GitHub
        username is already known; otherwise the record waits in PENDING.

        Args:
            seller_id: Caller; must be the sale's seller.
            sale_id: The sale to hand over.

        Returns:
            The created transfer record.

        Raises:
            TransferNotFoundError: If the sale does not exist.
            TransferPermissionError: If the caller is not the seller.
            TransferValidationError: If the sale is unpaid, has no
                repository, already has a transfer, or the seller has no
                stored GitHub token.
            GitHubAPIError: If the collaborator grant fails.
        """
        sale = await self._load_sale(sale_id)
        if sale.seller_id != seller_id:
            raise TransferPermissionError("Only the seller can initiate the transfer")
        self._require_paid_with_repository(sale)

        if await self.transfer_store.find_by_sale_id(sale_id) is not None:
            raise TransferValidationError("Transfer already initiated")
        if not sale.seller_github_token:
            raise TransferValidationError("Seller has not connected a GitHub account")

        repo = self._repository_ref(sale)
        token = self._decrypt_seller_token(sale)
        now = self._clock()

        record = TransferRecord(
            id=str(uuid.uuid4()),
            sale_id=sale.id,
            repository_full_name=repo.full_name,
            seller_github_username=sale.seller_github_username,
            buyer_github_username=sale.buyer_github_username,
            initiated_at=now,
            created_at=now,
            updated_at=now,
        )

        if sale.buyer_github_username:
            grant = await self._grant_collaborator(
                sale, repo, sale.buyer_github_username, token
            )
            record = record.model_copy(
                update={
                    "status": TransferStatus.INVITATION_SENT,
                    "invitation_sent_at": now,
                    "github_invitation_id": grant.invitation_id,
                }
            )

        try:
            created = await self.transfer_store.create(record)
        except DuplicateTransferError as e:
            raise TransferValidationError("Transfer already initiated") from e

        logger.info(
            "Repository transfer initiated",
            extra={"sale_id": sale_id, "status": created.status.value},
        )
        await self._emit_transition(created, None)

        if created.status == TransferStatus.INVITATION_SENT:
            message = (
                f"You have been invited to the GitHub repository for "
                f"{sale.project_title or 'your purchase'}. Accept the invitation on GitHub."
            )
        else:
            message = (
                "The seller started the repository transfer. Connect your GitHub "
                "account so we can invite you to the repository."
            )
        self._notify(
            sale.buyer_id,
            NotificationKind.REPOSITORY_TRANSFER,
            "Repository transfer started",
            message,
            self._transaction_url(sale.id),
        )
        return created

    async def set_buyer_username(
        self,
        buyer_id: str,
        sale_id: str,
        username: str,
    ) -> TransferRecord:
        """Record the buyer's GitHub username and grant collaborator access.

        The username is persisted before any GitHub call so a failed grant
        can be retried without asking the buyer again. Records past
        INVITATION_SENT are left alone on GitHub.

        Args:
            buyer_id: Caller; must be the sale's buyer.
            sale_id: The sale being handed over.
            username: Buyer's GitHub login.

        Returns:
            The updated transfer record.

        Raises:
            TransferNotFoundError: If the sale does not exist.
            TransferPermissionError: If the caller is not the buyer.
            TransferValidationError: If a precondition is not met or the
                username is blank.
            GitHubAPIError: If the collaborator grant fails. The username
                is already saved when this is raised.
        """
        sale = await self._load_sale(sale_id)
        if sale.buyer_id != buyer_id:
            raise TransferPermissionError("Only the buyer can set the GitHub username")
        self._require_paid_with_repository(sale)
        if not sale.seller_github_token:
            raise TransferValidationError("Seller has not connected a GitHub account")

        username = (username or "").strip()
        if not username:
            raise TransferValidationError("GitHub username is required")

        repo = self._repository_ref(sale)
        transfer = await self.transfer_store.find_by_sale_id(sale_id)

        if transfer is None:
            transfer = await self._create_pending_record(sale, repo, username)

        if transfer.buyer_github_username != username:
            transfer = await self.transfer_store.set_buyer_username(transfer.id, username)

        if transfer.status not in (TransferStatus.PENDING, TransferStatus.FAILED):
            logger.info(
                "Collaborator access already granted; skipping grant",
                extra={"sale_id": sale_id, "status": transfer.status.value},
            )
            return transfer

        token = self._decrypt_seller_token(sale)
        grant = await self._grant_collaborator(sale, repo, username, token)

        transfer = await self._transition(
            transfer,
            TransferStatus.INVITATION_SENT,
            invitation_sent_at=self._clock(),
            github_invitation_id=grant.invitation_id,
            error_message=None,
        )

        self._notify(
            sale.buyer_id,
            NotificationKind.REPOSITORY_TRANSFER,
            "GitHub invitation sent",
            f"Check GitHub to accept the invitation to {repo.full_name}.",
            self._transaction_url(sale.id),
        )
        return transfer

    async def confirm_transfer(self, buyer_id: str, sale_id: str) -> TransferRecord:
        """Record the buyer's acknowledgment that they received the repository.

        Advisory only; ownership transfer does not wait for it.

        Raises:
            TransferNotFoundError: If the sale or transfer record does not exist.
            TransferPermissionError: If the caller is not the buyer.
            TransferValidationError: If collaborator access was never granted.
            InvalidTransitionError: If the record was revoked.
        """
        sale = await self._load_sale(sale_id)
        if sale.buyer_id != buyer_id:
            raise TransferPermissionError("Only the buyer can confirm the transfer")

        transfer = await self.transfer_store.find_by_sale_id(sale_id)
        if transfer is None:
            raise TransferNotFoundError("Repository transfer not found")

        # Completing before the grant would close the grant path for good
        if transfer.status != TransferStatus.REVOKED and (
            transfer.status == TransferStatus.PENDING or transfer.invitation_sent_at is None
        ):
            raise TransferValidationError(
                "Collaborator access has not been granted yet; "
                "submit a GitHub username first"
            )

        transfer = await self._transition(
            transfer,
            TransferStatus.COMPLETED,
            completed_at=self._clock(),
        )

        self._notify(
            sale.seller_id,
            NotificationKind.TRANSFER_CONFIRMED,
            "Buyer confirmed the repository transfer",
            f"The buyer confirmed they received {transfer.repository_full_name}.",
            self._transaction_url(sale.id),
        )
        return transfer

    async def transfer_ownership(
        self,
        sale_id: str,
        caller_id: Optional[str] = None,
    ) -> TransferOutcome:
        """Transfer repository ownership to the buyer.

        Skips are returned, not raised. GitHub failures are persisted on
        the transfer record and returned as success=False.

        Args:
            sale_id: The sale to process.
            caller_id: Interactive caller, who must be the seller. The
                batch sweep passes None.

        Returns:
            TransferOutcome describing what happened.

        Raises:
            TransferNotFoundError: If the sale does not exist.
            TransferPermissionError: If caller_id is given and is not the seller.
        """
        sale = await self._load_sale(sale_id)
        if caller_id is not None and caller_id != sale.seller_id:
            raise TransferPermissionError("Only the seller can transfer ownership")

        if sale.payment_status != PaymentStatus.SUCCEEDED:
            return await self._skip(sale, SkipReason.PAYMENT_NOT_COMPLETED)

        transfer = await self.transfer_store.find_by_sale_id(sale_id)
        if transfer is None:
            return await self._skip(sale, SkipReason.NO_TRANSFER_RECORD)
        if transfer.status == TransferStatus.PENDING:
            return await self._skip(sale, SkipReason.PENDING_BUYER_USERNAME, transfer)
        if transfer.status == TransferStatus.REVOKED:
            return await self._skip(sale, SkipReason.TRANSFER_REVOKED, transfer)
        if transfer.ownership_transferred:
            return await self._release_after_transfer(sale, transfer)
        if not transfer.buyer_github_username:
            return await self._skip(sale, SkipReason.BUYER_USERNAME_MISSING, transfer)
        if transfer.retry_count > self.max_retries:
            return await self._skip(sale, SkipReason.MAX_RETRIES_EXCEEDED, transfer)
        if not sale.repository_url:
            return await self._skip(sale, SkipReason.NO_REPOSITORY_URL, transfer)
        if not sale.seller_github_token:
            return await self._skip(sale, SkipReason.SELLER_TOKEN_MISSING, transfer)

        if sale.escrow_status in _SETTLED_ESCROW:
            return await self._skip(sale, SkipReason.ESCROW_SETTLED, transfer)

        if await self._claim(sale_id) == 0:
            return await self._skip(sale, SkipReason.ALREADY_PROCESSING, transfer)

        # Another worker may have finished an attempt between our checks and
        # the claim, so re-read and re-check under the claim
        transfer = await self.transfer_store.find_by_sale_id(sale_id) or transfer
        reason = self._recheck_under_claim(transfer)
        if reason is not None:
            await self.sale_store.update_escrow_status(sale_id, EscrowStatus.HELD)
            return await self._skip(sale, reason, transfer)

        try:
            repo = parse_repository_url(sale.repository_url)
            token = decrypt_token(sale.seller_github_token, self._token_encryption_key)
            await self.github_client.transfer_ownership(
                repo.owner,
                repo.name,
                transfer.buyer_github_username,
                token,
            )
        except Exception as e:
            return await self._record_transfer_failure(sale, transfer, e)

        now = self._clock()
        escrow_released = False
        try:
            transfer = await self._transition(
                transfer,
                TransferStatus.TRANSFER_INITIATED,
                transfer_initiated_at=now,
                error_message=None,
            )
        finally:
            # Escrow is always the last write
            escrow_released = await self._settle_escrow(sale, now, trigger="transfer")

        logger.info(
            "Repository ownership transfer initiated",
            extra={
                "sale_id": sale_id,
                "repository": transfer.repository_full_name,
                "escrow_released": escrow_released,
            },
        )

        self._notify(
            sale.buyer_id,
            NotificationKind.OWNERSHIP_TRANSFERRED,
            "Repository ownership transfer started",
            f"Accept the transfer of {transfer.repository_full_name} on GitHub.",
            self._transaction_url(sale.id),
        )
        self._notify(
            sale.seller_id,
            NotificationKind.OWNERSHIP_TRANSFERRED,
            "Repository ownership transferred",
            f"{transfer.repository_full_name} is being transferred to the buyer.",
            self._transaction_url(sale.id),
        )
        return TransferOutcome(success=True, escrow_released=escrow_released)

    async def get_timeline(self, sale_id: str, user_id: str) -> List[TimelineStage]:
        """Return the handover timeline for the sale's buyer or seller.

        Raises:
            TransferNotFoundError: If the sale does not exist.
            TransferPermissionError: If the user is not a participant.
        """
        sale = await self._load_sale(sale_id)
        role = self._participant_role(sale, user_id)
        transfer = await self.transfer_store.find_by_sale_id(sale_id)
        return build_timeline(
            sale,
            transfer,
            role,
            self._clock(),
            stages=self.timeline_stages,
        )

    async def process_auto_transfers(self) -> SweepResult:
        """Process every sale whose review window has ended.

        Sales with exhausted retries fall back to releasing escrow once
        they are fallback_release_days old. Sales left claimed by a worker
        that stopped more than claim_timeout_seconds ago are picked up again.
        Errors for one sale are logged and the sweep moves on.

        Returns:
            SweepResult counters.
        """
        now = self._clock()
        stale_before = now - timedelta(seconds=self.claim_timeout_seconds)
        sales = await self.sale_store.find_sales_eligible_for_auto_transfer(now, stale_before)
        result = SweepResult(examined=len(sales))

        logger.info("Processing auto transfers", extra={"eligible": len(sales)})

        for sale in sales:
            try:
                transfer = await self.transfer_store.find_by_sale_id(sale.id)
                if transfer is None or transfer.status == TransferStatus.PENDING:
                    logger.debug(
                        "Skipping sale awaiting buyer GitHub username",
                        extra={"sale_id": sale.id},
                    )
                    result.skipped += 1
                    continue

                if transfer.retry_count > self.max_retries:
                    if await self._apply_fallback_release(sale, now):
                        result.processed += 1
                        result.fallback_released += 1
                    else:
                        result.skipped += 1
                    continue

                outcome = await self.transfer_ownership(sale.id)
                if outcome.success:
                    result.processed += 1
                elif outcome.skipped:
                    result.skipped += 1
                else:
                    result.failed += 1
            except Exception:
                logger.exception(
                    "Auto transfer failed for sale",
                    extra={"sale_id": sale.id},
                )
                result.failed += 1

        logger.info("Auto transfer sweep finished", extra=result.model_dump())
        return result

    async def check_invitation_acceptance(
        self,
        user_id: str,
        sale_id: str,
    ) -> TransferRecord:
        """Advance INVITATION_SENT to ACCEPTED once GitHub shows access.

        Raises:
            TransferNotFoundError: If the sale or transfer record does not exist.
            TransferPermissionError: If the user is not a participant.
            GitHubAPIError: If the access check fails.
        """
        sale = await self._load_sale(sale_id)
        self._participant_role(sale, user_id)

        transfer = await self.transfer_store.find_by_sale_id(sale_id)
        if transfer is None:
            raise TransferNotFoundError("Repository transfer not found")

        if (
            transfer.status != TransferStatus.INVITATION_SENT
            or not transfer.buyer_github_username
            or not sale.seller_github_token
            or not sale.repository_url
        ):
            return transfer

        repo = self._repository_ref(sale)
        token = self._decrypt_seller_token(sale)
        has_access = await self.github_client.check_collaborator_access(
            repo.owner, repo.name, transfer.buyer_github_username, token
        )
        if not has_access:
            return transfer

        return await self._transition(
            transfer,
            TransferStatus.ACCEPTED,
            accepted_at=self._clock(),
        )

    async def revoke_buyer_access(self, sale_id: str) -> TransferRecord:
        """Remove the buyer's collaborator access after a refund.

        Raises:
            TransferNotFoundError: If the sale or transfer record does not exist.
            TransferValidationError: If escrow was not refunded or ownership
                was already transferred.
            GitHubAPIError: If removing the collaborator fails.
        """
        sale = await self._load_sale(sale_id)
        if sale.escrow_status != EscrowStatus.REFUNDED:
            raise TransferValidationError("Buyer access can only be revoked after a refund")

        transfer = await self.transfer_store.find_by_sale_id(sale_id)
        if transfer is None:
            raise TransferNotFoundError("Repository transfer not found")
        if transfer.ownership_transferred:
            raise TransferValidationError("Repository ownership has already been transferred")
        if transfer.status == TransferStatus.REVOKED:
            return transfer

        granted = transfer.invitation_sent_at is not None
        if granted and transfer.buyer_github_username and sale.seller_github_token:
            repo = self._repository_ref(sale)
            token = self._decrypt_seller_token(sale)
            await self.github_client.remove_collaborator(
                repo.owner, repo.name, transfer.buyer_github_username, token
            )

        return await self._transition(
            transfer,
            TransferStatus.REVOKED,
            revoked_at=self._clock(),
        )

    async def wait_for_notifications(self) -> None:
        """Wait for in-flight notification tasks (shutdown and tests)."""
        if self._notification_tasks:
            await asyncio.gather(*list(self._notification_tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Ownership helpers
    # -------------------------------------------------------------------------

    async def _release_after_transfer(
        self,
        sale: SaleRecord,
        transfer: TransferRecord,
    ) -> TransferOutcome:
        """Release escrow for a sale whose ownership was already handed over."""
        now = self._clock()
        if sale.escrow_status in _SETTLED_ESCROW:
            return await self._skip(sale, SkipReason.ESCROW_SETTLED, transfer)
        if not sale.review_window_ended(now):
            return await self._skip(sale, SkipReason.AWAITING_REVIEW_WINDOW, transfer)

        if await self._claim(sale.id) == 0:
            return await self._skip(sale, SkipReason.ALREADY_PROCESSING, transfer)

        try:
            released = await self.sale_store.release_escrow(sale.id, now)
        except Exception:
            await self.sale_store.update_escrow_status(sale.id, EscrowStatus.HELD)
            raise

        if released:
            await self._emit_escrow_released(sale, transfer.repository_full_name, "review_window")
        return TransferOutcome(success=released, escrow_released=released)

    async def _claim(self, sale_id: str) -> int:
        """Claim the sale, taking over a claim older than claim_timeout_seconds."""
        now = self._clock()
        stale_before = now - timedelta(seconds=self.claim_timeout_seconds)
        return await self.sale_store.claim_for_processing(sale_id, now, stale_before)

    def _recheck_under_claim(self, transfer: TransferRecord) -> Optional[SkipReason]:
        if transfer.ownership_transferred:
            return SkipReason.ALREADY_PROCESSING
        if transfer.status == TransferStatus.PENDING:
            return SkipReason.PENDING_BUYER_USERNAME
        if transfer.status == TransferStatus.REVOKED:
            return SkipReason.TRANSFER_REVOKED
        if not transfer.buyer_github_username:
            return SkipReason.BUYER_USERNAME_MISSING
        if transfer.retry_count > self.max_retries:
            return SkipReason.MAX_RETRIES_EXCEEDED
        return None

    async def _settle_escrow(self, sale: SaleRecord, now: datetime, trigger: str) -> bool:
        """Release escrow if the review window ended, otherwise reset to HELD."""
        if sale.review_window_ended(now):
            released = await self.sale_store.release_escrow(sale.id, now)
            if released:
                await self._emit_escrow_released(sale, None, trigger)
            return released

        await self.sale_store.update_escrow_status(sale.id, EscrowStatus.HELD)
        return False

    async def _record_transfer_failure(
        self,
        sale: SaleRecord,
        transfer: TransferRecord,
        exc: Exception,
    ) -> TransferOutcome:
        """Persist a failed ownership attempt and release the claim."""
        message = _failure_message(exc)
        admin_action_required = (
            isinstance(exc, GitHubAPIError) and exc.kind == GitHubErrorKind.UNAUTHORIZED
        )
        error_kind = exc.kind.value if isinstance(exc, GitHubAPIError) else type(exc).__name__

        try:
            if admin_action_required:
                logger.error(
                    "[ADMIN_ACTION_REQUIRED] Seller GitHub token expired or revoked",
                    extra={
                        "sale_id": sale.id,
                        "seller_id": sale.seller_id,
                        "repository": transfer.repository_full_name,
                        "retry_count": transfer.retry_count,
                    },
                )
                self._notify(
                    sale.seller_id,
                    NotificationKind.GITHUB_RECONNECT_REQUIRED,
                    "Reconnect your GitHub account",
                    "We could not transfer your repository because your GitHub "
                    "authorization expired. Reconnect GitHub to finish the sale.",
                    self._transaction_url(sale.id),
                )
            else:
                retry_count = await self.transfer_store.increment_retry_count(transfer.id)
                logger.warning(
                    "Ownership transfer failed",
                    extra={
                        "sale_id": sale.id,
                        "error_kind": error_kind,
                        "retry_count": retry_count,
                    },
                )

            await self._transition(
                transfer,
                TransferStatus.FAILED,
                error_message=message,
                failed_at=self._clock(),
            )
        finally:
            await self.sale_store.update_escrow_status(sale.id, EscrowStatus.HELD)

        await self._safe_emit(
            TransferEvent(
                event_type=EventType.ERROR,
                sale_id=sale.id,
                repository=transfer.repository_full_name,
                details={
                    "operation": "transfer_ownership",
                    "error_kind": error_kind,
                    "error_message": message,
                    "admin_action_required": admin_action_required,
                },
            )
        )
        return TransferOutcome(success=False, error=message)

    async def _apply_fallback_release(self, sale: SaleRecord, now: datetime) -> bool:
        """Release escrow for an old sale whose transfer retries are exhausted."""
        if sale.created_at > now - timedelta(days=self.fallback_release_days):
            logger.debug(
                "Retries exhausted; fallback release not yet due",
                extra={"sale_id": sale.id},
            )
            return False

        if await self._claim(sale.id) == 0:
            return False

        try:
            released = await self.sale_store.release_escrow(sale.id, now)
        except Exception:
            await self.sale_store.update_escrow_status(sale.id, EscrowStatus.HELD)
            raise

        if released:
            logger.warning(
                "Escrow released by fallback after exhausted transfer retries",
                extra={"sale_id": sale.id, "fallback_days": self.fallback_release_days},
            )
            await self._emit_escrow_released(sale, None, "fallback")
        return released

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    async def _load_sale(self, sale_id: str) -> SaleRecord:
        sale = await self.sale_store.find_by_id(sale_id)
        if sale is None:
            raise TransferNotFoundError("Sale not found")
        return sale

    def _participant_role(self, sale: SaleRecord, user_id: str) -> TimelineRole:
        if user_id == sale.buyer_id:
            return TimelineRole.BUYER
        if user_id == sale.seller_id:
            return TimelineRole.SELLER
        raise TransferPermissionError("You do not have access to this transaction")

    @staticmethod
    def _require_paid_with_repository(sale: SaleRecord) -> None:
        if sale.payment_status != PaymentStatus.SUCCEEDED:
            raise TransferValidationError(
                "Payment must be completed before transferring the repository"
            )
        if not sale.repository_url:
            raise TransferValidationError("Project has no GitHub repository linked")

    @staticmethod
    def _repository_ref(sale: SaleRecord) -> RepositoryRef:
        try:
            return parse_repository_url(sale.repository_url or "")
        except ValueError as e:
            raise TransferValidationError(str(e)) from e

    def _decrypt_seller_token(self, sale: SaleRecord) -> str:
        try:
            return decrypt_token(sale.seller_github_token or "", self._token_encryption_key)
        except CredentialError as e:
            raise TransferValidationError(
                "Seller GitHub token could not be read; the seller must reconnect GitHub"
            ) from e

    async def _create_pending_record(
        self,
        sale: SaleRecord,
        repo: RepositoryRef,
        username: str,
    ) -> TransferRecord:
        now = self._clock()
        record = TransferRecord(
            id=str(uuid.uuid4()),
            sale_id=sale.id,
            repository_full_name=repo.full_name,
            status=TransferStatus.PENDING,
            seller_github_username=sale.seller_github_username,
            buyer_github_username=username,
            initiated_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            created = await self.transfer_store.create(record)
        except DuplicateTransferError:
            # Lost a creation race; use the winner's record
            existing = await self.transfer_store.find_by_sale_id(sale.id)
            if existing is None:
                raise
            return existing

        logger.info(
            "Created pending transfer record from buyer username",
            extra={"sale_id": sale.id},
        )
        await self._emit_transition(created, None)
        return created

    async def _grant_collaborator(
        self,
        sale: SaleRecord,
        repo: RepositoryRef,
        username: str,
        token: str,
    ) -> CollaboratorGrant:
        try:
            return await self.github_client.add_collaborator(
                repo.owner, repo.name, username, token
            )
        except GitHubAPIError as e:
            await self._safe_emit(
                TransferEvent(
                    event_type=EventType.ERROR,
                    sale_id=sale.id,
                    repository=repo.full_name,
                    details={
                        "operation": "grant_collaborator",
                        "error_kind": e.kind.value,
                        "error_message": e.message,
                        "admin_action_required": e.kind == GitHubErrorKind.UNAUTHORIZED,
                    },
                )
            )
            raise

    async def _transition(
        self,
        transfer: TransferRecord,
        to_status: TransferStatus,
        **fields: Any,
    ) -> TransferRecord:
        """Validate and persist a status change, then emit an event."""
        if not is_valid_transition(transfer.status, to_status):
            logger.warning(
                "Invalid transfer transition attempted",
                extra={
                    "sale_id": transfer.sale_id,
                    "from_status": transfer.status.value,
                    "to_status": to_status.value,
                },
            )
            raise InvalidTransitionError(transfer.status, to_status)

        updated = await self.transfer_store.update_status(transfer.id, to_status, **fields)
        await self._emit_transition(updated, transfer.status)
        return updated

    async def _skip(
        self,
        sale: SaleRecord,
        reason: SkipReason,
        transfer: Optional[TransferRecord] = None,
    ) -> TransferOutcome:
        logger.info(
            "Ownership transfer skipped",
            extra={"sale_id": sale.id, "reason": reason.value},
        )
        await self._safe_emit(
            TransferEvent(
                event_type=EventType.SKIPPED,
                sale_id=sale.id,
                repository=transfer.repository_full_name if transfer else None,
                details={"reason": reason.value},
            )
        )
        return TransferOutcome.skip(reason)

    def _transaction_url(self, sale_id: str) -> str:
        return f"{self.app_base_url}/transactions/{sale_id}"

    # -------------------------------------------------------------------------
    # Notifications and events
    # -------------------------------------------------------------------------

    def _notify(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        message: str,
        action_url: Optional[str] = None,
    ) -> None:
        """Schedule a notification without waiting for it."""
        task = asyncio.create_task(
            self._deliver_notification(user_id, kind, title, message, action_url)
        )
        self._notification_tasks.add(task)
        task.add_done_callback(self._on_notification_done)

    async def _deliver_notification(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        message: str,
        action_url: Optional[str],
    ) -> None:
        await self.notification_sink.notify(user_id, kind, title, message, action_url)

    def _on_notification_done(self, task: "asyncio.Task[None]") -> None:
        self._notification_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Notification delivery failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )

    async def _emit_transition(
        self,
        transfer: TransferRecord,
        from_status: Optional[TransferStatus],
    ) -> None:
        await self._safe_emit(
            TransferEvent(
                event_type=EventType.STATE_TRANSITION,
                sale_id=transfer.sale_id,
                repository=transfer.repository_full_name,
                details={
                    "from_status": from_status.value if from_status else None,
                    "to_status": transfer.status.value,
                },
            )
        )

    async def _emit_escrow_released(
        self,
        sale: SaleRecord,
        repository: Optional[str],
        trigger: str,
    ) -> None:
        await self._safe_emit(
            TransferEvent(
                event_type=EventType.ESCROW_RELEASED,
                sale_id=sale.id,
                repository=repository,
                details={"trigger": trigger, "amount_cents": sale.amount_cents},
            )
        )

    async def _safe_emit(self, event: TransferEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the handover."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit handover event",
                extra={"event_type": event.event_type.value, "sale_id": event.sale_id},
            )


def _failure_message(exc: Exception) -> str:
    """Classified message stored on the record; never the raw provider payload."""
    if isinstance(exc, GitHubAPIError):
        return exc.message
    if isinstance(exc, CredentialError):
        return "Seller GitHub token could not be decrypted"
    if isinstance(exc, ValueError):
        return "Invalid GitHub repository URL"
    return "Ownership transfer failed unexpectedly"
