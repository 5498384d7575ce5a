"""Handover event models for observability.

This module defines the data models for handover events, including:
- EventType: Enum of all event types emitted by the lifecycle engine
- TransferEvent: Structured event with all required metadata

The models use Pydantic for validation, consistent with transfers/models.py.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the lifecycle engine.

    Event Categories:
        STATE_TRANSITION: A transfer record changed status (or was created).
            Used for tracking handover progression.

        ERROR: A grant or ownership attempt failed.
            Expired seller credentials carry admin_action_required=True.

        ESCROW_RELEASED: Funds were released to the seller, either after a
            successful transfer or by the long-horizon fallback.

        SKIPPED: An ownership attempt was not performed this time.
    """

    STATE_TRANSITION = "state_transition"
    ERROR = "error"
    ESCROW_RELEASED = "escrow_released"
    SKIPPED = "skipped"


class TransferEvent(BaseModel):
    """Structured event emitted by the lifecycle engine.

    Attributes:
        event_type: The category of event.
        sale_id: The sale the event concerns.
        repository: Repository path in format "{owner}/{name}", when known.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Example:
        >>> event = TransferEvent(
        ...     event_type=EventType.STATE_TRANSITION,
        ...     sale_id="sale-1",
        ...     repository="octo/widgets",
        ...     details={"from_status": "pending", "to_status": "invitation_sent"},
        ... )

    Details Field Conventions:
        For STATE_TRANSITION events:
            - from_status: Previous status, None for a new record
            - to_status: New status

        For ERROR events:
            - operation: "grant_collaborator" or "transfer_ownership"
            - error_kind: GitHubErrorKind value or exception class name
            - error_message: Classified error description
            - admin_action_required: True for expired seller credentials

        For ESCROW_RELEASED events:
            - trigger: "transfer", "review_window" or "fallback"

        For SKIPPED events:
            - reason: SkipReason value
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    sale_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the sale the event concerns",
    )

    repository: Optional[str] = Field(
        default=None,
        description='Repository path in format "{owner}/{name}"',
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert event to a flat dictionary suitable for structured logging.

        Example:
            >>> event = TransferEvent(
            ...     event_type=EventType.SKIPPED,
            ...     sale_id="sale-1",
            ...     details={"reason": "Max retries exceeded"},
            ... )
            >>> event.to_log_dict()["event_type"]
            'skipped'
        """
        return {
            "event_type": self.event_type.value,
            "sale_id": self.sale_id,
            "repository": self.repository,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
