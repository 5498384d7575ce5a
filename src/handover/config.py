"""Handover service configuration using pydantic-settings.

This module defines the HandoverSettings class that reads configuration
from environment variables with the HANDOVER_ prefix. Required fields
must be set via environment variables for the service to start.

Source:
- migrations/001_repository_transfers.sql (database_url target schema)
- src/handover/crypto.py (token_encryption_key format)
"""

import re
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Stage keys accepted by HANDOVER_TIMELINE_STAGES; mirrors TimelineStageKey
KNOWN_TIMELINE_STAGES = (
    "offer_accepted",
    "payment_received",
    "collaborator_access",
    "project_review",
    "trade_review",
    "ownership_transfer",
)

_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


class HandoverSettings(BaseSettings):
    """Repository handover configuration from environment variables.

    All environment variables are prefixed with HANDOVER_ (e.g.,
    HANDOVER_DATABASE_URL).

    Required fields (must be set via environment variables):
    - database_url: PostgreSQL connection string for sales and transfers
    - token_encryption_key: 64 hex characters (AES-256 key) used to decrypt
      stored seller GitHub tokens
    """

    model_config = SettingsConfigDict(
        env_prefix="HANDOVER_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    database_url: str

    # -------------------------------------------------------------------------
    # Credential Configuration
    # -------------------------------------------------------------------------
    # Hex-encoded 32-byte key for AES-256-GCM seller token decryption
    token_encryption_key: str

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # Per-request timeout; bounds a hung provider call
    github_timeout_seconds: float = 30.0

    # Client-level retries for transport errors and 5xx responses
    github_max_retries: int = 2

    # -------------------------------------------------------------------------
    # Transfer Policy
    # -------------------------------------------------------------------------
    # Ownership attempts stop once retry_count exceeds this value
    max_transfer_retries: int = 3

    # Sales older than this release escrow without a further transfer attempt
    fallback_release_days: int = 14

    # A processing claim older than this is treated as abandoned by a
    # stopped worker and may be taken over
    claim_timeout_seconds: int = 900

    # Ordered stage keys rendered by the timeline
    timeline_stages: List[str] = list(KNOWN_TIMELINE_STAGES)

    # -------------------------------------------------------------------------
    # Sweep Configuration
    # -------------------------------------------------------------------------
    # Run the automatic transfer sweep inside the API process
    sweep_enabled: bool = False

    sweep_interval_seconds: int = 3600

    # Bearer token required by the cron and revoke-access endpoints
    cron_secret: str = ""

    # Pushgateway used by the sweep CronJob; empty disables pushing
    prometheus_gateway_url: str = ""

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    # Base URL used for links in buyer/seller notifications
    app_base_url: str = ""

    host: str = "0.0.0.0"

    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate that database URL is not empty and has valid format."""
        if not v or not v.strip():
            raise ValueError("database_url cannot be empty")
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("token_encryption_key")
    @classmethod
    def validate_token_encryption_key(cls, v: str) -> str:
        """Validate that the key is 64 hex characters (32 bytes)."""
        if not _HEX_KEY_PATTERN.match(v or ""):
            raise ValueError(
                "token_encryption_key must be 64 hex characters (32 bytes)"
            )
        return v

    @field_validator("github_base_url")
    @classmethod
    def validate_github_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("github_base_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("max_transfer_retries", "github_max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("retry counts cannot be negative")
        return v

    @field_validator(
        "fallback_release_days", "sweep_interval_seconds", "claim_timeout_seconds"
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("timeline_stages")
    @classmethod
    def validate_timeline_stages(cls, v: List[str]) -> List[str]:
        """Validate that every configured stage key is known and unique."""
        if not v:
            raise ValueError("timeline_stages cannot be empty")
        unknown = [key for key in v if key not in KNOWN_TIMELINE_STAGES]
        if unknown:
            raise ValueError(f"Unknown timeline stages: {', '.join(unknown)}")
        if len(set(v)) != len(v):
            raise ValueError("timeline_stages cannot contain duplicates")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v


def get_settings() -> HandoverSettings:
    """Create and return HandoverSettings instance.

    Returns:
        HandoverSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return HandoverSettings()
