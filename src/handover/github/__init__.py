"""GitHub API client for repository handover.

This module provides a wrapper around the GitHub API for:
- Granting, checking and revoking collaborator access
- Transferring repository ownership

Errors carry a closed GitHubErrorKind classification.
"""

from src.handover.github.client import (
    GitHubAPIError,
    GitHubClient,
    GitHubErrorKind,
    RateLimitError,
    classify_status,
)
from src.handover.github.models import (
    CollaboratorGrant,
    RepositoryRef,
    parse_repository_url,
)

__all__ = [
    "CollaboratorGrant",
    "GitHubAPIError",
    "GitHubClient",
    "GitHubErrorKind",
    "RateLimitError",
    "RepositoryRef",
    "classify_status",
    "parse_repository_url",
]
