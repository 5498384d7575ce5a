"""GitHub API client for repository access and ownership transfer.

This module provides an async wrapper around the GitHub REST API for:
- Granting collaborator access (repository invitation)
- Checking collaborator access
- Revoking collaborator access
- Transferring repository ownership

Every call is authenticated with the seller's own token, passed per call,
so one client instance serves all sales. Failures surface as
GitHubAPIError tagged with a GitHubErrorKind; callers branch on the kind,
never on message text.

Includes retry logic with exponential backoff for transient failures.

Source:
- src/handover/github/models.py (RepositoryRef, CollaboratorGrant)
- src/handover/config.py (github_base_url, github_timeout_seconds)
"""

import asyncio
import logging
import random
import time
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from src.handover.github.models import CollaboratorGrant


logger = logging.getLogger(__name__)


class GitHubErrorKind(str, Enum):
    """Closed set of failure classes reported by the GitHub client.

    Attributes:
        NOT_FOUND: Repository or user does not exist (404).
        FORBIDDEN: Token lacks permission for the operation (403).
        CONFLICT: Resource already exists or is in a conflicting state (409).
        VALIDATION_FAILED: GitHub rejected the request payload (400/422).
        UNAUTHORIZED: Token expired or was revoked (401). Not retryable
            without the seller reconnecting their account.
        UNAVAILABLE: Transport failure, 5xx, or rate limit after retries.
    """

    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    VALIDATION_FAILED = "validation_failed"
    UNAUTHORIZED = "unauthorized"
    UNAVAILABLE = "unavailable"


# Messages persisted on transfer records and shown on the timeline
_KIND_MESSAGES: Dict[GitHubErrorKind, str] = {
    GitHubErrorKind.NOT_FOUND: "GitHub repository or user not found",
    GitHubErrorKind.FORBIDDEN: "GitHub denied permission for this repository",
    GitHubErrorKind.CONFLICT: "GitHub reported a conflicting repository state",
    GitHubErrorKind.VALIDATION_FAILED: "GitHub rejected the request",
    GitHubErrorKind.UNAUTHORIZED: "Seller GitHub token is expired or revoked",
    GitHubErrorKind.UNAVAILABLE: "GitHub is temporarily unavailable",
}


def classify_status(status_code: int) -> GitHubErrorKind:
    """Map an HTTP status code to a GitHubErrorKind.

    Example:
        >>> classify_status(401)
        <GitHubErrorKind.UNAUTHORIZED: 'unauthorized'>
    """
    if status_code == 401:
        return GitHubErrorKind.UNAUTHORIZED
    if status_code == 403:
        return GitHubErrorKind.FORBIDDEN
    if status_code == 404:
        return GitHubErrorKind.NOT_FOUND
    if status_code == 409:
        return GitHubErrorKind.CONFLICT
    if status_code in (408, 429) or status_code >= 500:
        return GitHubErrorKind.UNAVAILABLE
    return GitHubErrorKind.VALIDATION_FAILED


class GitHubAPIError(Exception):
    """Raised when a GitHub API request fails.

    The exception message is the classified, user-safe description. The
    raw response body is kept on the instance for logs only.

    Attributes:
        kind: Classified failure kind.
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body from GitHub API.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        kind: GitHubErrorKind,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.kind = kind
        self.message = message or _KIND_MESSAGES[kind]
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        """False only for expired or revoked credentials."""
        return self.kind != GitHubErrorKind.UNAUTHORIZED


class RateLimitError(GitHubAPIError):
    """Raised when GitHub API rate limit is exceeded.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(
            GitHubErrorKind.UNAVAILABLE,
            message="GitHub API rate limit exceeded",
            **kwargs,
        )
        self.reset_at = reset_at
        self.retry_after = retry_after


class GitHubClient:
    """Async GitHub API client for repository handover primitives.

    Attributes:
        base_url: Base URL for GitHub API (default: https://api.github.com).
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.

    Example:
        >>> async with GitHubClient() as client:
        ...     grant = await client.add_collaborator(
        ...         "seller", "widgets", "buyer", token="gho_xxx"
        ...     )
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {408, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: str = "https://api.github.com",
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the GitHub client.

        Args:
            base_url: Base URL for GitHub API. Use this to support
                      GitHub Enterprise Server endpoints.
            max_retries: Maximum number of retry attempts.
            base_delay: Base delay in seconds for exponential backoff.
            max_delay: Maximum delay in seconds between retries.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                    "User-Agent": "RepositoryHandover/1.0",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        capped_delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return random.uniform(0, capped_delay)

    def _rate_limit_error(self, response: httpx.Response) -> RateLimitError:
        reset_at = _parse_int_header(response.headers, "x-ratelimit-reset")
        retry_after = _parse_int_header(response.headers, "retry-after")
        if retry_after is None and reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={"reset_at": reset_at, "retry_after": retry_after},
        )
        return RateLimitError(
            reset_at=reset_at,
            retry_after=retry_after,
            status_code=response.status_code,
            request_url=str(response.url),
        )

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an authenticated HTTP request with retry logic.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE).
            path: API path (e.g., /repos/owner/repo/collaborators/user).
            token: GitHub token used for this request only.
            json_data: Optional JSON body for the request.

        Returns:
            The HTTP response from GitHub (status < 400).

        Raises:
            GitHubAPIError: If the request fails after all retries.
            RateLimitError: If rate limit is exceeded.
        """
        last_exception: Optional[Exception] = None
        headers = {"Authorization": f"Bearer {token}"}

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method=method,
                    url=path,
                    json=json_data,
                    headers=headers,
                )
            except httpx.RequestError as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request error, retrying",
                        extra={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                    continue
                break

            if response.status_code == 429 or (
                response.status_code == 403
                and _parse_int_header(response.headers, "x-ratelimit-remaining") == 0
            ):
                raise self._rate_limit_error(response)

            if (
                response.status_code in self.RETRYABLE_STATUS_CODES
                and attempt < self.max_retries
            ):
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Retryable error from GitHub API",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                kind = classify_status(response.status_code)
                error_body = response.text
                logger.error(
                    "GitHub API error",
                    extra={
                        "status_code": response.status_code,
                        "kind": kind.value,
                        "path": path,
                        "method": method,
                        "response_body": error_body[:500],
                    },
                )
                raise GitHubAPIError(
                    kind,
                    status_code=response.status_code,
                    response_body=error_body,
                    request_url=str(response.url),
                )

            return response

        logger.error(
            "GitHub API request failed after all retries",
            extra={
                "path": path,
                "method": method,
                "max_retries": self.max_retries,
                "last_error": str(last_exception),
            },
        )
        raise GitHubAPIError(
            GitHubErrorKind.UNAVAILABLE,
            request_url=f"{self.base_url}{path}",
        )

    async def add_collaborator(
        self,
        owner: str,
        repo: str,
        username: str,
        token: str,
        permission: str = "push",
    ) -> CollaboratorGrant:
        """Invite a user as a repository collaborator.

        Re-granting an existing collaborator is a success (GitHub answers
        204), which makes the grant safe to repeat.

        Args:
            owner: Repository owner.
            repo: Repository name.
            username: GitHub login of the user to invite.
            token: Seller's GitHub token.
            permission: Permission level to grant.

        Returns:
            CollaboratorGrant with the invitation id, if one was created.

        Raises:
            GitHubAPIError: If the request fails.
        """
        path = f"/repos/{owner}/{repo}/collaborators/{username}"

        logger.info(
            "Granting collaborator access",
            extra={"owner": owner, "repo": repo, "username": username},
        )

        response = await self._request(
            method="PUT",
            path=path,
            token=token,
            json_data={"permission": permission},
        )

        if response.status_code == 204 or not response.content:
            logger.info(
                "User already has collaborator access",
                extra={"owner": owner, "repo": repo, "username": username},
            )
            return CollaboratorGrant(already_collaborator=True)

        invitation_id = response.json().get("id")
        logger.info(
            "Collaborator invitation created",
            extra={
                "owner": owner,
                "repo": repo,
                "username": username,
                "invitation_id": invitation_id,
            },
        )
        return CollaboratorGrant(invitation_id=invitation_id)

    async def check_collaborator_access(
        self,
        owner: str,
        repo: str,
        username: str,
        token: str,
    ) -> bool:
        """Check whether a user is a collaborator on a repository.

        Pending invitations do not count; GitHub answers 404 until the
        invitation is accepted.

        Returns:
            True if the user has access, False otherwise.

        Raises:
            GitHubAPIError: If the request fails for reasons other than 404.
        """
        path = f"/repos/{owner}/{repo}/collaborators/{username}"
        try:
            await self._request(method="GET", path=path, token=token)
            return True
        except GitHubAPIError as e:
            if e.kind == GitHubErrorKind.NOT_FOUND:
                return False
            raise

    async def remove_collaborator(
        self,
        owner: str,
        repo: str,
        username: str,
        token: str,
    ) -> None:
        """Remove a collaborator from a repository.

        Raises:
            GitHubAPIError: If the request fails (except 404 which is ignored).
        """
        path = f"/repos/{owner}/{repo}/collaborators/{username}"

        logger.info(
            "Removing collaborator",
            extra={"owner": owner, "repo": repo, "username": username},
        )

        try:
            await self._request(method="DELETE", path=path, token=token)
        except GitHubAPIError as e:
            # 404 means the user was never added or already removed
            if e.kind == GitHubErrorKind.NOT_FOUND:
                logger.debug(
                    "Collaborator not found (already removed)",
                    extra={"owner": owner, "repo": repo, "username": username},
                )
                return
            raise

    async def transfer_ownership(
        self,
        owner: str,
        repo: str,
        new_owner: str,
        token: str,
    ) -> None:
        """Transfer a repository to a new owner.

        GitHub completes the transfer asynchronously and the new owner must
        accept it when they are a user account. This call is not idempotent.

        Raises:
            GitHubAPIError: If the request fails.
        """
        path = f"/repos/{owner}/{repo}/transfer"

        logger.info(
            "Transferring repository ownership",
            extra={"owner": owner, "repo": repo, "new_owner": new_owner},
        )

        await self._request(
            method="POST",
            path=path,
            token=token,
            json_data={"new_owner": new_owner},
        )

        logger.info(
            "Repository ownership transfer requested",
            extra={"owner": owner, "repo": repo, "new_owner": new_owner},
        )


def _parse_int_header(headers: httpx.Headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if value is not None:
        try:
            return int(value)
        except ValueError:
            pass
    return None
