"""GitHub repository access models."""

import re
from typing import Optional

from pydantic import BaseModel, Field


_REPOSITORY_URL_PATTERN = re.compile(
    r"^(?:https?://)?(?:www\.)?github\.com/"
    r"(?P<owner>[A-Za-z0-9_.-]+)/(?P<name>[A-Za-z0-9_.-]+?)"
    r"(?:\.git)?/?$"
)


class RepositoryRef(BaseModel):
    """Owner and name of a GitHub repository.

    Attributes:
        owner: User or organization login that owns the repository.
        name: Repository name.
    """

    owner: str = Field(..., min_length=1, description="Repository owner login")
    name: str = Field(..., min_length=1, description="Repository name")

    @property
    def full_name(self) -> str:
        """Repository path in format "{owner}/{name}"."""
        return f"{self.owner}/{self.name}"


class CollaboratorGrant(BaseModel):
    """Result of granting collaborator access.

    GitHub answers 201 with an invitation when the user is newly invited
    and 204 with no body when the user already has access.

    Attributes:
        invitation_id: Invitation identifier when an invitation was created.
        already_collaborator: True when the user already had access.
    """

    invitation_id: Optional[int] = Field(
        default=None,
        description="GitHub invitation id for a newly invited collaborator",
    )

    already_collaborator: bool = Field(
        default=False,
        description="True when the user was already a collaborator",
    )


def parse_repository_url(url: str) -> RepositoryRef:
    """Parse a GitHub repository URL into owner and name.

    Args:
        url: URL such as https://github.com/owner/repo or
             https://github.com/owner/repo.git

    Returns:
        RepositoryRef for the URL.

    Raises:
        ValueError: If the URL does not point at a GitHub repository.

    Example:
        >>> parse_repository_url("https://github.com/octo/widgets.git").full_name
        'octo/widgets'
    """
    match = _REPOSITORY_URL_PATTERN.match((url or "").strip())
    if match is None:
        raise ValueError(f"Invalid GitHub repository URL: {url}")
    return RepositoryRef(owner=match.group("owner"), name=match.group("name"))
