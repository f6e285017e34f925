"""Typed views of the GitHub REST resources the pipeline consumes.

Only the fields the pipeline reads are modelled; everything else in the
response payloads is ignored.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _GitHubModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class GitHubRepository(_GitHubModel):
    """Repository as returned by /orgs/{org}/repos and /repositories/{id}."""

    id: int
    name: str
    full_name: str
    archived: bool = False
    private: bool = False
    default_branch: str | None = None
    html_url: str | None = None


class GitHubIssue(_GitHubModel):
    """Issue (or pull request viewed through the issues API)."""

    number: int
    title: str
    html_url: str = ""
    state: str = "open"


class GitHubPullRequest(_GitHubModel):
    """Pull request reduced to number, state, and head commit."""

    number: int
    state: str = "open"
    head_sha: str = ""
    html_url: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "GitHubPullRequest":
        head = data.get("head") or {}
        return cls(
            number=data["number"],
            state=data.get("state", "open"),
            head_sha=head.get("sha") or "",
            html_url=data.get("html_url", ""),
        )


class GitHubComment(_GitHubModel):
    """Issue comment on a pull request conversation."""

    id: int
    body: str = ""
    user_login: str | None = None
    user_type: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "GitHubComment":
        user = data.get("user") or {}
        return cls(
            id=data["id"],
            body=data.get("body") or "",
            user_login=user.get("login"),
            user_type=user.get("type"),
        )


class GitHubCheckRun(_GitHubModel):
    """Check run attached to a commit."""

    id: int
    name: str
    head_sha: str = ""
    status: str | None = None
    conclusion: str | None = None


class InstallationToken(_GitHubModel):
    """Installation access token returned by the App token exchange."""

    token: str
    expires_at: datetime = Field(description="Absolute expiry reported by GitHub (UTC)")
