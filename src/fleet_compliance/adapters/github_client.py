"""GitHub REST API client.

Single gateway between the compliance pipeline and GitHub. It provides:
- GitHub App authentication: a short-lived RS256 JWT is exchanged for an
  installation token, cached in an InstallationTokenCache owned by the caller
- End-user authentication for team-membership and organization lookups,
  which bypasses the installation token entirely
- Link-header pagination for list endpoints
- Not-found translation to empty/negative results on read lookups
- Rate-limit visibility: 429 and secondary-limit 403 responses are logged with
  the remaining quota and raised as GitHubRateLimitError

No call is retried here. Mutations are plain remote calls; idempotency is
the caller's concern and backoff belongs to the background job queue.

GitHub REST reference: https://docs.github.com/rest
"""

import time
from dataclasses import dataclass
from typing import Any

import httpx
import jwt

from fleet_compliance.adapters.github_models import (
    GitHubCheckRun,
    GitHubComment,
    GitHubIssue,
    GitHubPullRequest,
    GitHubRepository,
    InstallationToken,
)
from fleet_compliance.adapters.token_cache import InstallationTokenCache
from fleet_compliance.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_API_URL = "https://api.github.com"
_DEFAULT_USER_AGENT = "fleet-compliance-engine"
_API_VERSION = "2022-11-28"
_PAGE_SIZE = 100

# App JWTs may live at most 10 minutes; backdate iat to absorb clock drift
_JWT_BACKDATE_SECONDS = 60
_JWT_LIFETIME_SECONDS = 9 * 60


@dataclass(frozen=True)
class RateLimitSnapshot:
    """Rate-limit headers of one response.

    Attributes:
        limit: X-RateLimit-Limit.
        remaining: X-RateLimit-Remaining.
        reset_epoch: X-RateLimit-Reset (unix seconds).
        retry_after_seconds: Retry-After, present on secondary limits.
    """

    limit: int | None = None
    remaining: int | None = None
    reset_epoch: int | None = None
    retry_after_seconds: int | None = None

    @classmethod
    def from_headers(cls, headers: httpx.Headers) -> "RateLimitSnapshot":
        return cls(
            limit=_int_header(headers, "X-RateLimit-Limit"),
            remaining=_int_header(headers, "X-RateLimit-Remaining"),
            reset_epoch=_int_header(headers, "X-RateLimit-Reset"),
            retry_after_seconds=_int_header(headers, "Retry-After"),
        )


def _int_header(headers: httpx.Headers, name: str) -> int | None:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class GitHubApiError(Exception):
    """Base error for failed GitHub API calls.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code (None for transport failures).
        rate_limit: Rate-limit headers of the failing response, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        rate_limit: RateLimitSnapshot | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.rate_limit = rate_limit


class GitHubNotFoundError(GitHubApiError):
    """GitHub answered 404."""


class GitHubForbiddenError(GitHubApiError):
    """GitHub answered 403 for a reason other than rate limiting."""


class GitHubRateLimitError(GitHubApiError):
    """Primary (429) or secondary (403 + Retry-After) rate limit hit."""


class GitHubAuthenticationError(GitHubApiError):
    """GitHub answered 401: the credential is invalid or expired."""


class GitHubClient:
    """Async client for the GitHub REST API scoped to one organization.

    Args:
        app_id: GitHub App id (JWT issuer).
        private_key: PEM-encoded App private key.
        installation_id: Installation id on the organization.
        organization: Organization login.
        token_cache: Shared installation token cache.
        base_url: REST API base URL.
        timeout_seconds: Per-request timeout.
        rate_limit_warning_threshold: Warn once remaining quota drops below this.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        app_id: int,
        private_key: str,
        installation_id: int,
        organization: str,
        token_cache: InstallationTokenCache,
        base_url: str = _DEFAULT_API_URL,
        timeout_seconds: float = 10.0,
        rate_limit_warning_threshold: int = 100,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._app_id = app_id
        self._private_key = private_key
        self._installation_id = installation_id
        self._organization = organization
        self._token_cache = token_cache
        self._rate_limit_warning_threshold = rate_limit_warning_threshold
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
            headers={
                "Accept": "application/vnd.github+json",
                "User-Agent": _DEFAULT_USER_AGENT,
                "X-GitHub-Api-Version": _API_VERSION,
            },
        )

    @property
    def organization(self) -> str:
        return self._organization

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _build_app_jwt(self) -> str:
        """Sign a fresh App assertion. Regenerated for every token exchange."""
        now = int(time.time())
        payload = {
            "iat": now - _JWT_BACKDATE_SECONDS,
            "exp": now + _JWT_LIFETIME_SECONDS,
            "iss": str(self._app_id),
        }
        return jwt.encode(payload, self._private_key, algorithm="RS256")

    async def _exchange_installation_token(self) -> InstallationToken:
        """Exchange an App JWT for an installation access token."""
        response = await self._send(
            "POST",
            f"/app/installations/{self._installation_id}/access_tokens",
            credential=self._build_app_jwt(),
            scheme="Bearer",
        )
        token = InstallationToken.model_validate(response.json())
        logger.info(
            "Generated installation token",
            installation_id=self._installation_id,
            expires_at=token.expires_at.isoformat(),
        )
        return token

    async def authenticated_call(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Execute one API call under the installation token.

        Args:
            method: HTTP method.
            path: Path relative to the API base URL, or an absolute URL.
            params: Query parameters.
            json: JSON request body.

        Returns:
            The successful response.

        Raises:
            GitHubApiError: Or one of its subclasses for any other failure.
        """
        token = await self._token_cache.get_or_create(self._exchange_installation_token)
        try:
            return await self._send(method, path, credential=token, params=params, json=json)
        except GitHubAuthenticationError:
            self._token_cache.invalidate()
            raise

    async def _lookup(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response | None:
        """GET a resource whose absence is an answer, not an error."""
        try:
            return await self.authenticated_call("GET", path, params=params)
        except GitHubNotFoundError:
            return None

    async def _user_call(
        self,
        user_token: str,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Execute one API call under an end-user OAuth token."""
        return await self._send(method, path, credential=user_token, params=params)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        credential: str,
        scheme: str = "token",
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._http.request(
                method,
                path,
                params=params,
                json=json,
                headers={"Authorization": f"{scheme} {credential}"},
            )
        except httpx.TimeoutException as exc:
            logger.warning("GitHub request timed out", method=method, path=path)
            raise GitHubApiError(message=f"GitHub request timed out: {method} {path}") from exc
        except httpx.RequestError as exc:
            logger.error("GitHub request failed", method=method, path=path, error=str(exc))
            raise GitHubApiError(message=f"GitHub request error: {exc}") from exc

        snapshot = RateLimitSnapshot.from_headers(response.headers)
        if response.is_success:
            if snapshot.remaining is not None and snapshot.remaining < self._rate_limit_warning_threshold:
                logger.warning(
                    "GitHub rate limit running low",
                    remaining=snapshot.remaining,
                    limit=snapshot.limit,
                    reset_epoch=snapshot.reset_epoch,
                )
            return response

        raise self._error_for(response, snapshot, method, path)

    def _error_for(
        self,
        response: httpx.Response,
        snapshot: RateLimitSnapshot,
        method: str,
        path: str,
    ) -> GitHubApiError:
        message = _error_message(response)
        status = response.status_code

        if status == 404:
            return GitHubNotFoundError(message=message, status_code=status, rate_limit=snapshot)

        is_secondary_limit = status == 403 and (
            snapshot.retry_after_seconds is not None
            or snapshot.remaining == 0
            or "rate limit" in message.lower()
        )
        if status == 429 or is_secondary_limit:
            logger.warning(
                "GitHub rate limit exceeded",
                method=method,
                path=path,
                status_code=status,
                remaining=snapshot.remaining,
                limit=snapshot.limit,
                reset_epoch=snapshot.reset_epoch,
                retry_after_seconds=snapshot.retry_after_seconds,
            )
            return GitHubRateLimitError(message=message, status_code=status, rate_limit=snapshot)

        if status == 403:
            return GitHubForbiddenError(message=message, status_code=status, rate_limit=snapshot)
        if status == 401:
            return GitHubAuthenticationError(message=message, status_code=status, rate_limit=snapshot)

        logger.error(
            "GitHub returned unexpected status",
            method=method,
            path=path,
            status_code=status,
            body=response.text[:500],
        )
        return GitHubApiError(message=message, status_code=status, rate_limit=snapshot)

    async def _paginate(self, path: str, params: dict[str, Any] | None = None) -> list[Any]:
        """Collect every page of a list endpoint by following Link rel=next."""
        items: list[Any] = []
        next_path: str | None = path
        next_params: dict[str, Any] | None = {"per_page": _PAGE_SIZE, **(params or {})}
        while next_path is not None:
            response = await self.authenticated_call("GET", next_path, params=next_params)
            items.extend(response.json())
            next_path = response.links.get("next", {}).get("url")
            # The next URL already carries the query string
            next_params = None
        return items

    # ------------------------------------------------------------------
    # Repositories and contents
    # ------------------------------------------------------------------

    async def list_organization_repositories(self) -> list[GitHubRepository]:
        """List every repository of the organization."""
        data = await self._paginate(f"/orgs/{self._organization}/repos", params={"type": "all"})
        return [GitHubRepository.model_validate(item) for item in data]

    async def get_repository(self, repository_id: int) -> GitHubRepository:
        """Fetch current repository settings by id.

        Raises:
            GitHubNotFoundError: If the repository no longer exists.
        """
        response = await self.authenticated_call("GET", f"/repositories/{repository_id}")
        return GitHubRepository.model_validate(response.json())

    async def archive_repository(self, repository_id: int) -> None:
        """Archive a repository."""
        await self.authenticated_call("PATCH", f"/repositories/{repository_id}", json={"archived": True})
        logger.info("Repository archived", repository_id=repository_id)

    async def file_exists(self, repository_id: int, file_path: str) -> bool:
        """Return True if `file_path` exists on the default branch."""
        response = await self._lookup(
            f"/repositories/{repository_id}/contents/{file_path}",
        )
        return response is not None

    async def get_file_content(self, repository_name: str, file_path: str) -> str | None:
        """Return the base64-encoded content of a file, or None if it does not exist.

        An empty file yields an empty string, which is distinct from None.

        Args:
            repository_name: Repository name inside the organization.
            file_path: Path of the file in the repository.
        """
        response = await self._lookup(
            f"/repos/{self._organization}/{repository_name}/contents/{file_path}",
        )
        if response is None:
            return None
        data = response.json()
        if not isinstance(data, dict):
            # A directory listing, not a file
            return None
        return data.get("content") or ""

    async def get_workflow_permissions(self, repository_id: int) -> str | None:
        """Return the default GITHUB_TOKEN permission (`read` or `write`).

        None means the setting is unavailable, typically because Actions is
        disabled for the repository.
        """
        response = await self._lookup(
            f"/repositories/{repository_id}/actions/permissions/workflow",
        )
        if response is None:
            logger.warning(
                "Workflow permissions not found, Actions may be disabled",
                repository_id=repository_id,
            )
            return None
        return response.json().get("default_workflow_permissions")

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    async def get_open_issues(self, repository_id: int, label: str) -> list[GitHubIssue]:
        """List open issues carrying `label`. A missing repository yields []."""
        try:
            data = await self._paginate(
                f"/repositories/{repository_id}/issues",
                params={"state": "open", "labels": label},
            )
        except GitHubNotFoundError:
            logger.warning("Could not retrieve issues for repository", repository_id=repository_id)
            return []
        return [GitHubIssue.model_validate(item) for item in data if "pull_request" not in item]

    async def create_issue(
        self,
        repository_id: int,
        title: str,
        body: str,
        labels: list[str],
    ) -> GitHubIssue:
        """Open a new issue."""
        response = await self.authenticated_call(
            "POST",
            f"/repositories/{repository_id}/issues",
            json={"title": title, "body": body, "labels": labels},
        )
        return GitHubIssue.model_validate(response.json())

    # ------------------------------------------------------------------
    # Pull requests and checks
    # ------------------------------------------------------------------

    async def get_open_pull_requests(self, repository_id: int) -> list[GitHubPullRequest]:
        """List open pull requests."""
        data = await self._paginate(f"/repositories/{repository_id}/pulls", params={"state": "open"})
        return [GitHubPullRequest.from_api(item) for item in data]

    async def get_pull_request_comments(self, repository_id: int, pull_request_number: int) -> list[GitHubComment]:
        """List conversation comments of a pull request."""
        data = await self._paginate(f"/repositories/{repository_id}/issues/{pull_request_number}/comments")
        return [GitHubComment.from_api(item) for item in data]

    async def create_pull_request_comment(
        self,
        repository_id: int,
        pull_request_number: int,
        body: str,
    ) -> GitHubComment:
        """Post a conversation comment on a pull request."""
        response = await self.authenticated_call(
            "POST",
            f"/repositories/{repository_id}/issues/{pull_request_number}/comments",
            json={"body": body},
        )
        return GitHubComment.from_api(response.json())

    async def get_check_runs_for_ref(self, repository_id: int, ref: str) -> list[GitHubCheckRun]:
        """List check runs on a commit. An unknown ref yields []."""
        response = await self._lookup(
            f"/repositories/{repository_id}/commits/{ref}/check-runs",
            params={"per_page": _PAGE_SIZE},
        )
        if response is None:
            return []
        return [GitHubCheckRun.model_validate(item) for item in response.json().get("check_runs", [])]

    async def create_status_check(
        self,
        repository_id: int,
        head_sha: str,
        name: str,
        status: str,
        conclusion: str,
        details_url: str | None = None,
    ) -> GitHubCheckRun:
        """Create a check run on `head_sha`."""
        body: dict[str, Any] = {
            "name": name,
            "head_sha": head_sha,
            "status": status,
            "conclusion": conclusion,
            "output": _check_output(conclusion),
        }
        if details_url:
            body["details_url"] = details_url
        response = await self.authenticated_call("POST", f"/repositories/{repository_id}/check-runs", json=body)
        return GitHubCheckRun.model_validate(response.json())

    async def update_status_check(
        self,
        repository_id: int,
        check_run_id: int,
        status: str,
        conclusion: str,
        details_url: str | None = None,
    ) -> GitHubCheckRun:
        """Update an existing check run in place."""
        body: dict[str, Any] = {
            "status": status,
            "conclusion": conclusion,
            "output": _check_output(conclusion),
        }
        if details_url:
            body["details_url"] = details_url
        response = await self.authenticated_call(
            "PATCH",
            f"/repositories/{repository_id}/check-runs/{check_run_id}",
            json=body,
        )
        return GitHubCheckRun.model_validate(response.json())

    # ------------------------------------------------------------------
    # End-user scoped lookups
    # ------------------------------------------------------------------

    async def is_user_member_of_team(self, user_token: str, organization: str, team_slug: str) -> bool:
        """Return True if the token's user is an active member of organization/team_slug.

        Uses the end user's own token, never the installation token.
        """
        try:
            user = (await self._user_call(user_token, "GET", "/user")).json()
            membership = (
                await self._user_call(
                    user_token,
                    "GET",
                    f"/orgs/{organization}/teams/{team_slug}/memberships/{user['login']}",
                )
            ).json()
        except GitHubNotFoundError:
            logger.warning(
                "Could not verify team membership, the team may not exist or be hidden from the user",
                organization=organization,
                team_slug=team_slug,
            )
            return False
        return str(membership.get("state", "")).lower() == "active"

    async def get_user_organizations(self, user_token: str) -> list[str]:
        """Return the logins of the organizations the token's user belongs to."""
        response = await self._user_call(user_token, "GET", "/user/orgs", params={"per_page": _PAGE_SIZE})
        return [org["login"] for org in response.json()]


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP {response.status_code}"


def _check_output(conclusion: str) -> dict[str, str]:
    if conclusion == "success":
        return {
            "title": "Repository is compliant",
            "summary": "No policy violations were found for this repository.",
        }
    return {
        "title": "Policy violations detected",
        "summary": "This repository violates one or more compliance policies. Resolve them to unblock merging.",
    }
