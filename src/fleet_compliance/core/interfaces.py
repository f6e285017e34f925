"""Abstract interfaces (Protocol classes) for the compliance pipeline.

Services depend on these protocols, never on concrete adapters, so they can
be exercised with in-memory fakes and mocks.

Protocols defined:
- IConfigurationSource
- IConfigurationProvider
- IGitHubClient
- ITrackedRepositoryRepository
- IPolicyRepository
- IScanRepository
- IViolationRepository
- IActionLogRepository
- IJobQueue
- IComplianceEventPublisher
- IUserDirectory
"""

from collections.abc import Sequence
from typing import Any, Protocol

from fleet_compliance.adapters.github_models import (
    GitHubCheckRun,
    GitHubComment,
    GitHubIssue,
    GitHubPullRequest,
    GitHubRepository,
)
from fleet_compliance.core.config_models import AppConfig
from fleet_compliance.core.models import ActionLog, Policy, PolicyViolation, Scan, TrackedRepository

# Background job topics
JOB_SCAN_RUN = "scan.run"
JOB_SCAN_COMPLETED = "scan.completed"
JOB_WEBHOOK_PULL_REQUEST = "webhook.pull_request"


class IConfigurationSource(Protocol):
    """Source of the raw (base64) configuration document."""

    async def get_file_content(self, repository_name: str, file_path: str) -> str | None:
        """Return base64 content of a file in the organization, or None if absent."""
        ...


class IConfigurationProvider(Protocol):
    """Cached access to the validated policy configuration."""

    async def get_config(self, force_refresh: bool = False) -> AppConfig:
        """Return the configuration.

        Raises:
            ConfigurationNotFoundError: If the document does not exist.
            InvalidConfigurationError: If the document is malformed.
        """
        ...


class IGitHubClient(IConfigurationSource, Protocol):
    """Installation-scoped GitHub operations consumed by the pipeline."""

    async def list_organization_repositories(self) -> list[GitHubRepository]: ...

    async def get_repository(self, repository_id: int) -> GitHubRepository: ...

    async def archive_repository(self, repository_id: int) -> None: ...

    async def file_exists(self, repository_id: int, file_path: str) -> bool: ...

    async def get_workflow_permissions(self, repository_id: int) -> str | None: ...

    async def get_open_issues(self, repository_id: int, label: str) -> list[GitHubIssue]: ...

    async def create_issue(self, repository_id: int, title: str, body: str, labels: list[str]) -> GitHubIssue: ...

    async def get_open_pull_requests(self, repository_id: int) -> list[GitHubPullRequest]: ...

    async def get_pull_request_comments(self, repository_id: int, pull_request_number: int) -> list[GitHubComment]: ...

    async def create_pull_request_comment(
        self, repository_id: int, pull_request_number: int, body: str
    ) -> GitHubComment: ...

    async def get_check_runs_for_ref(self, repository_id: int, ref: str) -> list[GitHubCheckRun]: ...

    async def create_status_check(
        self,
        repository_id: int,
        head_sha: str,
        name: str,
        status: str,
        conclusion: str,
        details_url: str | None = None,
    ) -> GitHubCheckRun: ...

    async def update_status_check(
        self,
        repository_id: int,
        check_run_id: int,
        status: str,
        conclusion: str,
        details_url: str | None = None,
    ) -> GitHubCheckRun: ...


class ITrackedRepositoryRepository(Protocol):
    """Repository contract for TrackedRepository persistence."""

    async def list_all(self) -> list[TrackedRepository]: ...

    async def get_by_github_id(self, github_repository_id: int) -> TrackedRepository | None: ...

    async def add(self, github_repository_id: int, name: str, is_archived: bool = False) -> TrackedRepository: ...

    async def delete_with_history(self, repository_ids: Sequence[int]) -> int:
        """Delete repositories and their violations and action logs."""
        ...

    async def count(self) -> int: ...


class IPolicyRepository(Protocol):
    """Repository contract for Policy persistence."""

    async def list_all(self) -> list[Policy]: ...

    async def get_by_key(self, policy_key: str) -> Policy | None: ...

    async def add(self, policy_key: str, name: str, description: str | None, actions: list[str]) -> Policy: ...


class IScanRepository(Protocol):
    """Repository contract for Scan lifecycle persistence."""

    async def create(self) -> Scan: ...

    async def get_by_id(self, scan_id: int) -> Scan:
        """Raises NotFoundError if the scan does not exist."""
        ...

    async def mark_completed(self, scan: Scan, repository_count: int, violation_count: int) -> Scan: ...

    async def mark_failed(self, scan_id: int, error_message: str) -> Scan: ...

    async def get_latest_completed(self) -> Scan | None: ...

    async def list_recent(self, limit: int = 20, offset: int = 0) -> list[Scan]: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


class IViolationRepository(Protocol):
    """Repository contract for PolicyViolation persistence."""

    async def add_many(self, violations: Sequence[PolicyViolation]) -> int: ...

    async def list_for_scan(self, scan_id: int) -> list[PolicyViolation]: ...


class IActionLogRepository(Protocol):
    """Repository contract for the append-only action log."""

    async def add(
        self,
        repository_id: int,
        policy_id: int,
        action_type: str,
        status: str,
        details: str | None,
    ) -> ActionLog: ...

    async def list_recent(
        self,
        limit: int = 50,
        offset: int = 0,
        repository_id: int | None = None,
        status: str | None = None,
    ) -> list[ActionLog]: ...


class IJobQueue(Protocol):
    """Background job queue used for message-passing between pipeline stages."""

    def enqueue(self, topic: str, payload: dict[str, Any]) -> str:
        """Enqueue a unit of work and return its job id."""
        ...


class IComplianceEventPublisher(Protocol):
    """Kafka domain event publisher. Publishing is best-effort."""

    async def publish_scan_finished(
        self,
        scan_id: int,
        status: str,
        repository_count: int,
        violation_count: int,
        error_message: str | None = None,
    ) -> None: ...

    async def publish_action_executed(
        self,
        repository_name: str,
        policy_key: str,
        action_type: str,
        status: str,
        details: str | None,
    ) -> None: ...


class IUserDirectory(Protocol):
    """End-user scoped lookups, authenticated with the user's own token."""

    async def is_user_member_of_team(self, user_token: str, organization: str, team_slug: str) -> bool: ...

    async def get_user_organizations(self, user_token: str) -> list[str]: ...
