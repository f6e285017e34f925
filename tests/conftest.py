"""Test fixtures for fleet-compliance-engine.

Provides:
- rsa_private_key_pem: A throwaway RSA key for GitHub App JWT signing
- db_session: An AsyncSession on a fresh in-memory SQLite database
- fake_github: An in-memory stand-in for GitHubClient
- config_provider: A static configuration provider
- mock_event_publisher: A mock ComplianceEventPublisher
- mock_job_queue: A MagicMock job queue capturing enqueue() calls
"""

import asyncio
import base64
from collections import defaultdict
from collections.abc import AsyncGenerator
from itertools import count
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from fleet_compliance.adapters.github_client import GitHubNotFoundError
from fleet_compliance.adapters.github_models import (
    GitHubCheckRun,
    GitHubComment,
    GitHubIssue,
    GitHubPullRequest,
    GitHubRepository,
)
from fleet_compliance.core import models  # noqa: F401
from fleet_compliance.core.config_models import AppConfig
from fleet_compliance.core.configuration import parse_config
from fleet_compliance.database import Base

ORGANIZATION = "acme"

DEFAULT_CONFIG_YAML = """
access_control:
  authorized_team: acme/compliance-admins
policies:
  - name: Check for AGENTS.md
    type: has_agents_md
    action: create-issue
  - name: Check for catalog-info.yaml
    type: has_catalog_info_yaml
    action: [log-only]
"""


def encode(text: str) -> str:
    """Base64-encode text the way the GitHub contents API returns it."""
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def make_repo(repository_id: int, name: str, archived: bool = False) -> GitHubRepository:
    """Create a GitHubRepository in the test organization."""
    return GitHubRepository(
        id=repository_id,
        name=name,
        full_name=f"{ORGANIZATION}/{name}",
        archived=archived,
    )


class FakeGitHubClient:
    """In-memory GitHub organization implementing the IGitHubClient surface."""

    def __init__(self) -> None:
        self.repositories: dict[int, GitHubRepository] = {}
        self.files: dict[tuple[int, str], str] = {}
        self.config_text: str | None = DEFAULT_CONFIG_YAML
        self.config_fetches = 0
        self.workflow_permissions: dict[int, str | None] = {}
        self.issues: dict[int, list[tuple[GitHubIssue, list[str]]]] = defaultdict(list)
        self.pull_requests: dict[int, list[GitHubPullRequest]] = defaultdict(list)
        self.comments: dict[tuple[int, int], list[GitHubComment]] = defaultdict(list)
        self.check_runs: dict[tuple[int, str], list[GitHubCheckRun]] = defaultdict(list)
        self.mutations: list[tuple[str, Any]] = []
        self.failures: dict[str, list[Exception | None]] = {}
        self._ids = count(1000)

    def add_repository(self, repository: GitHubRepository, files: dict[str, str] | None = None) -> None:
        self.repositories[repository.id] = repository
        for path, content in (files or {}).items():
            self.files[(repository.id, path)] = content

    def fail_next(self, operation: str, *errors: Exception | None) -> None:
        """Queue outcomes for the next calls of `operation` (None = succeed)."""
        self.failures.setdefault(operation, []).extend(errors)

    def _maybe_fail(self, operation: str) -> None:
        queued = self.failures.get(operation)
        if queued:
            error = queued.pop(0)
            if error is not None:
                raise error

    def _repository(self, repository_id: int) -> GitHubRepository:
        repository = self.repositories.get(repository_id)
        if repository is None:
            raise GitHubNotFoundError(message="Not Found", status_code=404)
        return repository

    async def get_file_content(self, repository_name: str, file_path: str) -> str | None:
        # Yield like a real network call so concurrent readers interleave
        await asyncio.sleep(0)
        if repository_name == ".github" and file_path == "config.yaml":
            self.config_fetches += 1
            return None if self.config_text is None else encode(self.config_text)
        for repository in self.repositories.values():
            if repository.name == repository_name and (repository.id, file_path) in self.files:
                return encode(self.files[(repository.id, file_path)])
        return None

    async def list_organization_repositories(self) -> list[GitHubRepository]:
        self._maybe_fail("list_organization_repositories")
        return list(self.repositories.values())

    async def get_repository(self, repository_id: int) -> GitHubRepository:
        self._maybe_fail("get_repository")
        return self._repository(repository_id)

    async def archive_repository(self, repository_id: int) -> None:
        self._maybe_fail("archive_repository")
        repository = self._repository(repository_id)
        self.repositories[repository_id] = repository.model_copy(update={"archived": True})
        self.mutations.append(("archive_repository", repository_id))

    async def file_exists(self, repository_id: int, file_path: str) -> bool:
        self._maybe_fail("file_exists")
        return (repository_id, file_path) in self.files

    async def get_workflow_permissions(self, repository_id: int) -> str | None:
        return self.workflow_permissions.get(repository_id)

    async def get_open_issues(self, repository_id: int, label: str) -> list[GitHubIssue]:
        return [issue for issue, labels in self.issues[repository_id] if label in labels]

    async def create_issue(self, repository_id: int, title: str, body: str, labels: list[str]) -> GitHubIssue:
        self._maybe_fail("create_issue")
        number = len(self.issues[repository_id]) + 1
        issue = GitHubIssue(
            number=number,
            title=title,
            html_url=f"https://github.com/{self._repository(repository_id).full_name}/issues/{number}",
        )
        self.issues[repository_id].append((issue, list(labels)))
        self.mutations.append(("create_issue", (repository_id, title)))
        return issue

    async def get_open_pull_requests(self, repository_id: int) -> list[GitHubPullRequest]:
        return list(self.pull_requests[repository_id])

    async def get_pull_request_comments(self, repository_id: int, pull_request_number: int) -> list[GitHubComment]:
        return list(self.comments[(repository_id, pull_request_number)])

    async def create_pull_request_comment(
        self, repository_id: int, pull_request_number: int, body: str
    ) -> GitHubComment:
        self._maybe_fail("create_pull_request_comment")
        comment = GitHubComment(id=next(self._ids), body=body, user_login="fleet-compliance[bot]", user_type="Bot")
        self.comments[(repository_id, pull_request_number)].append(comment)
        self.mutations.append(("create_pull_request_comment", (repository_id, pull_request_number)))
        return comment

    async def get_check_runs_for_ref(self, repository_id: int, ref: str) -> list[GitHubCheckRun]:
        return list(self.check_runs[(repository_id, ref)])

    async def create_status_check(
        self,
        repository_id: int,
        head_sha: str,
        name: str,
        status: str,
        conclusion: str,
        details_url: str | None = None,
    ) -> GitHubCheckRun:
        run = GitHubCheckRun(id=next(self._ids), name=name, head_sha=head_sha, status=status, conclusion=conclusion)
        self.check_runs[(repository_id, head_sha)].append(run)
        self.mutations.append(("create_status_check", (repository_id, head_sha, conclusion)))
        return run

    async def update_status_check(
        self,
        repository_id: int,
        check_run_id: int,
        status: str,
        conclusion: str,
        details_url: str | None = None,
    ) -> GitHubCheckRun:
        for runs in self.check_runs.values():
            for index, run in enumerate(runs):
                if run.id == check_run_id:
                    runs[index] = run.model_copy(update={"status": status, "conclusion": conclusion})
                    self.mutations.append(("update_status_check", (repository_id, check_run_id, conclusion)))
                    return runs[index]
        raise GitHubNotFoundError(message="Not Found", status_code=404)


class StaticConfigProvider:
    """IConfigurationProvider returning a fixed configuration."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.calls = 0

    async def get_config(self, force_refresh: bool = False) -> AppConfig:
        self.calls += 1
        return self.config


@pytest.fixture(scope="session")
def rsa_private_key_pem() -> str:
    """Generate a throwaway RSA private key in PEM format.

    Returns:
        PKCS#8 PEM string.
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture()
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """AsyncSession bound to a fresh in-memory SQLite database.

    Yields:
        A session with every fc_ table created.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture()
def fake_github() -> FakeGitHubClient:
    """An empty fake organization with the default configuration document."""
    return FakeGitHubClient()


@pytest.fixture()
def app_config() -> AppConfig:
    """The default configuration parsed from DEFAULT_CONFIG_YAML."""
    return parse_config(DEFAULT_CONFIG_YAML)


@pytest.fixture()
def config_provider(app_config: AppConfig) -> StaticConfigProvider:
    return StaticConfigProvider(app_config)


@pytest.fixture()
def mock_event_publisher() -> AsyncMock:
    """Create a mock ComplianceEventPublisher that captures all calls.

    Returns:
        AsyncMock with all publish methods returning None.
    """
    publisher = AsyncMock()
    publisher.publish_scan_finished.return_value = None
    publisher.publish_action_executed.return_value = None
    return publisher


@pytest.fixture()
def mock_job_queue() -> MagicMock:
    """Create a mock job queue whose enqueue() returns a fixed job id."""
    queue = MagicMock()
    queue.enqueue.return_value = "job-1"
    return queue
