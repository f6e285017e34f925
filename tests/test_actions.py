"""Tests for the action execution engine.

ActionService runs against the in-memory FakeGitHubClient and a real
SQLite session so ActionLog rows can be asserted directly.
"""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_compliance.adapters.github_client import GitHubForbiddenError
from fleet_compliance.adapters.github_models import GitHubCheckRun, GitHubComment, GitHubIssue, GitHubPullRequest
from fleet_compliance.adapters.repositories import (
    ActionLogRepository,
    PolicyRepository,
    ScanRepository,
    TrackedRepositoryRepository,
    ViolationRepository,
)
from fleet_compliance.core.actions import (
    ACTION_ARCHIVE_REPO,
    ACTION_BLOCK_PRS,
    ACTION_CREATE_ISSUE,
    ActionService,
    canonical_action,
    default_issue_title,
)
from fleet_compliance.core.config_models import (
    AccessControlConfig,
    AppConfig,
    BlockPrsDetails,
    IssueDetails,
    PolicyConfig,
    PrCommentDetails,
)
from fleet_compliance.core.models import ActionStatus, Policy, PolicyViolation, Scan, ScanStatus, TrackedRepository
from tests.conftest import FakeGitHubClient, StaticConfigProvider, make_repo

BOT_LOGIN = "fleet-compliance[bot]"
GITHUB_ID = 1


def _config(*policies: PolicyConfig) -> AppConfig:
    return AppConfig(access_control=AccessControlConfig(authorized_team="acme/admins"), policies=list(policies))


def _policy(actions: list[str], **kwargs: object) -> PolicyConfig:
    return PolicyConfig(name="Check for AGENTS.md", type="has_agents_md", action=actions, **kwargs)


def _make_service(
    session: AsyncSession,
    github: FakeGitHubClient,
    config: AppConfig,
    publisher: AsyncMock,
) -> ActionService:
    return ActionService(
        github=github,
        config_provider=StaticConfigProvider(config),
        violation_repo=ViolationRepository(session),
        action_log_repo=ActionLogRepository(session),
        event_publisher=publisher,
        bot_login=BOT_LOGIN,
    )


async def _seed_violation(
    session: AsyncSession,
    github: FakeGitHubClient,
    archived: bool = False,
) -> tuple[Scan, TrackedRepository, Policy]:
    """Track acme/svc, record one has_agents_md violation, and mirror the repo upstream."""
    github.add_repository(make_repo(GITHUB_ID, "svc", archived=archived))
    repository = await TrackedRepositoryRepository(session).add(GITHUB_ID, "acme/svc", archived)
    policy = await PolicyRepository(session).add("has_agents_md", "Check for AGENTS.md", None, [])
    scan = await ScanRepository(session).create()
    await ViolationRepository(session).add_many(
        [PolicyViolation(scan_id=scan.id, repository_id=repository.id, policy_id=policy.id, details="AGENTS.md is missing")]
    )
    return scan, repository, policy


class TestCanonicalAction:
    def test_aliases_and_separators(self) -> None:
        assert canonical_action("Block_PRs") == ACTION_BLOCK_PRS
        assert canonical_action("archive-repository") == ACTION_ARCHIVE_REPO
        assert canonical_action(" create-issue ") == ACTION_CREATE_ISSUE


# ---------------------------------------------------------------------------
# Scan mode
# ---------------------------------------------------------------------------


class TestProcessActionsForScan:
    """Tests for ActionService.process_actions_for_scan()."""

    @pytest.mark.asyncio()
    async def test_partial_failure_does_not_stop_other_actions(
        self, db_session: AsyncSession, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        """A failing archive is logged Failed while the other actions still succeed."""
        scan, _, _ = await _seed_violation(db_session, fake_github)
        fake_github.fail_next("archive_repository", GitHubForbiddenError(message="Resource not accessible", status_code=403))
        service = _make_service(
            db_session, fake_github, _config(_policy(["create-issue", "archive-repo", "log-only"])), mock_event_publisher
        )

        outcomes = await service.process_actions_for_scan(scan.id)

        assert [(o.action_type, o.status) for o in outcomes] == [
            ("create-issue", ActionStatus.SUCCESS),
            ("archive-repo", ActionStatus.FAILED),
            ("log-only", ActionStatus.SUCCESS),
        ]
        logs = await ActionLogRepository(db_session).list_recent()
        assert sorted(log.status for log in logs) == ["Failed", "Success", "Success"]
        assert mock_event_publisher.publish_action_executed.await_count == 3

    @pytest.mark.asyncio()
    async def test_failure_on_one_violation_does_not_stop_the_others(
        self, db_session: AsyncSession, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        """Three violations, the second issue creation fails: all three are attempted."""
        tracked = TrackedRepositoryRepository(db_session)
        policy = await PolicyRepository(db_session).add("has_agents_md", "Check for AGENTS.md", None, [])
        scans = ScanRepository(db_session)
        scan = await scans.create()
        violations = []
        for github_id, name in [(1, "one"), (2, "two"), (3, "three")]:
            fake_github.add_repository(make_repo(github_id, name))
            repository = await tracked.add(github_id, f"acme/{name}")
            violations.append(PolicyViolation(scan_id=scan.id, repository_id=repository.id, policy_id=policy.id))
        await ViolationRepository(db_session).add_many(violations)
        await scans.mark_completed(scan, repository_count=3, violation_count=3)
        fake_github.fail_next("create_issue", None, RuntimeError("connection reset"))
        service = _make_service(db_session, fake_github, _config(_policy(["create-issue"])), mock_event_publisher)

        outcomes = await service.process_actions_for_scan(scan.id)

        assert [o.status for o in outcomes] == [ActionStatus.SUCCESS, ActionStatus.FAILED, ActionStatus.SUCCESS]
        logs = await ActionLogRepository(db_session).list_recent()
        assert sorted(log.status for log in logs) == ["Failed", "Success", "Success"]
        assert len(fake_github.issues[1]) == 1
        assert fake_github.issues[2] == []
        assert len(fake_github.issues[3]) == 1
        assert (await scans.get_by_id(scan.id)).status == ScanStatus.COMPLETED.value

    @pytest.mark.asyncio()
    async def test_unexpected_exception_becomes_failed_log(
        self, db_session: AsyncSession, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        scan, _, _ = await _seed_violation(db_session, fake_github)
        fake_github.fail_next("create_issue", RuntimeError("connection reset"))
        service = _make_service(db_session, fake_github, _config(_policy(["create-issue"])), mock_event_publisher)

        outcomes = await service.process_actions_for_scan(scan.id)

        assert outcomes[0].status == ActionStatus.FAILED
        assert outcomes[0].details == "Error: connection reset"
        logs = await ActionLogRepository(db_session).list_recent()
        assert [log.status for log in logs] == ["Failed"]

    @pytest.mark.asyncio()
    async def test_duplicate_issue_is_skipped(
        self, db_session: AsyncSession, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        """An open issue with the same title (any case) under the primary label is not duplicated."""
        scan, _, _ = await _seed_violation(db_session, fake_github)
        existing = GitHubIssue(
            number=3,
            title=default_issue_title("has_agents_md").upper(),
            html_url="https://github.com/acme/svc/issues/3",
        )
        fake_github.issues[GITHUB_ID].append((existing, ["policy-violation"]))
        service = _make_service(db_session, fake_github, _config(_policy(["create-issue"])), mock_event_publisher)

        outcomes = await service.process_actions_for_scan(scan.id)

        assert outcomes[0].status == ActionStatus.SKIPPED
        assert outcomes[0].details == "Duplicate issue already exists: https://github.com/acme/svc/issues/3"
        assert fake_github.mutations == []

    @pytest.mark.asyncio()
    async def test_issue_uses_configured_details(
        self, db_session: AsyncSession, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        scan, _, _ = await _seed_violation(db_session, fake_github)
        details = IssueDetails(title="Add AGENTS.md", body="Please add it.", labels=["docs"])
        service = _make_service(
            db_session, fake_github, _config(_policy(["create-issue"], issue_details=details)), mock_event_publisher
        )

        outcomes = await service.process_actions_for_scan(scan.id)

        issue, labels = fake_github.issues[GITHUB_ID][0]
        assert issue.title == "Add AGENTS.md"
        assert labels == ["docs"]
        assert outcomes[0].details == "Created issue #1: https://github.com/acme/svc/issues/1"

    @pytest.mark.asyncio()
    async def test_archive_is_idempotent(
        self, db_session: AsyncSession, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        """An already archived repository is skipped with zero mutating calls."""
        scan, _, _ = await _seed_violation(db_session, fake_github, archived=True)
        service = _make_service(db_session, fake_github, _config(_policy(["archive-repo"])), mock_event_publisher)

        outcomes = await service.process_actions_for_scan(scan.id)

        assert outcomes[0].status == ActionStatus.SKIPPED
        assert fake_github.mutations == []

    @pytest.mark.asyncio()
    async def test_archive_marks_tracked_repository(
        self, db_session: AsyncSession, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        scan, repository, _ = await _seed_violation(db_session, fake_github)
        service = _make_service(db_session, fake_github, _config(_policy(["archive_repo"])), mock_event_publisher)

        outcomes = await service.process_actions_for_scan(scan.id)

        assert outcomes[0].status == ActionStatus.SUCCESS
        assert fake_github.repositories[GITHUB_ID].archived is True
        assert repository.is_archived is True

    @pytest.mark.asyncio()
    async def test_unknown_action_is_logged_failed(
        self, db_session: AsyncSession, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        """Every configured action produces one ActionLog row, even an unsupported one."""
        scan, _, _ = await _seed_violation(db_session, fake_github)
        service = _make_service(db_session, fake_github, _config(_policy(["frobnicate", "log-only"])), mock_event_publisher)

        outcomes = await service.process_actions_for_scan(scan.id)

        assert [(o.action_type, o.status) for o in outcomes] == [
            ("frobnicate", ActionStatus.FAILED),
            ("log-only", ActionStatus.SUCCESS),
        ]
        logs = await ActionLogRepository(db_session).list_recent()
        assert sorted((log.action_type, log.status, log.details) for log in logs) == [
            ("frobnicate", "Failed", "Unknown action type: frobnicate"),
            ("log-only", "Success", "Violation of has_agents_md logged"),
        ]
        assert fake_github.mutations == []

    @pytest.mark.asyncio()
    async def test_policy_missing_from_configuration_is_skipped(
        self, db_session: AsyncSession, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        scan, _, _ = await _seed_violation(db_session, fake_github)
        other = PolicyConfig(name="Other", type="has_catalog_info_yaml", action=["log-only"])
        service = _make_service(db_session, fake_github, _config(other), mock_event_publisher)

        assert await service.process_actions_for_scan(scan.id) == []
        assert await ActionLogRepository(db_session).list_recent() == []

    @pytest.mark.asyncio()
    async def test_no_open_pull_requests_is_skipped(
        self, db_session: AsyncSession, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        scan, _, _ = await _seed_violation(db_session, fake_github)
        service = _make_service(db_session, fake_github, _config(_policy(["comment-on-prs"])), mock_event_publisher)

        outcomes = await service.process_actions_for_scan(scan.id)

        assert outcomes[0].status == ActionStatus.SKIPPED
        assert outcomes[0].details == "No open pull requests found"

    @pytest.mark.asyncio()
    async def test_block_prs_fails_check_on_every_open_pull_request(
        self, db_session: AsyncSession, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        scan, _, _ = await _seed_violation(db_session, fake_github)
        fake_github.pull_requests[GITHUB_ID] = [
            GitHubPullRequest(number=1, head_sha="sha-1"),
            GitHubPullRequest(number=2, head_sha="sha-2"),
        ]
        service = _make_service(db_session, fake_github, _config(_policy(["block-prs"])), mock_event_publisher)

        outcomes = await service.process_actions_for_scan(scan.id)

        assert [o.status for o in outcomes] == [ActionStatus.SUCCESS, ActionStatus.SUCCESS]
        assert fake_github.check_runs[(GITHUB_ID, "sha-1")][0].conclusion == "failure"
        assert fake_github.check_runs[(GITHUB_ID, "sha-2")][0].conclusion == "failure"
        assert len(await ActionLogRepository(db_session).list_recent()) == 2

    @pytest.mark.asyncio()
    async def test_no_violations_is_noop(
        self, db_session: AsyncSession, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        scan = await ScanRepository(db_session).create()
        provider = StaticConfigProvider(_config())
        service = ActionService(
            github=fake_github,
            config_provider=provider,
            violation_repo=ViolationRepository(db_session),
            action_log_repo=ActionLogRepository(db_session),
            event_publisher=mock_event_publisher,
        )

        assert await service.process_actions_for_scan(scan.id) == []
        assert provider.calls == 0


# ---------------------------------------------------------------------------
# PR-scoped operations
# ---------------------------------------------------------------------------


class TestPullRequestOperations:
    """Tests for the comment and status-check operations on one pull request."""

    def _service(self, github: FakeGitHubClient, publisher: AsyncMock, bot_login: str | None = BOT_LOGIN) -> ActionService:
        return ActionService(
            github=github,
            config_provider=StaticConfigProvider(_config()),
            violation_repo=AsyncMock(),
            action_log_repo=AsyncMock(),
            event_publisher=publisher,
            bot_login=bot_login,
        )

    @pytest.mark.asyncio()
    async def test_own_comment_with_same_prefix_is_not_repeated(
        self, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        message = "This repository is missing AGENTS.md. " * 3
        fake_github.comments[(GITHUB_ID, 7)].append(
            GitHubComment(id=1, body=message[:60] + " (edited)", user_login=BOT_LOGIN, user_type="Bot")
        )
        service = self._service(fake_github, mock_event_publisher)

        outcome = await service.comment_on_pull_request(GITHUB_ID, 7, message)

        assert outcome.status == ActionStatus.SKIPPED
        assert fake_github.mutations == []

    @pytest.mark.asyncio()
    async def test_human_comment_does_not_suppress_ours(
        self, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        message = "This repository is missing AGENTS.md."
        fake_github.comments[(GITHUB_ID, 7)].append(
            GitHubComment(id=1, body=message, user_login="octocat", user_type="User")
        )
        service = self._service(fake_github, mock_event_publisher)

        outcome = await service.comment_on_pull_request(GITHUB_ID, 7, message)

        assert outcome.status == ActionStatus.SUCCESS
        assert fake_github.mutations == [("create_pull_request_comment", (GITHUB_ID, 7))]

    @pytest.mark.asyncio()
    async def test_any_bot_counts_without_bot_login(
        self, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        message = "Policy violations found."
        fake_github.comments[(GITHUB_ID, 7)].append(
            GitHubComment(id=1, body=message, user_login="other[bot]", user_type="Bot")
        )
        service = self._service(fake_github, mock_event_publisher, bot_login=None)

        outcome = await service.comment_on_pull_request(GITHUB_ID, 7, message)

        assert outcome.status == ActionStatus.SKIPPED

    @pytest.mark.asyncio()
    async def test_status_check_created_when_absent(
        self, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        service = self._service(fake_github, mock_event_publisher)

        outcome = await service.update_pull_request_status_check(GITHUB_ID, 7, "abc", "Policy Compliance Check", True)

        assert outcome.status == ActionStatus.SUCCESS
        assert "set to failure (was absent)" in (outcome.details or "")
        assert fake_github.mutations == [("create_status_check", (GITHUB_ID, "abc", "failure"))]

    @pytest.mark.asyncio()
    async def test_existing_check_updated_in_place(
        self, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        """A check with the same name (any case) is updated, never duplicated."""
        fake_github.check_runs[(GITHUB_ID, "abc")].append(
            GitHubCheckRun(id=55, name="policy compliance check", head_sha="abc", status="completed", conclusion="failure")
        )
        service = self._service(fake_github, mock_event_publisher)

        outcome = await service.update_pull_request_status_check(GITHUB_ID, 7, "abc", "Policy Compliance Check", False)

        assert "set to success (was failure)" in (outcome.details or "")
        assert fake_github.mutations == [("update_status_check", (GITHUB_ID, 55, "success"))]
        assert len(fake_github.check_runs[(GITHUB_ID, "abc")]) == 1

    @pytest.mark.asyncio()
    async def test_missing_head_sha_is_skipped(
        self, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        service = self._service(fake_github, mock_event_publisher)

        outcome = await service.update_pull_request_status_check(GITHUB_ID, 7, "", "Policy Compliance Check", True)

        assert outcome.status == ActionStatus.SKIPPED
        assert fake_github.mutations == []

    @pytest.mark.asyncio()
    async def test_resolved_violation_only_flips_check(
        self, fake_github: FakeGitHubClient, mock_event_publisher: AsyncMock
    ) -> None:
        """When compliant, comment-on-prs is not run but block-prs turns the check green."""
        policy = _policy(
            ["comment-on-prs", "block-prs"],
            pr_comment_details=PrCommentDetails(message="Add AGENTS.md"),
            block_prs_details=BlockPrsDetails(status_check_name="Agents"),
        )
        service = self._service(fake_github, mock_event_publisher)

        outcomes = await service.process_pull_request_actions(GITHUB_ID, 7, "abc", policy, is_violated=False)

        assert [o.action_type for o in outcomes] == ["block-prs"]
        assert fake_github.check_runs[(GITHUB_ID, "abc")][0].name == "Agents"
        assert fake_github.check_runs[(GITHUB_ID, "abc")][0].conclusion == "success"
        mock_event_publisher.publish_action_executed.assert_not_awaited()
