"""Action execution engine.

Executes the remediation actions configured for each violation of a scan and
records one ActionLog row per attempt. Every attempt is isolated: a failing
action is logged as Failed and the next action, and the next violation,
still run.

Supported actions (identifiers are normalized, `block_prs` == `block-prs`):
- create-issue   : open an issue unless an open one with the same title exists
- archive-repo   : archive the repository unless it already is
- comment-on-prs : comment on open pull requests unless already commented
- block-prs      : create or update a failing status check on open pull requests
- log-only       : record the violation without touching GitHub

Unknown identifiers are logged and recorded as Failed.

The comment and status-check operations are also exposed PR-scoped for the
webhook path, where they target one pull request and its head commit.
"""

import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from fleet_compliance.adapters.github_client import GitHubForbiddenError, GitHubNotFoundError
from fleet_compliance.core.config_models import IssueDetails, PolicyConfig, normalize_action_name
from fleet_compliance.core.interfaces import (
    IActionLogRepository,
    IComplianceEventPublisher,
    IConfigurationProvider,
    IGitHubClient,
    IViolationRepository,
)
from fleet_compliance.core.models import ActionStatus, Policy, TrackedRepository
from fleet_compliance.observability import get_logger

logger = get_logger(__name__)

ACTION_CREATE_ISSUE = "create-issue"
ACTION_ARCHIVE_REPO = "archive-repo"
ACTION_COMMENT_ON_PRS = "comment-on-prs"
ACTION_BLOCK_PRS = "block-prs"
ACTION_LOG_ONLY = "log-only"

_ACTION_ALIASES = {
    "archive-repository": ACTION_ARCHIVE_REPO,
    "comment-on-pull-requests": ACTION_COMMENT_ON_PRS,
    "block-pull-requests": ACTION_BLOCK_PRS,
}

DEFAULT_ISSUE_LABELS = ["policy-violation", "compliance"]

# Existing comments are matched on this many leading characters of the message
COMMENT_MATCH_PREFIX_LENGTH = 50

CHECK_STATUS_COMPLETED = "completed"


def canonical_action(action: str) -> str:
    """Normalize an action identifier and resolve long-form aliases."""
    normalized = normalize_action_name(action)
    return _ACTION_ALIASES.get(normalized, normalized)


def default_issue_title(policy_key: str) -> str:
    return f"Compliance Violation: {policy_key}"


def default_issue_body(policy_key: str) -> str:
    return f"This repository violates the {policy_key} policy. Please review and take appropriate action."


def default_pr_comment(policy_keys: list[str]) -> str:
    violated = "\n- ".join(policy_keys)
    return (
        "⚠️ **Policy Compliance Violations Detected**\n\n"
        "This pull request is associated with a repository that violates the following policies:\n\n"
        f"- {violated}\n\n"
        "Please address these violations before merging."
    )


class StatusCheckState(str, enum.Enum):
    """Displayed state of the compliance check on one commit."""

    ABSENT = "absent"
    FAILURE = "failure"
    SUCCESS = "success"

    @classmethod
    def for_violation(cls, is_violated: bool) -> "StatusCheckState":
        return cls.FAILURE if is_violated else cls.SUCCESS

    @classmethod
    def from_conclusion(cls, conclusion: str | None) -> "StatusCheckState":
        if conclusion is None:
            return cls.ABSENT
        return cls.SUCCESS if conclusion == "success" else cls.FAILURE


@dataclass(frozen=True)
class ActionOutcome:
    """Result of one action attempt, persisted as an ActionLog row."""

    action_type: str
    status: ActionStatus
    details: str | None = None


class ActionService:
    """Executes configured remediation actions.

    Args:
        github: GitHub client.
        config_provider: Cached policy configuration.
        violation_repo: Violation persistence.
        action_log_repo: Action log persistence.
        event_publisher: Kafka publisher (best-effort).
        bot_login: Login of this system on GitHub (`<app-slug>[bot]`). When
            empty, any Bot-authored comment counts as our own.
    """

    def __init__(
        self,
        github: IGitHubClient,
        config_provider: IConfigurationProvider,
        violation_repo: IViolationRepository,
        action_log_repo: IActionLogRepository,
        event_publisher: IComplianceEventPublisher,
        bot_login: str | None = None,
    ) -> None:
        self._github = github
        self._config_provider = config_provider
        self._violation_repo = violation_repo
        self._action_log_repo = action_log_repo
        self._event_publisher = event_publisher
        self._bot_login = (bot_login or "").lower() or None
        self._scan_handlers: dict[
            str, Callable[[TrackedRepository, Policy, PolicyConfig], Awaitable[list[ActionOutcome]]]
        ] = {
            ACTION_CREATE_ISSUE: self._create_issue,
            ACTION_ARCHIVE_REPO: self._archive_repository,
            ACTION_COMMENT_ON_PRS: self._comment_on_open_pull_requests,
            ACTION_BLOCK_PRS: self._block_open_pull_requests,
            ACTION_LOG_ONLY: self._log_only,
        }

    # ------------------------------------------------------------------
    # Scan mode
    # ------------------------------------------------------------------

    async def process_actions_for_scan(self, scan_id: int) -> list[ActionOutcome]:
        """Run the configured actions for every violation of a scan.

        Args:
            scan_id: Scan whose violations are remediated.

        Returns:
            Every recorded outcome, in execution order.
        """
        violations = await self._violation_repo.list_for_scan(scan_id)
        if not violations:
            logger.info("No violations to act on", scan_id=scan_id)
            return []

        config = await self._config_provider.get_config()
        logger.info("Processing actions for scan", scan_id=scan_id, violations=len(violations))

        outcomes: list[ActionOutcome] = []
        for violation in violations:
            policy_config = config.find_policy(violation.policy.policy_key)
            if policy_config is None:
                logger.warning(
                    "Violation references a policy missing from the configuration, skipping",
                    scan_id=scan_id,
                    violation_id=violation.id,
                    policy_key=violation.policy.policy_key,
                )
                continue

            for action in policy_config.actions:
                outcomes.extend(
                    await self._execute(canonical_action(action), violation.repository, violation.policy, policy_config)
                )

        logger.info(
            "Action processing finished",
            scan_id=scan_id,
            succeeded=sum(1 for o in outcomes if o.status == ActionStatus.SUCCESS),
            failed=sum(1 for o in outcomes if o.status == ActionStatus.FAILED),
            skipped=sum(1 for o in outcomes if o.status == ActionStatus.SKIPPED),
        )
        return outcomes

    async def _execute(
        self,
        action: str,
        repository: TrackedRepository,
        policy: Policy,
        policy_config: PolicyConfig,
    ) -> list[ActionOutcome]:
        handler = self._scan_handlers.get(action)
        if handler is None:
            logger.warning(
                "Unknown action type",
                action=action,
                policy_key=policy.policy_key,
                repository=repository.name,
            )
            outcomes = [ActionOutcome(action, ActionStatus.FAILED, f"Unknown action type: {action}")]
        else:
            outcomes = await self._run_handler(handler, action, repository, policy, policy_config)

        for outcome in outcomes:
            await self._record(repository, policy, outcome)
        return outcomes

    async def _run_handler(
        self,
        handler: Callable[[TrackedRepository, Policy, PolicyConfig], Awaitable[list[ActionOutcome]]],
        action: str,
        repository: TrackedRepository,
        policy: Policy,
        policy_config: PolicyConfig,
    ) -> list[ActionOutcome]:
        try:
            return await handler(repository, policy, policy_config)
        except Exception as exc:
            logger.error(
                "Action failed",
                action=action,
                repository=repository.name,
                policy_key=policy.policy_key,
                error=str(exc),
                exc_info=True,
            )
            return [ActionOutcome(action, ActionStatus.FAILED, f"Error: {exc}")]

    async def _record(self, repository: TrackedRepository, policy: Policy, outcome: ActionOutcome) -> None:
        await self._action_log_repo.add(
            repository_id=repository.id,
            policy_id=policy.id,
            action_type=outcome.action_type,
            status=outcome.status.value,
            details=outcome.details,
        )
        await self._event_publisher.publish_action_executed(
            repository_name=repository.name,
            policy_key=policy.policy_key,
            action_type=outcome.action_type,
            status=outcome.status.value,
            details=outcome.details,
        )

    async def _create_issue(
        self,
        repository: TrackedRepository,
        policy: Policy,
        policy_config: PolicyConfig,
    ) -> list[ActionOutcome]:
        details = policy_config.issue_details or IssueDetails()
        title = details.title or default_issue_title(policy.policy_key)
        body = details.body or default_issue_body(policy.policy_key)
        labels = details.labels or list(DEFAULT_ISSUE_LABELS)

        open_issues = await self._github.get_open_issues(repository.github_repository_id, labels[0])
        wanted = title.casefold()
        duplicate = next((issue for issue in open_issues if issue.title.casefold() == wanted), None)
        if duplicate is not None:
            logger.info(
                "Duplicate issue already open, skipping",
                repository=repository.name,
                issue_url=duplicate.html_url,
            )
            return [
                ActionOutcome(ACTION_CREATE_ISSUE, ActionStatus.SKIPPED, f"Duplicate issue already exists: {duplicate.html_url}")
            ]

        issue = await self._github.create_issue(repository.github_repository_id, title, body, labels)
        logger.info("Issue created", repository=repository.name, issue_number=issue.number)
        return [ActionOutcome(ACTION_CREATE_ISSUE, ActionStatus.SUCCESS, f"Created issue #{issue.number}: {issue.html_url}")]

    async def _archive_repository(
        self,
        repository: TrackedRepository,
        policy: Policy,
        policy_config: PolicyConfig,
    ) -> list[ActionOutcome]:
        try:
            current = await self._github.get_repository(repository.github_repository_id)
            if current.archived:
                return [ActionOutcome(ACTION_ARCHIVE_REPO, ActionStatus.SKIPPED, "Repository is already archived")]
            await self._github.archive_repository(repository.github_repository_id)
        except GitHubNotFoundError as exc:
            logger.warning("Repository not found, cannot archive", repository=repository.name)
            return [ActionOutcome(ACTION_ARCHIVE_REPO, ActionStatus.FAILED, f"Repository not found: {exc.message}")]
        except GitHubForbiddenError as exc:
            logger.warning("Insufficient permissions to archive repository", repository=repository.name)
            return [
                ActionOutcome(ACTION_ARCHIVE_REPO, ActionStatus.FAILED, f"Insufficient permissions to archive: {exc.message}")
            ]

        repository.is_archived = True
        return [ActionOutcome(ACTION_ARCHIVE_REPO, ActionStatus.SUCCESS, "Repository archived")]

    async def _comment_on_open_pull_requests(
        self,
        repository: TrackedRepository,
        policy: Policy,
        policy_config: PolicyConfig,
    ) -> list[ActionOutcome]:
        pull_requests = await self._github.get_open_pull_requests(repository.github_repository_id)
        if not pull_requests:
            return [ActionOutcome(ACTION_COMMENT_ON_PRS, ActionStatus.SKIPPED, "No open pull requests found")]

        message = self.comment_message(policy_config)
        outcomes = []
        for pull_request in pull_requests:
            outcomes.append(
                await self._isolated(
                    ACTION_COMMENT_ON_PRS,
                    self.comment_on_pull_request(repository.github_repository_id, pull_request.number, message),
                )
            )
        return outcomes

    async def _block_open_pull_requests(
        self,
        repository: TrackedRepository,
        policy: Policy,
        policy_config: PolicyConfig,
    ) -> list[ActionOutcome]:
        pull_requests = await self._github.get_open_pull_requests(repository.github_repository_id)
        if not pull_requests:
            return [ActionOutcome(ACTION_BLOCK_PRS, ActionStatus.SKIPPED, "No open pull requests found")]

        outcomes = []
        for pull_request in pull_requests:
            outcomes.append(
                await self._isolated(
                    ACTION_BLOCK_PRS,
                    self.update_pull_request_status_check(
                        repository.github_repository_id,
                        pull_request.number,
                        pull_request.head_sha,
                        policy_config.status_check_name,
                        is_violated=True,
                    ),
                )
            )
        return outcomes

    async def _log_only(
        self,
        repository: TrackedRepository,
        policy: Policy,
        policy_config: PolicyConfig,
    ) -> list[ActionOutcome]:
        logger.info("Policy violation logged", repository=repository.name, policy_key=policy.policy_key)
        return [ActionOutcome(ACTION_LOG_ONLY, ActionStatus.SUCCESS, f"Violation of {policy.policy_key} logged")]

    async def _isolated(self, action: str, operation: Awaitable[ActionOutcome]) -> ActionOutcome:
        try:
            return await operation
        except Exception as exc:
            logger.error("Pull request action failed", action=action, error=str(exc))
            return ActionOutcome(action, ActionStatus.FAILED, f"Error: {exc}")

    # ------------------------------------------------------------------
    # PR-scoped operations (webhook path)
    # ------------------------------------------------------------------

    @staticmethod
    def comment_message(policy_config: PolicyConfig) -> str:
        if policy_config.pr_comment_details and policy_config.pr_comment_details.message:
            return policy_config.pr_comment_details.message
        return default_pr_comment([policy_config.policy_type])

    def _is_own_comment(self, user_login: str | None, user_type: str | None) -> bool:
        if self._bot_login is not None:
            return (user_login or "").lower() == self._bot_login
        return (user_type or "").lower() == "bot"

    async def comment_on_pull_request(
        self,
        repository_github_id: int,
        pull_request_number: int,
        message: str,
    ) -> ActionOutcome:
        """Comment on one pull request unless we already posted the same message.

        A comment counts as a duplicate when it is ours and starts with the
        first COMMENT_MATCH_PREFIX_LENGTH characters of `message`.
        """
        prefix = message[:COMMENT_MATCH_PREFIX_LENGTH]
        comments = await self._github.get_pull_request_comments(repository_github_id, pull_request_number)
        for comment in comments:
            if self._is_own_comment(comment.user_login, comment.user_type) and comment.body.startswith(prefix):
                return ActionOutcome(
                    ACTION_COMMENT_ON_PRS,
                    ActionStatus.SKIPPED,
                    f"Compliance comment already present on PR #{pull_request_number}",
                )

        await self._github.create_pull_request_comment(repository_github_id, pull_request_number, message)
        logger.info("Comment posted", repository_id=repository_github_id, pull_request=pull_request_number)
        return ActionOutcome(ACTION_COMMENT_ON_PRS, ActionStatus.SUCCESS, f"Commented on PR #{pull_request_number}")

    async def update_pull_request_status_check(
        self,
        repository_github_id: int,
        pull_request_number: int,
        head_sha: str,
        check_name: str,
        is_violated: bool,
    ) -> ActionOutcome:
        """Drive the named check on `head_sha` to failure or success.

        The target state depends only on `is_violated`. An existing check with
        the same name (case-insensitive) is updated in place; otherwise one is
        created.
        """
        if not head_sha:
            return ActionOutcome(
                ACTION_BLOCK_PRS,
                ActionStatus.SKIPPED,
                f"Head commit of PR #{pull_request_number} is unknown",
            )

        target = StatusCheckState.for_violation(is_violated)
        check_runs = await self._github.get_check_runs_for_ref(repository_github_id, head_sha)
        wanted = check_name.casefold()
        existing = next((run for run in check_runs if run.name.casefold() == wanted), None)
        previous = StatusCheckState.from_conclusion(existing.conclusion) if existing else StatusCheckState.ABSENT

        if existing is not None:
            await self._github.update_status_check(
                repository_github_id, existing.id, CHECK_STATUS_COMPLETED, target.value
            )
        else:
            await self._github.create_status_check(
                repository_github_id, head_sha, check_name, CHECK_STATUS_COMPLETED, target.value
            )

        logger.info(
            "Status check updated",
            repository_id=repository_github_id,
            pull_request=pull_request_number,
            check_name=check_name,
            previous=previous.value,
            current=target.value,
        )
        return ActionOutcome(
            ACTION_BLOCK_PRS,
            ActionStatus.SUCCESS,
            f"Status check '{check_name}' on PR #{pull_request_number} set to {target.value} (was {previous.value})",
        )

    async def process_pull_request_actions(
        self,
        repository_github_id: int,
        pull_request_number: int,
        head_sha: str,
        policy_config: PolicyConfig,
        is_violated: bool,
        repository: TrackedRepository | None = None,
        policy: Policy | None = None,
    ) -> list[ActionOutcome]:
        """Run the PR-scoped actions of one policy against one pull request.

        comment-on-prs runs only while the policy is violated. block-prs always
        runs so that a resolved violation flips the check back to success.
        Other actions are not PR-scoped and are ignored here. Outcomes are
        written to the action log when the repository and policy are tracked.
        """
        outcomes: list[ActionOutcome] = []
        for action in (canonical_action(a) for a in policy_config.actions):
            if action == ACTION_COMMENT_ON_PRS and is_violated:
                operation = self.comment_on_pull_request(
                    repository_github_id, pull_request_number, self.comment_message(policy_config)
                )
            elif action == ACTION_BLOCK_PRS:
                operation = self.update_pull_request_status_check(
                    repository_github_id,
                    pull_request_number,
                    head_sha,
                    policy_config.status_check_name,
                    is_violated,
                )
            else:
                continue

            outcome = await self._isolated(action, operation)
            outcomes.append(outcome)
            if repository is not None and policy is not None:
                await self._record(repository, policy, outcome)
        return outcomes
