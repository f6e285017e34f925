"""Scan orchestrator.

One call to ScanningService.perform_scan() runs a complete fleet cycle:

1. create the Scan (InProgress, committed immediately)
2. load the policy configuration
3. insert policies first seen in the configuration
4. list the organization's repositories
5. reconcile tracked repositories: insert new, rename in place, delete vanished
6. evaluate every repository
7. persist the violations
8. mark the Scan Completed
9. enqueue action processing for the scan

Any exception in steps 2-8 rolls back the scan body and marks the Scan
Failed. Action processing runs as a separate job; its failures never touch
the scan.
"""

from collections.abc import Sequence

from fleet_compliance.adapters.github_models import GitHubRepository
from fleet_compliance.core.config_models import AppConfig
from fleet_compliance.core.evaluation import PolicyEvaluationService
from fleet_compliance.core.interfaces import (
    JOB_SCAN_COMPLETED,
    IComplianceEventPublisher,
    IConfigurationProvider,
    IGitHubClient,
    IJobQueue,
    IPolicyRepository,
    IScanRepository,
    ITrackedRepositoryRepository,
    IViolationRepository,
)
from fleet_compliance.core.models import (
    ComplianceStatus,
    Policy,
    PolicyViolation,
    Scan,
    ScanStatus,
    TrackedRepository,
    utcnow,
)
from fleet_compliance.observability import get_logger

logger = get_logger(__name__)


class ScanningService:
    """Drives fleet-wide scans.

    Args:
        github: GitHub client.
        config_provider: Cached policy configuration.
        evaluation_service: Policy evaluation engine.
        scan_repo: Scan persistence (owns commit/rollback of the session).
        policy_repo: Policy persistence.
        tracked_repo_repo: Tracked repository persistence.
        violation_repo: Violation persistence.
        job_queue: Queue receiving the follow-on action job.
        event_publisher: Kafka publisher (best-effort).
    """

    def __init__(
        self,
        github: IGitHubClient,
        config_provider: IConfigurationProvider,
        evaluation_service: PolicyEvaluationService,
        scan_repo: IScanRepository,
        policy_repo: IPolicyRepository,
        tracked_repo_repo: ITrackedRepositoryRepository,
        violation_repo: IViolationRepository,
        job_queue: IJobQueue,
        event_publisher: IComplianceEventPublisher,
    ) -> None:
        self._github = github
        self._config_provider = config_provider
        self._evaluation_service = evaluation_service
        self._scan_repo = scan_repo
        self._policy_repo = policy_repo
        self._tracked_repo_repo = tracked_repo_repo
        self._violation_repo = violation_repo
        self._job_queue = job_queue
        self._event_publisher = event_publisher

    async def perform_scan(self) -> Scan:
        """Run one complete scan.

        Returns:
            The scan in its terminal state (Completed or Failed).
        """
        scan = await self._scan_repo.create()
        await self._scan_repo.commit()
        scan_id = scan.id
        logger.info("Scan started", scan_id=scan_id)

        try:
            config = await self._config_provider.get_config()
            policies = await self._sync_policies(config)
            live_repositories = await self._github.list_organization_repositories()
            tracked = await self._sync_repositories(live_repositories)
            violations = await self._evaluate(scan_id, live_repositories, tracked, policies, config)
            await self._violation_repo.add_many(violations)
            await self._scan_repo.mark_completed(scan, len(live_repositories), len(violations))
            await self._scan_repo.commit()
        except Exception as exc:
            logger.error("Scan failed", scan_id=scan_id, error=str(exc), exc_info=True)
            await self._scan_repo.rollback()
            scan = await self._scan_repo.mark_failed(scan_id, f"{type(exc).__name__}: {exc}")
            await self._scan_repo.commit()
            await self._event_publisher.publish_scan_finished(
                scan_id=scan_id,
                status=ScanStatus.FAILED.value,
                repository_count=0,
                violation_count=0,
                error_message=scan.error_message,
            )
            return scan

        logger.info(
            "Scan completed",
            scan_id=scan_id,
            repositories=scan.repository_count,
            violations=scan.violation_count,
        )
        await self._event_publisher.publish_scan_finished(
            scan_id=scan_id,
            status=ScanStatus.COMPLETED.value,
            repository_count=scan.repository_count,
            violation_count=scan.violation_count,
        )
        self._job_queue.enqueue(JOB_SCAN_COMPLETED, {"scan_id": scan_id})
        return scan

    async def _sync_policies(self, config: AppConfig) -> dict[str, Policy]:
        """Insert policies first seen in the configuration. Existing rows are kept as-is."""
        policies = {policy.policy_key.lower(): policy for policy in await self._policy_repo.list_all()}
        for policy_config in config.policies:
            key = policy_config.policy_type.strip()
            if not key or key.lower() in policies:
                continue
            policies[key.lower()] = await self._policy_repo.add(
                policy_key=key,
                name=policy_config.name or key,
                description=policy_config.description,
                actions=policy_config.normalized_actions,
            )
        return policies

    async def _sync_repositories(
        self,
        live_repositories: Sequence[GitHubRepository],
    ) -> dict[int, TrackedRepository]:
        """Reconcile tracked repositories with the live listing by GitHub id.

        Returns:
            Tracked repositories still present upstream, keyed by GitHub id.
        """
        local = await self._tracked_repo_repo.list_all()
        by_github_id = {repository.github_repository_id: repository for repository in local}
        live_ids = {repository.id for repository in live_repositories}
        now = utcnow()

        for live in live_repositories:
            tracked = by_github_id.get(live.id)
            if tracked is None:
                by_github_id[live.id] = await self._tracked_repo_repo.add(live.id, live.full_name, live.archived)
                continue
            if tracked.name != live.full_name:
                logger.info(
                    "Repository renamed upstream",
                    github_repository_id=live.id,
                    old_name=tracked.name,
                    new_name=live.full_name,
                )
                tracked.name = live.full_name
            tracked.is_archived = live.archived
            tracked.last_seen_at = now

        stale = [repository for repository in local if repository.github_repository_id not in live_ids]
        if stale:
            logger.info(
                "Removing repositories no longer present upstream",
                repositories=[repository.name for repository in stale],
            )
            await self._tracked_repo_repo.delete_with_history([repository.id for repository in stale])

        return {github_id: repo for github_id, repo in by_github_id.items() if github_id in live_ids}

    async def _evaluate(
        self,
        scan_id: int,
        live_repositories: Sequence[GitHubRepository],
        tracked: dict[int, TrackedRepository],
        policies: dict[str, Policy],
        config: AppConfig,
    ) -> list[PolicyViolation]:
        violations: list[PolicyViolation] = []
        for live in live_repositories:
            repository = tracked[live.id]
            findings = await self._evaluation_service.evaluate_repository(live, config.policies)
            now = utcnow()
            for finding in findings:
                policy = policies[finding.policy_type.strip().lower()]
                violations.append(
                    PolicyViolation(
                        scan_id=scan_id,
                        repository_id=repository.id,
                        policy_id=policy.id,
                        detected_at=now,
                        details=finding.details,
                    )
                )
            repository.compliance_status = (
                ComplianceStatus.NON_COMPLIANT.value if findings else ComplianceStatus.COMPLIANT.value
            )
            repository.last_scanned_at = now
        return violations
