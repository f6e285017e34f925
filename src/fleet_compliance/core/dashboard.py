"""Read-side services: fleet compliance summary and action audit log.

Figures always come from the latest Completed scan. InProgress and Failed
scans never contribute, whatever their start time.
"""

from fleet_compliance.api.schemas import (
    ActionLogResponse,
    DashboardResponse,
    NonCompliantRepositoryResponse,
    ScanResponse,
)
from fleet_compliance.core.interfaces import (
    IActionLogRepository,
    IScanRepository,
    ITrackedRepositoryRepository,
    IViolationRepository,
)
from fleet_compliance.observability import get_logger

logger = get_logger(__name__)

GITHUB_WEB_URL = "https://github.com"


def compute_compliance(total_repositories: int, non_compliant_repositories: int) -> tuple[int, float]:
    """Return (compliant count, compliance percentage).

    Args:
        total_repositories: R, the tracked fleet size.
        non_compliant_repositories: V, repositories with at least one violation.

    Returns:
        R - V and 100 * (R - V) / R, with 100.0 for an empty fleet.
    """
    compliant = total_repositories - non_compliant_repositories
    if total_repositories == 0:
        return compliant, 100.0
    return compliant, 100.0 * compliant / total_repositories


class DashboardService:
    """Builds the dashboard summary and the action log view.

    Args:
        tracked_repo_repo: Tracked repository persistence.
        scan_repo: Scan persistence.
        violation_repo: Violation persistence.
        action_log_repo: Action log persistence.
    """

    def __init__(
        self,
        tracked_repo_repo: ITrackedRepositoryRepository,
        scan_repo: IScanRepository,
        violation_repo: IViolationRepository,
        action_log_repo: IActionLogRepository,
    ) -> None:
        self._tracked_repo_repo = tracked_repo_repo
        self._scan_repo = scan_repo
        self._violation_repo = violation_repo
        self._action_log_repo = action_log_repo

    async def get_dashboard(self, name_filter: str | None = None) -> DashboardResponse:
        """Summarize fleet compliance from the latest completed scan.

        Args:
            name_filter: Optional case-insensitive substring of the repository name.

        Returns:
            Totals over the whole fleet; the repository list honours the filter.
        """
        latest = await self._scan_repo.get_latest_completed()
        if latest is None:
            logger.info("No completed scan yet, returning empty dashboard")
            return DashboardResponse(
                total_repositories=0,
                compliant_repositories=0,
                non_compliant_repositories=0,
                compliance_percentage=100.0,
            )

        total = await self._tracked_repo_repo.count()
        violations = await self._violation_repo.list_for_scan(latest.id)

        violated_by_repository: dict[int, list[str]] = {}
        names: dict[int, str] = {}
        for violation in violations:
            keys = violated_by_repository.setdefault(violation.repository_id, [])
            if violation.policy.policy_key not in keys:
                keys.append(violation.policy.policy_key)
            names[violation.repository_id] = violation.repository.name

        compliant, percentage = compute_compliance(total, len(violated_by_repository))

        needle = (name_filter or "").strip().lower()
        repositories = [
            NonCompliantRepositoryResponse(
                id=repository_id,
                name=names[repository_id],
                url=f"{GITHUB_WEB_URL}/{names[repository_id]}",
                violated_policies=policy_keys,
            )
            for repository_id, policy_keys in violated_by_repository.items()
            if needle in names[repository_id].lower()
        ]
        repositories.sort(key=lambda repository: repository.name.lower())

        return DashboardResponse(
            total_repositories=total,
            compliant_repositories=compliant,
            non_compliant_repositories=len(violated_by_repository),
            compliance_percentage=round(percentage, 2),
            latest_scan=ScanResponse.model_validate(latest),
            repositories=repositories,
        )

    async def list_scans(self, limit: int = 20, offset: int = 0) -> list[ScanResponse]:
        """Scan history, newest first."""
        scans = await self._scan_repo.list_recent(limit=limit, offset=offset)
        return [ScanResponse.model_validate(scan) for scan in scans]

    async def get_scan(self, scan_id: int) -> ScanResponse:
        """One scan by id.

        Raises:
            NotFoundError: If the scan does not exist.
        """
        return ScanResponse.model_validate(await self._scan_repo.get_by_id(scan_id))

    async def list_action_logs(
        self,
        limit: int = 50,
        offset: int = 0,
        repository_id: int | None = None,
        status: str | None = None,
    ) -> list[ActionLogResponse]:
        """Newest action log entries, optionally filtered."""
        entries = await self._action_log_repo.list_recent(
            limit=limit,
            offset=offset,
            repository_id=repository_id,
            status=status,
        )
        return [
            ActionLogResponse(
                id=entry.id,
                repository_id=entry.repository_id,
                repository_name=entry.repository.name if entry.repository else None,
                policy_id=entry.policy_id,
                policy_key=entry.policy.policy_key if entry.policy else None,
                action_type=entry.action_type,
                status=entry.status,
                details=entry.details,
                timestamp=entry.timestamp,
            )
            for entry in entries
        ]
