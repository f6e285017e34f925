"""SQLAlchemy repositories for the fleet-compliance primary database.

Each repository implements the corresponding interface from core/interfaces.py
and wraps one AsyncSession. Repositories flush but do not commit; the
session owner (request dependency or background job scope) commits, except
ScanRepository which exposes commit/rollback so scan status transitions are
durable independently of the scan body.

Repositories:
- TrackedRepositoryRepository: fleet membership and per-repository status
- PolicyRepository           : policy rows synced from configuration
- ScanRepository             : scan lifecycle
- ViolationRepository        : violations per scan
- ActionLogRepository        : remediation audit log
"""

from collections.abc import Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from fleet_compliance.core.models import (
    ActionLog,
    ComplianceStatus,
    Policy,
    PolicyViolation,
    Scan,
    ScanStatus,
    TrackedRepository,
    utcnow,
)
from fleet_compliance.errors import NotFoundError
from fleet_compliance.observability import get_logger

logger = get_logger(__name__)


class TrackedRepositoryRepository:
    """Persistence for TrackedRepository rows.

    Args:
        session: The primary DB async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_all(self) -> list[TrackedRepository]:
        """Return every tracked repository ordered by name."""
        result = await self._session.execute(select(TrackedRepository).order_by(TrackedRepository.name))
        return list(result.scalars().all())

    async def get_by_github_id(self, github_repository_id: int) -> TrackedRepository | None:
        """Look up a repository by its stable GitHub id."""
        result = await self._session.execute(
            select(TrackedRepository).where(TrackedRepository.github_repository_id == github_repository_id)
        )
        return result.scalar_one_or_none()

    async def add(self, github_repository_id: int, name: str, is_archived: bool = False) -> TrackedRepository:
        """Insert a newly observed repository with Pending status."""
        repository = TrackedRepository(
            github_repository_id=github_repository_id,
            name=name,
            is_archived=is_archived,
            compliance_status=ComplianceStatus.PENDING.value,
            last_seen_at=utcnow(),
        )
        self._session.add(repository)
        await self._session.flush()
        logger.info("Repository added", github_repository_id=github_repository_id, name=name)
        return repository

    async def delete_with_history(self, repository_ids: Sequence[int]) -> int:
        """Delete repositories together with their violations and action logs.

        Child rows are deleted explicitly so the cascade does not depend on
        the database enforcing foreign keys.

        Args:
            repository_ids: Primary keys of the repositories to remove.

        Returns:
            Number of repositories deleted.
        """
        if not repository_ids:
            return 0
        ids = list(repository_ids)
        await self._session.execute(delete(ActionLog).where(ActionLog.repository_id.in_(ids)))
        await self._session.execute(delete(PolicyViolation).where(PolicyViolation.repository_id.in_(ids)))
        result = await self._session.execute(delete(TrackedRepository).where(TrackedRepository.id.in_(ids)))
        await self._session.flush()
        return result.rowcount or 0

    async def count(self) -> int:
        result = await self._session.execute(select(func.count(TrackedRepository.id)))
        return int(result.scalar() or 0)


class PolicyRepository:
    """Persistence for Policy rows. Policies are never deleted here.

    Args:
        session: The primary DB async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_all(self) -> list[Policy]:
        result = await self._session.execute(select(Policy).order_by(Policy.id))
        return list(result.scalars().all())

    async def get_by_key(self, policy_key: str) -> Policy | None:
        """Look up a policy by its type key, case-insensitively."""
        result = await self._session.execute(
            select(Policy).where(func.lower(Policy.policy_key) == policy_key.strip().lower())
        )
        return result.scalars().first()

    async def add(
        self,
        policy_key: str,
        name: str,
        description: str | None,
        actions: list[str],
    ) -> Policy:
        """Insert a policy first seen in the configuration."""
        policy = Policy(policy_key=policy_key, name=name, description=description, actions=list(actions))
        self._session.add(policy)
        await self._session.flush()
        logger.info("Policy added", policy_key=policy_key, actions=actions)
        return policy


class ScanRepository:
    """Persistence for Scan rows and their status transitions.

    Args:
        session: The primary DB async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self) -> Scan:
        """Insert a new InProgress scan."""
        scan = Scan(status=ScanStatus.IN_PROGRESS.value, started_at=utcnow())
        self._session.add(scan)
        await self._session.flush()
        return scan

    async def get_by_id(self, scan_id: int) -> Scan:
        """Retrieve a scan by id.

        Raises:
            NotFoundError: If no scan exists with that id.
        """
        scan = await self._session.get(Scan, scan_id)
        if scan is None:
            raise NotFoundError(resource="Scan", resource_id=str(scan_id))
        return scan

    async def mark_completed(self, scan: Scan, repository_count: int, violation_count: int) -> Scan:
        """Move an InProgress scan to Completed."""
        self._ensure_in_progress(scan)
        scan.status = ScanStatus.COMPLETED.value
        scan.completed_at = utcnow()
        scan.repository_count = repository_count
        scan.violation_count = violation_count
        await self._session.flush()
        return scan

    async def mark_failed(self, scan_id: int, error_message: str) -> Scan:
        """Move an InProgress scan to Failed. Reloads the row after a rollback."""
        scan = await self.get_by_id(scan_id)
        self._ensure_in_progress(scan)
        scan.status = ScanStatus.FAILED.value
        scan.completed_at = utcnow()
        scan.error_message = error_message[:4000]
        await self._session.flush()
        return scan

    async def get_latest_completed(self) -> Scan | None:
        """Return the most recently completed scan, ignoring InProgress and Failed scans."""
        result = await self._session.execute(
            select(Scan)
            .where(Scan.status == ScanStatus.COMPLETED.value)
            .order_by(Scan.completed_at.desc(), Scan.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_recent(self, limit: int = 20, offset: int = 0) -> list[Scan]:
        result = await self._session.execute(
            select(Scan).order_by(Scan.started_at.desc(), Scan.id.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()

    @staticmethod
    def _ensure_in_progress(scan: Scan) -> None:
        if scan.status != ScanStatus.IN_PROGRESS.value:
            raise ValueError(f"Scan {scan.id} is already {scan.status}; terminal scans are immutable")


class ViolationRepository:
    """Persistence for PolicyViolation rows.

    Args:
        session: The primary DB async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_many(self, violations: Sequence[PolicyViolation]) -> int:
        """Persist a batch of violations."""
        self._session.add_all(list(violations))
        await self._session.flush()
        return len(violations)

    async def list_for_scan(self, scan_id: int) -> list[PolicyViolation]:
        """Return a scan's violations with repository and policy loaded."""
        result = await self._session.execute(
            select(PolicyViolation)
            .where(PolicyViolation.scan_id == scan_id)
            .options(selectinload(PolicyViolation.repository), selectinload(PolicyViolation.policy))
            .order_by(PolicyViolation.id)
        )
        return list(result.scalars().all())


class ActionLogRepository:
    """Append-only persistence for ActionLog rows.

    Args:
        session: The primary DB async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(
        self,
        repository_id: int,
        policy_id: int,
        action_type: str,
        status: str,
        details: str | None,
    ) -> ActionLog:
        """Record one action attempt."""
        entry = ActionLog(
            repository_id=repository_id,
            policy_id=policy_id,
            action_type=action_type,
            status=status,
            details=details,
            timestamp=utcnow(),
        )
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def list_recent(
        self,
        limit: int = 50,
        offset: int = 0,
        repository_id: int | None = None,
        status: str | None = None,
    ) -> list[ActionLog]:
        """Return the newest action log entries with repository and policy loaded."""
        stmt = select(ActionLog).options(selectinload(ActionLog.repository), selectinload(ActionLog.policy))
        if repository_id is not None:
            stmt = stmt.where(ActionLog.repository_id == repository_id)
        if status is not None:
            stmt = stmt.where(ActionLog.status == status)
        stmt = stmt.order_by(ActionLog.timestamp.desc(), ActionLog.id.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
