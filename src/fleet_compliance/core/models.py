"""SQLAlchemy ORM models for the compliance pipeline.

All tables use the `fc_` prefix.

Models:
- TrackedRepository: a repository of the audited organization
- Policy           : a compliance rule keyed by its policy type
- Scan             : one fleet-wide evaluation run
- PolicyViolation  : a repository failing a policy within one scan
- ActionLog        : audit record of one attempted remediation

Ownership: a Scan owns its PolicyViolations. Deleting a TrackedRepository
removes its violations and action logs (done explicitly by the repository
layer). Policies are never deleted by the pipeline so historical violations
keep a valid reference.
"""

import enum
from datetime import UTC, datetime

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fleet_compliance.database import Base


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(UTC)


class ScanStatus(str, enum.Enum):
    """Scan lifecycle. IN_PROGRESS moves to exactly one terminal state."""

    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ActionStatus(str, enum.Enum):
    """Outcome of one remediation attempt."""

    SUCCESS = "Success"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class ComplianceStatus(str, enum.Enum):
    """Per-repository status as of the most recent evaluation."""

    PENDING = "Pending"
    COMPLIANT = "Compliant"
    NON_COMPLIANT = "NonCompliant"


class TrackedRepository(Base):
    """A repository under audit.

    Identity is the GitHub repository id, which survives renames. The name
    is the full `owner/name` and is updated in place when GitHub reports a
    new one for the same id.

    Attributes:
        github_repository_id: Stable GitHub id.
        name: Full repository name (owner/name).
        compliance_status: Pending | Compliant | NonCompliant.
        is_archived: Archived flag as last observed upstream.
        last_seen_at: When the repository last appeared in the fleet listing.
        last_scanned_at: When the repository was last evaluated.
    """

    __tablename__ = "fc_repositories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    github_repository_id: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
        index=True,
        comment="Stable GitHub repository id, immutable across renames",
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Full name owner/name, updated in place on rename",
    )
    compliance_status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=ComplianceStatus.PENDING.value,
        comment="Pending | Compliant | NonCompliant",
    )
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="Last time the repository appeared in the upstream fleet listing",
    )
    last_scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Policy(Base):
    """A compliance rule identified by its policy type key.

    Rows are inserted from the configuration at the start of each scan and
    never deleted, so violations recorded under a policy that was later
    removed from the configuration stay resolvable.

    Attributes:
        policy_key: Policy type string matched against evaluator types.
        name: Human-readable name from the configuration.
        description: Free text description.
        actions: Snapshot of the configured action list when first seen.
    """

    __tablename__ = "fc_policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    policy_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    actions: Mapped[list] = mapped_column(  # type: ignore[type-arg]
        JSON,
        nullable=False,
        default=list,
        comment="Ordered action identifiers as configured when the policy was first synced",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Scan(Base):
    """One fleet-wide evaluation run.

    Attributes:
        status: InProgress | Completed | Failed. Terminal states are immutable.
        started_at: Creation time.
        completed_at: Time the scan reached a terminal state.
        repository_count: Repositories evaluated.
        violation_count: Violations persisted against this scan.
        error_message: Top-level failure description for Failed scans.
    """

    __tablename__ = "fc_scans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=ScanStatus.IN_PROGRESS.value,
        index=True,
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    repository_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    violation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    violations: Mapped[list["PolicyViolation"]] = relationship(
        back_populates="scan",
        cascade="all, delete-orphan",
    )


class PolicyViolation(Base):
    """A repository failing one policy within exactly one scan.

    Violations from earlier scans are kept for trend analysis and never mutated.
    """

    __tablename__ = "fc_policy_violations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_id: Mapped[int] = mapped_column(
        ForeignKey("fc_scans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    repository_id: Mapped[int] = mapped_column(
        ForeignKey("fc_repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    policy_id: Mapped[int] = mapped_column(ForeignKey("fc_policies.id"), nullable=False, index=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)

    scan: Mapped[Scan] = relationship(back_populates="violations")
    repository: Mapped[TrackedRepository] = relationship()
    policy: Mapped[Policy] = relationship()


class ActionLog(Base):
    """Audit record of one attempted remediation.

    Every executed action writes exactly one row regardless of outcome.
    """

    __tablename__ = "fc_action_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repository_id: Mapped[int] = mapped_column(
        ForeignKey("fc_repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    policy_id: Mapped[int] = mapped_column(ForeignKey("fc_policies.id"), nullable=False, index=True)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, comment="Success | Failed | Skipped")
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    repository: Mapped[TrackedRepository] = relationship()
    policy: Mapped[Policy] = relationship()
