"""Pydantic request and response schemas for the fleet-compliance API.

All API inputs and outputs use Pydantic models, never raw dicts.
Schemas are grouped by resource type.

Resources:
- Scan: scan history and on-demand triggering
- Dashboard: fleet compliance summary
- ActionLog: remediation audit log
- Job: background job status
- Webhook: delivery acknowledgement
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Scan schemas
# ---------------------------------------------------------------------------


class ScanResponse(BaseModel):
    """Response schema for one scan."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(description="Scan id")
    status: str = Field(description="InProgress | Completed | Failed")
    started_at: datetime = Field(description="Scan start (UTC)")
    completed_at: datetime | None = Field(default=None, description="Terminal transition time (UTC)")
    repository_count: int = Field(default=0, description="Repositories evaluated")
    violation_count: int = Field(default=0, description="Violations recorded")
    error_message: str | None = Field(default=None, description="Failure description for Failed scans")


class ScanListResponse(BaseModel):
    """Paginated scan history, newest first."""

    items: list[ScanResponse]
    limit: int
    offset: int


class ScanTriggerResponse(BaseModel):
    """Response for an on-demand scan request."""

    job_id: str = Field(description="Background job id running the scan")
    status: str = Field(default="enqueued")


# ---------------------------------------------------------------------------
# Dashboard schemas
# ---------------------------------------------------------------------------


class NonCompliantRepositoryResponse(BaseModel):
    """A repository with at least one violation in the latest completed scan."""

    id: int = Field(description="Tracked repository id")
    name: str = Field(description="Full repository name (owner/name)")
    url: str = Field(description="Repository URL on GitHub")
    violated_policies: list[str] = Field(description="Policy keys violated in the latest completed scan")


class DashboardResponse(BaseModel):
    """Fleet compliance summary computed from the latest completed scan."""

    total_repositories: int = Field(description="Tracked repositories (R)")
    compliant_repositories: int = Field(description="R minus repositories with violations")
    non_compliant_repositories: int = Field(description="Repositories with at least one violation")
    compliance_percentage: float = Field(description="100 * compliant / R; 100 when R is 0")
    latest_scan: ScanResponse | None = Field(default=None, description="Scan the figures are based on")
    repositories: list[NonCompliantRepositoryResponse] = Field(
        default_factory=list,
        description="Non-compliant repositories matching the name filter",
    )


# ---------------------------------------------------------------------------
# ActionLog schemas
# ---------------------------------------------------------------------------


class ActionLogResponse(BaseModel):
    """One remediation attempt."""

    id: int
    repository_id: int
    repository_name: str | None = None
    policy_id: int
    policy_key: str | None = None
    action_type: str = Field(description="Normalized action identifier")
    status: str = Field(description="Success | Failed | Skipped")
    details: str | None = Field(default=None, description="Issue URL, skip reason, or error message")
    timestamp: datetime


class ActionLogListResponse(BaseModel):
    items: list[ActionLogResponse]
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Job schemas
# ---------------------------------------------------------------------------


class JobResponse(BaseModel):
    """Background job state for the operational jobs view."""

    id: str
    topic: str
    status: str = Field(description="enqueued | running | retry_scheduled | succeeded | failed")
    attempts: int
    last_error: str | None = None
    enqueued_at: datetime
    finished_at: datetime | None = None


class JobListResponse(BaseModel):
    items: list[JobResponse]


# ---------------------------------------------------------------------------
# Configuration and webhook schemas
# ---------------------------------------------------------------------------


class ConfigurationRefreshResponse(BaseModel):
    """Summary of a freshly loaded policy configuration."""

    authorized_team: str | None
    policy_count: int
    policy_types: list[str]


class WebhookAcceptedResponse(BaseModel):
    """Acknowledgement returned to GitHub for every authentic delivery."""

    status: str = Field(description="accepted | ignored | pong")
    event: str | None = None
    delivery_id: str | None = None
    job_id: str | None = None
