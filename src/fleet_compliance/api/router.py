"""API routers for fleet-compliance-engine.

`router` is included under /api/v1 and `webhook_router` under /api/webhooks
in main.py. Routes are thin; all business logic lives in the service layer.

Endpoints:
- POST        /api/webhooks/github           : GitHub webhook ingestion (HMAC-signed)
- GET         /api/v1/dashboard              : Fleet compliance summary
- GET/POST    /api/v1/scans                  : Scan history / enqueue an on-demand scan
- GET         /api/v1/scans/{id}             : One scan
- GET         /api/v1/action-logs            : Remediation audit log
- GET         /api/v1/jobs                   : Background job status
- POST        /api/v1/configuration/refresh  : Reload the policy configuration now

Operator endpoints require `Authorization: Bearer <github-user-token>` of an
active member of the configured team, unless authorization is disabled.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_compliance.adapters.job_queue import JobStatus
from fleet_compliance.adapters.repositories import (
    ActionLogRepository,
    ScanRepository,
    TrackedRepositoryRepository,
    ViolationRepository,
)
from fleet_compliance.api.schemas import (
    ActionLogListResponse,
    ConfigurationRefreshResponse,
    DashboardResponse,
    JobListResponse,
    JobResponse,
    ScanListResponse,
    ScanResponse,
    ScanTriggerResponse,
    WebhookAcceptedResponse,
)
from fleet_compliance.core.authorization import AuthorizationService
from fleet_compliance.core.dashboard import DashboardService
from fleet_compliance.core.interfaces import JOB_SCAN_RUN
from fleet_compliance.core.webhooks import WebhookService, WebhookSignatureError
from fleet_compliance.database import get_db_session
from fleet_compliance.errors import ConfigurationNotFoundError, InvalidConfigurationError, NotFoundError
from fleet_compliance.jobs import AppContext
from fleet_compliance.observability import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["compliance"])
webhook_router = APIRouter(tags=["webhooks"])


# ---------------------------------------------------------------------------
# Dependency factories: wire repositories, services, and clients together
# ---------------------------------------------------------------------------


def get_app_context(request: Request) -> AppContext:
    """Return the process-wide context created in the lifespan handler."""
    return request.app.state.context


def get_dashboard_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> DashboardService:
    """Construct DashboardService with injected repositories.

    Args:
        session: Primary DB session.

    Returns:
        Fully wired DashboardService instance.
    """
    return DashboardService(
        tracked_repo_repo=TrackedRepositoryRepository(session),
        scan_repo=ScanRepository(session),
        violation_repo=ViolationRepository(session),
        action_log_repo=ActionLogRepository(session),
    )


def get_webhook_service(context: Annotated[AppContext, Depends(get_app_context)]) -> WebhookService:
    return WebhookService(job_queue=context.job_queue, secret=context.webhook_secret)


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() not in ("bearer", "token") or not token.strip():
        return None
    return token.strip()


async def require_operator(
    context: Annotated[AppContext, Depends(get_app_context)],
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Allow only members of the configured team.

    Raises:
        HTTPException: 401 without a token, 403 when the user is not authorized.
    """
    service = AuthorizationService(
        directory=context.user_directory,
        config_provider=context.config_service,
        disabled=context.auth_disabled,
    )
    token = _bearer_token(authorization)
    if token is None and not context.auth_disabled:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="GitHub user token required")
    if not await service.is_user_authorized(token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a member of the authorized team")


# ---------------------------------------------------------------------------
# Webhook endpoint
# ---------------------------------------------------------------------------


@webhook_router.post("/github", response_model=WebhookAcceptedResponse)
async def receive_github_webhook(
    request: Request,
    service: Annotated[WebhookService, Depends(get_webhook_service)],
    x_hub_signature_256: Annotated[str | None, Header()] = None,
    x_github_event: Annotated[str | None, Header()] = None,
    x_github_delivery: Annotated[str | None, Header()] = None,
) -> WebhookAcceptedResponse:
    """Authenticate a GitHub delivery and enqueue it.

    Returns immediately; evaluation runs as a background job.

    Raises:
        HTTPException: 401 for a missing or invalid signature.
    """
    body = await request.body()
    try:
        receipt = service.receive(
            body=body,
            signature=x_hub_signature_256,
            event_type=x_github_event,
            delivery_id=x_github_delivery,
        )
    except WebhookSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.message) from exc

    return WebhookAcceptedResponse(
        status=receipt.status,
        event=receipt.event,
        delivery_id=receipt.delivery_id,
        job_id=receipt.job_id,
    )


# ---------------------------------------------------------------------------
# Dashboard and scan endpoints
# ---------------------------------------------------------------------------


@router.get("/dashboard", response_model=DashboardResponse, dependencies=[Depends(require_operator)])
async def get_dashboard(
    service: Annotated[DashboardService, Depends(get_dashboard_service)],
    name: str | None = Query(default=None, description="Case-insensitive repository name filter"),
) -> DashboardResponse:
    """Fleet compliance summary from the latest completed scan."""
    return await service.get_dashboard(name_filter=name)


@router.get("/scans", response_model=ScanListResponse, dependencies=[Depends(require_operator)])
async def list_scans(
    service: Annotated[DashboardService, Depends(get_dashboard_service)],
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> ScanListResponse:
    """Scan history, newest first."""
    return ScanListResponse(items=await service.list_scans(limit=limit, offset=offset), limit=limit, offset=offset)


@router.get("/scans/{scan_id}", response_model=ScanResponse, dependencies=[Depends(require_operator)])
async def get_scan(
    scan_id: int,
    service: Annotated[DashboardService, Depends(get_dashboard_service)],
) -> ScanResponse:
    """One scan by id."""
    try:
        return await service.get_scan(scan_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc


@router.post(
    "/scans",
    response_model=ScanTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_operator)],
)
async def trigger_scan(context: Annotated[AppContext, Depends(get_app_context)]) -> ScanTriggerResponse:
    """Enqueue an on-demand fleet scan."""
    job_id = context.job_queue.enqueue(JOB_SCAN_RUN, {"trigger": "manual"})
    logger.info("POST /scans", job_id=job_id)
    return ScanTriggerResponse(job_id=job_id)


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


@router.get("/action-logs", response_model=ActionLogListResponse, dependencies=[Depends(require_operator)])
async def list_action_logs(
    service: Annotated[DashboardService, Depends(get_dashboard_service)],
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    repository_id: int | None = Query(default=None, description="Filter by tracked repository id"),
    action_status: str | None = Query(default=None, alias="status", description="Success | Failed | Skipped"),
) -> ActionLogListResponse:
    """Remediation audit log, newest first."""
    items = await service.list_action_logs(
        limit=limit,
        offset=offset,
        repository_id=repository_id,
        status=action_status,
    )
    return ActionLogListResponse(items=items, limit=limit, offset=offset)


@router.get("/jobs", response_model=JobListResponse, dependencies=[Depends(require_operator)])
async def list_jobs(
    context: Annotated[AppContext, Depends(get_app_context)],
    job_status: JobStatus | None = Query(default=None, alias="status"),
) -> JobListResponse:
    """Background jobs known to this process, including permanently failed ones."""
    jobs = context.job_queue.list_jobs(status=job_status)
    return JobListResponse(
        items=[
            JobResponse(
                id=job.id,
                topic=job.topic,
                status=job.status.value,
                attempts=job.attempts,
                last_error=job.last_error,
                enqueued_at=job.enqueued_at,
                finished_at=job.finished_at,
            )
            for job in jobs
        ]
    )


@router.post(
    "/configuration/refresh",
    response_model=ConfigurationRefreshResponse,
    dependencies=[Depends(require_operator)],
)
async def refresh_configuration(
    context: Annotated[AppContext, Depends(get_app_context)],
) -> ConfigurationRefreshResponse:
    """Bypass the cache and reload the policy configuration from GitHub."""
    try:
        config = await context.config_service.get_config(force_refresh=True)
    except ConfigurationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc
    except InvalidConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.message) from exc

    return ConfigurationRefreshResponse(
        authorized_team=config.access_control.authorized_team,
        policy_count=len(config.policies),
        policy_types=[policy.policy_type for policy in config.policies],
    )
