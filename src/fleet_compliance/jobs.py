"""Background job handlers and the shared application context.

Each handler opens its own database session, wires the services for that
unit of work and commits on success. Handlers raise on failure so the job
queue can retry them with backoff.

Topics:
- scan.run             : ScanningService.perform_scan
- scan.completed       : ActionService.process_actions_for_scan
- webhook.pull_request : PullRequestWebhookHandler.handle
"""

from dataclasses import dataclass
from functools import partial
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from fleet_compliance.adapters.job_queue import JobQueue
from fleet_compliance.adapters.kafka import ComplianceEventPublisher
from fleet_compliance.adapters.repositories import (
    ActionLogRepository,
    PolicyRepository,
    ScanRepository,
    TrackedRepositoryRepository,
    ViolationRepository,
)
from fleet_compliance.core.actions import ActionService
from fleet_compliance.core.configuration import ConfigurationService
from fleet_compliance.core.evaluation import PolicyEvaluationService
from fleet_compliance.core.interfaces import (
    JOB_SCAN_COMPLETED,
    JOB_SCAN_RUN,
    JOB_WEBHOOK_PULL_REQUEST,
    IGitHubClient,
    IUserDirectory,
)
from fleet_compliance.core.scanning import ScanningService
from fleet_compliance.core.webhooks import PullRequestEvent, PullRequestWebhookHandler
from fleet_compliance.database import session_scope
from fleet_compliance.observability import get_logger

logger = get_logger(__name__)


@dataclass
class AppContext:
    """Process-wide collaborators shared by requests and background jobs."""

    github: IGitHubClient
    config_service: ConfigurationService
    evaluation_service: PolicyEvaluationService
    job_queue: JobQueue
    event_publisher: ComplianceEventPublisher
    user_directory: IUserDirectory
    bot_login: str | None = None
    webhook_secret: str = ""
    auth_disabled: bool = False


def build_action_service(context: AppContext, session: AsyncSession) -> ActionService:
    return ActionService(
        github=context.github,
        config_provider=context.config_service,
        violation_repo=ViolationRepository(session),
        action_log_repo=ActionLogRepository(session),
        event_publisher=context.event_publisher,
        bot_login=context.bot_login,
    )


async def run_scan_job(context: AppContext, payload: dict[str, Any]) -> None:
    """Run one fleet scan."""
    async with session_scope() as session:
        service = ScanningService(
            github=context.github,
            config_provider=context.config_service,
            evaluation_service=context.evaluation_service,
            scan_repo=ScanRepository(session),
            policy_repo=PolicyRepository(session),
            tracked_repo_repo=TrackedRepositoryRepository(session),
            violation_repo=ViolationRepository(session),
            job_queue=context.job_queue,
            event_publisher=context.event_publisher,
        )
        scan = await service.perform_scan()
        logger.info("Scan job finished", scan_id=scan.id, status=scan.status, trigger=payload.get("trigger"))


async def process_scan_actions_job(context: AppContext, payload: dict[str, Any]) -> None:
    """Execute remediation actions for a completed scan."""
    scan_id = int(payload["scan_id"])
    async with session_scope() as session:
        await build_action_service(context, session).process_actions_for_scan(scan_id)


async def handle_pull_request_job(context: AppContext, payload: dict[str, Any]) -> None:
    """Re-evaluate one repository for a pull request event."""
    event = PullRequestEvent(**payload)
    async with session_scope() as session:
        handler = PullRequestWebhookHandler(
            github=context.github,
            config_provider=context.config_service,
            evaluation_service=context.evaluation_service,
            action_service=build_action_service(context, session),
            tracked_repo_repo=TrackedRepositoryRepository(session),
            policy_repo=PolicyRepository(session),
        )
        await handler.handle(event)


def register_job_handlers(context: AppContext) -> None:
    """Bind every pipeline topic to its handler on the context's queue."""
    context.job_queue.register(JOB_SCAN_RUN, partial(run_scan_job, context))
    context.job_queue.register(JOB_SCAN_COMPLETED, partial(process_scan_actions_job, context))
    context.job_queue.register(JOB_WEBHOOK_PULL_REQUEST, partial(handle_pull_request_job, context))
