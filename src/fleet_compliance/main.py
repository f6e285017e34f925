"""fleet-compliance-engine service entry point.

Initializes the FastAPI application with:
- Primary database for repositories, policies, scans, violations, and action logs
- GitHub client with the process-wide installation token cache
- Policy configuration service with its sliding-expiration cache
- Background job queue and the daily scan scheduler
- Kafka publisher for compliance domain events (optional)
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from fleet_compliance.adapters.github_client import GitHubClient
from fleet_compliance.adapters.job_queue import DailyScheduler, JobQueue, parse_daily_time
from fleet_compliance.adapters.kafka import ComplianceEventPublisher
from fleet_compliance.adapters.token_cache import InstallationTokenCache
from fleet_compliance.api.router import router, webhook_router
from fleet_compliance.core.configuration import ConfigurationCache, ConfigurationService
from fleet_compliance.core.evaluation import PolicyEvaluationService
from fleet_compliance.core.evaluators import build_default_registry
from fleet_compliance.core.interfaces import JOB_SCAN_RUN
from fleet_compliance.database import close_database, create_schema, init_database
from fleet_compliance.jobs import AppContext, register_job_handlers
from fleet_compliance.observability import configure_logging, get_logger
from fleet_compliance.settings import Settings

logger = get_logger(__name__)

settings = Settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    Args:
        app: The FastAPI application instance.

    Yields:
        None
    """
    configure_logging(settings.log_level, settings.log_json)

    # Startup: primary database
    logger.info("Initializing primary database", service=settings.service_name)
    await init_database(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    if settings.auto_create_schema:
        await create_schema()

    # Startup: GitHub client and caches
    github = GitHubClient(
        app_id=settings.github_app_id,
        private_key=settings.github_app_private_key,
        installation_id=settings.github_installation_id,
        organization=settings.github_organization,
        token_cache=InstallationTokenCache(refresh_margin=timedelta(minutes=settings.token_refresh_margin_minutes)),
        base_url=settings.github_api_url,
        timeout_seconds=settings.github_request_timeout_seconds,
        rate_limit_warning_threshold=settings.rate_limit_warning_threshold,
    )
    config_service = ConfigurationService(
        source=github,
        cache=ConfigurationCache(sliding_window=timedelta(minutes=settings.config_cache_minutes)),
        repository_name=settings.config_repository,
        path=settings.config_path,
    )

    # Startup: Kafka publisher
    publisher = ComplianceEventPublisher(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        service_name=settings.service_name,
    )
    if settings.kafka_enabled:
        logger.info("Initializing Kafka publisher", bootstrap_servers=settings.kafka_bootstrap_servers)
        await publisher.start()

    # Startup: background jobs
    job_queue = JobQueue(
        worker_count=settings.job_worker_count,
        max_attempts=settings.job_max_attempts,
        backoff_base_seconds=settings.job_backoff_base_seconds,
        backoff_max_seconds=settings.job_backoff_max_seconds,
    )
    context = AppContext(
        github=github,
        config_service=config_service,
        evaluation_service=PolicyEvaluationService(build_default_registry(github)),
        job_queue=job_queue,
        event_publisher=publisher,
        user_directory=github,
        bot_login=f"{settings.github_app_slug}[bot]" if settings.github_app_slug else None,
        webhook_secret=settings.github_webhook_secret,
        auth_disabled=settings.auth_disabled,
    )
    register_job_handlers(context)
    job_queue.start()

    scheduler: DailyScheduler | None = None
    if settings.scan_schedule_enabled:
        scheduler = DailyScheduler(job_queue, JOB_SCAN_RUN, parse_daily_time(settings.scan_schedule_utc))
        scheduler.start()

    app.state.context = context
    app.state.settings = settings

    logger.info(
        "Fleet compliance engine startup complete",
        organization=settings.github_organization,
        schedule=settings.scan_schedule_utc if settings.scan_schedule_enabled else None,
    )

    yield

    # Shutdown
    logger.info("Shutting down fleet compliance engine")
    if scheduler is not None:
        await scheduler.stop()
    await job_queue.stop()
    await publisher.stop()
    await github.aclose()
    await close_database()
    logger.info("Fleet compliance engine shutdown complete")


app = FastAPI(title="fleet-compliance-engine", version="0.1.0", lifespan=lifespan)

app.include_router(router, prefix="/api/v1")
app.include_router(webhook_router, prefix="/api/webhooks")


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    """Liveness probe."""
    return {"status": "ok", "service": settings.service_name}
