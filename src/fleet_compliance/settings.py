"""Service-specific settings for fleet-compliance-engine.

All settings use the FLEET_COMPLIANCE_ prefix and cover:
- Primary database connection
- GitHub App credentials and REST API access
- Policy configuration document location and caching
- Background job scheduling and retry
- Kafka domain event publishing
- Logging output
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for fleet-compliance-engine.

    Environment variable prefix: FLEET_COMPLIANCE_
    """

    service_name: str = "fleet-compliance-engine"

    # -------------------------------------------------------------------------
    # Primary database
    # -------------------------------------------------------------------------

    database_url: str = Field(
        default="sqlite+aiosqlite:///./fleet_compliance.db",
        description="SQLAlchemy async URL. Use postgresql+asyncpg://... in production.",
    )
    database_pool_size: int = Field(
        default=10,
        description="Connection pool size. Ignored for SQLite.",
    )
    database_max_overflow: int = Field(
        default=5,
        description="Max overflow connections above database_pool_size. Ignored for SQLite.",
    )
    auto_create_schema: bool = Field(
        default=False,
        description="Create tables on startup instead of relying on Alembic migrations.",
    )

    # -------------------------------------------------------------------------
    # GitHub App
    # -------------------------------------------------------------------------

    github_api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL. Override for GitHub Enterprise Server.",
    )
    github_app_id: int = Field(
        default=0,
        description="Numeric GitHub App id, used as the JWT issuer.",
    )
    github_app_private_key: str = Field(
        default="",
        description="PEM-encoded RSA private key of the GitHub App.",
    )
    github_installation_id: int = Field(
        default=0,
        description="Installation id of the App on the audited organization.",
    )
    github_organization: str = Field(
        default="",
        description="Login of the organization whose repositories are audited.",
    )
    github_app_slug: str = Field(
        default="",
        description="App slug. Comments authored by '<slug>[bot]' are treated as our own.",
    )
    github_webhook_secret: str = Field(
        default="",
        description="Shared secret used to verify X-Hub-Signature-256 on webhook deliveries.",
    )
    github_request_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for individual GitHub REST calls.",
    )
    rate_limit_warning_threshold: int = Field(
        default=100,
        description="Log a warning once X-RateLimit-Remaining drops below this value.",
    )
    token_refresh_margin_minutes: int = Field(
        default=5,
        description="Installation tokens are evicted this many minutes before they expire.",
    )

    # -------------------------------------------------------------------------
    # Policy configuration document
    # -------------------------------------------------------------------------

    config_repository: str = Field(
        default=".github",
        description="Repository in the organization holding the policy configuration.",
    )
    config_path: str = Field(
        default="config.yaml",
        description="Path of the YAML configuration inside config_repository.",
    )
    config_cache_minutes: int = Field(
        default=15,
        description="Sliding expiration of the cached configuration.",
    )

    # -------------------------------------------------------------------------
    # Background jobs
    # -------------------------------------------------------------------------

    scan_schedule_enabled: bool = Field(
        default=True,
        description="Run the recurring fleet scan.",
    )
    scan_schedule_utc: str = Field(
        default="00:00",
        description="Daily scan time in UTC, HH:MM.",
    )
    job_worker_count: int = Field(
        default=2,
        description="Number of concurrent background job workers.",
    )
    job_max_attempts: int = Field(
        default=5,
        description="Attempts per job before it is marked failed.",
    )
    job_backoff_base_seconds: float = Field(
        default=5.0,
        description="First retry delay; doubles on every further attempt.",
    )
    job_backoff_max_seconds: float = Field(
        default=600.0,
        description="Upper bound for the retry delay.",
    )

    # -------------------------------------------------------------------------
    # Kafka domain events
    # -------------------------------------------------------------------------

    kafka_enabled: bool = Field(
        default=False,
        description="Publish scan and action events to Kafka.",
    )
    kafka_bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Comma-separated Kafka bootstrap servers.",
    )

    # -------------------------------------------------------------------------
    # Logging and access
    # -------------------------------------------------------------------------

    log_level: str = Field(default="info", description="Root log level.")
    log_json: bool = Field(default=False, description="Render log events as JSON lines.")
    auth_disabled: bool = Field(
        default=False,
        description="Skip team-membership checks on operator endpoints (local and test use only).",
    )

    model_config = SettingsConfigDict(env_prefix="FLEET_COMPLIANCE_")
