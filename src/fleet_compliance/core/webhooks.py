"""Real-time pull request event path.

WebhookService authenticates a delivery (HMAC-SHA256 over the raw body,
constant-time compared) and enqueues pull_request events as background jobs;
the HTTP response never waits for evaluation. PullRequestWebhookHandler is the
job consumer: it re-evaluates the one repository and drives the PR-scoped
comment and status-check actions against the event's pull request and head
commit. Both actions are duplicate-guarded, so a redelivered event is a no-op.
"""

import hashlib
import hmac
import json
from dataclasses import asdict, dataclass
from typing import Any

from fleet_compliance.core.actions import ActionOutcome, ActionService
from fleet_compliance.core.evaluation import PolicyEvaluationService
from fleet_compliance.core.interfaces import (
    JOB_WEBHOOK_PULL_REQUEST,
    IConfigurationProvider,
    IGitHubClient,
    IJobQueue,
    IPolicyRepository,
    ITrackedRepositoryRepository,
)
from fleet_compliance.errors import FleetComplianceError
from fleet_compliance.observability import get_logger, sanitize_log_value

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="

EVENT_PING = "ping"
EVENT_PULL_REQUEST = "pull_request"

REEVALUATE_ACTIONS = frozenset({"opened", "synchronize", "reopened", "edited", "ready_for_review"})


class WebhookSignatureError(FleetComplianceError):
    """The delivery is not signed with the shared secret."""


def compute_signature(secret: str, body: bytes) -> str:
    """Return the `sha256=<hex>` signature GitHub sends for `body`."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: bytes, signature_header: str | None) -> bool:
    """Check X-Hub-Signature-256 against the raw request body.

    A missing secret, a missing header, or a header without the `sha256=`
    prefix all fail verification.
    """
    if not secret or not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature_header.strip().encode("utf-8"))


@dataclass(frozen=True)
class PullRequestEvent:
    """The fields of a pull_request delivery the pipeline consumes."""

    action: str
    repository_id: int
    repository_full_name: str
    pull_request_number: int
    head_sha: str
    delivery_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


def parse_pull_request_event(payload: dict[str, Any], delivery_id: str | None = None) -> PullRequestEvent:
    """Extract a PullRequestEvent from a decoded pull_request payload.

    Raises:
        ValueError: If a required field is missing.
    """
    try:
        repository = payload["repository"]
        pull_request = payload["pull_request"]
        return PullRequestEvent(
            action=str(payload.get("action", "")),
            repository_id=int(repository["id"]),
            repository_full_name=str(repository.get("full_name", "")),
            pull_request_number=int(pull_request["number"]),
            head_sha=str((pull_request.get("head") or {}).get("sha", "")),
            delivery_id=delivery_id,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Malformed pull_request payload: {exc}") from exc


@dataclass(frozen=True)
class WebhookReceipt:
    status: str
    event: str | None
    delivery_id: str | None
    job_id: str | None = None


class WebhookService:
    """Authenticates deliveries and hands supported events to the job queue.

    Args:
        job_queue: Queue receiving pull request jobs.
        secret: Shared webhook secret.
    """

    def __init__(self, job_queue: IJobQueue, secret: str) -> None:
        self._job_queue = job_queue
        self._secret = secret

    def receive(
        self,
        body: bytes,
        signature: str | None,
        event_type: str | None,
        delivery_id: str | None,
    ) -> WebhookReceipt:
        """Process one delivery.

        Args:
            body: Raw request body, exactly as received.
            signature: X-Hub-Signature-256 header.
            event_type: X-GitHub-Event header.
            delivery_id: X-GitHub-Delivery header.

        Returns:
            The acknowledgement to send back.

        Raises:
            WebhookSignatureError: If the signature is missing or wrong.
        """
        event_type = sanitize_log_value(event_type)
        delivery_id = sanitize_log_value(delivery_id)

        if not self._secret:
            logger.error("Webhook secret is not configured, rejecting delivery", delivery_id=delivery_id)
            raise WebhookSignatureError("Webhook secret is not configured")
        if not verify_signature(self._secret, body, signature):
            logger.warning("Invalid webhook signature", event_type=event_type, delivery_id=delivery_id)
            raise WebhookSignatureError("Invalid webhook signature")

        if event_type == EVENT_PING:
            logger.info("Webhook ping received", delivery_id=delivery_id)
            return WebhookReceipt(status="pong", event=event_type, delivery_id=delivery_id)

        if event_type != EVENT_PULL_REQUEST:
            logger.info("Unsupported webhook event, ignoring", event_type=event_type, delivery_id=delivery_id)
            return WebhookReceipt(status="ignored", event=event_type, delivery_id=delivery_id)

        try:
            event = parse_pull_request_event(json.loads(body), delivery_id)
        except ValueError as exc:
            # Acknowledge so GitHub does not redeliver a payload we can never process
            logger.warning("Malformed pull_request payload, ignoring", delivery_id=delivery_id, error=str(exc))
            return WebhookReceipt(status="ignored", event=event_type, delivery_id=delivery_id)

        job_id = self._job_queue.enqueue(JOB_WEBHOOK_PULL_REQUEST, event.to_payload())
        logger.info(
            "Pull request event enqueued",
            delivery_id=delivery_id,
            action=event.action,
            repository=event.repository_full_name,
            pull_request=event.pull_request_number,
            job_id=job_id,
        )
        return WebhookReceipt(status="accepted", event=event_type, delivery_id=delivery_id, job_id=job_id)


class PullRequestWebhookHandler:
    """Re-evaluates one repository for one pull request event.

    Args:
        github: GitHub client.
        config_provider: Cached policy configuration.
        evaluation_service: Policy evaluation engine.
        action_service: Action execution engine (PR-scoped operations).
        tracked_repo_repo: Tracked repository lookup, for action logging.
        policy_repo: Policy lookup, for action logging.
    """

    def __init__(
        self,
        github: IGitHubClient,
        config_provider: IConfigurationProvider,
        evaluation_service: PolicyEvaluationService,
        action_service: ActionService,
        tracked_repo_repo: ITrackedRepositoryRepository,
        policy_repo: IPolicyRepository,
    ) -> None:
        self._github = github
        self._config_provider = config_provider
        self._evaluation_service = evaluation_service
        self._action_service = action_service
        self._tracked_repo_repo = tracked_repo_repo
        self._policy_repo = policy_repo

    async def handle(self, event: PullRequestEvent) -> list[ActionOutcome]:
        """Evaluate the event's repository and update its pull request.

        Returns:
            Outcomes of the PR-scoped actions, empty for ignored PR actions.
        """
        if event.action not in REEVALUATE_ACTIONS:
            logger.info(
                "Pull request action does not trigger evaluation",
                action=event.action,
                pull_request=event.pull_request_number,
            )
            return []

        config = await self._config_provider.get_config()
        repository = await self._github.get_repository(event.repository_id)
        findings = await self._evaluation_service.evaluate_repository(repository, config.policies)
        violated = {finding.policy_type.strip().lower() for finding in findings}

        tracked = await self._tracked_repo_repo.get_by_github_id(event.repository_id)

        outcomes: list[ActionOutcome] = []
        for policy_config in config.policies:
            policy = await self._policy_repo.get_by_key(policy_config.policy_type) if tracked is not None else None
            outcomes.extend(
                await self._action_service.process_pull_request_actions(
                    repository_github_id=event.repository_id,
                    pull_request_number=event.pull_request_number,
                    head_sha=event.head_sha,
                    policy_config=policy_config,
                    is_violated=policy_config.policy_type.strip().lower() in violated,
                    repository=tracked,
                    policy=policy,
                )
            )

        logger.info(
            "Pull request re-evaluated",
            repository=repository.full_name,
            pull_request=event.pull_request_number,
            violations=len(findings),
            actions=len(outcomes),
        )
        return outcomes
