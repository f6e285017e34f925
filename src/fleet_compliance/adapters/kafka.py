"""ComplianceEventPublisher: Kafka domain event publishing.

Publishes structured events after every scan and every remediation attempt.

Events published:
- compliance.scan.completed  : scan reached Completed
- compliance.scan.failed     : scan reached Failed
- compliance.action.executed : one action attempt and its outcome

Publishing is best-effort: a Kafka failure is logged and never fails the
scan or action that triggered it.
"""

import json
from datetime import UTC, datetime
from typing import Any

from aiokafka import AIOKafkaProducer

from fleet_compliance.observability import get_logger

logger = get_logger(__name__)

TOPIC_COMPLIANCE_SCAN = "compliance.scan"
TOPIC_COMPLIANCE_ACTION = "compliance.action"

_DEFAULT_BOOTSTRAP_SERVERS = "localhost:9092"


class ComplianceEventPublisher:
    """Kafka event publisher for compliance domain events.

    Args:
        bootstrap_servers: Comma-separated Kafka bootstrap server addresses.
        service_name: Value of the envelope's source_service field.
    """

    def __init__(
        self,
        bootstrap_servers: str = _DEFAULT_BOOTSTRAP_SERVERS,
        service_name: str = "fleet-compliance-engine",
    ) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._service_name = service_name
        self._producer: AIOKafkaProducer | None = None

    async def start(self) -> None:
        """Start the underlying Kafka producer.

        Called in the lifespan startup handler when Kafka is enabled. Until
        then every publish is skipped.
        """
        producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            key_serializer=lambda key: key.encode("utf-8"),
            value_serializer=lambda value: json.dumps(value).encode("utf-8"),
        )
        await producer.start()
        self._producer = producer
        logger.info("ComplianceEventPublisher started", bootstrap_servers=self._bootstrap_servers)

    async def stop(self) -> None:
        """Flush and close the Kafka producer."""
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
            logger.info("ComplianceEventPublisher stopped")

    def _build_envelope(self, event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "event_type": event_type,
            "source_service": self._service_name,
            "occurred_at": datetime.now(UTC).isoformat(),
            "payload": payload,
        }

    async def publish_scan_finished(
        self,
        scan_id: int,
        status: str,
        repository_count: int,
        violation_count: int,
        error_message: str | None = None,
    ) -> None:
        """Publish compliance.scan.completed or compliance.scan.failed.

        Args:
            scan_id: Scan id.
            status: Terminal scan status.
            repository_count: Repositories evaluated.
            violation_count: Violations recorded.
            error_message: Failure description for failed scans.
        """
        event_type = "compliance.scan.completed" if status == "Completed" else "compliance.scan.failed"
        event = self._build_envelope(
            event_type,
            {
                "scan_id": scan_id,
                "status": status,
                "repository_count": repository_count,
                "violation_count": violation_count,
                "error_message": error_message,
            },
        )
        await self._publish(TOPIC_COMPLIANCE_SCAN, str(scan_id), event)

    async def publish_action_executed(
        self,
        repository_name: str,
        policy_key: str,
        action_type: str,
        status: str,
        details: str | None,
    ) -> None:
        """Publish compliance.action.executed."""
        event = self._build_envelope(
            "compliance.action.executed",
            {
                "repository": repository_name,
                "policy_key": policy_key,
                "action_type": action_type,
                "status": status,
                "details": details,
            },
        )
        await self._publish(TOPIC_COMPLIANCE_ACTION, repository_name, event)

    async def _publish(self, topic: str, key: str, event: dict[str, Any]) -> None:
        """Send one event. Skipped when the producer is not started."""
        if self._producer is None:
            logger.debug(
                "ComplianceEventPublisher not started, skipping Kafka publish",
                topic=topic,
                event_type=event.get("event_type"),
            )
            return

        try:
            await self._producer.send_and_wait(topic, key=key, value=event)
            logger.debug("Compliance event published", topic=topic, event_type=event.get("event_type"))
        except Exception as exc:
            # Kafka outages must not fail scans or actions
            logger.error(
                "Failed to publish compliance event",
                topic=topic,
                event_type=event.get("event_type"),
                error=str(exc),
            )
