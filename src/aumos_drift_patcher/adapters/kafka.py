"""Kafka notification sink for drift and patch lifecycle events.

Publishes four event types, each to its own topic under a configurable
prefix:

- <prefix>.drift_detected     a drift result with is_drift_detected set
- <prefix>.patch_synthesized  a new patch in CREATED status
- <prefix>.patch_applied      a patch moved to APPLIED
- <prefix>.patch_rolled_back  a patch moved to ROLLED_BACK

Messages are keyed by model id so every event of one model lands on the
same partition, in order.
"""

import json
import uuid
from typing import Any

from aiokafka import AIOKafkaProducer

from aumos_drift_patcher.core.domain import DriftResult, Patch, utcnow
from aumos_drift_patcher.errors import StoreError
from aumos_drift_patcher.observability import get_logger

logger = get_logger(__name__)


class KafkaNotificationSink:
    """INotificationSink backed by an aiokafka producer.

    Args:
        bootstrap_servers: Comma-separated Kafka bootstrap servers.
        topic_prefix: Prefix of the four event topics.
        client_id: Kafka client id.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        topic_prefix: str = "patcher",
        client_id: str = "aumos-drift-patcher",
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.topic_prefix = topic_prefix
        self.client_id = client_id
        self._producer: AIOKafkaProducer | None = None

    def topic(self, event_type: str) -> str:
        return f"{self.topic_prefix}.{event_type}"

    async def start(self) -> None:
        """Start the underlying Kafka producer connection.

        Should be called during application startup in the lifespan handler.
        """
        if self._producer is not None:
            return
        producer = AIOKafkaProducer(
            bootstrap_servers=[s.strip() for s in self.bootstrap_servers.split(",") if s.strip()],
            client_id=self.client_id,
            acks="all",
            value_serializer=lambda value: json.dumps(value, separators=(",", ":"), default=str).encode("utf-8"),
            key_serializer=lambda key: key.encode("utf-8"),
        )
        await producer.start()
        self._producer = producer
        logger.info("Kafka notification sink started", bootstrap_servers=self.bootstrap_servers)

    async def stop(self) -> None:
        """Flush pending messages and close the Kafka producer."""
        producer, self._producer = self._producer, None
        if producer is None:
            return
        await producer.stop()
        logger.info("Kafka notification sink stopped")

    async def _publish(self, event_type: str, model_id: uuid.UUID, body: dict[str, Any]) -> None:
        if self._producer is None:
            raise StoreError("Kafka producer is not started")
        payload = {
            "event_type": event_type,
            "model_id": str(model_id),
            "occurred_at": utcnow().isoformat(),
            **body,
        }
        await self._producer.send_and_wait(self.topic(event_type), payload, key=str(model_id))
        logger.debug("Published event", topic=self.topic(event_type), model_id=str(model_id))

    async def drift_detected(self, result: DriftResult) -> None:
        await self._publish(
            "drift_detected",
            result.model_id,
            {
                "drift_result_id": str(result.id),
                "drift_score": result.drift_score,
                "drift_type": result.drift_type.value,
                "severity": result.severity,
                "drifted_features": [fd.feature_name for fd in result.drifted_features()],
            },
        )

    async def patch_synthesized(self, patch: Patch) -> None:
        await self._publish("patch_synthesized", patch.model_id, {"patch": patch.to_dict()})

    async def patch_applied(self, patch: Patch) -> None:
        await self._publish("patch_applied", patch.model_id, {"patch": patch.to_dict()})

    async def patch_rolled_back(self, patch: Patch) -> None:
        await self._publish("patch_rolled_back", patch.model_id, {"patch": patch.to_dict()})
