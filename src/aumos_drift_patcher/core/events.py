"""In-process event channel for drift and patch lifecycle events.

The channel implements INotificationSink, so services publish to it exactly
as they would to Kafka. Every event is fanned out to:

- queue subscribers (bounded asyncio.Queue; a full queue drops the event
  for that subscriber and counts it),
- registered callbacks (sync or async),
- downstream sinks such as the Kafka publisher.

Callback and downstream-sink failures are logged and never propagate back
into the service that published the event.
"""

import asyncio
import inspect
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from aumos_drift_patcher.core.domain import DriftResult, Patch, utcnow
from aumos_drift_patcher.core.interfaces import INotificationSink
from aumos_drift_patcher.observability import get_logger

logger = get_logger(__name__)

EVENT_DRIFT_DETECTED = "drift_detected"
EVENT_PATCH_SYNTHESIZED = "patch_synthesized"
EVENT_PATCH_APPLIED = "patch_applied"
EVENT_PATCH_ROLLED_BACK = "patch_rolled_back"

EVENT_TYPES = (
    EVENT_DRIFT_DETECTED,
    EVENT_PATCH_SYNTHESIZED,
    EVENT_PATCH_APPLIED,
    EVENT_PATCH_ROLLED_BACK,
)


@dataclass(frozen=True)
class PatcherEvent:
    """One published event.

    Attributes:
        event_type: One of EVENT_TYPES.
        model_id: Model the event concerns.
        payload: JSON-serialisable body (drift result or patch export document).
        seq: Monotonic sequence number within the channel.
        occurred_at: Publication time.
    """

    event_type: str
    model_id: uuid.UUID
    payload: dict[str, Any]
    seq: int
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "model_id": str(self.model_id),
            "seq": self.seq,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


@dataclass
class EventSubscription:
    """A queue receiving events, optionally filtered by type."""

    sub_id: int
    queue: asyncio.Queue
    event_types: frozenset[str] | None = None

    def accepts(self, event_type: str) -> bool:
        return self.event_types is None or event_type in self.event_types


EventCallback = Callable[[PatcherEvent], Any]


class EventChannel:
    """Fan-out of service notifications to queues, callbacks and sinks.

    Args:
        sinks: Downstream notification sinks (e.g. the Kafka publisher).
        max_queue_size: Default capacity of subscriber queues.
    """

    def __init__(
        self,
        sinks: list[INotificationSink] | None = None,
        max_queue_size: int = 1000,
    ) -> None:
        self._sinks: list[INotificationSink] = list(sinks or [])
        self._subscriptions: dict[int, EventSubscription] = {}
        self._callbacks: dict[str, list[EventCallback]] = {}
        self._max_queue_size = max_queue_size
        self._next_sub_id = 0
        self._seq = 0
        self.published_count = 0
        self.dropped_count = 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_sink(self, sink: INotificationSink) -> None:
        """Forward every future event to ``sink`` as well."""
        self._sinks.append(sink)

    def subscribe(
        self,
        event_types: set[str] | None = None,
        max_queue_size: int | None = None,
    ) -> EventSubscription:
        """Create a queue subscription.

        Args:
            event_types: Only deliver these event types; None means all.
            max_queue_size: Queue capacity; defaults to the channel default.

        Returns:
            The new subscription. Consume with ``await subscription.queue.get()``.
        """
        self._next_sub_id += 1
        subscription = EventSubscription(
            sub_id=self._next_sub_id,
            queue=asyncio.Queue(maxsize=max_queue_size or self._max_queue_size),
            event_types=frozenset(event_types) if event_types else None,
        )
        self._subscriptions[subscription.sub_id] = subscription
        logger.debug("Event subscription added", sub_id=subscription.sub_id)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        if self._subscriptions.pop(subscription.sub_id, None) is not None:
            logger.debug("Event subscription removed", sub_id=subscription.sub_id)

    def on(self, event_type: str, callback: EventCallback) -> None:
        """Register a callback (plain function or coroutine function) for one event type.

        Raises:
            ValueError: If ``event_type`` is unknown.
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        self._callbacks.setdefault(event_type, []).append(callback)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, event_type: str, model_id: uuid.UUID, payload: dict[str, Any]) -> PatcherEvent:
        """Deliver an event to queues and callbacks (not to downstream sinks).

        Returns:
            The published event.
        """
        self._seq += 1
        event = PatcherEvent(event_type=event_type, model_id=model_id, payload=payload, seq=self._seq)

        for subscription in list(self._subscriptions.values()):
            if not subscription.accepts(event_type):
                continue
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped_count += 1
                logger.warning("Event dropped for slow subscriber", sub_id=subscription.sub_id, event_type=event_type)

        for callback in list(self._callbacks.get(event_type, [])):
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Event callback failed", event_type=event_type)

        self.published_count += 1
        return event

    async def _forward(self, method: str, item: DriftResult | Patch) -> None:
        for sink in list(self._sinks):
            try:
                await getattr(sink, method)(item)
            except Exception:
                logger.exception("Notification sink failed", sink=type(sink).__name__, event_type=method)

    async def drift_detected(self, result: DriftResult) -> None:
        await self.publish(EVENT_DRIFT_DETECTED, result.model_id, result.to_dict())
        await self._forward("drift_detected", result)

    async def patch_synthesized(self, patch: Patch) -> None:
        await self.publish(EVENT_PATCH_SYNTHESIZED, patch.model_id, patch.to_dict())
        await self._forward("patch_synthesized", patch)

    async def patch_applied(self, patch: Patch) -> None:
        await self.publish(EVENT_PATCH_APPLIED, patch.model_id, patch.to_dict())
        await self._forward("patch_applied", patch)

    async def patch_rolled_back(self, patch: Patch) -> None:
        await self.publish(EVENT_PATCH_ROLLED_BACK, patch.model_id, patch.to_dict())
        await self._forward("patch_rolled_back", patch)

    def stats(self) -> dict[str, Any]:
        return {
            "subscriptions": len(self._subscriptions),
            "callbacks": sum(len(cbs) for cbs in self._callbacks.values()),
            "sinks": [type(sink).__name__ for sink in self._sinks],
            "published_count": self.published_count,
            "dropped_count": self.dropped_count,
        }
