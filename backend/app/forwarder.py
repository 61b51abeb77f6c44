import logging
from abc import ABC, abstractmethod

from backend.app.events import AnalyticsEvent

logger = logging.getLogger(__name__)


class EventForwarder(ABC):
    @abstractmethod
    async def forward(self, event: AnalyticsEvent) -> None:
        ...


class NatsForwarder(EventForwarder):
    """Publishes tracked events to a NATS subject consumed by the durable sink worker.

    Publishing is best effort: failures are logged and never raised to the caller.
    """

    def __init__(self, nats_client, subject: str):
        self._client = nats_client
        self.subject = subject

    async def forward(self, event: AnalyticsEvent) -> None:
        if not self._client or not getattr(self._client, "is_connected", False):
            logger.error(f"NATS unavailable, event {event.id} not forwarded")
            return

        try:
            await self._client.publish(self.subject, event.model_dump_json().encode())
        except Exception as exc:
            logger.error(f"NATS publish failed for event {event.id}: {exc}")
