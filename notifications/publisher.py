import logging
from typing import List, Protocol

from notifications.events import Event

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    def publish(self, event: Event) -> None:
        ...


class InMemoryPublisher:
    """Keeps published events in a list. Used when no broker is configured."""

    def __init__(self):
        self.events: List[Event] = []

    def publish(self, event: Event) -> None:
        self.events.append(event)
        logger.info(f"Published event {event.event_type} with ID {event.event_id}")

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]


class RedisStreamPublisher:
    """
    Appends events to a Redis stream (XADD). Consumers read the stream with a
    consumer group; the payload field carries the full event as JSON.
    """

    def __init__(self, client, stream: str = "booking_events"):
        self.r = client
        self.stream = stream

    @classmethod
    def from_url(cls, url: str, stream: str = "booking_events"):
        import redis

        return cls(redis.Redis.from_url(url), stream=stream)

    def publish(self, event: Event) -> None:
        self.r.xadd(self.stream, {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "booking_id": event.booking_id,
            "payload": event.model_dump_json(),
        })
        logger.info(f"Published event {event.event_type} with ID {event.event_id}")


def safe_publish(publisher: EventPublisher, event: Event) -> bool:
    """
    Fire-and-forget. The state change behind the event is already stored,
    so a broker failure is logged and dropped.
    """
    try:
        publisher.publish(event)
        return True
    except Exception as e:
        logger.error(
            f"Failed to publish {event.event_type} for booking {event.booking_id}: {e}",
            exc_info=True,
        )
        return False
