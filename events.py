"""
Real-time notification fan-out.

Handlers receive a publisher instead of reaching for a global socket server.
Delivery is best-effort: a failing publisher never fails the request.
"""
import logging
from typing import Any, Dict, Optional, Protocol

from database import utcnow
from schemas import Event

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


def user_topic(user_id) -> str:
    return f"user:{user_id}"


class CollectionPublisher:
    """Stores events in the `event` collection for clients to poll."""

    def __init__(self, target):
        self.db = target

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        recipient = topic.split(":", 1)[1] if topic.startswith("user:") else None
        event = Event(
            topic=topic,
            event=payload.get("event", "message"),
            recipient=recipient,
            payload=payload,
            created_at=utcnow(),
        )
        self.db["event"].insert_one(event.model_dump())


def notify(publisher: Optional[EventPublisher], user_id, event: str, **payload) -> None:
    """Send `event` to one user; errors are logged and dropped."""
    if publisher is None or not user_id:
        return
    try:
        publisher.publish(user_topic(user_id), {"event": event, **payload})
    except Exception:
        logger.exception("Failed to publish %s to user %s", event, user_id)
