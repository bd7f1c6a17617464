"""
Export domain events and publishers.

Events are small frozen records. Publishers are best-effort: a failure to
publish is logged and never changes the outcome of the operation that
produced the event.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from export_engine.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExportEvent:
    export_id: str
    occurred_at: datetime

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        payload["event"] = self.name
        return payload


@dataclass(frozen=True)
class ExportRequested(ExportEvent):
    user_id: int = 0
    organization_id: int = 0
    resource_type: str = ""
    format: str = ""
    filters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExportStarted(ExportEvent):
    total_records: int = 0


@dataclass(frozen=True)
class ExportProgressUpdated(ExportEvent):
    percentage: int = 0
    message: str = ""
    processed_records: int = 0
    total_records: int = 0


@dataclass(frozen=True)
class ExportCompleted(ExportEvent):
    file_path: str = ""
    file_size: int = 0
    records_exported: int = 0


@dataclass(frozen=True)
class ExportFailed(ExportEvent):
    error_message: str = ""
    processed_records: int = 0


@dataclass(frozen=True)
class ExportCancelled(ExportEvent):
    reason: str = ""


class EventPublisher(Protocol):
    def publish(self, event: ExportEvent) -> None:
        ...


class LoggingEventPublisher:
    """Publishes events as structured log lines."""

    def publish(self, event: ExportEvent) -> None:
        payload = event.to_dict()
        payload.pop("event", None)
        logger.info(f"Export event: {event.name}", **payload)


class RedisEventPublisher:
    """
    Publishes events as JSON on a Redis pub/sub channel so that UI and
    notification services can follow progress without polling.
    """

    def __init__(self, client, channel: str = "exports.events"):
        self.client = client
        self.channel = channel

    @classmethod
    def from_url(cls, url: str, channel: str) -> "RedisEventPublisher":
        import redis

        return cls(redis.Redis.from_url(url), channel)

    def publish(self, event: ExportEvent) -> None:
        try:
            self.client.publish(self.channel, json.dumps(event.to_dict(), default=str))
        except Exception as e:
            logger.warning(
                "Failed to publish export event",
                event_name=event.name,
                export_id=event.export_id,
                channel=self.channel,
                error=str(e),
            )


def safe_publish(publisher: Optional[EventPublisher], event: ExportEvent) -> None:
    """Publish ``event``, logging instead of raising on publisher errors."""
    if publisher is None:
        return
    try:
        publisher.publish(event)
    except Exception as e:
        logger.warning(
            "Event publisher raised, event dropped",
            event_name=event.name,
            export_id=event.export_id,
            error=str(e),
        )
