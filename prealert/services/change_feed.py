import asyncio
import json
import logging
import uuid
from typing import Any

from prealert.config import Settings

logger = logging.getLogger(__name__)

try:  # Optional dependency for GCP Pub/Sub
    from google.cloud import pubsub_v1  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    pubsub_v1 = None

# Columns copied into Pub/Sub message attributes so subscriptions can filter server-side
FILTER_COLUMNS: dict[str, tuple[str, ...]] = {
    "alerts": ("id", "hospital_id", "ambulance_id"),
    "live_vitals": ("device_id",),
    "hospitals": ("id",),
    "ambulances": ("id",),
}


def matches(event: dict, table: str, filters: dict[str, str] | None) -> bool:
    """True when ``event`` is a change on ``table`` whose record satisfies ``filters``."""
    if event.get("table") != table:
        return False
    record = event.get("record") or {}
    for column, expected in (filters or {}).items():
        if str(record.get(column)) != str(expected):
            return False
    return True


class ChangeFeed:
    """In-memory row-change notifications, filtered by table and column equality."""

    def __init__(self) -> None:
        self._subscribers: dict[asyncio.Queue, tuple[str, dict[str, str]]] = {}

    def subscribe(self, table: str, filters: dict[str, str] | None = None) -> asyncio.Queue:
        """Subscribe to INSERT/UPDATE events on ``table``. Returns a queue to await events from."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[queue] = (table, dict(filters or {}))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.pop(queue, None)

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, table: str, event_type: str, record: dict) -> None:
        """Publish a row change to every matching subscriber."""
        event = {"table": table, "type": event_type, "record": record}
        self._deliver(event)

    def _deliver(self, event: dict) -> None:
        for queue, (table, filters) in list(self._subscribers.items()):
            if not matches(event, table, filters):
                continue
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Change queue full for %s subscriber", table)


class PubSubChangeFeed(ChangeFeed):
    """Pub/Sub-backed change feed for multi-instance deployments."""

    def __init__(self, project_id: str, topic: str, subscription_prefix: str) -> None:
        super().__init__()
        self._project_id = project_id
        self._subscription_prefix = subscription_prefix
        self._publisher = pubsub_v1.PublisherClient()  # type: ignore[call-arg]
        self._subscriber = pubsub_v1.SubscriberClient()  # type: ignore[call-arg]
        if topic.startswith("projects/"):
            self._topic_path = topic
        else:
            self._topic_path = self._publisher.topic_path(project_id, topic)
        self._subscriptions: dict[asyncio.Queue, tuple[str, Any]] = {}

    @staticmethod
    def _filter_expression(table: str, filters: dict[str, str]) -> str:
        clauses = [f'attributes.table="{table}"']
        clauses.extend(f'attributes.{column}="{value}"' for column, value in sorted(filters.items()))
        return " AND ".join(clauses)

    def _create_subscription(self, table: str, filters: dict[str, str]) -> str:
        subscription_id = f"{self._subscription_prefix}-{uuid.uuid4().hex}"
        sub_path = self._subscriber.subscription_path(self._project_id, subscription_id)
        try:
            self._subscriber.create_subscription(
                name=sub_path,
                topic=self._topic_path,
                filter=self._filter_expression(table, filters),
            )
        except Exception as exc:
            # Local matching still applies, so an unfiltered subscription is safe
            logger.warning("Failed to create filtered subscription: %s", exc)
            self._subscriber.create_subscription(
                name=sub_path,
                topic=self._topic_path,
            )
        return sub_path

    def _start_listener(self, queue: asyncio.Queue, sub_path: str, table: str, filters: dict[str, str]) -> Any:
        loop = asyncio.get_running_loop()

        def _callback(message) -> None:
            try:
                event = json.loads(message.data.decode("utf-8"))
            except Exception:
                message.ack()
                return

            if matches(event, table, filters):
                loop.call_soon_threadsafe(queue.put_nowait, event)
            message.ack()

        return self._subscriber.subscribe(sub_path, callback=_callback)

    def subscribe(self, table: str, filters: dict[str, str] | None = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        filters = dict(filters or {})
        sub_path = self._create_subscription(table, filters)
        future = self._start_listener(queue, sub_path, table, filters)
        self._subscriptions[queue] = (sub_path, future)
        self._subscribers[queue] = (table, filters)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.pop(queue, None)
        sub = self._subscriptions.pop(queue, None)
        if not sub:
            return
        sub_path, future = sub
        try:
            future.cancel()
        except Exception:
            logger.debug("Failed to cancel subscription future")
        try:
            self._subscriber.delete_subscription(subscription=sub_path)
        except Exception as exc:
            logger.warning("Failed to delete subscription %s: %s", sub_path, exc)

    async def publish(self, table: str, event_type: str, record: dict) -> None:
        event = {"table": table, "type": event_type, "record": record}
        payload = json.dumps(event).encode("utf-8")
        attributes = {"table": table}
        for column in FILTER_COLUMNS.get(table, ()):
            if record.get(column) is not None:
                attributes[column] = str(record[column])
        try:
            self._publisher.publish(self._topic_path, payload, **attributes)
        except Exception as exc:
            logger.error("Failed to publish Pub/Sub change event: %s", exc)


def build_change_feed(settings: Settings) -> ChangeFeed:
    if settings.gcp_project_id and settings.gcp_pubsub_topic and pubsub_v1 is not None:
        logger.info("Using GCP Pub/Sub change feed")
        return PubSubChangeFeed(
            settings.gcp_project_id,
            settings.gcp_pubsub_topic,
            settings.gcp_pubsub_subscription_prefix,
        )
    if settings.gcp_project_id or settings.gcp_pubsub_topic:
        logger.warning("Pub/Sub config set but google-cloud-pubsub not installed; falling back to in-memory feed")
    return ChangeFeed()
