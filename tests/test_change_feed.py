"""Tests for the change feed, subscriptions and the data store's publish-after-write."""

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_patient, make_settings
from prealert.models.alert import AlertCreate
from prealert.models.patient import Patient
from prealert.services import change_feed
from prealert.services.change_feed import ChangeFeed, PubSubChangeFeed, build_change_feed, matches
from prealert.services.subscriptions import Subscription


def test_matches_table_and_filters():
    event = {"table": "alerts", "type": "UPDATE", "record": {"hospital_id": "h1", "ambulance_id": "a1"}}
    assert matches(event, "alerts", {})
    assert matches(event, "alerts", {"hospital_id": "h1"})
    assert not matches(event, "alerts", {"hospital_id": "h2"})
    assert not matches(event, "live_vitals", {})


@pytest.mark.asyncio
async def test_publish_reaches_only_matching_subscribers():
    feed = ChangeFeed()
    mine = feed.subscribe("alerts", {"hospital_id": "h1"})
    other = feed.subscribe("alerts", {"hospital_id": "h2"})

    await feed.publish("alerts", "INSERT", {"id": "x", "hospital_id": "h1"})

    assert mine.get_nowait()["record"]["id"] == "x"
    assert other.empty()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    feed = ChangeFeed()
    queue = feed.subscribe("alerts")
    feed.unsubscribe(queue)
    await feed.publish("alerts", "INSERT", {"id": "x"})
    assert queue.empty()
    assert feed.subscriber_count() == 0


@pytest.mark.asyncio
async def test_subscription_get_and_close():
    feed = ChangeFeed()
    sub = Subscription(feed, "alerts", {"hospital_id": "h1"})

    await feed.publish("alerts", "UPDATE", {"id": "a", "hospital_id": "h1"})
    event = await sub.get(timeout=1)
    assert event["type"] == "UPDATE"

    assert await sub.get(timeout=0.01) is None

    waiter = asyncio.create_task(sub.get())
    await asyncio.sleep(0)
    sub.close()
    assert await asyncio.wait_for(waiter, 1) is None
    assert feed.subscriber_count() == 0


@pytest.mark.asyncio
async def test_close_from_inside_handler():
    feed = ChangeFeed()
    sub = Subscription(feed, "alerts")
    seen = []

    def handler(event):
        seen.append(event["record"]["id"])
        sub.close()

    sub.start(handler)
    await feed.publish("alerts", "INSERT", {"id": "first"})
    await feed.publish("alerts", "INSERT", {"id": "second"})
    await asyncio.sleep(0.05)

    assert seen == ["first"]


@pytest.mark.asyncio
async def test_store_publishes_after_alert_write(services, ambulance):
    queue = services.feed.subscribe("alerts", {"hospital_id": "hosp-citycare"})
    created = await services.alerts.create_alert(
        ambulance, AlertCreate(patient=Patient(**make_patient()), hospital_id="hosp-citycare")
    )

    event = queue.get_nowait()
    assert event["type"] == "INSERT"
    assert event["record"]["id"] == created.alert.id
    assert event["record"]["status"] == "pending"


def test_build_change_feed_defaults_to_memory():
    assert type(build_change_feed(make_settings())) is ChangeFeed


def test_build_change_feed_without_library_falls_back():
    settings = make_settings(gcp_project_id="proj", gcp_pubsub_topic="changes")
    with patch.object(change_feed, "pubsub_v1", None):
        assert type(build_change_feed(settings)) is ChangeFeed


class TestPubSub:
    def _feed(self):
        pubsub = MagicMock()
        pubsub.PublisherClient.return_value.topic_path.return_value = "projects/proj/topics/changes"
        pubsub.SubscriberClient.return_value.subscription_path.side_effect = (
            lambda project, sub: f"projects/{project}/subscriptions/{sub}"
        )
        with patch.object(change_feed, "pubsub_v1", pubsub):
            feed = PubSubChangeFeed("proj", "changes", "prealert-changes")
        return feed, pubsub

    @pytest.mark.asyncio
    async def test_publish_sets_filter_attributes(self):
        feed, pubsub = self._feed()
        publisher = pubsub.PublisherClient.return_value

        await feed.publish("alerts", "UPDATE", {"id": "a1", "hospital_id": "h1", "ambulance_id": "amb-1"})

        args, kwargs = publisher.publish.call_args
        assert args[0] == "projects/proj/topics/changes"
        assert json.loads(args[1])["record"]["id"] == "a1"
        assert kwargs == {"table": "alerts", "id": "a1", "hospital_id": "h1", "ambulance_id": "amb-1"}

    @pytest.mark.asyncio
    async def test_subscribe_creates_filtered_subscription(self):
        feed, pubsub = self._feed()
        subscriber = pubsub.SubscriberClient.return_value

        queue = feed.subscribe("alerts", {"hospital_id": "h1"})

        kwargs = subscriber.create_subscription.call_args.kwargs
        assert kwargs["filter"] == 'attributes.table="alerts" AND attributes.hospital_id="h1"'
        assert kwargs["name"].startswith("projects/proj/subscriptions/prealert-changes-")

        # Messages are matched locally too, then acked
        callback = subscriber.subscribe.call_args.kwargs["callback"]
        message = MagicMock()
        message.data = json.dumps({"table": "alerts", "type": "INSERT", "record": {"hospital_id": "h1"}}).encode()
        callback(message)
        await asyncio.sleep(0)
        assert queue.get_nowait()["type"] == "INSERT"
        message.ack.assert_called_once()

        feed.unsubscribe(queue)
        subscriber.delete_subscription.assert_called_once()
        assert feed.subscriber_count() == 0
