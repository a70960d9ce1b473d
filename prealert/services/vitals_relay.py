"""Latest SpO2 / heart rate per ambulance, pushed to whoever is watching.

The MAX30102 sensor on each ambulance writes one row per device into
``live_vitals``; the device id is the ambulance id.
"""

import inspect
import logging
from typing import Any, Callable

from prealert.models.vitals import DEFAULT_HEART_RATE, DEFAULT_SPO2, LiveVitals
from prealert.services.change_feed import ChangeFeed
from prealert.services.store import DataStore
from prealert.services.subscriptions import Subscription, SubscriptionRegistry

logger = logging.getLogger(__name__)

VitalsCallback = Callable[[int, int], Any]


def _reading(record) -> tuple[int, int]:
    """(spo2, heart_rate) from a row or event record, defaulting missing columns."""
    if not record:
        return DEFAULT_SPO2, DEFAULT_HEART_RATE
    spo2 = record["spo2_pct"] if "spo2_pct" in record.keys() else None
    heart_rate = record["hr_bpm"] if "hr_bpm" in record.keys() else None
    return (
        DEFAULT_SPO2 if spo2 is None else int(spo2),
        DEFAULT_HEART_RATE if heart_rate is None else int(heart_rate),
    )


async def _call(on_update: VitalsCallback, spo2: int, heart_rate: int) -> None:
    result = on_update(spo2, heart_rate)
    if inspect.isawaitable(result):
        await result


class VitalsRelay:
    def __init__(self, store: DataStore, feed: ChangeFeed) -> None:
        self.store = store
        self.feed = feed

    async def latest(self, ambulance_id: str) -> LiveVitals:
        row = await self.store.get_live_vitals(ambulance_id)
        spo2, heart_rate = _reading(row)
        return LiveVitals(
            ambulance_id=ambulance_id,
            spo2=spo2,
            heart_rate=heart_rate,
            updated_at=row["updated_at"] if row else None,
        )

    async def subscribe(
        self,
        ambulance_id: str,
        on_update: VitalsCallback,
        registry: SubscriptionRegistry | None = None,
    ) -> Subscription:
        """Call ``on_update`` once with the current reading, then on every change.

        The feed listener is attached before the initial read so a reading
        written in between is still delivered.
        """
        subscription = Subscription(self.feed, "live_vitals", {"device_id": ambulance_id})
        if registry is not None:
            registry.add(subscription)

        try:
            row = await self.store.get_live_vitals(ambulance_id)
            await _call(on_update, *_reading(row))
        except BaseException:
            subscription.close()
            raise

        async def _on_event(event: dict) -> None:
            await _call(on_update, *_reading(event.get("record")))

        if not subscription.closed:
            subscription.start(_on_event)
        return subscription

    async def publish(self, ambulance_id: str, spo2: int, heart_rate: int) -> LiveVitals:
        record = await self.store.upsert_live_vitals(ambulance_id, spo2, heart_rate)
        logger.debug("Vitals for %s: SpO2 %s%%, HR %s", ambulance_id, spo2, heart_rate)
        return LiveVitals(
            ambulance_id=ambulance_id,
            spo2=spo2,
            heart_rate=heart_rate,
            updated_at=record["updated_at"],
        )
