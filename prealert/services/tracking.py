import logging
import math

from prealert.models.geo import Coordinates
from prealert.models.hospital import Ambulance
from prealert.services.alerts import AlertLifecycle
from prealert.services.geo import format_distance, format_duration, is_usable
from prealert.services.routing import RoutingClient
from prealert.services.store import DataStore
from prealert.services.throttle import KeyedThrottle

logger = logging.getLogger(__name__)


class AmbulanceTracker:
    """Stores ambulance positions and keeps the active alert's route current.

    Route recalculation hits the routing API, so it is throttled per
    ambulance; the position itself is always stored.
    """

    def __init__(
        self,
        store: DataStore,
        alerts: AlertLifecycle,
        routing: RoutingClient,
        throttle: KeyedThrottle,
    ) -> None:
        self.store = store
        self.alerts = alerts
        self.routing = routing
        self.throttle = throttle

    async def update_location(self, ambulance_id: str, location: Coordinates) -> Ambulance:
        ambulance = await self.store.update_ambulance_location(ambulance_id, location)
        self.throttle.submit(ambulance_id, self.recalculate_route, ambulance_id)
        return ambulance

    async def recalculate_route(self, ambulance_id: str) -> None:
        alert = await self.alerts.active_alert_for(ambulance_id)
        if alert is None:
            return
        ambulance = await self.store.get_ambulance(ambulance_id)
        hospital = await self.store.get_hospital(alert.hospital_id)
        if ambulance is None or hospital is None:
            return
        if not is_usable(ambulance.location) or not is_usable(hospital.coordinates):
            return

        route = await self.routing.estimate_routed(ambulance.location, hospital.coordinates)
        distance_km = round(route.distance_meters / 1000, 1)
        eta_minutes = math.ceil(route.duration_seconds / 60)
        await self.alerts.refresh_route(alert.id, distance_km, eta_minutes)
        logger.info(
            "Route for alert %s: %s, %s (%s)",
            alert.id,
            format_distance(route.distance_meters),
            format_duration(route.duration_seconds),
            route.source,
        )
