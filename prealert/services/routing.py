"""Routed distance/ETA from a Geoapify-style routing API.

``estimate_routed`` never raises: network errors, timeouts, non-2xx
responses and malformed payloads all fall back to the straight-line
estimate from ``geo.py``.
"""

import asyncio
import logging
import math

import httpx

from prealert.errors import UpstreamUnavailable
from prealert.models.geo import Coordinates, RouteEstimate
from prealert.services.geo import straight_line_route

logger = logging.getLogger(__name__)

TRAVEL_MODE = "drive"


def _parse_route(data: dict) -> RouteEstimate:
    features = data.get("features") if isinstance(data, dict) else None
    if not features or not isinstance(features, list):
        raise UpstreamUnavailable("No route found")

    feature = features[0]
    if not isinstance(feature, dict):
        raise UpstreamUnavailable("Route feature is not an object")
    props = feature.get("properties") or {}
    distance = float(props["distance"])
    duration = float(props["time"])
    if not (math.isfinite(distance) and math.isfinite(duration)) or distance < 0 or duration < 0:
        raise UpstreamUnavailable("Route summary out of range")

    geometry = feature.get("geometry") or {}
    if not isinstance(geometry, dict):
        raise UpstreamUnavailable("Route geometry is not an object")
    coords = geometry.get("coordinates") or []
    # MultiLineString nests one level deeper than LineString
    if coords and coords[0] and isinstance(coords[0][0], (list, tuple)):
        coords = coords[0]
    line = [(float(lng), float(lat)) for lng, lat, *_ in coords]

    return RouteEstimate(
        distance_meters=distance,
        duration_seconds=duration,
        coordinates=line,
        source="routed",
    )


class RoutingClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def configured(self) -> bool:
        return bool(self._base_url and self._api_key)

    async def _request(self, start: Coordinates, end: Coordinates) -> dict:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.get(
                self._base_url,
                params={
                    "waypoints": f"{start.lat},{start.lng}|{end.lat},{end.lng}",
                    "mode": TRAVEL_MODE,
                    "apiKey": self._api_key,
                },
            )
            resp.raise_for_status()
        return resp.json()

    async def fetch_route(self, start: Coordinates, end: Coordinates) -> RouteEstimate:
        """Call the routing API. Raises UpstreamUnavailable on any failure."""
        if not self.configured():
            raise UpstreamUnavailable("Routing API key not configured")
        try:
            data = await asyncio.wait_for(self._request(start, end), timeout=self._timeout)
            return _parse_route(data)
        except UpstreamUnavailable:
            raise
        except TimeoutError as exc:
            raise UpstreamUnavailable("Routing request timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise UpstreamUnavailable(f"Routing API error {exc.response.status_code}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise UpstreamUnavailable(f"Routing request failed: {exc}") from exc
        except (ValueError, KeyError, TypeError, IndexError, AttributeError) as exc:
            raise UpstreamUnavailable(f"Malformed routing response: {exc}") from exc

    async def estimate_routed(self, start: Coordinates, end: Coordinates) -> RouteEstimate:
        try:
            return await self.fetch_route(start, end)
        except UpstreamUnavailable as exc:
            logger.warning("Routing unavailable, using straight-line estimate: %s", exc)
            return straight_line_route(start, end)
