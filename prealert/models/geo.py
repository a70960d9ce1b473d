from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Coordinates(BaseModel):
    """WGS-84 point in degrees.

    Accepts ``lat``/``lng`` or ``latitude``/``longitude`` on input; the rest
    of the code only ever sees ``lat``/``lng``.
    """

    model_config = ConfigDict(frozen=True)

    lat: float = Field(
        validation_alias=AliasChoices("lat", "latitude"),
        ge=-90.0,
        le=90.0,
        allow_inf_nan=False,
    )
    lng: float = Field(
        validation_alias=AliasChoices("lng", "lon", "longitude"),
        ge=-180.0,
        le=180.0,
        allow_inf_nan=False,
    )


def fold_coordinates(data: Any) -> Any:
    """Move flat lat/lng (or latitude/longitude) keys into ``coordinates``."""
    if not isinstance(data, dict) or data.get("coordinates") is not None:
        return data
    lat = data.get("lat", data.get("latitude"))
    lng = data.get("lng", data.get("longitude"))
    if lat is None and lng is None:
        return data
    folded = {
        k: v for k, v in data.items()
        if k not in ("lat", "lng", "latitude", "longitude")
    }
    folded["coordinates"] = {"lat": lat, "lng": lng}
    return folded


class RouteEstimate(BaseModel):
    distance_meters: float
    duration_seconds: float
    coordinates: list[tuple[float, float]] = []  # [lng, lat] pairs
    source: Literal["routed", "straight_line"] = "routed"
