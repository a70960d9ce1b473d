from pydantic import BaseModel, model_validator

from prealert.models.geo import Coordinates, RouteEstimate, fold_coordinates


class Hospital(BaseModel):
    id: str
    name: str
    address: str = ""
    contact: str | None = None
    coordinates: Coordinates | None = None
    equipment: list[str] = []
    specialties: list[str] = []
    # Alert id this hospital was marked unavailable for (not global)
    unavailable_for_alert: str | None = None


class RankedHospital(Hospital):
    """Hospital with distance/ETA derived from one origin."""

    distance_km: float
    eta_minutes: int
    route: RouteEstimate | None = None


class HospitalCreate(BaseModel):
    name: str
    address: str
    contact: str | None = None
    coordinates: Coordinates
    equipment: list[str] = []
    specialties: list[str] = []

    @model_validator(mode="before")
    @classmethod
    def _flat_coordinates(cls, data):
        return fold_coordinates(data)


class Ambulance(BaseModel):
    id: str
    ambulance_number: str
    contact: str | None = None
    location: Coordinates | None = None
    equipment: list[str] = []


class LocationUpdate(BaseModel):
    coordinates: Coordinates

    @model_validator(mode="before")
    @classmethod
    def _flat_coordinates(cls, data):
        return fold_coordinates(data)
