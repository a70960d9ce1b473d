import logging

from fastapi import APIRouter, Depends, Query

from prealert.dependencies import Services, current_session, get_services
from prealert.errors import InvalidArgument
from prealert.models.geo import Coordinates
from prealert.models.hospital import Hospital, HospitalCreate, RankedHospital
from prealert.models.recommendation import RecommendationRequest, RecommendationResponse
from prealert.services import access
from prealert.services.ranking import rank_hospitals, rank_hospitals_routed
from prealert.services.sessions import Session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/hospitals", tags=["hospitals"])


@router.get("", response_model=list[Hospital])
async def list_hospitals(
    alert_id: str | None = None,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    return await services.alerts.candidate_hospitals(alert_id)


@router.post("", response_model=Hospital, status_code=201)
async def add_hospital(
    payload: HospitalCreate,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    access.require_can_add_hospital(session)
    hospital = await services.store.insert_hospital(payload)
    logger.info("Hospital %s added by %s", hospital.id, session.username)
    return hospital


@router.get("/ranked", response_model=list[RankedHospital])
async def ranked_hospitals(
    lat: float = Query(...),
    lng: float = Query(...),
    alert_id: str | None = None,
    search: str | None = None,
    max_radius_km: float | None = Query(None, gt=0),
    equipment: list[str] = Query([]),
    specialty: str | None = None,
    routed: bool = False,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    """Hospitals nearest-first from (lat, lng).

    With ``routed=true`` distance and ETA come from the routing service
    and the list is ordered by ETA. An empty list means no candidates.
    """
    try:
        origin = Coordinates(lat=lat, lng=lng)
    except ValueError as exc:
        raise InvalidArgument(f"Invalid origin coordinates: {lat}, {lng}") from exc

    hospitals = await services.alerts.candidate_hospitals(alert_id)
    options = dict(
        alert_id=alert_id,
        search=search,
        max_radius_km=max_radius_km,
        required_equipment=equipment,
        specialty=specialty,
    )
    if routed:
        return await rank_hospitals_routed(origin, hospitals, services.routing, **options)
    return rank_hospitals(origin, hospitals, speed_kmh=services.settings.average_speed_kmh, **options)


@router.post("/recommendations", response_model=RecommendationResponse)
async def recommend_hospitals(
    payload: RecommendationRequest,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    """Top three hospitals for this patient (LLM-ranked when configured)."""
    return await services.recommender.recommend(payload)
