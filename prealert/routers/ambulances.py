from fastapi import APIRouter, Depends

from prealert.dependencies import Services, current_session, get_services
from prealert.errors import NotFound
from prealert.models.hospital import Ambulance, LocationUpdate
from prealert.services import access
from prealert.services.sessions import Session

router = APIRouter(prefix="/api/ambulances", tags=["ambulances"])


@router.get("/{ambulance_id}", response_model=Ambulance)
async def get_ambulance(
    ambulance_id: str,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    ambulance = await services.store.get_ambulance(ambulance_id)
    if ambulance is None:
        raise NotFound(f"Ambulance {ambulance_id} not found")
    return ambulance


@router.put("/{ambulance_id}/location", response_model=Ambulance)
async def update_location(
    ambulance_id: str,
    payload: LocationUpdate,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    """Store the GPS fix; the active alert's route is recalculated at most every few seconds."""
    access.require_ambulance_self(session, ambulance_id)
    return await services.tracker.update_location(ambulance_id, payload.coordinates)
