from fastapi import APIRouter, Depends

from prealert.dependencies import Services, current_session, get_services
from prealert.models.vitals import LiveVitals, LiveVitalsUpdate
from prealert.services import access
from prealert.services.sessions import Session

router = APIRouter(prefix="/api/vitals", tags=["vitals"])


@router.get("/{ambulance_id}", response_model=LiveVitals)
async def get_live_vitals(
    ambulance_id: str,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    """Latest sensor reading; 98% / 72 bpm until the device has reported."""
    await access.require_vitals_view(session, services.store, ambulance_id)
    return await services.vitals.latest(ambulance_id)


@router.put("/{ambulance_id}", response_model=LiveVitals)
async def publish_live_vitals(
    ambulance_id: str,
    payload: LiveVitalsUpdate,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    access.require_ambulance_self(session, ambulance_id)
    return await services.vitals.publish(ambulance_id, payload.spo2, payload.heart_rate)
