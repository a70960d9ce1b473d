import logging

from fastapi import APIRouter, Depends

from prealert.dependencies import Services, current_session, get_services
from prealert.models.alert import (
    Alert,
    AlertCreate,
    AlertCreated,
    AlertStatus,
    HospitalChange,
    HospitalUnavailable,
    StatusUpdate,
)
from prealert.services.sessions import Session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/alerts", tags=["alerts"])


@router.post("", response_model=AlertCreated, status_code=201)
async def send_pre_alert(
    payload: AlertCreate,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    """Send a pre-alert for a patient to the chosen hospital.

    Distance and ETA default to the ambulance's last known position.
    """
    return await services.alerts.create_alert(session, payload)


@router.get("", response_model=list[Alert])
async def list_alerts(
    status: AlertStatus | None = None,
    hospital_id: str | None = None,
    ambulance_id: str | None = None,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    return await services.alerts.list_alerts(
        session,
        status=status,
        hospital_id=hospital_id,
        ambulance_id=ambulance_id,
    )


@router.get("/{alert_id}", response_model=Alert)
async def get_alert(
    alert_id: str,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    return await services.alerts.get_alert(session, alert_id)


@router.post("/{alert_id}/status", response_model=Alert)
async def respond_to_alert(
    alert_id: str,
    payload: StatusUpdate,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    """Hospital acknowledges, accepts or declines. Declining needs a reason."""
    return await services.alerts.update_status(
        session,
        alert_id,
        payload.status,
        reason=payload.reason,
        expected_status=payload.expected_status,
    )


@router.post("/{alert_id}/complete", response_model=Alert)
async def complete_case(
    alert_id: str,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    return await services.alerts.complete_case(session, alert_id)


@router.post("/{alert_id}/hospital", response_model=AlertCreated)
async def change_hospital(
    alert_id: str,
    payload: HospitalChange,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    return await services.alerts.change_hospital(session, alert_id, payload.hospital_id, payload.reason)


@router.post("/{alert_id}/unavailable", response_model=Alert)
async def mark_hospital_unavailable(
    alert_id: str,
    payload: HospitalUnavailable,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
):
    return await services.alerts.mark_hospital_unavailable(session, alert_id, payload.hospital_id, payload.reason)
