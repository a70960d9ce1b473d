"""Role checks for lifecycle mutations.

Each helper raises ``Forbidden`` for a signed-in caller who may not act;
callers are expected to have resolved the session already.
"""

from prealert.errors import Forbidden
from prealert.models.alert import Alert
from prealert.services.sessions import Session
from prealert.services.store import DataStore

ACTIVE_STATUSES = ("pending", "acknowledged", "accepted")


def actor_name(session: Session) -> str:
    return session.username


def require_hospital_for(session: Session, alert: Alert) -> None:
    """Only the assigned hospital (or an admin) responds to an alert."""
    if session.role == "admin":
        return
    if session.role == "hospital" and session.linked_entity == alert.hospital_id:
        return
    raise Forbidden("Only the assigned hospital can respond to this alert")


def require_ambulance(session: Session) -> None:
    if session.role != "ambulance" or not session.linked_entity:
        raise Forbidden("Only ambulance crews can do this")


def require_owning_ambulance(session: Session, alert: Alert) -> None:
    require_ambulance(session)
    if session.linked_entity != alert.ambulance_id:
        raise Forbidden("This alert belongs to another ambulance")


def require_case_party(session: Session, alert: Alert) -> None:
    if session.role == "admin":
        return
    if session.role == "ambulance" and session.linked_entity == alert.ambulance_id:
        return
    if session.role == "hospital" and session.linked_entity == alert.hospital_id:
        return
    raise Forbidden("Only the ambulance or hospital on this case can complete it")


def require_can_add_hospital(session: Session) -> None:
    if session.role not in ("ambulance", "admin"):
        raise Forbidden("Only ambulance crews or admins can add hospitals")


def require_ambulance_self(session: Session, ambulance_id: str) -> None:
    """Ambulance crews act on their own vehicle only."""
    if session.role == "admin":
        return
    if session.role == "ambulance" and session.linked_entity == ambulance_id:
        return
    raise Forbidden("Only the crew of this ambulance can do this")


def can_view_alert(session: Session, alert: Alert) -> bool:
    if session.role == "admin":
        return True
    if session.role == "hospital":
        return session.linked_entity == alert.hospital_id
    return session.linked_entity == alert.ambulance_id


def require_view_alert(session: Session, alert: Alert) -> None:
    if not can_view_alert(session, alert):
        raise Forbidden("Not allowed to view this alert")


async def require_vitals_view(session: Session, store: DataStore, ambulance_id: str) -> None:
    """Hospitals see live vitals only while they have an open alert from that ambulance."""
    if session.role == "admin":
        return
    if session.role == "ambulance" and session.linked_entity == ambulance_id:
        return
    if session.role == "hospital" and session.linked_entity:
        alerts = await store.list_alerts(hospital_id=session.linked_entity, ambulance_id=ambulance_id)
        if any(alert.status in ACTIVE_STATUSES for alert in alerts):
            return
    raise Forbidden("Not allowed to view vitals for this ambulance")
