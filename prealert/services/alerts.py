"""Pre-alert lifecycle.

    pending -> acknowledged -> accepted -> completed
    pending | acknowledged -> declined

Every mutation re-reads the alert under a per-alert lock, validates the
transition, then writes with ``WHERE status = <status read>`` so a
concurrent writer in another process surfaces as ``Conflict`` instead of
a lost update.
"""

import asyncio
import logging
import uuid
from collections import defaultdict

from prealert.errors import Conflict, Forbidden, InvalidArgument, NotFound
from prealert.models.alert import Alert, AlertCreate, AlertCreated, AuditEntry
from prealert.models.hospital import Hospital
from prealert.services import access
from prealert.services.geo import DEFAULT_SPEED_KMH, estimate_eta, estimate_straight_line, is_usable
from prealert.services.sessions import Session
from prealert.services.store import DataStore, utc_now

logger = logging.getLogger(__name__)

ACTION_SENT = "Pre-alert sent"
ACTION_COMPLETED = "Patient dropped"
ACTION_HOSPITAL_CHANGED = "Hospital changed"
ACTION_UNAVAILABLE = "Hospital marked unavailable"
STATUS_ACTIONS = {
    "acknowledged": "Alert acknowledged",
    "accepted": "Alert accepted",
    "declined": "Alert declined",
}

TRANSITIONS: dict[str, set[str]] = {
    "pending": {"acknowledged", "accepted", "declined"},
    "acknowledged": {"accepted", "declined"},
}
TERMINAL_STATUSES = {"completed", "declined"}


def _require_reason(reason: str | None, what: str) -> str:
    if reason is None or not reason.strip():
        raise InvalidArgument(f"A reason is required to {what}")
    return reason.strip()


class AlertLifecycle:
    def __init__(self, store: DataStore, speed_kmh: float = DEFAULT_SPEED_KMH) -> None:
        self.store = store
        self.speed_kmh = speed_kmh
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _load(self, alert_id: str) -> Alert:
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise NotFound(f"Alert {alert_id} not found")
        return alert

    async def _hospital(self, hospital_id: str) -> Hospital:
        hospital = await self.store.get_hospital(hospital_id)
        if hospital is None:
            raise NotFound(f"Hospital {hospital_id} not found")
        return hospital

    async def _distance_from_ambulance(self, ambulance_id: str, hospital: Hospital) -> float | None:
        ambulance = await self.store.get_ambulance(ambulance_id)
        if ambulance is None or not is_usable(ambulance.location) or not is_usable(hospital.coordinates):
            return None
        return estimate_straight_line(ambulance.location, hospital.coordinates)

    async def _write(self, alert: Alert, fields: dict, entry: AuditEntry | None) -> Alert:
        updated = await self.store.update_alert(alert.id, fields, entry, expected_status=alert.status)
        if updated is None:
            raise Conflict(f"Alert {alert.id} changed while updating; reload and retry")
        return updated

    def _entry(self, session: Session, action: str, details: str = "", hospital_id: str | None = None) -> AuditEntry:
        return AuditEntry(
            timestamp=utc_now(),
            action=action,
            actor=access.actor_name(session),
            details=details,
            hospital_id=hospital_id,
        )

    async def create_alert(self, session: Session, body: AlertCreate) -> AlertCreated:
        access.require_ambulance(session)
        ambulance_id = body.ambulance_id or session.linked_entity
        if ambulance_id != session.linked_entity:
            raise Forbidden("Cannot send a pre-alert for another ambulance")

        hospital = await self._hospital(body.hospital_id)

        distance = body.distance
        if distance is None:
            distance = await self._distance_from_ambulance(ambulance_id, hospital)
        eta = body.eta
        if eta is None and distance is not None:
            eta = estimate_eta(distance, self.speed_kmh)

        now = utc_now()
        alert = Alert(
            id=f"alert-{uuid.uuid4().hex[:12]}",
            patient=body.patient,
            ambulance_id=ambulance_id,
            hospital_id=hospital.id,
            distance=distance,
            eta=eta,
            status="pending",
            created_at=now,
            required_equipment=body.required_equipment,
        )
        entry = AuditEntry(
            timestamp=now,
            action=ACTION_SENT,
            actor=access.actor_name(session),
            details=f"Sent to {hospital.name}",
            hospital_id=hospital.id,
        )
        stored = await self.store.insert_alert(alert, entry)
        logger.info("Alert %s sent by %s to %s", stored.id, ambulance_id, hospital.id)
        return AlertCreated(alert=stored, hospital=hospital)

    async def update_status(
        self,
        session: Session,
        alert_id: str,
        status: str,
        reason: str | None = None,
        expected_status: str | None = None,
    ) -> Alert:
        """Hospital response: acknowledge, accept or decline."""
        if status not in STATUS_ACTIONS:
            raise InvalidArgument(f"Unsupported status {status!r}")
        if status == "declined":
            reason = _require_reason(reason, "decline an alert")

        async with self._locks[alert_id]:
            alert = await self._load(alert_id)
            access.require_hospital_for(session, alert)
            if expected_status is not None and alert.status != expected_status:
                raise Conflict(f"Alert is {alert.status}, expected {expected_status}")
            if alert.status in TERMINAL_STATUSES:
                raise InvalidArgument(f"Alert is already {alert.status}")
            if status not in TRANSITIONS.get(alert.status, set()):
                raise InvalidArgument(f"Cannot move alert from {alert.status} to {status}")

            fields = {"status": status}
            if status == "declined":
                fields["decline_reason"] = reason
                details = reason
            else:
                details = f"{alert.status} -> {status}"
            updated = await self._write(alert, fields, self._entry(session, STATUS_ACTIONS[status], details))

        logger.info("Alert %s %s by %s", alert_id, status, session.username)
        return updated

    async def complete_case(self, session: Session, alert_id: str) -> Alert:
        async with self._locks[alert_id]:
            alert = await self._load(alert_id)
            access.require_case_party(session, alert)
            if alert.status in TERMINAL_STATUSES:
                raise InvalidArgument(f"Alert is already {alert.status}")
            now = utc_now()
            updated = await self._write(
                alert,
                {"status": "completed", "completed_at": now},
                self._entry(session, ACTION_COMPLETED, f"Patient handed over at {alert.hospital_id}"),
            )
        logger.info("Alert %s completed", alert_id)
        return updated

    async def change_hospital(self, session: Session, alert_id: str, hospital_id: str, reason: str) -> AlertCreated:
        """Redirect the alert; status goes back to pending for the new hospital."""
        reason = _require_reason(reason, "change hospital")

        async with self._locks[alert_id]:
            alert = await self._load(alert_id)
            access.require_owning_ambulance(session, alert)
            if alert.status == "completed":
                raise InvalidArgument("Alert is already completed")
            if hospital_id == alert.hospital_id:
                raise InvalidArgument("Alert is already assigned to this hospital")

            new_hospital = await self._hospital(hospital_id)
            old_hospital = await self.store.get_hospital(alert.hospital_id)
            old_name = old_hospital.name if old_hospital else alert.hospital_id

            distance = await self._distance_from_ambulance(alert.ambulance_id, new_hospital)
            fields = {
                "hospital_id": new_hospital.id,
                "status": "pending",
                "decline_reason": None,
                "previous_hospital_ids": [*alert.previous_hospital_ids, alert.hospital_id],
                "distance": distance,
                "eta": estimate_eta(distance, self.speed_kmh) if distance is not None else None,
            }
            entry = self._entry(
                session,
                ACTION_HOSPITAL_CHANGED,
                f"{old_name} -> {new_hospital.name}: {reason}",
                hospital_id=new_hospital.id,
            )
            updated = await self._write(alert, fields, entry)

        logger.info("Alert %s moved from %s to %s", alert_id, alert.hospital_id, new_hospital.id)
        return AlertCreated(alert=updated, hospital=new_hospital)

    async def mark_hospital_unavailable(self, session: Session, alert_id: str, hospital_id: str, reason: str) -> Alert:
        """Audit-only: the ranker skips this hospital for this alert from now on."""
        reason = _require_reason(reason, "mark a hospital unavailable")

        async with self._locks[alert_id]:
            alert = await self._load(alert_id)
            access.require_owning_ambulance(session, alert)
            hospital = await self._hospital(hospital_id)
            entry = self._entry(session, ACTION_UNAVAILABLE, f"{hospital.name}: {reason}", hospital_id=hospital.id)
            updated = await self._write(alert, {}, entry)

        logger.info("Hospital %s marked unavailable for alert %s", hospital_id, alert_id)
        return updated

    async def refresh_route(self, alert_id: str, distance_km: float, eta_minutes: int) -> Alert | None:
        """Store a recalculated distance/ETA. Not an audited transition."""
        async with self._locks[alert_id]:
            alert = await self.store.get_alert(alert_id)
            if alert is None or alert.status in TERMINAL_STATUSES:
                return None
            return await self.store.update_alert(
                alert_id,
                {"distance": distance_km, "eta": eta_minutes},
                expected_status=alert.status,
            )

    async def get_alert(self, session: Session, alert_id: str) -> Alert:
        alert = await self._load(alert_id)
        access.require_view_alert(session, alert)
        return alert

    async def list_alerts(
        self,
        session: Session,
        status: str | None = None,
        hospital_id: str | None = None,
        ambulance_id: str | None = None,
    ) -> list[Alert]:
        """Hospitals and ambulances only ever see their own alerts."""
        if session.role != "admin" and not session.linked_entity:
            return []
        if session.role == "hospital":
            hospital_id = session.linked_entity
        elif session.role == "ambulance":
            ambulance_id = session.linked_entity
        return await self.store.list_alerts(hospital_id=hospital_id, ambulance_id=ambulance_id, status=status)

    async def active_alert_for(self, ambulance_id: str) -> Alert | None:
        alerts = await self.store.list_alerts(ambulance_id=ambulance_id)
        for alert in alerts:
            if alert.status in access.ACTIVE_STATUSES:
                return alert
        return None

    async def unavailable_hospital_ids(self, alert_id: str) -> set[str]:
        return await self.store.unavailable_hospital_ids(alert_id, ACTION_UNAVAILABLE)

    async def candidate_hospitals(self, alert_id: str | None = None) -> list[Hospital]:
        """All hospitals, tagged with ``unavailable_for_alert`` for ``alert_id``."""
        hospitals = await self.store.list_hospitals()
        if not alert_id:
            return hospitals
        unavailable = await self.unavailable_hospital_ids(alert_id)
        return [
            h.model_copy(update={"unavailable_for_alert": alert_id}) if h.id in unavailable else h
            for h in hospitals
        ]
