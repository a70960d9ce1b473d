"""Typed reads and writes over the database adapter.

Every committed write publishes a row-change event on the change feed,
which is how hospital and ambulance sessions receive push updates.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from pydantic import ValidationError

from prealert.database import DatabaseAdapter
from prealert.errors import NotFound, PrealertError, Unavailable
from prealert.models.alert import Alert, AuditEntry
from prealert.models.geo import Coordinates
from prealert.models.hospital import Ambulance, Hospital, HospitalCreate
from prealert.models.patient import Patient
from prealert.models.session import AppUser
from prealert.services.change_feed import ChangeFeed

logger = logging.getLogger(__name__)

# Columns the caller may change through update_alert
ALERT_MUTABLE_COLUMNS = {
    "hospital_id",
    "status",
    "distance",
    "eta",
    "completed_at",
    "decline_reason",
    "previous_hospital_ids",
}


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


def _json_list(raw) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return []
    return value if isinstance(value, list) else []


def _coordinates_or_none(lat, lng, row_id: str) -> Coordinates | None:
    if lat is None or lng is None:
        return None
    try:
        return Coordinates(lat=lat, lng=lng)
    except ValidationError:
        logger.warning("Ignoring invalid coordinates on %s: (%s, %s)", row_id, lat, lng)
        return None


def _hospital_from_row(row) -> Hospital:
    return Hospital(
        id=row["id"],
        name=row["name"],
        address=row["address"] or "",
        contact=row["contact"],
        coordinates=_coordinates_or_none(row["latitude"], row["longitude"], row["id"]),
        equipment=_json_list(row["equipment"]),
        specialties=_json_list(row["specialties"]),
    )


def _ambulance_from_row(row) -> Ambulance:
    return Ambulance(
        id=row["id"],
        ambulance_number=row["ambulance_number"],
        contact=row["contact"],
        location=_coordinates_or_none(row["current_latitude"], row["current_longitude"], row["id"]),
        equipment=_json_list(row["equipment"]),
    )


def _user_from_row(row) -> AppUser:
    return AppUser(
        id=row["id"],
        username=row["username"],
        auth_uid=row["auth_uid"],
        role=row["role"],
        linked_entity=row["linked_entity"],
    )


class DataStore:
    def __init__(self, db: DatabaseAdapter, feed: ChangeFeed) -> None:
        self.db = db
        self.feed = feed

    @asynccontextmanager
    async def _writing(self, what: str):
        """One transaction; store failures surface as a retryable error.

        Nothing written inside the block survives a failure.
        """
        try:
            async with self.db.transaction() as tx:
                yield tx
        except PrealertError:
            raise
        except Exception as exc:
            logger.exception("Failed to %s", what)
            raise Unavailable(f"Could not {what}; please retry") from exc

    # --- hospitals ---

    async def list_hospitals(self) -> list[Hospital]:
        rows = await self.db.fetch_all("SELECT * FROM hospitals ORDER BY name ASC, id ASC")
        return [_hospital_from_row(row) for row in rows]

    async def get_hospital(self, hospital_id: str) -> Hospital | None:
        row = await self.db.fetch_one("SELECT * FROM hospitals WHERE id = ?", (hospital_id,))
        return _hospital_from_row(row) if row else None

    async def insert_hospital(self, body: HospitalCreate, hospital_id: str | None = None) -> Hospital:
        hospital = Hospital(
            id=hospital_id or f"hosp-{uuid.uuid4().hex[:12]}",
            name=body.name,
            address=body.address,
            contact=body.contact,
            coordinates=body.coordinates,
            equipment=body.equipment,
            specialties=body.specialties,
        )
        async with self._writing("add hospital") as tx:
            await tx.execute(
                """INSERT INTO hospitals (
                    id, name, address, contact, latitude, longitude,
                    equipment, specialties, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    hospital.id,
                    hospital.name,
                    hospital.address,
                    hospital.contact,
                    hospital.coordinates.lat,
                    hospital.coordinates.lng,
                    json.dumps(hospital.equipment),
                    json.dumps(hospital.specialties),
                    utc_now(),
                ),
            )
        await self.feed.publish("hospitals", "INSERT", hospital.model_dump(mode="json"))
        return hospital

    # --- ambulances ---

    async def get_ambulance(self, ambulance_id: str) -> Ambulance | None:
        row = await self.db.fetch_one("SELECT * FROM ambulances WHERE id = ?", (ambulance_id,))
        return _ambulance_from_row(row) if row else None

    async def upsert_ambulance(self, ambulance: Ambulance) -> Ambulance:
        location = ambulance.location
        async with self._writing("save ambulance") as tx:
            await tx.execute(
                """INSERT INTO ambulances (
                    id, ambulance_number, contact, current_latitude, current_longitude,
                    equipment, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    ambulance_number = excluded.ambulance_number,
                    contact = excluded.contact,
                    current_latitude = excluded.current_latitude,
                    current_longitude = excluded.current_longitude,
                    equipment = excluded.equipment,
                    updated_at = excluded.updated_at""",
                (
                    ambulance.id,
                    ambulance.ambulance_number,
                    ambulance.contact,
                    location.lat if location else None,
                    location.lng if location else None,
                    json.dumps(ambulance.equipment),
                    utc_now(),
                ),
            )
        await self.feed.publish("ambulances", "UPDATE", ambulance.model_dump(mode="json"))
        return ambulance

    async def update_ambulance_location(self, ambulance_id: str, location: Coordinates) -> Ambulance:
        async with self._writing("update ambulance location") as tx:
            updated = await tx.execute(
                "UPDATE ambulances SET current_latitude = ?, current_longitude = ?, updated_at = ? WHERE id = ?",
                (location.lat, location.lng, utc_now(), ambulance_id),
            )
        if not updated:
            raise NotFound(f"Ambulance {ambulance_id} not found")
        ambulance = await self.get_ambulance(ambulance_id)
        await self.feed.publish("ambulances", "UPDATE", ambulance.model_dump(mode="json"))
        return ambulance

    # --- users and local accounts ---

    async def get_user_by_auth_uid(self, auth_uid: str) -> AppUser | None:
        row = await self.db.fetch_one("SELECT * FROM app_users WHERE auth_uid = ?", (auth_uid,))
        return _user_from_row(row) if row else None

    async def insert_user(self, user: AppUser) -> AppUser:
        async with self._writing("save user") as tx:
            await tx.execute(
                "INSERT INTO app_users (id, username, auth_uid, role, linked_entity) VALUES (?, ?, ?, ?, ?)",
                (user.id, user.username, user.auth_uid, user.role, user.linked_entity),
            )
        return user

    async def get_auth_account(self, email: str):
        return await self.db.fetch_one("SELECT * FROM auth_accounts WHERE email = ?", (email,))

    async def insert_auth_account(self, email: str, auth_uid: str, password_hash: str) -> None:
        async with self._writing("save account") as tx:
            await tx.execute(
                "INSERT INTO auth_accounts (email, auth_uid, password_hash) VALUES (?, ?, ?)",
                (email, auth_uid, password_hash),
            )

    # --- alerts ---

    async def _audit_log(self, alert_id: str) -> list[AuditEntry]:
        rows = await self.db.fetch_all(
            "SELECT timestamp, action, actor, details, hospital_id FROM alert_audit_log "
            "WHERE alert_id = ? ORDER BY id ASC",
            (alert_id,),
        )
        return [
            AuditEntry(
                timestamp=row["timestamp"],
                action=row["action"],
                actor=row["actor"],
                details=row["details"] or "",
                hospital_id=row["hospital_id"],
            )
            for row in rows
        ]

    async def _alert_from_row(self, row) -> Alert:
        return Alert(
            id=row["id"],
            patient=Patient.model_validate_json(row["patient"]),
            ambulance_id=row["ambulance_id"],
            hospital_id=row["hospital_id"],
            distance=row["distance"],
            eta=row["eta"],
            status=row["status"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
            required_equipment=_json_list(row["required_equipment"]),
            decline_reason=row["decline_reason"],
            previous_hospital_ids=_json_list(row["previous_hospital_ids"]),
            audit_log=await self._audit_log(row["id"]),
            updated_at=row["updated_at"],
        )

    async def get_alert(self, alert_id: str) -> Alert | None:
        row = await self.db.fetch_one("SELECT * FROM alerts WHERE id = ?", (alert_id,))
        return await self._alert_from_row(row) if row else None

    async def list_alerts(
        self,
        hospital_id: str | None = None,
        ambulance_id: str | None = None,
        status: str | None = None,
    ) -> list[Alert]:
        clauses, params = [], []
        for column, value in (("hospital_id", hospital_id), ("ambulance_id", ambulance_id), ("status", status)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.db.fetch_all(
            f"SELECT * FROM alerts{where} ORDER BY created_at DESC, id DESC",
            params,
        )
        return [await self._alert_from_row(row) for row in rows]

    async def _insert_audit(self, tx, alert_id: str, entry: AuditEntry) -> None:
        await tx.execute(
            "INSERT INTO alert_audit_log (alert_id, timestamp, action, actor, details, hospital_id) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (alert_id, entry.timestamp, entry.action, entry.actor, entry.details, entry.hospital_id),
        )

    async def insert_alert(self, alert: Alert, entry: AuditEntry) -> Alert:
        async with self._writing("send pre-alert") as tx:
            await tx.execute(
                """INSERT INTO alerts (
                    id, ambulance_id, hospital_id, patient, triage_level, distance, eta,
                    status, created_at, required_equipment, previous_hospital_ids, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    alert.id,
                    alert.ambulance_id,
                    alert.hospital_id,
                    alert.patient.model_dump_json(),
                    alert.patient.triage_level,
                    alert.distance,
                    alert.eta,
                    alert.status,
                    alert.created_at,
                    json.dumps(alert.required_equipment),
                    json.dumps(alert.previous_hospital_ids),
                    alert.created_at,
                ),
            )
            await self._insert_audit(tx, alert.id, entry)
        stored = await self.get_alert(alert.id)
        await self.feed.publish("alerts", "INSERT", stored.model_dump(mode="json"))
        return stored

    async def update_alert(
        self,
        alert_id: str,
        fields: dict,
        entry: AuditEntry | None = None,
        expected_status: str | None = None,
    ) -> Alert | None:
        """Apply ``fields`` and append ``entry`` atomically.

        Returns None, writing nothing, when ``expected_status`` is given and
        the stored status differs.
        """
        unknown = set(fields) - ALERT_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update alert columns: {sorted(unknown)}")

        values = dict(fields)
        if "previous_hospital_ids" in values:
            values["previous_hospital_ids"] = json.dumps(values["previous_hospital_ids"])
        values["updated_at"] = utc_now()

        assignments = ", ".join(f"{column} = ?" for column in values)
        query = f"UPDATE alerts SET {assignments} WHERE id = ?"
        params = [*values.values(), alert_id]
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)

        async with self._writing("update alert") as tx:
            updated = await tx.execute(query, params)
            if not updated:
                return None
            if entry is not None:
                await self._insert_audit(tx, alert_id, entry)

        stored = await self.get_alert(alert_id)
        await self.feed.publish("alerts", "UPDATE", stored.model_dump(mode="json"))
        return stored

    async def unavailable_hospital_ids(self, alert_id: str, action: str) -> set[str]:
        rows = await self.db.fetch_all(
            "SELECT DISTINCT hospital_id FROM alert_audit_log "
            "WHERE alert_id = ? AND action = ? AND hospital_id IS NOT NULL",
            (alert_id, action),
        )
        return {row["hospital_id"] for row in rows}

    # --- live vitals ---

    async def get_live_vitals(self, device_id: str):
        return await self.db.fetch_one(
            "SELECT device_id, spo2_pct, hr_bpm, updated_at FROM live_vitals WHERE device_id = ?",
            (device_id,),
        )

    async def upsert_live_vitals(self, device_id: str, spo2: int, heart_rate: int) -> dict:
        record = {
            "device_id": device_id,
            "spo2_pct": spo2,
            "hr_bpm": heart_rate,
            "updated_at": utc_now(),
        }
        async with self._writing("save live vitals") as tx:
            await tx.execute(
                """INSERT INTO live_vitals (device_id, spo2_pct, hr_bpm, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (device_id) DO UPDATE SET
                    spo2_pct = excluded.spo2_pct,
                    hr_bpm = excluded.hr_bpm,
                    updated_at = excluded.updated_at""",
                (device_id, spo2, heart_rate, record["updated_at"]),
            )
        await self.feed.publish("live_vitals", "UPDATE", record)
        return record
